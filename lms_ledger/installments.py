"""
Installment Schedule Module

Owns the installment plan attached to each service transaction: plan
generation, due date and amount edits, payment and skip transitions, and
operator wipes. Status changes use conditional writes so two callers can
never both win the same installment.

State machine per installment:
    pending -> partial | paid | skipped | overdue
    overdue -> partial | paid | skipped
    partial -> paid
    paid, skipped: terminal
`overdue` is never stored; it is reported for pending rows whose due date
has passed.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import calendar
import logging
import threading

from .currency import Money, Currency, parse_money
from .errors import (
    AlreadyScheduledError, ConflictError, NotFoundError,
    PlanLockedError, ValidationError, LedgerError
)
from .storage import StorageInterface, StorageRecord, storage_errors
from .audit import AuditTrail, AuditAction
from .loans import LoanBook, TransactionType
from .logging_config import log_action


logger = logging.getLogger(__name__)


class InstallmentStatus(Enum):
    """Installment payment states"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    OVERDUE = "overdue"


TERMINAL_STATUSES = {InstallmentStatus.PAID, InstallmentStatus.SKIPPED}
LOCKING_STATUSES = {InstallmentStatus.PAID, InstallmentStatus.PARTIAL}


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_date(value: Any, field_name: str = "due_date") -> date:
    """Parse an ISO date (a datetime string is truncated to its date)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field_name} is required")
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ValidationError(f"{field_name} '{value}' is not an ISO date (YYYY-MM-DD)")


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a service transaction"""
    loan_transaction_id: str
    installment_number: int
    due_date: date
    amount: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    amount_paid: Money = None
    paid_date: Optional[date] = None
    payment_method: Optional[str] = None

    def __post_init__(self):
        if self.amount_paid is None:
            self.amount_paid = Money.zero(self.amount.currency)

    def effective_status(self, today: date) -> InstallmentStatus:
        """Stored status, reported as overdue when pending past its due date"""
        if self.status == InstallmentStatus.PENDING and self.due_date < today:
            return InstallmentStatus.OVERDUE
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(self.amount.amount)
        result['amount_paid'] = str(self.amount_paid.amount)
        result['currency'] = self.amount.currency.code
        return result

    def to_response(self, today: date) -> Dict[str, Any]:
        result = self.to_dict()
        result['status'] = self.effective_status(today).value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data.get('currency', 'GBP')]
        paid_date = data.get('paid_date')
        return cls(
            id=data['id'],
            created_at=cls.parse_timestamp(data['created_at']),
            updated_at=cls.parse_timestamp(data['updated_at']),
            loan_transaction_id=data['loan_transaction_id'],
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date'][:10]),
            amount=Money(Decimal(str(data['amount'])), currency),
            status=InstallmentStatus(data.get('status', 'pending')),
            amount_paid=Money(Decimal(str(data.get('amount_paid') or '0')), currency),
            paid_date=date.fromisoformat(paid_date[:10]) if paid_date else None,
            payment_method=data.get('payment_method')
        )


@dataclass
class InstallmentEdit:
    """Requested change to one installment"""
    installment_id: str
    due_date: Optional[date] = None
    amount: Optional[Money] = None

    @classmethod
    def parse(cls, installment_id: Any, due_date: Any, amount: Any,
              currency: Currency) -> 'InstallmentEdit':
        """Validate raw request values"""
        if not installment_id or not isinstance(installment_id, str):
            raise ValidationError("Installment id is required")
        if due_date is None and amount is None:
            raise ValidationError(f"Installment {installment_id}: nothing to update")
        return cls(
            installment_id=installment_id,
            due_date=parse_date(due_date) if due_date is not None else None,
            amount=parse_money(amount, currency, allow_zero=False) if amount is not None else None
        )


@dataclass
class EditResult:
    """Per-row outcome of a bulk edit"""
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class SkipResult:
    """Outcome of skipping an installment"""
    installment: Installment
    remaining_balance: Money
    redistributed: List[Installment]


class InstallmentScheduleManager:
    """
    Manages installment plans for service transactions
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_book: LoanBook,
        audit_trail: AuditTrail,
        today: Optional[Callable[[], date]] = None,
        max_term_months: int = 120
    ):
        self.storage = storage
        self.loan_book = loan_book
        self.audit_trail = audit_trail
        self.today = today or (lambda: datetime.now(timezone.utc).date())
        self.max_term_months = max_term_months
        self.table_name = "loan_installments"
        self._generate_lock = threading.Lock()

    # Reads

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        with storage_errors("Reading installment"):
            data = self.storage.load(self.table_name, installment_id)
        return Installment.from_dict(data) if data else None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if not installment:
            raise NotFoundError(f"Installment {installment_id} not found")
        return installment

    def list_for_transaction(self, transaction_id: str) -> List[Installment]:
        """Installments of a plan ordered by number; empty when none exist"""
        with storage_errors("Reading installments"):
            rows = self.storage.find(self.table_name, {'loan_transaction_id': transaction_id})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def is_locked(self, transaction_id: str) -> bool:
        """A plan is locked once any installment is paid or partially paid"""
        return any(i.status in LOCKING_STATUSES for i in self.list_for_transaction(transaction_id))

    # Generation

    def generate(
        self,
        transaction_id: str,
        total_amount: Money,
        term_months: int,
        first_due_date: date,
        actor: Optional[str] = None
    ) -> List[Installment]:
        """
        Create the installment plan for a service transaction

        Installments are numbered 1..term_months, due one calendar month
        apart from first_due_date, and their amounts sum exactly to
        total_amount.

        Raises:
            NotFoundError: If the transaction does not exist
            ValidationError: If the transaction is not a service, the term is
                outside 1..max_term_months or the amount is not positive
            AlreadyScheduledError: If the transaction already has a plan
        """
        transaction = self.loan_book.require_transaction(transaction_id)
        if transaction.transaction_type != TransactionType.SERVICE:
            raise ValidationError(f"Transaction {transaction_id} is not a service transaction")
        if not isinstance(term_months, int) or term_months < 1:
            raise ValidationError("term_months must be a positive integer")
        if term_months > self.max_term_months:
            raise ValidationError(f"term_months cannot exceed {self.max_term_months}")
        if not total_amount.is_positive():
            raise ValidationError("Total amount must be greater than zero")

        with self._generate_lock:
            if self.list_for_transaction(transaction_id):
                raise AlreadyScheduledError(f"Transaction {transaction_id} already has an installment plan")

            now = datetime.now(timezone.utc)
            installments = []
            for index, share in enumerate(total_amount.split(term_months)):
                number = index + 1
                installments.append(Installment(
                    id=f"{transaction_id}_{number}",
                    created_at=now,
                    updated_at=now,
                    loan_transaction_id=transaction_id,
                    installment_number=number,
                    due_date=add_months(first_due_date, index),
                    amount=share,
                    status=InstallmentStatus.PENDING
                ))

            with storage_errors("Saving installment plan"):
                with self.storage.atomic():
                    for installment in installments:
                        self.storage.save(self.table_name, installment.id, installment.to_dict())

        self.audit_trail.record(
            actor, AuditAction.SCHEDULE_GENERATED, "loan_transaction", transaction_id,
            {
                "total_amount": total_amount.amount,
                "term_months": term_months,
                "first_due_date": first_due_date.isoformat()
            }
        )
        logger.info("Generated %d installments for transaction %s", term_months, transaction_id)
        return installments

    def create_missing_schedules(
        self,
        default_term_months: int = 3,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Generate plans for every service transaction that has none

        Each plan spreads the loan's current balance (or the service amount
        when the loan has no balance) over the loan's term, first due one
        month after the service. Failures are recorded per transaction and
        do not stop the batch.
        """
        summary = {"total": 0, "created": 0, "skipped": 0, "errors": 0, "error_details": []}

        for transaction in self.loan_book.service_transactions():
            summary["total"] += 1
            try:
                if self.list_for_transaction(transaction.id):
                    summary["skipped"] += 1
                    continue

                loan = self.loan_book.get_loan(transaction.loan_id)
                term = loan.term_months if loan and loan.term_months > 0 else default_term_months
                amount = transaction.amount
                if loan and loan.current_balance.is_positive():
                    amount = loan.current_balance

                first_due = add_months(transaction.transaction_timestamp.date(), 1)
                created = self.generate(transaction.id, amount, term, first_due, actor=actor)
                summary["created"] += len(created)
            except LedgerError as e:
                logger.error("Could not create installments for %s: %s", transaction.id, e)
                summary["errors"] += 1
                summary["error_details"].append(f"{transaction.id}: {e}")

        return summary

    # Edits

    def edit(
        self,
        transaction_id: str,
        edits: List[InstallmentEdit],
        actor: Optional[str] = None
    ) -> EditResult:
        """
        Apply due date and amount edits to installments of one plan

        All edits are validated before anything is written. Rows are then
        written one at a time; a row that fails is logged and reported in
        the result while the remaining rows are still attempted.

        Raises:
            PlanLockedError: If any installment of the plan is paid or partial
            ValidationError: If there are no edits, duplicate ids, or an id
                that does not belong to the plan
            NotFoundError: If the plan has no installments
        """
        if not edits:
            raise ValidationError("No installment edits supplied")

        plan = {i.id: i for i in self.list_for_transaction(transaction_id)}
        if not plan:
            raise NotFoundError(f"No installments found for transaction {transaction_id}")

        locked = [i.id for i in plan.values() if i.status in LOCKING_STATUSES]
        if locked:
            raise PlanLockedError(transaction_id, locked)

        seen = set()
        for edit in edits:
            if edit.installment_id not in plan:
                raise ValidationError(
                    f"Installment {edit.installment_id} does not belong to transaction {transaction_id}"
                )
            if edit.installment_id in seen:
                raise ValidationError(f"Installment {edit.installment_id} is edited twice")
            seen.add(edit.installment_id)

        result = EditResult()
        for edit in edits:
            current = plan[edit.installment_id]
            updates = {'updated_at': datetime.now(timezone.utc).isoformat()}
            if edit.due_date is not None:
                updates['due_date'] = edit.due_date.isoformat()
            if edit.amount is not None:
                updates['amount'] = str(edit.amount.amount)

            try:
                applied = self.storage.compare_and_set(
                    self.table_name, edit.installment_id,
                    {'status': current.status.value}, updates
                )
            except Exception as e:
                logger.error("Error updating installment %s: %s", edit.installment_id, e)
                result.failed[edit.installment_id] = str(e)
                continue

            if applied:
                result.updated.append(edit.installment_id)
            else:
                logger.warning("Installment %s changed while it was being edited", edit.installment_id)
                result.failed[edit.installment_id] = "Installment changed concurrently"

        self.audit_trail.record(
            actor, AuditAction.INSTALLMENTS_UPDATED, "loan_transaction", transaction_id,
            {
                "updated": result.updated,
                "failed": list(result.failed),
                "edits": [
                    {
                        "id": e.installment_id,
                        "due_date": e.due_date.isoformat() if e.due_date else None,
                        "amount": e.amount.amount if e.amount else None
                    }
                    for e in edits
                ]
            }
        )
        return result

    # Transitions

    def mark_paid(
        self,
        installment_id: str,
        amount_paid: Money,
        payment_method: Optional[str] = None,
        actor: Optional[str] = None,
        paid_on: Optional[date] = None,
        record_payment: bool = True
    ) -> Installment:
        """
        Record money received against an installment

        The payment adds to what was already collected; the installment
        becomes paid once the collected total reaches its amount and partial
        otherwise. When record_payment is set the matching payment
        transaction is posted to the loan.

        Raises:
            NotFoundError: If the installment does not exist
            ValidationError: If the amount is not positive or exceeds the
                loan's outstanding balance
            ConflictError: If the installment is already paid or skipped, or
                another caller changed it first
        """
        installment = self.require_installment(installment_id)
        if not amount_paid.is_positive():
            raise ValidationError("Payment amount must be greater than zero")
        if installment.status in TERMINAL_STATUSES:
            raise ConflictError(f"Installment {installment_id} is already {installment.status.value}")

        transaction = self.loan_book.require_transaction(installment.loan_transaction_id)
        loan = self.loan_book.require_loan(transaction.loan_id)
        if record_payment and amount_paid > loan.current_balance:
            raise ValidationError(
                f"Payment {amount_paid.to_string()} exceeds outstanding balance "
                f"{loan.current_balance.to_string()}"
            )

        collected = installment.amount_paid + amount_paid
        new_status = InstallmentStatus.PAID if collected >= installment.amount else InstallmentStatus.PARTIAL
        if paid_on is None:
            paid_on = self.today()
            paid_at = datetime.now(timezone.utc)
        else:
            # A backdated payment never sorts ahead of the loan it repays
            paid_at = max(
                datetime.combine(paid_on, datetime.min.time(), tzinfo=timezone.utc),
                loan.created_at
            )

        expected = {
            'status': installment.status.value,
            'amount_paid': str(installment.amount_paid.amount)
        }
        updates = {
            'status': new_status.value,
            'amount_paid': str(collected.amount),
            'paid_date': paid_on.isoformat(),
            'payment_method': payment_method,
            'updated_at': datetime.now(timezone.utc).isoformat()
        }
        with storage_errors("Marking installment paid"):
            applied = self.storage.compare_and_set(self.table_name, installment_id, expected, updates)
        if not applied:
            raise ConflictError(f"Installment {installment_id} was changed by another request")

        if record_payment:
            plan_size = len(self.list_for_transaction(installment.loan_transaction_id))
            try:
                self.loan_book.post_payment(
                    transaction.loan_id, amount_paid,
                    payment_method=payment_method,
                    remark=f"Installment payment - Term {installment.installment_number}/{plan_size}",
                    actor=actor,
                    timestamp=paid_at
                )
            except LedgerError:
                # Put the installment back so the plan matches the loan's payments
                revert = dict(expected)
                revert.update({
                    'paid_date': installment.paid_date.isoformat() if installment.paid_date else None,
                    'payment_method': installment.payment_method
                })
                self.storage.compare_and_set(
                    self.table_name, installment_id,
                    {'status': new_status.value, 'amount_paid': str(collected.amount)}, revert
                )
                raise

        self.audit_trail.record(
            actor, AuditAction.INSTALLMENT_PAID, "installment", installment_id,
            {
                "loan_transaction_id": installment.loan_transaction_id,
                "amount": amount_paid.amount,
                "amount_paid": collected.amount,
                "status": new_status.value,
                "payment_method": payment_method
            }
        )

        log_action(
            logger, "info", f"Installment {installment_id} marked {new_status.value}",
            user_id=actor, action=AuditAction.INSTALLMENT_PAID, resource=installment_id,
            extra={"amount": str(amount_paid.amount), "amount_paid": str(collected.amount)}
        )

        installment.status = new_status
        installment.amount_paid = collected
        installment.paid_date = paid_on
        installment.payment_method = payment_method
        return installment

    def skip(self, installment_id: str, actor: Optional[str] = None) -> SkipResult:
        """
        Skip a pending installment and spread the remaining balance

        The skipped row keeps nothing collected. The service's remaining
        balance (service amount minus all payments on the loan, floored at
        zero) is split exactly across the plan's still-pending installments.

        Raises:
            NotFoundError: If the installment does not exist
            ConflictError: If the installment is not pending or overdue, or
                another caller changed it first
        """
        installment = self.require_installment(installment_id)
        if installment.status != InstallmentStatus.PENDING:
            raise ConflictError(
                f"Installment {installment_id} is {installment.status.value} and cannot be skipped"
            )

        with storage_errors("Skipping installment"):
            applied = self.storage.compare_and_set(
                self.table_name, installment_id,
                {'status': InstallmentStatus.PENDING.value},
                {
                    'status': InstallmentStatus.SKIPPED.value,
                    'amount_paid': str(Money.zero(installment.amount.currency).amount),
                    'updated_at': datetime.now(timezone.utc).isoformat()
                }
            )
        if not applied:
            raise ConflictError(f"Installment {installment_id} was changed by another request")

        transaction = self.loan_book.require_transaction(installment.loan_transaction_id)
        remaining = transaction.amount - self.loan_book.total_paid(transaction.loan_id)
        if remaining.is_negative():
            remaining = Money.zero(remaining.currency)

        open_installments = [
            i for i in self.list_for_transaction(installment.loan_transaction_id)
            if i.status == InstallmentStatus.PENDING
        ]
        redistributed = []
        if open_installments:
            for target, share in zip(open_installments, remaining.split(len(open_installments))):
                with storage_errors("Redistributing installment amounts"):
                    moved = self.storage.compare_and_set(
                        self.table_name, target.id,
                        {'status': InstallmentStatus.PENDING.value},
                        {'amount': str(share.amount), 'updated_at': datetime.now(timezone.utc).isoformat()}
                    )
                if moved:
                    target.amount = share
                    redistributed.append(target)
                else:
                    logger.warning("Installment %s changed during redistribution", target.id)

        self.audit_trail.record(
            actor, AuditAction.INSTALLMENT_SKIPPED, "installment", installment_id,
            {
                "loan_transaction_id": installment.loan_transaction_id,
                "remaining_balance": remaining.amount,
                "redistributed": [i.id for i in redistributed]
            }
        )

        installment.status = InstallmentStatus.SKIPPED
        installment.amount_paid = Money.zero(installment.amount.currency)
        return SkipResult(installment=installment, remaining_balance=remaining, redistributed=redistributed)

    def wipe(self, transaction_id: str, actor: Optional[str] = None) -> int:
        """Delete every installment of a plan; returns how many were removed"""
        with storage_errors("Wiping installments"):
            removed = self.storage.delete_where(self.table_name, {'loan_transaction_id': transaction_id})

        self.audit_trail.record(
            actor, AuditAction.SCHEDULE_WIPED, "loan_transaction", transaction_id,
            {"removed": removed}
        )
        log_action(
            logger, "warning", f"Wiped {removed} installments for transaction {transaction_id}",
            user_id=actor, action=AuditAction.SCHEDULE_WIPED, resource=transaction_id
        )
        return removed
