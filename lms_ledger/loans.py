"""
Loan Book Module

Write path for loan customers, loans and their immutable transactions:
granting a loan (with its service transaction), posting payments and fees,
and keeping each loan's current balance consistent with its transactions.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable
from enum import Enum
import logging
import uuid

from .currency import Money, Currency
from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord, storage_errors
from .audit import AuditTrail, AuditAction


logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "Active"
    CLOSED = "Closed"


class TransactionType(Enum):
    """Financial event types posted against a loan"""
    SERVICE = "service"   # Debit - the service sold on credit
    PAYMENT = "payment"   # Credit - money received
    FEE = "fee"           # Debit - charge added to the debt


@dataclass
class Customer(StorageRecord):
    """A person who may hold loans"""
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    created_by_employee_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, data: Dict) -> 'Customer':
        data = dict(data)
        data['created_at'] = cls.parse_timestamp(data['created_at'])
        data['updated_at'] = cls.parse_timestamp(data['updated_at'])
        return cls(**data)


@dataclass
class Loan(StorageRecord):
    """Debt instrument issued to a customer"""
    loan_customer_id: str
    total_debt_amount: Money
    current_balance: Money
    term_months: int
    next_due_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    employee_id: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.total_debt_amount.currency

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['total_debt_amount'] = str(self.total_debt_amount.amount)
        result['current_balance'] = str(self.current_balance.amount)
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        currency = Currency[data.get('currency', 'GBP')]
        next_due = data.get('next_due_date')
        return cls(
            id=data['id'],
            created_at=cls.parse_timestamp(data['created_at']),
            updated_at=cls.parse_timestamp(data['updated_at']),
            loan_customer_id=data['loan_customer_id'],
            total_debt_amount=Money(Decimal(data['total_debt_amount']), currency),
            current_balance=Money(Decimal(data['current_balance']), currency),
            term_months=int(data['term_months']),
            next_due_date=date.fromisoformat(next_due) if next_due else None,
            status=LoanStatus(data.get('status', LoanStatus.ACTIVE.value)),
            employee_id=data.get('employee_id')
        )


@dataclass
class LoanTransaction(StorageRecord):
    """
    Immutable financial event against a loan. Corrections are made with
    offsetting transactions, never by editing amount or type.
    """
    loan_id: str
    transaction_type: TransactionType
    amount: Money
    transaction_timestamp: datetime
    payment_method: Optional[str] = None
    remark: Optional[str] = None
    employee_id: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.transaction_type != TransactionType.PAYMENT

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['amount'] = str(self.amount.amount)
        result['currency'] = self.amount.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTransaction':
        currency = Currency[data.get('currency', 'GBP')]
        return cls(
            id=data['id'],
            created_at=cls.parse_timestamp(data['created_at']),
            updated_at=cls.parse_timestamp(data['updated_at']),
            loan_id=data['loan_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            transaction_timestamp=cls.parse_timestamp(data['transaction_timestamp']),
            payment_method=data.get('payment_method'),
            remark=data.get('remark'),
            employee_id=data.get('employee_id')
        )


class LoanBook:
    """
    Manages loan customers, loans and loan transactions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        currency: Currency = Currency.GBP
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency

        self.customers_table = "loan_customers"
        self.loans_table = "loans"
        self.transactions_table = "loan_transactions"

    # Customers

    def create_customer(
        self,
        first_name: str,
        last_name: str,
        phone_number: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Customer:
        """Create a loan customer"""
        if not first_name or not first_name.strip():
            raise ValidationError("Customer first name is required")

        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name.strip(),
            last_name=(last_name or "").strip(),
            phone_number=phone_number,
            email=email,
            address=address,
            notes=notes,
            created_by_employee_id=actor
        )

        with storage_errors("Saving customer"):
            self.storage.save(self.customers_table, customer.id, customer.to_dict())

        self.audit_trail.record(
            actor, AuditAction.CUSTOMER_CREATED, "loan_customer", customer.id,
            {"name": customer.full_name}
        )
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with storage_errors("Reading customer"):
            data = self.storage.load(self.customers_table, customer_id)
        return Customer.from_dict(data) if data else None

    def require_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def list_customers(self) -> List[Customer]:
        """All customers, newest first"""
        with storage_errors("Reading customers"):
            rows = self.storage.load_all(self.customers_table)
        customers = [Customer.from_dict(row) for row in rows]
        customers.sort(key=lambda c: c.created_at, reverse=True)
        return customers

    # Loans

    def grant_loan(
        self,
        customer_id: str,
        total_debt_amount: Money,
        term_months: int,
        first_due_date: Optional[date] = None,
        deposit: Optional[Money] = None,
        payment_method: Optional[str] = None,
        actor: Optional[str] = None,
        granted_at: Optional[datetime] = None
    ) -> Loan:
        """
        Grant a loan and post its service transaction

        Args:
            customer_id: Borrowing customer
            total_debt_amount: Price of the service sold on credit
            term_months: Repayment term
            first_due_date: First installment due date
            deposit: Optional up-front payment, posted as a payment transaction
            payment_method: Method of the deposit
            actor: Employee granting the loan
            granted_at: Timestamp of the grant (defaults to now)

        Returns:
            The created Loan, with its balance already reduced by any deposit

        Raises:
            NotFoundError: If the customer does not exist
            ValidationError: If amount, term or deposit are invalid
        """
        self.require_customer(customer_id)

        if not total_debt_amount.is_positive():
            raise ValidationError("Loan amount must be greater than zero")
        if term_months < 1:
            raise ValidationError("Loan term must be at least one month")
        if deposit is not None and deposit > total_debt_amount:
            raise ValidationError("Deposit cannot exceed the loan amount")

        now = granted_at or datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_customer_id=customer_id,
            total_debt_amount=total_debt_amount,
            current_balance=total_debt_amount,
            term_months=term_months,
            next_due_date=first_due_date,
            status=LoanStatus.ACTIVE,
            employee_id=actor
        )
        service = LoanTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            transaction_type=TransactionType.SERVICE,
            amount=total_debt_amount,
            transaction_timestamp=now,
            remark=f"Service ({term_months} Months)",
            employee_id=actor
        )

        with storage_errors("Granting loan"):
            with self.storage.atomic():
                self.storage.save(self.loans_table, loan.id, loan.to_dict())
                self.storage.save(self.transactions_table, service.id, service.to_dict())

        self.audit_trail.record(
            actor, AuditAction.LOAN_GRANTED, "loan", loan.id,
            {
                "customer_id": customer_id,
                "total_debt_amount": total_debt_amount.amount,
                "term_months": term_months,
                "service_transaction_id": service.id
            }
        )
        logger.info("Granted loan %s to customer %s for %s", loan.id, customer_id, total_debt_amount.to_string())

        if deposit is not None and deposit.is_positive():
            self.post_payment(
                loan.id, deposit, payment_method=payment_method,
                remark="Deposit", actor=actor, timestamp=now
            )
            loan = self.require_loan(loan.id)

        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        with storage_errors("Reading loan"):
            data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def loans_for_customer(self, customer_id: str) -> List[Loan]:
        """All loans of a customer, oldest first"""
        with storage_errors("Reading loans"):
            rows = self.storage.find(self.loans_table, {'loan_customer_id': customer_id})
        loans = [Loan.from_dict(row) for row in rows]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def list_loans(self) -> List[Loan]:
        """Every loan in the book, oldest first"""
        with storage_errors("Reading loans"):
            rows = self.storage.load_all(self.loans_table)
        loans = [Loan.from_dict(row) for row in rows]
        loans.sort(key=lambda l: l.created_at)
        return loans

    # Transactions

    def get_transaction(self, transaction_id: str) -> Optional[LoanTransaction]:
        with storage_errors("Reading transaction"):
            data = self.storage.load(self.transactions_table, transaction_id)
        return LoanTransaction.from_dict(data) if data else None

    def require_transaction(self, transaction_id: str) -> LoanTransaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Loan transaction {transaction_id} not found")
        return transaction

    def transactions_for_loans(
        self,
        loan_ids: Iterable[str],
        types: Optional[Iterable[TransactionType]] = None
    ) -> List[LoanTransaction]:
        """Transactions referencing any of the loans, ordered by timestamp"""
        with storage_errors("Reading loan transactions"):
            rows = self.storage.find_in(self.transactions_table, 'loan_id', loan_ids)
        transactions = [LoanTransaction.from_dict(row) for row in rows]
        if types is not None:
            wanted = set(types)
            transactions = [t for t in transactions if t.transaction_type in wanted]
        transactions.sort(key=lambda t: t.transaction_timestamp)
        return transactions

    def service_transactions(self) -> List[LoanTransaction]:
        """Every service transaction in the book"""
        with storage_errors("Reading service transactions"):
            rows = self.storage.find(
                self.transactions_table,
                {'transaction_type': TransactionType.SERVICE.value}
            )
        return [LoanTransaction.from_dict(row) for row in rows]

    def total_paid(self, loan_id: str) -> Money:
        """Sum of payment transactions posted against a loan"""
        loan = self.require_loan(loan_id)
        total = Money.zero(loan.currency)
        for transaction in self.transactions_for_loans([loan_id], [TransactionType.PAYMENT]):
            total = total + transaction.amount
        return total

    def post_payment(
        self,
        loan_id: str,
        amount: Money,
        payment_method: Optional[str] = None,
        remark: Optional[str] = None,
        actor: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> LoanTransaction:
        """
        Post a payment against a loan and refresh its balance

        Raises:
            NotFoundError: If the loan does not exist
            ValidationError: If the amount is not positive or exceeds the balance
        """
        loan = self.require_loan(loan_id)
        if not amount.is_positive():
            raise ValidationError("Payment amount must be greater than zero")
        if amount > loan.current_balance:
            raise ValidationError(
                f"Payment {amount.to_string()} exceeds outstanding balance "
                f"{loan.current_balance.to_string()}"
            )

        transaction = self._post(loan, TransactionType.PAYMENT, amount, payment_method, remark, actor, timestamp)
        self.audit_trail.record(
            actor, AuditAction.PAYMENT_POSTED, "loan", loan.id,
            {"transaction_id": transaction.id, "amount": amount.amount, "payment_method": payment_method}
        )
        return transaction

    def post_fee(
        self,
        loan_id: str,
        amount: Money,
        remark: Optional[str] = None,
        actor: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> LoanTransaction:
        """Post a fee, increasing the debt of a loan"""
        loan = self.require_loan(loan_id)
        if not amount.is_positive():
            raise ValidationError("Fee amount must be greater than zero")

        transaction = self._post(loan, TransactionType.FEE, amount, None, remark, actor, timestamp)
        self.audit_trail.record(
            actor, AuditAction.FEE_POSTED, "loan", loan.id,
            {"transaction_id": transaction.id, "amount": amount.amount, "remark": remark}
        )
        return transaction

    def _post(
        self,
        loan: Loan,
        transaction_type: TransactionType,
        amount: Money,
        payment_method: Optional[str],
        remark: Optional[str],
        actor: Optional[str],
        timestamp: Optional[datetime]
    ) -> LoanTransaction:
        if amount.currency != loan.currency:
            raise ValidationError(f"Loan {loan.id} is in {loan.currency.code}, not {amount.currency.code}")

        now = datetime.now(timezone.utc)
        transaction = LoanTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            transaction_type=transaction_type,
            amount=amount,
            transaction_timestamp=timestamp or now,
            payment_method=payment_method,
            remark=remark,
            employee_id=actor
        )
        with storage_errors(f"Posting {transaction_type.value}"):
            self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

        self.refresh_balance(loan.id)
        return transaction

    def refresh_balance(self, loan_id: str) -> Loan:
        """
        Recompute a loan's current balance from its transactions:
        total debt plus fees minus payments, floored at zero.
        """
        loan = self.require_loan(loan_id)
        balance = loan.total_debt_amount
        for transaction in self.transactions_for_loans([loan_id]):
            if transaction.transaction_type == TransactionType.PAYMENT:
                balance = balance - transaction.amount
            elif transaction.transaction_type == TransactionType.FEE:
                balance = balance + transaction.amount

        if balance.is_negative():
            logger.warning("Loan %s payments exceed its debt by %s", loan_id, (-balance).to_string())
            balance = Money.zero(loan.currency)

        status = LoanStatus.CLOSED if balance.is_zero() else LoanStatus.ACTIVE
        with storage_errors("Updating loan balance"):
            self.storage.update(self.loans_table, loan_id, {
                'current_balance': str(balance.amount),
                'status': status.value,
                'updated_at': datetime.now(timezone.utc).isoformat()
            })

        loan.current_balance = balance
        loan.status = status
        return loan
