"""
Customer Ledger Engine

Merges the loans granted to a customer (debits) with the payments (credits)
and fees (debits) posted against them into one chronologically ordered
ledger with a running balance, and summarises every customer's account for
the overview. Read-only; every call recomputes from the store so balances
are never cached.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Any, Optional
from enum import Enum

from .currency import Money, Currency
from .errors import ValidationError
from .loans import LoanBook, Customer, TransactionType


class EntryType(Enum):
    """Kinds of ledger lines"""
    SERVICE = "SERVICE"
    FEE = "FEE"
    PAYMENT = "PAYMENT"


class AccountFilter(Enum):
    """Which accounts the overview lists"""
    ACTIVE = "active"      # balance outstanding
    OVERDUE = "overdue"
    SETTLED = "settled"    # has loans, nothing outstanding
    ALL = "all"


# Accounts with a next due date this many days ahead are due soon
DUE_SOON_DAYS = 7


# Tie-break order for entries sharing a timestamp
_TYPE_RANK = {EntryType.SERVICE: 0, EntryType.FEE: 1, EntryType.PAYMENT: 2}


@dataclass(frozen=True)
class LedgerEntry:
    """One ledger line with the balance after applying it"""
    id: str
    date: datetime
    type: EntryType
    description: str
    amount: Money
    is_debit: bool
    balance: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "type": self.type.value,
            "description": self.description,
            "amount": str(self.amount.amount),
            "isDebit": self.is_debit,
            "balance": str(self.balance.amount)
        }


@dataclass(frozen=True)
class CustomerLedger:
    """Ordered ledger for one customer and its final balance"""
    customer: Customer
    entries: List[LedgerEntry]
    balance: Money


@dataclass(frozen=True)
class AccountSummary:
    """One customer's position across all of their loans"""
    customer: Customer
    balance: Money
    active_loans: int
    total_loans: int
    next_due: Optional[date]
    is_overdue: bool
    is_due_soon: bool
    last_transaction: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.customer.id,
            "name": self.customer.full_name,
            "firstName": self.customer.first_name,
            "lastName": self.customer.last_name,
            "phone": self.customer.phone_number,
            "email": self.customer.email,
            "address": self.customer.address,
            "balance": str(self.balance.amount),
            "activeLoans": self.active_loans,
            "totalLoans": self.total_loans,
            "nextDue": self.next_due.isoformat() if self.next_due else None,
            "isOverdue": self.is_overdue,
            "isDueSoon": self.is_due_soon,
            "lastTransaction": self.last_transaction.isoformat() if self.last_transaction else None
        }


@dataclass(frozen=True)
class OverviewStats:
    """Totals over every account, regardless of the filter"""
    total_outstanding: Money
    active_accounts: int
    overdue_accounts: int
    due_soon_accounts: int
    total_accounts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalOutstanding": str(self.total_outstanding.amount),
            "activeAccounts": self.active_accounts,
            "overdueAccounts": self.overdue_accounts,
            "dueSoonAccounts": self.due_soon_accounts,
            "totalAccounts": self.total_accounts
        }


@dataclass(frozen=True)
class AccountsOverview:
    accounts: List[AccountSummary]
    stats: OverviewStats
    all_accounts: int


class LedgerEngine:
    """
    Builds running-balance ledgers and account summaries from the loan book
    """

    def __init__(
        self,
        loan_book: LoanBook,
        currency: Currency = Currency.GBP,
        today: Optional[Callable[[], date]] = None
    ):
        self.loan_book = loan_book
        self.currency = currency
        self.today = today or (lambda: datetime.now(timezone.utc).date())

    def build_ledger(self, customer_id: str) -> CustomerLedger:
        """
        Build the ledger for a customer

        Loans become SERVICE debits for their total debt, payments become
        credits and fees become debits. Entries are ordered by timestamp;
        entries sharing a timestamp are ordered service, fee, payment and
        then by the order they were read in.

        Args:
            customer_id: Customer to build the ledger for

        Returns:
            CustomerLedger; a customer with no loans gets an empty ledger and
            a zero balance

        Raises:
            NotFoundError: If the customer does not exist
            DataUnavailableError: If the store cannot be read
        """
        customer = self.loan_book.require_customer(customer_id)
        loans = self.loan_book.loans_for_customer(customer_id)

        currency = loans[0].currency if loans else self.currency
        if not loans:
            return CustomerLedger(customer=customer, entries=[], balance=Money.zero(currency))

        transactions = self.loan_book.transactions_for_loans(
            [loan.id for loan in loans],
            [TransactionType.PAYMENT, TransactionType.FEE]
        )

        # (timestamp, type, id, description, amount)
        raw = []
        for loan in loans:
            raw.append((
                loan.created_at, EntryType.SERVICE, loan.id,
                f"Service #{loan.id[:6]} ({loan.term_months} Months)",
                loan.total_debt_amount
            ))
        for transaction in transactions:
            if transaction.transaction_type == TransactionType.PAYMENT:
                entry_type = EntryType.PAYMENT
                description = f"Payment via {transaction.payment_method or 'Cash'}"
            else:
                entry_type = EntryType.FEE
                description = transaction.remark or "Fee"
            raw.append((
                transaction.transaction_timestamp, entry_type, transaction.id,
                description, transaction.amount
            ))

        ordered = sorted(
            enumerate(raw),
            key=lambda item: (item[1][0], _TYPE_RANK[item[1][1]], item[0])
        )

        balance = Money.zero(currency)
        entries = []
        for _, (timestamp, entry_type, entry_id, description, amount) in ordered:
            is_debit = entry_type != EntryType.PAYMENT
            balance = balance + amount if is_debit else balance - amount
            entries.append(LedgerEntry(
                id=entry_id,
                date=timestamp,
                type=entry_type,
                description=description,
                amount=amount,
                is_debit=is_debit,
                balance=balance
            ))

        return CustomerLedger(customer=customer, entries=entries, balance=balance)

    def accounts_overview(self, account_filter: Any = AccountFilter.ACTIVE) -> AccountsOverview:
        """
        Summarise every customer's account

        A customer's balance is services plus fees minus payments over all of
        their loans. The next due date is the earliest one among loans that
        still carry a balance; the account is overdue when that date has
        passed and due soon when it falls within DUE_SOON_DAYS.

        Args:
            account_filter: AccountFilter or its value; selects which accounts
                are listed, while stats always cover every account

        Raises:
            ValidationError: If the filter is unknown
            DataUnavailableError: If the store cannot be read
        """
        try:
            account_filter = AccountFilter(account_filter)
        except ValueError:
            raise ValidationError(
                f"Unknown account filter {account_filter!r}; "
                f"expected one of {', '.join(f.value for f in AccountFilter)}"
            )

        today = self.today()
        customers = self.loan_book.list_customers()
        loans = self.loan_book.list_loans()
        transactions = self.loan_book.transactions_for_loans([loan.id for loan in loans])

        loans_by_customer: Dict[str, list] = {}
        for loan in loans:
            loans_by_customer.setdefault(loan.loan_customer_id, []).append(loan)
        transactions_by_loan: Dict[str, list] = {}
        for transaction in transactions:
            transactions_by_loan.setdefault(transaction.loan_id, []).append(transaction)

        accounts = []
        for customer in customers:
            customer_loans = loans_by_customer.get(customer.id, [])
            currency = customer_loans[0].currency if customer_loans else self.currency

            balance = Money.zero(currency)
            last_transaction = None
            for loan in customer_loans:
                for transaction in transactions_by_loan.get(loan.id, []):
                    if transaction.is_debit:
                        balance = balance + transaction.amount
                    else:
                        balance = balance - transaction.amount
                    if last_transaction is None or transaction.transaction_timestamp > last_transaction:
                        last_transaction = transaction.transaction_timestamp

            open_loans = [loan for loan in customer_loans if loan.current_balance.is_positive()]
            due_dates = [loan.next_due_date for loan in open_loans if loan.next_due_date]
            next_due = min(due_dates) if due_dates else None

            outstanding = balance.is_positive()
            is_overdue = bool(next_due and outstanding and next_due < today)
            is_due_soon = bool(
                next_due and outstanding and not is_overdue
                and (next_due - today).days <= DUE_SOON_DAYS
            )

            accounts.append(AccountSummary(
                customer=customer,
                balance=balance,
                active_loans=len(open_loans),
                total_loans=len(customer_loans),
                next_due=next_due,
                is_overdue=is_overdue,
                is_due_soon=is_due_soon,
                last_transaction=last_transaction
            ))

        total_outstanding = Money.zero(self.currency)
        for account in accounts:
            if account.balance.is_positive():
                total_outstanding = total_outstanding + account.balance

        stats = OverviewStats(
            total_outstanding=total_outstanding,
            active_accounts=sum(1 for a in accounts if a.balance.is_positive()),
            overdue_accounts=sum(1 for a in accounts if a.is_overdue),
            due_soon_accounts=sum(1 for a in accounts if a.is_due_soon),
            total_accounts=sum(1 for a in accounts if a.total_loans > 0)
        )

        if account_filter == AccountFilter.ACTIVE:
            listed = [a for a in accounts if a.balance.is_positive()]
        elif account_filter == AccountFilter.OVERDUE:
            listed = [a for a in accounts if a.is_overdue]
        elif account_filter == AccountFilter.SETTLED:
            listed = [a for a in accounts if not a.balance.is_positive() and a.total_loans > 0]
        else:
            listed = accounts

        return AccountsOverview(accounts=listed, stats=stats, all_accounts=len(accounts))
