"""Exception hierarchy for the loan ledger core."""

from typing import List, Optional


class LedgerError(Exception):
    """Base exception for all ledger and installment errors."""


class NotFoundError(LedgerError):
    """Raised when a customer, loan, transaction or installment does not exist."""


class ConflictError(LedgerError):
    """Raised when a concurrent mutation won the race for the same row."""


class PlanLockedError(LedgerError):
    """Raised when an installment plan is edited after money has moved."""

    def __init__(self, transaction_id: str, paid_ids: Optional[List[str]] = None):
        self.transaction_id = transaction_id
        self.paid_ids = paid_ids or []
        super().__init__(
            f"Installment plan for transaction {transaction_id} is locked: "
            f"{len(self.paid_ids)} installment(s) already paid or partially paid"
        )


class AlreadyScheduledError(LedgerError):
    """Raised when a schedule is generated twice for the same transaction."""


class DataUnavailableError(LedgerError):
    """Raised when the storage backend fails to read or write."""


class ValidationError(LedgerError, ValueError):
    """Raised for malformed amounts, dates or identifiers."""
