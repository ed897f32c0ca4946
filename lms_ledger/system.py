"""
Composition root: builds one storage backend and wires every component to it
"""

from typing import Optional
import logging

from .config import LMSConfig, get_config
from .currency import Currency
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .loans import LoanBook
from .ledger import LedgerEngine
from .installments import InstallmentScheduleManager
from .reconciler import InstallmentAmountReconciler


logger = logging.getLogger(__name__)


def create_storage(config: LMSConfig) -> StorageInterface:
    """Storage backend selected by configuration"""
    if config.storage_backend == "memory":
        return InMemoryStorage()
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class LoanSystem:
    """Loan ledger core with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LMSConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.currency = Currency[self.config.currency]

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.loan_book = LoanBook(self.storage, self.audit_trail, self.currency)
        self.ledger = LedgerEngine(self.loan_book, self.currency)
        self.schedules = InstallmentScheduleManager(
            self.storage, self.loan_book, self.audit_trail,
            max_term_months=self.config.max_term_months
        )
        self.reconciler = InstallmentAmountReconciler(self.storage, self.audit_trail)

        logger.info(
            "Loan system ready (storage=%s, currency=%s)",
            type(self.storage).__name__, self.currency.code
        )

    def close(self) -> None:
        self.storage.close()
