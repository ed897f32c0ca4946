"""
Installment Amount Reconciler

One-shot maintenance pass that rewrites the `amount` of historical
installments so it reflects what was collected: paid rows take their
amount_paid, skipped rows drop to zero, everything else is left alone.
Safe to re-run; a second run with no payment activity writes nothing.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import logging

from .currency import Money
from .storage import StorageInterface, storage_errors
from .audit import AuditTrail, AuditAction
from .installments import Installment, InstallmentStatus


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    """Counts of actual per-row outcomes"""
    total: int = 0
    updated_paid: int = 0
    updated_skipped: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def writes(self) -> int:
        return self.updated_paid + self.updated_skipped

    @property
    def message(self) -> str:
        message = (
            f"Migration complete: {self.updated_paid} paid installments updated, "
            f"{self.updated_skipped} skipped installments updated, "
            f"{self.unchanged} left unchanged"
        )
        if self.failed:
            message += f", {self.failed} failed"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "updatedPaid": self.updated_paid,
            "updatedSkipped": self.updated_skipped,
            "skipped": self.unchanged,
            "failed": self.failed,
            "message": self.message
        }


def reconciled_amount(installment: Installment) -> Optional[Money]:
    """Amount an installment should carry, or None when it keeps its own"""
    if installment.status == InstallmentStatus.PAID and installment.amount_paid.is_positive():
        return installment.amount_paid
    if installment.status == InstallmentStatus.SKIPPED:
        return Money.zero(installment.amount.currency)
    return None


class InstallmentAmountReconciler:
    """
    Aligns installment amounts with payment history across every plan
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_installments"

    def run(self, actor: Optional[str] = None) -> ReconciliationSummary:
        """
        Reconcile every installment

        Rows are written only when their amount differs from the target.
        A row whose write fails is logged and counted as failed; the batch
        carries on with the next row.

        Raises:
            DataUnavailableError: If the installments cannot be read
        """
        with storage_errors("Reading installments"):
            rows = self.storage.load_all(self.table_name)

        summary = ReconciliationSummary(total=len(rows))
        logger.info("Reconciling %d installments", summary.total)

        for row in rows:
            try:
                installment = Installment.from_dict(row)
            except (KeyError, ValueError, ArithmeticError) as e:
                logger.error("Unreadable installment %s: %s", row.get('id'), e)
                summary.failed += 1
                continue

            target = reconciled_amount(installment)
            if target is None or target == installment.amount:
                summary.unchanged += 1
                continue

            try:
                written = self.storage.update(self.table_name, installment.id, {
                    'amount': str(target.amount),
                    'updated_at': datetime.now(timezone.utc).isoformat()
                })
            except Exception as e:
                logger.error("Error updating installment %s: %s", installment.id, e)
                summary.failed += 1
                continue

            if not written:
                logger.error("Installment %s disappeared during reconciliation", installment.id)
                summary.failed += 1
                continue

            logger.info(
                "Updated installment %s: %s -> %s (%s)",
                installment.id, installment.amount, target, installment.status.value
            )
            if installment.status == InstallmentStatus.PAID:
                summary.updated_paid += 1
            else:
                summary.updated_skipped += 1

        if summary.writes or summary.failed:
            self.audit_trail.record(
                actor, AuditAction.AMOUNTS_RECONCILED, "loan_installments", "all",
                {
                    "total": summary.total,
                    "updated_paid": summary.updated_paid,
                    "updated_skipped": summary.updated_skipped,
                    "failed": summary.failed
                }
            )
        logger.info(summary.message)
        return summary
