"""
Customer ledger endpoints
"""

from fastapi import APIRouter, Depends, Query

from .deps import LoanSystem, get_loan_system, http_error
from ..errors import LedgerError


router = APIRouter()


@router.get("")
async def get_customer_ledger(
    customer_id: str = Query(..., alias="customerId"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Chronological ledger with running balance for one customer"""
    try:
        ledger = system.ledger.build_ledger(customer_id)
    except LedgerError as e:
        raise http_error(e)

    return {
        "customer": ledger.customer.to_dict(),
        "ledger": [entry.to_dict() for entry in ledger.entries],
        "balance": str(ledger.balance.amount)
    }
