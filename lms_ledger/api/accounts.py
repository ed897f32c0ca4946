"""
Account overview endpoints
"""

from fastapi import APIRouter, Depends, Query

from .deps import LoanSystem, get_loan_system, http_error
from ..errors import LedgerError


router = APIRouter()


@router.get("")
async def list_accounts(
    account_filter: str = Query("active", alias="filter"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Customer accounts with balances and due flags, plus book-wide totals"""
    try:
        overview = system.ledger.accounts_overview(account_filter)
    except LedgerError as e:
        raise http_error(e)

    return {
        "accounts": [account.to_dict() for account in overview.accounts],
        "stats": overview.stats.to_dict(),
        "allAccounts": overview.all_accounts
    }
