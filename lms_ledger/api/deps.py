"""
Shared API dependencies: the loan system instance, the acting employee and
error translation
"""

from typing import Optional
from fastapi import Header, HTTPException, status

from ..system import LoanSystem
from ..errors import (
    LedgerError, NotFoundError, ConflictError, PlanLockedError,
    AlreadyScheduledError, DataUnavailableError, ValidationError
)


_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Process-wide loan system, built from configuration on first use"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system


def get_actor(x_employee_id: Optional[str] = Header(None)) -> Optional[str]:
    """Employee performing the request, taken from the X-Employee-Id header"""
    return x_employee_id


_STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PlanLockedError, status.HTTP_409_CONFLICT),
    (AlreadyScheduledError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (DataUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
]


def http_error(error: LedgerError) -> HTTPException:
    """Translate a ledger error into the matching HTTP error"""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
