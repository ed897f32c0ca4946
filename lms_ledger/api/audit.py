"""
Audit log endpoints
"""

from fastapi import APIRouter, Depends, Query, status
from typing import Optional

from .deps import LoanSystem, get_loan_system, http_error
from .schemas import RecordAuditLogRequest
from ..audit import AuditLogView
from ..errors import LedgerError


router = APIRouter()


@router.get("")
async def get_audit_logs(
    account_id: str = Query(..., alias="accountId"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    system: LoanSystem = Depends(get_loan_system)
):
    """Audit entries for one entity, newest first"""
    try:
        views, total = system.audit_trail.query(
            account_id,
            limit=limit or system.config.audit_page_size,
            offset=offset
        )
    except LedgerError as e:
        raise http_error(e)

    return {"logs": [view.to_dict() for view in views], "total": total}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_audit_log(
    request: RecordAuditLogRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Append an audit entry on behalf of a client"""
    try:
        entry = system.audit_trail.record(
            request.user_id, request.action, request.entity_type,
            request.entity_id, request.changes
        )
    except LedgerError as e:
        raise http_error(e)

    return {"log": AuditLogView(entry).to_dict() if entry else None}


@router.get("/verify")
async def verify_audit_integrity(system: LoanSystem = Depends(get_loan_system)):
    """Check the hash chain of the whole audit log"""
    try:
        return system.audit_trail.verify_integrity()
    except LedgerError as e:
        raise http_error(e)
