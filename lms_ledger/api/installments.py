"""
Installment plan endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status
from fastapi.responses import JSONResponse
from typing import Optional

from .deps import LoanSystem, get_loan_system, get_actor, http_error
from .schemas import (
    GenerateInstallmentsRequest, UpdateInstallmentsRequest,
    InstallmentPaymentRequest, CreateMissingInstallmentsRequest
)
from ..currency import parse_money
from ..errors import LedgerError
from ..installments import InstallmentEdit, LOCKING_STATUSES, parse_date


router = APIRouter()


@router.get("")
async def list_installments(
    transaction_id: str = Query(..., alias="transactionId"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Installments of a plan in order, with its lock state"""
    try:
        installments = system.schedules.list_for_transaction(transaction_id)
    except LedgerError as e:
        raise http_error(e)

    today = system.schedules.today()
    return {
        "installments": [i.to_response(today) for i in installments],
        "locked": any(i.status in LOCKING_STATUSES for i in installments)
    }


@router.post("/generate", status_code=status.HTTP_201_CREATED)
async def generate_installments(
    request: GenerateInstallmentsRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Create the installment plan for a service transaction"""
    try:
        installments = system.schedules.generate(
            transaction_id=request.transaction_id,
            total_amount=parse_money(request.total_amount, system.currency, allow_zero=False),
            term_months=request.term_months,
            first_due_date=parse_date(request.first_due_date, "firstDueDate"),
            actor=actor
        )
    except LedgerError as e:
        raise http_error(e)

    today = system.schedules.today()
    return {"installments": [i.to_response(today) for i in installments]}


@router.post("/update")
async def update_installments(
    request: UpdateInstallmentsRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Edit due dates and amounts of an unlocked plan"""
    if not request.installments:
        raise HTTPException(status_code=400, detail="Invalid installments data")

    try:
        edits = [
            InstallmentEdit.parse(row.id, row.due_date, row.amount, system.currency)
            for row in request.installments
        ]
        transaction_id = request.transaction_id
        if not transaction_id:
            first = system.schedules.require_installment(edits[0].installment_id)
            transaction_id = first.loan_transaction_id
        result = system.schedules.edit(transaction_id, edits, actor=actor)
    except LedgerError as e:
        raise http_error(e)

    body = {
        "success": result.success,
        "updated": result.updated,
        "failed": [{"id": key, "error": error} for key, error in result.failed.items()],
        "message": f"Updated {len(result.updated)} installment(s)"
    }
    if result.failed:
        body["message"] += f", {len(result.failed)} failed"
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=body)
    return body


@router.post("/reconcile")
async def reconcile_installment_amounts(
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Align paid and skipped installment amounts with what was collected"""
    try:
        summary = system.reconciler.run(actor=actor)
    except LedgerError as e:
        raise http_error(e)

    return {"success": True, **summary.to_dict()}


@router.post("/create-missing")
async def create_missing_installments(
    request: Optional[CreateMissingInstallmentsRequest] = None,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Generate plans for every service transaction that has none"""
    term = system.config.default_term_months
    if request and request.default_term_months:
        term = request.default_term_months

    try:
        summary = system.schedules.create_missing_schedules(term, actor=actor)
    except LedgerError as e:
        raise http_error(e)

    return {"success": True, **summary}


@router.post("/{installment_id}/pay")
async def pay_installment(
    installment_id: str,
    request: InstallmentPaymentRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Record a payment against an installment"""
    try:
        installment = system.schedules.mark_paid(
            installment_id,
            parse_money(request.amount_paid, system.currency, allow_zero=False),
            payment_method=request.payment_method,
            actor=actor,
            paid_on=parse_date(request.paid_date, "paidDate") if request.paid_date else None
        )
    except LedgerError as e:
        raise http_error(e)

    return {
        "success": True,
        "installment": installment.to_response(system.schedules.today())
    }


@router.post("/{installment_id}/skip")
async def skip_installment(
    installment_id: str,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Skip an installment and spread the remaining balance"""
    try:
        result = system.schedules.skip(installment_id, actor=actor)
    except LedgerError as e:
        raise http_error(e)

    today = system.schedules.today()
    return {
        "success": True,
        "installment": result.installment.to_response(today),
        "remainingBalance": str(result.remaining_balance.amount),
        "redistributed": [i.to_response(today) for i in result.redistributed]
    }


@router.delete("")
async def wipe_installments(
    transaction_id: str = Query(..., alias="transactionId"),
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Delete every installment of a plan"""
    try:
        removed = system.schedules.wipe(transaction_id, actor=actor)
    except LedgerError as e:
        raise http_error(e)

    return {"success": True, "deleted": removed}
