"""
Loan endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status
from typing import Optional

from .deps import LoanSystem, get_loan_system, get_actor, http_error
from .schemas import GrantLoanRequest, PostPaymentRequest, PostFeeRequest
from ..currency import parse_money
from ..errors import LedgerError
from ..installments import add_months, parse_date
from ..loans import TransactionType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def grant_loan(
    request: GrantLoanRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Grant a loan, creating the customer and installment plan when asked"""
    if not request.customer_id and not request.customer:
        raise HTTPException(status_code=400, detail="customer_id or customer is required")

    try:
        total = parse_money(request.total_debt_amount, system.currency, allow_zero=False)
        deposit = parse_money(request.deposit, system.currency) if request.deposit is not None else None
        first_due = parse_date(request.first_due_date, "first_due_date") if request.first_due_date else None

        customer_id = request.customer_id
        if not customer_id:
            customer = system.loan_book.create_customer(
                **request.customer.model_dump(), actor=actor
            )
            customer_id = customer.id

        loan = system.loan_book.grant_loan(
            customer_id=customer_id,
            total_debt_amount=total,
            term_months=request.term_months,
            first_due_date=first_due,
            deposit=deposit,
            payment_method=request.payment_method,
            actor=actor
        )
        service = system.loan_book.transactions_for_loans([loan.id], [TransactionType.SERVICE])[0]

        installments = []
        if request.generate_schedule and loan.current_balance.is_positive():
            installments = system.schedules.generate(
                service.id,
                loan.current_balance,
                loan.term_months,
                first_due or add_months(service.transaction_timestamp.date(), 1),
                actor=actor
            )
    except LedgerError as e:
        raise http_error(e)

    today = system.schedules.today()
    return {
        "loan": loan.to_dict(),
        "customer_id": customer_id,
        "service_transaction_id": service.id,
        "installments": [i.to_response(today) for i in installments],
        "message": "Loan granted successfully"
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details with its transactions"""
    try:
        loan = system.loan_book.require_loan(loan_id)
        transactions = system.loan_book.transactions_for_loans([loan_id])
    except LedgerError as e:
        raise http_error(e)

    return {
        "loan": loan.to_dict(),
        "transactions": [t.to_dict() for t in transactions]
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def post_payment(
    loan_id: str,
    request: PostPaymentRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Post a payment against a loan"""
    try:
        transaction = system.loan_book.post_payment(
            loan_id,
            parse_money(request.amount, system.currency, allow_zero=False),
            payment_method=request.payment_method,
            remark=request.remark,
            actor=actor
        )
        loan = system.loan_book.require_loan(loan_id)
    except LedgerError as e:
        raise http_error(e)

    return {
        "transaction": transaction.to_dict(),
        "current_balance": str(loan.current_balance.amount),
        "status": loan.status.value
    }


@router.post("/{loan_id}/fees", status_code=status.HTTP_201_CREATED)
async def post_fee(
    loan_id: str,
    request: PostFeeRequest,
    system: LoanSystem = Depends(get_loan_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Charge a fee on a loan"""
    try:
        transaction = system.loan_book.post_fee(
            loan_id,
            parse_money(request.amount, system.currency, allow_zero=False),
            remark=request.remark,
            actor=actor
        )
        loan = system.loan_book.require_loan(loan_id)
    except LedgerError as e:
        raise http_error(e)

    return {
        "transaction": transaction.to_dict(),
        "current_balance": str(loan.current_balance.amount),
        "status": loan.status.value
    }
