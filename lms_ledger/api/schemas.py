"""
Pydantic schemas for API requests
"""

from typing import List, Optional, Union, Dict, Any
from pydantic import BaseModel, Field


# Amounts travel as decimal strings (or whole numbers), never floats
Amount = Union[str, int]


class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None


class GrantLoanRequest(BaseModel):
    customer_id: Optional[str] = None
    customer: Optional[CreateCustomerRequest] = None  # Created when customer_id is absent
    total_debt_amount: Amount = Field(..., description="Decimal amount as string")
    term_months: int = Field(..., ge=1)
    first_due_date: Optional[str] = None  # ISO date string
    deposit: Optional[Amount] = None
    payment_method: Optional[str] = None
    generate_schedule: bool = True


class PostPaymentRequest(BaseModel):
    amount: Amount = Field(..., description="Decimal amount as string")
    payment_method: Optional[str] = None
    remark: Optional[str] = None


class PostFeeRequest(BaseModel):
    amount: Amount = Field(..., description="Decimal amount as string")
    remark: Optional[str] = None


class GenerateInstallmentsRequest(BaseModel):
    transaction_id: str = Field(..., alias="transactionId")
    total_amount: Amount = Field(..., alias="totalAmount")
    term_months: int = Field(..., alias="termMonths")
    first_due_date: str = Field(..., alias="firstDueDate")

    model_config = {"populate_by_name": True}


class InstallmentEditModel(BaseModel):
    id: str
    due_date: Optional[str] = None
    amount: Optional[Amount] = None


class UpdateInstallmentsRequest(BaseModel):
    installments: List[InstallmentEditModel]
    transaction_id: Optional[str] = Field(None, alias="transactionId")

    model_config = {"populate_by_name": True}


class InstallmentPaymentRequest(BaseModel):
    amount_paid: Amount = Field(..., alias="amountPaid")
    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    paid_date: Optional[str] = Field(None, alias="paidDate")

    model_config = {"populate_by_name": True}


class CreateMissingInstallmentsRequest(BaseModel):
    default_term_months: Optional[int] = Field(None, alias="defaultTermMonths", ge=1)

    model_config = {"populate_by_name": True}


class RecordAuditLogRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    action: str
    entity_type: str = Field(..., alias="entityType")
    entity_id: str = Field(..., alias="entityId")
    changes: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}
