"""Payment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_phone


class CreateOrderRequest(BaseModel):
    """Schema for starting checkout on a reserved slot"""

    quoteId: str
    firstName: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("quoteId")
    @classmethod
    def validate_quote_id(cls, v):
        if not v or not v.strip():
            raise ValueError("quoteId is required")
        return v.strip()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            normalized = validate_phone(v)
            if not normalized:
                raise ValueError("Invalid phone number")
            return normalized
        return v


class CreateOrderResponse(BaseModel):
    paymentId: int
    transactionId: str
    amount: float
    paymentUrl: str
    params: dict[str, str]
    expiresAt: Optional[datetime] = None


class PaymentResponse(BaseModel):
    """Schema for payment response"""

    id: int
    transactionId: str
    gatewayPaymentId: Optional[str] = None
    psychologistId: int
    packageId: Optional[int] = None
    sessionId: Optional[int] = None
    date: str
    time: str
    amount: float
    currency: str
    status: str
    creditStatus: Optional[str] = None
    completedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


def to_payment_response(payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        transactionId=payment.transaction_id,
        gatewayPaymentId=payment.gateway_payment_id,
        psychologistId=payment.psychologist_id,
        packageId=payment.package_id,
        sessionId=payment.session_id,
        date=payment.scheduled_date.isoformat(),
        time=payment.scheduled_time,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        creditStatus=payment.credit_status,
        completedAt=payment.completed_at,
        createdAt=payment.created_at,
    )
