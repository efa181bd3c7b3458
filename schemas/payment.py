from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


class PaymentRequestBase(BaseModel):
    invoice_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    user_id: Optional[int] = None


class StripeIntentRequest(PaymentRequestBase):
    pass


class StripeConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class SSLCommerzSessionRequest(PaymentRequestBase):
    customer_info: CustomerInfo
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    cancel_url: Optional[str] = None
    product_category: Optional[str] = None
    product_name: Optional[str] = None


class ShurjoPaySessionRequest(PaymentRequestBase):
    customer_info: CustomerInfo
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    client_ip: Optional[str] = None


class CashOnDeliveryRequest(BaseModel):
    invoice_id: int
    user_id: Optional[int] = None


class PaymentStatusUpdate(BaseModel):
    status: str
    note: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Decimal
    reason: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    user_id: int
    invoice_id: int
    payment_method: str
    amount: float
    currency: str
    status: str
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    gateway_response: Dict[str, Any] = Field(default_factory=dict)
    # Read from the ORM attribute ``metadata_``
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    failure_reason: Optional[str] = None
    payment_date: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentSessionOut(BaseModel):
    payment: PaymentOut
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class PaymentOutcomeOut(BaseModel):
    payment: PaymentOut
    status: str
    applied: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class PaymentMethodOut(BaseModel):
    id: str
    name: str
    description: str
    enabled: bool
    currency: str


class StatusBreakdown(BaseModel):
    status: str
    count: int
    total_amount: float


class MethodBreakdown(BaseModel):
    payment_method: str
    count: int
    total_amount: float


class PaymentStatsOut(BaseModel):
    status_breakdown: List[StatusBreakdown]
    total_payments: int
    total_completed_amount: float
    payment_methods: List[MethodBreakdown]
