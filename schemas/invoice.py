from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class InvoiceCreate(BaseModel):
    user_id: int
    subtotal: Decimal = Field(ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Optional[Decimal] = Field(default=None, ge=0)
    payment_method: str
    order_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class InvoiceUpdate(BaseModel):
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    payment_method: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[datetime] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class InvoiceStatusUpdate(BaseModel):
    status: str


class InvoicePaymentStatusUpdate(BaseModel):
    payment_status: str


class InvoiceOut(BaseModel):
    id: int
    user_id: int
    invoice_number: str
    order_date: datetime
    due_date: datetime
    status: str
    subtotal: float
    tax: float
    discount: float
    total: float
    payment_method: str
    payment_status: str
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceSummaryOut(BaseModel):
    total_invoices: int
    total_amount: float
    paid_invoices: int
    paid_amount: float
    pending_invoices: int
    pending_amount: float
    overdue_invoices: int
    overdue_amount: float
