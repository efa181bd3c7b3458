from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from services.errors import NotFoundError
from services.invoices import InvoiceLedger
from schemas.common import Envelope
from schemas.invoice import (
    InvoiceCreate,
    InvoiceOut,
    InvoicePaymentStatusUpdate,
    InvoiceStatusUpdate,
    InvoiceSummaryOut,
    InvoiceUpdate,
)

router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_ledger(db: Session = Depends(get_db)) -> InvoiceLedger:
    return InvoiceLedger(db)


@router.post("/", response_model=Envelope[InvoiceOut], status_code=201)
def create_invoice(data: InvoiceCreate, ledger: InvoiceLedger = Depends(get_ledger)):
    if ledger.db.get(User, data.user_id) is None:
        raise NotFoundError("User not found")
    invoice = ledger.create(data.model_dump())
    return {"success": True, "message": "Invoice created successfully", "data": invoice}


@router.get("/", response_model=Envelope[List[InvoiceOut]])
def list_invoices(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    ledger: InvoiceLedger = Depends(get_ledger),
):
    invoices = ledger.list(status=status, payment_status=payment_status)
    return {"success": True, "message": "Invoices retrieved", "data": invoices}


@router.get("/user/{user_id}", response_model=Envelope[List[InvoiceOut]])
def list_user_invoices(
    user_id: int,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    ledger: InvoiceLedger = Depends(get_ledger),
):
    invoices = ledger.list(user_id=user_id, status=status, payment_status=payment_status)
    return {"success": True, "message": "Invoices retrieved", "data": invoices}


@router.get("/user/{user_id}/summary", response_model=Envelope[InvoiceSummaryOut])
def user_invoice_summary(user_id: int, ledger: InvoiceLedger = Depends(get_ledger)):
    return {"success": True, "message": "Invoice summary retrieved", "data": ledger.summary(user_id)}


@router.get("/{invoice_id}", response_model=Envelope[InvoiceOut])
def get_invoice(invoice_id: int, ledger: InvoiceLedger = Depends(get_ledger)):
    return {"success": True, "message": "Invoice retrieved", "data": ledger.require(invoice_id)}


@router.put("/{invoice_id}", response_model=Envelope[InvoiceOut])
def update_invoice(invoice_id: int, data: InvoiceUpdate, ledger: InvoiceLedger = Depends(get_ledger)):
    invoice = ledger.update(invoice_id, data.model_dump(exclude_unset=True, exclude_none=True))
    return {"success": True, "message": "Invoice updated successfully", "data": invoice}


@router.patch("/{invoice_id}/status", response_model=Envelope[InvoiceOut])
def update_invoice_status(invoice_id: int, data: InvoiceStatusUpdate, ledger: InvoiceLedger = Depends(get_ledger)):
    invoice = ledger.set_status(invoice_id, data.status)
    return {"success": True, "message": "Invoice status updated", "data": invoice}


@router.patch("/{invoice_id}/payment-status", response_model=Envelope[InvoiceOut])
def update_invoice_payment_status(
    invoice_id: int,
    data: InvoicePaymentStatusUpdate,
    ledger: InvoiceLedger = Depends(get_ledger),
):
    invoice = ledger.set_payment_status(invoice_id, data.payment_status)
    return {"success": True, "message": "Invoice payment status updated", "data": invoice}
