import logging
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.invoice import Invoice, INVOICE_STATUSES, INVOICE_PAYMENT_STATUSES
from models.payment import Payment, PAYMENT_METHODS, SETTLED_PAYMENT_STATUSES
from services.errors import ConflictError, NotFoundError, ValidationError
from services.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = 30
MONETARY_FIELDS = ("subtotal", "tax", "discount", "total")


def generate_invoice_number() -> str:
    return f"INV-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9].upper()}"


class InvoiceLedger:
    """Read/write access to invoices.

    ``create``, ``update``, ``set_status`` and ``set_payment_status`` commit.
    ``mark_payment_completed`` and ``mark_refunded`` join the caller's
    transaction so the payment layer can commit both sides together.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, invoice_id: int) -> Optional[Invoice]:
        return self.db.get(Invoice, invoice_id)

    def require(self, invoice_id: int) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return invoice

    def list(self, user_id: Optional[int] = None, status: Optional[str] = None,
             payment_status: Optional[str] = None) -> List[Invoice]:
        stmt = select(Invoice)
        if user_id is not None:
            stmt = stmt.where(Invoice.user_id == user_id)
        if status:
            stmt = stmt.where(Invoice.status == status)
        if payment_status:
            stmt = stmt.where(Invoice.payment_status == payment_status)
        stmt = stmt.order_by(Invoice.created_at.desc(), Invoice.id.desc())
        return list(self.db.execute(stmt).scalars())

    def create(self, data: Dict[str, Any]) -> Invoice:
        if data.get("payment_method") not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")

        subtotal = to_decimal(data.get("subtotal"), ZERO)
        tax = to_decimal(data.get("tax"), ZERO)
        discount = to_decimal(data.get("discount"), ZERO)
        total = to_decimal(data["total"], ZERO) if data.get("total") is not None else subtotal + tax - discount
        if min(subtotal, tax, discount, total) < 0:
            raise ValidationError("Invoice amounts must not be negative")

        order_date = data.get("order_date") or datetime.utcnow()
        invoice = Invoice(
            user_id=data["user_id"],
            invoice_number=generate_invoice_number(),
            order_date=order_date,
            due_date=data.get("due_date") or order_date + timedelta(days=INVOICE_DUE_DAYS),
            subtotal=subtotal,
            tax=tax,
            discount=discount,
            total=total,
            payment_method=data["payment_method"],
            shipping_address=data.get("shipping_address"),
            billing_address=data.get("billing_address"),
            notes=data.get("notes"),
        )
        self.db.add(invoice)
        self.db.commit()
        self.db.refresh(invoice)
        logger.info("Created invoice %s (%s) total=%s", invoice.id, invoice.invoice_number, invoice.total)
        return invoice

    def update(self, invoice_id: int, changes: Dict[str, Any]) -> Invoice:
        invoice = self.require(invoice_id)
        touches_money = any(field in changes for field in MONETARY_FIELDS)
        if touches_money and (invoice.payment_status == "completed" or self.has_settled_payment(invoice.id)):
            raise ConflictError("Invoice amounts cannot change after payment is completed")
        if "status" in changes and changes["status"] not in INVOICE_STATUSES:
            raise ValidationError("Invalid status")
        if "payment_method" in changes and changes["payment_method"] not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")

        amounts = {field: to_decimal(getattr(invoice, field), ZERO) for field in MONETARY_FIELDS}
        amounts.update({field: to_decimal(changes[field], ZERO) for field in MONETARY_FIELDS if field in changes})
        if touches_money and "total" not in changes:
            amounts["total"] = amounts["subtotal"] + amounts["tax"] - amounts["discount"]
        if min(amounts.values()) < 0:
            raise ValidationError("Invoice amounts must not be negative")

        for field, value in changes.items():
            if field not in MONETARY_FIELDS:
                setattr(invoice, field, value)
        if touches_money:
            for field, value in amounts.items():
                setattr(invoice, field, value)

        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def has_settled_payment(self, invoice_id: int) -> bool:
        stmt = select(Payment.id).where(
            Payment.invoice_id == invoice_id,
            Payment.status.in_(SETTLED_PAYMENT_STATUSES),
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def set_status(self, invoice_id: int, status: str) -> Invoice:
        if status not in INVOICE_STATUSES:
            raise ValidationError("Invalid status")
        invoice = self.require(invoice_id)
        invoice.status = status
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def set_payment_status(self, invoice_id: int, payment_status: str) -> Invoice:
        if payment_status not in INVOICE_PAYMENT_STATUSES:
            raise ValidationError("Invalid payment status")
        invoice = self.require(invoice_id)
        if payment_status != "completed" and self.has_settled_payment(invoice.id):
            raise ConflictError("Invoice has a completed payment; refund it instead")
        invoice.payment_status = payment_status
        self.db.commit()
        self.db.refresh(invoice)
        return invoice

    def mark_payment_completed(self, invoice_id: int) -> None:
        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(payment_status="completed", status="confirmed")
        )

    def mark_refunded(self, invoice_id: int) -> None:
        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(status="refunded")
        )

    def summary(self, user_id: int) -> Dict[str, Any]:
        summary = {
            "total_invoices": 0,
            "total_amount": Decimal("0.00"),
            "paid_invoices": 0,
            "paid_amount": Decimal("0.00"),
            "pending_invoices": 0,
            "pending_amount": Decimal("0.00"),
            "overdue_invoices": 0,
            "overdue_amount": Decimal("0.00"),
        }
        for invoice in self.list(user_id=user_id):
            total = to_decimal(invoice.total, ZERO)
            summary["total_invoices"] += 1
            summary["total_amount"] += total
            if invoice.payment_status == "completed":
                summary["paid_invoices"] += 1
                summary["paid_amount"] += total
            elif invoice.status == "overdue":
                summary["overdue_invoices"] += 1
                summary["overdue_amount"] += total
            elif invoice.status == "pending":
                summary["pending_invoices"] += 1
                summary["pending_amount"] += total
        return {key: float(value) if isinstance(value, Decimal) else value for key, value in summary.items()}
