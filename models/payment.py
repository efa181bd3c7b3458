from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Numeric, JSON, Text, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


PAYMENT_METHODS = ("stripe", "ssl_commerz", "shurjopay", "cash_on_delivery")
PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled", "refunded")

# A record in one of these states blocks a new attempt for the same invoice+method
ACTIVE_PAYMENT_STATUSES = ("pending", "processing", "completed")
# Outcomes from callbacks/IPNs may only be applied to these
OPEN_PAYMENT_STATUSES = ("pending", "processing")
TERMINAL_PAYMENT_STATUSES = ("failed", "cancelled", "refunded")
# Money was collected for the invoice
SETTLED_PAYMENT_STATUSES = ("completed", "refunded")

_ACTIVE_CLAUSE = "status IN ('pending', 'processing', 'completed')"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_active_invoice_method",
            "invoice_id",
            "payment_method",
            unique=True,
            sqlite_where=text(_ACTIVE_CLAUSE),
            postgresql_where=text(_ACTIVE_CLAUSE),
        ),
        Index("ix_payments_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="RESTRICT"), index=True)
    payment_method: Mapped[str] = mapped_column(String(30))
    amount: Mapped[float] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="BDT")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    gateway_response: Mapped[dict] = mapped_column(JSON, default=dict)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refund_amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    invoice = relationship("Invoice", back_populates="payments")
