"""
Payment Record Store.

All reads and writes of ``payments`` rows go through here. Status changes are
conditional updates so that two deliveries of the same provider outcome
(browser callback and IPN, say) can only apply it once.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.payment import Payment, ACTIVE_PAYMENT_STATUSES
from services.errors import ConflictError
from services.money import ZERO, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LookupStrategy:
    """One way of locating a payment from a provider reference.

    ``field`` is ``transaction_id``, ``payment_intent_id`` or ``metadata``;
    for ``metadata`` the JSON key to compare is given in ``key``.
    """

    field: str
    value: str
    key: Optional[str] = None

    @classmethod
    def transaction_id(cls, value: str) -> "LookupStrategy":
        return cls("transaction_id", value)

    @classmethod
    def payment_intent_id(cls, value: str) -> "LookupStrategy":
        return cls("payment_intent_id", value)

    @classmethod
    def metadata(cls, key: str, value: str) -> "LookupStrategy":
        return cls("metadata", value, key)

    def criterion(self):
        if self.field == "transaction_id":
            return Payment.transaction_id == self.value
        if self.field == "payment_intent_id":
            return Payment.payment_intent_id == self.value
        if self.field == "metadata" and self.key:
            return Payment.metadata_[self.key].as_string() == self.value
        raise ValueError(f"Unknown lookup field: {self.field}")

    def __str__(self) -> str:
        name = f"metadata.{self.key}" if self.field == "metadata" else self.field
        return f"{name}={self.value}"


class PaymentStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: int) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def find_active(self, invoice_id: int, payment_method: str) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.invoice_id == invoice_id,
            Payment.payment_method == payment_method,
            Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
        )
        return self.db.execute(stmt).scalars().first()

    def add(self, payment: Payment) -> Payment:
        """Insert a new attempt. The partial unique index is the final word on duplicates."""
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning(
                "Rejected duplicate payment for invoice %s via %s: %s",
                payment.invoice_id, payment.payment_method, exc.orig,
            )
            raise ConflictError("Payment already exists for this invoice") from exc
        return payment

    def find_by_lookup(self, payment_method: str, strategies: Sequence[LookupStrategy]) -> Optional[Payment]:
        """Try each strategy in order; the first match wins."""
        for strategy in strategies:
            stmt = select(Payment).where(Payment.payment_method == payment_method, strategy.criterion())
            payment = self.db.execute(stmt).scalars().first()
            if payment is not None:
                logger.debug("Matched payment %s by %s", payment.id, strategy)
                return payment
        return None

    def transition(
        self,
        payment: Payment,
        from_statuses: Iterable[str],
        to_status: str,
        **changes: Any,
    ) -> bool:
        """Move ``payment`` to ``to_status`` only if it is still in ``from_statuses``.

        Returns True when this call changed the row. Does not commit.
        """
        values = {Payment.status: to_status}
        for attr, value in changes.items():
            values[getattr(Payment, attr)] = value
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(tuple(from_statuses)))
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.refresh(payment)
        return result.rowcount == 1

    def list_for_user(self, user_id: int) -> List[Payment]:
        stmt = select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc(), Payment.id.desc())
        return list(self.db.execute(stmt).scalars())

    def list_all(self) -> List[Payment]:
        stmt = select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc())
        return list(self.db.execute(stmt).scalars())

    def stats(self) -> Dict[str, Any]:
        by_status = self.db.execute(
            select(Payment.status, func.count(Payment.id), func.sum(Payment.amount)).group_by(Payment.status)
        ).all()
        by_method = self.db.execute(
            select(Payment.payment_method, func.count(Payment.id), func.sum(Payment.amount)).group_by(Payment.payment_method)
        ).all()
        total_payments = self.db.execute(select(func.count(Payment.id))).scalar() or 0
        completed_amount = self.db.execute(
            select(func.sum(Payment.amount)).where(Payment.status == "completed")
        ).scalar()

        return {
            "status_breakdown": [
                {"status": status, "count": count, "total_amount": float(to_decimal(total, ZERO))}
                for status, count, total in by_status
            ],
            "total_payments": total_payments,
            "total_completed_amount": float(to_decimal(completed_amount, ZERO)),
            "payment_methods": [
                {"payment_method": method, "count": count, "total_amount": float(to_decimal(total, ZERO))}
                for method, count, total in by_method
            ],
        }
