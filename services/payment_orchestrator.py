"""
Payment Orchestrator.

Drives one payment attempt per (invoice, method) through

    pending -> processing -> completed -> refunded
    pending | processing -> failed | cancelled

Gateways only describe outcomes; every state change, the matching invoice
update and the receipt email happen here.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from models.payment import Payment, PAYMENT_STATUSES, OPEN_PAYMENT_STATUSES
from models.user import User
from services.email import send_payment_receipt
from services.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentError,
    ProviderError,
    ProviderTimeoutError,
    SignatureError,
    ValidationError,
)
from services.gateways.base import GatewayErrorCode, SessionResult, VerifyResult
from services.gateways.registry import GatewayRegistry
from services.invoices import InvoiceLedger
from services.money import to_decimal
from services.payment_store import PaymentStore

logger = logging.getLogger(__name__)

IPN_ACK = "OK"

_ERRORS_BY_CODE = {
    GatewayErrorCode.VALIDATION: ValidationError,
    GatewayErrorCode.CONFIGURATION: ConfigurationError,
    GatewayErrorCode.PROVIDER: ProviderError,
    GatewayErrorCode.TIMEOUT: ProviderTimeoutError,
    GatewayErrorCode.SIGNATURE: SignatureError,
}


def gateway_error(error_code: Optional[str], message: Optional[str]) -> PaymentError:
    """Turn an adapter failure into the matching exception."""
    return _ERRORS_BY_CODE.get(error_code, ProviderError)(message or "Payment gateway error")


@dataclass
class PaymentSession:
    payment: Payment
    session: SessionResult


@dataclass
class PaymentOutcome:
    payment: Payment
    # False when the outcome had already been applied by an earlier delivery
    applied: bool
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.payment.status


Notifier = Callable[[Payment, Any, Optional[User]], None]


class PaymentOrchestrator:
    def __init__(
        self,
        db: Session,
        gateways: GatewayRegistry,
        ledger: Optional[InvoiceLedger] = None,
        store: Optional[PaymentStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.ledger = ledger or InvoiceLedger(db)
        self.store = store or PaymentStore(db)
        self.notifier = notifier or send_payment_receipt

    # Initiation

    def initiate(self, invoice_id: int, method: str, details: Optional[Mapping[str, Any]] = None) -> PaymentSession:
        details = details or {}
        gateway = self.gateways.get(method)
        invoice = self.ledger.require(invoice_id)

        user_id = details.get("user_id") or invoice.user_id
        if self.db.get(User, user_id) is None:
            raise NotFoundError("User not found")

        if gateway.uses_invoice_total or details.get("amount") is None:
            amount = to_decimal(invoice.total)
        else:
            amount = to_decimal(details["amount"])
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        if self.store.find_active(invoice.id, method) is not None:
            raise ConflictError("Payment already exists for this invoice")

        currency = details.get("currency") or gateway.currency
        customer_info = dict(details.get("customer_info") or {})
        customer_info.setdefault("user_id", user_id)

        session = gateway.create_session(amount, currency, invoice.id, customer_info, details.get("options"))
        if not session.success:
            logger.warning("%s session for invoice %s failed: %s", method, invoice.id, session.error)
            raise gateway_error(session.error_code, session.error)

        payment = Payment(
            user_id=user_id,
            invoice_id=invoice.id,
            payment_method=method,
            amount=session.amount or amount,
            currency=(session.currency or currency).upper(),
            status="pending",
            transaction_id=session.transaction_id,
            payment_intent_id=session.payment_intent_id,
            gateway_response={},
            metadata_=dict(session.metadata),
        )
        self.store.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info("Created %s payment %s for invoice %s (%s %s)", method, payment.id, invoice.id, payment.amount, payment.currency)
        return PaymentSession(payment=payment, session=session)

    # Provider outcomes

    def handle_callback(self, method: str, payload: Mapping[str, Any]) -> PaymentOutcome:
        gateway = self.gateways.get(method)
        strategies = gateway.lookup_strategies(payload)
        if not strategies:
            raise ValidationError("Callback does not identify a payment")

        payment = self.store.find_by_lookup(method, strategies)
        if payment is None:
            raise NotFoundError("Payment not found")

        result = gateway.verify_callback(payload)
        return self._apply_verification(payment, result)

    def handle_ipn(self, method: str, payload: Mapping[str, Any]) -> str:
        """Process a server-to-server notification. Always acknowledges unless the signature is bad."""
        try:
            outcome = self.handle_callback(method, payload)
            logger.info(
                "%s IPN for payment %s: %s (applied=%s)", method, outcome.payment.id, outcome.status, outcome.applied
            )
        except SignatureError:
            raise
        except PaymentError as exc:
            logger.warning("%s IPN not applied: %s", method, exc.message)
        return IPN_ACK

    def handle_webhook(self, method: str, body: bytes, headers: Mapping[str, str]) -> str:
        gateway = self.gateways.get(method)
        event = gateway.parse_webhook(body, headers)
        if not event.is_valid:
            if event.error_code == GatewayErrorCode.SIGNATURE:
                logger.warning("Rejected %s webhook: %s", method, event.error)
                raise SignatureError(event.error or "Invalid webhook signature")
            logger.error("%s webhook not processed: %s", method, event.error)
            return IPN_ACK
        if event.payload is None:
            logger.debug("Ignoring %s webhook event %s", method, event.event_type)
            return IPN_ACK
        return self.handle_ipn(method, event.payload)

    def _apply_verification(self, payment: Payment, result: VerifyResult) -> PaymentOutcome:
        method = payment.payment_method
        if not result.is_valid:
            if result.error_code == GatewayErrorCode.PROVIDER:
                # The provider answered with a failure: that is a real outcome
                logger.error("%s verification failed for payment %s: %s", method, payment.id, result.error)
                applied = self._fail(payment, result.error, result.raw)
                return PaymentOutcome(payment, applied, result.error or "Payment verification failed")
            if result.error_code in (GatewayErrorCode.SIGNATURE, None):
                logger.warning("Rejected %s callback for payment %s: %s", method, payment.id, result.error)
                raise SignatureError(result.error or "Invalid signature")
            raise gateway_error(result.error_code, result.error)

        if result.is_successful:
            changes: Dict[str, Any] = {"gateway_response": result.raw}
            if not payment.transaction_id and result.transaction_id:
                changes["transaction_id"] = result.transaction_id
            applied = self._complete(payment, OPEN_PAYMENT_STATUSES, result.metadata, **changes)
            return PaymentOutcome(payment, applied, "Payment completed successfully", dict(result.metadata))

        if result.is_pending:
            applied = self.store.transition(
                payment,
                ("pending",),
                "processing",
                gateway_response=result.raw,
                metadata_=self._merged_metadata(payment, result.metadata),
            )
            self.db.commit()
            if applied:
                logger.info("Payment %s is processing", payment.id)
            return PaymentOutcome(payment, applied, "Payment is processing")

        message = result.message or "Payment failed"
        applied = self._fail(payment, message, result.raw, result.metadata)
        return PaymentOutcome(payment, applied, message)

    def _complete(self, payment: Payment, from_statuses, metadata: Optional[Mapping[str, Any]] = None, **changes) -> bool:
        applied = self.store.transition(
            payment,
            from_statuses,
            "completed",
            payment_date=datetime.utcnow(),
            metadata_=self._merged_metadata(payment, metadata),
            **changes,
        )
        if not applied:
            logger.info("Payment %s already %s; completion not re-applied", payment.id, payment.status)
            return False

        self.ledger.mark_payment_completed(payment.invoice_id)
        self.db.commit()
        self.db.refresh(payment)
        logger.info("Payment %s completed; invoice %s confirmed", payment.id, payment.invoice_id)
        self._send_receipt(payment)
        return True

    def _fail(self, payment: Payment, reason: Optional[str], raw: Optional[Dict[str, Any]] = None,
              metadata: Optional[Mapping[str, Any]] = None) -> bool:
        applied = self.store.transition(
            payment,
            OPEN_PAYMENT_STATUSES,
            "failed",
            failure_reason=reason,
            gateway_response=raw or {},
            metadata_=self._merged_metadata(payment, metadata),
        )
        self.db.commit()
        if applied:
            logger.info("Payment %s failed: %s", payment.id, reason)
        return applied

    def _send_receipt(self, payment: Payment) -> None:
        invoice = self.ledger.get(payment.invoice_id)
        user = self.db.get(User, payment.user_id)
        self.notifier(payment, invoice, user)

    @staticmethod
    def _merged_metadata(payment: Payment, extra: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        merged = dict(payment.metadata_ or {})
        merged.update(extra or {})
        return merged

    # Refunds and operator actions

    def refund(self, payment_id: int, amount: Any, reason: Optional[str] = None) -> Payment:
        payment = self.get(payment_id)
        if payment.status != "completed":
            raise ValidationError("Only completed payments can be refunded")
        amount = to_decimal(amount)
        if amount is None or amount <= 0 or amount > to_decimal(payment.amount):
            raise ValidationError("Refund amount must be greater than 0 and not exceed the payment amount")

        gateway = self.gateways.get(payment.payment_method)
        result = gateway.process_refund(payment, amount, reason)
        if not result.success:
            logger.error("Refund of payment %s failed: %s", payment.id, result.error)
            raise gateway_error(result.error_code, result.error)

        applied = self.store.transition(
            payment,
            ("completed",),
            "refunded",
            refund_amount=amount,
            refunded_at=datetime.utcnow(),
            metadata_=self._merged_metadata(payment, {"refund_reason": reason, "refund_id": result.refund_reference}),
        )
        if not applied:
            self.db.rollback()
            logger.error(
                "Refund %s succeeded at the gateway but payment %s is now %s",
                result.refund_reference, payment.id, payment.status,
            )
            raise ConflictError("Payment was modified while the refund was processed")

        self.ledger.mark_refunded(payment.invoice_id)
        self.db.commit()
        self.db.refresh(payment)
        logger.info("Refunded %s of payment %s (ref %s)", amount, payment.id, result.refund_reference)
        return payment

    def update_status(self, payment_id: int, status: str, note: Optional[str] = None) -> Payment:
        if status not in PAYMENT_STATUSES:
            raise ValidationError("Invalid status")
        if status == "refunded":
            raise ValidationError("Use the refund endpoint to refund a payment")

        payment = self.get(payment_id)
        note_metadata = {"status_note": note} if note else {}

        if payment.status == status:
            if note_metadata:
                payment.metadata_ = self._merged_metadata(payment, note_metadata)
                self.db.commit()
                self.db.refresh(payment)
            return payment

        if payment.status not in OPEN_PAYMENT_STATUSES:
            raise ConflictError(f"Cannot change status of a {payment.status} payment")

        if status == "completed":
            applied = self._complete(payment, OPEN_PAYMENT_STATUSES, note_metadata)
        else:
            changes: Dict[str, Any] = {"metadata_": self._merged_metadata(payment, note_metadata)}
            if status == "failed":
                changes["failure_reason"] = note or "Marked as failed"
            applied = self.store.transition(payment, OPEN_PAYMENT_STATUSES, status, **changes)
            self.db.commit()

        if not applied:
            raise ConflictError(f"Cannot change status of a {payment.status} payment")
        logger.info("Payment %s set to %s by operator", payment.id, status)
        return payment

    # Queries

    def get(self, payment_id: int) -> Payment:
        payment = self.store.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def list_for_user(self, user_id: int) -> List[Payment]:
        return self.store.list_for_user(user_id)

    def list_all(self) -> List[Payment]:
        return self.store.list_all()

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()
