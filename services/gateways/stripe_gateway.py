import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

import stripe

from core.payment_config import StripeConfig
from models.payment import Payment
from services.gateways.base import (
    GatewayErrorCode,
    PaymentGateway,
    RefundResult,
    SessionResult,
    VerifyResult,
    WebhookResult,
)
from services.money import to_decimal
from services.payment_store import LookupStrategy

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable."


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def _error_code(exc: Exception) -> str:
    # Connection failures (including timeouts) and throttling are transient, anything else is a provider answer
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return GatewayErrorCode.TIMEOUT
    return GatewayErrorCode.PROVIDER


def _error_message(exc: Exception) -> str:
    return getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__


class StripeGateway(PaymentGateway):
    method = "stripe"
    display_name = "Stripe"
    description = "Pay with Credit/Debit Card via Stripe"

    def __init__(self, config: StripeConfig, timeout: float = 20.0):
        self.config = config
        self.currency = config.currency
        self.timeout = timeout
        self.client = None
        if config.secret_key:
            self.client = stripe.StripeClient(
                config.secret_key,
                http_client=stripe.RequestsClient(timeout=timeout),
            )

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def create_session(self, amount, currency, invoice_id, customer_info, options=None) -> SessionResult:
        if not self.enabled:
            return SessionResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)
        invalid = self._check_amount(amount)
        if invalid:
            return invalid

        amount = to_decimal(amount)
        metadata = {"invoice_id": str(invoice_id), "payment_method": self.method}
        if customer_info.get("user_id") is not None:
            metadata["user_id"] = str(customer_info["user_id"])

        try:
            intent = self.client.v1.payment_intents.create(params={
                "amount": to_minor_units(amount),
                "currency": (currency or self.currency).lower(),
                "metadata": metadata,
                "automatic_payment_methods": {"enabled": True},
            })
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent creation failed for invoice %s: %s", invoice_id, exc)
            return SessionResult.failure(_error_message(exc), _error_code(exc))

        return SessionResult(
            success=True,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=from_minor_units(intent.amount),
            currency=intent.currency,
            metadata={"stripe_client_secret": intent.client_secret},
        )

    def lookup_strategies(self, payload: Mapping[str, Any]) -> List[LookupStrategy]:
        intent_id = payload.get("payment_intent_id") or payload.get("payment_intent")
        if not intent_id:
            return []
        return [LookupStrategy.transaction_id(intent_id), LookupStrategy.payment_intent_id(intent_id)]

    def verify_callback(self, payload: Mapping[str, Any]) -> VerifyResult:
        """Ask Stripe for the intent's status instead of trusting the caller."""
        if not self.enabled:
            return VerifyResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)
        intent_id = payload.get("payment_intent_id") or payload.get("payment_intent")
        if not intent_id:
            return VerifyResult.failure("Payment intent ID is required", GatewayErrorCode.VALIDATION)

        try:
            intent = self.client.v1.payment_intents.retrieve(intent_id, params={"expand": ["latest_charge"]})
        except stripe.StripeError as exc:
            logger.error("Stripe payment intent lookup failed for %s: %s", intent_id, exc)
            return VerifyResult.failure(_error_message(exc), _error_code(exc))

        raw: Dict[str, Any] = {
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
        }
        charge = getattr(intent, "latest_charge", None)
        receipt_url = None if charge is None or isinstance(charge, str) else getattr(charge, "receipt_url", None)
        metadata = {"receipt_url": receipt_url, "stripe_payment_method": getattr(intent, "payment_method", None)}

        result = VerifyResult(
            is_valid=True,
            transaction_id=intent.id,
            order_id=intent.id,
            amount=from_minor_units(intent.amount),
            currency=intent.currency,
            raw=raw,
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
        if intent.status == "succeeded":
            result.is_successful = True
        elif intent.status == "processing":
            result.is_pending = True
        else:
            result.message = f"Payment not completed. Status: {intent.status}"
        return result

    def process_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        if not self.enabled:
            return RefundResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)
        if not payment.payment_intent_id:
            return RefundResult.failure("Payment has no Stripe payment intent", GatewayErrorCode.VALIDATION)

        try:
            refund = self.client.v1.refunds.create(params={
                "payment_intent": payment.payment_intent_id,
                "amount": to_minor_units(amount),
                "metadata": {"reason": reason or "", "payment_id": str(payment.id)},
            })
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for payment %s: %s", payment.id, exc)
            return RefundResult.failure(_error_message(exc), _error_code(exc))

        if refund.status in ("failed", "canceled"):
            return RefundResult.failure(f"Refund {refund.status}", GatewayErrorCode.PROVIDER)
        return RefundResult(
            success=True,
            refund_reference=refund.id,
            amount=from_minor_units(refund.amount),
            raw={"id": refund.id, "status": refund.status, "amount": refund.amount},
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        if not self.config.webhook_secret:
            return WebhookResult(
                is_valid=False,
                error="Stripe webhook secret not configured",
                error_code=GatewayErrorCode.CONFIGURATION,
            )
        signature = headers.get("stripe-signature")
        if not signature:
            return WebhookResult(is_valid=False, error="Missing Stripe signature", error_code=GatewayErrorCode.SIGNATURE)

        try:
            event = stripe.Webhook.construct_event(body, signature, self.config.webhook_secret)
        except ValueError as exc:
            return WebhookResult(is_valid=False, error=f"Invalid payload: {exc}", error_code=GatewayErrorCode.SIGNATURE)
        except stripe.SignatureVerificationError as exc:
            return WebhookResult(is_valid=False, error=f"Invalid signature: {exc}", error_code=GatewayErrorCode.SIGNATURE)

        event_type = event.type
        if not event_type.startswith("payment_intent."):
            return WebhookResult(is_valid=True, event_type=event_type)
        intent = event.data.object
        return WebhookResult(is_valid=True, event_type=event_type, payload={"payment_intent_id": intent.id})
