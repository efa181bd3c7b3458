import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from core.payment_config import ShurjoPayConfig
from models.payment import Payment
from services.gateways.base import (
    GatewayErrorCode,
    PaymentGateway,
    RefundResult,
    SessionResult,
    VerifyResult,
    millis,
)
from services.money import to_decimal
from services.payment_store import LookupStrategy

logger = logging.getLogger(__name__)

NOT_CONFIGURED = (
    "ShurjoPay is not configured. Please set SP_ENDPOINT, SP_USERNAME, SP_PASSWORD, "
    "SP_PREFIX and SP_RETURN_URL environment variables."
)


class ShurjoPayError(Exception):
    def __init__(self, message: str, error_code: str = GatewayErrorCode.PROVIDER):
        super().__init__(message)
        self.error_code = error_code


def _is_true(value: Any) -> bool:
    return str(value).strip().lower() == "true"


class ShurjoPayGateway(PaymentGateway):
    method = "shurjopay"
    display_name = "ShurjoPay"
    description = "Pay with bKash, Nagad, Rocket and local cards via ShurjoPay"

    def __init__(self, config: ShurjoPayConfig, timeout: float = 20.0):
        self.config = config
        self.currency = config.currency
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        c = self.config
        return bool(c.endpoint and c.username and c.password and c.prefix and c.return_url)

    def _post(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            resp = requests.post(f"{self.config.endpoint}{path}", json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.Timeout as exc:
            raise ShurjoPayError(str(exc), GatewayErrorCode.TIMEOUT) from exc
        except requests.RequestException as exc:
            raise ShurjoPayError(str(exc)) from exc
        except ValueError as exc:
            raise ShurjoPayError("Invalid response from ShurjoPay") from exc

    def _get_token(self) -> Tuple[str, str, Any]:
        data = self._post("/api/get_token", {"username": self.config.username, "password": self.config.password})
        token = data.get("token")
        if not token:
            raise ShurjoPayError(data.get("message") or "Unable to obtain ShurjoPay token")
        return token, data.get("token_type") or "Bearer", data.get("store_id")

    def create_session(self, amount, currency, invoice_id, customer_info, options=None) -> SessionResult:
        if not self.enabled:
            return SessionResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)
        invalid = self._check_amount(amount)
        if invalid:
            return invalid
        if not customer_info.get("name") or not customer_info.get("phone"):
            return SessionResult.failure("Customer name and phone are required", GatewayErrorCode.VALIDATION)

        options = options or {}
        amount = to_decimal(amount)
        currency = currency or self.currency
        order_id = f"SP_{millis()}_{invoice_id}"

        try:
            token, token_type, store_id = self._get_token()
            data = self._post(
                "/api/secret-pay",
                {
                    "prefix": self.config.prefix,
                    "token": token,
                    "store_id": store_id,
                    "return_url": options.get("return_url") or self.config.return_url,
                    "cancel_url": options.get("cancel_url") or self.config.cancel_url,
                    "amount": float(amount),
                    "order_id": order_id,
                    "currency": currency,
                    "customer_name": customer_info["name"],
                    "customer_address": customer_info.get("address") or "N/A",
                    "customer_phone": customer_info["phone"],
                    "customer_city": customer_info.get("city") or "Dhaka",
                    "customer_post_code": customer_info.get("postcode") or "1000",
                    "client_ip": options.get("client_ip") or "127.0.0.1",
                    "value1": str(invoice_id),
                },
                headers={"Authorization": f"{token_type} {token}"},
            )
        except ShurjoPayError as exc:
            logger.error("ShurjoPay session request failed for invoice %s: %s", invoice_id, exc)
            return SessionResult.failure(str(exc), exc.error_code)

        checkout_url = data.get("checkout_url")
        if not checkout_url:
            logger.error("ShurjoPay returned no checkout URL for invoice %s: %s", invoice_id, data)
            return SessionResult.failure(data.get("message") or "Invalid response from ShurjoPay", GatewayErrorCode.PROVIDER)

        sp_payment_id = data.get("sp_payment_id")
        return SessionResult(
            success=True,
            transaction_id=sp_payment_id or order_id,
            redirect_url=checkout_url,
            amount=amount,
            currency=currency,
            metadata={
                "order_id": order_id,
                "sp_order_id": data.get("sp_order_id"),
                "sp_payment_id": sp_payment_id,
                "checkout_url": checkout_url,
            },
        )

    def lookup_strategies(self, payload: Mapping[str, Any]) -> List[LookupStrategy]:
        sp_payment_id = payload.get("sp_payment_id")
        sp_order_id = payload.get("sp_order_id") or payload.get("order_id")
        strategies = []
        if sp_payment_id:
            strategies.append(LookupStrategy.transaction_id(sp_payment_id))
            strategies.append(LookupStrategy.metadata("sp_payment_id", sp_payment_id))
        if sp_order_id:
            strategies.append(LookupStrategy.metadata("order_id", sp_order_id))
            strategies.append(LookupStrategy.metadata("sp_order_id", sp_order_id))
        return strategies

    def verify_callback(self, payload: Mapping[str, Any]) -> VerifyResult:
        sp_order_id = payload.get("sp_order_id") or payload.get("order_id")
        sp_payment_id = payload.get("sp_payment_id")
        if not sp_order_id or not sp_payment_id:
            # Unverifiable, handled like a failed signature check
            return VerifyResult.failure("Invalid IPN data", GatewayErrorCode.SIGNATURE, dict(payload))

        sp_code = payload.get("sp_code")
        # Both the success code and the signature flag are required
        successful = str(sp_code) == self.config.success_code and _is_true(payload.get("sp_signature_verify"))
        result = VerifyResult(
            is_valid=True,
            is_successful=successful,
            transaction_id=sp_payment_id,
            order_id=sp_order_id,
            amount=to_decimal(payload.get("sp_amount")),
            currency=payload.get("sp_currency"),
            raw=dict(payload),
            metadata={
                "sp_order_id": sp_order_id,
                "sp_payment_id": sp_payment_id,
                "sp_code": sp_code,
                "sp_message": payload.get("sp_message"),
                "sp_payment_method": payload.get("sp_payment_method"),
                "sp_payment_date": payload.get("sp_payment_date"),
            },
        )
        if not successful:
            result.message = payload.get("sp_message") or f"Payment not completed. Code: {sp_code}"
        return result

    def process_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        sp_payment_id = (payment.metadata_ or {}).get("sp_payment_id") or payment.transaction_id
        if not sp_payment_id:
            return RefundResult.failure("ShurjoPay payment ID not found for this payment", GatewayErrorCode.VALIDATION)
        # ShurjoPay exposes no refund API; the refund is settled out of band
        reference = f"REF_{millis()}"
        logger.info("Recorded ShurjoPay refund %s for %s (%s)", reference, sp_payment_id, amount)
        return RefundResult(
            success=True,
            refund_reference=reference,
            amount=amount,
            raw={"sp_payment_id": sp_payment_id, "refund_amount": str(amount), "refund_reason": reason},
        )
