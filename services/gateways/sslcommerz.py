import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import requests

from core.payment_config import SSLCommerzConfig
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
    "SSL Commerz is not configured. Please set SSL_COMMERZ_STORE_ID and "
    "SSL_COMMERZ_STORE_PASSWORD environment variables."
)
VALID_STATUSES = ("VALID", "VALIDATED")


def compute_signature(payload: Mapping[str, Any], verify_key: str, store_password: str) -> str:
    """MD5 over ``k1=v1&k2=v2&...&`` (in ``verify_key`` order) followed by the store password."""
    parts = [f"{key}={payload.get(key, '')}&" for key in verify_key.split(",") if key]
    return hashlib.md5(("".join(parts) + store_password).encode("utf-8")).hexdigest()


def _failure_code(exc: requests.RequestException) -> str:
    if isinstance(exc, requests.Timeout):
        return GatewayErrorCode.TIMEOUT
    return GatewayErrorCode.PROVIDER


class SSLCommerzGateway(PaymentGateway):
    method = "ssl_commerz"
    display_name = "SSL Commerz"
    description = "Pay with local cards, mobile banking and internet banking"

    def __init__(self, config: SSLCommerzConfig, backend_url: str, frontend_url: str, timeout: float = 20.0):
        self.config = config
        self.currency = config.currency
        self.backend_url = backend_url
        self.frontend_url = frontend_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.config.store_id and self.config.store_password)

    @property
    def ipn_url(self) -> str:
        return f"{self.backend_url}/payments/ssl-commerz/ipn"

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
        tran_id = f"SSL_{millis()}_{invoice_id}"
        form = {
            "store_id": self.config.store_id,
            "store_passwd": self.config.store_password,
            "total_amount": str(amount),
            "currency": currency,
            "tran_id": tran_id,
            "product_category": options.get("product_category") or "general",
            "product_name": options.get("product_name") or f"Invoice {invoice_id}",
            "product_profile": "general",
            "success_url": options.get("success_url") or f"{self.frontend_url}/payment/success",
            "fail_url": options.get("fail_url") or f"{self.frontend_url}/payment/failed",
            "cancel_url": options.get("cancel_url") or f"{self.frontend_url}/payment/cancelled",
            "ipn_url": self.ipn_url,
            "cus_name": customer_info.get("name"),
            "cus_email": customer_info.get("email") or "",
            "cus_add1": customer_info.get("address") or "",
            "cus_city": customer_info.get("city") or "",
            "cus_postcode": customer_info.get("postcode") or "",
            "cus_country": customer_info.get("country") or "Bangladesh",
            "cus_phone": customer_info.get("phone"),
            "shipping_method": "NO",
            "num_of_item": 1,
            "value_a": str(invoice_id),
        }

        try:
            resp = requests.post(f"{self.config.base_url}/gwprocess/v4/api.php", data=form, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            logger.error("SSL Commerz session request failed for invoice %s: %s", invoice_id, exc)
            return SessionResult.failure(str(exc), _failure_code(exc))
        except ValueError:
            return SessionResult.failure("Invalid response from SSL Commerz", GatewayErrorCode.PROVIDER)

        if data.get("status") != "SUCCESS" or not data.get("GatewayPageURL"):
            reason = data.get("failedreason") or "Failed to create session"
            logger.error("SSL Commerz rejected session for invoice %s: %s", invoice_id, reason)
            return SessionResult.failure(reason, GatewayErrorCode.PROVIDER)

        return SessionResult(
            success=True,
            transaction_id=tran_id,
            redirect_url=data["GatewayPageURL"],
            amount=amount,
            currency=currency,
            metadata={"session_key": data.get("sessionkey"), "gateway_url": data["GatewayPageURL"]},
        )

    def lookup_strategies(self, payload: Mapping[str, Any]) -> List[LookupStrategy]:
        strategies = []
        if payload.get("tran_id"):
            strategies.append(LookupStrategy.transaction_id(payload["tran_id"]))
        if payload.get("sessionkey"):
            strategies.append(LookupStrategy.metadata("session_key", payload["sessionkey"]))
        return strategies

    def verify_callback(self, payload: Mapping[str, Any]) -> VerifyResult:
        if not self.config.store_password:
            return VerifyResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)

        raw = dict(payload)
        verify_sign = payload.get("verify_sign")
        verify_key = payload.get("verify_key")
        if not verify_sign or not verify_key:
            return VerifyResult.failure("Missing verify_sign or verify_key", GatewayErrorCode.SIGNATURE, raw)

        expected = compute_signature(payload, verify_key, self.config.store_password)
        if not hmac.compare_digest(expected, str(verify_sign)):
            return VerifyResult.failure("Signature mismatch", GatewayErrorCode.SIGNATURE, raw)

        status = payload.get("status")
        result = VerifyResult(
            is_valid=True,
            is_successful=status in VALID_STATUSES,
            transaction_id=payload.get("tran_id"),
            order_id=payload.get("tran_id"),
            amount=to_decimal(payload.get("amount")),
            currency=payload.get("currency"),
            raw=raw,
            metadata={
                key: payload[key]
                for key in ("bank_tran_id", "card_type", "card_brand", "card_issuer", "val_id", "risk_level")
                if payload.get(key)
            },
        )
        if not result.is_successful:
            result.message = payload.get("error") or f"Payment not completed. Status: {status}"
        return result

    def process_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        if not self.enabled:
            return RefundResult.failure(NOT_CONFIGURED, GatewayErrorCode.CONFIGURATION)
        bank_tran_id = (payment.gateway_response or {}).get("bank_tran_id")
        if not bank_tran_id:
            return RefundResult.failure("Bank transaction ID not found for this payment", GatewayErrorCode.VALIDATION)

        params: Dict[str, Any] = {
            "bank_tran_id": bank_tran_id,
            "refund_amount": str(amount),
            "refund_remarks": reason or "Refund requested",
            "refe_id": payment.transaction_id or str(payment.id),
            "store_id": self.config.store_id,
            "store_passwd": self.config.store_password,
            "format": "json",
        }
        try:
            resp = requests.get(
                f"{self.config.base_url}/validator/api/merchantTransIDvalidationAPI.php",
                params=params,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            logger.error("SSL Commerz refund request failed for payment %s: %s", payment.id, exc)
            return RefundResult.failure(str(exc), _failure_code(exc))
        except ValueError:
            return RefundResult.failure("Invalid response from SSL Commerz", GatewayErrorCode.PROVIDER)

        if data.get("APIConnect") != "DONE" or data.get("status") != "success":
            reason_text = data.get("errorReason") or data.get("failedreason") or "Refund failed"
            return RefundResult.failure(reason_text, GatewayErrorCode.PROVIDER)
        return RefundResult(success=True, refund_reference=data.get("refund_ref_id"), amount=amount, raw=data)
