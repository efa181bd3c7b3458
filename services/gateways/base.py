"""
Gateway adapter contract.

Every provider integration implements the same three operations and reports
the outcome through a result dataclass instead of raising. The orchestrator
decides what a failure means; adapters only describe it.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from models.payment import Payment
from services.money import to_decimal
from services.payment_store import LookupStrategy


class GatewayErrorCode:
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    SIGNATURE = "signature"


@dataclass
class SessionResult:
    success: bool
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    # Persisted into Payment.metadata
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: str, error_code: str) -> "SessionResult":
        return cls(success=False, error=error, error_code=error_code)


@dataclass
class VerifyResult:
    is_valid: bool
    is_successful: bool = False
    is_pending: bool = False
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    # Merged into Payment.metadata when the outcome is applied
    metadata: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: str, error_code: str, raw: Optional[Dict[str, Any]] = None) -> "VerifyResult":
        return cls(is_valid=False, error=error, error_code=error_code, raw=raw or {})


@dataclass
class RefundResult:
    success: bool
    refund_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: str, error_code: str) -> "RefundResult":
        return cls(success=False, error=error, error_code=error_code)


@dataclass
class WebhookResult:
    is_valid: bool
    event_type: Optional[str] = None
    # Callback-shaped payload to feed into the regular outcome handling,
    # None when the event is irrelevant to payments
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def millis() -> int:
    return int(time.time() * 1000)


class PaymentGateway(ABC):
    method: str = ""
    display_name: str = ""
    description: str = ""
    currency: str = "BDT"
    # Cash on delivery always charges the full invoice total
    uses_invoice_total: bool = False

    @property
    @abstractmethod
    def enabled(self) -> bool:
        ...

    @abstractmethod
    def create_session(
        self,
        amount: Decimal,
        currency: str,
        invoice_id: int,
        customer_info: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> SessionResult:
        ...

    @abstractmethod
    def verify_callback(self, payload: Mapping[str, Any]) -> VerifyResult:
        ...

    @abstractmethod
    def process_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        ...

    def lookup_strategies(self, payload: Mapping[str, Any]) -> List[LookupStrategy]:
        """Ordered ways to find the payment a callback refers to."""
        return []

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        return WebhookResult(
            is_valid=False,
            error=f"{self.display_name} does not send webhooks",
            error_code=GatewayErrorCode.VALIDATION,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.method,
            "name": self.display_name,
            "description": self.description,
            "enabled": self.enabled,
            "currency": self.currency,
        }

    def _check_amount(self, amount: Any) -> Optional[SessionResult]:
        value = to_decimal(amount)
        if value is None or value <= 0:
            return SessionResult.failure("Amount must be greater than 0", GatewayErrorCode.VALIDATION)
        return None
