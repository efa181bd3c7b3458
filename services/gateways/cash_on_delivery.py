from decimal import Decimal
from typing import Any, Mapping, Optional

from models.payment import Payment
from services.gateways.base import PaymentGateway, RefundResult, SessionResult, VerifyResult, millis
from services.money import to_decimal


class CashOnDeliveryGateway(PaymentGateway):
    method = "cash_on_delivery"
    display_name = "Cash on Delivery"
    description = "Pay when you receive your order"
    currency = "BDT"
    uses_invoice_total = True

    @property
    def enabled(self) -> bool:
        return True

    def create_session(self, amount, currency, invoice_id, customer_info, options=None) -> SessionResult:
        invalid = self._check_amount(amount)
        if invalid:
            return invalid
        return SessionResult(
            success=True,
            amount=to_decimal(amount),
            currency=currency or self.currency,
            metadata={"note": "Payment will be collected upon delivery"},
        )

    def verify_callback(self, payload: Mapping[str, Any]) -> VerifyResult:
        return VerifyResult(is_valid=True, is_successful=True, raw=dict(payload))

    def process_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> RefundResult:
        return RefundResult(success=True, refund_reference=f"COD_REF_{millis()}", amount=amount)
