from functools import lru_cache
from typing import Any, Dict, Iterable, List

from core.payment_config import PaymentConfig, get_payment_config
from services.errors import ValidationError
from services.gateways.base import PaymentGateway
from services.gateways.cash_on_delivery import CashOnDeliveryGateway
from services.gateways.shurjopay import ShurjoPayGateway
from services.gateways.sslcommerz import SSLCommerzGateway
from services.gateways.stripe_gateway import StripeGateway


class GatewayRegistry:
    def __init__(self, gateways: Iterable[PaymentGateway]):
        self._gateways: Dict[str, PaymentGateway] = {g.method: g for g in gateways}

    def get(self, method: str) -> PaymentGateway:
        gateway = self._gateways.get(method)
        if gateway is None:
            raise ValidationError(f"Unsupported payment method: {method}")
        return gateway

    def __contains__(self, method: str) -> bool:
        return method in self._gateways

    def methods(self) -> List[Dict[str, Any]]:
        return [gateway.describe() for gateway in self._gateways.values()]


def build_registry(config: PaymentConfig) -> GatewayRegistry:
    return GatewayRegistry([
        StripeGateway(config.stripe, config.http_timeout),
        SSLCommerzGateway(config.ssl_commerz, config.backend_url, config.frontend_url, config.http_timeout),
        ShurjoPayGateway(config.shurjopay, config.http_timeout),
        CashOnDeliveryGateway(),
    ])


@lru_cache(maxsize=1)
def get_gateway_registry() -> GatewayRegistry:
    """FastAPI dependency; one registry per process."""
    return build_registry(get_payment_config())
