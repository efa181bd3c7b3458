"""
Immutable provider configuration.

Built once from :mod:`core.config` settings and handed to each gateway
adapter, so adapters never read environment variables themselves.
"""
from dataclasses import dataclass
from functools import lru_cache

from core.config import Settings, settings


SSL_COMMERZ_SANDBOX_URL = "https://sandbox.sslcommerz.com"
SSL_COMMERZ_LIVE_URL = "https://securepay.sslcommerz.com"


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str = ""
    publishable_key: str = ""
    webhook_secret: str = ""
    currency: str = "usd"


@dataclass(frozen=True)
class SSLCommerzConfig:
    store_id: str = ""
    store_password: str = ""
    sandbox: bool = False
    currency: str = "BDT"

    @property
    def base_url(self) -> str:
        return SSL_COMMERZ_SANDBOX_URL if self.sandbox else SSL_COMMERZ_LIVE_URL


@dataclass(frozen=True)
class ShurjoPayConfig:
    endpoint: str = ""
    username: str = ""
    password: str = ""
    prefix: str = ""
    return_url: str = ""
    cancel_url: str = ""
    success_code: str = "0000"
    currency: str = "BDT"


@dataclass(frozen=True)
class PaymentConfig:
    stripe: StripeConfig
    ssl_commerz: SSLCommerzConfig
    shurjopay: ShurjoPayConfig
    backend_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    http_timeout: float = 20.0

    @classmethod
    def from_settings(cls, s: Settings) -> "PaymentConfig":
        return cls(
            stripe=StripeConfig(
                secret_key=s.STRIPE_SECRET_KEY,
                publishable_key=s.STRIPE_PUBLISHABLE_KEY,
                webhook_secret=s.STRIPE_WEBHOOK_SECRET,
                currency=s.STRIPE_CURRENCY,
            ),
            ssl_commerz=SSLCommerzConfig(
                store_id=s.SSL_COMMERZ_STORE_ID,
                store_password=s.SSL_COMMERZ_STORE_PASSWORD,
                sandbox=s.SSL_COMMERZ_SANDBOX,
            ),
            shurjopay=ShurjoPayConfig(
                endpoint=s.SP_ENDPOINT.rstrip("/"),
                username=s.SP_USERNAME,
                password=s.SP_PASSWORD,
                prefix=s.SP_PREFIX,
                return_url=s.SP_RETURN_URL,
                cancel_url=s.SP_CANCEL_URL or s.SP_RETURN_URL,
                success_code=s.SP_SUCCESS_CODE,
            ),
            backend_url=s.BACKEND_URL.rstrip("/"),
            frontend_url=s.FRONTEND_URL.rstrip("/"),
            http_timeout=s.PAYMENT_HTTP_TIMEOUT,
        )


@lru_cache(maxsize=1)
def get_payment_config() -> PaymentConfig:
    return PaymentConfig.from_settings(settings)
