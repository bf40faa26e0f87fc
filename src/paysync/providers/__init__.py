"""Payment provider interface and concrete adapters."""

from paysync.config.settings import AppConfig
from paysync.providers.base import (
    CheckoutOptions,
    CheckoutSession,
    CouponRequest,
    DonationCheckoutOptions,
    PaymentProvider,
    PriceRequest,
    ProviderCoupon,
    ProviderCustomer,
    ProviderError,
    ProviderPrice,
    ProviderProduct,
    WebhookEvent,
    WebhookParseError,
    WebhookSignatureError,
)
from paysync.providers.dodo import DodoProvider
from paysync.providers.stripe_api import StripeProvider


def build_provider(config: AppConfig) -> PaymentProvider:
    """Construct the adapter selected by `config.provider`."""
    if config.provider == "stripe":
        return StripeProvider(config.stripe_secret.get_secret_value())

    api_key = config.dodo_api_key.get_secret_value()
    if not api_key:
        raise ValueError("dodo_api_key not configured")
    return DodoProvider(
        api_key=api_key,
        mode=config.dodo_mode,
        base_url=config.dodo_base_url,
        timeout_seconds=config.provider_timeout_seconds,
    )


__all__ = [
    # Interface
    "PaymentProvider",
    "build_provider",
    # Errors
    "ProviderError",
    "WebhookSignatureError",
    "WebhookParseError",
    # Records
    "ProviderCustomer",
    "ProviderProduct",
    "ProviderPrice",
    "ProviderCoupon",
    "CheckoutSession",
    "WebhookEvent",
    # Requests
    "PriceRequest",
    "CouponRequest",
    "CheckoutOptions",
    "DonationCheckoutOptions",
    # Adapters
    "DodoProvider",
    "StripeProvider",
]
