"""Payment provider interface and the provider-side record shapes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class ProviderError(RuntimeError):
    """A provider API call failed (HTTP error, transport error, timeout)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class WebhookSignatureError(ValueError):
    """Webhook signature missing or does not match the payload."""


class WebhookParseError(ValueError):
    """Webhook payload is not a well-formed event."""


# Provider records
@dataclass
class ProviderCustomer:
    id: str
    email: str | None = None
    name: str | None = None
    deleted: bool = False


@dataclass
class ProviderProduct:
    id: str
    name: str | None = None
    active: bool = True


@dataclass
class ProviderPrice:
    id: str
    currency: str
    unit_amount: int | None  # None for customer-chosen amounts
    active: bool = True
    nickname: str | None = None
    interval: str | None = None  # recurring interval, None for one-time
    preset: int | None = None  # suggested amount of a customer-chosen price

    @property
    def effective_amount(self) -> int:
        """Amount a checkout starts from: the custom-amount preset, else the unit amount."""
        if self.preset is not None:
            return self.preset
        return self.unit_amount or 0


@dataclass
class ProviderCoupon:
    id: str
    name: str | None = None


@dataclass
class CheckoutSession:
    id: str
    url: str


@dataclass
class WebhookEvent:
    """Parsed provider event with its `data.object` payload."""

    type: str
    data: dict[str, Any]
    id: str | None = None


# Requests
@dataclass
class PriceRequest:
    """
    New price under a product.

    `custom_amount` makes the price accept a customer-entered amount with
    `amount` as the preset (0 for no preset).
    """

    product_id: str
    currency: str
    amount: int
    nickname: str
    interval: str | None = None  # None creates a one-time price
    custom_amount: bool = False


@dataclass
class CouponRequest:
    name: str
    duration: str  # 'once' | 'repeating' | 'forever'
    percent_off: int | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration_in_months: int | None = None


@dataclass
class CheckoutOptions:
    """Tier checkout session options. trial_days and coupon_id are never both set."""

    success_url: str
    cancel_url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    trial_days: int | None = None
    coupon_id: str | None = None
    customer_email: str | None = None


@dataclass
class DonationCheckoutOptions:
    price_id: str
    success_url: str
    cancel_url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    customer: ProviderCustomer | None = None
    customer_email: str | None = None
    personal_note: str | None = None


class PaymentProvider(ABC):
    """
    Operations consumed from the payment provider.

    Lookups (`get_*`) and mutations (`create_*`, `update_*`) raise
    ProviderError on failure. Callers decide which failures are fatal.
    """

    @abstractmethod
    async def create_checkout_session(
        self,
        price_id: str,
        customer: Optional[ProviderCustomer],
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """Start a hosted subscription checkout."""

    @abstractmethod
    async def create_donation_checkout_session(
        self, options: DonationCheckoutOptions
    ) -> CheckoutSession:
        """Start a hosted one-time checkout with a donor-chosen amount."""

    @abstractmethod
    async def create_customer(self, email: str, name: Optional[str]) -> ProviderCustomer:
        pass

    @abstractmethod
    async def get_customer(self, customer_id: str) -> ProviderCustomer:
        """Fetch a customer; a removed customer comes back with deleted=True."""

    @abstractmethod
    async def create_product(self, name: str) -> ProviderProduct:
        pass

    @abstractmethod
    async def get_product(self, product_id: str) -> ProviderProduct:
        pass

    @abstractmethod
    async def update_product(self, product_id: str, **fields: Any) -> ProviderProduct:
        pass

    @abstractmethod
    async def create_price(self, request: PriceRequest) -> ProviderPrice:
        pass

    @abstractmethod
    async def get_price(self, price_id: str) -> ProviderPrice:
        pass

    @abstractmethod
    async def update_price(self, price_id: str, **fields: Any) -> ProviderPrice:
        pass

    @abstractmethod
    async def create_coupon(self, request: CouponRequest) -> ProviderCoupon:
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        """Check a webhook signature over the raw request body."""

    @abstractmethod
    def parse_event(self, payload: bytes) -> WebhookEvent:
        """
        Decode a verified webhook body.

        Raises:
            WebhookParseError: If the body is not a well-formed event
        """
