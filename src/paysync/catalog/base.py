"""Local catalog entities, provider cache rows, and their store interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from paysync.db.models import TierKind


# Local catalog entities
@dataclass
class Tier:
    """Subscription level with a price per billing cadence."""

    id: str
    name: str
    currency: str | None  # ISO code, any case
    monthly_price: int | None  # minor units
    yearly_price: int | None  # minor units
    trial_days: int = 0
    kind: str = "paid"  # 'free' | 'paid'

    @property
    def is_paid(self) -> bool:
        return self.kind == TierKind.PAID.value

    def price_for(self, cadence: str) -> int:
        """Price in minor units for 'month' or 'year'."""
        if cadence == "month":
            amount = self.monthly_price
        elif cadence == "year":
            amount = self.yearly_price
        else:
            raise ValueError(f"Unknown cadence: {cadence}")
        if amount is None:
            raise ValueError(f"Tier {self.id} has no {cadence}ly price")
        return amount


@dataclass
class Offer:
    """Promotional modifier on a tier's price."""

    id: str
    tier_id: str
    name: str
    discount_type: str  # 'percent' | 'fixed' | 'trial'
    amount: int  # percent, minor units, or trial days depending on discount_type
    duration: str = "once"  # 'once' | 'repeating' | 'forever'
    duration_in_months: int | None = None
    currency: str | None = None
    coupon_id: str | None = None


@dataclass
class CouponState:
    """Coupon-related columns of a stored offer."""

    coupon_id: str | None
    discount_type: str


@dataclass
class Member:
    """Member identity and entitlement state."""

    id: str
    email: str
    name: str | None = None
    status: str = "free"  # 'free' | 'paid'
    subscribed: bool = False
    tier_id: str | None = None


# Provider cache rows
@dataclass
class CustomerLink:
    """Mapping of a member to one provider customer."""

    member_id: str
    customer_id: str
    email: str | None = None
    name: str | None = None


@dataclass
class ProductLink:
    """Mapping of a tier (None for the donation product) to a provider product."""

    tier_id: str | None
    product_id: str


@dataclass
class PriceLink:
    """Cached provider price. `id` is the local row id, set once persisted."""

    price_id: str
    product_id: str
    currency: str
    amount: int
    interval: str | None  # 'month' | 'year' | None for one-time
    kind: str  # 'recurring' | 'donation'
    active: bool = True
    nickname: str | None = None
    id: int | None = None


# Store interfaces
class CustomerLinkStore(ABC):
    """Cache of member → provider customer rows."""

    @abstractmethod
    async def list_for_member(self, member_id: str) -> list[CustomerLink]:
        """All rows for a member, oldest first."""

    @abstractmethod
    async def find_member_id(self, customer_id: str) -> Optional[str]:
        """Member owning a provider customer id, if any row maps it."""

    @abstractmethod
    async def add(self, link: CustomerLink) -> None:
        """Insert a row."""


class ProductLinkStore(ABC):
    """Cache of tier → provider product rows."""

    @abstractmethod
    async def list_for_tier(self, tier_id: Optional[str]) -> list[ProductLink]:
        """All rows for a tier, or the donation rows when tier_id is None."""

    @abstractmethod
    async def get_by_product_id(self, product_id: str) -> Optional[ProductLink]:
        """Row for a provider product id."""

    @abstractmethod
    async def add(self, link: ProductLink) -> None:
        """Insert a row."""


class PriceLinkStore(ABC):
    """Cache of provider price rows."""

    @abstractmethod
    async def find(
        self,
        *,
        kind: str,
        currency: str,
        amount: int,
        interval: Optional[str] = None,
        product_id: Optional[str] = None,
        active: bool = True,
    ) -> list[PriceLink]:
        """
        Rows matching the given values, oldest first.

        `interval` matches exactly (None matches one-time rows). `product_id`
        of None means any product.
        """

    @abstractmethod
    async def get_by_price_id(self, price_id: str) -> Optional[PriceLink]:
        """Row for a provider price id."""

    @abstractmethod
    async def add(self, link: PriceLink) -> PriceLink:
        """Insert a row and return it with its local id."""

    @abstractmethod
    async def set_active(self, row_id: int, active: bool) -> None:
        """Update a row's active flag."""

    @abstractmethod
    async def set_nickname(self, row_id: int, nickname: str) -> None:
        """Update a row's nickname."""


class OfferStore(ABC):
    """Offer rows and the offer subsystem's full view of an offer."""

    @abstractmethod
    async def get_coupon_state(self, offer_id: str) -> Optional[CouponState]:
        """Stored coupon id and discount kind, or None for an unknown offer."""

    @abstractmethod
    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        """Full offer details."""

    @abstractmethod
    async def set_coupon_id(self, offer_id: str, coupon_id: str) -> None:
        """Persist the provider coupon created for an offer."""


class MemberRepository(ABC):
    """Member lookup and entitlement mutation."""

    @abstractmethod
    async def get(self, member_id: str) -> Optional[Member]:
        """Member by id."""

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[Member]:
        """Member by email (case-insensitive)."""

    @abstractmethod
    async def update(self, member_id: str, fields: dict[str, Any]) -> None:
        """
        Set the given fields on a member.

        Allowed keys: status, subscribed, tier_id, email, name.
        """


class TierRepository(ABC):
    """Tier lookup."""

    @abstractmethod
    async def get(self, tier_id: str) -> Optional[Tier]:
        """Tier by id."""


class SettingsStore(ABC):
    """Publication-wide settings."""

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Setting value, or None when unset."""
