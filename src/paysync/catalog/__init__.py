"""Local catalog entities and the stores holding the provider mirror cache."""

from paysync.catalog.base import (
    CouponState,
    CustomerLink,
    CustomerLinkStore,
    Member,
    MemberRepository,
    Offer,
    OfferStore,
    PriceLink,
    PriceLinkStore,
    ProductLink,
    ProductLinkStore,
    SettingsStore,
    Tier,
    TierRepository,
)

__all__ = [
    # Entities
    "Tier",
    "Offer",
    "CouponState",
    "Member",
    # Cache rows
    "CustomerLink",
    "ProductLink",
    "PriceLink",
    # Store interfaces
    "CustomerLinkStore",
    "ProductLinkStore",
    "PriceLinkStore",
    "OfferStore",
    "MemberRepository",
    "TierRepository",
    "SettingsStore",
]
