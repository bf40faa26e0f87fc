"""Table-name constants and column-value enums."""

from enum import Enum


class Table:
    """Database table names."""

    TIERS = "tiers"
    OFFERS = "offers"
    MEMBERS = "members"
    SETTINGS = "settings"
    PROVIDER_CUSTOMERS = "provider_customers"
    PROVIDER_PRODUCTS = "provider_products"
    PROVIDER_PRICES = "provider_prices"
    SCHEMA_MIGRATIONS = "schema_migrations"


class TierKind(str, Enum):
    """Tier kind."""

    FREE = "free"
    PAID = "paid"


class Cadence(str, Enum):
    """Billing cadence of a recurring price."""

    MONTH = "month"
    YEAR = "year"


class PriceKind(str, Enum):
    """Kind of a mirrored provider price."""

    RECURRING = "recurring"
    DONATION = "donation"


class DiscountKind(str, Enum):
    """Offer discount kind."""

    PERCENT = "percent"
    FIXED = "fixed"
    TRIAL = "trial"


class OfferDuration(str, Enum):
    """How long an offer's coupon applies."""

    ONCE = "once"
    REPEATING = "repeating"
    FOREVER = "forever"


class MemberStatus(str, Enum):
    """Member entitlement status."""

    FREE = "free"
    PAID = "paid"


class SettingKey(str, Enum):
    """Publication-wide settings read by the catalog."""

    TITLE = "title"
    DONATIONS_CURRENCY = "donations_currency"
    DONATIONS_SUGGESTED_AMOUNT = "donations_suggested_amount"
