"""Pytest fixtures: in-memory catalog stores and a recording payment provider.

Nothing here touches Postgres or the network. The asyncpg stores themselves
are exercised against a mocked pool in test_postgres.py.
"""

import asyncio
import hashlib
import hmac
import itertools
import json
from typing import Any, Optional

import pytest

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
from paysync.payments.catalog import CatalogReconciler
from paysync.payments.checkout import CheckoutLinkBuilder
from paysync.payments.customers import CustomerLinkResolver
from paysync.payments.projector import SubscriptionStateProjector
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
)

WEBHOOK_SECRET = "whsec_test"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Hex HMAC-SHA256 signature as sent in the webhook header."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


# Stores
class FakeCustomerLinkStore(CustomerLinkStore):
    def __init__(self):
        self.rows: list[CustomerLink] = []

    async def list_for_member(self, member_id: str) -> list[CustomerLink]:
        return [r for r in self.rows if r.member_id == member_id]

    async def find_member_id(self, customer_id: str) -> Optional[str]:
        for row in self.rows:
            if row.customer_id == customer_id:
                return row.member_id
        return None

    async def add(self, link: CustomerLink) -> None:
        self.rows.append(link)


class FakeProductLinkStore(ProductLinkStore):
    def __init__(self):
        self.rows: list[ProductLink] = []

    async def list_for_tier(self, tier_id: Optional[str]) -> list[ProductLink]:
        return [r for r in self.rows if r.tier_id == tier_id]

    async def get_by_product_id(self, product_id: str) -> Optional[ProductLink]:
        return next((r for r in self.rows if r.product_id == product_id), None)

    async def add(self, link: ProductLink) -> None:
        self.rows.append(link)


class FakePriceLinkStore(PriceLinkStore):
    def __init__(self):
        self.rows: list[PriceLink] = []
        self._ids = itertools.count(1)

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
        return [
            r
            for r in self.rows
            if r.kind == kind
            and r.currency.lower() == currency.lower()
            and r.amount == amount
            and r.interval == interval
            and (product_id is None or r.product_id == product_id)
            and r.active == active
        ]

    async def get_by_price_id(self, price_id: str) -> Optional[PriceLink]:
        return next((r for r in self.rows if r.price_id == price_id), None)

    async def add(self, link: PriceLink) -> PriceLink:
        link.id = next(self._ids)
        self.rows.append(link)
        return link

    async def set_active(self, row_id: int, active: bool) -> None:
        self._row(row_id).active = active

    async def set_nickname(self, row_id: int, nickname: str) -> None:
        self._row(row_id).nickname = nickname

    def _row(self, row_id: int) -> PriceLink:
        return next(r for r in self.rows if r.id == row_id)

    def seed(self, **fields: Any) -> PriceLink:
        link = PriceLink(**fields)
        link.id = next(self._ids)
        self.rows.append(link)
        return link


class FakeOfferStore(OfferStore):
    def __init__(self):
        self.offers: dict[str, Offer] = {}

    async def get_coupon_state(self, offer_id: str) -> Optional[CouponState]:
        offer = self.offers.get(offer_id)
        if offer is None:
            return None
        return CouponState(coupon_id=offer.coupon_id, discount_type=offer.discount_type)

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        return self.offers.get(offer_id)

    async def set_coupon_id(self, offer_id: str, coupon_id: str) -> None:
        self.offers[offer_id].coupon_id = coupon_id


class FakeMemberRepository(MemberRepository):
    def __init__(self):
        self.members: dict[str, Member] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []

    async def get(self, member_id: str) -> Optional[Member]:
        return self.members.get(member_id)

    async def get_by_email(self, email: str) -> Optional[Member]:
        return next(
            (m for m in self.members.values() if m.email.lower() == email.lower()), None
        )

    async def update(self, member_id: str, fields: dict[str, Any]) -> None:
        self.updates.append((member_id, dict(fields)))
        member = self.members[member_id]
        for key, value in fields.items():
            setattr(member, key, value)


class FakeTierRepository(TierRepository):
    def __init__(self):
        self.tiers: dict[str, Tier] = {}

    async def get(self, tier_id: str) -> Optional[Tier]:
        return self.tiers.get(tier_id)


class FakeSettingsStore(SettingsStore):
    def __init__(self, values: Optional[dict[str, Any]] = None):
        self.values = dict(values or {})

    async def get(self, key: str) -> Any:
        return self.values.get(key)


# Provider
class FakeProvider(PaymentProvider):
    """
    In-memory provider recording every call.

    Creation calls yield to the event loop once so concurrent resolutions
    interleave the way they do against a real provider.

    `fail_lookups` holds ids whose get_* call raises ProviderError.
    `fail_mutations` holds method names whose calls raise ProviderError.
    """

    def __init__(self):
        self.customers: dict[str, ProviderCustomer] = {}
        self.products: dict[str, ProviderProduct] = {}
        self.prices: dict[str, ProviderPrice] = {}
        self.coupons: dict[str, ProviderCoupon] = {}
        self.calls: list[tuple[str, Any]] = []
        self.checkout_requests: list[tuple[str, Optional[ProviderCustomer], CheckoutOptions]] = []
        self.donation_requests: list[DonationCheckoutOptions] = []
        self.price_requests: list[PriceRequest] = []
        self.coupon_requests: list[CouponRequest] = []
        self.fail_lookups: set[str] = set()
        self.fail_mutations: set[str] = set()
        self._ids = itertools.count(1)

    def _record(self, method: str, arg: Any = None) -> None:
        self.calls.append((method, arg))
        if method in self.fail_mutations:
            raise ProviderError(f"{method} failed", status=500)

    def _lookup(self, method: str, object_id: str) -> None:
        self.calls.append((method, object_id))
        if object_id in self.fail_lookups:
            raise ProviderError(f"{method} {object_id} unavailable", status=503)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def create_checkout_session(
        self,
        price_id: str,
        customer: Optional[ProviderCustomer],
        options: CheckoutOptions,
    ) -> CheckoutSession:
        self._record("create_checkout_session", price_id)
        self.checkout_requests.append((price_id, customer, options))
        session_id = f"cs_{next(self._ids)}"
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def create_donation_checkout_session(
        self, options: DonationCheckoutOptions
    ) -> CheckoutSession:
        self._record("create_donation_checkout_session", options.price_id)
        self.donation_requests.append(options)
        session_id = f"cs_{next(self._ids)}"
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def create_customer(self, email: str, name: Optional[str]) -> ProviderCustomer:
        self._record("create_customer", email)
        await asyncio.sleep(0)
        customer = ProviderCustomer(id=f"cus_{next(self._ids)}", email=email, name=name)
        self.customers[customer.id] = customer
        return customer

    async def get_customer(self, customer_id: str) -> ProviderCustomer:
        self._lookup("get_customer", customer_id)
        if customer_id not in self.customers:
            return ProviderCustomer(id=customer_id, deleted=True)
        return self.customers[customer_id]

    async def create_product(self, name: str) -> ProviderProduct:
        self._record("create_product", name)
        await asyncio.sleep(0)
        product = ProviderProduct(id=f"prod_{next(self._ids)}", name=name)
        self.products[product.id] = product
        return product

    async def get_product(self, product_id: str) -> ProviderProduct:
        self._lookup("get_product", product_id)
        if product_id not in self.products:
            raise ProviderError(f"No such product: {product_id}", status=404)
        return self.products[product_id]

    async def update_product(self, product_id: str, **fields: Any) -> ProviderProduct:
        self._record("update_product", (product_id, fields))
        product = self.products[product_id]
        if "name" in fields:
            product.name = fields["name"]
        return product

    async def create_price(self, request: PriceRequest) -> ProviderPrice:
        self._record("create_price", request)
        await asyncio.sleep(0)
        self.price_requests.append(request)
        price = ProviderPrice(
            id=f"price_{next(self._ids)}",
            currency=request.currency,
            unit_amount=None if request.custom_amount else request.amount,
            nickname=request.nickname,
            interval=request.interval,
            preset=(request.amount or None) if request.custom_amount else None,
        )
        self.prices[price.id] = price
        return price

    async def get_price(self, price_id: str) -> ProviderPrice:
        self._lookup("get_price", price_id)
        if price_id not in self.prices:
            raise ProviderError(f"No such price: {price_id}", status=404)
        return self.prices[price_id]

    async def update_price(self, price_id: str, **fields: Any) -> ProviderPrice:
        self._record("update_price", (price_id, fields))
        price = self.prices[price_id]
        if "nickname" in fields:
            price.nickname = fields["nickname"]
        return price

    async def create_coupon(self, request: CouponRequest) -> ProviderCoupon:
        self._record("create_coupon", request)
        self.coupon_requests.append(request)
        coupon = ProviderCoupon(id=f"coupon_{next(self._ids)}", name=request.name)
        self.coupons[coupon.id] = coupon
        return coupon

    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not secret:
            return False
        return hmac.compare_digest(sign(payload, secret), signature)

    def parse_event(self, payload: bytes) -> WebhookEvent:
        try:
            raw = json.loads(payload)
        except ValueError as e:
            raise WebhookParseError("Invalid webhook payload") from e
        if not isinstance(raw, dict) or "type" not in raw:
            raise WebhookParseError("Webhook payload has no event type")
        return WebhookEvent(type=raw["type"], data=raw["data"]["object"], id=raw.get("id"))

    # Seeding helpers for pre-existing provider state
    def add_product(self, product_id: str, active: bool = True, name: str = "") -> ProviderProduct:
        product = ProviderProduct(id=product_id, name=name, active=active)
        self.products[product_id] = product
        return product

    def add_price(self, price_id: str, **fields: Any) -> ProviderPrice:
        price = ProviderPrice(id=price_id, **fields)
        self.prices[price_id] = price
        return price


# Fixtures
@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def customer_links() -> FakeCustomerLinkStore:
    return FakeCustomerLinkStore()


@pytest.fixture
def product_links() -> FakeProductLinkStore:
    return FakeProductLinkStore()


@pytest.fixture
def price_links() -> FakePriceLinkStore:
    return FakePriceLinkStore()


@pytest.fixture
def offers() -> FakeOfferStore:
    return FakeOfferStore()


@pytest.fixture
def members() -> FakeMemberRepository:
    return FakeMemberRepository()


@pytest.fixture
def tiers() -> FakeTierRepository:
    return FakeTierRepository()


@pytest.fixture
def settings() -> FakeSettingsStore:
    return FakeSettingsStore(
        {
            "title": "The Daily",
            "donations_currency": "USD",
            "donations_suggested_amount": 500,
        }
    )


@pytest.fixture
def gold_tier() -> Tier:
    return Tier(
        id="tier_gold",
        name="Gold",
        currency="USD",
        monthly_price=500,
        yearly_price=5000,
        trial_days=7,
    )


@pytest.fixture
def catalog(provider, product_links, price_links, offers, settings) -> CatalogReconciler:
    return CatalogReconciler(provider, product_links, price_links, offers, settings)


@pytest.fixture
def customer_resolver(provider, customer_links) -> CustomerLinkResolver:
    return CustomerLinkResolver(provider, customer_links)


@pytest.fixture
def checkout(provider, catalog, customer_resolver) -> CheckoutLinkBuilder:
    return CheckoutLinkBuilder(provider, catalog, customer_resolver)


@pytest.fixture
def projector(members, customer_links, price_links, product_links, tiers) -> SubscriptionStateProjector:
    return SubscriptionStateProjector(members, customer_links, price_links, product_links, tiers)
