"""asyncpg-backed catalog stores."""

import logging
from typing import Any, Optional

import asyncpg

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
from paysync.db.models import Table
from paysync.db.pool import get_pool

logger = logging.getLogger(__name__)

_MEMBER_COLUMNS = ("status", "subscribed", "tier_id", "email", "name")


def _price_from_row(row: asyncpg.Record) -> PriceLink:
    return PriceLink(
        id=row["id"],
        price_id=row["price_id"],
        product_id=row["product_id"],
        currency=row["currency"],
        amount=row["amount"],
        interval=row["interval"],
        kind=row["kind"],
        active=row["active"],
        nickname=row["nickname"],
    )


def _member_from_row(row: asyncpg.Record) -> Member:
    return Member(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        status=row["status"],
        subscribed=row["subscribed"],
        tier_id=row["tier_id"],
    )


class PgCustomerLinkStore(CustomerLinkStore):
    """provider_customers table."""

    async def list_for_member(self, member_id: str) -> list[CustomerLink]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT member_id, customer_id, email, name
                FROM {Table.PROVIDER_CUSTOMERS}
                WHERE member_id = $1
                ORDER BY id
                """,
                member_id,
            )
        return [
            CustomerLink(
                member_id=row["member_id"],
                customer_id=row["customer_id"],
                email=row["email"],
                name=row["name"],
            )
            for row in rows
        ]

    async def find_member_id(self, customer_id: str) -> Optional[str]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                f"""
                SELECT member_id
                FROM {Table.PROVIDER_CUSTOMERS}
                WHERE customer_id = $1
                ORDER BY id
                LIMIT 1
                """,
                customer_id,
            )

    async def add(self, link: CustomerLink) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.PROVIDER_CUSTOMERS} (member_id, customer_id, email, name)
                VALUES ($1, $2, $3, $4)
                """,
                link.member_id,
                link.customer_id,
                link.email,
                link.name,
            )


class PgProductLinkStore(ProductLinkStore):
    """provider_products table."""

    async def list_for_tier(self, tier_id: Optional[str]) -> list[ProductLink]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT tier_id, product_id
                FROM {Table.PROVIDER_PRODUCTS}
                WHERE tier_id IS NOT DISTINCT FROM $1
                ORDER BY id
                """,
                tier_id,
            )
        return [ProductLink(tier_id=row["tier_id"], product_id=row["product_id"]) for row in rows]

    async def get_by_product_id(self, product_id: str) -> Optional[ProductLink]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT tier_id, product_id
                FROM {Table.PROVIDER_PRODUCTS}
                WHERE product_id = $1
                ORDER BY id
                LIMIT 1
                """,
                product_id,
            )
        if row is None:
            return None
        return ProductLink(tier_id=row["tier_id"], product_id=row["product_id"])

    async def add(self, link: ProductLink) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO {Table.PROVIDER_PRODUCTS} (tier_id, product_id) VALUES ($1, $2)",
                link.tier_id,
                link.product_id,
            )


class PgPriceLinkStore(PriceLinkStore):
    """provider_prices table."""

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
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, price_id, product_id, currency, amount, interval, kind, active, nickname
                FROM {Table.PROVIDER_PRICES}
                WHERE kind = $1
                  AND lower(currency) = lower($2)
                  AND amount = $3
                  AND interval IS NOT DISTINCT FROM $4
                  AND ($5::text IS NULL OR product_id = $5)
                  AND active = $6
                ORDER BY id
                """,
                kind,
                currency,
                amount,
                interval,
                product_id,
                active,
            )
        return [_price_from_row(row) for row in rows]

    async def get_by_price_id(self, price_id: str) -> Optional[PriceLink]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT id, price_id, product_id, currency, amount, interval, kind, active, nickname
                FROM {Table.PROVIDER_PRICES}
                WHERE price_id = $1
                ORDER BY id
                LIMIT 1
                """,
                price_id,
            )
        return _price_from_row(row) if row is not None else None

    async def add(self, link: PriceLink) -> PriceLink:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row_id = await conn.fetchval(
                f"""
                INSERT INTO {Table.PROVIDER_PRICES}
                    (price_id, product_id, currency, amount, interval, kind, active, nickname)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING id
                """,
                link.price_id,
                link.product_id,
                link.currency,
                link.amount,
                link.interval,
                link.kind,
                link.active,
                link.nickname,
            )
        link.id = row_id
        return link

    async def set_active(self, row_id: int, active: bool) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {Table.PROVIDER_PRICES} SET active = $2, updated_at = now() WHERE id = $1",
                row_id,
                active,
            )

    async def set_nickname(self, row_id: int, nickname: str) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {Table.PROVIDER_PRICES} SET nickname = $2, updated_at = now() WHERE id = $1",
                row_id,
                nickname,
            )


class PgOfferStore(OfferStore):
    """offers table."""

    async def get_coupon_state(self, offer_id: str) -> Optional[CouponState]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT provider_coupon_id, discount_type FROM {Table.OFFERS} WHERE id = $1",
                offer_id,
            )
        if row is None:
            return None
        return CouponState(coupon_id=row["provider_coupon_id"], discount_type=row["discount_type"])

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT id, tier_id, name, discount_type, amount, currency,
                       duration, duration_in_months, provider_coupon_id
                FROM {Table.OFFERS}
                WHERE id = $1
                """,
                offer_id,
            )
        if row is None:
            return None
        return Offer(
            id=row["id"],
            tier_id=row["tier_id"],
            name=row["name"],
            discount_type=row["discount_type"],
            amount=row["amount"],
            currency=row["currency"],
            duration=row["duration"],
            duration_in_months=row["duration_in_months"],
            coupon_id=row["provider_coupon_id"],
        )

    async def set_coupon_id(self, offer_id: str, coupon_id: str) -> None:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {Table.OFFERS} SET provider_coupon_id = $2 WHERE id = $1",
                offer_id,
                coupon_id,
            )


class PgMemberRepository(MemberRepository):
    """members table."""

    async def get(self, member_id: str) -> Optional[Member]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT id, email, name, status, subscribed, tier_id FROM {Table.MEMBERS} WHERE id = $1",
                member_id,
            )
        return _member_from_row(row) if row is not None else None

    async def get_by_email(self, email: str) -> Optional[Member]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT id, email, name, status, subscribed, tier_id
                FROM {Table.MEMBERS}
                WHERE lower(email) = lower($1)
                """,
                email,
            )
        return _member_from_row(row) if row is not None else None

    async def update(self, member_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(_MEMBER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown member fields: {sorted(unknown)}")
        if not fields:
            return

        # Column names come from the whitelist above, values are bound
        columns = list(fields)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=2))
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {Table.MEMBERS} SET {assignments}, updated_at = now() WHERE id = $1",
                member_id,
                *(fields[col] for col in columns),
            )
        logger.debug(f"Updated member {member_id}: {columns}")


class PgTierRepository(TierRepository):
    """tiers table."""

    async def get(self, tier_id: str) -> Optional[Tier]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT id, name, kind, currency, monthly_price, yearly_price, trial_days
                FROM {Table.TIERS}
                WHERE id = $1
                """,
                tier_id,
            )
        if row is None:
            return None
        return Tier(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            currency=row["currency"],
            monthly_price=row["monthly_price"],
            yearly_price=row["yearly_price"],
            trial_days=row["trial_days"],
        )


class PgSettingsStore(SettingsStore):
    """settings table (jsonb values)."""

    async def get(self, key: str) -> Any:
        pool = await get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT value FROM {Table.SETTINGS} WHERE key = $1",
                key,
            )
