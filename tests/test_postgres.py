"""Tests for the asyncpg-backed stores, creation lock and migration runner.

The pool is mocked: these check the SQL parameters and row mapping, not
Postgres itself.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from paysync.catalog.base import PriceLink
from paysync.catalog.postgres import (
    PgCustomerLinkStore,
    PgMemberRepository,
    PgOfferStore,
    PgPriceLinkStore,
    PgProductLinkStore,
    PgSettingsStore,
)
from paysync.db.pool import open_connection
from paysync.db.schema.migrate import MIGRATIONS_DIR, migrate, pending_migrations
from paysync.payments.reconcile import AdvisoryCreationLock, resolve_or_create


@pytest.fixture
def conn() -> AsyncMock:
    conn = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(conn) -> MagicMock:
    mock_pool = MagicMock()
    mock_acquire = MagicMock()
    mock_acquire.__aenter__ = AsyncMock(return_value=conn)
    mock_acquire.__aexit__ = AsyncMock(return_value=False)
    mock_pool.acquire.return_value = mock_acquire
    return mock_pool


@pytest.fixture
def patched_pool(mock_pool):
    with patch("paysync.catalog.postgres.get_pool", AsyncMock(return_value=mock_pool)):
        yield mock_pool


PRICE_ROW = {
    "id": 3,
    "price_id": "price_1",
    "product_id": "prod_1",
    "currency": "usd",
    "amount": 500,
    "interval": "month",
    "kind": "recurring",
    "active": True,
    "nickname": "Monthly",
}


class TestPriceLinkStore:
    """provider_prices."""

    @pytest.mark.asyncio
    async def test_find_binds_filters(self, patched_pool, conn):
        conn.fetch.return_value = [PRICE_ROW]

        rows = await PgPriceLinkStore().find(
            kind="recurring", currency="USD", amount=500, interval="month", product_id="prod_1"
        )

        assert rows == [PriceLink(**PRICE_ROW)]
        args = conn.fetch.call_args.args
        assert "lower(currency) = lower($2)" in args[0]
        assert args[1:] == ("recurring", "USD", 500, "month", "prod_1", True)

    @pytest.mark.asyncio
    async def test_add_returns_row_id(self, patched_pool, conn):
        conn.fetchval.return_value = 42
        link = PriceLink(
            price_id="price_9",
            product_id="prod_1",
            currency="usd",
            amount=0,
            interval=None,
            kind="donation",
        )

        stored = await PgPriceLinkStore().add(link)

        assert stored.id == 42
        assert "RETURNING id" in conn.fetchval.call_args.args[0]

    @pytest.mark.asyncio
    async def test_set_active(self, patched_pool, conn):
        await PgPriceLinkStore().set_active(3, False)

        assert conn.execute.call_args.args[1:] == (3, False)

    @pytest.mark.asyncio
    async def test_get_by_price_id_missing(self, patched_pool, conn):
        conn.fetchrow.return_value = None

        assert await PgPriceLinkStore().get_by_price_id("price_x") is None


class TestLinkStores:
    """provider_customers and provider_products."""

    @pytest.mark.asyncio
    async def test_customer_rows_oldest_first(self, patched_pool, conn):
        conn.fetch.return_value = [
            {"member_id": "m1", "customer_id": "cus_1", "email": "a@example.com", "name": None},
        ]

        rows = await PgCustomerLinkStore().list_for_member("m1")

        assert rows[0].customer_id == "cus_1"
        assert "ORDER BY id" in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_donation_products_match_null_tier(self, patched_pool, conn):
        conn.fetch.return_value = [{"tier_id": None, "product_id": "prod_don"}]

        rows = await PgProductLinkStore().list_for_tier(None)

        assert rows[0].product_id == "prod_don"
        assert "IS NOT DISTINCT FROM" in conn.fetch.call_args.args[0]
        assert conn.fetch.call_args.args[1] is None


class TestOfferStore:
    """offers."""

    @pytest.mark.asyncio
    async def test_coupon_state(self, patched_pool, conn):
        conn.fetchrow.return_value = {"provider_coupon_id": None, "discount_type": "percent"}

        state = await PgOfferStore().get_coupon_state("offer_1")

        assert state.coupon_id is None
        assert state.discount_type == "percent"

    @pytest.mark.asyncio
    async def test_unknown_offer(self, patched_pool, conn):
        conn.fetchrow.return_value = None

        assert await PgOfferStore().get_coupon_state("missing") is None


class TestMemberRepository:
    """members."""

    @pytest.mark.asyncio
    async def test_update_binds_whitelisted_columns(self, patched_pool, conn):
        await PgMemberRepository().update("m1", {"status": "free", "subscribed": False, "tier_id": None})

        args = conn.execute.call_args.args
        assert "status = $2, subscribed = $3, tier_id = $4" in args[0]
        assert args[1:] == ("m1", "free", False, None)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, patched_pool, conn):
        with pytest.raises(ValueError, match="Unknown member fields"):
            await PgMemberRepository().update("m1", {"status": "paid", "is_admin": True})

        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_by_email_case_insensitive(self, patched_pool, conn):
        conn.fetchrow.return_value = {
            "id": "m1",
            "email": "reader@example.com",
            "name": "Reader",
            "status": "paid",
            "subscribed": True,
            "tier_id": "tier_gold",
        }

        member = await PgMemberRepository().get_by_email("Reader@Example.com")

        assert member.tier_id == "tier_gold"
        assert "lower(email) = lower($1)" in conn.fetchrow.call_args.args[0]


class TestSettingsStore:
    """settings."""

    @pytest.mark.asyncio
    async def test_get_value(self, patched_pool, conn):
        conn.fetchval.return_value = "USD"

        assert await PgSettingsStore().get("donations_currency") == "USD"
        assert conn.fetchval.call_args.args[1] == "donations_currency"


class LimitedPool:
    """Pool stand-in handing out at most `size` connections, each query a short round-trip."""

    def __init__(self, size: int):
        self._slots = asyncio.Semaphore(size)
        self.rows: list[str] = []

    @asynccontextmanager
    async def acquire(self):
        async with self._slots:
            yield self

    async def fetch(self) -> list[str]:
        await asyncio.sleep(0.01)
        return list(self.rows)


class SessionLockServer:
    """Advisory locks shared by every standalone connection it opens."""

    def __init__(self):
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.opened = 0
        self.closed = 0

    async def connect(self) -> "SessionLockServer.Connection":
        self.opened += 1
        return SessionLockServer.Connection(self)

    class Connection:
        def __init__(self, server: "SessionLockServer"):
            self.server = server

        async def execute(self, sql: str, key: str) -> None:
            if sql.startswith("SELECT pg_advisory_lock("):
                await self.server.locks[key].acquire()
            else:
                self.server.locks[key].release()

        async def close(self) -> None:
            self.server.closed += 1


class TestAdvisoryCreationLock:
    """Cross-process creation lock."""

    @pytest.mark.asyncio
    async def test_lock_and_unlock(self, conn):
        with patch("paysync.payments.reconcile.open_connection", AsyncMock(return_value=conn)):
            async with AdvisoryCreationLock().hold("price:prod_1:usd:month:500:recurring"):
                conn.execute.assert_awaited_once_with(
                    "SELECT pg_advisory_lock(hashtext($1))", "price:prod_1:usd:month:500:recurring"
                )

        conn.execute.assert_awaited_with(
            "SELECT pg_advisory_unlock(hashtext($1))", "price:prod_1:usd:month:500:recurring"
        )
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unlocks_on_error(self, conn):
        with patch("paysync.payments.reconcile.open_connection", AsyncMock(return_value=conn)):
            with pytest.raises(RuntimeError):
                async with AdvisoryCreationLock().hold("product:tier_gold"):
                    raise RuntimeError("create failed")

        conn.execute.assert_awaited_with("SELECT pg_advisory_unlock(hashtext($1))", "product:tier_gold")
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_resolutions_exceeding_pool_size(self):
        """Lock holders beyond the pool size, some nested, finish with one creation each."""
        pool = LimitedPool(size=2)
        server = SessionLockServer()
        created: list[str] = []

        async def resolve(subject: str):
            async def scan() -> list[str]:
                async with pool.acquire() as db:
                    return [row for row in await db.fetch() if row == subject]

            async def create() -> str:
                if subject == "price:donation":
                    await resolve("product:donation")
                async with pool.acquire() as db:
                    await db.fetch()
                created.append(subject)
                pool.rows.append(subject)
                return subject

            return await resolve_or_create(
                subject,
                scan=scan,
                accept=lambda row, remote: True,
                create=create,
                lock=AdvisoryCreationLock(),
            )

        subjects = ["price:a"] * 4 + ["price:b", "price:c"] + ["price:donation"] * 3
        with patch("paysync.payments.reconcile.open_connection", server.connect):
            results = await asyncio.wait_for(asyncio.gather(*(resolve(s) for s in subjects)), timeout=5)

        assert [r.value for r in results] == subjects
        assert sorted(created) == ["price:a", "price:b", "price:c", "price:donation", "product:donation"]
        assert server.opened == server.closed


class TestOpenConnection:
    """Standalone connections for session locks."""

    @pytest.mark.asyncio
    async def test_connects_outside_pool(self):
        config = MagicMock()
        config.db_dsn = "postgresql://paysync@localhost/paysync"

        with patch("paysync.db.pool.get_config", return_value=config), patch(
            "paysync.db.pool.asyncpg.connect", AsyncMock(return_value="conn")
        ) as mock_connect:
            assert await open_connection() == "conn"

        mock_connect.assert_awaited_once_with("postgresql://paysync@localhost/paysync", timeout=5.0)


class TestMigrations:
    """Migration discovery and runner."""

    def test_pending_sorted_and_filtered(self, tmp_path: Path):
        for name in ("002_second.sql", "001_first.sql", "README.sql", "003_third.sql"):
            (tmp_path / name).write_text("SELECT 1;")

        pending = pending_migrations(tmp_path, applied={2})

        assert [(v, p.name) for v, p in pending] == [(1, "001_first.sql"), (3, "003_third.sql")]

    def test_initial_migration_creates_cache_tables(self):
        sql = (MIGRATIONS_DIR / "001_initial.sql").read_text()

        for table in ("provider_customers", "provider_products", "provider_prices", "members", "offers"):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql

    @pytest.mark.asyncio
    async def test_migrate_applies_pending(self, tmp_path: Path, mock_pool, conn):
        (tmp_path / "001_first.sql").write_text("CREATE TABLE a (id INT);")
        conn.fetchval.return_value = True
        conn.fetch.return_value = []

        with patch("paysync.db.schema.migrate.get_pool", AsyncMock(return_value=mock_pool)):
            applied = await migrate(tmp_path)

        assert applied == 1
        executed = [c.args[0] for c in conn.execute.call_args_list]
        assert "CREATE TABLE a (id INT);" in executed
        assert executed[-1] == "SELECT pg_advisory_unlock($1)"

    @pytest.mark.asyncio
    async def test_migrate_refuses_when_locked(self, tmp_path: Path, mock_pool, conn):
        conn.fetchval.return_value = False

        with patch("paysync.db.schema.migrate.get_pool", AsyncMock(return_value=mock_pool)):
            with pytest.raises(RuntimeError, match="Another migration"):
                await migrate(tmp_path)
