"""Application entry point."""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

from paysync.catalog.postgres import (
    PgCustomerLinkStore,
    PgMemberRepository,
    PgOfferStore,
    PgPriceLinkStore,
    PgProductLinkStore,
    PgSettingsStore,
    PgTierRepository,
)
from paysync.config import AppConfig, get_config
from paysync.db import close_pool, get_pool
from paysync.payments.catalog import CatalogReconciler
from paysync.payments.checkout import CheckoutLinkBuilder
from paysync.payments.customers import CustomerLinkResolver
from paysync.payments.events import EventHub, register_catalog_reactions
from paysync.payments.projector import SubscriptionStateProjector
from paysync.payments.reconcile import AdvisoryCreationLock, CreationLock, LocalCreationLock
from paysync.payments.server import run_server
from paysync.payments.webhooks import WebhookRouter
from paysync.providers import build_provider

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide service graph, built once at boot."""

    catalog: CatalogReconciler
    customers: CustomerLinkResolver
    checkout: CheckoutLinkBuilder
    router: WebhookRouter
    hub: EventHub


def build_services(config: AppConfig) -> Services:
    """
    Wire the provider adapter, Postgres stores and payment services.

    Raises:
        ValueError: If a provider credential or the webhook secret is missing
    """
    webhook_secret = config.webhook_secret.get_secret_value()
    if not webhook_secret:
        raise ValueError("webhook_secret not configured")

    provider = build_provider(config)

    lock: CreationLock
    if config.creation_lock == "advisory":
        lock = AdvisoryCreationLock()
    else:
        lock = LocalCreationLock()

    customer_links = PgCustomerLinkStore()
    product_links = PgProductLinkStore()
    price_links = PgPriceLinkStore()

    catalog = CatalogReconciler(
        provider,
        products=product_links,
        prices=price_links,
        offers=PgOfferStore(),
        settings=PgSettingsStore(),
        lock=lock,
        min_charge_amount=config.min_charge_amount,
    )
    customers = CustomerLinkResolver(provider, customer_links, lock=lock)
    checkout = CheckoutLinkBuilder(provider, catalog, customers)

    projector = SubscriptionStateProjector(
        members=PgMemberRepository(),
        customers=customer_links,
        prices=price_links,
        products=product_links,
        tiers=PgTierRepository(),
    )
    router = WebhookRouter(provider, projector, webhook_secret)

    hub = EventHub()
    register_catalog_reactions(hub, catalog)

    return Services(catalog=catalog, customers=customers, checkout=checkout, router=router, hub=hub)


async def boot() -> None:
    """
    Boot sequence: load config → initialize pool → wire services → serve webhooks.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}, provider={config.provider}")

        await get_pool()
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )

        services = build_services(config)
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await run_server(services.router, shutdown_event=shutdown_event)
    finally:
        await services.hub.drain()
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
