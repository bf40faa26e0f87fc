"""Tests for process wiring."""

from unittest.mock import MagicMock

import pytest

from paysync.main import build_services
from paysync.payments.events import TierCreated
from paysync.payments.reconcile import AdvisoryCreationLock, LocalCreationLock
from paysync.providers import DodoProvider


@pytest.fixture
def config() -> MagicMock:
    config = MagicMock()
    config.provider = "dodo"
    config.dodo_api_key.get_secret_value.return_value = "dodo_key"
    config.dodo_mode = "test"
    config.dodo_base_url = ""
    config.provider_timeout_seconds = 10.0
    config.webhook_secret.get_secret_value.return_value = "whsec_1"
    config.min_charge_amount = 100
    config.creation_lock = "advisory"
    return config


def test_services_share_provider_and_lock(config):
    services = build_services(config)

    assert isinstance(services.catalog.provider, DodoProvider)
    assert services.router.provider is services.catalog.provider
    assert services.checkout.catalog is services.catalog
    assert services.checkout.customers is services.customers
    assert isinstance(services.catalog.lock, AdvisoryCreationLock)
    assert services.customers.lock is services.catalog.lock
    assert services.router.secret == "whsec_1"


def test_local_lock_selected(config):
    config.creation_lock = "local"

    services = build_services(config)

    assert isinstance(services.catalog.lock, LocalCreationLock)


@pytest.mark.asyncio
async def test_catalog_reactions_registered_once(config):
    services = build_services(config)
    tier = MagicMock(is_paid=False)

    tasks = services.hub.publish(TierCreated(tier))
    await services.hub.drain()

    assert len(tasks) == 1
    assert len(services.hub.failures) == 0


def test_missing_webhook_secret_fails_boot(config):
    config.webhook_secret.get_secret_value.return_value = ""

    with pytest.raises(ValueError, match="webhook_secret"):
        build_services(config)
