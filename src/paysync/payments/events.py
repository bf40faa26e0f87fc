"""Domain events and the hub that binds catalog reactions to them.

The hub is constructed once at process start and passed to whoever publishes
tier/offer changes. Reactions run as background tasks: publishing never waits
for, or fails because of, a reaction. Reaction errors are logged with their
traceback. The most recent ones are kept on `EventHub.failures`.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from paysync.catalog.base import Offer, Tier
from paysync.db.models import Cadence
from paysync.payments.catalog import CatalogReconciler

logger = logging.getLogger(__name__)

MAX_RECORDED_FAILURES = 100


@dataclass
class OfferCreated:
    offer: Offer


@dataclass
class TierCreated:
    tier: Tier


@dataclass
class TierPriceChanged:
    tier: Tier


@dataclass
class TierRenamed:
    tier: Tier


Reaction = Callable[[Any], Awaitable[None]]


@dataclass
class ReactionFailure:
    """A reaction that raised while handling an event."""

    event: Any
    reaction: str
    error: BaseException


class EventHub:
    """Typed subscription registry with fire-and-forget dispatch."""

    def __init__(self, max_failures: int = MAX_RECORDED_FAILURES):
        self._reactions: dict[type, list[Reaction]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()
        self.failures: deque[ReactionFailure] = deque(maxlen=max_failures)

    def subscribe(self, event_type: type, reaction: Reaction) -> None:
        self._reactions[event_type].append(reaction)

    def publish(self, event: Any) -> list[asyncio.Task]:
        """
        Schedule every reaction subscribed to the event's type.

        Must be called from a running event loop.

        Returns:
            The scheduled tasks (may be empty)
        """
        tasks = []
        for reaction in self._reactions.get(type(event), []):
            task = asyncio.create_task(reaction(event))
            task.add_done_callback(self._make_done_callback(event, reaction))
            self._pending.add(task)
            tasks.append(task)
        return tasks

    def _make_done_callback(self, event: Any, reaction: Reaction) -> Callable[[asyncio.Task], None]:
        name = getattr(reaction, "__qualname__", repr(reaction))

        def done(task: asyncio.Task) -> None:
            self._pending.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.error(
                    f"Reaction {name} failed for {type(event).__name__}: {error}",
                    exc_info=error,
                )
                self.failures.append(ReactionFailure(event=event, reaction=name, error=error))

        return done

    async def drain(self) -> None:
        """Wait for all scheduled reactions to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def register_catalog_reactions(hub: EventHub, catalog: CatalogReconciler) -> None:
    """Keep the provider catalog in step with tier and offer changes."""

    async def on_offer_created(event: OfferCreated) -> None:
        await catalog.resolve_or_create_coupon(event.offer.id)

    async def ensure_tier_prices(event: TierCreated | TierPriceChanged) -> None:
        if not event.tier.is_paid:
            return
        await catalog.resolve_or_create_price(event.tier, Cadence.MONTH.value)
        await catalog.resolve_or_create_price(event.tier, Cadence.YEAR.value)

    async def on_tier_renamed(event: TierRenamed) -> None:
        if not event.tier.is_paid:
            return
        await catalog.rename_products(event.tier)

    hub.subscribe(OfferCreated, on_offer_created)
    hub.subscribe(TierCreated, ensure_tier_prices)
    hub.subscribe(TierPriceChanged, ensure_tier_prices)
    hub.subscribe(TierRenamed, on_tier_renamed)
