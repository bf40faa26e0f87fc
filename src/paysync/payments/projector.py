"""Projection of provider subscription events onto member entitlement state.

Each handler is a function of the event and the entities it resolves: the
member update it issues depends only on the event payload, never on which
events were handled before. Replays and out-of-order delivery therefore
converge on the same member state.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from paysync.catalog.base import (
    CustomerLinkStore,
    Member,
    MemberRepository,
    PriceLinkStore,
    ProductLinkStore,
    Tier,
    TierRepository,
)
from paysync.db.models import MemberStatus
from paysync.providers.base import WebhookEvent

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class HandlerResult:
    """Result of one step of webhook handling."""

    step: str
    status: str  # 'applied' | 'skipped' | 'failed'
    detail: str = ""
    error: str | None = None


@dataclass
class WebhookOutcome:
    """All step results for one webhook event."""

    event_type: str
    event_id: str | None = None
    results: list[HandlerResult] = field(default_factory=list)

    def applied(self, step: str, detail: str = "") -> None:
        self.results.append(HandlerResult(step=step, status=APPLIED, detail=detail))

    def skipped(self, step: str, detail: str = "") -> None:
        self.results.append(HandlerResult(step=step, status=SKIPPED, detail=detail))

    def failed(self, step: str, error: BaseException) -> None:
        self.results.append(
            HandlerResult(step=step, status=FAILED, detail=type(error).__name__, error=str(error))
        )

    @property
    def failures(self) -> list[HandlerResult]:
        return [r for r in self.results if r.status == FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "ok": self.ok,
            "results": [
                {"step": r.step, "status": r.status, "detail": r.detail, "error": r.error}
                for r in self.results
            ],
        }


def invoice_as_payment(invoice: dict[str, Any], amount_field: str) -> dict[str, Any]:
    """Remap an invoice object to the payment shape the payment handlers read."""
    return {
        "id": invoice.get("payment_intent") or invoice.get("id"),
        "customer": invoice.get("customer"),
        "customer_email": invoice.get("customer_email"),
        "amount": invoice.get(amount_field),
    }


class SubscriptionStateProjector:
    """Resolves the acting member and tier for an event and mutates the member."""

    def __init__(
        self,
        members: MemberRepository,
        customers: CustomerLinkStore,
        prices: PriceLinkStore,
        products: ProductLinkStore,
        tiers: TierRepository,
    ):
        self.members = members
        self.customers = customers
        self.prices = prices
        self.products = products
        self.tiers = tiers

    # Resolution

    async def member_for_customer(self, customer_id: Optional[str]) -> Optional[Member]:
        if not customer_id:
            return None
        member_id = await self.customers.find_member_id(customer_id)
        if member_id is None:
            return None
        return await self.members.get(member_id)

    async def member_for_payment(self, payment: dict[str, Any]) -> Optional[Member]:
        """Customer id first, then the email on the payment."""
        if payment.get("customer"):
            return await self.member_for_customer(payment["customer"])
        if payment.get("customer_email"):
            return await self.members.get_by_email(payment["customer_email"])
        return None

    async def tier_for_price(self, price_id: Optional[str]) -> Optional[Tier]:
        """Follow price id → cached product → tier; None where the chain breaks."""
        if not price_id:
            return None
        price = await self.prices.get_by_price_id(price_id)
        if price is None:
            return None
        product = await self.products.get_by_product_id(price.product_id)
        if product is None or product.tier_id is None:
            return None
        return await self.tiers.get(product.tier_id)

    # Handlers

    async def payment_succeeded(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        await self._payment_succeeded(event.data, outcome)

    async def payment_failed(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        await self._payment_failed(event.data, outcome)

    async def invoice_payment_succeeded(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        await self._payment_succeeded(invoice_as_payment(event.data, "amount_paid"), outcome)

    async def invoice_payment_failed(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        await self._payment_failed(invoice_as_payment(event.data, "amount_due"), outcome)

    async def _payment_succeeded(self, payment: dict[str, Any], outcome: WebhookOutcome) -> None:
        member = await self.member_for_payment(payment)
        if member is None:
            logger.info(f"Payment {payment.get('id')} succeeded for unknown member - skipping")
            outcome.skipped("resolve_member", "no member for payment")
            return

        await self.members.update(member.id, {"status": MemberStatus.PAID.value})
        logger.info(f"Payment {payment.get('id')} succeeded: member {member.id} set to paid")
        outcome.applied("update_member", f"member {member.id} status=paid")

    async def _payment_failed(self, payment: dict[str, Any], outcome: WebhookOutcome) -> None:
        member = await self.member_for_payment(payment)
        if member is None:
            logger.info(f"Payment {payment.get('id')} failed for unknown member - skipping")
            outcome.skipped("resolve_member", "no member for payment")
            return

        logger.warning(f"Payment {payment.get('id')} failed for member {member.id}")
        outcome.skipped("update_member", f"payment failure noted for member {member.id}")

    async def subscription_created(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        # A creation event without a status grants access
        await self._project_subscription(event.data, event.data.get("status") or "active", outcome)

    async def subscription_updated(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        status = event.data.get("status")
        if not status:
            logger.warning(f"Subscription {event.data.get('id')} update has no status - skipping")
            outcome.skipped("project_subscription", "no subscription status")
            return
        await self._project_subscription(event.data, status, outcome)

    async def subscription_cancelled(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        await self._project_subscription(event.data, "cancelled", outcome)

    async def _project_subscription(
        self,
        subscription: dict[str, Any],
        status: str,
        outcome: WebhookOutcome,
    ) -> None:
        member = await self.member_for_customer(subscription.get("customer"))
        if member is None:
            logger.info(
                f"Subscription {subscription.get('id')}: customer "
                f"{subscription.get('customer')} not linked to a member - skipping"
            )
            outcome.skipped("resolve_member", "customer not linked to a member")
            return

        if status not in ACTIVE_SUBSCRIPTION_STATUSES:
            await self.members.update(
                member.id,
                {"status": MemberStatus.FREE.value, "subscribed": False, "tier_id": None},
            )
            logger.info(f"Revoked paid access for member {member.id} (subscription {status})")
            outcome.applied("update_member", f"member {member.id} status=free")
            return

        fields: dict[str, Any] = {"status": MemberStatus.PAID.value, "subscribed": True}
        price_id = subscription.get("price_id")
        try:
            tier = await self.tier_for_price(price_id)
        except Exception as e:
            logger.exception(f"Tier lookup failed for price {price_id}")
            outcome.failed("resolve_tier", e)
            tier = None
        else:
            if tier is None:
                logger.warning(f"No tier cached for price {price_id} - tier left unchanged")
                outcome.skipped("resolve_tier", f"no tier for price {price_id}")
            else:
                fields["tier_id"] = tier.id

        await self.members.update(member.id, fields)
        logger.info(f"Granted paid access to member {member.id} (tier={fields.get('tier_id')})")
        outcome.applied("update_member", f"member {member.id} status=paid")

    async def customer_created(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        logger.info(f"Customer created: {event.data.get('id')}")
        outcome.skipped("customer_created", "no action")

    async def customer_updated(self, event: WebhookEvent, outcome: WebhookOutcome) -> None:
        customer = event.data
        member = await self.member_for_customer(customer.get("id"))
        if member is None:
            outcome.skipped("resolve_member", "customer not linked to a member")
            return

        fields = {}
        if customer.get("email") and customer["email"] != member.email:
            fields["email"] = customer["email"]
        if customer.get("name") is not None and customer["name"] != member.name:
            fields["name"] = customer["name"]

        if not fields:
            outcome.skipped("update_member", "profile unchanged")
            return

        await self.members.update(member.id, fields)
        logger.info(f"Updated member {member.id} profile from customer {customer.get('id')}")
        outcome.applied("update_member", f"member {member.id} {sorted(fields)}")
