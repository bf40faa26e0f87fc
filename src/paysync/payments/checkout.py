"""Checkout session links for tier subscriptions and donations."""

import logging
from typing import Any, Optional

from paysync.catalog.base import Member, Offer, Tier
from paysync.db.models import DiscountKind
from paysync.payments.catalog import CatalogReconciler
from paysync.payments.customers import CustomerLinkResolver
from paysync.providers.base import (
    CheckoutOptions,
    DonationCheckoutOptions,
    PaymentProvider,
    ProviderCustomer,
)

logger = logging.getLogger(__name__)


class InvalidRequestError(ValueError):
    """Checkout request is inconsistent (e.g. offer not valid for the tier)."""


class CheckoutLinkBuilder:
    """Composes provider checkout sessions and returns their hosted URLs."""

    def __init__(
        self,
        provider: PaymentProvider,
        catalog: CatalogReconciler,
        customers: CustomerLinkResolver,
    ):
        self.provider = provider
        self.catalog = catalog
        self.customers = customers

    async def build_tier_checkout(
        self,
        tier: Tier,
        cadence: str,
        *,
        success_url: str,
        cancel_url: str,
        offer: Optional[Offer] = None,
        member: Optional[Member] = None,
        metadata: Optional[dict[str, Any]] = None,
        email: Optional[str] = None,
    ) -> str:
        """
        Create a subscription checkout for a tier and cadence.

        A trial offer grants its amount as trial days; other offers apply a
        coupon. Without an offer the tier's default trial applies. A coupon and
        trial days are never sent together: the coupon wins.

        Returns:
            Hosted checkout URL

        Raises:
            InvalidRequestError: If the offer belongs to another tier
            ProviderError: On provider mutation errors
        """
        coupon_id = None
        trial_days = None
        if offer is not None:
            if offer.tier_id != tier.id:
                raise InvalidRequestError("This Offer is not valid for the Tier")
            if offer.discount_type == DiscountKind.TRIAL.value:
                trial_days = offer.amount
            else:
                coupon_id = await self.catalog.resolve_or_create_coupon(offer.id)

        customer: Optional[ProviderCustomer] = None
        if member is not None:
            customer = await self.customers.resolve_or_create_customer(member)

        price_id = await self.catalog.resolve_or_create_price(tier, cadence)

        options = CheckoutOptions(
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=dict(metadata or {}),
            trial_days=trial_days if trial_days is not None else tier.trial_days,
            coupon_id=coupon_id,
        )

        if options.coupon_id:
            options.trial_days = None

        if customer is None and email:
            options.customer_email = email

        session = await self.provider.create_checkout_session(price_id, customer, options)
        logger.info(f"Created checkout session {session.id} for tier {tier.id} ({cadence})")
        return session.url

    async def build_donation_checkout(
        self,
        *,
        success_url: str,
        cancel_url: str,
        member: Optional[Member] = None,
        is_authenticated: bool = False,
        metadata: Optional[dict[str, Any]] = None,
        email: Optional[str] = None,
        personal_note: Optional[str] = None,
    ) -> str:
        """
        Create a one-time donation checkout with a donor-chosen amount.

        A provider customer is attached only for an authenticated member; an
        unauthenticated request falls back to the raw email.

        Returns:
            Hosted checkout URL
        """
        customer: Optional[ProviderCustomer] = None
        if member is not None and is_authenticated:
            customer = await self.customers.resolve_or_create_customer(member)

        price_id = await self.catalog.resolve_or_create_donation_price()

        options = DonationCheckoutOptions(
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=dict(metadata or {}),
            customer=customer,
            customer_email=email if customer is None and email else None,
            personal_note=personal_note,
        )

        session = await self.provider.create_donation_checkout_session(options)
        logger.info(f"Created donation checkout session {session.id}")
        return session.url
