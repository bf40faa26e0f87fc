"""Provider catalog reconciliation for tiers, the donation price, and offers."""

import logging
from typing import Optional

from paysync.catalog.base import (
    OfferStore,
    PriceLink,
    PriceLinkStore,
    ProductLink,
    ProductLinkStore,
    SettingsStore,
    Tier,
)
from paysync.db.models import Cadence, DiscountKind, OfferDuration, PriceKind, SettingKey
from paysync.payments.reconcile import CreationLock, LocalCreationLock, resolve_or_create
from paysync.providers.base import (
    CouponRequest,
    PaymentProvider,
    PriceRequest,
    ProviderError,
    ProviderPrice,
    ProviderProduct,
)

logger = logging.getLogger(__name__)

DONATION_NICKNAME_MAX_LENGTH = 250

CADENCE_NICKNAMES = {
    Cadence.MONTH.value: "Monthly",
    Cadence.YEAR.value: "Yearly",
}


class CatalogReconciler:
    """
    Resolves provider products, prices and coupons for the local catalog.

    Every resolution goes through `resolve_or_create`, so repeated calls for an
    unchanged subject return the same provider id and create nothing new.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        products: ProductLinkStore,
        prices: PriceLinkStore,
        offers: OfferStore,
        settings: SettingsStore,
        lock: Optional[CreationLock] = None,
        min_charge_amount: int = 100,
    ):
        self.provider = provider
        self.products = products
        self.prices = prices
        self.offers = offers
        self.settings = settings
        self.lock = lock or LocalCreationLock()
        self.min_charge_amount = min_charge_amount

    # Products

    async def resolve_or_create_product(
        self,
        tier: Optional[Tier] = None,
        *,
        name: Optional[str] = None,
    ) -> str:
        """
        Provider product id for a tier, or for donations when tier is None.

        Args:
            tier: Owning tier; None selects the donation product
            name: Product name used on creation. Defaults to the tier name and
                  is required for the donation product.

        Returns:
            Provider product id of the first cached product reported active,
            or of a newly created one
        """
        tier_id = tier.id if tier is not None else None
        product_name = name or (tier.name if tier is not None else None)
        if not product_name:
            raise ValueError("Donation product requires a name")

        async def create() -> ProviderProduct:
            product = await self.provider.create_product(product_name)
            await self.products.add(ProductLink(tier_id=tier_id, product_id=product.id))
            logger.info(f"Created provider product {product.id} for {tier_id or 'donations'}")
            return product

        resolution = await resolve_or_create(
            f"product:{tier_id or 'donation'}",
            scan=lambda: self.products.list_for_tier(tier_id),
            fetch=lambda row: self.provider.get_product(row.product_id),
            accept=lambda row, product: product.active,
            create=create,
            lock=self.lock,
        )
        return resolution.value.id

    async def rename_products(self, tier: Tier) -> None:
        """
        Rename every provider product cached for the tier to the tier's name.

        Each row is attempted even when an earlier one fails.

        Raises:
            ProviderError: After all rows were attempted, if any rename failed
        """
        rows = await self.products.list_for_tier(tier.id)
        failed = []
        for row in rows:
            try:
                await self.provider.update_product(row.product_id, name=tier.name)
            except ProviderError as e:
                logger.error(f"Failed to rename product {row.product_id} for tier {tier.id}: {e}")
                failed.append(row.product_id)

        if failed:
            raise ProviderError(
                f"Renaming tier {tier.id} failed for {len(failed)} of {len(rows)} products: "
                f"{', '.join(failed)}"
            )
        logger.info(f"Renamed {len(rows)} provider product(s) for tier {tier.id}")

    # Recurring prices

    async def resolve_or_create_price(self, tier: Tier, cadence: str) -> str:
        """
        Provider price id for a tier's cadence.

        Cached rows matching (product, currency, interval, amount) are verified
        against the provider. A row whose provider price is inactive or has
        diverged is marked inactive locally and skipped.

        Args:
            tier: Paid tier with a currency and a price for the cadence
            cadence: 'month' or 'year'

        Returns:
            Provider price id
        """
        if not tier.currency:
            raise ValueError(f"Tier {tier.id} has no currency")

        currency = tier.currency.lower()
        amount = tier.price_for(cadence)
        product_id = await self.resolve_or_create_product(tier)

        def accept(row: PriceLink, price: ProviderPrice) -> bool:
            return (
                price.active
                and price.currency.lower() == currency
                and price.unit_amount == amount
                and price.interval == cadence
            )

        async def create() -> ProviderPrice:
            price = await self.provider.create_price(
                PriceRequest(
                    product_id=product_id,
                    currency=currency,
                    amount=amount,
                    interval=cadence,
                    nickname=CADENCE_NICKNAMES.get(cadence, cadence),
                )
            )
            await self.prices.add(
                PriceLink(
                    price_id=price.id,
                    product_id=product_id,
                    currency=(price.currency or currency).lower(),
                    amount=amount,
                    interval=cadence,
                    kind=PriceKind.RECURRING.value,
                    active=price.active,
                    nickname=price.nickname,
                )
            )
            logger.info(f"Created provider price {price.id} ({amount} {currency}/{cadence}) for tier {tier.id}")
            return price

        resolution = await resolve_or_create(
            f"price:{product_id}:{currency}:{cadence}:{amount}:{PriceKind.RECURRING.value}",
            scan=lambda: self.prices.find(
                kind=PriceKind.RECURRING.value,
                currency=currency,
                amount=amount,
                interval=cadence,
                product_id=product_id,
            ),
            fetch=lambda row: self.provider.get_price(row.price_id),
            accept=accept,
            heal=self._deactivate,
            create=create,
            lock=self.lock,
        )
        return resolution.value.id

    async def _deactivate(self, row: PriceLink, price: ProviderPrice) -> None:
        logger.info(
            f"Cached price {row.price_id} no longer matches the provider "
            f"(active={price.active}, amount={price.effective_amount}, currency={price.currency}, "
            f"interval={price.interval}); marking inactive"
        )
        await self.prices.set_active(row.id, False)

    # Donations

    async def donation_price_nickname(self) -> str:
        """'Support <publication title>', at most 250 characters."""
        title = await self.settings.get(SettingKey.TITLE.value) or ""
        return f"Support {title}"[:DONATION_NICKNAME_MAX_LENGTH]

    async def resolve_or_create_donation_price(self) -> str:
        """
        Provider price id for one-time donations.

        The matching amount is the suggested donation when it reaches the
        provider's minimum charge, otherwise 0 (donor chooses). Cached prices
        whose provider-side currency or preset has drifted are marked inactive.
        A matched price whose nickname is stale is renamed best-effort.

        Returns:
            Provider price id
        """
        nickname = await self.donation_price_nickname()
        currency = await self.settings.get(SettingKey.DONATIONS_CURRENCY.value)
        if not currency:
            raise ValueError("donations_currency not configured")
        currency = currency.lower()

        suggested = await self.settings.get(SettingKey.DONATIONS_SUGGESTED_AMOUNT.value)
        suggested = int(suggested) if suggested else 0
        amount = suggested if suggested >= self.min_charge_amount else 0

        async def create() -> ProviderPrice:
            product_id = await self.resolve_or_create_product(None, name=nickname)
            price = await self.provider.create_price(
                PriceRequest(
                    product_id=product_id,
                    currency=currency,
                    amount=amount,
                    nickname=nickname,
                    custom_amount=True,
                )
            )
            await self.prices.add(
                PriceLink(
                    price_id=price.id,
                    product_id=product_id,
                    currency=currency,
                    amount=amount,
                    interval=None,
                    kind=PriceKind.DONATION.value,
                    active=price.active,
                    nickname=price.nickname or nickname,
                )
            )
            logger.info(f"Created donation price {price.id} ({currency}, preset={amount})")
            return price

        resolution = await resolve_or_create(
            f"price:donation:{currency}:{amount}",
            scan=lambda: self.prices.find(
                kind=PriceKind.DONATION.value,
                currency=currency,
                amount=amount,
            ),
            fetch=lambda row: self.provider.get_price(row.price_id),
            accept=lambda row, price: (
                price.active
                and price.currency.lower() == currency
                and price.effective_amount == amount
            ),
            heal=self._deactivate,
            create=create,
            lock=self.lock,
        )

        row = resolution.candidate
        if row is not None and row.nickname != nickname:
            await self._rename_donation_price(row, nickname)

        return resolution.value.id

    async def _rename_donation_price(self, row: PriceLink, nickname: str) -> None:
        # A stale display label must never block a checkout
        try:
            await self.provider.update_price(row.price_id, nickname=nickname)
            await self.provider.update_product(row.product_id, name=nickname)
            await self.prices.set_nickname(row.id, nickname)
            logger.info(f"Renamed donation price {row.price_id} to {nickname!r}")
        except Exception as e:
            logger.warning(f"Failed to rename donation price {row.price_id}: {e}", exc_info=True)

    # Coupons

    async def resolve_or_create_coupon(self, offer_id: str) -> Optional[str]:
        """
        Provider coupon id for an offer, created on first use.

        Returns:
            Coupon id, or None for trial offers and unknown offers
        """
        state = await self.offers.get_coupon_state(offer_id)
        if state is None or state.discount_type == DiscountKind.TRIAL.value:
            return None

        async def scan() -> list[str]:
            current = await self.offers.get_coupon_state(offer_id)
            return [current.coupon_id] if current is not None and current.coupon_id else []

        resolution = await resolve_or_create(
            f"coupon:{offer_id}",
            scan=scan,
            accept=lambda coupon_id, _: True,
            create=lambda: self._create_coupon(offer_id),
            lock=self.lock,
        )
        return resolution.value

    async def _create_coupon(self, offer_id: str) -> str:
        offer = await self.offers.get_offer(offer_id)
        if offer is None:
            raise ValueError(f"Offer {offer_id} not found")

        request = CouponRequest(name=offer.name, duration=offer.duration)
        if offer.duration == OfferDuration.REPEATING.value:
            request.duration_in_months = offer.duration_in_months

        if offer.discount_type == DiscountKind.PERCENT.value:
            request.percent_off = offer.amount
        else:
            request.amount_off = offer.amount
            request.currency = offer.currency

        coupon = await self.provider.create_coupon(request)
        await self.offers.set_coupon_id(offer_id, coupon.id)
        logger.info(f"Created provider coupon {coupon.id} for offer {offer_id}")

        # Return what is now stored on the offer
        state = await self.offers.get_coupon_state(offer_id)
        return state.coupon_id if state is not None and state.coupon_id else coupon.id
