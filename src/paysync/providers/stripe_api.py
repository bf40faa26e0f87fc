"""Stripe adapter: the same catalog mirrored on Stripe through the official SDK."""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import stripe

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

logger = logging.getLogger(__name__)

# Stripe event type -> provider-neutral event type
EVENT_TYPES = {
    "payment_intent.succeeded": "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
    "customer.subscription.created": "subscription.created",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.cancelled",
    "customer.created": "customer.created",
    "customer.updated": "customer.updated",
    "invoice.paid": "invoice.payment_succeeded",
    "invoice.payment_succeeded": "invoice.payment_succeeded",
    "invoice.payment_failed": "invoice.payment_failed",
}

SIGNATURE_TOLERANCE_SECONDS = 300


def _price_from_object(price: Any) -> ProviderPrice:
    recurring = price.get("recurring") or {}
    custom = price.get("custom_unit_amount") or {}
    return ProviderPrice(
        id=price["id"],
        currency=price.get("currency") or "",
        unit_amount=price.get("unit_amount"),
        active=bool(price.get("active", True)),
        nickname=price.get("nickname"),
        interval=recurring.get("interval"),
        preset=custom.get("preset"),
    )


def _product_from_object(product: Any) -> ProviderProduct:
    return ProviderProduct(
        id=product["id"],
        name=product.get("name"),
        active=bool(product.get("active", True)),
    )


def _normalize_object(event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    """Flatten the Stripe fields the projector reads into the neutral shape."""
    obj = dict(obj)
    if event_type.startswith("customer.subscription."):
        items = (obj.get("items") or {}).get("data") or []
        if items and "price_id" not in obj:
            obj["price_id"] = (items[0].get("price") or {}).get("id")
    elif event_type.startswith("payment_intent."):
        obj.setdefault("customer_email", obj.get("receipt_email"))
    return obj


class StripeProvider(PaymentProvider):
    """
    Stripe adapter.

    The SDK is blocking, so each call runs in a worker thread. SDK errors are
    re-raised as ProviderError carrying the HTTP status.
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("stripe_secret not configured")
        stripe.api_key = secret_key

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe error: {e}", status=e.http_status) from e

    async def create_checkout_session(
        self,
        price_id: str,
        customer: Optional[ProviderCustomer],
        options: CheckoutOptions,
    ) -> CheckoutSession:
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": options.success_url,
            "cancel_url": options.cancel_url,
            "metadata": dict(options.metadata),
            "subscription_data": {"metadata": dict(options.metadata)},
        }

        if customer:
            params["customer"] = customer.id
        elif options.customer_email:
            params["customer_email"] = options.customer_email

        if options.trial_days:
            params["subscription_data"]["trial_period_days"] = options.trial_days

        if options.coupon_id:
            params["discounts"] = [{"coupon": options.coupon_id}]

        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def create_donation_checkout_session(
        self, options: DonationCheckoutOptions
    ) -> CheckoutSession:
        metadata = dict(options.metadata)
        if options.personal_note:
            metadata["personal_note"] = options.personal_note

        params: dict[str, Any] = {
            "mode": "payment",
            "submit_type": "donate",
            "line_items": [{"price": options.price_id, "quantity": 1}],
            "success_url": options.success_url,
            "cancel_url": options.cancel_url,
            "metadata": metadata,
        }

        if options.customer:
            params["customer"] = options.customer.id
        elif options.customer_email:
            params["customer_email"] = options.customer_email

        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def create_customer(self, email: str, name: Optional[str]) -> ProviderCustomer:
        customer = await self._call(stripe.Customer.create, email=email, name=name)
        return ProviderCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
        )

    async def get_customer(self, customer_id: str) -> ProviderCustomer:
        try:
            customer = await self._call(stripe.Customer.retrieve, customer_id)
        except ProviderError as e:
            if e.status == 404:
                return ProviderCustomer(id=customer_id, deleted=True)
            raise

        return ProviderCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
            deleted=bool(customer.get("deleted", False)),
        )

    async def create_product(self, name: str) -> ProviderProduct:
        return _product_from_object(await self._call(stripe.Product.create, name=name))

    async def get_product(self, product_id: str) -> ProviderProduct:
        return _product_from_object(await self._call(stripe.Product.retrieve, product_id))

    async def update_product(self, product_id: str, **fields: Any) -> ProviderProduct:
        return _product_from_object(
            await self._call(stripe.Product.modify, product_id, **fields)
        )

    async def create_price(self, request: PriceRequest) -> ProviderPrice:
        params: dict[str, Any] = {
            "product": request.product_id,
            "currency": request.currency.lower(),
            "nickname": request.nickname,
        }
        if request.custom_amount:
            custom: dict[str, Any] = {"enabled": True}
            if request.amount:
                custom["preset"] = request.amount
            params["custom_unit_amount"] = custom
        else:
            params["unit_amount"] = request.amount
        if request.interval:
            params["recurring"] = {"interval": request.interval}

        return _price_from_object(await self._call(stripe.Price.create, **params))

    async def get_price(self, price_id: str) -> ProviderPrice:
        return _price_from_object(await self._call(stripe.Price.retrieve, price_id))

    async def update_price(self, price_id: str, **fields: Any) -> ProviderPrice:
        return _price_from_object(await self._call(stripe.Price.modify, price_id, **fields))

    async def create_coupon(self, request: CouponRequest) -> ProviderCoupon:
        params: dict[str, Any] = {"name": request.name, "duration": request.duration}
        if request.duration_in_months is not None:
            params["duration_in_months"] = request.duration_in_months
        if request.percent_off:
            params["percent_off"] = request.percent_off
        else:
            params["amount_off"] = request.amount_off
            params["currency"] = (request.currency or "").lower()

        coupon = await self._call(stripe.Coupon.create, **params)
        return ProviderCoupon(id=coupon["id"], name=coupon.get("name"))

    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_event(self, payload: bytes) -> WebhookEvent:
        try:
            raw = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookParseError("Invalid webhook payload") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            raise WebhookParseError("Webhook payload has no event type")

        data = raw.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise WebhookParseError("Webhook payload has no data object")

        stripe_type = raw["type"]
        event_type = EVENT_TYPES.get(stripe_type, stripe_type)
        return WebhookEvent(
            type=event_type,
            data=_normalize_object(stripe_type, obj),
            id=raw.get("id"),
        )
