"""Dodo Payments REST client."""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

import aiohttp

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

BASE_URLS = {
    "test": "https://test.dodopayments.com",
    "live": "https://live.dodopayments.com",
}


def _price_from_payload(payload: dict[str, Any]) -> ProviderPrice:
    recurring = payload.get("recurring") or {}
    custom = payload.get("custom_unit_amount") or {}
    return ProviderPrice(
        id=payload["id"],
        currency=payload.get("currency") or "",
        unit_amount=payload.get("unit_amount"),
        active=bool(payload.get("active", True)),
        nickname=payload.get("nickname"),
        interval=recurring.get("interval"),
        preset=custom.get("preset"),
    )


def _product_from_payload(payload: dict[str, Any]) -> ProviderProduct:
    return ProviderProduct(
        id=payload["id"],
        name=payload.get("name"),
        active=payload.get("active") is not False,
    )


class DodoProvider(PaymentProvider):
    """
    Dodo Payments adapter.

    Every call opens a short-lived aiohttp session with a total timeout.
    Non-2xx responses, transport errors and timeouts raise ProviderError.
    """

    def __init__(
        self,
        api_key: str,
        mode: str = "test",
        base_url: str = "",
        timeout_seconds: float = 10.0,
    ):
        if mode not in BASE_URLS:
            raise ValueError(f"mode must be 'test' or 'live', got {mode}")
        self.api_key = api_key
        self.mode = mode
        self.base_url = (base_url or BASE_URLS[mode]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def _request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.request(method, url, json=data) as resp:
                    text = await resp.text()
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Dodo {method} {endpoint} failed: {e}") from e

        try:
            body = json.loads(text) if text else {}
        except ValueError as e:
            raise ProviderError(
                f"Dodo {method} {endpoint} returned invalid JSON", status=status
            ) from e

        if status >= 400:
            message = body.get("message", "Unknown error") if isinstance(body, dict) else text
            raise ProviderError(f"Dodo API error ({status}): {message}", status=status)

        return body

    async def create_checkout_session(
        self,
        price_id: str,
        customer: Optional[ProviderCustomer],
        options: CheckoutOptions,
    ) -> CheckoutSession:
        session_data: dict[str, Any] = {
            "price_id": price_id,
            "success_url": options.success_url,
            "cancel_url": options.cancel_url,
            "metadata": dict(options.metadata),
            "mode": "subscription",
        }

        if customer:
            session_data["customer_id"] = customer.id
        elif options.customer_email:
            session_data["customer_email"] = options.customer_email

        if options.trial_days:
            session_data["trial_period_days"] = options.trial_days

        if options.coupon_id:
            session_data["coupon_id"] = options.coupon_id

        session = await self._request("/api/v1/checkout/sessions", "POST", session_data)
        return CheckoutSession(id=session["id"], url=session["checkout_url"])

    async def create_donation_checkout_session(
        self, options: DonationCheckoutOptions
    ) -> CheckoutSession:
        metadata = dict(options.metadata)
        if options.personal_note:
            metadata["personal_note"] = options.personal_note

        session_data: dict[str, Any] = {
            "price_id": options.price_id,
            "success_url": options.success_url,
            "cancel_url": options.cancel_url,
            "metadata": metadata,
            "mode": "payment",
            "allow_custom_amount": True,
        }

        if options.customer:
            session_data["customer_id"] = options.customer.id
        elif options.customer_email:
            session_data["customer_email"] = options.customer_email

        session = await self._request("/api/v1/checkout/sessions", "POST", session_data)
        return CheckoutSession(id=session["id"], url=session["checkout_url"])

    async def create_customer(self, email: str, name: Optional[str]) -> ProviderCustomer:
        customer = await self._request(
            "/api/v1/customers",
            "POST",
            {"email": email, "name": name, "metadata": {}},
        )
        return ProviderCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
        )

    async def get_customer(self, customer_id: str) -> ProviderCustomer:
        try:
            customer = await self._request(f"/api/v1/customers/{customer_id}")
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
        product = await self._request(
            "/api/v1/products",
            "POST",
            {"name": name, "description": "", "type": "service", "metadata": {}},
        )
        return _product_from_payload(product)

    async def get_product(self, product_id: str) -> ProviderProduct:
        return _product_from_payload(await self._request(f"/api/v1/products/{product_id}"))

    async def update_product(self, product_id: str, **fields: Any) -> ProviderProduct:
        product = await self._request(f"/api/v1/products/{product_id}", "PATCH", fields)
        return _product_from_payload(product)

    async def create_price(self, request: PriceRequest) -> ProviderPrice:
        body: dict[str, Any] = {
            "product_id": request.product_id,
            "currency": request.currency.lower(),
            "unit_amount": request.amount,
            "recurring": {"interval": request.interval} if request.interval else None,
            "nickname": request.nickname,
            "active": True,
            "metadata": {},
        }
        if request.custom_amount:
            body["custom_unit_amount"] = {
                "enabled": True,
                "preset": request.amount or None,
            }

        return _price_from_payload(await self._request("/api/v1/prices", "POST", body))

    async def get_price(self, price_id: str) -> ProviderPrice:
        return _price_from_payload(await self._request(f"/api/v1/prices/{price_id}"))

    async def update_price(self, price_id: str, **fields: Any) -> ProviderPrice:
        price = await self._request(f"/api/v1/prices/{price_id}", "PATCH", fields)
        return _price_from_payload(price)

    async def create_coupon(self, request: CouponRequest) -> ProviderCoupon:
        if request.percent_off:
            discount_type, discount_value = "percentage", request.percent_off
        else:
            discount_type, discount_value = "fixed_amount", request.amount_off

        coupon = await self._request(
            "/api/v1/coupons",
            "POST",
            {
                "name": request.name,
                "discount_type": discount_type,
                "discount_value": discount_value,
                "currency": request.currency,
                "duration": request.duration,
                "duration_in_months": request.duration_in_months,
                "metadata": {},
            },
        )
        return ProviderCoupon(id=coupon["id"], name=coupon.get("name"))

    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        """Hex HMAC-SHA256 of the raw body, compared in constant time."""
        if not signature or not secret:
            return False

        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, provided)

    def parse_event(self, payload: bytes) -> WebhookEvent:
        try:
            raw = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookParseError("Invalid webhook payload") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            raise WebhookParseError("Webhook payload has no event type")

        data = raw.get("data")
        if not isinstance(data, dict):
            raise WebhookParseError("Webhook payload has no data object")

        # Events wrap the resource in data.object; some deliveries inline it
        obj = data.get("object", data)
        if not isinstance(obj, dict):
            raise WebhookParseError("Webhook data object is not a mapping")

        return WebhookEvent(type=raw["type"], data=obj, id=raw.get("id"))
