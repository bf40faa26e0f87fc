"""Provider catalog reconciliation and webhook-driven member entitlements.

Resolves provider products, prices, coupons and customers for the local
catalog, builds checkout links, and projects provider webhook events onto
member state.
"""

from paysync.payments.catalog import CatalogReconciler
from paysync.payments.checkout import CheckoutLinkBuilder, InvalidRequestError
from paysync.payments.customers import CustomerLinkResolver
from paysync.payments.events import (
    EventHub,
    OfferCreated,
    TierCreated,
    TierPriceChanged,
    TierRenamed,
    register_catalog_reactions,
)
from paysync.payments.projector import HandlerResult, SubscriptionStateProjector, WebhookOutcome
from paysync.payments.reconcile import AdvisoryCreationLock, CreationLock, LocalCreationLock
from paysync.payments.webhooks import WebhookRouter, handle_webhook

__all__ = [
    "CatalogReconciler",
    "CustomerLinkResolver",
    "CheckoutLinkBuilder",
    "InvalidRequestError",
    "CreationLock",
    "LocalCreationLock",
    "AdvisoryCreationLock",
    "EventHub",
    "OfferCreated",
    "TierCreated",
    "TierPriceChanged",
    "TierRenamed",
    "register_catalog_reactions",
    "SubscriptionStateProjector",
    "WebhookOutcome",
    "HandlerResult",
    "WebhookRouter",
    "handle_webhook",
]
