"""Provider webhook verification, parsing and dispatch."""

import logging
from typing import Awaitable, Callable

from aiohttp import web

from paysync.payments.projector import SubscriptionStateProjector, WebhookOutcome
from paysync.providers.base import (
    PaymentProvider,
    WebhookEvent,
    WebhookParseError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent, WebhookOutcome], Awaitable[None]]


class WebhookRouter:
    """
    Verifies, parses and dispatches one provider event at a time.

    Signature and parse failures raise. Once an event is verified, a handler
    failure is logged and recorded on the outcome instead of raised, so the
    provider still gets an acknowledgement and does not redeliver. Outcomes
    with failures must be monitored: the entitlement change they carried is lost.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        projector: SubscriptionStateProjector,
        secret: str,
    ):
        self.provider = provider
        self.projector = projector
        self.secret = secret
        self.handlers: dict[str, Handler] = {
            "payment.succeeded": projector.payment_succeeded,
            "payment.failed": projector.payment_failed,
            "subscription.created": projector.subscription_created,
            "subscription.updated": projector.subscription_updated,
            "subscription.cancelled": projector.subscription_cancelled,
            "customer.created": projector.customer_created,
            "customer.updated": projector.customer_updated,
            "invoice.payment_succeeded": projector.invoice_payment_succeeded,
            "invoice.payment_failed": projector.invoice_payment_failed,
        }

    def verify_and_parse(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Raises:
            WebhookSignatureError: If the signature does not match the raw payload
            WebhookParseError: If the payload is not a well-formed event
        """
        if not self.provider.verify_signature(payload, signature, self.secret):
            raise WebhookSignatureError("Invalid webhook signature")
        return self.provider.parse_event(payload)

    async def dispatch(self, event: WebhookEvent) -> WebhookOutcome:
        """Run the handler for the event type; unknown types are a logged no-op."""
        outcome = WebhookOutcome(event_type=event.type, event_id=event.id)

        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.type}")
            outcome.skipped("dispatch", f"unhandled event type {event.type}")
            return outcome

        try:
            await handler(event, outcome)
        except Exception as e:
            logger.exception(f"Error processing webhook {event.type} ({event.id}): {e}")
            outcome.failed(event.type, e)

        if not outcome.ok:
            logger.error(
                f"Webhook {event.type} ({event.id}) acknowledged with "
                f"{len(outcome.failures)} failed step(s)"
            )
        return outcome

    async def handle(self, payload: bytes, signature: str) -> WebhookOutcome:
        event = self.verify_and_parse(payload, signature)
        logger.info(f"Received webhook: {event.type}")
        return await self.dispatch(event)


async def handle_webhook(
    router: WebhookRouter,
    payload: bytes,
    signature: str,
) -> web.Response:
    """Handle one webhook delivery.

    Returns:
        400 on signature or parse failure (the provider retries), otherwise 200
        with the acknowledgement and the handling outcome
    """
    try:
        outcome = await router.handle(payload, signature)
    except WebhookSignatureError:
        logger.error("Invalid webhook signature")
        return web.json_response({"error": "Invalid signature"}, status=400)
    except WebhookParseError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return web.json_response({"error": "Invalid payload"}, status=400)

    return web.json_response({"received": True, "outcome": outcome.to_dict()}, status=200)
