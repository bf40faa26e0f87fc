"""Lightweight HTTP server for the provider webhook endpoint."""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from paysync.config.settings import get_config
from paysync.payments.webhooks import WebhookRouter, handle_webhook

logger = logging.getLogger(__name__)

ROUTER_KEY = web.AppKey("router", WebhookRouter)
SIGNATURE_HEADER_KEY = web.AppKey("signature_header", str)


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST on the webhook route."""
    signature = request.headers.get(request.app[SIGNATURE_HEADER_KEY])
    if not signature:
        logger.error("Missing webhook signature header")
        return web.json_response({"error": "Missing signature"}, status=400)

    # Signatures cover the exact bytes received
    payload = await request.read()

    return await handle_webhook(request.app[ROUTER_KEY], payload, signature)


def create_app(
    router: WebhookRouter,
    path: str = "/webhooks/payments",
    signature_header: str = "x-dodo-signature",
) -> web.Application:
    """Create the aiohttp application with the webhook route."""
    app = web.Application()
    app[ROUTER_KEY] = router
    app[SIGNATURE_HEADER_KEY] = signature_header
    app.router.add_post(path, webhook_endpoint)
    return app


async def run_server(
    router: WebhookRouter,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve webhooks until the shutdown event is set (forever if None)."""
    config = get_config()
    app = create_app(
        router,
        path=config.webhook_path,
        signature_header=config.webhook_signature_header,
    )

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", config.webhook_server_port)
    await site.start()

    logger.info(
        f"Webhook server listening on port {config.webhook_server_port} at {config.webhook_path}"
    )

    try:
        await (shutdown_event or asyncio.Event()).wait()
    finally:
        logger.info("Shutting down webhook server...")
        await runner.cleanup()
