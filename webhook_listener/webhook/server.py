"""Webhook HTTP application: aiohttp handlers for the GitHub-style wire protocol."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING

from aiohttp import web

from webhook_listener.log_context import set_log_context
from webhook_listener.webhook.auth import verify_signature
from webhook_listener.webhook.models import WebhookRequest
from webhook_listener.webhook.router import match_rules

if TYPE_CHECKING:
    from webhook_listener.config import ListenerConfig
    from webhook_listener.webhook.dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-GitHub-Event"


def empty_response(status: int) -> web.Response:
    """Response without a body; the connection closes afterwards."""
    response = web.Response(status=status)
    response.force_close()
    return response


def full_response(text: str, status: int) -> web.Response:
    """Plain-text response; the connection closes afterwards."""
    response = web.Response(text=text, status=status)
    response.force_close()
    return response


class WebhookServer:
    """HTTP handlers accepting webhook payloads and dispatching them.

    Routes:
    - ``POST /``  -- Webhook endpoint.
    - anything else -- Empty 404.
    """

    def __init__(self, config: ListenerConfig, dispatcher: CommandDispatcher) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._request_ids = itertools.count(1)

    def build_app(self) -> web.Application:
        """Create the aiohttp application; bodies are capped at ``max_body_bytes``."""
        app = web.Application(client_max_size=self._config.max_body_bytes + 1)
        app.router.add_post("/", self._handle_webhook)
        app.router.add_route("*", "/{tail:.*}", self._handle_not_found)
        return app

    # -- Handlers --

    async def _handle_not_found(self, request: web.Request) -> web.Response:
        set_log_context(operation="http", request_id=next(self._request_ids))
        logger.debug("No route for %s %s", request.method, request.path)
        return empty_response(404)

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        set_log_context(operation="http", request_id=next(self._request_ids))

        # 1. Event header, before any body bytes are read
        event = request.headers.get(EVENT_HEADER)
        if event is None:
            logger.warning("Webhook rejected: missing %s header", EVENT_HEADER)
            return full_response(f"Missing header: {EVENT_HEADER}", 400)
        if not event.isascii():
            logger.warning("Webhook rejected: non-ASCII %s header", EVENT_HEADER)
            return full_response(f"Invalid ASCII in header: {EVENT_HEADER}", 400)
        set_log_context(event=event)

        # 2. Size guard on the declared length, then a bounded read
        limit = self._config.max_body_bytes
        declared = request.content_length
        if declared is not None and declared > limit:
            logger.warning("Webhook rejected: payload too large (%d > %d bytes)", declared, limit)
            return full_response("Body too big", 413)
        try:
            body: bytes | None = await request.read()
        except web.HTTPRequestEntityTooLarge:
            body = None
        if body is None or len(body) > limit:
            logger.warning("Webhook rejected: streamed payload exceeded %d bytes", limit)
            return full_response("Body too big", 413)

        incoming = WebhookRequest(event=event, headers=request.headers, body=body)

        # 3. Signature
        if not verify_signature(self._config.secret_bytes, incoming.headers, incoming.body):
            logger.warning("Webhook rejected: missing or invalid signature")
            return full_response("Missing or invalid signature", 400)

        # 4. Route and dispatch (fire-and-forget; the reply does not wait for commands)
        matches = match_rules(self._config.commands, incoming.event)
        if matches:
            logger.info("Webhook accepted: %d command(s) matched", len(matches))
            self._dispatcher.dispatch(matches, incoming.event, incoming.body)
        else:
            logger.info("Webhook accepted: no command configured for this event")

        return empty_response(204)
