"""Webhook pipeline: signature check, event routing and command dispatch."""

from webhook_listener.webhook.dispatcher import CommandDispatcher
from webhook_listener.webhook.loop import ConnectionLoop
from webhook_listener.webhook.models import DispatchResult, WebhookRequest
from webhook_listener.webhook.server import WebhookServer

__all__ = [
    "CommandDispatcher",
    "ConnectionLoop",
    "DispatchResult",
    "WebhookRequest",
    "WebhookServer",
]
