"""Built-in fetch/publish/update handlers."""

import httpx

from handlers.rss import RSSFetchHandler
from handlers.webhook import WebhookHandler
from registry.handler_registry import HandlerRegistry


def register_default_handlers(registry: HandlerRegistry, client: httpx.Client | None = None) -> HandlerRegistry:
    registry.register(RSSFetchHandler(client=client))
    registry.register(WebhookHandler(client=client))
    return registry


__all__ = ["RSSFetchHandler", "WebhookHandler", "register_default_handlers"]
