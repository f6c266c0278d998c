"""
RSS/Atom fetch handler.

Reads a feed over HTTP and returns the items the flow step has not processed
yet, newest first as published by the feed. Dedup is applied against the
ledger view handed in by the fetch step.
"""

from __future__ import annotations

import logging
from typing import Any
from xml.etree import ElementTree as ET

import httpx

from memory.store import DedupContext
from registry.handler_registry import Handler
from shared.errors import HandlerError, remediation
from shared.models import FetchedItem, StepKind

logger = logging.getLogger(__name__)

ATOM_NS = "{http://www.w3.org/2005/Atom}"
MEDIA_NS = "{http://search.yahoo.com/mrss/}"


def _text(element: ET.Element | None) -> str:
    if element is None or element.text is None:
        return ""
    return element.text.strip()


def _rss_item(node: ET.Element) -> FetchedItem | None:
    link = _text(node.find("link"))
    identifier = _text(node.find("guid")) or link
    if not identifier:
        return None
    image = ""
    enclosure = node.find("enclosure")
    if enclosure is not None and str(enclosure.get("type", "")).startswith("image/"):
        image = enclosure.get("url", "")
    media = node.find(f"{MEDIA_NS}content")
    if not image and media is not None:
        image = media.get("url", "")
    return FetchedItem(
        identifier=identifier,
        title=_text(node.find("title")),
        content=_text(node.find("description")),
        source_url=link,
        image_path=image,
        metadata={"published": _text(node.find("pubDate"))},
    )


def _atom_entry(node: ET.Element) -> FetchedItem | None:
    link = ""
    for candidate in node.findall(f"{ATOM_NS}link"):
        if candidate.get("rel", "alternate") == "alternate":
            link = candidate.get("href", "")
            break
    identifier = _text(node.find(f"{ATOM_NS}id")) or link
    if not identifier:
        return None
    content = _text(node.find(f"{ATOM_NS}content")) or _text(node.find(f"{ATOM_NS}summary"))
    return FetchedItem(
        identifier=identifier,
        title=_text(node.find(f"{ATOM_NS}title")),
        content=content,
        source_url=link,
        metadata={"published": _text(node.find(f"{ATOM_NS}updated"))},
    )


def parse_feed(xml_text: str) -> list[FetchedItem]:
    """Parse RSS 2.0 or Atom into FetchedItems (document order)."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise HandlerError(f"Feed is not valid XML: {e}") from None

    if root.tag == f"{ATOM_NS}feed":
        nodes = root.findall(f"{ATOM_NS}entry")
        parsed = [_atom_entry(node) for node in nodes]
    else:
        parsed = [_rss_item(node) for node in root.iter("item")]
    return [item for item in parsed if item is not None]


class RSSFetchHandler(Handler):
    slug = "rss"
    label = "RSS Feed"
    step_types = (StepKind.FETCH,)
    config_schema = {
        "feed_url": {"type": "string", "required": True, "label": "Feed URL"},
        "max_items": {"type": "integer", "default": 10, "label": "Items to inspect"},
        "search": {"type": "string", "default": "", "label": "Keyword filter"},
    }

    def __init__(self, client: httpx.Client | None = None, timeout: float = 30.0):
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def fetch(self, config: dict[str, Any], dedup: DedupContext) -> list[FetchedItem]:
        feed_url = str(config.get("feed_url") or "").strip()
        if not feed_url:
            raise HandlerError(
                "RSS handler requires feed_url",
                remediation=remediation(
                    "configure_handler",
                    "Set handler_config.feed_url on the fetch step.",
                    tool_hint="update_flow_step",
                ),
            )

        try:
            logger.info("Fetching feed: %s", feed_url)
            response = self.client.get(feed_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Feed request failed for %s: %r", feed_url, e)
            raise HandlerError(f"Failed to fetch feed: {e}", diagnostic={"feed_url": feed_url}) from None

        items = parse_feed(response.text)
        keyword = str(config.get("search") or "").strip().lower()
        if keyword:
            items = [i for i in items if keyword in f"{i.title} {i.content}".lower()]

        limit = max(1, int(config.get("max_items") or 10))
        fresh = [item for item in items[:limit] if not dedup.has_processed(item.identifier)]
        logger.info("Feed %s: %d item(s), %d unprocessed", feed_url, len(items), len(fresh))
        return fresh
