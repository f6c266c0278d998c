"""Dedup ledger for fetch handlers."""

from memory.store import DedupContext, ProcessedItemsStore

__all__ = ["DedupContext", "ProcessedItemsStore"]
