"""
Storefront label delivery: discovers product tiles on a page, fetches their
labels in batches and draws badges over the tile images.
"""
from delivery.cache import LabelCache, MemorySessionStore, SessionStore
from delivery.dom import Document, Element, VisibilityObserver
from delivery.engine import HttpLabelFetcher, LabelDeliveryEngine, LabelFetcher

__all__ = [
    "Document",
    "Element",
    "HttpLabelFetcher",
    "LabelCache",
    "LabelDeliveryEngine",
    "LabelFetcher",
    "MemorySessionStore",
    "SessionStore",
    "VisibilityObserver",
]
