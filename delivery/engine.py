"""
Label Delivery Engine
=====================

Runs on a single asyncio event loop next to the page:

1. scan() finds product links, tags their card with the product handle and
   observes the card for visibility
2. cards entering the viewport are served from the cache or queued
3. the queue is flushed after a short debounce in batches of at most
   LABEL_FETCH_BATCH_SIZE handles, one request at a time
4. responses are cached (empty results too) and drawn on every card that
   carries the handle

A failed batch is released from the in-flight set and is not retried until
the card is seen again.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, Set
import asyncio
import logging

import httpx

from delivery import render
from delivery.cache import LabelCache
from delivery.dom import Document, Element, VisibilityObserver
from settings import (
    DOM_SCAN_DEBOUNCE_MS,
    LABEL_API_BASE_URL,
    LABEL_ENDPOINT_URL,
    LABEL_FETCH_BATCH_SIZE,
    LABEL_FETCH_DEBOUNCE_MS,
)

logger = logging.getLogger(__name__)

LabelList = List[Dict[str, Any]]


class LabelFetcher(Protocol):
    async def fetch(self, handles: List[str]) -> Dict[str, LabelList]: ...


class HttpLabelFetcher:
    """
    GET <endpoint>?shop=<domain>&handles=<csv> and return the ``products`` map.

    A relative ``endpoint`` resolves against ``base_url``, or against the
    injected client's own base URL.
    """

    def __init__(
        self,
        shop: str,
        endpoint: str = LABEL_ENDPOINT_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        base_url: str = LABEL_API_BASE_URL,
    ):
        if client is None and not base_url and not httpx.URL(endpoint).is_absolute_url:
            raise ValueError(f"Label endpoint {endpoint!r} is relative and no base URL is set")
        self.shop = shop
        self.endpoint = endpoint
        self.client = client
        self.timeout = timeout
        self.base_url = base_url

    async def fetch(self, handles: List[str]) -> Dict[str, LabelList]:
        params = {"shop": self.shop, "handles": ",".join(handles)}
        if self.client is not None:
            response = await self.client.get(self.endpoint, params=params)
        else:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.get(self.endpoint, params=params)
        response.raise_for_status()
        data = response.json()
        products = data.get("products") if isinstance(data, dict) else None
        if not isinstance(products, dict):
            raise ValueError("label response has no products map")
        return products


class LabelDeliveryEngine:
    def __init__(
        self,
        document: Document,
        fetcher: LabelFetcher,
        cache: Optional[LabelCache] = None,
        observer: Optional[VisibilityObserver] = None,
        batch_size: int = LABEL_FETCH_BATCH_SIZE,
        fetch_debounce_ms: float = LABEL_FETCH_DEBOUNCE_MS,
        scan_debounce_ms: float = DOM_SCAN_DEBOUNCE_MS,
    ):
        self.document = document
        self.fetcher = fetcher
        self.cache = cache if cache is not None else LabelCache()
        self.observer = observer if observer is not None else VisibilityObserver()
        self.observer.callback = self.on_visible
        self.batch_size = max(1, batch_size)
        self.fetch_debounce = fetch_debounce_ms / 1000.0
        self.scan_debounce = scan_debounce_ms / 1000.0

        self.queue: List[str] = []
        self.pending: Set[str] = set()
        self._fetch_timer: Optional[asyncio.TimerHandle] = None
        self._scan_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._styles_injected = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        loaded = self.cache.load()
        logger.debug(f"Label cache hydrated with {loaded} handle(s)")
        self.inject_styles()
        self.scan()
        if self.document.is_product_page:
            await self.inject_pdp()

    def inject_styles(self) -> None:
        if self._styles_injected:
            return
        style = Element("style")
        style.inner_html = render.FADE_IN_CSS
        self.document.head.append(style)
        self._styles_injected = True

    async def drain(self) -> None:
        """Wait for scheduled flushes to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        for timer in (self._fetch_timer, self._scan_timer):
            if timer is not None:
                timer.cancel()
        self._fetch_timer = self._scan_timer = None
        for task in self._tasks:
            task.cancel()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def scan(self) -> int:
        """Instrument product cards not seen before. Returns how many were added."""
        added = 0
        for link in self.document.query_all(render.is_product_link):
            if link.dataset.get(render.OBSERVED_DATA_KEY) == "true":
                continue
            try:
                if render.in_cart_region(link):
                    continue
                handle = render.extract_handle(link.get_attribute("href"))
                if not handle:
                    continue
                wrapper = render.find_card_wrapper(link)
                if wrapper is None:
                    continue

                wrapper.dataset[render.HANDLE_DATA_KEY] = handle
                link.dataset[render.OBSERVED_DATA_KEY] = "true"
                self.observer.observe(wrapper)
                added += 1

                labels = self.cache.get(handle)
                if labels:
                    self._render(wrapper, labels)
            except Exception as e:
                logger.debug(f"Skipping product link during scan: {e}")
        return added

    def notify_mutation(self) -> None:
        """Page content changed; re-scan once things settle."""
        if self._scan_timer is not None:
            self._scan_timer.cancel()
        loop = asyncio.get_running_loop()
        self._scan_timer = loop.call_later(self.scan_debounce, self._run_scan)

    def _run_scan(self) -> None:
        self._scan_timer = None
        self.scan()

    def on_visible(self, elements: Iterable[Element]) -> None:
        for element in elements:
            handle = element.dataset.get(render.HANDLE_DATA_KEY)
            if handle:
                if self.cache.has(handle):
                    labels = self.cache.get(handle)
                    if labels:
                        self._render(element, labels)
                else:
                    self.enqueue(handle)
            self.observer.unobserve(element)

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def enqueue(self, handle: str) -> None:
        if self.cache.has(handle) or handle in self.pending:
            return
        if handle not in self.queue:
            self.queue.append(handle)

        if self._fetch_timer is not None:
            self._fetch_timer.cancel()
        loop = asyncio.get_running_loop()
        self._fetch_timer = loop.call_later(self.fetch_debounce, self._schedule_flush)

    def _schedule_flush(self) -> None:
        self._fetch_timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> int:
        """Fetch everything queued, one batch per request. Returns requests made."""
        if self._fetch_timer is not None:
            self._fetch_timer.cancel()
            self._fetch_timer = None

        requests = 0
        while self.queue:
            batch = self.queue[:self.batch_size]
            del self.queue[:self.batch_size]
            self.pending.update(batch)
            requests += 1
            await self._fetch_batch(batch)
        return requests

    async def _fetch_batch(self, batch: List[str]) -> None:
        try:
            products = await self.fetcher.fetch(batch)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Label fetch failed for {len(batch)} handle(s): {e}")
            self._release(batch)
            return
        except Exception as e:
            logger.error(f"Unexpected label fetch error: {e}", exc_info=True)
            self._release(batch)
            return

        for handle in batch:
            labels = products.get(handle) or []
            self.cache.set(handle, labels)
            self.pending.discard(handle)
            if labels:
                for element in self._elements_for(handle):
                    self._render(element, labels)
        self.cache.persist()

    def _release(self, batch: List[str]) -> None:
        """Forget a failed batch and watch its cards again so the next visibility event retries."""
        self.pending.difference_update(batch)
        for handle in batch:
            for element in self._elements_for(handle):
                self.observer.observe(element)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _elements_for(self, handle: str) -> List[Element]:
        return self.document.query_all(lambda el: el.dataset.get(render.HANDLE_DATA_KEY) == handle)

    def _render(self, wrapper: Element, labels: LabelList) -> None:
        try:
            render.render_collection_tile(wrapper, labels)
        except Exception as e:
            logger.debug(f"Label render skipped: {e}")

    async def inject_pdp(self, handle: Optional[str] = None) -> bool:
        """Draw PDP labels for ``handle`` (default: the current product page)."""
        handle = handle or render.extract_handle(self.document.path)
        if not handle:
            return False

        labels = self.cache.get(handle)
        if labels is None:
            try:
                products = await self.fetcher.fetch([handle])
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"PDP label fetch failed for {handle}: {e}")
                return False
            except Exception as e:
                logger.error(f"Unexpected PDP label fetch error for {handle}: {e}", exc_info=True)
                return False
            labels = products.get(handle) or []
            self.cache.set(handle, labels)
            self.cache.persist()

        try:
            return render.render_pdp(self.document, labels)
        except Exception as e:
            logger.debug(f"PDP label render skipped: {e}")
            return False
