import asyncio
import os
import sys
from pathlib import Path

import httpx
import pytest

os.environ.setdefault("DATABASE_URL", "")
sys.path.append(str(Path(__file__).resolve().parents[1]))

from delivery import render
from delivery.cache import LabelCache, MemorySessionStore
from delivery.dom import Document, Element
from delivery.engine import HttpLabelFetcher, LabelDeliveryEngine


class FakeFetcher:
    def __init__(self, products=None, error=None):
        self.products = products or {}
        self.error = error
        self.calls = []

    async def fetch(self, handles):
        self.calls.append(list(handles))
        if self.error is not None:
            raise self.error
        return {h: self.products[h] for h in handles if h in self.products}


def _label(label_id, **extra):
    label = {"id": label_id, "text": label_id, "position": "top-left", "showOnPDP": True, "showOnCollection": True}
    label.update(extra)
    return label


def _tile(handle):
    img = Element("img", width=240)
    link = Element("a", attrs={"href": f"/products/{handle}"}, width=240, children=[img])
    return Element("div", classes=["card"], width=240, children=[link])


def _document(handles, path="/collections/all"):
    return Document(body=Element("body", children=[_tile(h) for h in handles]), path=path)


def _engine(document, fetcher, **kwargs):
    kwargs.setdefault("fetch_debounce_ms", 0)
    kwargs.setdefault("scan_debounce_ms", 0)
    return LabelDeliveryEngine(document, fetcher, **kwargs)


def _badge_ids(element):
    return [b.dataset["labelId"] for b in element.query_all(render.has_class(render.LABEL_CLASS))]


def test_forty_five_handles_are_fetched_in_batches_of_twenty():
    fetcher = FakeFetcher()
    engine = _engine(Document(), fetcher)

    async def scenario():
        for i in range(45):
            engine.enqueue(f"p{i}")
        return await engine.flush()

    assert asyncio.run(scenario()) == 3
    assert [len(call) for call in fetcher.calls] == [20, 20, 5]
    assert fetcher.calls[0][0] == "p0"
    assert engine.pending == set()


def test_enqueue_ignores_cached_pending_and_queued_handles():
    engine = _engine(Document(), FakeFetcher())
    engine.cache.set("cached", [])
    engine.pending.add("inflight")

    async def scenario():
        for handle in ("cached", "inflight", "new", "new"):
            engine.enqueue(handle)
        engine.close()

    asyncio.run(scenario())
    assert engine.queue == ["new"]


def test_failed_batch_is_released_for_a_later_retry():
    document = _document(["tee"])
    fetcher = FakeFetcher(error=httpx.ConnectError("offline"))
    engine = _engine(document, fetcher)

    async def settle():
        await asyncio.sleep(0.01)
        await engine.drain()

    async def scenario():
        engine.scan()
        engine.observer.fire()
        await settle()
        assert engine.pending == set()
        assert not engine.cache.has("tee")
        assert len(engine.observer.observed) == 1

        fetcher.error = None
        fetcher.products = {"tee": [_label("sale")]}
        engine.scan()
        engine.observer.fire()
        await settle()

    asyncio.run(scenario())
    assert fetcher.calls == [["tee"], ["tee"]]
    assert engine.cache.get("tee") == [_label("sale")]
    assert _badge_ids(document.body.children[0]) == ["sale"]
    assert engine.observer.observed == []


def test_undecodable_response_is_treated_as_failure():
    engine = _engine(Document(), FakeFetcher(error=ValueError("bad json")))

    async def scenario():
        engine.enqueue("tee")
        await engine.flush()

    asyncio.run(scenario())
    assert engine.pending == set()
    assert not engine.cache.has("tee")


def test_handles_without_labels_are_cached_and_not_refetched():
    store = MemorySessionStore()
    fetcher = FakeFetcher()
    engine = _engine(Document(), fetcher, cache=LabelCache(store))

    async def scenario():
        engine.enqueue("plain")
        await engine.flush()
        engine.enqueue("plain")
        await engine.flush()

    asyncio.run(scenario())
    assert fetcher.calls == [["plain"]]
    assert engine.cache.get("plain") == []
    assert store.items  # persisted


def test_visible_cards_are_fetched_after_debounce_and_rendered():
    document = _document(["tee", "cap", "mug"])
    cart = Element("div", classes=["cart-drawer"], children=[_tile("in-cart")])
    document.body.append(cart)
    fetcher = FakeFetcher({"tee": [_label("sale")], "cap": [_label("new", showOnCollection=False)]})
    engine = _engine(document, fetcher)

    async def scenario():
        assert engine.scan() == 3
        assert engine.scan() == 0
        engine.observer.fire()
        await asyncio.sleep(0.01)
        await engine.drain()

    asyncio.run(scenario())
    tee, cap, mug = document.body.children[:3]
    assert fetcher.calls == [["tee", "cap", "mug"]]
    assert _badge_ids(tee) == ["sale"]
    assert _badge_ids(cap) == []
    assert _badge_ids(mug) == []
    assert engine.observer.observed == []
    assert "dhdHandle" not in cart.children[0].dataset


def test_cached_handles_render_on_scan_without_fetching():
    document = _document(["tee"])
    fetcher = FakeFetcher()
    cache = LabelCache()
    cache.set("tee", [_label("sale")])
    engine = _engine(document, fetcher, cache=cache)

    async def scenario():
        engine.scan()
        engine.observer.fire()
        await asyncio.sleep(0.01)
        await engine.drain()

    asyncio.run(scenario())
    assert fetcher.calls == []
    assert _badge_ids(document.body.children[0]) == ["sale"]


def test_mutations_trigger_a_single_debounced_rescan():
    document = _document(["tee"])
    engine = _engine(document, FakeFetcher(), scan_debounce_ms=20)
    scans = []
    original_scan = engine.scan

    def counting_scan():
        scans.append(1)
        return original_scan()

    engine.scan = counting_scan

    async def scenario():
        document.body.append(_tile("late"))
        engine.notify_mutation()
        engine.notify_mutation()
        engine.notify_mutation()
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert len(scans) == 1
    assert {el.dataset["dhdHandle"] for el in engine.observer.observed} == {"tee", "late"}


def test_start_on_product_page_injects_pdp_labels():
    img = Element("img", width=600)
    media = Element("div", classes=["product__media-item"], children=[img])
    document = Document(
        body=Element("body", children=[Element("div", classes=["product__media"], children=[media])]),
        path="/products/tee",
    )
    fetcher = FakeFetcher({"tee": [_label("pdp"), _label("grid-only", showOnPDP=False)]})
    engine = _engine(document, fetcher)

    asyncio.run(engine.start())

    assert fetcher.calls == [["tee"]]
    assert _badge_ids(media) == ["pdp"]
    assert len(document.head.children) == 1
    assert engine.cache.has("tee")


def test_pdp_fetch_failure_renders_nothing():
    document = Document(path="/products/tee")
    engine = _engine(document, FakeFetcher(error=httpx.ReadTimeout("slow")))
    assert asyncio.run(engine.inject_pdp()) is False
    assert not engine.cache.has("tee")


def test_http_fetcher_sends_shop_and_handles():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"products": {"tee": [_label("sale")]}})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://app.example") as client:
            fetcher = HttpLabelFetcher("shop.example", endpoint="/api/storefront/bundles", client=client)
            return await fetcher.fetch(["tee", "cap"])

    products = asyncio.run(scenario())
    assert seen["params"] == {"shop": "shop.example", "handles": "tee,cap"}
    assert products == {"tee": [_label("sale")]}


def test_http_fetcher_raises_on_error_status():
    def handler(request):
        return httpx.Response(503)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://app.example") as client:
            await HttpLabelFetcher("shop.example", endpoint="/x", client=client).fetch(["tee"])

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(scenario())


def test_unexpected_pdp_fetch_error_does_not_escape_start():
    document = Document(path="/products/tee")
    engine = _engine(document, FakeFetcher(error=RuntimeError("boom")))

    asyncio.run(engine.start())

    assert not engine.cache.has("tee")
    assert len(document.head.children) == 1


def test_http_fetcher_needs_somewhere_to_resolve_a_relative_endpoint():
    with pytest.raises(ValueError):
        HttpLabelFetcher("shop.example", endpoint="/api/storefront/bundles", base_url="")

    assert HttpLabelFetcher("shop.example", endpoint="/api/storefront/bundles", base_url="https://app.example")
    assert HttpLabelFetcher("shop.example", endpoint="https://app.example/api/storefront/bundles", base_url="")
