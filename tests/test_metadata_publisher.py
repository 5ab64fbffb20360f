import asyncio
import json
import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
sys.path.append(str(Path(__file__).resolve().parents[1]))

from schemas.bundle_schemas import (
    BundleDefinition,
    BundleItem,
    DiscountRule,
    LabelDefinition,
    PublishedProductMetadata,
)
from services.metadata_publisher import BundleMetadataPublisher, build_entry


class FakeMetadataStore:
    def __init__(self, failing=()):
        self.values = {}
        self.failing = set(failing)
        self.writes = []

    async def get_product_metadata(self, shop_id, product_id):
        return self.values.get((shop_id, product_id))

    async def set_product_metadata(self, shop_id, product_id, value):
        if product_id in self.failing:
            raise RuntimeError("metafield write rejected")
        self.writes.append(product_id)
        self.values[(shop_id, product_id)] = value

    def entries(self, product_id, shop_id="shop.example"):
        return json.loads(self.values.get((shop_id, product_id), "[]"))


def _bundle(bundle_id="b1", product_ids=("p1", "p2"), **overrides):
    fields = dict(
        id=bundle_id,
        name="Starter set",
        items=[BundleItem(product_id=pid, price=Decimal("25"), handle=f"h-{pid}") for pid in product_ids],
        discount=DiscountRule(kind="percentage", value="20"),
        starts_at=datetime(2025, 1, 1),
        labels=[
            LabelDefinition(id="l-low", text="Bundle", priority=1),
            LabelDefinition(id="l-high", text="Save 20%", priority=5),
        ],
    )
    fields.update(overrides)
    return BundleDefinition(**fields)


def test_build_entry_snapshots_price_and_winning_label():
    entry = build_entry(_bundle())
    assert entry.original_price == 50.0
    assert entry.bundle_price == 40.0
    assert entry.discount_value == 20.0
    assert entry.active is True
    assert entry.label["labelId"] == "l-high"
    assert entry.member_item_ids == ["p1", "p2"]


def test_publish_twice_is_idempotent():
    store = FakeMetadataStore()
    publisher = BundleMetadataPublisher(store, "shop.example")
    bundle = _bundle()

    asyncio.run(publisher.publish(bundle))
    first = dict(store.values)
    asyncio.run(publisher.publish(bundle))

    assert store.values == first
    for pid in ("p1", "p2"):
        entries = store.entries(pid)
        assert [e["bundleId"] for e in entries] == ["b1"]


def test_publish_keeps_other_bundles_entries():
    store = FakeMetadataStore()
    publisher = BundleMetadataPublisher(store, "shop.example")

    asyncio.run(publisher.publish(_bundle("b1", ("p1", "p2"))))
    asyncio.run(publisher.publish(_bundle("b2", ("p2", "p3"))))

    assert [e["bundleId"] for e in store.entries("p2")] == ["b1", "b2"]
    assert [e["bundleId"] for e in store.entries("p3")] == ["b2"]


def test_dropped_products_lose_the_entry():
    store = FakeMetadataStore()
    publisher = BundleMetadataPublisher(store, "shop.example")
    asyncio.run(publisher.publish(_bundle(product_ids=("p1", "p2"))))

    result = asyncio.run(publisher.publish(_bundle(product_ids=("p1", "p3")), previous_product_ids=["p1", "p2"]))

    assert result.removed == ["p2"]
    assert store.entries("p2") == []
    assert [e["bundleId"] for e in store.entries("p3")] == ["b1"]


def test_one_failing_product_does_not_stop_the_others():
    store = FakeMetadataStore(failing={"p2"})
    publisher = BundleMetadataPublisher(store, "shop.example")

    result = asyncio.run(publisher.publish(_bundle(product_ids=("p1", "p2", "p3"))))

    assert result.success is True
    assert result.written == ["p1", "p3"]
    assert result.failed == ["p2"]
    assert result.to_dict()["failed"] == ["p2"]


def test_unpublish_strips_entry_and_skips_untouched_products():
    store = FakeMetadataStore()
    publisher = BundleMetadataPublisher(store, "shop.example")
    asyncio.run(publisher.publish(_bundle(product_ids=("p1",))))

    result = asyncio.run(publisher.unpublish("b1", ["p1", "never-published"]))

    assert result.removed == ["p1"]
    assert PublishedProductMetadata.parse(store.values[("shop.example", "p1")]).entries == []
    assert ("shop.example", "never-published") not in store.values


def test_publish_repairs_malformed_existing_metadata():
    store = FakeMetadataStore()
    store.values[("shop.example", "p1")] = "{not json"
    publisher = BundleMetadataPublisher(store, "shop.example")

    asyncio.run(publisher.publish(_bundle(product_ids=("p1",))))

    assert [e["bundleId"] for e in store.entries("p1")] == ["b1"]
