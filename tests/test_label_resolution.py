import asyncio
import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
sys.path.append(str(Path(__file__).resolve().parents[1]))

from schemas.bundle_schemas import BundleDefinition, BundleItem, LabelDefinition
from services.label_resolution import (
    LabelResolutionService,
    parse_handles,
    resolve_product_labels,
    select_labels,
)

NOW = datetime(2025, 6, 1, 12, 0)


def _bundle(bundle_id, handles, labels, priority=0, **overrides):
    fields = dict(
        id=bundle_id,
        name=bundle_id,
        items=[BundleItem(product_id=f"id-{h}", price=Decimal("10"), handle=h) for h in handles],
        priority=priority,
        starts_at=datetime(2025, 1, 1),
        labels=labels,
    )
    fields.update(overrides)
    return BundleDefinition(**fields)


def _ids(views):
    return [view["id"] for view in views]


def test_label_shared_by_two_bundles_appears_once():
    sale = LabelDefinition(id="sale", text="Sale")
    bundles = [_bundle("b1", ["tee"], [sale]), _bundle("b2", ["tee"], [sale])]

    projection = resolve_product_labels(bundles, now=NOW)

    assert _ids(projection["tee"]) == ["sale"]


def test_at_most_two_labels_per_position_highest_priority_first():
    labels = [LabelDefinition(id=f"l{p}", text=f"L{p}", priority=p) for p in (1, 5, 3, 4, 2)]
    projection = resolve_product_labels([_bundle("b1", ["tee"], labels)], now=NOW)

    assert _ids(projection["tee"]) == ["l5", "l4"]


def test_positions_are_capped_independently():
    labels = [
        LabelDefinition(id="tl1", text="a", priority=3),
        LabelDefinition(id="tl2", text="b", priority=2),
        LabelDefinition(id="tl3", text="c", priority=1),
        LabelDefinition(id="br1", text="d", position="bottom-right", priority=0),
    ]
    projection = resolve_product_labels([_bundle("b1", ["tee"], labels)], now=NOW)

    assert _ids(projection["tee"]) == ["tl1", "tl2", "br1"]


def test_bundle_priority_adds_to_label_priority():
    low_bundle = _bundle("b1", ["tee"], [LabelDefinition(id="a", text="A", priority=3)], priority=0)
    high_bundle = _bundle("b2", ["tee"], [LabelDefinition(id="b", text="B", priority=0)], priority=10)
    filler = _bundle("b3", ["tee"], [LabelDefinition(id="c", text="C", priority=2)], priority=0)

    projection = resolve_product_labels([low_bundle, high_bundle, filler], now=NOW)

    assert _ids(projection["tee"]) == ["b", "a"]


def test_ties_keep_encounter_order():
    labels = [LabelDefinition(id=x, text=x) for x in ("first", "second", "third")]
    assert _ids(select_labels([(label, 0) for label in labels])) == ["first", "second"]


def test_inactive_scheduled_and_unlabelled_bundles_are_ignored():
    label = LabelDefinition(id="x", text="X")
    bundles = [
        _bundle("draft", ["a"], [label], status="draft"),
        _bundle("future", ["b"], [label], starts_at=datetime(2030, 1, 1)),
        _bundle("expired", ["c"], [label], ends_at=datetime(2025, 3, 1)),
        _bundle("bare", ["d"], []),
    ]
    assert resolve_product_labels(bundles, now=NOW) == {}


def test_items_without_handle_are_skipped_and_handles_filter_applies():
    label = LabelDefinition(id="x", text="X")
    bundle = _bundle("b1", ["tee", "", "cap"], [label])

    assert set(resolve_product_labels([bundle], now=NOW)) == {"tee", "cap"}
    assert set(resolve_product_labels([bundle], now=NOW, handles=["cap", "unknown"])) == {"cap"}


def test_view_model_shape():
    label = LabelDefinition(id="x", text="Hot", icon="fire", bg_color="#f00", show_on_pdp=False)
    view = resolve_product_labels([_bundle("b1", ["tee"], [label])], now=NOW)["tee"][0]
    assert view == {
        "id": "x",
        "text": "Hot",
        "icon": "fire",
        "bgColor": "#f00",
        "textColor": "#ffffff",
        "position": "top-left",
        "shape": "rounded",
        "showOnPDP": False,
        "showOnCollection": True,
    }


def test_parse_handles():
    assert parse_handles(None) is None
    assert parse_handles(" , ") is None
    assert parse_handles("tee, cap,,mug") == ["tee", "cap", "mug"]


class FakeStorage:
    def __init__(self, bundles):
        self.bundles = bundles
        self.calls = []

    async def get_live_bundles_with_labels(self, shop_id, now):
        self.calls.append(shop_id)
        return self.bundles


def test_service_reads_live_bundles_for_shop():
    storage = FakeStorage([_bundle("b1", ["tee"], [LabelDefinition(id="x", text="X")])])
    projection = asyncio.run(LabelResolutionService(storage).get_labels("shop.example", ["tee"]))

    assert storage.calls == ["shop.example"]
    assert _ids(projection["tee"]) == ["x"]
