import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
sys.path.append(str(Path(__file__).resolve().parents[1]))

from schemas.bundle_schemas import BundleDefinition, BundleItem, DiscountRule, PublishedProductMetadata
from services import cart_discount
from services.metadata_publisher import build_entry


def _bundle(bundle_id, product_ids, kind="percentage", value="10", priority=0, **overrides):
    fields = dict(
        id=bundle_id,
        name=f"Bundle {bundle_id}",
        items=[BundleItem(product_id=pid, price=Decimal("20")) for pid in product_ids],
        discount=DiscountRule(kind=kind, value=value),
        priority=priority,
        starts_at=datetime(2025, 1, 1),
    )
    fields.update(overrides)
    return BundleDefinition(**fields)


def _metadata(*bundles):
    metadata = PublishedProductMetadata()
    for bundle in bundles:
        metadata = metadata.upsert(build_entry(bundle))
    return metadata.dumps()


def _line(line_id, product_id, metafield, quantity=1):
    return {
        "id": line_id,
        "quantity": quantity,
        "merchandise": {
            "id": f"variant-{product_id}",
            "product": {"id": product_id},
            "metafield": {"value": metafield} if metafield is not None else None,
        },
    }


def _targets(result):
    return [d["targets"][0]["cartLine"]["id"] for d in result["discounts"]]


def test_complete_set_discounts_every_line():
    bundle = _bundle("x", ["A", "B"])
    meta = _metadata(bundle)
    result = cart_discount.run({"cart": {"lines": [_line("1", "A", meta), _line("2", "B", meta)]}})

    assert result["discountApplicationStrategy"] == "ALL"
    assert _targets(result) == ["1", "2"]
    assert result["discounts"][0]["value"] == {"percentage": {"value": 10.0}}
    assert result["discounts"][0]["message"] == "Bundle x"


def test_incomplete_set_gets_nothing():
    meta = _metadata(_bundle("x", ["A", "B"]))
    result = cart_discount.run({"cart": {"lines": [_line("1", "A", meta)]}})
    assert result == cart_discount.empty_result()


def test_fixed_amount_scales_with_quantity():
    meta = _metadata(_bundle("x", ["A", "B"], kind="fixed", value="3"))
    result = cart_discount.run({"cart": {"lines": [_line("1", "A", meta, quantity=2), _line("2", "B", meta)]}})

    amounts = [d["value"]["fixedAmount"]["amount"] for d in result["discounts"]]
    assert amounts == ["6.00", "3.00"]


def test_product_metafield_location_is_accepted():
    meta = _metadata(_bundle("x", ["A", "B"]))
    lines = [_line("1", "A", None), _line("2", "B", None)]
    for line in lines:
        line["merchandise"]["product"]["metafield"] = {"value": meta}
    assert _targets(cart_discount.run({"cart": {"lines": lines}})) == ["1", "2"]


def test_malformed_metadata_means_not_in_any_bundle():
    meta = _metadata(_bundle("x", ["A", "B"]))
    lines = [_line("1", "A", meta), _line("2", "B", "{broken json")]
    assert cart_discount.run({"cart": {"lines": lines}})["discounts"] == []


def test_garbage_payloads_return_empty_result():
    for payload in (None, "nope", {}, {"cart": {}}, {"cart": {"lines": "x"}}, {"cart": {"lines": [None, 5]}}):
        assert cart_discount.run(payload) == cart_discount.empty_result()


def test_inactive_and_out_of_window_bundles_are_ignored():
    draft = _metadata(_bundle("x", ["A", "B"], status="draft"))
    assert cart_discount.run({"cart": {"lines": [_line("1", "A", draft), _line("2", "B", draft)]}})["discounts"] == []

    ended = _metadata(_bundle("y", ["A", "B"], ends_at=datetime(2025, 2, 1)))
    payload = {
        "cart": {"lines": [_line("1", "A", ended), _line("2", "B", ended)]},
        "shop": {"localTime": {"dateTime": "2025-06-01T12:00:00"}},
    }
    assert cart_discount.run(payload)["discounts"] == []


def test_overlapping_bundles_higher_priority_wins():
    small = _bundle("small", ["A", "B"], value="5", priority=1)
    big = _bundle("big", ["A", "B", "C"], value="15", priority=9)
    meta = _metadata(small, big)
    lines = [_line("1", "A", meta), _line("2", "B", meta), _line("3", "C", meta)]

    result = cart_discount.run({"cart": {"lines": lines}}, allow_stacking=False)

    assert _targets(result) == ["1", "2", "3"]
    assert {d["message"] for d in result["discounts"]} == {"Bundle big"}


def test_lower_priority_bundle_applies_when_higher_one_is_incomplete():
    small = _bundle("small", ["A", "B"], value="5", priority=1)
    big = _bundle("big", ["A", "B", "C"], value="15", priority=9)
    meta = _metadata(small, big)
    result = cart_discount.run({"cart": {"lines": [_line("1", "A", meta), _line("2", "B", meta)]}}, allow_stacking=False)

    assert {d["message"] for d in result["discounts"]} == {"Bundle small"}


def test_bundle_losing_a_shared_line_gets_nothing():
    x = _bundle("x", ["A", "B"], value="10", priority=5)
    y = _bundle("y", ["B", "C"], value="20", priority=0)
    meta = _metadata(x, y)
    lines = [_line("1", "A", meta), _line("2", "B", meta), _line("3", "C", meta)]

    result = cart_discount.run({"cart": {"lines": lines}}, allow_stacking=False)

    assert _targets(result) == ["1", "2"]
    assert {d["message"] for d in result["discounts"]} == {"Bundle x"}


def test_lines_left_by_a_dropped_bundle_go_to_the_next_one():
    x = _bundle("x", ["A", "B"], priority=9)
    y = _bundle("y", ["B", "C"], priority=5)
    z = _bundle("z", ["C", "D"], priority=0)
    meta = _metadata(x, y, z)
    lines = [_line(str(i), pid, meta) for i, pid in enumerate("ABCD", start=1)]

    result = cart_discount.run({"cart": {"lines": lines}}, allow_stacking=False)

    owners = {d["targets"][0]["cartLine"]["id"]: d["message"] for d in result["discounts"]}
    assert owners == {"1": "Bundle x", "2": "Bundle x", "3": "Bundle z", "4": "Bundle z"}


def test_stacking_applies_every_complete_bundle():
    meta = _metadata(_bundle("one", ["A", "B"]), _bundle("two", ["A", "B"], priority=3))
    result = cart_discount.run(
        {"cart": {"lines": [_line("1", "A", meta), _line("2", "B", meta)]}},
        allow_stacking=True,
    )
    assert len(result["discounts"]) == 4


def test_exhausted_budget_yields_empty_result():
    meta = _metadata(_bundle("x", ["A", "B"]))
    payload = {"cart": {"lines": [_line("1", "A", meta), _line("2", "B", meta)]}}
    assert cart_discount.run(payload, budget_ms=1e-9) == cart_discount.empty_result()
