import os
import sys
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
sys.path.append(str(Path(__file__).resolve().parents[1]))

from delivery import render
from delivery.dom import Document, Element


def _label(label_id, position="top-left", **extra):
    label = {
        "id": label_id,
        "text": label_id.upper(),
        "icon": None,
        "bgColor": "#111111",
        "textColor": "#ffffff",
        "position": position,
        "shape": "pill",
        "showOnPDP": True,
        "showOnCollection": True,
    }
    label.update(extra)
    return label


def _tile(width=240, href="/products/tee"):
    img = Element("img", width=width)
    link = Element("a", attrs={"href": href}, width=width, children=[Element("picture", children=[img])])
    card = Element("div", classes=["card"], width=width, children=[link])
    return card, link, img


def _badges(element):
    return element.query_all(render.has_class(render.LABEL_CLASS))


def test_extract_handle():
    assert render.extract_handle("/collections/all/products/tee-shirt?variant=1") == "tee-shirt"
    assert render.extract_handle("https://shop.example/products/cap#reviews") == "cap"
    assert render.extract_handle("/pages/about") is None


def test_card_wrapper_prefers_card_class_then_image_link():
    card, link, _ = _tile()
    assert render.find_card_wrapper(link) is card

    bare_link = Element("a", attrs={"href": "/products/x"}, children=[Element("img")])
    Element("li", children=[bare_link])
    assert render.find_card_wrapper(bare_link) is bare_link

    text_link = Element("a", attrs={"href": "/products/x"})
    assert render.find_card_wrapper(text_link) is None


def test_cart_region_detection():
    link = Element("a", attrs={"href": "/products/x"})
    Element("div", attrs={"id": "cart-drawer"}, children=[Element("ul", children=[link])])
    assert render.in_cart_region(link)
    assert not render.in_cart_region(_tile()[1])


def test_target_climbs_past_picture_to_the_anchor_and_makes_it_positionable():
    card, link, _ = _tile()
    target = render.find_label_target(card)
    assert target is link

    assert render.render_labels(target, [_label("a")])
    assert link.style["position"] == "relative"
    assert link.style["display"] == "inline-block"


def test_display_contents_container_is_skipped():
    img = Element("img")
    span = Element("span", children=[img])
    contents = Element("div", computed={"display": "contents"}, children=[span])
    card = Element("div", classes=["card"], children=[contents])

    assert render.find_label_target(card) is card


def test_ancestor_climb_is_bounded():
    img = Element("img")
    inner = Element("span", children=[img])
    node = inner
    for _ in range(4):
        node = Element("span", children=[node])
    Element("div", classes=["card"], children=[node])

    assert render.find_label_target(node.parent) is inner


def test_labels_stack_per_corner_with_size_dependent_step():
    card, link, _ = _tile(width=240)
    render.render_labels(link, [_label("a"), _label("b"), _label("c", "bottom-right")])
    tops = [b.style.get("top") for b in _badges(link)]
    assert tops == ["10px", "45px", None]
    assert _badges(link)[2].style["bottom"] == "10px"
    assert _badges(link)[2].style["right"] == "8px"

    small_card, small_link, _ = _tile(width=150)
    render.render_labels(small_link, [_label("a"), _label("b")])
    assert [b.style["top"] for b in _badges(small_link)] == ["10px", "35px"]


def test_same_label_set_is_not_rerendered_but_a_new_set_replaces_it():
    card, link, _ = _tile()
    labels = [_label("a"), _label("b")]
    assert render.render_labels(link, labels)
    first = _badges(link)

    assert not render.render_labels(link, list(reversed(labels)))
    assert _badges(link) == first

    assert render.render_labels(link, [_label("c")])
    assert [b.dataset["labelId"] for b in _badges(link)] == ["c"]


def test_badge_markup():
    badge = render.build_badge(_label("a", icon="star", text="<b>Hot</b>"), 10, is_pdp=False, is_small=False)
    assert badge.style["opacity"] == "0"
    assert badge.style["border-radius"] == "50px"
    assert "<svg" in badge.inner_html
    assert "&lt;b&gt;Hot&lt;/b&gt;" in badge.inner_html


def test_collection_tile_only_shows_collection_labels():
    card, link, _ = _tile()
    assert render.render_collection_tile(card, [_label("a"), _label("pdp-only", showOnCollection=False)])
    assert [b.dataset["labelId"] for b in _badges(card)] == ["a"]

    other, _, _ = _tile()
    assert not render.render_collection_tile(other, [_label("pdp-only", showOnCollection=False)])


def _gallery():
    first = Element("div", classes=["product__media-item"], children=[Element("img", width=600)])
    active = Element("div", classes=["product__media-item", "is-active"], children=[Element("img", width=600)])
    gallery = Element("div", classes=["product__media"], children=[first, active])
    return Document(body=Element("body", children=[gallery]), path="/products/tee"), first, active


def test_pdp_prefers_active_gallery_image():
    document, first, active = _gallery()
    assert render.select_pdp_image(document) is active.children[0]

    assert render.render_pdp(document, [_label("a"), _label("hidden", showOnPDP=False)])
    assert [b.dataset["labelId"] for b in _badges(active)] == ["a"]
    assert _badges(first) == []
    assert _badges(active)[0].style["left"] == "20px"


def test_pdp_without_gallery_falls_back_to_large_images():
    big = Element("img", width=400)
    holder = Element("div", children=[big])
    document = Document(body=Element("body", children=[Element("img", width=100), holder]), path="/products/x")

    assert render.select_pdp_image(document) is big
    assert render.render_pdp(document, [_label("a")])
    assert len(_badges(holder)) == 1


def test_pdp_with_no_images_is_a_no_op():
    assert not render.render_pdp(Document(path="/products/x"), [_label("a")])
