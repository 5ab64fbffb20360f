"""
Badge rendering over product tile and gallery images.

Labels are absolutely positioned inside the nearest safe ancestor of the tile
image. Several labels in one corner stack with a cumulative offset. Any DOM
shape we do not recognise results in nothing being drawn.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional
import html
import re

from delivery.dom import (
    Document,
    Element,
    any_of,
    has_attr,
    has_class,
    has_class_containing,
    has_tag,
)
from schemas.bundle_schemas import DEFAULT_LABEL_POSITION, LABEL_POSITIONS

LABEL_CLASS = "dhd-bundle-label"
HANDLE_DATA_KEY = "dhdHandle"
OBSERVED_DATA_KEY = "dhdObserved"

MAX_ANCESTOR_HOPS = 3
VALID_CONTAINER_TAGS = ("DIV", "A", "LI", "FIGURE", "TD", "ARTICLE", "SECTION")
NON_POSITIONABLE_DISPLAYS = ("contents", "none")

OFFSET_START_PX = 10
OFFSET_STEP_PDP = 45
OFFSET_STEP_SMALL = 25
OFFSET_STEP_DEFAULT = 35
SMALL_TILE_WIDTH = 180

CARD_CLASSES = ("card", "product-card", "grid-view-item", "product-item", "collection-product-card")
CART_REGION_CLASSES = ("cart", "cart-items", "cart-drawer", "dhd-bundle-section")
PDP_GALLERY_CLASSES = (
    "product__media",
    "product-single__media",
    "product-gallery",
    "product__media-list",
    "product-images",
)
ACTIVE_SLIDE_CLASSES = ("is-active", "swiper-slide-active", "active")

FADE_IN_CSS = """
@keyframes dhdFadeIn {
  from { opacity: 0; transform: scale(0.9); }
  to { opacity: 1; transform: scale(1); }
}
.dhd-bundle-label {
  animation: dhdFadeIn 0.3s ease-out forwards;
}
"""

_HANDLE_RE = re.compile(r"/products/([^/?#]+)")

_STAR = '<svg viewBox="0 0 20 20" fill="currentColor"><path d="M10 1l2.928 5.928 6.072.886-4.394 4.272 1.037 6.048L10 15.276 4.357 18.134l1.037-6.048L1 7.814l6.072-.886L10 1z"/></svg>'
_TAG = '<svg viewBox="0 0 20 20" fill="currentColor"><path fill-rule="evenodd" d="M3.5 2A1.5 1.5 0 0 0 2 3.5v4.586a1.5 1.5 0 0 0 .44 1.06l8.914 8.915a1.5 1.5 0 0 0 2.122 0l4.585-4.586a1.5 1.5 0 0 0 0-2.121L9.146 2.44A1.5 1.5 0 0 0 8.086 2H3.5ZM5.5 5a1 1 0 1 0 0 2 1 1 0 0 0 0-2Z"/></svg>'
_BOLT = '<svg viewBox="0 0 20 20" fill="currentColor"><path d="M11.5 1L2 11h6v8l9.5-10h-6V1z"/></svg>'
_HEART = '<svg viewBox="0 0 20 20" fill="currentColor"><path d="M10 3.22l-.61-.6a5.5 5.5 0 00-7.78 7.77L10 18.78l8.39-8.4a5.5 5.5 0 00-7.78-7.77l-.61.61z"/></svg>'
_CHECK = '<svg viewBox="0 0 20 20" fill="currentColor"><path d="M0 11l2-2 5 5L18 3l2 2L7 18z"/></svg>'
_FIRE = '<svg viewBox="0 0 20 20" fill="currentColor"><path d="M10.35 1.01a.5.5 0 0 0-.7 0C8.33 2.3 2 8.44 2 12.5a8 8 0 1 0 16 0c0-4.06-6.33-10.2-7.65-11.49ZM10 18a5.5 5.5 0 1 1 0-11c0 1.5-1 3-2.5 4.5 2 1 2.5 3.5 2.5 6.5Z"/></svg>'
_ALERT = '<svg viewBox="0 0 20 20" fill="currentColor"><path fill-rule="evenodd" d="M10 2a8 8 0 100 16 8 8 0 000-16zm.75 11h-1.5v-1.5h1.5V13zm0-3h-1.5V6h1.5v4z"/></svg>'
_INFO = '<svg viewBox="0 0 20 20" fill="currentColor"><path fill-rule="evenodd" d="M10 18a8 8 0 1 0 0-16 8 8 0 0 0 0 16Zm.75-11.25a.75.75 0 0 0-1.5 0v4.5a.75.75 0 0 0 1.5 0v-4.5Zm-.75 7.5a1 1 0 1 0 0-2 1 1 0 0 0 0 2Z"/></svg>'

ICON_SVGS: Dict[str, str] = {
    "star": _STAR,
    "tag": _TAG,
    "bolt": _BOLT,
    "bolt-filled": _BOLT,
    "heart": _HEART,
    "check": _CHECK,
    "fire": _FIRE,
    "discount": _ALERT,
    "alert": _ALERT,
    "info": _INFO,
}


def get_icon_svg(icon: Optional[str]) -> str:
    if not icon or icon == "none":
        return ""
    return ICON_SVGS.get(icon, "")


def extract_handle(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    match = _HANDLE_RE.search(href)
    return match.group(1) if match else None


def is_product_link(element: Element) -> bool:
    return element.tag == "A" and "/products/" in (element.get_attribute("href") or "")


is_image = has_tag("IMG")


def in_cart_region(element: Element) -> bool:
    def _cart(el: Element) -> bool:
        return el.has_class(*CART_REGION_CLASSES) or "cart" in el.id
    return element.closest(_cart) is not None


def find_card_wrapper(link: Element) -> Optional[Element]:
    """Product card around a link; the link itself when it wraps an image."""
    card = link.closest(has_class(*CARD_CLASSES))
    if card is not None:
        return card
    if link.query(is_image) is not None:
        return link
    return None


def is_positionable(element: Element) -> bool:
    return (
        element.tag in VALID_CONTAINER_TAGS
        and element.computed_style("display") not in NON_POSITIONABLE_DISPLAYS
    )


def find_label_target(wrapper: Element) -> Optional[Element]:
    """
    Container the badges attach to: the tile image's parent, or the closest
    positionable ancestor within MAX_ANCESTOR_HOPS of it.
    """
    img = wrapper.query(is_image)
    if img is None or img.parent is None:
        return None

    target = img.parent
    candidate: Optional[Element] = target
    hops = 0
    while candidate is not None and not is_positionable(candidate) and hops < MAX_ANCESTOR_HOPS:
        if candidate.parent is None:
            break
        candidate = candidate.parent
        hops += 1
    if candidate is not None and is_positionable(candidate):
        target = candidate
    return target


def rendered_label_ids(target: Element) -> List[str]:
    return [el.dataset.get("labelId", "") for el in target.query_all(has_class(LABEL_CLASS))]


def _offset_step(is_pdp: bool, is_small: bool) -> int:
    if is_pdp:
        return OFFSET_STEP_PDP
    return OFFSET_STEP_SMALL if is_small else OFFSET_STEP_DEFAULT


def _border_radius(shape: Optional[str]) -> str:
    if shape == "pill":
        return "50px"
    if shape == "rounded":
        return "4px"
    return "0"


def build_badge(label: Dict[str, Any], offset: int, is_pdp: bool, is_small: bool) -> Element:
    position = label.get("position") or DEFAULT_LABEL_POSITION
    if position not in LABEL_POSITIONS:
        position = DEFAULT_LABEL_POSITION
    label_id = str(label.get("id", ""))

    badge = Element("div", classes=[LABEL_CLASS, f"{LABEL_CLASS}-{label_id}"])
    badge.dataset["labelId"] = label_id

    vertical, horizontal = position.split("-")
    icon_size = "16px" if is_pdp else ("12px" if is_small else "13px")
    badge.style.update({
        "position": "absolute",
        "z-index": "20",
        "display": "flex",
        "align-items": "center",
        "gap": "5px",
        "background-color": str(label.get("bgColor") or "#000000"),
        "color": str(label.get("textColor") or "#ffffff"),
        "padding": "5px 12px" if is_pdp else ("3px 7px" if is_small else "3px 8px"),
        "font-size": "12px" if is_pdp else "10px",
        "font-weight": "700",
        "text-transform": "uppercase",
        "border-radius": _border_radius(label.get("shape")),
        "white-space": "nowrap",
        "pointer-events": "none",
        "max-width": "92%",
        # fade-in animation takes it to 1
        "opacity": "0",
        vertical: f"{offset}px",
        horizontal: "20px" if is_pdp else "8px",
    })

    icon = get_icon_svg(label.get("icon"))
    icon_html = (
        f'<span style="display:flex; width:{icon_size}; height:{icon_size}; align-items:center;">{icon}</span>'
        if icon else ""
    )
    badge.inner_html = f"{icon_html}<span>{html.escape(str(label.get('text', '')))}</span>"
    return badge


def render_labels(target: Element, labels: List[Dict[str, Any]], is_pdp: bool = False) -> bool:
    """Draw ``labels`` inside ``target``. Returns False when nothing changed."""
    if target is None:
        return False

    if target.computed_style("position") == "static":
        target.style["position"] = "relative"
    if target.tag == "A" and target.computed_style("display") == "inline":
        target.style["display"] = "inline-block"

    existing = rendered_label_ids(target)
    new_ids = [str(label.get("id", "")) for label in labels]
    if len(existing) == len(new_ids) and all(label_id in new_ids for label_id in existing):
        return False

    for el in target.query_all(has_class(LABEL_CLASS)):
        el.remove()

    offsets = {position: OFFSET_START_PX for position in LABEL_POSITIONS}
    is_small = target.width < SMALL_TILE_WIDTH
    step = _offset_step(is_pdp, is_small)
    for label in labels:
        position = label.get("position") or DEFAULT_LABEL_POSITION
        if position not in offsets:
            position = DEFAULT_LABEL_POSITION
        target.append(build_badge(label, offsets[position], is_pdp, is_small))
        offsets[position] += step
    return True


def render_collection_tile(wrapper: Element, labels: List[Dict[str, Any]]) -> bool:
    visible = [label for label in labels if label.get("showOnCollection") is not False]
    if not visible:
        return False
    target = find_label_target(wrapper)
    if target is None:
        return False
    return render_labels(target, visible, is_pdp=False)


def _is_visible_image(img: Element, min_width: float) -> bool:
    return (
        img.width > min_width
        and img.computed_style("display") != "none"
        and img.computed_style("visibility") != "hidden"
    )


def select_pdp_image(document: Document) -> Optional[Element]:
    """Main gallery image: the active slide when one is marked, else the first visible one."""
    in_gallery = any_of(has_class(*PDP_GALLERY_CLASSES), has_attr("data-product-media-wrapper"))
    candidates = [
        img for img in document.query_all(is_image)
        if img.parent is not None and img.parent.closest(in_gallery) is not None
    ]
    visible = [img for img in candidates if _is_visible_image(img, 50)]
    if not visible:
        visible = [img for img in document.query_all(is_image) if img.width > 250]
    if not visible:
        return None

    for img in visible:
        if img.closest(has_class(*ACTIVE_SLIDE_CLASSES)) is not None:
            return img
    return visible[0]


def pdp_target(img: Element) -> Optional[Element]:
    target = img.parent
    while target is not None and target.tag in ("IMG", "PICTURE"):
        target = target.parent
    container = img.closest(any_of(
        has_class("product__media-item"),
        has_class_containing("media", "gallery", "image"),
    ))
    if container is not None and container.tag != "IMG":
        target = container
    return target


def render_pdp(document: Document, labels: List[Dict[str, Any]]) -> bool:
    pdp_labels = [label for label in labels if label.get("showOnPDP") is not False]
    if not pdp_labels:
        return False
    img = select_pdp_image(document)
    if img is None:
        return False
    target = pdp_target(img)
    if target is None:
        return False
    return render_labels(target, pdp_labels, is_pdp=True)
