"""
Bundle & Label Schemas
======================

Canonical value types shared by the authoring side, the cart discount
function and the storefront label endpoint.

PUBLISHED METADATA CONTRACT:
----------------------------
Every member product of a bundle carries a JSON array under the
``custom.related_bundles`` metafield. Each element is a PublishedBundleEntry:

    {
        "schemaVersion": 1,
        "bundleId": "...",
        "bundleName": "...",
        "bundlePrice": 44.97,
        "originalPrice": 49.97,
        "discountValue": 10,
        "discountType": "percentage",      # "percentage" | "fixed"
        "active": true,
        "priority": 0,
        "startsAt": "2025-01-01T00:00:00", # optional
        "endsAt": null,                    # null = open-ended
        "items": [{"productId", "variantId", "title", "image", "price", "handle"}],
        "label": {text, icon, bgColor, textColor, position, shape, showOnPDP, showOnCollection} | null
    }

This array is the ONLY channel between the authoring process and the cart
discount function. Readers must tolerate missing fields and older entries
without ``schemaVersion``.
"""

from typing import List, Dict, Any, Optional, TypedDict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
import json
import logging

logger = logging.getLogger(__name__)

METADATA_SCHEMA_VERSION = 1

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)

BUNDLE_STATUS_ACTIVE = "active"
BUNDLE_STATUS_DRAFT = "draft"
BUNDLE_STATUSES = (BUNDLE_STATUS_ACTIVE, BUNDLE_STATUS_DRAFT)

LABEL_POSITIONS = ("top-left", "top-right", "bottom-left", "bottom-right")
DEFAULT_LABEL_POSITION = "top-left"
LABEL_SHAPES = ("rounded", "square", "pill")


# =============================================================================
# TYPE DEFINITIONS (wire shapes)
# =============================================================================

class LabelViewModelDict(TypedDict, total=False):
    """Label as served to the storefront."""
    id: str
    text: str
    icon: Optional[str]
    bgColor: str
    textColor: str
    position: str         # one of LABEL_POSITIONS
    shape: str            # one of LABEL_SHAPES
    showOnPDP: bool
    showOnCollection: bool


class PublishedItemDict(TypedDict, total=False):
    productId: str
    variantId: Optional[str]
    title: str
    image: str
    price: float
    handle: str


class PublishedBundleEntryDict(TypedDict, total=False):
    schemaVersion: int
    bundleId: str
    bundleName: str
    bundlePrice: float
    originalPrice: float
    discountValue: Optional[float]
    discountType: Optional[str]
    active: bool
    priority: int
    startsAt: Optional[str]
    endsAt: Optional[str]
    items: List[PublishedItemDict]
    label: Optional[Dict[str, Any]]


# =============================================================================
# HELPERS
# =============================================================================

def to_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Parse a money-ish value; never raises."""
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 into a naive UTC datetime, None when absent or malformed."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


# =============================================================================
# AUTHORING-SIDE TYPES
# =============================================================================

@dataclass
class BundleItem:
    """A catalog item inside a bundle. Price is snapshotted when the bundle is saved."""
    product_id: str
    price: Decimal
    variant_id: Optional[str] = None
    title: str = ""
    image: str = ""
    handle: str = ""
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = self.variant_id or self.product_id

    def to_published(self) -> PublishedItemDict:
        return {
            "productId": self.product_id,
            "variantId": self.variant_id or None,
            "title": self.title or "",
            "image": self.image or "",
            "price": _money(to_decimal(self.price)),
            "handle": self.handle or "",
        }


@dataclass
class DiscountRule:
    """Bundle discount. ``value`` is kept raw so malformed input prices to zero."""
    kind: Optional[str] = DISCOUNT_PERCENTAGE
    value: Any = None

    @property
    def numeric_value(self) -> Optional[Decimal]:
        return to_decimal(self.value, default=None)


@dataclass
class LabelDefinition:
    """Badge definition attachable to bundles."""
    id: str
    text: str
    icon: Optional[str] = None
    bg_color: str = "#000000"
    text_color: str = "#ffffff"
    position: str = DEFAULT_LABEL_POSITION
    shape: str = "rounded"
    priority: int = 0
    show_on_pdp: bool = True
    show_on_collection: bool = True
    name: str = ""

    def to_view_model(self) -> LabelViewModelDict:
        return {
            "id": self.id,
            "text": self.text,
            "icon": self.icon,
            "bgColor": self.bg_color,
            "textColor": self.text_color,
            "position": self.position or DEFAULT_LABEL_POSITION,
            "shape": self.shape,
            "showOnPDP": self.show_on_pdp,
            "showOnCollection": self.show_on_collection,
        }

    def to_published(self) -> Dict[str, Any]:
        payload = dict(self.to_view_model())
        payload.pop("id")
        payload["labelId"] = self.id
        return payload


@dataclass
class BundleDefinition:
    """A bundle as authored by the merchant."""
    id: str
    name: str
    items: List[BundleItem] = field(default_factory=list)
    discount: DiscountRule = field(default_factory=DiscountRule)
    status: str = BUNDLE_STATUS_ACTIVE
    priority: int = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    labels: List[LabelDefinition] = field(default_factory=list)
    description: str = ""
    shop_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == BUNDLE_STATUS_ACTIVE

    @property
    def member_product_ids(self) -> List[str]:
        seen: List[str] = []
        for item in self.items:
            if item.product_id and item.product_id not in seen:
                seen.append(item.product_id)
        return seen

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Active status and ``now`` inside the scheduling window."""
        if not self.is_active:
            return False
        now = now or datetime.utcnow()
        if self.starts_at is not None and self.starts_at > now:
            return False
        if self.ends_at is not None and self.ends_at < now:
            return False
        return True

    def combined_priority(self, label: LabelDefinition) -> int:
        return self.priority + label.priority

    def winning_label(self) -> Optional[LabelDefinition]:
        """Label with the highest combined priority; the first attached one wins ties."""
        winner: Optional[LabelDefinition] = None
        for label in self.labels:
            if winner is None or self.combined_priority(label) > self.combined_priority(winner):
                winner = label
        return winner


# =============================================================================
# PUBLISHED METADATA (the cross-context contract)
# =============================================================================

@dataclass
class PublishedBundleEntry:
    """One bundle's snapshot as stored on a member product."""
    bundle_id: str
    bundle_name: str = ""
    bundle_price: float = 0.0
    original_price: float = 0.0
    discount_value: Optional[float] = None
    discount_type: Optional[str] = None
    active: bool = False
    priority: int = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    items: List[PublishedItemDict] = field(default_factory=list)
    label: Optional[Dict[str, Any]] = None
    schema_version: int = METADATA_SCHEMA_VERSION

    @property
    def member_item_ids(self) -> List[str]:
        return [str(item.get("productId")) for item in self.items if item.get("productId")]

    def in_window(self, now: Optional[datetime]) -> bool:
        if now is None:
            return True
        if self.starts_at is not None and self.starts_at > now:
            return False
        if self.ends_at is not None and self.ends_at < now:
            return False
        return True

    def to_dict(self) -> PublishedBundleEntryDict:
        return {
            "schemaVersion": self.schema_version,
            "bundleId": self.bundle_id,
            "bundleName": self.bundle_name,
            "bundlePrice": self.bundle_price,
            "originalPrice": self.original_price,
            "discountValue": self.discount_value,
            "discountType": self.discount_type,
            "active": self.active,
            "priority": self.priority,
            "startsAt": _isoformat(self.starts_at),
            "endsAt": _isoformat(self.ends_at),
            "items": list(self.items),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PublishedBundleEntry"]:
        """Build an entry from a raw dict; returns None when the shape is unusable."""
        if not isinstance(data, dict):
            return None
        bundle_id = data.get("bundleId") or data.get("bundle_id")
        if not bundle_id:
            return None

        raw_items = data.get("items")
        items: List[PublishedItemDict] = []
        if isinstance(raw_items, list):
            items = [item for item in raw_items if isinstance(item, dict)]

        discount_value = to_decimal(data.get("discountValue", data.get("discount_value")), default=None)
        priority = to_decimal(data.get("priority"), default=Decimal("0"))
        label = data.get("label")

        return cls(
            bundle_id=str(bundle_id),
            bundle_name=str(data.get("bundleName") or data.get("bundle_name") or ""),
            bundle_price=float(to_decimal(data.get("bundlePrice"))),
            original_price=float(to_decimal(data.get("originalPrice"))),
            discount_value=float(discount_value) if discount_value is not None else None,
            discount_type=data.get("discountType") or data.get("discount_type"),
            active=data.get("active") is True,
            priority=int(priority),
            starts_at=parse_datetime(data.get("startsAt")),
            ends_at=parse_datetime(data.get("endsAt")),
            items=items,
            label=label if isinstance(label, dict) else None,
            schema_version=int(to_decimal(data.get("schemaVersion"), default=Decimal("0"))),
        )


@dataclass
class PublishedProductMetadata:
    """Versioned value type for one product's ``related_bundles`` metafield."""
    entries: List[PublishedBundleEntry] = field(default_factory=list)

    @classmethod
    def parse(cls, raw: Any) -> "PublishedProductMetadata":
        """Parse the stored JSON. Malformed input yields an empty list, never an error."""
        if raw is None or raw == "":
            return cls()
        data = raw
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("Discarding unparsable bundle metadata")
                return cls()
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            return cls()
        entries = []
        for item in data:
            entry = PublishedBundleEntry.from_dict(item)
            if entry is not None:
                entries.append(entry)
        return cls(entries=entries)

    def without_bundle(self, bundle_id: str) -> "PublishedProductMetadata":
        return PublishedProductMetadata(entries=[e for e in self.entries if e.bundle_id != bundle_id])

    def upsert(self, entry: PublishedBundleEntry) -> "PublishedProductMetadata":
        """Filter out any prior entry for the bundle, then append the fresh one."""
        updated = self.without_bundle(entry.bundle_id)
        updated.entries.append(entry)
        return updated

    def bundle_ids(self) -> List[str]:
        return [e.bundle_id for e in self.entries]

    def to_list(self) -> List[PublishedBundleEntryDict]:
        return [e.to_dict() for e in self.entries]

    def dumps(self) -> str:
        return json.dumps(self.to_list(), ensure_ascii=False)

