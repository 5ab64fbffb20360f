"""
Bundle-to-Product Metadata Publisher
Denormalizes a bundle (pricing + winning label) onto every member product so the
cart discount function can work without access to the bundle record.

Writes are per product and best-effort: one failing product is logged and
skipped, the rest of the fan-out still happens. Each write is a filter-then-append
on the bundle id, so re-running a publish after a partial failure converges.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Protocol
import logging
import time
from dataclasses import dataclass, field

from schemas.bundle_schemas import (
    BundleDefinition,
    PublishedBundleEntry,
    PublishedProductMetadata,
)
from services.pricing import bundle_price

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    async def get_product_metadata(self, shop_id: str, product_id: str) -> Optional[str]: ...

    async def set_product_metadata(self, shop_id: str, product_id: str, value: str) -> None: ...


@dataclass
class PublishResult:
    bundle_id: str
    written: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        # Partial failures are logged, the save itself still succeeds.
        return True

    def to_dict(self) -> dict:
        return {
            "bundleId": self.bundle_id,
            "written": self.written,
            "removed": self.removed,
            "failed": self.failed,
            "durationMs": self.duration_ms,
        }


def build_entry(bundle: BundleDefinition) -> PublishedBundleEntry:
    """Snapshot a bundle into the published value type."""
    original, final = bundle_price(bundle.items, bundle.discount)
    rule_value = bundle.discount.numeric_value
    label = bundle.winning_label()

    return PublishedBundleEntry(
        bundle_id=bundle.id,
        bundle_name=bundle.name,
        bundle_price=float(final),
        original_price=float(original),
        discount_value=float(rule_value) if rule_value is not None else None,
        discount_type=bundle.discount.kind,
        active=bundle.is_active,
        priority=bundle.priority,
        starts_at=bundle.starts_at,
        ends_at=bundle.ends_at,
        items=[item.to_published() for item in bundle.items],
        label=label.to_published() if label is not None else None,
    )


class BundleMetadataPublisher:
    """Fans a bundle snapshot out to member products of one shop."""

    def __init__(self, store: MetadataStore, shop_id: str):
        self.store = store
        self.shop_id = shop_id

    async def publish(self, bundle: BundleDefinition, previous_product_ids: Iterable[str] = ()) -> PublishResult:
        """Upsert the entry on current members, purge it from dropped members."""
        start = time.time()
        result = PublishResult(bundle_id=bundle.id)
        entry = build_entry(bundle)

        current = bundle.member_product_ids
        current_set = set(current)
        dropped = [pid for pid in dict.fromkeys(previous_product_ids) if pid and pid not in current_set]

        for product_id in dropped:
            await self._remove_from_product(product_id, bundle.id, result)

        for product_id in current:
            await self._write_to_product(product_id, entry, result)

        result.duration_ms = int((time.time() - start) * 1000)
        self._log_summary("publish", result)
        return result

    async def unpublish(self, bundle_id: str, product_ids: Iterable[str]) -> PublishResult:
        """Remove a deleted bundle from every product that ever belonged to it."""
        start = time.time()
        result = PublishResult(bundle_id=bundle_id)
        for product_id in dict.fromkeys(product_ids):
            if product_id:
                await self._remove_from_product(product_id, bundle_id, result)
        result.duration_ms = int((time.time() - start) * 1000)
        self._log_summary("unpublish", result)
        return result

    async def _write_to_product(self, product_id: str, entry: PublishedBundleEntry, result: PublishResult) -> None:
        try:
            raw = await self.store.get_product_metadata(self.shop_id, product_id)
            metadata = PublishedProductMetadata.parse(raw).upsert(entry)
            await self.store.set_product_metadata(self.shop_id, product_id, metadata.dumps())
            result.written.append(product_id)
        except Exception as e:
            logger.error(
                f"Failed to publish bundle {entry.bundle_id} to product {product_id}: {e}",
                exc_info=True,
            )
            result.failed.append(product_id)

    async def _remove_from_product(self, product_id: str, bundle_id: str, result: PublishResult) -> None:
        try:
            raw = await self.store.get_product_metadata(self.shop_id, product_id)
            if not raw:
                return
            metadata = PublishedProductMetadata.parse(raw).without_bundle(bundle_id)
            await self.store.set_product_metadata(self.shop_id, product_id, metadata.dumps())
            result.removed.append(product_id)
        except Exception as e:
            logger.error(
                f"Failed to remove bundle {bundle_id} from product {product_id}: {e}",
                exc_info=True,
            )
            result.failed.append(product_id)

    def _log_summary(self, action: str, result: PublishResult) -> None:
        log = logger.warning if result.failed else logger.info
        log(
            "[publisher] %s bundle=%s shop=%s written=%d removed=%d failed=%d durMs=%d",
            action,
            result.bundle_id,
            self.shop_id,
            len(result.written),
            len(result.removed),
            len(result.failed),
            result.duration_ms,
        )
