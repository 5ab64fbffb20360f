"""
Label Resolution Service
Answers "which badges does this product show?" for the storefront by aggregating
every live bundle that references the product and capping the result per corner.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging
from collections import defaultdict
from datetime import datetime

from schemas.bundle_schemas import (
    DEFAULT_LABEL_POSITION,
    BundleDefinition,
    LabelDefinition,
    LabelViewModelDict,
)
from settings import LABELS_PER_POSITION

logger = logging.getLogger(__name__)

# (label, combined priority)
Candidate = Tuple[LabelDefinition, int]


def collect_candidates(bundles: Iterable[BundleDefinition], now: Optional[datetime] = None) -> Dict[str, List[Candidate]]:
    """Emit one candidate per live bundle x member product x attached label, grouped by handle."""
    now = now or datetime.utcnow()
    grouped: Dict[str, List[Candidate]] = defaultdict(list)

    for bundle in bundles:
        if not bundle.labels or not bundle.is_live(now):
            continue
        for item in bundle.items:
            key = item.handle
            if not key:
                continue
            for label in bundle.labels:
                grouped[key].append((label, bundle.combined_priority(label)))

    return grouped


def select_labels(candidates: Sequence[Candidate], per_position: int = LABELS_PER_POSITION) -> List[LabelViewModelDict]:
    """
    Highest combined priority first (stable on ties), each label once,
    at most ``per_position`` labels per anchor position.
    """
    ordered = sorted(candidates, key=lambda c: c[1], reverse=True)

    seen = set()
    buckets: Dict[str, List[LabelViewModelDict]] = {}
    for label, _priority in ordered:
        if label.id in seen:
            continue
        position = label.position or DEFAULT_LABEL_POSITION
        bucket = buckets.setdefault(position, [])
        if len(bucket) >= per_position:
            continue
        seen.add(label.id)
        bucket.append(label.to_view_model())

    return [view for bucket in buckets.values() for view in bucket]


def resolve_product_labels(
    bundles: Iterable[BundleDefinition],
    now: Optional[datetime] = None,
    handles: Optional[Iterable[str]] = None,
    per_position: int = LABELS_PER_POSITION,
) -> Dict[str, List[LabelViewModelDict]]:
    """Map product handle -> ordered, deduplicated, position-capped labels."""
    grouped = collect_candidates(bundles, now)
    wanted = set(handles) if handles is not None else None

    projection: Dict[str, List[LabelViewModelDict]] = {}
    for key, candidates in grouped.items():
        if wanted is not None and key not in wanted:
            continue
        projection[key] = select_labels(candidates, per_position)
    return projection


def parse_handles(raw: Optional[str]) -> Optional[List[str]]:
    """Split the ``handles`` query parameter; None means "all products"."""
    if raw is None:
        return None
    handles = [h.strip() for h in raw.split(",") if h.strip()]
    return handles or None


class LabelResolutionService:
    """Reads live bundle/label state and resolves the storefront projection."""

    def __init__(self, storage):
        self.storage = storage

    async def get_labels(self, shop_id: str, handles: Optional[List[str]] = None) -> Dict[str, List[LabelViewModelDict]]:
        now = datetime.utcnow()
        bundles = await self.storage.get_live_bundles_with_labels(shop_id, now)
        projection = resolve_product_labels(bundles, now=now, handles=handles)
        logger.info(
            "[labels] shop=%s bundles=%d handles=%s products=%d",
            shop_id,
            len(bundles),
            len(handles) if handles is not None else "all",
            len(projection),
        )
        return projection
