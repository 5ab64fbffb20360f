"""
Centralized configuration helpers for shop scoping, published metadata and label delivery.
"""
from __future__ import annotations

import os
from typing import Any, Optional

DEFAULT_SHOP_ID: str = os.getenv("DEFAULT_SHOP_ID") or "demo-shop"

# Where the denormalized bundle snapshot lives on each member product.
METAFIELD_NAMESPACE: str = os.getenv("METAFIELD_NAMESPACE", "custom")
METAFIELD_KEY: str = os.getenv("METAFIELD_KEY", "related_bundles")

# Label resolution
LABELS_PER_POSITION: int = int(os.getenv("LABELS_PER_POSITION", "2"))

# Storefront delivery engine
LABEL_ENDPOINT_URL: str = os.getenv("LABEL_ENDPOINT_URL", "/api/storefront/bundles")
LABEL_API_BASE_URL: str = os.getenv("LABEL_API_BASE_URL", "")
LABEL_CACHE_TTL_SECONDS: int = int(os.getenv("LABEL_CACHE_TTL_SECONDS", "3600"))
LABEL_FETCH_BATCH_SIZE: int = int(os.getenv("LABEL_FETCH_BATCH_SIZE", "20"))
LABEL_FETCH_DEBOUNCE_MS: int = int(os.getenv("LABEL_FETCH_DEBOUNCE_MS", "100"))
DOM_SCAN_DEBOUNCE_MS: int = int(os.getenv("DOM_SCAN_DEBOUNCE_MS", "500"))

# Cart discount function
CART_DISCOUNT_ALLOW_STACKING: bool = os.getenv("CART_DISCOUNT_ALLOW_STACKING", "false").lower() == "true"
CART_FUNCTION_BUDGET_MS: float = float(os.getenv("CART_FUNCTION_BUDGET_MS", "50"))


def sanitize_shop_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw IDs (strip whitespace, lower-case domains)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    text = str(value).strip()
    if not text:
        return None
    return text.lower()


def resolve_shop_id(*candidates: Optional[Any]) -> str:
    """
    Pick the first usable shop identifier from candidates, otherwise fall back to DEFAULT_SHOP_ID.
    """
    for candidate in candidates:
        normalized = sanitize_shop_id(candidate)
        if normalized:
            return normalized
    return DEFAULT_SHOP_ID
