"""
Storefront Router
Public, read-only label endpoint called from theme pages on any origin.
"""
from __future__ import annotations

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, Response
from starlette.responses import JSONResponse

from services.label_resolution import LabelResolutionService, parse_handles
from services.storage import StorageService, get_storage
from settings import sanitize_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()

STOREFRONT_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@router.options("/storefront/bundles")
async def storefront_bundles_preflight():
    return Response(status_code=204, headers=STOREFRONT_CORS_HEADERS)


@router.api_route("/storefront/bundles", methods=["GET", "HEAD"])
async def storefront_bundles(
    shop: Optional[str] = Query(None),
    handles: Optional[str] = Query(None),
    store: StorageService = Depends(get_storage),
):
    """
    Labels per product handle for the shop's live bundles.

    Response: {"products": {handle: [LabelViewModel, ...]}}. When ``handles``
    is given only those handles are included.
    """
    shop_id = sanitize_shop_id(shop)
    if not shop_id:
        return JSONResponse(
            status_code=400,
            content={"error": "Shop parameter is required"},
            headers=STOREFRONT_CORS_HEADERS,
        )

    try:
        products = await LabelResolutionService(store).get_labels(shop_id, parse_handles(handles))
    except Exception as e:
        logger.error(f"Storefront label lookup failed for shop {shop_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to load labels"},
            headers=STOREFRONT_CORS_HEADERS,
        )

    return JSONResponse(content={"products": products}, headers=STOREFRONT_CORS_HEADERS)
