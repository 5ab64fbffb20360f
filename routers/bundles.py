"""
Bundles Router
Admin endpoints for authoring bundles. Every mutation republishes the bundle
snapshot onto its member products.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from schemas.bundle_schemas import (
    BUNDLE_STATUS_ACTIVE,
    DISCOUNT_PERCENTAGE,
    BundleDefinition,
    BundleItem,
    DiscountRule,
    PublishedProductMetadata,
    parse_datetime,
)
from services.bundle_validation import BundleValidationError, ensure_valid_bundle
from services.metadata_publisher import BundleMetadataPublisher, PublishResult
from services.pricing import distribute_discounts
from services.storage import StorageService, get_storage
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


class BundleItemPayload(BaseModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    variant_id: Optional[str] = Field(None, alias="variantId")
    title: str = ""
    image: str = ""
    handle: str = ""
    price: Any = None

    model_config = ConfigDict(populate_by_name=True)


class BundlePayload(BaseModel):
    """Bundle as posted by the admin UI. Discount value stays raw; validation reports bad input."""

    name: str = ""
    description: str = ""
    items: List[BundleItemPayload] = Field(default_factory=list)
    discount_type: str = Field(DISCOUNT_PERCENTAGE, alias="discountType")
    discount_value: Any = Field(None, alias="discountValue")
    status: str = BUNDLE_STATUS_ACTIVE
    priority: int = 0
    starts_at: Optional[datetime] = Field(None, alias="startsAt")
    ends_at: Optional[datetime] = Field(None, alias="endsAt")
    label_ids: List[str] = Field(default_factory=list, alias="labelIds")

    model_config = ConfigDict(populate_by_name=True)


def serialize_bundle(bundle: BundleDefinition) -> Dict[str, Any]:
    breakdown = distribute_discounts(bundle.items, bundle.discount.kind, bundle.discount.value)
    return {
        "id": bundle.id,
        "shopId": bundle.shop_id,
        "name": bundle.name,
        "description": bundle.description,
        "status": bundle.status,
        "priority": bundle.priority,
        "discountType": bundle.discount.kind,
        "discountValue": bundle.discount.value,
        "startsAt": bundle.starts_at.isoformat() if bundle.starts_at else None,
        "endsAt": bundle.ends_at.isoformat() if bundle.ends_at else None,
        "items": [
            dict(item.to_published(), id=item.id)
            for item in bundle.items
        ],
        "labels": [label.to_view_model() for label in bundle.labels],
        "pricing": breakdown.to_dict(),
    }


async def build_definition(
    store: StorageService,
    shop_id: str,
    payload: BundlePayload,
    bundle_id: str = "",
) -> BundleDefinition:
    """Turn a request payload into a definition, resolving label ids for the shop."""
    labels_by_id = await store.get_labels_by_ids(shop_id, payload.label_ids)
    missing = [label_id for label_id in payload.label_ids if label_id not in labels_by_id]
    if missing:
        raise BundleValidationError([f"Unknown label: {label_id}" for label_id in missing])

    return BundleDefinition(
        id=bundle_id,
        shop_id=shop_id,
        name=payload.name,
        description=payload.description,
        items=[
            BundleItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                title=item.title,
                image=item.image,
                handle=item.handle,
                price=item.price,
            )
            for item in payload.items
        ],
        discount=DiscountRule(kind=payload.discount_type, value=payload.discount_value),
        status=payload.status,
        priority=payload.priority,
        starts_at=parse_datetime(payload.starts_at),
        ends_at=parse_datetime(payload.ends_at),
        labels=[labels_by_id[label_id] for label_id in dict.fromkeys(payload.label_ids)],
    )


async def republish(
    store: StorageService,
    shop_id: str,
    bundle: BundleDefinition,
    previous_product_ids: Iterable[str] = (),
) -> PublishResult:
    publisher = BundleMetadataPublisher(store, shop_id)
    result = await publisher.publish(bundle, previous_product_ids)
    await store.record_publish(bundle.id, result.to_dict())
    return result


@router.get("/bundles")
async def list_bundles(shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    """List the shop's bundles, newest first"""
    try:
        bundles = await store.list_bundles(resolve_shop_id(shop))
        return {"bundles": [serialize_bundle(b) for b in bundles], "count": len(bundles)}
    except Exception as e:
        logger.error(f"List bundles error: {e}")
        raise HTTPException(status_code=500, detail="Failed to list bundles")


@router.post("/bundles", status_code=201)
async def create_bundle(
    payload: BundlePayload,
    shop: Optional[str] = Query(None),
    store: StorageService = Depends(get_storage),
):
    """Create a bundle and publish it to its member products"""
    shop_id = resolve_shop_id(shop)
    try:
        definition = ensure_valid_bundle(await build_definition(store, shop_id, payload))
        saved, previous = await store.save_bundle(shop_id, definition)
        result = await republish(store, shop_id, saved, previous)
        logger.info(f"Created bundle {saved.id} for shop {shop_id} with {len(saved.items)} items")
        return {"success": True, "bundle": serialize_bundle(saved), "publish": result.to_dict()}
    except BundleValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create bundle error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create bundle")


@router.post("/bundles/sync")
async def sync_bundles(shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    """Republish every bundle of the shop"""
    shop_id = resolve_shop_id(shop)
    try:
        bundles = await store.list_bundles(shop_id)
    except Exception as e:
        logger.error(f"Sync bundles error: {e}")
        raise HTTPException(status_code=500, detail="Failed to load bundles")

    success_count = 0
    error_count = 0
    results = []
    for bundle in bundles:
        try:
            result = await republish(store, shop_id, bundle)
            results.append(result.to_dict())
            if result.failed:
                error_count += 1
            else:
                success_count += 1
        except Exception as e:
            logger.error(f"Sync failed for bundle {bundle.id}: {e}", exc_info=True)
            error_count += 1

    logger.info(f"[sync] shop={shop_id} bundles={len(bundles)} ok={success_count} errors={error_count}")
    return {
        "success": error_count == 0,
        "successCount": success_count,
        "errorCount": error_count,
        "results": results,
    }


@router.get("/bundles/{bundle_id}")
async def get_bundle(bundle_id: str, shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    try:
        bundle = await store.get_bundle(resolve_shop_id(shop), bundle_id)
        if bundle is None:
            raise HTTPException(status_code=404, detail="Bundle not found")
        return serialize_bundle(bundle)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Get bundle error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get bundle")


@router.put("/bundles/{bundle_id}")
async def update_bundle(
    bundle_id: str,
    payload: BundlePayload,
    shop: Optional[str] = Query(None),
    store: StorageService = Depends(get_storage),
):
    """Replace a bundle; products dropped from it lose its entry"""
    shop_id = resolve_shop_id(shop)
    try:
        existing = await store.get_bundle(shop_id, bundle_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="Bundle not found")

        definition = ensure_valid_bundle(await build_definition(store, shop_id, payload, bundle_id))
        saved, previous = await store.save_bundle(shop_id, definition)
        result = await republish(store, shop_id, saved, previous)
        return {"success": True, "bundle": serialize_bundle(saved), "publish": result.to_dict()}
    except BundleValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update bundle error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update bundle")


@router.delete("/bundles/{bundle_id}")
async def delete_bundle(bundle_id: str, shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    """Delete a bundle and strip it from every member product"""
    shop_id = resolve_shop_id(shop)
    try:
        deleted = await store.delete_bundle(shop_id, bundle_id)
        if deleted is None:
            raise HTTPException(status_code=404, detail="Bundle not found")

        publisher = BundleMetadataPublisher(store, shop_id)
        result = await publisher.unpublish(bundle_id, deleted.member_product_ids)
        return {"success": True, "bundleId": bundle_id, "publish": result.to_dict()}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Delete bundle error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete bundle")


@router.get("/bundles/{bundle_id}/metadata")
async def bundle_metadata(bundle_id: str, shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    """What each member product currently holds, for troubleshooting publishes"""
    shop_id = resolve_shop_id(shop)
    try:
        bundle = await store.get_bundle(shop_id, bundle_id)
        if bundle is None:
            raise HTTPException(status_code=404, detail="Bundle not found")

        products = []
        for product_id in bundle.member_product_ids:
            raw = await store.get_product_metadata(shop_id, product_id)
            metadata = PublishedProductMetadata.parse(raw)
            products.append({
                "productId": product_id,
                "hasEntry": bundle_id in metadata.bundle_ids(),
                "entries": metadata.to_list(),
                "raw": raw,
            })
        return {"bundleId": bundle_id, "products": products}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Bundle metadata error: {e}")
        raise HTTPException(status_code=500, detail="Failed to read bundle metadata")
