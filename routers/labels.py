"""
Labels Router
Badge definitions. Changing or deleting a label republishes every bundle that
uses it so the snapshot on member products stays current.
"""
from __future__ import annotations

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from schemas.bundle_schemas import DEFAULT_LABEL_POSITION, LabelDefinition
from routers.bundles import republish
from services.bundle_validation import BundleValidationError, ensure_valid_label
from services.storage import StorageService, get_storage
from settings import resolve_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


class LabelPayload(BaseModel):
    name: str = ""
    text: str = ""
    icon: Optional[str] = None
    bg_color: str = Field("#000000", alias="bgColor")
    text_color: str = Field("#ffffff", alias="textColor")
    position: str = DEFAULT_LABEL_POSITION
    shape: str = "rounded"
    priority: int = 0
    show_on_pdp: bool = Field(True, alias="showOnPDP")
    show_on_collection: bool = Field(True, alias="showOnCollection")

    model_config = ConfigDict(populate_by_name=True)

    def to_definition(self, label_id: str = "") -> LabelDefinition:
        return LabelDefinition(
            id=label_id,
            name=self.name,
            text=self.text,
            icon=self.icon if self.icon not in ("", "none") else None,
            bg_color=self.bg_color,
            text_color=self.text_color,
            position=self.position,
            shape=self.shape,
            priority=self.priority,
            show_on_pdp=self.show_on_pdp,
            show_on_collection=self.show_on_collection,
        )


def serialize_label(label: LabelDefinition) -> dict:
    return dict(label.to_view_model(), name=label.name, priority=label.priority)


async def _republish_bundles(store: StorageService, shop_id: str, bundle_ids: List[str]) -> int:
    """Republish bundles touched by a label change. Returns how many failed."""
    failures = 0
    for bundle_id in bundle_ids:
        try:
            bundle = await store.get_bundle(shop_id, bundle_id)
            if bundle is not None:
                await republish(store, shop_id, bundle)
        except Exception as e:
            logger.error(f"Republish after label change failed for bundle {bundle_id}: {e}", exc_info=True)
            failures += 1
    return failures


@router.get("/labels")
async def list_labels(shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    try:
        labels = await store.list_labels(resolve_shop_id(shop))
        return {"labels": [serialize_label(label) for label in labels], "count": len(labels)}
    except Exception as e:
        logger.error(f"List labels error: {e}")
        raise HTTPException(status_code=500, detail="Failed to list labels")


@router.post("/labels", status_code=201)
async def create_label(
    payload: LabelPayload,
    shop: Optional[str] = Query(None),
    store: StorageService = Depends(get_storage),
):
    shop_id = resolve_shop_id(shop)
    try:
        saved = await store.save_label(shop_id, ensure_valid_label(payload.to_definition()))
        return {"success": True, "label": serialize_label(saved)}
    except BundleValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)
    except Exception as e:
        logger.error(f"Create label error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create label")


@router.put("/labels/{label_id}")
async def update_label(
    label_id: str,
    payload: LabelPayload,
    shop: Optional[str] = Query(None),
    store: StorageService = Depends(get_storage),
):
    shop_id = resolve_shop_id(shop)
    try:
        existing = await store.get_labels_by_ids(shop_id, [label_id])
        if label_id not in existing:
            raise HTTPException(status_code=404, detail="Label not found")

        saved = await store.save_label(shop_id, ensure_valid_label(payload.to_definition(label_id)))
        bundle_ids = await store.get_bundle_ids_for_label(label_id)
        failures = await _republish_bundles(store, shop_id, bundle_ids)
        return {
            "success": True,
            "label": serialize_label(saved),
            "republished": len(bundle_ids) - failures,
            "republishErrors": failures,
        }
    except BundleValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update label error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update label")


@router.delete("/labels/{label_id}")
async def delete_label(label_id: str, shop: Optional[str] = Query(None), store: StorageService = Depends(get_storage)):
    shop_id = resolve_shop_id(shop)
    try:
        bundle_ids = await store.delete_label(shop_id, label_id)
        if bundle_ids is None:
            raise HTTPException(status_code=404, detail="Label not found")
        failures = await _republish_bundles(store, shop_id, bundle_ids)
        return {
            "success": True,
            "labelId": label_id,
            "republished": len(bundle_ids) - failures,
            "republishErrors": failures,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Delete label error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete label")
