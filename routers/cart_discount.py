"""
Cart discount function endpoint.
The platform posts the cart snapshot and applies the returned discount operations.
"""
from typing import Any, Dict
import logging

from fastapi import APIRouter, Body

from services import cart_discount

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/functions/bundle-discount")
async def bundle_discount(payload: Any = Body(None)) -> Dict[str, Any]:
    result = cart_discount.run(payload)
    logger.info(f"[cart] discounts={len(result['discounts'])}")
    return result
