"""
Bundle and label validation for the admin mutation endpoints.
"""
from typing import List, Optional
from decimal import Decimal

from schemas.bundle_schemas import (
    BUNDLE_STATUSES,
    DISCOUNT_FIXED,
    DISCOUNT_PERCENTAGE,
    DISCOUNT_TYPES,
    LABEL_POSITIONS,
    LABEL_SHAPES,
    BundleDefinition,
    LabelDefinition,
    to_decimal,
)

MAX_NAME_LENGTH = 255


class BundleValidationError(ValueError):
    """Carries every validation message so the admin UI can show them together."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def validate_name(name: Optional[str]) -> List[str]:
    errors = []
    if not name or not name.strip():
        errors.append("Bundle name is required")
    elif len(name.strip()) > MAX_NAME_LENGTH:
        errors.append(f"Bundle name must be less than {MAX_NAME_LENGTH} characters")
    return errors


def validate_items(bundle: BundleDefinition) -> List[str]:
    errors = []
    if not bundle.items:
        errors.append("At least one product is required")
    for index, item in enumerate(bundle.items):
        if not item.product_id:
            errors.append(f"Product {index}: missing product id")
        price = to_decimal(item.price, default=None)
        if price is None or price < 0:
            errors.append(f"Product {index}: invalid price")
    return errors


def validate_discount(bundle: BundleDefinition) -> List[str]:
    rule = bundle.discount
    if rule.kind not in DISCOUNT_TYPES:
        return [f"Discount type must be one of: {', '.join(DISCOUNT_TYPES)}"]

    raw = rule.value
    if raw is None or str(raw).strip() == "":
        return ["Discount value is required"]

    value = rule.numeric_value
    if value is None:
        return ["Discount value must be a valid number"]

    errors = []
    if value <= 0:
        errors.append("Discount value must be greater than 0")
    if rule.kind == DISCOUNT_PERCENTAGE and value > 100:
        errors.append("Percentage discount cannot exceed 100%")
    if rule.kind == DISCOUNT_FIXED:
        total = sum((to_decimal(item.price) for item in bundle.items), Decimal("0"))
        if value > total:
            errors.append(f"Fixed discount cannot exceed total product value (${total:.2f})")
    return errors


def validate_window(bundle: BundleDefinition) -> List[str]:
    errors = []
    if bundle.starts_at is None:
        errors.append("Start date is required")
    if bundle.starts_at and bundle.ends_at and bundle.starts_at > bundle.ends_at:
        errors.append("End date must be after start date")
    return errors


def validate_bundle(bundle: BundleDefinition) -> List[str]:
    errors: List[str] = []
    errors.extend(validate_name(bundle.name))
    errors.extend(validate_items(bundle))
    errors.extend(validate_discount(bundle))
    errors.extend(validate_window(bundle))
    if bundle.status not in BUNDLE_STATUSES:
        errors.append(f"Status must be one of: {', '.join(BUNDLE_STATUSES)}")
    return errors


def ensure_valid_bundle(bundle: BundleDefinition) -> BundleDefinition:
    errors = validate_bundle(bundle)
    if errors:
        raise BundleValidationError(errors)
    return bundle


def validate_label(label: LabelDefinition) -> List[str]:
    errors = []
    if not label.text or not label.text.strip():
        errors.append("Label text is required")
    if label.position not in LABEL_POSITIONS:
        errors.append(f"Label position must be one of: {', '.join(LABEL_POSITIONS)}")
    if label.shape not in LABEL_SHAPES:
        errors.append(f"Label shape must be one of: {', '.join(LABEL_SHAPES)}")
    return errors


def ensure_valid_label(label: LabelDefinition) -> LabelDefinition:
    errors = validate_label(label)
    if errors:
        raise BundleValidationError(errors)
    return label
