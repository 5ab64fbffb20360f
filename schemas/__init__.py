"""
Bundle Schemas Package
Provides the value types shared by the publisher, the cart discount function and the label endpoint.
"""

from .bundle_schemas import (
    # Constants
    METADATA_SCHEMA_VERSION,
    DISCOUNT_PERCENTAGE,
    DISCOUNT_FIXED,
    DISCOUNT_TYPES,
    BUNDLE_STATUS_ACTIVE,
    BUNDLE_STATUS_DRAFT,
    BUNDLE_STATUSES,
    LABEL_POSITIONS,
    DEFAULT_LABEL_POSITION,
    LABEL_SHAPES,

    # Wire shapes
    LabelViewModelDict,
    PublishedItemDict,
    PublishedBundleEntryDict,

    # Authoring types
    BundleItem,
    DiscountRule,
    LabelDefinition,
    BundleDefinition,

    # Published metadata
    PublishedBundleEntry,
    PublishedProductMetadata,

    # Helpers
    to_decimal,
    parse_datetime,
)
