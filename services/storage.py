"""
Storage Service Layer
Provides database operations for bundles, labels and per-product bundle metadata
"""
from sqlalchemy import select, delete, desc, asc, and_, or_
from sqlalchemy.orm import selectinload
from typing import List, Optional, Dict, Any, Iterable, Tuple
import logging
import uuid
from datetime import datetime

from database import (
    AsyncSessionLocal, Bundle, BundleItem, BundleLabel, Label, ProductMetafield
)
from schemas.bundle_schemas import (
    BUNDLE_STATUS_ACTIVE,
    BundleDefinition,
    BundleItem as BundleItemValue,
    DiscountRule,
    LabelDefinition,
    to_decimal,
)
from settings import METAFIELD_KEY, METAFIELD_NAMESPACE, resolve_shop_id

logger = logging.getLogger(__name__)


class StorageService:
    """Storage service providing database operations"""

    def get_session(self):
        """Get database session context manager"""
        return AsyncSessionLocal()

    # ---------- row -> value conversions ----------

    @staticmethod
    def _label_to_definition(label: Label) -> LabelDefinition:
        return LabelDefinition(
            id=label.id,
            name=label.name or "",
            text=label.text,
            icon=label.icon,
            bg_color=label.bg_color,
            text_color=label.text_color,
            position=label.position,
            shape=label.shape,
            priority=label.priority or 0,
            show_on_pdp=bool(label.show_on_pdp),
            show_on_collection=bool(label.show_on_collection),
        )

    def _bundle_to_definition(self, bundle: Bundle) -> BundleDefinition:
        return BundleDefinition(
            id=bundle.id,
            shop_id=bundle.shop_id,
            name=bundle.name,
            description=bundle.description or "",
            items=[
                BundleItemValue(
                    id=item.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    title=item.product_title or "",
                    image=item.image_url or "",
                    handle=item.handle or "",
                    price=to_decimal(item.price),
                )
                for item in bundle.items
            ],
            discount=DiscountRule(kind=bundle.discount_type, value=bundle.discount_value),
            status=bundle.status,
            priority=bundle.priority or 0,
            starts_at=bundle.starts_at,
            ends_at=bundle.ends_at,
            labels=[self._label_to_definition(link.label) for link in bundle.labels if link.label is not None],
        )

    def _bundle_query(self):
        return select(Bundle).options(
            selectinload(Bundle.items),
            selectinload(Bundle.labels).selectinload(BundleLabel.label),
        )

    # ---------- Bundle operations ----------

    async def get_bundle(self, shop_id: str, bundle_id: str) -> Optional[BundleDefinition]:
        async with self.get_session() as session:
            query = self._bundle_query().where(
                Bundle.id == bundle_id, Bundle.shop_id == resolve_shop_id(shop_id)
            )
            bundle = (await session.execute(query)).scalar_one_or_none()
            return self._bundle_to_definition(bundle) if bundle is not None else None

    async def list_bundles(self, shop_id: str) -> List[BundleDefinition]:
        async with self.get_session() as session:
            query = (
                self._bundle_query()
                .where(Bundle.shop_id == resolve_shop_id(shop_id))
                .order_by(desc(Bundle.created_at))
            )
            result = await session.execute(query)
            return [self._bundle_to_definition(b) for b in result.scalars().all()]

    async def get_live_bundles_with_labels(self, shop_id: str, now: Optional[datetime] = None) -> List[BundleDefinition]:
        """Active bundles whose window includes ``now``, highest priority first."""
        now = now or datetime.utcnow()
        async with self.get_session() as session:
            query = (
                self._bundle_query()
                .where(
                    and_(
                        Bundle.shop_id == resolve_shop_id(shop_id),
                        Bundle.status == BUNDLE_STATUS_ACTIVE,
                        or_(Bundle.starts_at.is_(None), Bundle.starts_at <= now),
                        or_(Bundle.ends_at.is_(None), Bundle.ends_at >= now),
                        Bundle.labels.any(),
                    )
                )
                .order_by(desc(Bundle.priority), asc(Bundle.created_at), asc(Bundle.id))
            )
            result = await session.execute(query)
            return [self._bundle_to_definition(b) for b in result.scalars().all()]

    async def save_bundle(self, shop_id: str, definition: BundleDefinition) -> Tuple[BundleDefinition, List[str]]:
        """
        Create or replace a bundle with its items and label links.
        Returns the stored bundle and the member product ids it had before the save.
        """
        shop = resolve_shop_id(shop_id)
        bundle_id = definition.id or str(uuid.uuid4())

        async with self.get_session() as session:
            row = await session.get(Bundle, bundle_id)
            if row is not None and row.shop_id != shop:
                raise LookupError(f"Bundle {bundle_id} belongs to another shop")

            previous: List[str] = []
            if row is None:
                row = Bundle(id=bundle_id, shop_id=shop)
                session.add(row)
            else:
                result = await session.execute(
                    select(BundleItem.product_id)
                    .where(BundleItem.bundle_id == bundle_id)
                    .order_by(BundleItem.position)
                )
                previous = list(result.scalars().all())
                await session.execute(delete(BundleItem).where(BundleItem.bundle_id == bundle_id))
                await session.execute(delete(BundleLabel).where(BundleLabel.bundle_id == bundle_id))

            row.name = definition.name.strip()
            row.description = definition.description or None
            row.discount_type = definition.discount.kind
            row.discount_value = None if definition.discount.value is None else str(definition.discount.value)
            row.status = definition.status
            row.priority = definition.priority
            row.starts_at = definition.starts_at
            row.ends_at = definition.ends_at
            row.updated_at = datetime.utcnow()
            await session.flush()

            session.add_all([
                BundleItem(
                    bundle_id=bundle_id,
                    position=index,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_title=item.title,
                    image_url=item.image,
                    handle=item.handle,
                    price=to_decimal(item.price),
                )
                for index, item in enumerate(definition.items)
            ])
            session.add_all([
                BundleLabel(bundle_id=bundle_id, label_id=label.id, position=index)
                for index, label in enumerate(definition.labels)
            ])
            await session.commit()

        stored = await self.get_bundle(shop, bundle_id)
        return stored, previous

    async def delete_bundle(self, shop_id: str, bundle_id: str) -> Optional[BundleDefinition]:
        """Delete a bundle; returns its last state so callers can unpublish it."""
        existing = await self.get_bundle(shop_id, bundle_id)
        if existing is None:
            return None
        async with self.get_session() as session:
            await session.execute(delete(BundleItem).where(BundleItem.bundle_id == bundle_id))
            await session.execute(delete(BundleLabel).where(BundleLabel.bundle_id == bundle_id))
            await session.execute(delete(Bundle).where(Bundle.id == bundle_id))
            await session.commit()
        return existing

    async def record_publish(self, bundle_id: str, summary: Dict[str, Any]) -> None:
        async with self.get_session() as session:
            row = await session.get(Bundle, bundle_id)
            if row is None:
                return
            row.last_published_at = datetime.utcnow()
            row.last_publish_summary = summary
            await session.commit()

    # ---------- Label operations ----------

    async def list_labels(self, shop_id: str) -> List[LabelDefinition]:
        async with self.get_session() as session:
            query = (
                select(Label)
                .where(Label.shop_id == resolve_shop_id(shop_id))
                .order_by(desc(Label.priority), asc(Label.created_at))
            )
            result = await session.execute(query)
            return [self._label_to_definition(label) for label in result.scalars().all()]

    async def get_labels_by_ids(self, shop_id: str, label_ids: Iterable[str]) -> Dict[str, LabelDefinition]:
        ids = [label_id for label_id in label_ids if label_id]
        if not ids:
            return {}
        async with self.get_session() as session:
            query = select(Label).where(Label.shop_id == resolve_shop_id(shop_id), Label.id.in_(ids))
            result = await session.execute(query)
            return {label.id: self._label_to_definition(label) for label in result.scalars().all()}

    async def save_label(self, shop_id: str, definition: LabelDefinition) -> LabelDefinition:
        shop = resolve_shop_id(shop_id)
        label_id = definition.id or str(uuid.uuid4())
        async with self.get_session() as session:
            row = await session.get(Label, label_id)
            if row is not None and row.shop_id != shop:
                raise LookupError(f"Label {label_id} belongs to another shop")
            if row is None:
                row = Label(id=label_id, shop_id=shop)
                session.add(row)
            row.name = definition.name or None
            row.text = definition.text.strip()
            row.icon = definition.icon
            row.bg_color = definition.bg_color
            row.text_color = definition.text_color
            row.position = definition.position
            row.shape = definition.shape
            row.priority = definition.priority
            row.show_on_pdp = definition.show_on_pdp
            row.show_on_collection = definition.show_on_collection
            row.updated_at = datetime.utcnow()
            await session.commit()
            return self._label_to_definition(row)

    async def delete_label(self, shop_id: str, label_id: str) -> Optional[List[str]]:
        """Delete a label; returns ids of bundles that referenced it, None if not found."""
        async with self.get_session() as session:
            row = await session.get(Label, label_id)
            if row is None or row.shop_id != resolve_shop_id(shop_id):
                return None
            affected = await self._bundle_ids_for_label(session, label_id)
            await session.execute(delete(BundleLabel).where(BundleLabel.label_id == label_id))
            await session.execute(delete(Label).where(Label.id == label_id))
            await session.commit()
            return affected

    async def get_bundle_ids_for_label(self, label_id: str) -> List[str]:
        async with self.get_session() as session:
            return await self._bundle_ids_for_label(session, label_id)

    async def _bundle_ids_for_label(self, session, label_id: str) -> List[str]:
        result = await session.execute(
            select(BundleLabel.bundle_id).where(BundleLabel.label_id == label_id)
        )
        return list(dict.fromkeys(result.scalars().all()))

    # ---------- Product metadata (the published snapshot) ----------

    async def get_product_metadata(self, shop_id: str, product_id: str) -> Optional[str]:
        async with self.get_session() as session:
            query = select(ProductMetafield.value).where(
                ProductMetafield.shop_id == resolve_shop_id(shop_id),
                ProductMetafield.product_id == product_id,
                ProductMetafield.namespace == METAFIELD_NAMESPACE,
                ProductMetafield.key == METAFIELD_KEY,
            )
            return (await session.execute(query)).scalar_one_or_none()

    async def set_product_metadata(self, shop_id: str, product_id: str, value: str) -> None:
        shop = resolve_shop_id(shop_id)
        async with self.get_session() as session:
            query = select(ProductMetafield).where(
                ProductMetafield.shop_id == shop,
                ProductMetafield.product_id == product_id,
                ProductMetafield.namespace == METAFIELD_NAMESPACE,
                ProductMetafield.key == METAFIELD_KEY,
            )
            row = (await session.execute(query)).scalar_one_or_none()
            if row is None:
                row = ProductMetafield(
                    shop_id=shop,
                    product_id=product_id,
                    namespace=METAFIELD_NAMESPACE,
                    key=METAFIELD_KEY,
                )
                session.add(row)
            row.value = value
            row.updated_at = datetime.utcnow()
            await session.commit()


storage = StorageService()


def get_storage() -> StorageService:
    """FastAPI dependency; tests override it with an in-memory fake."""
    return storage
