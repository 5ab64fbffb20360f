# --- models section: bundles, labels and the per-product metafield store ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, Numeric, DateTime, Boolean, JSON,
    ForeignKey, func, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
import logging, os, uuid
import time

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg takes 'ssl', not 'sslmode'
    require_ssl = "sslmode=require" in DATABASE_URL or "sslmode=verify-full" in DATABASE_URL
    for param in ("?sslmode=verify-full", "&sslmode=verify-full", "?sslmode=require", "&sslmode=require"):
        DATABASE_URL = DATABASE_URL.replace(param, "")

    connect_args: Dict[str, Any] = {
        "server_settings": {
            "application_name": "bundle_labels",
        },
        "command_timeout": 60,
        "timeout": 30,
    }
    if require_ssl:
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=15,
        connect_args=connect_args,
    )
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "bundles")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_timeout=15,
        )
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# JSONB on Postgres, plain JSON elsewhere (SQLite for local runs)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
        if url.startswith("sqlite"):
            return url
    except ValueError:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Bundle(Base):
    __tablename__ = "bundles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    discount_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Raw merchant input; the pricing engine treats unparsable values as zero
    discount_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Last publish outcome, shown on the sync screen
    last_published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_publish_summary: Mapped[Optional[dict]] = mapped_column(JsonColumn, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship(
        "BundleItem",
        back_populates="bundle",
        cascade="all, delete-orphan",
        order_by="BundleItem.position",
    )
    labels = relationship(
        "BundleLabel",
        back_populates="bundle",
        cascade="all, delete-orphan",
        order_by="BundleLabel.position",
    )

    __table_args__ = (
        CheckConstraint("status IN ('active','draft')", name="ck_bundles_status"),
    )


class BundleItem(Base):
    __tablename__ = "bundle_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product_id: Mapped[str] = mapped_column(String, nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    product_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    handle: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Snapshotted at authoring time, never live-repriced
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    bundle = relationship("Bundle", back_populates="items")


class Label(Base):
    __tablename__ = "labels"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bg_color: Mapped[str] = mapped_column(String, nullable=False, default="#000000")
    text_color: Mapped[str] = mapped_column(String, nullable=False, default="#ffffff")
    position: Mapped[str] = mapped_column(String, nullable=False, default="top-left")
    shape: Mapped[str] = mapped_column(String, nullable=False, default="rounded")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    show_on_pdp: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    show_on_collection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class BundleLabel(Base):
    __tablename__ = "bundle_labels"

    bundle_id: Mapped[str] = mapped_column(String, ForeignKey("bundles.id", ondelete="CASCADE"), primary_key=True)
    label_id: Mapped[str] = mapped_column(String, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bundle = relationship("Bundle", back_populates="labels")
    label = relationship("Label", lazy="joined")


class ProductMetafield(Base):
    """Per-product metadata blob, keyed like a platform metafield (namespace.key)."""
    __tablename__ = "product_metafields"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_id: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    namespace: Mapped[str] = mapped_column(String, nullable=False)
    key: Mapped[str] = mapped_column(String, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("shop_id", "product_id", "namespace", "key", name="uq_product_metafields_owner_key"),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_bundles_shop_status', Bundle.shop_id, Bundle.status)
Index('ix_bundles_priority', Bundle.priority)
Index('ix_bundle_items_bundle', BundleItem.bundle_id)
Index('ix_bundle_items_product', BundleItem.product_id)
Index('ix_bundle_labels_label', BundleLabel.label_id)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")


async def check_db_health() -> Dict[str, Any]:
    """Round-trip a trivial query and report latency."""
    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def get_pool_status() -> Dict[str, Any]:
    pool = engine.pool
    status: Dict[str, Any] = {"class": type(pool).__name__}
    for attr in ("size", "checkedin", "checkedout", "overflow"):
        method = getattr(pool, attr, None)
        if callable(method):
            status[attr] = method()
    return status
