# --- models for the storefront: products, inventory and the key-value tables ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, BigInteger, Numeric, DateTime, Boolean,
    ForeignKey, func, Index,
)
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional
import logging, os, time

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_COMMAND_TIMEOUT = float(os.getenv("DB_COMMAND_TIMEOUT_SECONDS", "10"))

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg takes 'ssl' in connect_args, not 'sslmode' in the URL
    ssl_required = "sslmode=require" in DATABASE_URL or "sslmode=verify-full" in DATABASE_URL
    for mode in ("require", "verify-full"):
        DATABASE_URL = DATABASE_URL.replace(f"?sslmode={mode}", "")
        DATABASE_URL = DATABASE_URL.replace(f"&sslmode={mode}", "")

    connect_args = {
        "server_settings": {
            "application_name": "merch_storefront",
        },
        "command_timeout": DB_COMMAND_TIMEOUT,
        "timeout": 10,  # Connection timeout in seconds
    }
    if ssl_required:
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=15,
        connect_args=connect_args,
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

def _redact_db_url(url: str) -> str:
    if "@" in url and "://" in url:
        head, tail = url.split("://", 1)
        creds, hostpart = tail.rsplit("@", 1)
        user = creds.split(":", 1)[0]
        return f"{head}://{user}:******@{hostpart}"
    return url if url.startswith("sqlite") else "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection() -> bool:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
        return True
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")
        return False

async def check_db_health() -> dict:
    start = time.time()
    ok = await probe_db_connection()
    return {
        "status": "healthy" if ok else "unhealthy",
        "backend": DATABASE_URL.split("://", 1)[0],
        "latency_ms": int((time.time() - start) * 1000),
    }

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_bundle: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)


class InventoryRecord(Base):
    __tablename__ = "inventory"

    # Quantity may go negative: an oversold item is a reconciliation case, not a hard error
    product_id: Mapped[str] = mapped_column(String, ForeignKey("products.id"), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)


class KeyValueCounter(Base):
    __tablename__ = "kv_counters"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


Index('ix_kv_entries_expires_at', KeyValueEntry.expires_at)

# -------------------------------------------------------------------
# DI + init helpers
# -------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
