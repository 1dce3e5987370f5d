"""
Key-Value Store
SQL-table backed key-value entries and counters with the atomic primitives the
webhook pipeline relies on: insert-if-absent for markers and claims, and an
upsert increment for global counters.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, KeyValueCounter, KeyValueEntry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    # Columns are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite_insert
    return pg_insert


class KeyValueStore:
    """Key-value operations over the ``kv_entries`` / ``kv_counters`` tables"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        return self._session_factory()

    async def get(self, key: str) -> Optional[str]:
        async with self.get_session() as session:
            record = await session.get(KeyValueEntry, key)
            if record is None:
                return None
            if record.expires_at and record.expires_at <= _utcnow():
                await session.delete(record)
                await session.commit()
                logger.debug("KV entry expired | key=%s", key)
                return None
            return record.value

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error("KV entry is not valid JSON | key=%s", key)
            return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = _utcnow() + timedelta(seconds=int(ttl)) if ttl else None
        async with self.get_session() as session:
            record = await session.get(KeyValueEntry, key)
            if record:
                record.value = value
                record.expires_at = expires_at
            else:
                session.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
            await session.commit()
        logger.debug("KV write | key=%s ttl=%s", key, ttl)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value, default=str), ttl=ttl)

    async def _claim(
        self, session: AsyncSession, key: str, value: str, expires_at: Optional[datetime]
    ) -> bool:
        # An expired entry no longer holds the key
        await session.execute(
            delete(KeyValueEntry).where(
                KeyValueEntry.key == key,
                KeyValueEntry.expires_at.is_not(None),
                KeyValueEntry.expires_at <= _utcnow(),
            )
        )
        insert = _insert_for(session)
        stmt = (
            insert(KeyValueEntry)
            .values(key=key, value=value, expires_at=expires_at, created_at=_utcnow())
            .on_conflict_do_nothing(index_elements=[KeyValueEntry.key])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _increment(self, session: AsyncSession, name: str, amount: int = 1) -> int:
        insert = _insert_for(session)
        stmt = insert(KeyValueCounter).values(name=name, value=amount, updated_at=_utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=[KeyValueCounter.name],
            set_={"value": KeyValueCounter.value + amount, "updated_at": func.now()},
        ).returning(KeyValueCounter.value)
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Atomically write ``key`` only if no live entry holds it.

        Returns True for the single caller that wrote the entry.
        """
        expires_at = _utcnow() + timedelta(seconds=int(ttl)) if ttl else None
        async with self.get_session() as session:
            async with session.begin():
                claimed = await self._claim(session, key, value, expires_at)
        logger.debug("KV set_if_absent | key=%s claimed=%s", key, claimed)
        return claimed

    async def claim_and_increment(self, key: str, value: str, counter: str) -> bool:
        """Insert-if-absent ``key`` and bump ``counter`` in one transaction.

        The counter moves only when the claim was won.
        """
        async with self.get_session() as session:
            async with session.begin():
                claimed = await self._claim(session, key, value, None)
                if claimed:
                    count = await self._increment(session, counter)
                    logger.info("Claimed %s; %s is now %s", key, counter, count)
        return claimed

    async def incr(self, name: str, amount: int = 1) -> int:
        async with self.get_session() as session:
            async with session.begin():
                return await self._increment(session, name, amount)

    async def get_counter(self, name: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(KeyValueCounter.value).where(KeyValueCounter.name == name)
            )
            value = result.scalar()
            return int(value or 0)

    async def exists(self, key: str) -> bool:
        return (await self.get(key)) is not None


kv_store = KeyValueStore()
