"""Per-key record storage backed by PostgreSQL or process memory."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from caresync.db.pool import DatabasePool

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "migrations" / "001_init.sql"


class RecordStore(ABC):
    """
    Async get/set/remove store with no transactions.

    Values are strings; the JSON helpers treat undecodable values as absent.
    """

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Return the raw value under ``key`` or None."""

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""

    async def get_json(self, key: str) -> Optional[Any]:
        """
        Read and decode a JSON value.

        Args:
            key: Record key

        Returns:
            Decoded value, or None when missing or corrupt
        """
        raw = await self.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding corrupt record under {key}")
            return None

    async def set_json(self, key: str, value: Any) -> None:
        """Encode ``value`` as JSON and store it."""
        await self.set_item(key, json.dumps(value))


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store used when no database is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.records: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.records.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.records[key] = value

    async def remove_item(self, key: str) -> None:
        self.records.pop(key, None)


class PostgresRecordStore(RecordStore):
    """Store rows of the ``records`` table through an asyncpg pool."""

    def __init__(self, db_pool: DatabasePool):
        self.db_pool = db_pool

    async def ensure_schema(self) -> None:
        """Create the records table if it does not exist."""
        schema_sql = SCHEMA_PATH.read_text()
        async with self.db_pool.acquire() as conn:
            await conn.execute(schema_sql)
        logger.info("Record store schema ready")

    async def get_item(self, key: str) -> Optional[str]:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT value FROM records WHERE key = $1",
                key
            )

    async def set_item(self, key: str, value: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO records (key, value, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                key,
                value
            )

    async def remove_item(self, key: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute("DELETE FROM records WHERE key = $1", key)
