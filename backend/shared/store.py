"""Key/value persistence stores used by the repositories.

The pipeline only needs get/set/delete/keys-by-prefix semantics, so every
repository talks to a ``PersistenceStore``:

  - ``MemoryStore``   : process-local dict, used for tests and when no
                        DATABASE_URL is configured
  - ``PostgresStore`` : single ``kv_store`` table with JSONB values
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Protocol, runtime_checkable

import asyncpg

logger = logging.getLogger(__name__)


@runtime_checkable
class PersistenceStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys_with_prefix(self, prefix: str) -> list[str]: ...


class MemoryStore:
    """In-process store. Values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Pure SQL operations for the kv_store table."""

    TABLE = "kv_store"

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create the backing table if it does not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    key        TEXT PRIMARY KEY,
                    value      JSONB NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
                """
            )
        logger.info(f"Persistence table '{self.TABLE}' ready")

    async def get(self, key: str) -> Any | None:
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval(
                f"SELECT value FROM {self.TABLE} WHERE key = $1",  # noqa: S608
                key,
            )
            if raw is None:
                return None
            return json.loads(raw) if isinstance(raw, str) else raw

    async def set(self, key: str, value: Any) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self.TABLE} (key, value)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = NOW()
                """,
                key,
                json.dumps(value),
            )

    async def delete(self, key: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self.TABLE} WHERE key = $1",  # noqa: S608
                key,
            )
            return result == "DELETE 1"

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT key FROM {self.TABLE} WHERE key LIKE $1 ESCAPE '\\' ORDER BY key",  # noqa: S608
                _escape_like(prefix) + "%",
            )
            return [row["key"] for row in rows]
