"""PostgreSQL connection pool lifecycle for the persistence store.

Two pooler modes are recognised from the DSN port:
  - Session Pooler     (port 5432) : long-lived connections, prepared statements
  - Transaction Pooler (port 6543) : PgBouncer transaction mode, no prepared statements
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Any, ClassVar

import asyncpg

logger = logging.getLogger(__name__)


@dataclass
class PoolConfig:
    """Database pool configuration with sensible defaults."""

    min_size: int = 1
    max_size: int = 5
    timeout: float = 5.0
    command_timeout: float = 15.0
    max_inactive_connection_lifetime: float = 30.0
    max_retries: int = 3
    retry_delay: float = 3.0
    ssl: str | None = "prefer"

    # Keep-alive settings (Session Pooler only)
    tcp_keepalives_idle: int = 30
    tcp_keepalives_interval: int = 10
    tcp_keepalives_count: int = 3

    # The engine keeps a warm connection for queue writes; tooling borrows briefly
    _SERVICE_PRESETS: ClassVar[dict[str, dict]] = {
        "engine": {"min_size": 1, "max_size": 4},
        "tools": {"min_size": 0, "max_size": 2, "max_retries": 1},
    }

    @classmethod
    def for_service(cls, service: str, **overrides) -> PoolConfig:
        """PoolConfig with the named preset applied, then *overrides*."""
        valid_keys = {f.name for f in fields(cls) if not f.name.startswith("_")}
        preset = dict(cls._SERVICE_PRESETS.get(service, {}))
        preset.update(overrides)
        return cls(**{k: v for k, v in preset.items() if k in valid_keys})


class DatabaseManager:
    """Owns one asyncpg pool: connect with retry, health check, close."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        self.database_url = database_url
        self.config = config or PoolConfig()
        self._pool: asyncpg.Pool | None = None
        self.pooler_mode: str = "transaction" if ":6543" in database_url else "session"

    async def _init_session_connection(self, conn: asyncpg.Connection) -> None:
        timeout_ms = int(self.config.command_timeout * 1000)
        await conn.execute(f"SET statement_timeout = {timeout_ms}")

    def _pool_kwargs(self) -> dict[str, Any]:
        cfg = self.config
        kwargs: dict[str, Any] = {
            "dsn": self.database_url,
            "max_size": cfg.max_size,
            "timeout": cfg.timeout,
            "command_timeout": cfg.command_timeout,
        }
        if cfg.ssl:
            kwargs["ssl"] = cfg.ssl

        if self.pooler_mode == "transaction":
            # PgBouncer drops idle connections and session state
            kwargs.update(min_size=0, statement_cache_size=0, max_inactive_connection_lifetime=0)
        else:
            kwargs.update(
                min_size=cfg.min_size,
                statement_cache_size=100,
                max_inactive_connection_lifetime=cfg.max_inactive_connection_lifetime,
                server_settings={
                    "tcp_keepalives_idle": str(cfg.tcp_keepalives_idle),
                    "tcp_keepalives_interval": str(cfg.tcp_keepalives_interval),
                    "tcp_keepalives_count": str(cfg.tcp_keepalives_count),
                },
                init=self._init_session_connection,
            )
        return kwargs

    async def connect(self) -> None:
        """Create the pool, retrying with exponential backoff."""
        if self._pool is not None:
            logger.warning("Database pool already initialized")
            return

        pool_kwargs = self._pool_kwargs()
        cfg = self.config
        for attempt in range(1, cfg.max_retries + 1):
            try:
                self._pool = await asyncpg.create_pool(**pool_kwargs)
                async with self._pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
                logger.info(
                    f"Database pool created and verified "
                    f"(mode={self.pooler_mode}, size={pool_kwargs['min_size']}-{cfg.max_size})"
                )
                return
            except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
                if self._pool is not None:
                    await self._pool.close()
                    self._pool = None
                if attempt >= cfg.max_retries:
                    logger.exception(
                        f"Database connection failed after {cfg.max_retries} attempts: "
                        f"{type(e).__name__}: {e or repr(e)}"
                    )
                    raise
                delay = cfg.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Database connection attempt {attempt}/{cfg.max_retries} failed: "
                    f"{type(e).__name__}: {e or repr(e)}, retrying in {delay}s..."
                )
                await asyncio.sleep(delay)

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        try:
            await self._pool.close()
            logger.info("Database pool closed")
        except Exception as e:
            logger.exception(f"Error closing database pool: {e}")
        finally:
            self._pool = None

    async def check_health(self) -> bool:
        """Test if pool can actually execute a query."""
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire(timeout=2.0) as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError):
            return False

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the database connection pool. Raises if not initialized."""
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")
        return self._pool
