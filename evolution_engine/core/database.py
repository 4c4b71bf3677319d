"""
Async PostgreSQL connectivity for the evolution engine.

The pool is created once by the application context and passed explicitly to
every service; there is no module-level pool. Connections are acquired through
``acquire()``, which converts driver failures into the engine's ``StoreError``
so the health monitor can count them as component failures.

Connection Pool Configuration:
- min_size / max_size: from Settings.db_pool_min_size / db_pool_max_size
- command_timeout: from Settings.db_command_timeout
- jsonb columns are encoded/decoded as Python objects on every connection

Usage:
    pool = await init_db(settings)

    async with acquire(pool) as conn:
        rows = await conn.fetch("SELECT * FROM ai_rules WHERE status = $1", "active")

    await close_db(pool)
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg
from asyncpg import Connection, Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.errors import RuleConflictError, StoreError


logger = logging.getLogger(__name__)


# =============================================================================
# Pool Lifecycle Functions
# =============================================================================

async def _init_connection(conn: Connection) -> None:
    """Register the JSON codecs so jsonb columns round-trip as dicts/lists."""
    for type_name in ('json', 'jsonb'):
        await conn.set_type_codec(
            type_name,
            encoder=lambda value: json.dumps(value, ensure_ascii=False, default=str),
            decoder=json.loads,
            schema='pg_catalog',
        )


async def init_db(settings: Settings) -> Pool:
    """
    Create the asyncpg connection pool.

    Args:
        settings: Resolved application settings.

    Returns:
        Pool: A ready connection pool.

    Raises:
        StoreError: If the database cannot be reached or rejects the login.
    """
    try:
        pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
            init=_init_connection,
        )
    except (asyncpg.PostgresError, OSError) as e:
        raise StoreError(f"Could not create connection pool: {e}") from e

    logger.info(
        "Database pool ready (min=%d, max=%d)",
        settings.db_pool_min_size,
        settings.db_pool_max_size,
    )
    return pool


async def close_db(pool: Optional[Pool]) -> None:
    """
    Close the pool gracefully. Safe to call with ``None``.
    """
    if pool is not None:
        await pool.close()


# =============================================================================
# Connection Helpers
# =============================================================================

@asynccontextmanager
async def acquire(pool: Pool) -> AsyncIterator[Connection]:
    """
    Acquire a connection and translate driver errors into ``StoreError``.

    Unique-constraint violations become ``RuleConflictError`` so callers that
    race on rule keys can recognise them.

    Raises:
        RuleConflictError: On a unique violation inside the block.
        StoreError: On any other PostgreSQL or connection failure.
    """
    try:
        async with pool.acquire() as conn:
            yield conn
    except asyncpg.UniqueViolationError as e:
        raise RuleConflictError(str(e)) from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise StoreError(str(e)) from e


def decode_json(value: Any, default: Any = None) -> Any:
    """
    Return a JSON column value as Python data.

    Rows normally arrive decoded by the connection codec; plain strings are
    still accepted so rows built by hand (or read through another driver)
    behave the same.
    """
    if value is None:
        return default
    if isinstance(value, (bytes, str)):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value
