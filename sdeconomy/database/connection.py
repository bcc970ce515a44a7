"""
Database Connection Management

Async SQLAlchemy 2.0 engine handling. Engines are created
explicitly and handed to the components that need them; nothing here is
process-global.
"""

import time
from typing import Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from sdeconomy.config.settings import DatabaseSettings

logger = structlog.get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    In-memory SQLite shares one connection so every session sees the same
    database; other backends use NullPool and let the driver pool.
    """
    parsed = make_url(url)
    engine_config = {"echo": echo, "pool_pre_ping": True}

    if parsed.get_backend_name() == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            engine_config.update({
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            })
        else:
            engine_config["poolclass"] = NullPool
    else:
        engine_config["poolclass"] = NullPool

    engine = create_async_engine(url, **engine_config)

    if parsed.get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    return engine


async def init_database(settings: DatabaseSettings) -> AsyncEngine:
    """
    Create the engine from settings and verify the connection.

    Returns:
        AsyncEngine: The initialized database engine
    """
    engine = create_engine(settings.url, echo=settings.echo)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection established", backend=engine.dialect.name)
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await engine.dispose()
        raise
    return engine


async def close_database(engine: Optional[AsyncEngine]) -> None:
    """Dispose of the engine's connections."""
    if engine is not None:
        await engine.dispose()
        logger.info("Database connection pool closed")


async def check_database_health(engine: AsyncEngine) -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000
        return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
