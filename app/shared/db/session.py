import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    is_testing = bool(getattr(settings_obj, "TESTING", False))
    if is_testing and "sqlite" not in db_url:
        # Safety: protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
    else:
        pool_config.update(
            {"pool_size": 10, "max_overflow": 10, "pool_timeout": 30, "pool_recycle": 3600}
        )
    return pool_config


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    if not settings_obj.DATABASE_URL and not settings_obj.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    connect_args: dict[str, Any] = {}
    if "postgresql" in effective_url:
        connect_args["statement_cache_size"] = 0

    engine = create_async_engine(
        effective_url,
        **_build_pool_config(settings_obj, effective_url),
        connect_args=connect_args,
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine, session_maker=session_maker, effective_url=effective_url
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is not None:
        runtime.engine.sync_engine.dispose()


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None,
        )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_all() -> None:
    """Create tables for local runs and tests; production uses migrations."""
    from app.shared.db.base import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def health_check() -> Dict[str, Any]:
    """Database health check for monitoring."""
    start_time = time.perf_counter()
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        latency = (time.perf_counter() - start_time) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency, 2),
            "engine": get_engine().dialect.name,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "down",
            "error": str(e),
            "latency_ms": (time.perf_counter() - start_time) * 1000,
        }
