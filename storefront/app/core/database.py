from typing import Any, Dict, List

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.app.core.logging import get_logger
from storefront.app.core.settings import get_settings

logger = get_logger(__name__)

REQUIRED_TABLES = ("sellers", "orders", "payments", "revenues", "settlements", "flash_sales")

_settings = get_settings()

_engine_kwargs: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
if not _settings.db_url.startswith("sqlite"):
    _engine_kwargs.update(
        pool_size=_settings.DB_POOL_SIZE,
        max_overflow=_settings.DB_MAX_OVERFLOW,
        pool_recycle=_settings.DB_POOL_RECYCLE,
        pool_timeout=30,
    )

engine = create_async_engine(url=_settings.db_url, **_engine_kwargs)
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def check_db_readiness(session: AsyncSession) -> Dict[str, Any]:
    """
    Report whether the database is reachable and provisioned.

    ``error_code`` distinguishes an unreachable server (DB_UNAVAILABLE) from a
    reachable one that has not been migrated yet (DB_TABLES_NOT_READY).
    """
    try:
        conn = await session.connection()
        available: List[str] = await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).get_table_names()
        )
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database readiness check failed", error=str(exc))
        return {
            "ok": False,
            "connected": False,
            "missing_tables": list(REQUIRED_TABLES),
            "error_code": "DB_UNAVAILABLE",
            "message": "Database is not reachable",
        }

    missing = [t for t in REQUIRED_TABLES if t not in available]
    if missing:
        return {
            "ok": False,
            "connected": True,
            "missing_tables": missing,
            "error_code": "DB_TABLES_NOT_READY",
            "message": "Database connected but required tables are missing",
        }
    return {"ok": True, "connected": True, "missing_tables": []}
