"""SQLite backend used for local runs and the test-suite.

Same table definitions as Postgres; no pooling and no row-level
security.  Foreign keys are switched on for every connection so the
subscription -> laundry and payment -> subscription links are enforced
the same way as in production.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(".laundryflow") / "billing.db"

_CONNECT_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)


def _apply_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in _CONNECT_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def get_local_engine(db_path: Path | str = DEFAULT_DB_PATH) -> AsyncEngine:
    """Open (creating its directory if needed) the SQLite database at *db_path*.

    ``":memory:"`` gives a throwaway in-process database.
    """
    if str(db_path) == ":memory:":
        target = ":memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        target = str(path)

    engine = create_async_engine(f"sqlite+aiosqlite:///{target}", connect_args={"check_same_thread": False})
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.debug("SQLite engine opened at %s", target)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing billing tables."""
    from subscription_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
