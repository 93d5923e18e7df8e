"""Database connection helpers for the static GTFS SQLite store."""

from pathlib import Path

import aiosqlite

from transit_engine.data.config import get_settings


def get_db_path() -> Path:
    """Get the database path from settings (TRANSIT_DB_PATH) or default."""
    return get_settings().db_path


async def connect(db_path: Path | None = None) -> aiosqlite.Connection:
    """Open a connection configured with Row factory for dict-like access.

    Creates the parent directory if needed. The caller owns the connection.
    """
    if db_path is None:
        db_path = get_db_path()

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA synchronous=NORMAL")
    return db
