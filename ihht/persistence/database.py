"""
SQLite database connection management.

Provides async database initialization and a health check.
Uses aiosqlite for async SQLite access.

Schema is defined in schema.sql (consolidated, no migrations).
"""

from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from ihht.core.config import settings

log = structlog.get_logger(__name__)

# Path to consolidated schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"


async def init_database(db_path: Optional[Path] = None) -> None:
    """
    Initialize database from consolidated schema.

    Args:
        db_path: Optional path to database file. Uses settings.database_path if not provided.

    Creates database file if it doesn't exist and applies consolidated schema.
    Existing databases are left intact (idempotent schema using CREATE TABLE IF NOT EXISTS).
    """
    db_path = Path(db_path or settings.database_path)

    # Ensure parent directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    log.info("initializing_database", path=str(db_path))

    if not SCHEMA_FILE.exists():
        log.error("schema_file_not_found", path=str(SCHEMA_FILE))
        raise FileNotFoundError(f"Schema file not found: {SCHEMA_FILE}")

    async with aiosqlite.connect(db_path) as db:
        # WAL: readings are appended while the API reads session history
        await db.execute("PRAGMA journal_mode = WAL")

        schema_sql = SCHEMA_FILE.read_text()
        await db.executescript(schema_sql)
        await db.commit()

    log.info("database_initialized", path=str(db_path))


async def check_database_health(db_path: Optional[Path] = None) -> dict:
    """
    Check database health for health endpoint.

    Returns:
        Dict with health status and basic metrics.
    """
    db_path = Path(db_path or settings.database_path)
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM sessions")
            row = await cursor.fetchone()
            session_count = row[0] if row else 0

            cursor = await db.execute("PRAGMA integrity_check")
            integrity = await cursor.fetchone()

            return {
                "status": "healthy",
                "session_count": session_count,
                "integrity": integrity[0] if integrity else "unknown",
                "path": str(db_path),
            }
    except Exception as e:
        log.error("database_health_check_failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}
