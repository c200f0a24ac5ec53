"""Reading repository: batched pulse oximeter samples."""

from datetime import datetime, timezone
from typing import List, Sequence

import aiosqlite
import structlog

from ihht.domain.models.reading import Reading

log = structlog.get_logger(__name__)


class ReadingRepository:
    """Repository for raw readings of a session."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def save_readings(self, session_id: str, readings: Sequence[Reading]) -> None:
        """Append a batch of readings in one transaction."""
        if not readings:
            return

        rows = [
            (
                session_id,
                _to_iso(r.timestamp),
                r.spo2,
                r.heart_rate,
                1 if r.is_finger_detected else 0,
                r.signal_strength,
                r.perfusion_index,
            )
            for r in readings
        ]
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                "INSERT INTO readings (session_id, timestamp, spo2, heart_rate, "
                "is_finger_detected, signal_strength, perfusion_index) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.commit()

        log.debug("readings_saved", session_id=session_id, count=len(rows))

    async def get_readings(self, session_id: str) -> List[Reading]:
        """All readings of a session, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM readings WHERE session_id = ? ORDER BY timestamp, id",
                (session_id,),
            )
            rows = await cursor.fetchall()
            return [
                Reading(
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    spo2=row["spo2"],
                    heart_rate=row["heart_rate"],
                    is_finger_detected=bool(row["is_finger_detected"]),
                    signal_strength=row["signal_strength"],
                    perfusion_index=row["perfusion_index"],
                )
                for row in rows
            ]

    async def count_readings(self, session_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM readings WHERE session_id = ?", (session_id,)
            )
            row = await cursor.fetchone()
            return row[0] if row else 0


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
