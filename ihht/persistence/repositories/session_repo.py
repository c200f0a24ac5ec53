"""Session history repository for database operations."""

import json
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite
import structlog

from ihht.core.config import training_config
from ihht.domain.models.instruction import AdaptiveInstruction, AltitudeAdjustment, MaskLift
from ihht.domain.models.progression import (
    ProgressionData,
    SessionHistoryRecord,
    SessionType,
)
from ihht.domain.models.session import SessionSummary

log = structlog.get_logger(__name__)


class SessionHistoryRepository:
    """Repository for finished sessions and their adaptive events."""

    def __init__(self, db_path: str, history_limit: Optional[int] = None):
        self.db_path = db_path
        self.history_limit = history_limit or training_config.progression.history_limit

    async def save_session_summary(self, summary: SessionSummary) -> None:
        """Insert (or replace) a finished session."""
        performance = summary.performance
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sessions (id, user_id, session_type, start_time, "
                "end_time, duration_seconds, end_reason, total_cycles, cycles_completed, "
                "completion_rate, starting_altitude_level, ending_altitude_level, "
                "mask_lift_count, altitude_adjustment_count, min_spo2, max_spo2, avg_spo2, "
                "avg_heart_rate, reading_count, performance_score, performance_category, "
                "summary) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    summary.session_id,
                    summary.user_id,
                    summary.session_type.value,
                    _to_iso(summary.start_time),
                    _to_iso(summary.end_time),
                    summary.duration_seconds,
                    summary.end_reason,
                    summary.total_cycles,
                    summary.cycles_completed,
                    summary.completion_rate,
                    summary.starting_altitude_level,
                    summary.ending_altitude_level,
                    summary.mask_lift_count,
                    summary.altitude_adjustment_count,
                    summary.min_spo2,
                    summary.max_spo2,
                    summary.avg_spo2,
                    summary.avg_heart_rate,
                    summary.reading_count,
                    performance.score if performance else None,
                    performance.category.value if performance else None,
                    summary.model_dump_json(),
                ),
            )
            await db.commit()

        log.info(
            "session_summary_saved",
            session_id=summary.session_id,
            user_id=summary.user_id,
            ending_altitude_level=summary.ending_altitude_level,
        )

    async def get_session_summary(self, session_id: str) -> Optional[SessionSummary]:
        """Get a finished session by ID."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT summary FROM sessions WHERE id = ?", (session_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return SessionSummary.model_validate_json(row["summary"])

    async def list_sessions(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[SessionHistoryRecord]:
        """Finished sessions of a user, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM sessions WHERE user_id = ? "
                "ORDER BY COALESCE(end_time, start_time) DESC LIMIT ?",
                (user_id, limit or self.history_limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_record(row) for row in rows]

    async def count_sessions(self, user_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM sessions WHERE user_id = ?", (user_id,)
            )
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_user_progression_data(self, user_id: str) -> ProgressionData:
        """
        Build progression data from the user's recent sessions.

        Returns:
            ProgressionData over the newest history_limit sessions, with the
            lifetime session count as total_sessions
        """
        records = await self.list_sessions(user_id)
        total = await self.count_sessions(user_id)
        data = ProgressionData.from_history(records, total_sessions=total)
        log.debug(
            "progression_data_loaded",
            user_id=user_id,
            sessions=len(records),
            total_sessions=total,
            trend=data.trend.value,
            days_since_last_session=data.days_since_last_session,
        )
        return data

    async def record_adaptive_event(
        self,
        session_id: str,
        event_type: str,
        instruction: Optional[AdaptiveInstruction] = None,
        altitude_level: Optional[int] = None,
    ) -> None:
        """Append a mask lift, dial suggestion or dial confirmation."""
        cycle = None
        spo2_value = None
        timestamp = datetime.now(timezone.utc)
        additional = {}

        if instruction is not None:
            cycle = instruction.cycle
            timestamp = instruction.timestamp
            additional = instruction.model_dump(mode="json")
            if isinstance(instruction, MaskLift):
                spo2_value = instruction.spo2_value
            elif isinstance(instruction, AltitudeAdjustment):
                additional["suggested_level"] = instruction.new_level

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO adaptive_events (session_id, event_type, event_timestamp, "
                "cycle, current_altitude_level, spo2_value, additional_data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session_id,
                    event_type,
                    _to_iso(timestamp),
                    cycle,
                    altitude_level,
                    spo2_value,
                    json.dumps(additional),
                ),
            )
            await db.commit()

    async def get_adaptive_events(self, session_id: str) -> List[dict]:
        """Adaptive events of a session, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM adaptive_events WHERE session_id = ? ORDER BY id",
                (session_id,),
            )
            rows = await cursor.fetchall()
            return [
                {
                    "event_type": row["event_type"],
                    "event_timestamp": row["event_timestamp"],
                    "cycle": row["cycle"],
                    "current_altitude_level": row["current_altitude_level"],
                    "spo2_value": row["spo2_value"],
                    "additional_data": json.loads(row["additional_data"] or "{}"),
                }
                for row in rows
            ]

    def _row_to_record(self, row: aiosqlite.Row) -> SessionHistoryRecord:
        """Convert a database row to a SessionHistoryRecord."""
        return SessionHistoryRecord(
            session_id=row["id"],
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
            starting_altitude_level=row["starting_altitude_level"],
            ending_altitude_level=row["ending_altitude_level"],
            mask_lift_count=row["mask_lift_count"],
            min_spo2=row["min_spo2"],
            avg_spo2=row["avg_spo2"],
            completion_rate=row["completion_rate"],
            session_type=SessionType(row["session_type"]),
        )


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
