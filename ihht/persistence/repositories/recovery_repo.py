"""
Recovery snapshot repository.

Single-slot store: saving replaces the previous snapshot. Payloads are
versioned JSON; anything that does not parse or was written with another
schema version is reported as RecoveryDataCorruptOrStaleError so the
controller can discard it instead of resuming from partial state.
"""

from typing import Optional

import aiosqlite
import structlog
from pydantic import ValidationError

from ihht.core.exceptions import RecoveryDataCorruptOrStaleError
from ihht.domain.models.session import RECOVERY_SCHEMA_VERSION, RecoverySnapshot

log = structlog.get_logger(__name__)

_SLOT = 1


class RecoverySnapshotRepository:
    """Repository for the recovery snapshot of the active session."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def save(self, snapshot: RecoverySnapshot) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO recovery_snapshot "
                "(slot, schema_version, session_id, payload, saved_at) "
                "VALUES (?, ?, ?, ?, datetime('now'))",
                (
                    _SLOT,
                    snapshot.schema_version,
                    snapshot.session_id,
                    snapshot.model_dump_json(),
                ),
            )
            await db.commit()

        log.debug(
            "recovery_snapshot_saved",
            session_id=snapshot.session_id,
            phase=snapshot.phase_state.current_phase.value,
            cycle=snapshot.phase_state.current_cycle,
        )

    async def load(self) -> Optional[RecoverySnapshot]:
        """
        Load the stored snapshot.

        Raises:
            RecoveryDataCorruptOrStaleError: Payload unparseable or written
                with a different schema version
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT schema_version, payload FROM recovery_snapshot WHERE slot = ?",
                (_SLOT,),
            )
            row = await cursor.fetchone()

        if row is None:
            return None

        if row["schema_version"] != RECOVERY_SCHEMA_VERSION:
            raise RecoveryDataCorruptOrStaleError(
                f"Snapshot schema version {row['schema_version']} is not supported "
                f"(expected {RECOVERY_SCHEMA_VERSION})"
            )

        try:
            snapshot = RecoverySnapshot.model_validate_json(row["payload"])
        except ValidationError as e:
            raise RecoveryDataCorruptOrStaleError(
                f"Snapshot payload is corrupt: {e.error_count()} validation errors"
            ) from e

        if snapshot.schema_version != RECOVERY_SCHEMA_VERSION:
            raise RecoveryDataCorruptOrStaleError(
                f"Snapshot payload schema version {snapshot.schema_version} is not supported"
            )
        return snapshot

    async def delete(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM recovery_snapshot WHERE slot = ?", (_SLOT,))
            await db.commit()
        log.debug("recovery_snapshot_deleted")
