"""
Shared test fixtures.

Provides a temporary SQLite database, in-memory fakes for the controller's
persistence collaborators, a manually advanced clock and a reading factory.
"""

import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import patch

from ihht.core.exceptions import RecoveryDataCorruptOrStaleError
from ihht.domain.models.progression import ProgressionData
from ihht.domain.models.reading import Reading
from ihht.domain.models.session import RecoverySnapshot, SessionSummary
from ihht.persistence.database import init_database


BASE_TIME = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def test_db():
    """Create and initialize test database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        await init_database(db_path)

        from ihht.core import config

        original_path = config.settings.database_path
        config.settings.database_path = db_path

        with patch("ihht.persistence.database.settings", config.settings):
            yield db_path

        config.settings.database_path = original_path


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Wall clock advanced by hand."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InMemorySessionStore:
    """Session store keeping summaries and adaptive events in lists."""

    def __init__(self, progression_data: Optional[ProgressionData] = None):
        self.progression_data = progression_data or ProgressionData()
        self.summaries: List[SessionSummary] = []
        self.adaptive_events: List[Dict] = []
        self.fail_progression = False
        self.fail_summary = False

    async def get_user_progression_data(self, user_id: str) -> ProgressionData:
        if self.fail_progression:
            raise RuntimeError("history unavailable")
        return self.progression_data

    async def save_session_summary(self, summary: SessionSummary) -> None:
        if self.fail_summary:
            raise RuntimeError("disk full")
        self.summaries.append(summary)

    async def record_adaptive_event(
        self, session_id, event_type, instruction=None, altitude_level=None
    ) -> None:
        self.adaptive_events.append(
            {
                "session_id": session_id,
                "event_type": event_type,
                "instruction": instruction,
                "altitude_level": altitude_level,
            }
        )

    def event_types(self) -> List[str]:
        return [e["event_type"] for e in self.adaptive_events]


class InMemoryRecoveryStore:
    """Single-slot recovery store."""

    def __init__(self):
        self.snapshot: Optional[RecoverySnapshot] = None
        self.saved: List[RecoverySnapshot] = []
        self.corrupt = False
        self.fail_save = False

    async def save(self, snapshot: RecoverySnapshot) -> None:
        if self.fail_save:
            raise RuntimeError("write failed")
        self.snapshot = snapshot
        self.saved.append(snapshot)

    async def load(self) -> Optional[RecoverySnapshot]:
        if self.corrupt:
            raise RecoveryDataCorruptOrStaleError("Snapshot payload is corrupt")
        return self.snapshot

    async def delete(self) -> None:
        self.snapshot = None
        self.corrupt = False


class InMemoryReadingSink:
    """Reading sink that can be told to fail."""

    def __init__(self):
        self.batches: List[List[Reading]] = []
        self.fail = False

    async def save_readings(self, session_id: str, readings) -> None:
        if self.fail:
            raise RuntimeError("write failed")
        self.batches.append(list(readings))

    async def get_readings(self, session_id: str) -> List[Reading]:
        return [r for batch in self.batches for r in batch]

    @property
    def saved_count(self) -> int:
        return sum(len(b) for b in self.batches)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def recovery_store():
    return InMemoryRecoveryStore()


@pytest.fixture
def reading_sink():
    return InMemoryReadingSink()


@pytest.fixture
def make_reading():
    """Factory for readings at BASE_TIME + offset seconds."""

    def _make(
        offset: float = 0.0,
        spo2: Optional[int] = 92,
        heart_rate: Optional[int] = 70,
        is_finger_detected: bool = True,
        start: datetime = BASE_TIME,
    ) -> Reading:
        return Reading(
            timestamp=start + timedelta(seconds=offset),
            spo2=spo2,
            heart_rate=heart_rate,
            is_finger_detected=is_finger_detected,
        )

    return _make
