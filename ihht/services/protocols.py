"""
Service protocol definitions (interfaces).

Defines the collaborator contracts of the session controller using
typing.Protocol, so that the aiosqlite repositories, in-process feeds and
test doubles are interchangeable through structural subtyping.
"""

from typing import Callable, List, Optional, Protocol, Sequence

from ihht.domain.models.instruction import AdaptiveInstruction
from ihht.domain.models.progression import ProgressionData
from ihht.domain.models.reading import Reading
from ihht.domain.models.session import RecoverySnapshot, SessionSummary

ReadingCallback = Callable[[Reading], None]
DisconnectCallback = Callable[[Optional[Exception]], None]
Unsubscribe = Callable[[], None]


class IReadingSource(Protocol):
    """
    Protocol for pulse oximeter reading sources.

    The transport (BLE, simulator, HTTP ingestion) is outside the engine;
    the controller only needs a push subscription.
    """

    def subscribe(
        self,
        on_reading: ReadingCallback,
        on_disconnect: DisconnectCallback,
    ) -> Unsubscribe:
        """
        Register callbacks for readings and disconnects.

        Args:
            on_reading: Called with each new reading
            on_disconnect: Called when the sensor feed is lost

        Returns:
            Callable that removes both callbacks
        """
        ...


class ISessionStore(Protocol):
    """
    Protocol for session history persistence.

    Provides the progression input and stores finished session outcomes.
    """

    async def get_user_progression_data(self, user_id: str) -> ProgressionData:
        """
        Load recent finished sessions for a user.

        Args:
            user_id: User identifier

        Returns:
            ProgressionData built from the newest finished sessions
        """
        ...

    async def save_session_summary(self, summary: SessionSummary) -> None:
        """Append a finished session to history."""
        ...

    async def record_adaptive_event(
        self,
        session_id: str,
        event_type: str,
        instruction: Optional[AdaptiveInstruction] = None,
        altitude_level: Optional[int] = None,
    ) -> None:
        """Append an adaptive event (mask lift, dial suggestion, dial confirmation)."""
        ...


class IRecoveryStore(Protocol):
    """Protocol for the single-slot recovery snapshot store."""

    async def save(self, snapshot: RecoverySnapshot) -> None:
        """Replace the stored snapshot."""
        ...

    async def load(self) -> Optional[RecoverySnapshot]:
        """
        Load the stored snapshot.

        Returns:
            Snapshot, or None when nothing is stored

        Raises:
            RecoveryDataCorruptOrStaleError: stored data is unparseable or
                written by an incompatible schema version
        """
        ...

    async def delete(self) -> None:
        """Remove the stored snapshot (no-op when absent)."""
        ...


class IReadingSink(Protocol):
    """Protocol for batched reading persistence."""

    async def save_readings(self, session_id: str, readings: Sequence[Reading]) -> None:
        """Append a batch of readings for a session."""
        ...

    async def get_readings(self, session_id: str) -> List[Reading]:
        """Load all readings of a session, oldest first."""
        ...
