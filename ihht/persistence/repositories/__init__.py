"""Repository implementations."""

from ihht.persistence.repositories.session_repo import SessionHistoryRepository
from ihht.persistence.repositories.reading_repo import ReadingRepository
from ihht.persistence.repositories.recovery_repo import RecoverySnapshotRepository

__all__ = [
    "SessionHistoryRepository",
    "ReadingRepository",
    "RecoverySnapshotRepository",
]
