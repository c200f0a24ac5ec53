"""Dependency injection for API routes."""

from typing import Annotated

from fastapi import Depends, Request

from ihht.core.config import settings
from ihht.core.exceptions import ConfigurationError
from ihht.persistence.repositories.session_repo import SessionHistoryRepository
from ihht.services.reading_feed import ReadingFeed
from ihht.services.session_controller import SessionController


def get_session_controller(request: Request) -> SessionController:
    """FastAPI dependency injection for the SessionController.

    The controller is built once in the application lifespan and stored on
    app.state; every request shares it.
    """
    controller = getattr(request.app.state, "session_controller", None)
    if controller is None:
        raise ConfigurationError("Session controller is not initialized")
    return controller


def get_reading_feed(request: Request) -> ReadingFeed:
    """FastAPI dependency injection for the in-process ReadingFeed."""
    feed = getattr(request.app.state, "reading_feed", None)
    if feed is None:
        raise ConfigurationError("Reading feed is not initialized")
    return feed


def get_session_history_repository() -> SessionHistoryRepository:
    """FastAPI dependency injection for SessionHistoryRepository.

    Each request gets a new repository with database path from settings.
    """
    return SessionHistoryRepository(str(settings.database_path))


# Type aliases for dependency injection
SessionControllerDep = Annotated[SessionController, Depends(get_session_controller)]
ReadingFeedDep = Annotated[ReadingFeed, Depends(get_reading_feed)]
SessionHistoryRepoDep = Annotated[
    SessionHistoryRepository, Depends(get_session_history_repository)
]
