"""
FastAPI application entry point.

Run with: uvicorn ihht.main:app --reload
"""

from contextlib import asynccontextmanager
import uuid

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ihht import __version__
from ihht.core.config import settings
from ihht.core.logging import configure_logging, get_logger, bind_context, clear_context
from ihht.persistence.database import init_database
from ihht.persistence.repositories import (
    ReadingRepository,
    RecoverySnapshotRepository,
    SessionHistoryRepository,
)
from ihht.services import ReadingFeed, SessionController
from ihht.api.routes import health, sessions
from ihht.api.exception_handlers import setup_exception_handlers

# Configure logging before anything else
configure_logging()
log = get_logger(__name__)


# =============================================================================
# Correlation ID Middleware
# =============================================================================


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique correlation ID to each request.

    - Generates a UUID4 request_id for each incoming request
    - Binds it to structlog context for all logs in that request
    - Adds X-Request-ID header to responses
    """

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        bind_context(request_id=request_id)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_context()


def build_session_controller(feed: ReadingFeed) -> SessionController:
    """Wire the controller to the SQLite repositories and the reading feed."""
    db_path = str(settings.database_path)
    return SessionController(
        session_store=SessionHistoryRepository(db_path),
        recovery_store=RecoverySnapshotRepository(db_path),
        reading_sink=ReadingRepository(db_path),
        reading_source=feed,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Initializes the database and the single session controller on startup;
    on shutdown a running session is snapshotted so it can be recovered.
    """
    log.info(
        "application_starting",
        debug=settings.debug,
        database_path=str(settings.database_path),
    )

    await init_database()

    feed = ReadingFeed()
    controller = build_session_controller(feed)
    app.state.reading_feed = feed
    app.state.session_controller = controller

    recoverable = await controller.get_recoverable_session()
    if recoverable is not None:
        log.info(
            "recoverable_session_found",
            session_id=recoverable.session_id,
            phase=recoverable.phase_state.current_phase.value,
            cycle=recoverable.phase_state.current_cycle,
        )

    log.info("application_started")

    yield

    log.info("application_shutting_down")
    await controller.shutdown()


# Create FastAPI application
app = FastAPI(
    title="IHHT Session Engine",
    description="Interval hypoxic-hyperoxic training session engine",
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware for development
if settings.debug:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(CorrelationIDMiddleware)

setup_exception_handlers(app)

app.include_router(health.router, tags=["system"])
app.include_router(sessions.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {"name": "IHHT Session Engine", "version": __version__, "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ihht.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
