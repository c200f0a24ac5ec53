"""
Session API routes.

Endpoints for the live session lifecycle, reading ingestion, recovery and
altitude recommendations. All live-session operations go through the
application's single SessionController.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import Response
import structlog

from ihht.api.dependencies import (
    ReadingFeedDep,
    SessionControllerDep,
    SessionHistoryRepoDep,
)
from ihht.api.schemas import (
    AltitudeLevelRequest,
    ControlResponse,
    DisconnectRequest,
    EndSessionRequest,
    ReadingBatchRequest,
    ReadingBatchResponse,
    ReadingRequest,
    ReadingResponse,
    RecoveryResponse,
    SessionHistoryResponse,
    StartSessionRequest,
)
from ihht.core.exceptions import NoActiveSessionError
from ihht.domain.models.progression import AltitudeRecommendation
from ihht.domain.models.session import SessionInfo, SessionSummary

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ============ LIFECYCLE ============


@router.post("", response_model=SessionInfo, status_code=status.HTTP_201_CREATED)
async def start_session(request: StartSessionRequest, controller: SessionControllerDep):
    """Start a training session.

    Omitted starting altitude and session type are derived from the user's
    session history.
    """
    session_id = request.session_id or str(uuid.uuid4())
    return await controller.start_session(
        session_id,
        request.to_config(),
        user_id=request.user_id,
        session_type=request.session_type,
    )


@router.get("/current", response_model=SessionInfo)
async def get_current_session(controller: SessionControllerDep):
    """Live session state (is_active is false when nothing is running)."""
    return controller.get_session_info()


@router.post("/current/pause", response_model=ControlResponse)
async def pause_session(controller: SessionControllerDep):
    changed = await controller.pause_session()
    return ControlResponse(changed=changed, session=controller.get_session_info())


@router.post("/current/resume", response_model=ControlResponse)
async def resume_session(controller: SessionControllerDep):
    changed = await controller.resume_session()
    return ControlResponse(changed=changed, session=controller.get_session_info())


@router.post("/current/skip", response_model=ControlResponse)
async def skip_phase(controller: SessionControllerDep):
    """Skip the rest of the current phase (no-op while paused)."""
    changed = await controller.skip_to_next_phase()
    return ControlResponse(changed=changed, session=controller.get_session_info())


@router.post("/current/altitude", response_model=SessionInfo)
async def confirm_altitude_level(
    request: AltitudeLevelRequest, controller: SessionControllerDep
):
    """Confirm that the user turned the altitude dial."""
    await controller.set_altitude_level(request.level)
    return controller.get_session_info()


@router.post("/current/disconnect", response_model=ControlResponse)
async def report_disconnect(request: DisconnectRequest, controller: SessionControllerDep):
    """Report a lost sensor connection; the session is paused."""
    error = ConnectionError(request.error) if request.error else None
    changed = await controller.handle_sensor_disconnect(error)
    return ControlResponse(changed=changed, session=controller.get_session_info())


@router.post("/current/end", response_model=SessionSummary)
async def end_session(
    controller: SessionControllerDep,
    request: Optional[EndSessionRequest] = None,
):
    """End the live session and return its summary."""
    reason = request.reason if request else "manual"
    summary = await controller.end_session(reason=reason)
    if summary is None:
        raise NoActiveSessionError("No active session")
    return summary


# ============ READINGS ============


@router.post("/current/readings", response_model=ReadingResponse)
async def add_reading(request: ReadingRequest, controller: SessionControllerDep):
    """Ingest one reading; returns the adaptive instruction it triggered, if any."""
    if not controller.is_active:
        raise NoActiveSessionError("No active session")
    instruction = await controller.add_reading(request.to_reading())
    return ReadingResponse(accepted=True, instruction=instruction)


@router.post("/current/readings/batch", response_model=ReadingBatchResponse)
async def add_reading_batch(
    request: ReadingBatchRequest,
    controller: SessionControllerDep,
    feed: ReadingFeedDep,
):
    """Ingest buffered readings through the reading feed.

    Instructions are delivered to the instruction callback and the event
    stream rather than returned.
    """
    if not controller.is_active:
        raise NoActiveSessionError("No active session")
    for item in request.readings:
        feed.publish(item.to_reading())
    await controller.drain_callbacks()
    return ReadingBatchResponse(accepted=len(request.readings))


# ============ RECOVERY ============


@router.get("/recovery", response_model=RecoveryResponse)
async def get_recoverable_session(controller: SessionControllerDep):
    snapshot = await controller.get_recoverable_session()
    return RecoveryResponse(recoverable=snapshot is not None, snapshot=snapshot)


@router.post("/recovery/resume", response_model=SessionInfo)
async def resume_recovered_session(controller: SessionControllerDep):
    """Resume the interrupted session (it starts paused)."""
    return await controller.resume_recovered_session()


@router.post("/recovery/decline", status_code=status.HTTP_204_NO_CONTENT)
async def decline_recovery(controller: SessionControllerDep):
    await controller.decline_session_recovery()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============ PROGRESSION & HISTORY ============


@router.get("/recommendation", response_model=AltitudeRecommendation)
async def recommend_starting_altitude(
    controller: SessionControllerDep,
    user_id: Optional[str] = Query(default=None),
):
    """Recommended starting altitude for the user's next session."""
    return await controller.recommend_starting_altitude(user_id)


@router.get("/history", response_model=SessionHistoryResponse)
async def list_session_history(
    history_repo: SessionHistoryRepoDep,
    controller: SessionControllerDep,
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
):
    """Finished sessions of a user, newest first."""
    user = user_id or controller.default_user_id
    sessions = await history_repo.list_sessions(user, limit=limit)
    total = await history_repo.count_sessions(user)
    return SessionHistoryResponse(sessions=sessions, total=total)


@router.get("/{session_id}/summary", response_model=SessionSummary)
async def get_session_summary(session_id: str, history_repo: SessionHistoryRepoDep):
    summary = await history_repo.get_session_summary(session_id)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return summary
