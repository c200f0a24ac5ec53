"""
Health check endpoints.

Provides system health information for monitoring.
"""

from fastapi import APIRouter, HTTPException, Request
import structlog

from ihht import __version__
from ihht.core.config import settings
from ihht.persistence.database import check_database_health

log = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.

    Returns:
        System health status including database connectivity and whether a
        training session is running.
    """
    db_health = await check_database_health()

    overall_status = "healthy" if db_health["status"] == "healthy" else "unhealthy"

    controller = getattr(request.app.state, "session_controller", None)
    return {
        "status": overall_status,
        "version": __version__,
        "debug": settings.debug,
        "components": {
            "database": db_health,
            "session_controller": {
                "initialized": controller is not None,
                "session_active": bool(controller and controller.is_active),
            },
        },
    }


@router.get("/health/live")
async def liveness():
    """
    Kubernetes-style liveness probe.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness():
    """
    Kubernetes-style readiness probe.

    Returns 200 if the application is ready to serve requests.
    """
    db_health = await check_database_health()

    if db_health["status"] != "healthy":
        raise HTTPException(status_code=503, detail="Database not ready")

    return {"status": "ready"}
