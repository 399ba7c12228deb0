"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from ephemera.core.database import check_db_connection, get_db
from ephemera.core.logging import get_logger
from ephemera.schemas.message import HealthResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    """
    Liveness probe - always returns 200.

    Used by orchestrators to check if the service is running.
    """
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the service is ready to handle traffic."
)
async def readiness(
    request: Request,
    response: Response,
    db: Annotated[Session, Depends(get_db)],
) -> HealthResponse:
    """
    Readiness probe - checks if the service can handle traffic.

    Checks:
    - Database is reachable
    - Expiry sweeper is running (when the app was started with its lifespan)
    """
    checks = {}
    is_ready = True

    db_ok = check_db_connection(db)
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        is_ready = False
        logger.warning("Readiness check failed: database not reachable")

    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        checks["sweeper"] = "not started"
    elif sweeper.running:
        checks["sweeper"] = "ok"
    else:
        checks["sweeper"] = "stopped"
        is_ready = False
        logger.warning("Readiness check failed: expiry sweeper stopped")

    checks["feed_subscribers"] = request.app.state.feed.subscriber_count()

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    else:
        response.status_code = 503
        return HealthResponse(status="not ready", checks=checks)
