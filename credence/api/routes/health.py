"""Health check endpoint."""

import logging

from fastapi import APIRouter, Request

from credence import __version__
from credence.api.models import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health(request: Request):
    """Check database connectivity and text-extraction availability."""
    service = getattr(request.app.state, "service", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    if service is None:
        return HealthResponse(status="offline", version=__version__)

    db_ok = service.store.ping()

    extractor_ok = False
    extractor_name = ""
    try:
        extractor = service.extractor
        extractor_name = extractor.name
        extractor_ok = extractor.is_available()
    except Exception:
        logger.warning("Extractor availability check failed", exc_info=True)

    status = "healthy"
    if not extractor_ok:
        status = "degraded"
    if not db_ok:
        status = "offline"

    return HealthResponse(
        status=status,
        database_connected=db_ok,
        extractor_available=extractor_ok,
        extractor=extractor_name,
        scheduler_running=bool(scheduler and scheduler.running),
        version=__version__,
    )
