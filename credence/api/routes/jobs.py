"""Operational job triggers."""

import logging

from fastapi import APIRouter, Depends

from credence.api.auth import rate_limit_jobs
from credence.api.dependencies import get_service
from credence.api.models import RecoverStalledResponse, SweepResponse
from credence.verification.service import VerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("/sweep-expired", response_model=SweepResponse)
def sweep_expired(
    _: str = Depends(rate_limit_jobs),
    service: VerificationService = Depends(get_service),
):
    """Deactivate every grant whose expiry has passed."""
    count = service.sweep_expired()
    logger.info("Expiry sweep via API deactivated %d grant(s)", count)
    return SweepResponse(deactivated=count)


@router.post("/recover-stalled", response_model=RecoverStalledResponse)
def recover_stalled(
    _: str = Depends(rate_limit_jobs),
    service: VerificationService = Depends(get_service),
):
    """Close out requests stuck in an active state past the stall timeout."""
    count = service.recover_stalled()
    logger.info("Stalled-request recovery via API closed %d request(s)", count)
    return RecoverStalledResponse(recovered=count)
