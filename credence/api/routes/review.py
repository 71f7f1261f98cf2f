"""Reviewer endpoints for the manual-review queue."""

import logging

from fastapi import APIRouter, Depends, Query

from credence.api.auth import require_reviewer
from credence.api.dependencies import get_service
from credence.api.models import PendingListResponse, PendingRequestModel, ReviewRequest, StatusResponse
from credence.api.routes.verification import status_response
from credence.verification.service import VerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification/admin", tags=["review"])


@router.get("/pending", response_model=PendingListResponse)
def list_pending(
    limit: int = Query(default=100, ge=1, le=500),
    reviewer_id: str = Depends(require_reviewer),
    service: VerificationService = Depends(get_service),
):
    """Requests awaiting a reviewer decision, oldest first."""
    summaries = service.list_pending_manual_review(limit=limit)
    items = [
        PendingRequestModel(
            request_id=s.request_id,
            subject_id=s.subject_id,
            institution=s.institution,
            claimed=s.claimed,
            extracted=s.extracted,
            match_score=s.match_score,
            mismatches=s.mismatches,
            total_attempts=s.total_attempts,
            error_message=s.error_message,
            appeal_reason=s.appeal_reason,
            updated_at=s.updated_at,
        )
        for s in summaries
    ]
    return PendingListResponse(requests=items, count=len(items))


@router.post("/review/{request_id}", response_model=StatusResponse)
def review(
    request_id: str,
    body: ReviewRequest,
    reviewer_id: str = Depends(require_reviewer),
    service: VerificationService = Depends(get_service),
):
    """Approve or reject a request in MANUAL_REVIEW."""
    view = service.review(request_id, body.decision, reviewer_id, body.notes)
    return status_response(view)
