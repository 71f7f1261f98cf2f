"""Subject-facing verification endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from credence.api.auth import rate_limit_submit, require_subject
from credence.api.dependencies import get_service
from credence.api.models import (
    ActiveGrantsResponse,
    AppealRequest,
    AttemptModel,
    GrantModel,
    HistoryResponse,
    ProgressModel,
    ReverificationResponse,
    StatusResponse,
    SubmitResponse,
)
from credence.config import get_config
from credence.extraction.documents import acquire_upload
from credence.verification.service import StatusView, VerificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification", tags=["verification"])


def status_response(view: StatusView) -> StatusResponse:
    progress = None
    if view.progress is not None:
        progress = ProgressModel(
            stage=view.progress.stage,
            percentage=view.progress.percentage,
            message=view.progress.message,
            error_message=view.progress.error_message,
            updated_at=view.progress.updated_at,
        )
    return StatusResponse(
        request_id=view.request_id,
        status=view.status.value,
        is_terminal=view.is_terminal,
        total_attempts=view.total_attempts,
        progress=progress,
        match_score=view.match_score,
        mismatches=view.mismatches,
        error_message=view.error_message,
        expires_at=view.expires_at,
        document_type=view.document_type,
        review_notes=view.review_notes,
        created_at=view.created_at,
        updated_at=view.updated_at,
    )


@router.post("/submit", response_model=SubmitResponse, status_code=202)
def submit(
    full_name: str = Form(...),
    institution: str = Form(...),
    program: str = Form(...),
    start_year: str = Form(...),
    end_year: str = Form(...),
    document: UploadFile = File(...),
    subject_id: str = Depends(rate_limit_submit),
    service: VerificationService = Depends(get_service),
):
    """Accept identity claims plus one document and start verification."""
    cfg = get_config()
    stored = acquire_upload(document.file, document.filename, cfg.upload_dir, cfg.max_document_bytes)
    request_id = service.submit(
        subject_id,
        {
            "full_name": full_name,
            "institution": institution,
            "program": program,
            "start_year": start_year,
            "end_year": end_year,
        },
        stored,
    )
    logger.info("Accepted verification submission %s", request_id)
    return SubmitResponse(request_id=request_id)


@router.get("/status", response_model=StatusResponse)
def get_status(
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    """Current status and progress of the caller's request."""
    return status_response(service.get_status(subject_id))


@router.get("/status/{request_id}", response_model=StatusResponse)
def get_request_status(
    request_id: str,
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    """Status of one request by id; only its owner can read it."""
    return status_response(service.get_request_status(request_id, subject_id=subject_id))


@router.get("/history", response_model=HistoryResponse)
def get_history(
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    attempts = [
        AttemptModel(
            attempt_number=a.attempt_number,
            status=a.status.value,
            match_score=a.match_score,
            failure_reason=a.failure_reason,
            started_at=a.started_at,
            completed_at=a.completed_at,
        )
        for a in service.get_history(subject_id)
    ]
    return HistoryResponse(attempts=attempts)


@router.post("/appeal", response_model=StatusResponse)
def appeal(
    body: AppealRequest,
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    """Send a rejected request back to manual review."""
    return status_response(service.appeal(subject_id, body.reason))


@router.get("/reverification", response_model=ReverificationResponse)
def reverification(
    institution: str = Query(..., min_length=2, max_length=200),
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    return ReverificationResponse(
        institution=institution,
        needs_reverification=service.needs_reverification(subject_id, institution),
    )


@router.get("/grants", response_model=ActiveGrantsResponse)
def active_grants(
    subject_id: str = Depends(require_subject),
    service: VerificationService = Depends(get_service),
):
    """The caller's active, unexpired verifications, newest first."""
    grants = [
        GrantModel(
            request_id=g.request_id,
            institution=g.institution,
            institution_key=g.institution_key,
            verified_at=g.verified_at,
            expires_at=g.expires_at,
        )
        for g in service.active_grants(subject_id)
    ]
    return ActiveGrantsResponse(grants=grants, count=len(grants))
