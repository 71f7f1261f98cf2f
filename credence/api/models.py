"""Pydantic request/response models for the Credence API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Submission and status
# ---------------------------------------------------------------------------

class SubmitResponse(BaseModel):
    request_id: str
    status: str = "PENDING"
    message: str = "Document received. Verification is in progress."


class ProgressModel(BaseModel):
    stage: str
    percentage: int = Field(..., ge=0, le=100)
    message: str | None = None
    error_message: str | None = None
    updated_at: datetime


class MismatchModel(BaseModel):
    field: str
    user_value: str | int | None = None
    ocr_value: str | int | None = None
    reason: str
    similarity: float = 0.0


class StatusResponse(BaseModel):
    request_id: str
    status: str
    is_terminal: bool = False
    total_attempts: int
    progress: ProgressModel | None = None
    match_score: int | None = None
    mismatches: list[MismatchModel] = []
    error_message: str | None = None
    expires_at: datetime | None = None
    document_type: str | None = None
    review_notes: str | None = None
    created_at: datetime
    updated_at: datetime


class AttemptModel(BaseModel):
    attempt_number: int
    status: str
    match_score: int | None = None
    failure_reason: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class HistoryResponse(BaseModel):
    attempts: list[AttemptModel] = []


class AppealRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)


class ReverificationResponse(BaseModel):
    institution: str
    needs_reverification: bool


class GrantModel(BaseModel):
    request_id: str
    institution: str
    institution_key: str
    verified_at: datetime
    expires_at: datetime


class ActiveGrantsResponse(BaseModel):
    grants: list[GrantModel] = []
    count: int = 0


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

class PendingRequestModel(BaseModel):
    request_id: str
    subject_id: str
    institution: str
    claimed: dict
    extracted: dict | None = None
    match_score: int | None = None
    mismatches: list[MismatchModel] = []
    total_attempts: int = 0
    error_message: str | None = None
    appeal_reason: str | None = None
    updated_at: datetime | None = None


class PendingListResponse(BaseModel):
    requests: list[PendingRequestModel] = []
    count: int = 0


class ReviewRequest(BaseModel):
    decision: str
    notes: str = Field(default="", max_length=2000)

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: str) -> str:
        value = v.strip().upper()
        if value not in {"APPROVED", "REJECTED"}:
            raise ValueError("Decision must be APPROVED or REJECTED.")
        return value


# ---------------------------------------------------------------------------
# Jobs and health
# ---------------------------------------------------------------------------

class SweepResponse(BaseModel):
    deactivated: int


class RecoverStalledResponse(BaseModel):
    recovered: int


class HealthResponse(BaseModel):
    status: str = "healthy"
    database_connected: bool = False
    extractor_available: bool = False
    extractor: str = ""
    scheduler_running: bool = False
    version: str = ""
