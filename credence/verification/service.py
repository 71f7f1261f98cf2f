"""Verification service - the engine's public operations.

Submissions are accepted on the caller's thread; extraction, matching and
decisioning run on a worker pool so status polling never waits on them. At
most one pipeline run is in flight per request id.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credence.errors import (
    ConflictError,
    CredenceError,
    ExtractionError,
    MatchingFault,
    NotFoundError,
    StateError,
    ValidationError,
)
from credence.extraction.classifier import DocumentClassifier
from credence.extraction.documents import StoredDocument
from credence.extraction.ocr import OcrExtractor, get_extractor
from credence.extraction.pipeline import extract_identity
from credence.identity.claims import ClaimSubmission, parse_claims
from credence.identity.record import IdentityRecord, from_persisted, from_user_claims, to_persisted
from credence.matching.aliases import institution_key
from credence.matching.engine import MatchingEngine, MatchResult
from credence.utils import utcnow
from credence.verification.models import (
    VerificationAttempt,
    VerificationProgress,
    VerificationRequest,
)
from credence.verification.policy import DecisionPolicy
from credence.verification.state_machine import VerificationStateMachine
from credence.verification.states import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    Trigger,
    VerificationStatus,
)
from credence.verification.store import VerificationStore
from credence.verification.sweeper import ExpirySweeper, GrantView

logger = logging.getLogger(__name__)

S = VerificationStatus

_MAX_SUBJECT_LENGTH = 128
_MAX_NOTES_LENGTH = 2000
_MAX_APPEAL_LENGTH = 1000
_MIN_APPEAL_LENGTH = 10

MATCHING_FAULT_MESSAGE = "Automatic matching failed; the request was sent for manual review."
UNEXPECTED_FAILURE_MESSAGE = "Processing failed unexpectedly. Please resubmit your document."


# ---------------------------------------------------------------------------
# Read-only projections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressView:
    stage: str
    percentage: int
    message: str | None
    error_message: str | None
    updated_at: datetime


@dataclass(frozen=True)
class StatusView:
    request_id: str
    subject_id: str
    status: VerificationStatus
    total_attempts: int
    progress: ProgressView | None
    match_score: int | None
    mismatches: list[dict[str, Any]]
    error_message: str | None
    expires_at: datetime | None
    document_type: str | None
    review_notes: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


@dataclass(frozen=True)
class RequestSummary:
    request_id: str
    subject_id: str
    institution: str
    claimed: dict[str, Any]
    extracted: dict[str, Any] | None
    match_score: int | None
    mismatches: list[dict[str, Any]] = field(default_factory=list)
    total_attempts: int = 0
    error_message: str | None = None
    appeal_reason: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AttemptView:
    attempt_number: int
    status: VerificationStatus
    match_score: int | None
    failure_reason: str | None
    started_at: datetime
    completed_at: datetime | None


def _validate_subject(subject_id: str) -> str:
    subject_id = (subject_id or "").strip()
    if not subject_id or len(subject_id) > _MAX_SUBJECT_LENGTH:
        raise ValidationError("A valid subject identifier is required.")
    return subject_id


class VerificationService:
    """Submit, process, review and expire verification requests."""

    def __init__(
        self,
        store: VerificationStore,
        extractor: OcrExtractor | None = None,
        *,
        matching_engine: MatchingEngine | None = None,
        policy: DecisionPolicy | None = None,
        classifier: DocumentClassifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        grant_validity_days: int = 365,
        reverification_window_days: int = 30,
        stalled_request_timeout_seconds: int = 900,
        matching_max_retries: int = 2,
        max_workers: int = 2,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self._extractor = extractor
        self.matching_engine = matching_engine or MatchingEngine()
        self.policy = policy or DecisionPolicy()
        self.classifier = classifier or DocumentClassifier()
        self.clock = clock
        self.matching_max_retries = matching_max_retries
        self.state_machine = VerificationStateMachine(grant_validity_days=grant_validity_days, clock=clock)
        self.sweeper = ExpirySweeper(
            store,
            state_machine=self.state_machine,
            clock=clock,
            reverification_window_days=reverification_window_days,
            stalled_after_seconds=stalled_request_timeout_seconds,
        )

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="credence-pipeline",
        )
        self._inflight: set[str] = set()
        self._futures: dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, cfg, store: VerificationStore, extractor: OcrExtractor | None = None, **kwargs) -> "VerificationService":
        return cls(
            store,
            extractor,
            matching_engine=MatchingEngine.from_config(cfg),
            policy=DecisionPolicy.from_config(cfg),
            grant_validity_days=cfg.grant_validity_days,
            reverification_window_days=cfg.reverification_window_days,
            stalled_request_timeout_seconds=cfg.stalled_request_timeout_seconds,
            matching_max_retries=cfg.matching_max_retries,
            max_workers=cfg.pipeline_workers,
            **kwargs,
        )

    @property
    def extractor(self) -> OcrExtractor:
        return self._extractor or get_extractor()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        subject_id: str,
        claims: Mapping[str, Any] | ClaimSubmission,
        document: StoredDocument,
    ) -> str:
        """Accept claims plus one document and start processing.

        The document is discarded by the engine once extraction finishes, or
        immediately if the submission is refused.

        Raises:
            ValidationError: incomplete or invalid claims.
            ConflictError: an active request exists, the subject is already
                verified, or the document was used by another subject.
            CredenceError: the pipeline could not be started; the request is
                left in OCR_FAILED so the subject can resubmit.
        """
        try:
            request_id = self._open_cycle(subject_id, claims, document)
        except Exception:
            document.discard()
            raise
        try:
            self._schedule(request_id, document)
        except Exception as exc:
            logger.exception("Could not schedule pipeline run for request %s", request_id)
            document.discard()
            self._record_unexpected_failure(request_id)
            raise CredenceError(
                "Verification is temporarily unavailable.", detail=f"scheduling failed: {exc}",
            ) from exc
        return request_id

    def _open_cycle(self, subject_id: str, claims: Any, document: StoredDocument) -> str:
        if self._closed:
            raise CredenceError("Verification is temporarily unavailable.", detail="service shut down")
        subject_id = _validate_subject(subject_id)
        submission = parse_claims(claims)
        claimed = from_user_claims(submission)
        key = institution_key(submission.institution)

        try:
            with self.store.session_scope() as session:
                self._check_document_reuse(session, subject_id, document.sha256)
                request = session.execute(
                    select(VerificationRequest)
                    .where(VerificationRequest.subject_id == subject_id)
                    .with_for_update()
                ).scalars().first()

                if request is None:
                    request = self.state_machine.open(
                        session,
                        subject_id=subject_id,
                        claimed=claimed,
                        institution_key=key,
                        document_sha256=document.sha256,
                    )
                else:
                    self._check_resubmission(session, request)
                    self.state_machine.restart(
                        session,
                        request,
                        claimed=claimed,
                        institution_key=key,
                        document_sha256=document.sha256,
                    )
                return request.id
        except IntegrityError as exc:
            raise ConflictError(detail=f"concurrent submission for subject {subject_id}") from exc

    @staticmethod
    def _check_document_reuse(session: Session, subject_id: str, sha256: str) -> None:
        reused = session.execute(
            select(VerificationAttempt.id)
            .join(VerificationRequest, VerificationAttempt.request_id == VerificationRequest.id)
            .where(
                VerificationAttempt.document_sha256 == sha256,
                VerificationRequest.subject_id != subject_id,
            )
            .limit(1)
        ).first()
        if reused is not None:
            raise ConflictError(
                "This document has already been used for another account's verification.",
                detail=f"document {sha256[:12]} reused",
            )

    def _check_resubmission(self, session: Session, request: VerificationRequest) -> None:
        with self._inflight_lock:
            busy = request.id in self._inflight
        status = S(request.status)
        if busy or status in ACTIVE_STATES:
            raise ConflictError("A verification request is already in progress.")
        if status is S.MANUAL_REVIEW:
            raise ConflictError("Your request is awaiting manual review.")
        if not self.state_machine.can_resubmit(session, request):
            raise ConflictError("You already hold an active verification.")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _schedule(self, request_id: str, document: StoredDocument) -> None:
        with self._inflight_lock:
            if request_id in self._inflight:
                logger.warning("Request %s already has a pipeline run in flight", request_id)
                return
            self._inflight.add(request_id)
            self._futures = {k: f for k, f in self._futures.items() if not f.done()}
        try:
            future = self._executor.submit(self._run_pipeline, request_id, document)
        except Exception:
            with self._inflight_lock:
                self._inflight.discard(request_id)
            raise
        with self._inflight_lock:
            self._futures[request_id] = future

    def _run_pipeline(self, request_id: str, document: StoredDocument) -> None:
        try:
            self._process(request_id, document)
        except Exception:
            logger.exception("Pipeline run for request %s failed", request_id)
            self._record_unexpected_failure(request_id)
        finally:
            document.discard()
            with self._inflight_lock:
                self._inflight.discard(request_id)

    def _process(self, request_id: str, document: StoredDocument) -> None:
        with self.store.session_scope() as session:
            request = session.get(VerificationRequest, request_id)
            if request is None or request.status != S.PENDING.value:
                logger.warning("Request %s is not pending; skipping pipeline run", request_id)
                return
            self.state_machine.transition(session, request, S.PROCESSING_OCR, Trigger.PIPELINE)
            claimed = from_persisted(request.claimed_identity)
            total_attempts = request.total_attempts

        try:
            extraction = extract_identity(document, self.extractor, self.classifier)
        except ExtractionError as exc:
            logger.warning("Extraction failed for request %s: %s", request_id, exc.detail or exc.safe_message)
            with self.store.session_scope() as session:
                request = session.get(VerificationRequest, request_id)
                self.state_machine.transition(
                    session, request, S.OCR_FAILED, Trigger.PIPELINE, error_message=exc.safe_message,
                )
            return
        finally:
            document.discard()

        with self.store.session_scope() as session:
            request = session.get(VerificationRequest, request_id)
            request.extracted_identity = to_persisted(extraction.record)
            request.document_type = extraction.document_type.value
            request.document_confidence = extraction.type_confidence
            self.state_machine.transition(session, request, S.MATCHING, Trigger.PIPELINE)

        result = self._match_with_retries(request_id, claimed, extraction.record)

        with self.store.grant_lock, self.store.session_scope() as session:
            request = session.get(VerificationRequest, request_id)
            if result is None:
                self.state_machine.transition(
                    session, request, S.MANUAL_REVIEW, Trigger.PIPELINE,
                    error_message=MATCHING_FAULT_MESSAGE,
                    details={"reason": "MATCHING_FAULT"},
                )
                return

            request.match_score = result.score
            request.mismatches = [m.to_dict() for m in result.mismatches]
            request.field_scores = dict(result.field_scores)
            decision = self.policy.decide(result.score, result.mismatches, total_attempts)
            self.state_machine.transition(
                session, request, decision.status, Trigger.PIPELINE, details={"reason": decision.reason},
            )

    def _match_with_retries(
        self, request_id: str, claimed: IdentityRecord, extracted: IdentityRecord,
    ) -> MatchResult | None:
        attempts = self.matching_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.matching_engine.match(claimed, extracted)
            except MatchingFault as exc:
                logger.warning(
                    "Matching attempt %d/%d failed for request %s: %s",
                    attempt, attempts, request_id, exc.detail or exc.safe_message,
                )
        logger.error("Matching failed %d times for request %s; escalating to manual review", attempts, request_id)
        return None

    def _record_unexpected_failure(self, request_id: str) -> None:
        try:
            with self.store.session_scope() as session:
                request = session.get(VerificationRequest, request_id)
                if request is None:
                    return
                status = S(request.status)
                if status in (S.PENDING, S.PROCESSING_OCR):
                    self.state_machine.transition(
                        session, request, S.OCR_FAILED, Trigger.PIPELINE, error_message=UNEXPECTED_FAILURE_MESSAGE,
                    )
                elif status is S.MATCHING:
                    self.state_machine.transition(
                        session, request, S.MANUAL_REVIEW, Trigger.PIPELINE, error_message=MATCHING_FAULT_MESSAGE,
                    )
                else:
                    request.error_message = UNEXPECTED_FAILURE_MESSAGE
                    request.updated_at = self.clock()
        except Exception:
            logger.exception("Could not record pipeline failure for request %s", request_id)

    def wait_for(self, request_id: str, timeout: float | None = None) -> bool:
        """Block until the in-flight run for *request_id* finishes. True if done."""
        with self._inflight_lock:
            future = self._futures.get(request_id)
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        logger.info("Verification service shut down")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _by_subject(session: Session, subject_id: str) -> VerificationRequest:
        request = session.execute(
            select(VerificationRequest).where(VerificationRequest.subject_id == subject_id)
        ).scalars().first()
        if request is None:
            raise NotFoundError("No verification request found for this account.")
        return request

    def _status_view(self, session: Session, request: VerificationRequest) -> StatusView:
        latest = session.execute(
            select(VerificationProgress)
            .where(
                VerificationProgress.request_id == request.id,
                VerificationProgress.attempt_number == request.total_attempts,
            )
            .order_by(VerificationProgress.id.desc())
        ).scalars().first()
        progress = None
        if latest is not None:
            progress = ProgressView(
                stage=latest.stage,
                percentage=latest.percentage,
                message=latest.message,
                error_message=latest.error_message,
                updated_at=latest.created_at,
            )
        grant = self.state_machine.active_grant(session, request)
        return StatusView(
            request_id=request.id,
            subject_id=request.subject_id,
            status=S(request.status),
            total_attempts=request.total_attempts,
            progress=progress,
            match_score=request.match_score,
            mismatches=list(request.mismatches or []),
            error_message=request.error_message,
            expires_at=grant.expires_at if grant is not None else None,
            document_type=request.document_type,
            review_notes=request.review_notes,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )

    def get_status(self, subject_id: str) -> StatusView:
        """Current status and progress of the subject's request (non-blocking)."""
        with self.store.session_scope() as session:
            return self._status_view(session, self._by_subject(session, subject_id))

    def get_request_status(self, request_id: str, subject_id: str | None = None) -> StatusView:
        """Status by request id. With *subject_id*, other subjects' requests read as missing."""
        with self.store.session_scope() as session:
            request = session.get(VerificationRequest, request_id)
            if request is None or (subject_id is not None and request.subject_id != subject_id):
                raise NotFoundError("Verification request not found.")
            return self._status_view(session, request)

    def get_history(self, subject_id: str) -> list[AttemptView]:
        with self.store.session_scope() as session:
            request = self._by_subject(session, subject_id)
            return [
                AttemptView(
                    attempt_number=a.attempt_number,
                    status=S(a.status),
                    match_score=a.match_score,
                    failure_reason=a.failure_reason,
                    started_at=a.started_at,
                    completed_at=a.completed_at,
                )
                for a in request.attempts
            ]

    def list_pending_manual_review(self, limit: int = 100) -> list[RequestSummary]:
        """Requests awaiting a reviewer, oldest first."""
        with self.store.session_scope() as session:
            rows = session.execute(
                select(VerificationRequest)
                .where(VerificationRequest.status == S.MANUAL_REVIEW.value)
                .order_by(VerificationRequest.updated_at.asc())
                .limit(limit)
            ).scalars().all()
            return [
                RequestSummary(
                    request_id=r.id,
                    subject_id=r.subject_id,
                    institution=r.institution_name,
                    claimed=from_persisted(r.claimed_identity).values(),
                    extracted=from_persisted(r.extracted_identity).values() if r.extracted_identity else None,
                    match_score=r.match_score,
                    mismatches=list(r.mismatches or []),
                    total_attempts=r.total_attempts,
                    error_message=r.error_message,
                    appeal_reason=r.appeal_reason,
                    updated_at=r.updated_at,
                )
                for r in rows
            ]

    # ------------------------------------------------------------------
    # Reviewer and subject actions
    # ------------------------------------------------------------------

    def review(self, request_id: str, decision: str, reviewer_id: str, notes: str = "") -> StatusView:
        """Apply a reviewer decision to a MANUAL_REVIEW request.

        Raises:
            ValidationError: decision is not APPROVED or REJECTED, or no reviewer.
            NotFoundError: unknown request id.
            StateError: request is not awaiting manual review.
        """
        try:
            target = S(str(decision).upper())
        except ValueError as exc:
            raise ValidationError("Decision must be APPROVED or REJECTED.") from exc
        if target not in (S.APPROVED, S.REJECTED):
            raise ValidationError("Decision must be APPROVED or REJECTED.")
        reviewer_id = (reviewer_id or "").strip()
        if not reviewer_id:
            raise ValidationError("A reviewer identifier is required.")
        notes = (notes or "").strip()
        if len(notes) > _MAX_NOTES_LENGTH:
            raise ValidationError(f"Review notes must be at most {_MAX_NOTES_LENGTH} characters.")

        with self.store.grant_lock, self.store.session_scope() as session:
            request = session.get(VerificationRequest, request_id, with_for_update=True)
            if request is None:
                raise NotFoundError()
            if request.status != S.MANUAL_REVIEW.value:
                raise StateError("Only requests awaiting manual review can be reviewed.")
            request.reviewer_id = reviewer_id
            request.review_decision = target.value
            request.review_notes = notes or None
            request.reviewed_at = self.clock()
            self.state_machine.transition(
                session, request, target, Trigger.REVIEWER,
                details={"reviewer_id": reviewer_id, "notes": notes},
            )
            logger.info("Request %s reviewed by %s: %s", request_id, reviewer_id, target.value)
            return self._status_view(session, request)

    def appeal(self, subject_id: str, reason: str) -> StatusView:
        """Send the subject's REJECTED request back to manual review."""
        subject_id = _validate_subject(subject_id)
        reason = (reason or "").strip()
        if not _MIN_APPEAL_LENGTH <= len(reason) <= _MAX_APPEAL_LENGTH:
            raise ValidationError(
                f"Appeal reason must be between {_MIN_APPEAL_LENGTH} and {_MAX_APPEAL_LENGTH} characters."
            )

        with self.store.session_scope() as session:
            request = self._by_subject(session, subject_id)
            if request.status != S.REJECTED.value:
                raise StateError("Only rejected requests can be appealed.")
            request.appeal_reason = reason
            request.appealed_at = self.clock()
            self.state_machine.transition(
                session, request, S.MANUAL_REVIEW, Trigger.SUBJECT, details={"appeal_reason": reason},
            )
            return self._status_view(session, request)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        return self.sweeper.sweep()

    def needs_reverification(self, subject_id: str, institution: str) -> bool:
        return self.sweeper.needs_reverification(_validate_subject(subject_id), institution)

    def active_grants(self, subject_id: str) -> list[GrantView]:
        return self.sweeper.active_grants(_validate_subject(subject_id))

    def recover_stalled(self) -> int:
        """Close out requests stuck in PENDING, PROCESSING_OCR or MATCHING.

        Runs still in flight in this process are left alone.
        """
        with self._inflight_lock:
            inflight = set(self._inflight)
        return self.sweeper.recover_stalled(exclude=inflight)

    def run_maintenance(self) -> int:
        """Scheduled housekeeping: stalled-request recovery, then the expiry sweep."""
        self.recover_stalled()
        return self.sweep_expired()
