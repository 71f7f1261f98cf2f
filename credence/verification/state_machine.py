"""Lifecycle of a single verification request.

Every transition is applied inside the caller's session together with its
side effects (progress event, attempt bookkeeping, audit record, grant
changes), so they commit or roll back as one unit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from credence.identity.record import IdentityRecord, to_persisted
from credence.utils import utcnow
from credence.verification.models import (
    AuditRecord,
    UserVerificationGrant,
    VerificationAttempt,
    VerificationProgress,
    VerificationRequest,
)
from credence.verification.states import (
    PROGRESS_STAGES,
    RESUBMITTABLE_STATES,
    TERMINAL_STATES,
    Trigger,
    VerificationStatus,
    assert_transition,
)

logger = logging.getLogger(__name__)

S = VerificationStatus


def append_audit(
    session: Session,
    *,
    subject_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AuditRecord:
    record = AuditRecord(
        subject_id=subject_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details or {},
        created_at=now or utcnow(),
    )
    session.add(record)
    return record


def _audit_action(target: VerificationStatus, trigger: Trigger) -> str | None:
    if target is S.PENDING:
        return "VERIFICATION_SUBMITTED"
    if target is S.APPROVED:
        return "VERIFICATION_APPROVED"
    if target is S.REJECTED:
        return "VERIFICATION_REJECTED"
    if target is S.OCR_FAILED:
        return "VERIFICATION_OCR_FAILED"
    if target is S.MANUAL_REVIEW:
        return "VERIFICATION_APPEALED" if trigger is Trigger.SUBJECT else "VERIFICATION_ESCALATED"
    # EXPIRED is audited per grant by the sweeper
    return None


class VerificationStateMachine:
    """Applies transitions and their side effects to request rows."""

    def __init__(self, grant_validity_days: int = 365, clock: Callable[[], datetime] = utcnow) -> None:
        self.grant_validity_days = grant_validity_days
        self.clock = clock

    # -- queries ----------------------------------------------------------------

    @staticmethod
    def active_grant(session: Session, request: VerificationRequest) -> UserVerificationGrant | None:
        return session.execute(
            select(UserVerificationGrant)
            .where(
                UserVerificationGrant.request_id == request.id,
                UserVerificationGrant.is_active.is_(True),
            )
            .order_by(UserVerificationGrant.verified_at.desc())
        ).scalars().first()

    def can_resubmit(self, session: Session, request: VerificationRequest) -> bool:
        status = S(request.status)
        if status in RESUBMITTABLE_STATES:
            return True
        if status is S.APPROVED:
            return self.active_grant(session, request) is None
        return False

    @staticmethod
    def current_attempt(request: VerificationRequest) -> VerificationAttempt | None:
        return request.attempts[-1] if request.attempts else None

    # -- opening cycles ---------------------------------------------------------

    def open(
        self,
        session: Session,
        *,
        subject_id: str,
        claimed: IdentityRecord,
        institution_key: str,
        document_sha256: str,
    ) -> VerificationRequest:
        """Create the subject's first request in PENDING."""
        now = self.clock()
        request = VerificationRequest(
            subject_id=subject_id,
            institution_key=institution_key,
            institution_name=str(claimed.institution.value),
            status=S.PENDING.value,
            total_attempts=1,
            claimed_identity=to_persisted(claimed),
            document_sha256=document_sha256,
            created_at=now,
            updated_at=now,
        )
        session.add(request)
        session.flush()
        self._start_attempt(session, request, now)
        self._record_progress(session, request, S.PENDING, now)
        append_audit(
            session,
            subject_id=subject_id,
            action="VERIFICATION_SUBMITTED",
            entity_type="verification_request",
            entity_id=request.id,
            details={"attempt": 1},
            now=now,
        )
        logger.info("Opened verification request %s for subject %s", request.id, subject_id)
        return request

    def restart(
        self,
        session: Session,
        request: VerificationRequest,
        *,
        claimed: IdentityRecord,
        institution_key: str,
        document_sha256: str,
    ) -> VerificationRequest:
        """Restart a finished request for a new attempt (same request id)."""
        assert_transition(S(request.status), S.PENDING, Trigger.SUBJECT)
        request.total_attempts = (request.total_attempts or 0) + 1
        request.claimed_identity = to_persisted(claimed)
        request.institution_key = institution_key
        request.institution_name = str(claimed.institution.value)
        request.document_sha256 = document_sha256
        for column in (
            "extracted_identity", "document_type", "document_confidence", "match_score",
            "mismatches", "field_scores", "error_message", "reviewer_id", "review_decision",
            "review_notes", "reviewed_at", "appeal_reason", "appealed_at",
        ):
            setattr(request, column, None)
        self._start_attempt(session, request, self.clock())
        self.transition(session, request, S.PENDING, Trigger.SUBJECT, details={"attempt": request.total_attempts})
        return request

    # -- transitions ------------------------------------------------------------

    def transition(
        self,
        session: Session,
        request: VerificationRequest,
        target: VerificationStatus,
        trigger: Trigger,
        *,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Move *request* to *target*, raising StateError if not allowed."""
        current = S(request.status)
        assert_transition(current, target, trigger)
        now = self.clock()

        request.status = target.value
        request.updated_at = now
        if error_message is not None:
            request.error_message = error_message

        attempt = self.current_attempt(request)
        if attempt is not None:
            attempt.status = target.value
            if target in TERMINAL_STATES:
                attempt.completed_at = now
                attempt.match_score = request.match_score
                attempt.failure_reason = request.error_message

        self._record_progress(session, request, target, now, error_message=error_message)

        if target is S.APPROVED:
            self._issue_grant(session, request, now)

        action = _audit_action(target, trigger)
        if action is not None:
            audit_details = {
                "from": current.value,
                "to": target.value,
                "trigger": trigger.value,
                "attempt": request.total_attempts,
                "match_score": request.match_score,
            }
            audit_details.update(details or {})
            append_audit(
                session,
                subject_id=request.subject_id,
                action=action,
                entity_type="verification_request",
                entity_id=request.id,
                details=audit_details,
                now=now,
            )

        logger.info(
            "Request %s: %s -> %s (%s)", request.id, current.value, target.value, trigger.value,
        )

    # -- side effects -----------------------------------------------------------

    def _start_attempt(self, session: Session, request: VerificationRequest, now: datetime) -> None:
        session.add(VerificationAttempt(
            request=request,
            attempt_number=request.total_attempts,
            document_sha256=request.document_sha256,
            status=S.PENDING.value,
            started_at=now,
        ))

    @staticmethod
    def _record_progress(
        session: Session,
        request: VerificationRequest,
        status: VerificationStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> None:
        stage, percentage, message = PROGRESS_STAGES[status]
        session.add(VerificationProgress(
            request=request,
            attempt_number=request.total_attempts,
            stage=stage,
            percentage=percentage,
            message=message,
            error_message=error_message,
            created_at=now,
        ))

    def _issue_grant(self, session: Session, request: VerificationRequest, now: datetime) -> UserVerificationGrant:
        superseded = session.execute(
            select(UserVerificationGrant)
            .where(
                UserVerificationGrant.subject_id == request.subject_id,
                UserVerificationGrant.institution_key == request.institution_key,
                UserVerificationGrant.is_active.is_(True),
            )
            .with_for_update()
        ).scalars().all()
        for old in superseded:
            old.is_active = False
            old.deactivated_at = now
            old.deactivation_reason = "SUPERSEDED"
            append_audit(
                session,
                subject_id=request.subject_id,
                action="GRANT_SUPERSEDED",
                entity_type="verification_grant",
                entity_id=old.id,
                details={"request_id": request.id},
                now=now,
            )

        grant = UserVerificationGrant(
            subject_id=request.subject_id,
            institution_key=request.institution_key,
            institution_name=request.institution_name,
            request_id=request.id,
            verified_at=now,
            expires_at=now + timedelta(days=self.grant_validity_days),
            is_active=True,
        )
        session.add(grant)
        session.flush()
        logger.info(
            "Issued grant %s for subject %s (expires %s)", grant.id, request.subject_id, grant.expires_at.isoformat(),
        )
        return grant
