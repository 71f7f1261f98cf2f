"""Tests for request states, transitions and their side effects."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from credence.errors import StateError
from credence.identity import from_user_claims
from credence.matching import institution_key
from credence.verification.models import (
    AuditRecord,
    UserVerificationGrant,
    VerificationProgress,
    VerificationRequest,
)
from credence.verification.state_machine import VerificationStateMachine, append_audit
from credence.verification.states import (
    PROGRESS_STAGES,
    Trigger,
    VerificationStatus,
    assert_transition,
    can_transition,
)

S = VerificationStatus


@pytest.fixture
def machine(clock):
    return VerificationStateMachine(grant_validity_days=365, clock=clock)


@pytest.fixture
def opened(store, machine, sample_claims):
    """A PENDING request; returns its id."""
    with store.session_scope() as session:
        request = machine.open(
            session,
            subject_id="subject-1",
            claimed=from_user_claims(sample_claims),
            institution_key=institution_key(sample_claims["institution"]),
            document_sha256="a" * 64,
        )
        return request.id


def _walk(store, machine, request_id, *targets, trigger=Trigger.PIPELINE):
    with store.session_scope() as session:
        request = session.get(VerificationRequest, request_id)
        for target in targets:
            machine.transition(session, request, target, trigger)


def _actions(store):
    with store.session_scope() as session:
        return [a.action for a in session.execute(select(AuditRecord).order_by(AuditRecord.id)).scalars()]


class TestTransitionTable:
    @pytest.mark.parametrize("current,target,trigger", [
        (S.PENDING, S.PROCESSING_OCR, Trigger.PIPELINE),
        (S.PROCESSING_OCR, S.MATCHING, Trigger.PIPELINE),
        (S.PROCESSING_OCR, S.OCR_FAILED, Trigger.PIPELINE),
        (S.MATCHING, S.APPROVED, Trigger.PIPELINE),
        (S.MATCHING, S.REJECTED, Trigger.PIPELINE),
        (S.MATCHING, S.MANUAL_REVIEW, Trigger.PIPELINE),
        (S.MANUAL_REVIEW, S.APPROVED, Trigger.REVIEWER),
        (S.MANUAL_REVIEW, S.REJECTED, Trigger.REVIEWER),
        (S.APPROVED, S.EXPIRED, Trigger.SWEEPER),
        (S.REJECTED, S.MANUAL_REVIEW, Trigger.SUBJECT),
        (S.OCR_FAILED, S.PENDING, Trigger.SUBJECT),
        # stalled-request recovery
        (S.PENDING, S.OCR_FAILED, Trigger.SWEEPER),
        (S.PROCESSING_OCR, S.OCR_FAILED, Trigger.SWEEPER),
        (S.MATCHING, S.MANUAL_REVIEW, Trigger.SWEEPER),
    ])
    def test_allowed(self, current, target, trigger):
        assert can_transition(current, target, trigger)

    @pytest.mark.parametrize("current,target,trigger", [
        (S.PENDING, S.APPROVED, Trigger.PIPELINE),
        (S.MANUAL_REVIEW, S.APPROVED, Trigger.PIPELINE),
        (S.APPROVED, S.EXPIRED, Trigger.PIPELINE),
        (S.MATCHING, S.PENDING, Trigger.SUBJECT),
        (S.MANUAL_REVIEW, S.PENDING, Trigger.SUBJECT),
        (S.EXPIRED, S.APPROVED, Trigger.REVIEWER),
        (S.MATCHING, S.APPROVED, Trigger.SWEEPER),
        (S.PENDING, S.MANUAL_REVIEW, Trigger.SWEEPER),
    ])
    def test_refused(self, current, target, trigger):
        assert not can_transition(current, target, trigger)
        with pytest.raises(StateError):
            assert_transition(current, target, trigger)

    def test_every_state_has_progress(self):
        assert set(PROGRESS_STAGES) == set(S)
        assert PROGRESS_STAGES[S.OCR_FAILED][:2] == ("PROCESSING_OCR", 50)
        assert PROGRESS_STAGES[S.APPROVED][:2] == ("COMPLETE", 100)


class TestOpen:
    def test_open_creates_pending_request(self, store, opened):
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            assert request.status == "PENDING"
            assert request.total_attempts == 1
            assert len(request.attempts) == 1
            assert request.attempts[0].attempt_number == 1
            assert request.institution_key == institution_key("Indian Institute of Technology Delhi")
            progress = request.progress[-1]
            assert (progress.stage, progress.percentage) == ("UPLOAD", 25)
        assert _actions(store) == ["VERIFICATION_SUBMITTED"]


class TestTransitions:
    def test_progress_recorded_per_step(self, store, machine, opened):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING)
        with store.session_scope() as session:
            stages = [
                (p.stage, p.percentage)
                for p in session.execute(
                    select(VerificationProgress)
                    .where(VerificationProgress.request_id == opened)
                    .order_by(VerificationProgress.id)
                ).scalars()
            ]
        assert stages == [("UPLOAD", 25), ("PROCESSING_OCR", 50), ("MATCHING", 75)]

    def test_illegal_transition_leaves_request_untouched(self, store, machine, opened):
        with pytest.raises(StateError):
            _walk(store, machine, opened, S.APPROVED)
        with store.session_scope() as session:
            assert session.get(VerificationRequest, opened).status == "PENDING"

    def test_approval_issues_grant(self, store, machine, opened, clock):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.APPROVED)
        with store.session_scope() as session:
            grants = session.execute(select(UserVerificationGrant)).scalars().all()
            assert len(grants) == 1
            grant = grants[0]
            assert grant.is_active
            assert grant.verified_at == clock.now
            assert grant.expires_at == clock.now + timedelta(days=365)
            request = session.get(VerificationRequest, opened)
            assert request.attempts[-1].completed_at == clock.now
        assert _actions(store)[-1] == "VERIFICATION_APPROVED"

    def test_failure_records_error_on_attempt(self, store, machine, opened):
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            machine.transition(session, request, S.PROCESSING_OCR, Trigger.PIPELINE)
            machine.transition(session, request, S.OCR_FAILED, Trigger.PIPELINE, error_message="unreadable")
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            assert request.error_message == "unreadable"
            assert request.attempts[-1].failure_reason == "unreadable"
            assert request.progress[-1].error_message == "unreadable"
        assert _actions(store)[-1] == "VERIFICATION_OCR_FAILED"

    def test_appeal_audited_as_appeal(self, store, machine, opened):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.REJECTED)
        _walk(store, machine, opened, S.MANUAL_REVIEW, trigger=Trigger.SUBJECT)
        assert _actions(store)[-1] == "VERIFICATION_APPEALED"

    def test_escalation_audited(self, store, machine, opened):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.MANUAL_REVIEW)
        assert _actions(store)[-1] == "VERIFICATION_ESCALATED"


class TestRestart:
    def test_restart_reuses_request(self, store, machine, opened, sample_claims):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.REJECTED)
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            machine.restart(
                session,
                request,
                claimed=from_user_claims(sample_claims),
                institution_key=institution_key(sample_claims["institution"]),
                document_sha256="b" * 64,
            )
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            assert request.status == "PENDING"
            assert request.total_attempts == 2
            assert [a.attempt_number for a in request.attempts] == [1, 2]
            assert request.attempts[0].status == "REJECTED"
            assert request.match_score is None

    def test_restart_refused_while_active(self, store, machine, opened, sample_claims):
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            with pytest.raises(StateError):
                machine.restart(
                    session,
                    request,
                    claimed=from_user_claims(sample_claims),
                    institution_key="k",
                    document_sha256="c" * 64,
                )

    def test_reapproval_supersedes_previous_grant(self, store, machine, opened, sample_claims, clock):
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.APPROVED)
        clock.advance(days=400)
        with store.session_scope() as session:
            request = session.get(VerificationRequest, opened)
            machine.restart(
                session,
                request,
                claimed=from_user_claims(sample_claims),
                institution_key=institution_key(sample_claims["institution"]),
                document_sha256="d" * 64,
            )
        _walk(store, machine, opened, S.PROCESSING_OCR, S.MATCHING, S.APPROVED)
        with store.session_scope() as session:
            grants = session.execute(select(UserVerificationGrant).order_by(UserVerificationGrant.id)).scalars().all()
            assert [g.is_active for g in grants] == [False, True]
            assert grants[0].deactivation_reason == "SUPERSEDED"
        assert "GRANT_SUPERSEDED" in _actions(store)


class TestAudit:
    def test_audit_records_are_immutable(self, store, opened):
        with pytest.raises(StateError):
            with store.session_scope() as session:
                record = session.execute(select(AuditRecord)).scalars().first()
                record.action = "TAMPERED"

    def test_audit_records_cannot_be_deleted(self, store, opened):
        with pytest.raises(StateError):
            with store.session_scope() as session:
                session.delete(session.execute(select(AuditRecord)).scalars().first())

    def test_append_audit(self, store, clock):
        with store.session_scope() as session:
            append_audit(
                session,
                subject_id="s",
                action="CUSTOM",
                entity_type="verification_request",
                entity_id=42,
                details={"k": "v"},
                now=clock.now,
            )
        with store.session_scope() as session:
            record = session.execute(select(AuditRecord)).scalars().one()
            assert record.entity_id == "42"
            assert record.details == {"k": "v"}
