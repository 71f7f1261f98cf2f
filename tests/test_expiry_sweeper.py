"""Tests for grant expiry and the sweep schedule."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from credence.verification import ExpirySweeper, SweepScheduler, VerificationService, VerificationStatus
from credence.verification.models import AuditRecord, UserVerificationGrant

from tests.conftest import DeferredExecutor


@pytest.fixture
def approved(service, make_document, sample_claims):
    """Two subjects holding fresh grants."""
    service.submit("subject-1", sample_claims, make_document())
    service.submit("subject-2", sample_claims, make_document())
    return service


class TestSweep:
    def test_nothing_to_do_before_expiry(self, approved, clock):
        clock.advance(days=364)
        assert approved.sweep_expired() == 0

    def test_expired_grants_deactivated(self, approved, store, clock):
        clock.advance(days=366)
        assert approved.sweep_expired() == 2

        with store.session_scope() as session:
            grants = session.execute(select(UserVerificationGrant)).scalars().all()
            assert all(not g.is_active for g in grants)
            assert {g.deactivation_reason for g in grants} == {"EXPIRED"}
            assert all(g.deactivated_at == clock.now for g in grants)
            expired_audits = session.execute(
                select(AuditRecord).where(AuditRecord.action == "VERIFICATION_EXPIRED")
            ).scalars().all()
            assert {a.subject_id for a in expired_audits} == {"subject-1", "subject-2"}

        assert approved.get_status("subject-1").status is VerificationStatus.EXPIRED

    def test_second_sweep_is_a_no_op(self, approved, clock):
        clock.advance(days=366)
        approved.sweep_expired()
        assert approved.sweep_expired() == 0

    def test_only_past_expiry_is_swept(self, service, make_document, sample_claims, clock):
        service.submit("subject-1", sample_claims, make_document())
        clock.advance(days=200)
        service.submit("subject-2", sample_claims, make_document())
        clock.advance(days=200)

        assert service.sweep_expired() == 1
        assert service.get_status("subject-1").status is VerificationStatus.EXPIRED
        assert service.get_status("subject-2").status is VerificationStatus.APPROVED

    def test_standalone_sweeper(self, approved, store, clock):
        clock.advance(days=400)
        sweeper = ExpirySweeper(store, clock=clock)
        assert sweeper.sweep() == 2

    def test_standalone_stalled_recovery(self, store, extractor, clock, make_document, sample_claims):
        crashed = VerificationService(store, extractor, clock=clock, executor=DeferredExecutor())
        crashed.submit("subject-1", sample_claims, make_document())
        clock.advance(minutes=2)
        sweeper = ExpirySweeper(store, clock=clock, stalled_after_seconds=60)
        assert sweeper.recover_stalled() == 1
        assert sweeper.recover_stalled() == 0
        assert crashed.get_status("subject-1").status is VerificationStatus.OCR_FAILED


class TestNeedsReverification:
    def test_window_boundary(self, approved, clock):
        clock.advance(days=334)
        assert approved.needs_reverification("subject-1", "IIT Delhi") is False
        clock.advance(days=2)
        assert approved.needs_reverification("subject-1", "IIT Delhi") is True

    def test_after_expiry(self, approved, clock):
        clock.advance(days=366)
        approved.sweep_expired()
        assert approved.needs_reverification("subject-1", "IIT Delhi") is True

    def test_unknown_subject(self, service):
        assert service.needs_reverification("nobody", "IIT Delhi") is True


class TestActiveGrants:
    def test_lists_current_grant(self, approved, clock):
        grants = approved.active_grants("subject-1")
        assert len(grants) == 1
        assert grants[0].institution == "IIT Delhi"
        assert grants[0].verified_at == clock.now
        assert grants[0].expires_at == clock.now + timedelta(days=365)

    def test_newest_first(self, approved, store, clock):
        request_id = approved.get_status("subject-1").request_id
        with store.session_scope() as session:
            session.add(UserVerificationGrant(
                subject_id="subject-1",
                institution_key="university of mumbai",
                institution_name="University of Mumbai",
                request_id=request_id,
                verified_at=clock.now + timedelta(days=10),
                expires_at=clock.now + timedelta(days=375),
                is_active=True,
            ))
        clock.advance(days=20)
        assert [g.institution for g in approved.active_grants("subject-1")] == ["University of Mumbai", "IIT Delhi"]

    def test_expired_grant_excluded_before_sweep(self, approved, clock):
        clock.advance(days=366)
        assert approved.active_grants("subject-1") == []

    def test_deactivated_grant_excluded(self, approved, clock):
        clock.advance(days=366)
        approved.sweep_expired()
        clock.advance(days=-100)
        assert approved.active_grants("subject-1") == []

    def test_unknown_subject(self, service):
        assert service.active_grants("nobody") == []


class TestSweepScheduler:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            SweepScheduler(lambda: 0, 0)

    def test_runs_sweep_on_schedule(self):
        ran = threading.Event()

        def sweep():
            ran.set()
            return 0

        scheduler = SweepScheduler(sweep, interval_seconds=0.01)
        scheduler.start()
        try:
            assert ran.wait(timeout=5)
            assert scheduler.running
        finally:
            scheduler.stop()
        assert not scheduler.running

    def test_failed_sweep_does_not_stop_schedule(self):
        calls = []

        def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database away")
            return 0

        scheduler = SweepScheduler(sweep, interval_seconds=60)
        assert scheduler.run_once() is None
        assert scheduler.run_once() == 0

    def test_start_is_idempotent(self):
        scheduler = SweepScheduler(lambda: 0, interval_seconds=60)
        scheduler.start()
        first = scheduler._thread
        try:
            scheduler.start()
            assert scheduler._thread is first
        finally:
            scheduler.stop()
