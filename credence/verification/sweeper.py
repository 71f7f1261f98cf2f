"""Expiry sweep and housekeeping for verification grants and requests.

``sweep()`` deactivates every active grant whose ``expires_at`` has passed,
in one transaction, writing one ``VERIFICATION_EXPIRED`` audit record per
grant. Running it again immediately finds nothing to do.

``recover_stalled()`` closes out requests left in an active state by a
crashed worker or process so their subjects are not locked out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Collection

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from credence.matching.aliases import institution_key
from credence.utils import retry_with_backoff, utcnow
from credence.verification.models import UserVerificationGrant, VerificationRequest
from credence.verification.state_machine import VerificationStateMachine, append_audit
from credence.verification.states import ACTIVE_STATES, Trigger, VerificationStatus
from credence.verification.store import VerificationStore

S = VerificationStatus

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "Processing did not complete. Please resubmit your document."
STALLED_REVIEW_MESSAGE = "Automatic processing did not complete; the request was sent for manual review."


@dataclass(frozen=True)
class GrantView:
    request_id: str
    institution: str
    institution_key: str
    verified_at: datetime
    expires_at: datetime


class ExpirySweeper:
    """Housekeeping over verification grants and in-flight requests."""

    def __init__(
        self,
        store: VerificationStore,
        *,
        state_machine: VerificationStateMachine | None = None,
        clock: Callable[[], datetime] = utcnow,
        reverification_window_days: int = 30,
        stalled_after_seconds: int = 900,
    ) -> None:
        self.store = store
        self.clock = clock
        self.state_machine = state_machine or VerificationStateMachine(clock=clock)
        self.reverification_window = timedelta(days=reverification_window_days)
        self.stalled_after = timedelta(seconds=stalled_after_seconds)

    @retry_with_backoff(max_retries=3, initial_delay=0.5, retryable=(OperationalError,))
    def sweep(self) -> int:
        """Deactivate expired grants. Returns the number deactivated."""
        now = self.clock()
        with self.store.grant_lock, self.store.session_scope() as session:
            expired = session.execute(
                select(UserVerificationGrant)
                .where(
                    UserVerificationGrant.is_active.is_(True),
                    UserVerificationGrant.expires_at < now,
                )
                .with_for_update()
            ).scalars().all()

            for grant in expired:
                grant.is_active = False
                grant.deactivated_at = now
                grant.deactivation_reason = "EXPIRED"
                append_audit(
                    session,
                    subject_id=grant.subject_id,
                    action="VERIFICATION_EXPIRED",
                    entity_type="verification_grant",
                    entity_id=grant.id,
                    details={
                        "request_id": grant.request_id,
                        "institution": grant.institution_name,
                        "expires_at": grant.expires_at.isoformat(),
                    },
                    now=now,
                )
                request = session.get(VerificationRequest, grant.request_id)
                if request is not None and request.status == VerificationStatus.APPROVED.value:
                    self.state_machine.transition(session, request, VerificationStatus.EXPIRED, Trigger.SWEEPER)

            count = len(expired)

        if count:
            logger.info("Expiry sweep deactivated %d grant(s)", count)
        else:
            logger.debug("Expiry sweep found no expired grants")
        return count

    def needs_reverification(self, subject_id: str, institution: str) -> bool:
        """True when the subject holds no usable grant for *institution*.

        That is: no grant at all, the latest grant is inactive, or it expires
        within the re-verification window.
        """
        now = self.clock()
        with self.store.session_scope() as session:
            latest = session.execute(
                select(UserVerificationGrant)
                .where(
                    UserVerificationGrant.subject_id == subject_id,
                    UserVerificationGrant.institution_key == institution_key(institution),
                )
                .order_by(UserVerificationGrant.verified_at.desc(), UserVerificationGrant.id.desc())
            ).scalars().first()

            if latest is None or not latest.is_active:
                return True
            return latest.expires_at - now < self.reverification_window

    def active_grants(self, subject_id: str) -> list[GrantView]:
        """The subject's active, unexpired grants, most recently verified first."""
        now = self.clock()
        with self.store.session_scope() as session:
            rows = session.execute(
                select(UserVerificationGrant)
                .where(
                    UserVerificationGrant.subject_id == subject_id,
                    UserVerificationGrant.is_active.is_(True),
                    UserVerificationGrant.expires_at > now,
                )
                .order_by(UserVerificationGrant.verified_at.desc(), UserVerificationGrant.id.desc())
            ).scalars().all()
            return [
                GrantView(
                    request_id=g.request_id,
                    institution=g.institution_name,
                    institution_key=g.institution_key,
                    verified_at=g.verified_at,
                    expires_at=g.expires_at,
                )
                for g in rows
            ]

    @retry_with_backoff(max_retries=3, initial_delay=0.5, retryable=(OperationalError,))
    def recover_stalled(self, exclude: Collection[str] = ()) -> int:
        """Close out requests stuck in an active state past the stall timeout.

        PENDING and PROCESSING_OCR requests become OCR_FAILED so the subject
        can resubmit. MATCHING requests already carry extracted fields and go
        to MANUAL_REVIEW. Ids in *exclude* are still running in this process.
        Returns the number of requests recovered.
        """
        now = self.clock()
        cutoff = now - self.stalled_after
        with self.store.session_scope() as session:
            stalled = session.execute(
                select(VerificationRequest)
                .where(
                    VerificationRequest.status.in_([s.value for s in ACTIVE_STATES]),
                    VerificationRequest.updated_at < cutoff,
                )
                .with_for_update()
            ).scalars().all()

            recovered = 0
            for request in stalled:
                if request.id in exclude:
                    continue
                details = {"reason": "STALLED", "stalled_since": request.updated_at.isoformat()}
                if request.status == S.MATCHING.value:
                    self.state_machine.transition(
                        session, request, S.MANUAL_REVIEW, Trigger.SWEEPER,
                        error_message=STALLED_REVIEW_MESSAGE, details=details,
                    )
                else:
                    self.state_machine.transition(
                        session, request, S.OCR_FAILED, Trigger.SWEEPER,
                        error_message=STALLED_MESSAGE, details=details,
                    )
                recovered += 1

        if recovered:
            logger.warning("Recovered %d stalled verification request(s)", recovered)
        return recovered
