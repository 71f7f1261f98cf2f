"""
Verification Models

SQLAlchemy tables for verification requests, their attempts and progress
events, the time-bounded grants they produce, and the append-only audit log.

Architecture:
- One request row per subject, restarted on re-submission
- One attempt row per submission cycle
- Grants are separate from requests (a request may produce many grants over time)
- Audit rows are insert-only; the ORM refuses updates and deletes
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base, relationship

from credence.errors import StateError

# SQLAlchemy declarative base
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class VerificationRequest(Base):
    """A subject's verification request, re-used across attempts."""

    __tablename__ = "verification_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    subject_id = Column(String(128), nullable=False, unique=True, index=True)
    institution_key = Column(String(255), nullable=False)
    institution_name = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    total_attempts = Column(Integer, nullable=False, default=0)

    claimed_identity = Column(JSON, nullable=False)
    extracted_identity = Column(JSON)
    document_type = Column(String(40))
    document_confidence = Column(Float)
    document_sha256 = Column(String(64), index=True)

    match_score = Column(Integer)
    mismatches = Column(JSON)
    field_scores = Column(JSON)
    error_message = Column(Text)

    reviewer_id = Column(String(128))
    review_decision = Column(String(32))
    review_notes = Column(Text)
    reviewed_at = Column(DateTime)

    appeal_reason = Column(Text)
    appealed_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    attempts = relationship(
        "VerificationAttempt",
        back_populates="request",
        order_by="VerificationAttempt.attempt_number",
        cascade="all, delete-orphan",
    )
    progress = relationship(
        "VerificationProgress",
        back_populates="request",
        order_by="VerificationProgress.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<VerificationRequest(id={self.id}, subject={self.subject_id}, status={self.status})>"


class VerificationAttempt(Base):
    """One submission cycle of a request."""

    __tablename__ = "verification_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), ForeignKey("verification_requests.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    document_sha256 = Column(String(64), index=True)
    status = Column(String(32), nullable=False)
    match_score = Column(Integer)
    failure_reason = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    request = relationship("VerificationRequest", back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("request_id", "attempt_number", name="uq_attempt_number"),
    )


class VerificationProgress(Base):
    __tablename__ = "verification_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), ForeignKey("verification_requests.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    stage = Column(String(32), nullable=False)
    percentage = Column(Integer, nullable=False)
    message = Column(String(255))
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False)

    request = relationship("VerificationRequest", back_populates="progress")


class UserVerificationGrant(Base):
    """Durable, time-bounded outcome of an approval."""

    __tablename__ = "user_verification_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(128), nullable=False)
    institution_key = Column(String(255), nullable=False)
    institution_name = Column(String(255), nullable=False)
    request_id = Column(String(36), ForeignKey("verification_requests.id"), nullable=False)
    verified_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime)
    deactivation_reason = Column(String(32))

    __table_args__ = (
        Index("idx_grant_subject_institution", "subject_id", "institution_key"),
        Index("idx_grant_active_expiry", "is_active", "expires_at"),
    )


class AuditRecord(Base):
    """Append-only trace of every state-affecting event."""

    __tablename__ = "audit_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(128), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    details = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False)


@event.listens_for(AuditRecord, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise StateError("Audit records cannot be modified.", detail=f"update of audit record {target.id}")


@event.listens_for(AuditRecord, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise StateError("Audit records cannot be deleted.", detail=f"delete of audit record {target.id}")
