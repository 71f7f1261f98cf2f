"""Identity records and claim validation."""

from credence.identity.record import (
    IDENTITY_FIELDS,
    FieldSource,
    IdentityField,
    IdentityRecord,
    from_extraction,
    from_persisted,
    from_user_claims,
    to_persisted,
)
from credence.identity.claims import ClaimSubmission, parse_claims

__all__ = [
    "IDENTITY_FIELDS",
    "FieldSource",
    "IdentityField",
    "IdentityRecord",
    "from_extraction",
    "from_persisted",
    "from_user_claims",
    "to_persisted",
    "ClaimSubmission",
    "parse_claims",
]
