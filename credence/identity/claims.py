"""Validation of subject-submitted identity claims.

Claims are checked here, before any ``IdentityRecord`` is built, so record
construction itself never has to deal with malformed input.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from credence.errors import ValidationError

MIN_YEAR = 1950
MAX_FUTURE_YEARS = 5

_NAME_RE = re.compile(r"^[^\d<>{}\[\]@#$%^*=+|\\~`]+$")


class ClaimSubmission(BaseModel):
    """The five identity fields a subject claims."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    full_name: str = Field(..., min_length=2, max_length=200)
    institution: str = Field(..., min_length=2, max_length=200)
    program: str = Field(..., min_length=2, max_length=200)
    start_year: int
    end_year: int

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError("Full name may only contain letters, spaces, hyphens, apostrophes and periods.")
        return " ".join(v.split())

    @field_validator("institution", "program")
    @classmethod
    def collapse_whitespace(cls, v: str) -> str:
        return " ".join(v.split())

    @model_validator(mode="after")
    def validate_years(self) -> "ClaimSubmission":
        current_year = date.today().year
        if not MIN_YEAR <= self.start_year <= current_year:
            raise ValueError(f"Start year must be between {MIN_YEAR} and {current_year}.")
        if self.end_year < self.start_year:
            raise ValueError("End year must not be before start year.")
        if self.end_year > current_year + MAX_FUTURE_YEARS:
            raise ValueError(f"End year must not be later than {current_year + MAX_FUTURE_YEARS}.")
        return self


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
    message = err.get("msg", "Invalid value").removeprefix("Value error, ")
    return f"{loc}: {message}" if loc else message


def parse_claims(data: Mapping[str, Any] | ClaimSubmission) -> ClaimSubmission:
    """Validate raw claim data, raising :class:`credence.errors.ValidationError`."""
    if isinstance(data, ClaimSubmission):
        return data
    try:
        return ClaimSubmission.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc), detail=str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise ValidationError("Claims must be an object with the five identity fields", detail=str(exc)) from exc
