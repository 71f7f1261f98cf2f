"""
Configuration management for Credence

Loads settings from:
1. config/credence.yaml (or the file named by CREDENCE_CONFIG_FILE)
2. Environment variables prefixed with CREDENCE_ (and .env)
3. Default values
"""

import math
import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credence.identity.record import IDENTITY_FIELDS

load_dotenv()

_DEFAULT_YAML = Path(__file__).parent.parent / "config" / "credence.yaml"

DEFAULT_MATCH_WEIGHTS = {
    "full_name": 0.30,
    "institution": 0.25,
    "program": 0.20,
    "start_year": 0.125,
    "end_year": 0.125,
}

DEFAULT_MATCH_THRESHOLDS = {
    "full_name": 0.80,
    "institution": 0.80,
    "program": 0.70,
    "start_year": 1.0,
    "end_year": 1.0,
}


class Config(BaseSettings):
    """Central configuration for the verification engine."""

    model_config = SettingsConfigDict(
        env_prefix="CREDENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Storage ---
    database_url: str = Field(default="sqlite:///credence.db")
    upload_dir: Path = Field(default=Path("uploads"))
    max_document_bytes: int = Field(default=10 * 1024 * 1024, gt=0)

    # --- API ---
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: str = Field(default="")
    reviewer_api_key: str = Field(default="")
    cors_origins: str = "http://localhost:3000"  # Comma-separated string
    demo_mode: bool = False

    # --- Logging ---
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = None

    # --- Text extraction ---
    ocr_provider: Literal["tesseract", "digilocker"] = "tesseract"
    ocr_language: str = "eng"
    ocr_dpi: int = Field(default=300, ge=72, le=600)
    tesseract_cmd: Optional[str] = None

    # --- Matching ---
    match_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MATCH_WEIGHTS))
    match_thresholds: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MATCH_THRESHOLDS))
    alias_similarity: float = Field(default=0.9, ge=0.0, le=1.0)

    # --- Decision policy ---
    approve_threshold: int = Field(default=85, ge=0, le=100)
    reject_below: int = Field(default=50, ge=0, le=100)
    auto_attempt_limit: int = Field(default=3, ge=1)
    critical_fields: list[str] = Field(default_factory=lambda: ["full_name", "institution"])
    critical_mismatch_forces_review: bool = False
    matching_max_retries: int = Field(default=2, ge=0, le=10)

    # --- Grants ---
    grant_validity_days: int = Field(default=365, gt=0)
    reverification_window_days: int = Field(default=30, ge=0)

    # --- Workers and jobs ---
    pipeline_workers: int = Field(default=2, ge=1, le=32)
    sweep_interval_seconds: int = Field(default=0, ge=0)
    stalled_request_timeout_seconds: int = Field(default=900, ge=60)

    @field_validator("match_weights")
    @classmethod
    def validate_weights(cls, v: dict[str, float]) -> dict[str, float]:
        if set(v) != set(IDENTITY_FIELDS):
            raise ValueError(f"match_weights must define exactly: {', '.join(IDENTITY_FIELDS)}")
        if any(w < 0 for w in v.values()):
            raise ValueError("match_weights must be non-negative")
        if not math.isclose(sum(v.values()), 1.0, abs_tol=1e-9):
            raise ValueError("match_weights must sum to 1.0")
        return v

    @field_validator("match_thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[str, float]) -> dict[str, float]:
        unknown = set(v) - set(IDENTITY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown match_thresholds fields: {', '.join(sorted(unknown))}")
        if any(not 0.0 <= t <= 1.0 for t in v.values()):
            raise ValueError("match_thresholds must be between 0 and 1")
        merged = dict(DEFAULT_MATCH_THRESHOLDS)
        merged.update(v)
        return merged

    @field_validator("critical_fields")
    @classmethod
    def validate_critical_fields(cls, v: list[str]) -> list[str]:
        unknown = set(v) - set(IDENTITY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown critical_fields: {', '.join(sorted(unknown))}")
        return v

    @model_validator(mode="after")
    def validate_decision_bands(self) -> "Config":
        if self.reject_below > self.approve_threshold:
            raise ValueError("reject_below must not exceed approve_threshold")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = _DEFAULT_YAML) -> "Config":
        """Load configuration from YAML file, falling back to env/defaults."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            return cls()

        with open(yaml_path, encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)


# Global configuration instance
_config: Optional[Config] = None


def _yaml_path() -> Path:
    return Path(os.environ.get("CREDENCE_CONFIG_FILE", _DEFAULT_YAML))


def get_config() -> Config:
    """Get or create global configuration instance"""
    global _config
    if _config is None:
        _config = Config.from_yaml(_yaml_path())
    return _config


def reload_config(yaml_path: Optional[str | Path] = None) -> Config:
    """Reload configuration from file"""
    global _config
    _config = Config.from_yaml(yaml_path or _yaml_path())
    return _config
