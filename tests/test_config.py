"""Tests for settings loading (defaults, environment, YAML overlay)."""

import pytest
from pydantic import ValidationError

from credence.config import DEFAULT_MATCH_WEIGHTS, Config, get_config, reload_config


class TestDefaults:
    def test_decision_bands(self):
        cfg = Config()
        assert cfg.approve_threshold == 85
        assert cfg.reject_below == 50
        assert cfg.auto_attempt_limit == 3
        assert cfg.critical_mismatch_forces_review is False

    def test_grants(self):
        cfg = Config()
        assert cfg.grant_validity_days == 365
        assert cfg.reverification_window_days == 30

    def test_stalled_request_timeout(self):
        assert Config().stalled_request_timeout_seconds == 900

    def test_weights_sum_to_one(self):
        assert abs(sum(Config().match_weights.values()) - 1.0) < 1e-9

    def test_document_limit(self):
        assert Config().max_document_bytes == 10 * 1024 * 1024


class TestEnvironment:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CREDENCE_APPROVE_THRESHOLD", "90")
        monkeypatch.setenv("CREDENCE_PIPELINE_WORKERS", "4")
        cfg = Config()
        assert cfg.approve_threshold == 90
        assert cfg.pipeline_workers == 4

    def test_cors_origins_list(self, monkeypatch):
        monkeypatch.setenv("CREDENCE_CORS_ORIGINS", "https://a.example, https://b.example,")
        assert Config().cors_origins_list == ["https://a.example", "https://b.example"]

    def test_get_config_is_cached(self):
        assert get_config() is get_config()


class TestValidation:
    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            Config(match_weights={**DEFAULT_MATCH_WEIGHTS, "full_name": 0.9})

    def test_weights_must_cover_fields(self):
        with pytest.raises(ValidationError):
            Config(match_weights={"full_name": 1.0})

    def test_unknown_threshold_field(self):
        with pytest.raises(ValidationError):
            Config(match_thresholds={"roll_number": 0.5})

    def test_partial_thresholds_merged_with_defaults(self):
        cfg = Config(match_thresholds={"program": 0.6})
        assert cfg.match_thresholds["program"] == 0.6
        assert cfg.match_thresholds["full_name"] == 0.8

    def test_inverted_bands_rejected(self):
        with pytest.raises(ValidationError):
            Config(approve_threshold=40, reject_below=60)

    def test_stalled_timeout_floor(self):
        with pytest.raises(ValidationError):
            Config(stalled_request_timeout_seconds=5)

    def test_unknown_critical_field(self):
        with pytest.raises(ValidationError):
            Config(critical_fields=["roll_number"])


class TestYamlOverlay:
    def test_yaml_values_loaded(self, tmp_path):
        path = tmp_path / "credence.yaml"
        path.write_text(
            "approve_threshold: 80\n"
            "critical_fields: [full_name]\n"
            "match_thresholds:\n"
            "  institution: 0.85\n",
            encoding="utf-8",
        )
        cfg = reload_config(path)
        assert cfg.approve_threshold == 80
        assert cfg.critical_fields == ["full_name"]
        assert cfg.match_thresholds["institution"] == 0.85
        assert get_config() is cfg

    def test_missing_file_falls_back(self, tmp_path):
        cfg = Config.from_yaml(tmp_path / "absent.yaml")
        assert cfg.approve_threshold == 85

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert Config.from_yaml(path).reject_below == 50

    def test_config_file_env(self, tmp_path, monkeypatch):
        path = tmp_path / "alt.yaml"
        path.write_text("grant_validity_days: 180\n", encoding="utf-8")
        monkeypatch.setenv("CREDENCE_CONFIG_FILE", str(path))
        assert get_config().grant_validity_days == 180
