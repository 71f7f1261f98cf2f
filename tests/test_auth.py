"""Tests for API authentication, identity headers, and rate limiting."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from credence.api.auth import _check_rate_limit, _rate_buckets, reset_rate_limits


@pytest.fixture(autouse=True)
def _enforce_auth(monkeypatch):
    """Auth-enforced environment (demo mode off) for every test here."""
    import credence.config
    monkeypatch.setenv("CREDENCE_DEMO_MODE", "false")
    monkeypatch.setenv("CREDENCE_API_KEY", "test-api-key")
    monkeypatch.setenv("CREDENCE_REVIEWER_API_KEY", "test-reviewer-key")
    credence.config._config = None
    reset_rate_limits()
    yield
    reset_rate_limits()
    credence.config._config = None


@pytest.fixture
def client(service):
    from credence.api.main import create_app
    with TestClient(create_app(service=service)) as c:
        yield c


SUBJECT = {"Authorization": "Bearer test-api-key", "X-Subject-ID": "subject-1"}
REVIEWER = {"Authorization": "Bearer test-reviewer-key", "X-Reviewer-ID": "reviewer-7"}


# ---- Subject routes ----

class TestSubjectAuth:
    def test_missing_key_rejected(self, client):
        response = client.get("/api/verification/status", headers={"X-Subject-ID": "subject-1"})
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_wrong_key_rejected(self, client):
        headers = {**SUBJECT, "Authorization": "Bearer wrong"}
        assert client.get("/api/verification/status", headers=headers).status_code == 401

    def test_reviewer_key_not_valid_for_subject_routes(self, client):
        headers = {**SUBJECT, "Authorization": "Bearer test-reviewer-key"}
        assert client.get("/api/verification/status", headers=headers).status_code == 401

    def test_valid_key_accepted(self, client):
        # No request yet, so the lookup itself 404s
        assert client.get("/api/verification/status", headers=SUBJECT).status_code == 404

    @pytest.mark.parametrize("subject_id", ["", "has space", "x" * 200, "<script>"])
    def test_invalid_subject_header(self, client, subject_id):
        headers = {**SUBJECT, "X-Subject-ID": subject_id}
        assert client.get("/api/verification/status", headers=headers).status_code == 401

    def test_unconfigured_key_is_server_error(self, client, monkeypatch):
        import credence.config
        monkeypatch.setenv("CREDENCE_API_KEY", "")
        credence.config._config = None
        response = client.get("/api/verification/status", headers=SUBJECT)
        assert response.status_code == 500


# ---- Reviewer and job routes ----

class TestReviewerAuth:
    def test_subject_key_not_valid_for_reviewer_routes(self, client):
        headers = {**REVIEWER, "Authorization": "Bearer test-api-key"}
        assert client.get("/api/verification/admin/pending", headers=headers).status_code == 401

    def test_reviewer_key_accepted(self, client):
        response = client.get("/api/verification/admin/pending", headers=REVIEWER)
        assert response.status_code == 200
        assert response.json()["count"] == 0

    def test_reviewer_identity_required(self, client):
        headers = {"Authorization": "Bearer test-reviewer-key"}
        assert client.get("/api/verification/admin/pending", headers=headers).status_code == 401

    def test_sweep_requires_reviewer_key(self, client):
        assert client.post("/api/jobs/sweep-expired").status_code == 401
        assert client.post(
            "/api/jobs/sweep-expired", headers={"Authorization": "Bearer test-api-key"},
        ).status_code == 401
        response = client.post(
            "/api/jobs/sweep-expired", headers={"Authorization": "Bearer test-reviewer-key"},
        )
        assert response.status_code == 200

    def test_health_needs_no_key(self, client):
        assert client.get("/api/health").status_code == 200


# ---- Startup ----

class TestStartup:
    def test_missing_api_key_aborts_startup(self, monkeypatch):
        import credence.config
        from credence.api.main import _build_lifespan

        monkeypatch.setenv("CREDENCE_API_KEY", "")
        credence.config._config = None
        lifespan = _build_lifespan(None)
        with pytest.raises(SystemExit):
            asyncio.run(lifespan(MagicMock()).__aenter__())


# ---- Rate limiting ----

class TestRateLimit:
    def test_allows_up_to_limit(self):
        for _ in range(3):
            _check_rate_limit("k", max_requests=3)
        assert len(_rate_buckets["k"]) == 3

    def test_rejects_over_limit(self):
        for _ in range(3):
            _check_rate_limit("k", max_requests=3)
        with pytest.raises(HTTPException) as exc_info:
            _check_rate_limit("k", max_requests=3)
        assert exc_info.value.status_code == 429

    def test_keys_are_independent(self):
        _check_rate_limit("a", max_requests=1)
        _check_rate_limit("b", max_requests=1)

    def test_window_expiry(self, monkeypatch):
        import credence.api.auth as auth

        now = [1000.0]
        monkeypatch.setattr(auth, "time", SimpleNamespace(monotonic=lambda: now[0]))
        _check_rate_limit("k", max_requests=1)
        now[0] += 61
        _check_rate_limit("k", max_requests=1)

    def test_idle_keys_dropped(self, monkeypatch):
        import credence.api.auth as auth

        now = [1000.0]
        monkeypatch.setattr(auth, "time", SimpleNamespace(monotonic=lambda: now[0]))
        for i in range(50):
            _check_rate_limit(f"subject:{i}", max_requests=5)
        assert len(_rate_buckets) == 50

        now[0] += 61
        _check_rate_limit("subject:new", max_requests=5)
        assert set(_rate_buckets) == {"subject:new"}

    def test_active_key_kept_through_purge(self, monkeypatch):
        import credence.api.auth as auth

        now = [1000.0]
        monkeypatch.setattr(auth, "time", SimpleNamespace(monotonic=lambda: now[0]))
        _check_rate_limit("busy", max_requests=2)
        now[0] += 30
        _check_rate_limit("busy", max_requests=2)
        now[0] += 31
        _check_rate_limit("other", max_requests=2)
        assert set(_rate_buckets) == {"busy", "other"}

    def test_status_polling_limit(self, client):
        codes = [client.get("/api/verification/status", headers=SUBJECT).status_code for _ in range(31)]
        assert codes[:30] == [404] * 30
        assert codes[30] == 429
        assert client.get("/api/verification/status", headers=SUBJECT).json()["error_code"] == "RATE_LIMITED"
