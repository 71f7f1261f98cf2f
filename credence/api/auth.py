"""API authentication, rate limiting, and request tracing middleware.

Provides:
- Bearer token authentication via ``CREDENCE_API_KEY`` (subject routes) and
  ``CREDENCE_REVIEWER_API_KEY`` (reviewer and job routes)
- ``X-Subject-ID`` / ``X-Reviewer-ID`` identity headers set by the gateway
- Per-key in-memory sliding-window rate limiting
- ``X-Request-ID`` response header for tracing
- Request logging with hashed client IP
"""

import hashlib
import hmac
import logging
import re
import threading
import time
import uuid

from fastapi import Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from credence.config import get_config

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:@\-]{0,127}$")


def _validate_identifier(value: str | None, header: str) -> str:
    if not value or not _IDENTIFIER_RE.match(value):
        raise HTTPException(status_code=401, detail=f"Missing or invalid {header} header.")
    return value


def _check_key(credentials: HTTPAuthorizationCredentials | None, expected: str, setting: str) -> str:
    if not expected:
        raise HTTPException(
            status_code=500,
            detail=f"Server misconfiguration: {setting} is not set.",
        )
    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key. Provide 'Authorization: Bearer <key>' header.",
        )
    return credentials.credentials


# ---------------------------------------------------------------------------
# API key authentication
# ---------------------------------------------------------------------------

def require_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Validate the Bearer token against ``CREDENCE_API_KEY``.

    Skipped entirely when ``CREDENCE_DEMO_MODE=true``.
    """
    cfg = get_config()
    if cfg.demo_mode:
        return "demo"
    return _check_key(credentials, cfg.api_key, "CREDENCE_API_KEY")


def require_reviewer_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Validate the Bearer token against ``CREDENCE_REVIEWER_API_KEY``."""
    cfg = get_config()
    if cfg.demo_mode:
        return "demo-reviewer"
    return _check_key(credentials, cfg.reviewer_api_key, "CREDENCE_REVIEWER_API_KEY")


def require_subject(
    api_key: str = Depends(require_api_key),
    x_subject_id: str | None = Header(default=None),
) -> str:
    """Resolve the authenticated subject from ``X-Subject-ID``."""
    subject_id = _validate_identifier(x_subject_id, "X-Subject-ID")
    _check_rate_limit(f"subject:{subject_id}", max_requests=30)
    return subject_id


def require_reviewer(
    api_key: str = Depends(require_reviewer_key),
    x_reviewer_id: str | None = Header(default=None),
) -> str:
    """Resolve the authenticated reviewer from ``X-Reviewer-ID``."""
    reviewer_id = _validate_identifier(x_reviewer_id, "X-Reviewer-ID")
    _check_rate_limit(f"reviewer:{reviewer_id}", max_requests=120)
    return reviewer_id


# ---------------------------------------------------------------------------
# Rate limiting (in-memory sliding window)
# ---------------------------------------------------------------------------

_rate_buckets: dict[str, list[float]] = {}
_rate_lock = threading.Lock()
_last_purge = 0.0


def _purge_idle_buckets(now: float, window_seconds: int) -> None:
    """Drop keys with no request inside the window. Caller holds the lock."""
    idle = [key for key, bucket in _rate_buckets.items() if not bucket or now - bucket[-1] >= window_seconds]
    for key in idle:
        del _rate_buckets[key]


def _check_rate_limit(key: str, max_requests: int, window_seconds: int = 60):
    """Enforce a sliding-window rate limit per key.

    Raises 429 if the caller has exceeded ``max_requests`` within the
    rolling ``window_seconds`` window. Keys idle for a whole window are
    dropped, so the table only holds recently active callers.
    """
    global _last_purge
    with _rate_lock:
        now = time.monotonic()
        if now - _last_purge >= window_seconds:
            _purge_idle_buckets(now, window_seconds)
            _last_purge = now

        # Prune expired entries
        bucket = [ts for ts in _rate_buckets.get(key, ()) if now - ts < window_seconds]
        if len(bucket) >= max_requests:
            _rate_buckets[key] = bucket
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Max {max_requests} requests per {window_seconds}s.",
            )
        bucket.append(now)
        _rate_buckets[key] = bucket


def reset_rate_limits() -> None:
    global _last_purge
    with _rate_lock:
        _rate_buckets.clear()
        _last_purge = 0.0


def rate_limit_submit(subject_id: str = Depends(require_subject)) -> str:
    """Uploads are expensive: 5 submissions per subject per minute."""
    _check_rate_limit(f"submit:{subject_id}", max_requests=5)
    return subject_id


def rate_limit_jobs(api_key: str = Depends(require_reviewer_key)) -> str:
    _check_rate_limit(f"jobs:{api_key}", max_requests=10)
    return api_key


# ---------------------------------------------------------------------------
# Request-ID and logging middleware
# ---------------------------------------------------------------------------

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9\-]{8,64}$")


def _hash_ip(ip: str | None) -> str:
    """Return a one-way hash of the client IP for privacy-safe logging."""
    if not ip:
        return "unknown"
    return hashlib.sha256(ip.encode()).hexdigest()[:12]


async def request_logging_middleware(request: Request, call_next):
    """Add X-Request-ID header and log every request with timing."""
    incoming = request.headers.get("X-Request-ID", "")
    request_id = incoming if _REQUEST_ID_RE.match(incoming) else str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.monotonic()

    try:
        response: Response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error: request_id=%s path=%s", request_id, request.url.path)
        response = JSONResponse(
            status_code=500,
            content={
                "error": "An internal error occurred.",
                "error_code": "INTERNAL_ERROR",
                "request_id": request_id,
            },
        )

    elapsed_ms = int((time.monotonic() - start) * 1000)
    response.headers["X-Request-ID"] = request_id

    logger.info(
        "request_id=%s ip=%s method=%s path=%s status=%d duration_ms=%d",
        request_id,
        _hash_ip(request.client.host if request.client else None),
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response
