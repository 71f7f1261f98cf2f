"""Shared test fixtures for the Credence test suite."""

import os
import tempfile
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta

import pytest

# Ensure test environment variables are set before any config import
os.environ.setdefault("CREDENCE_API_KEY", "test-api-key")
os.environ.setdefault("CREDENCE_REVIEWER_API_KEY", "test-reviewer-key")
os.environ.setdefault("CREDENCE_DEMO_MODE", "true")
os.environ.setdefault("CREDENCE_DATABASE_URL", "sqlite://")
os.environ.setdefault("CREDENCE_UPLOAD_DIR", tempfile.mkdtemp(prefix="credence-test-uploads-"))
os.environ.setdefault("CREDENCE_SWEEP_INTERVAL_SECONDS", "0")

from credence.extraction.documents import acquire_upload  # noqa: E402
from credence.extraction.ocr import OcrExtractor  # noqa: E402
from credence.verification.service import VerificationService  # noqa: E402
from credence.verification.store import VerificationStore  # noqa: E402


CERTIFICATE_TEXT = """\
INDIAN INSTITUTE OF TECHNOLOGY DELHI
DEGREE CERTIFICATE
Name: Asha Rao
Institution: Indian Institute of Technology Delhi
Programme: Bachelor of Technology in Computer Science and Engineering
Session: 2018 - 2022
"""

BOMBAY_CERTIFICATE_TEXT = """\
INDIAN INSTITUTE OF TECHNOLOGY BOMBAY
DEGREE CERTIFICATE
Name: Asha Rao
Institution: Indian Institute of Technology Bombay
Programme: Bachelor of Technology in Computer Science and Engineering
Session: 2018 - 2022
"""

STRANGER_CERTIFICATE_TEXT = """\
DEGREE CERTIFICATE
Name: Rahul Verma
Institution: Indian Institute of Technology Bombay
Programme: Master of Business Administration
Session: 2008 - 2010
"""


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeExtractor(OcrExtractor):
    """Returns canned text (or raises) instead of running OCR."""

    name = "fake"

    def __init__(self, text: str = CERTIFICATE_TEXT, error: Exception | None = None, available: bool = True):
        self.text = text
        self.error = error
        self.available = available
        self.calls: list = []
        self.closed = False

    def extract_text(self, document) -> str:
        self.calls.append(document)
        if self.error is not None:
            raise self.error
        return self.text

    def is_available(self) -> bool:
        return self.available

    def close(self) -> None:
        self.closed = True


class ImmediateExecutor(Executor):
    """Runs submitted work synchronously on the caller's thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class DeferredExecutor(Executor):
    """Queues submitted work until ``run_all()`` is called."""

    def __init__(self):
        self.pending: list = []

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> None:
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = datetime(2025, 1, 15, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_config():
    """Drop the cached config so env changes made by a test take effect."""
    import credence.config
    credence.config._config = None
    yield
    credence.config._config = None


@pytest.fixture
def sample_claims():
    """Claims that match CERTIFICATE_TEXT through aliases."""
    return {
        "full_name": "Asha Rao",
        "institution": "IIT Delhi",
        "program": "B.Tech CSE",
        "start_year": 2018,
        "end_year": 2022,
    }


@pytest.fixture
def certificate_text():
    return CERTIFICATE_TEXT


@pytest.fixture
def store():
    """Fresh in-memory verification store."""
    s = VerificationStore("sqlite://")
    s.init_schema()
    yield s
    s.dispose()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def service(store, extractor, clock):
    """Service whose pipeline runs synchronously inside ``submit``."""
    svc = VerificationService(store, extractor, clock=clock, executor=ImmediateExecutor())
    yield svc
    svc.shutdown()


@pytest.fixture
def make_document(tmp_path):
    """Factory for stored PDF uploads with distinct content."""
    counter = {"n": 0}

    def _make(content: bytes | None = None, filename: str = "degree.pdf"):
        counter["n"] += 1
        data = content if content is not None else b"%PDF-1.4\n% test document " + str(counter["n"]).encode()
        return acquire_upload(data, filename, tmp_path / "uploads", 10 * 1024 * 1024)

    return _make
