"""Relational store for requests, grants and audit records.

Thread Safety
-------------
SQLite connections are shared across worker threads (``check_same_thread``
is off, and in-memory databases use a single ``StaticPool`` connection), so
for SQLite every ``session_scope()`` holds a process-wide re-entrant lock.
``grant_lock`` makes approval's grant write and the expiry sweep mutually
exclusive inside this process; on databases that support it the grant rows
are additionally selected ``FOR UPDATE``. Always take ``grant_lock`` before
opening the session.

The module-level singleton follows the same double-checked locking as the
other process-wide resources (see ``credence.extraction.ocr``).
"""

from __future__ import annotations

import contextlib
import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from credence.config import get_config
from credence.utils import retry_with_backoff
from credence.verification.models import Base

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class VerificationStore:
    """Engine, session factory and locks for one database."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        kwargs: dict = {"echo": echo}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(database_url):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self.engine = create_engine(database_url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._sqlite_lock = threading.RLock()
        self.grant_lock = threading.RLock()
        logger.info("Verification store initialized: %s", self.engine.url.render_as_string(hide_password=True))

    @retry_with_backoff(max_retries=3, initial_delay=0.5, retryable=(OperationalError,))
    def init_schema(self) -> None:
        """Create all tables (no-op for existing ones)."""
        Base.metadata.create_all(self.engine)
        logger.info("Verification schema ready")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope: commit on success, roll back on error."""
        lock = self._sqlite_lock if self.is_sqlite else contextlib.nullcontext()
        with lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def ping(self) -> bool:
        """Cheap connectivity probe for health checks."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Database health check failed", exc_info=True)
            return False

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Verification store disposed")


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------

_store: VerificationStore | None = None
_lock = threading.Lock()


def get_store() -> VerificationStore:
    """Return the process-wide store for ``database_url`` (thread-safe)."""
    global _store
    if _store is None:
        with _lock:
            if _store is None:
                _store = VerificationStore(get_config().database_url)
    return _store


def close_store() -> None:
    """Dispose the process-wide store and release the singleton."""
    global _store
    with _lock:
        if _store is not None:
            _store.dispose()
            _store = None
