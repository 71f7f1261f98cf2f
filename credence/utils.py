"""
Utility functions for Credence

Provides logging setup, retry logic, clock and filesystem helpers
"""

import functools
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════

def setup_logging(log_level: str = "INFO", log_file: Optional[str | Path] = None) -> None:
    """Configure logging for Credence"""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    """Get logger instance for module"""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════
# RETRY LOGIC
# ═══════════════════════════════════════════════════════════════════

def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retryable: tuple[type[Exception], ...] = (Exception,),
):
    """Decorator for retry logic with exponential backoff.

    Only exceptions listed in ``retryable`` trigger another attempt; anything
    else propagates immediately.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception: Exception | None = None

            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retryable as exc:
                    last_exception = exc
                    if attempt < max_retries:
                        logger.warning(
                            "Retry %d/%d for %s after %s: sleeping %.1fs",
                            attempt, max_retries, func.__name__,
                            type(exc).__name__, delay,
                        )
                        time.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            "All %d attempts failed for %s: %s",
                            max_retries, func.__name__, exc,
                        )

            raise last_exception  # type: ignore[misc]
        return wrapper
    return decorator


# ═══════════════════════════════════════════════════════════════════
# CLOCK
# ═══════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form the store persists)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════
# DIRECTORY UTILITIES
# ═══════════════════════════════════════════════════════════════════

def ensure_dir(path: str | Path) -> Path:
    """Ensure directory exists"""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
