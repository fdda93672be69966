"""
Error types and error logging for moments.

Every failure a caller can act on is a ``JournalError`` subclass. The CLI
logs full stack traces to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional


class JournalError(Exception):
    """Base class for all moments errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(JournalError, ValueError):
    """Bad input: unknown quality, malformed date, empty required field."""


class InvalidQualityError(ValidationError):
    """A quality tag outside the taxonomy, or a malformed quality value."""

    def __init__(self, tag: Any, message: Optional[str] = None):
        self.tag = tag
        super().__init__(message or f"invalid quality: {tag!r}")


class NotFoundError(JournalError, KeyError):
    """One or more record ids do not exist."""

    def __init__(self, ids: Iterable[str] | str, message: Optional[str] = None):
        self.ids = [ids] if isinstance(ids, str) else list(ids)
        super().__init__(message or f"No record found with ID: {', '.join(self.ids)}")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return self.args[0]


class AlreadyReleasedError(JournalError):
    """The record existed but has been deleted."""

    def __init__(self, id: str):
        self.id = id
        super().__init__(f"Record {id} has already been released")


class ProviderUnavailableError(JournalError):
    """The embedding provider could not produce a vector (network, timeout, model)."""


class StoreUnavailableError(JournalError):
    """The vector store could not be reached."""


class SchemaError(JournalError):
    """Vector dimensionality does not match the store."""


# ---------------------------------------------------------------------------
# Error log
# ---------------------------------------------------------------------------

ERROR_LOG_FILENAME = "moments-errors.log"


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting MOMENTS_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / ERROR_LOG_FILENAME
    store = os.environ.get("MOMENTS_STORE_PATH")
    if store:
        return Path(store) / ERROR_LOG_FILENAME
    return Path.home() / ".moments" / ERROR_LOG_FILENAME


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory; defaults to the environment or ~/.moments

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n")
            f.write(f"[{timestamp}] {type(exc).__name__}")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
