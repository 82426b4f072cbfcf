"""
Error types and error logging for cardrecall.

Lower layers (providers, index store) raise these; the retrieval and
assembly layer downgrades most of them to degraded-but-working behavior.
Only configuration failures and final generation failures reach the user.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class CardRecallError(Exception):
    """Base class for all cardrecall errors."""


class ConfigurationError(CardRecallError):
    """Fatal to the current request; never retried."""


class MissingCredentialError(ConfigurationError):
    """No API key available for a network call."""

    def __init__(self, message: str = "API key is not configured."):
        super().__init__(message)


class UnknownModelError(ConfigurationError):
    """The configured model name is empty or not accepted by the provider."""


class ProviderError(CardRecallError):
    """A remote provider call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    """A provider call timed out (transient)."""


class MalformedResponseError(ProviderError):
    """Provider answered, but the payload is unusable (wrong count, empty text)."""


class BlockedResponseError(ProviderError):
    """Provider refused the prompt."""

    def __init__(self, reason: str):
        super().__init__(f"Request was blocked by the provider: {reason}")
        self.reason = reason


class IndexStoreError(CardRecallError):
    """The local index database could not be read or written."""


class Cancelled(CardRecallError):
    """The request was cancelled. Not an error condition for the user."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting CARDRECALL_HOME."""
    home = os.environ.get("CARDRECALL_HOME")
    if home:
        return Path(home) / "cardrecall-errors.log"
    return Path.home() / ".cardrecall" / "cardrecall-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Error log is best effort
    return log_path
