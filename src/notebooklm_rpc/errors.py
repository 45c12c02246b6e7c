"""Error taxonomy for the NotebookLM RPC client.

Every error raised on purpose by this package derives from NotebookLMError and
carries an ErrorKind, so callers can branch on ``err.kind`` instead of walking
the class hierarchy.
"""

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger("notebooklm_rpc.errors")


class ErrorKind(str, Enum):
    """Category codes surfaced to users."""

    AUTH = "AUTH_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    SECURITY = "SECURITY_ERROR"
    TIMEOUT = "TIMEOUT_ERROR"
    SESSION = "SESSION_ERROR"
    BROWSER = "BROWSER_ERROR"
    UNEXPECTED = "UNEXPECTED_ERROR"


class NotebookLMError(Exception):
    """Base class for all package errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def code(self) -> str:
        return self.kind.value


class AuthenticationError(NotebookLMError):
    """No, expired or rejected credentials (HTTP 401/403 or RPC Error 16)."""

    kind = ErrorKind.AUTH


class ValidationError(NotebookLMError):
    """Malformed input or an unexpected non-2xx response."""

    kind = ErrorKind.VALIDATION


class SecurityError(NotebookLMError):
    """Encryption, key storage or file permission failure."""

    kind = ErrorKind.SECURITY


class RequestTimeoutError(NotebookLMError, TimeoutError):
    """A request deadline was exceeded. Never retried automatically."""

    kind = ErrorKind.TIMEOUT


class SessionError(NotebookLMError):
    """Unknown session, missing page binding, or session capacity reached."""

    kind = ErrorKind.SESSION


class BrowserError(NotebookLMError):
    """The page-automation backend failed."""

    kind = ErrorKind.BROWSER


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Build the short, categorized error payload shown to users.

    Package errors keep their message. Anything else is reported generically;
    the traceback goes to the log, not to the caller.
    """
    if isinstance(exc, NotebookLMError):
        if exc.cause is not None:
            logger.debug(f"{exc.code}: {exc.message}", exc_info=exc.cause)
        return {"error": exc.message, "code": exc.code}

    logger.error(f"Unexpected error: {exc!r}", exc_info=exc)
    return {
        "error": f"Unexpected error: {type(exc).__name__}",
        "code": ErrorKind.UNEXPECTED.value,
    }
