"""NotebookLM batchexecute RPC client.

Authenticated access to notebooklm.google.com without a UI: encrypted cookie
storage, CSRF/SAPISIDHASH headers, the chunked response codec, RPC and
streaming query clients, and a bounded browser session manager.
"""

from .errors import (
    AuthenticationError,
    BrowserError,
    ErrorKind,
    NotebookLMError,
    RequestTimeoutError,
    SecurityError,
    SessionError,
    ValidationError,
)
from .response_parser import NO_RESULT

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "NO_RESULT",
    "AuthenticationError",
    "BrowserError",
    "ErrorKind",
    "NotebookLMError",
    "RequestTimeoutError",
    "SecurityError",
    "SessionError",
    "ValidationError",
]
