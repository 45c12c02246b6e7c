"""Owner-only file helpers for credential storage.

Every access re-checks the mode and repairs drift, logging what it fixed.
"""

import logging
import os
from pathlib import Path

from .errors import SecurityError

logger = logging.getLogger("notebooklm_rpc.auth")

DIR_MODE = 0o700
FILE_MODE = 0o600


def verify_permissions(path: Path, expected: int) -> None:
    """Ensure ``path`` has exactly ``expected`` permission bits."""
    try:
        actual = path.stat().st_mode & 0o777
        if actual != expected:
            logger.warning(f"Fixing permissions on {path}: {oct(actual)} -> {oct(expected)}")
            os.chmod(path, expected)
    except OSError as e:
        raise SecurityError(f"Failed to verify permissions for: {path}", e)


def ensure_secure_directory(path: Path) -> None:
    try:
        path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    except OSError as e:
        raise SecurityError(f"Failed to create directory: {path}", e)
    verify_permissions(path, DIR_MODE)


def write_secure_file(path: Path, data: str) -> None:
    """Write text so the file is never readable by other users."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
    except OSError as e:
        raise SecurityError(f"Failed to write secure file: {path}", e)
    verify_permissions(path, FILE_MODE)


def read_secure_file(path: Path) -> str:
    verify_permissions(path, FILE_MODE)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SecurityError(f"Failed to read secure file: {path}", e)
