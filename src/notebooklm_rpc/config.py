"""Configuration for the NotebookLM RPC client.

Fixed protocol values live at module level. Tunables are collected in
Settings, which reads NOTEBOOKLM_* environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ValidationError

BASE_URL = "https://notebooklm.google.com"
BATCHEXECUTE_URL = f"{BASE_URL}/_/LabsTailwindUi/data/batchexecute"
QUERY_URL = (
    f"{BASE_URL}/_/LabsTailwindUi/data/"
    "google.internal.labs.tailwind.orchestration.v1.LabsTailwindOrchestrationService/GenerateFreeFormStreamed"
)

# Navigation is only ever allowed to these hosts
ALLOWED_DOMAINS = ("notebooklm.google.com",)
# Cookies outside these domains are dropped on save and on load
ALLOWED_COOKIE_DOMAINS = (".google.com", "google.com", "notebooklm.google.com")

DEFAULT_BUILD_LABEL = "boq_labs-tailwind-frontend_20260108.06_p0"
CSRF_TOKEN_TTL = 5 * 60.0

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number (got {raw!r})")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer (got {raw!r})")


@dataclass
class Settings:
    """Runtime settings. Durations are in seconds."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".notebooklm-rpc")
    build_label: str = DEFAULT_BUILD_LABEL
    locale: str = "en"
    rpc_timeout: float = 60.0
    query_timeout: float = 120.0
    navigation_timeout: float = 30.0
    csrf_fetch_timeout: float = 15.0
    max_sessions: int = 5
    session_idle_timeout: float = 15 * 60.0
    cleanup_interval: float = 5 * 60.0
    keychain_service: str = "notebooklm-rpc"
    keychain_account: str = "encryption-key"

    @property
    def cookie_file(self) -> Path:
        return self.data_dir / "cookies.enc"

    @property
    def chrome_profile_dir(self) -> Path:
        return self.data_dir / "chrome-profile"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from NOTEBOOKLM_* environment variables."""
        defaults = cls()
        data_dir = os.environ.get("NOTEBOOKLM_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            build_label=os.environ.get("NOTEBOOKLM_BL", defaults.build_label),
            locale=os.environ.get("NOTEBOOKLM_HL", defaults.locale),
            rpc_timeout=_env_float("NOTEBOOKLM_RPC_TIMEOUT", defaults.rpc_timeout),
            query_timeout=_env_float("NOTEBOOKLM_QUERY_TIMEOUT", defaults.query_timeout),
            navigation_timeout=_env_float("NOTEBOOKLM_NAVIGATION_TIMEOUT", defaults.navigation_timeout),
            max_sessions=_env_int("NOTEBOOKLM_MAX_SESSIONS", defaults.max_sessions),
            session_idle_timeout=_env_float("NOTEBOOKLM_SESSION_IDLE_TIMEOUT", defaults.session_idle_timeout),
            cleanup_interval=_env_float("NOTEBOOKLM_CLEANUP_INTERVAL", defaults.cleanup_interval),
        )
