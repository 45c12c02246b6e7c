"""Freshness checks for stored Google cookies."""

import time
from dataclasses import dataclass

from .cookie_store import Cookie

# Refresh when the earliest persistent cookie expires within 2 hours
REFRESH_THRESHOLD = 2 * 60 * 60.0


@dataclass
class AuthState:
    is_valid: bool
    needs_refresh: bool
    expires_at: float | None = None  # epoch seconds

    def to_dict(self, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        result: dict = {
            "authenticated": self.is_valid,
            "needs_refresh": self.needs_refresh,
        }
        if self.expires_at:
            result["expires_at"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.expires_at))
            result["expires_in_minutes"] = round((self.expires_at - now) / 60)
        if not self.is_valid:
            result["message"] = "Not authenticated. Save cookies with save_auth_cookies first."
        return result


def unexpired_cookies(cookies: list[Cookie], now: float | None = None) -> list[Cookie]:
    """Drop persistent cookies that already expired. Session cookies always pass."""
    now = time.time() if now is None else now
    return [c for c in cookies if c.expires <= 0 or c.expires > now]


def is_session_fresh(cookies: list[Cookie], now: float | None = None) -> bool:
    if not cookies:
        return False
    now = time.time() if now is None else now
    persistent = [c.expires for c in cookies if c.expires > 0]
    if not persistent:
        return True
    return min(persistent) - now > REFRESH_THRESHOLD


def get_auth_state(cookies: list[Cookie], now: float | None = None) -> AuthState:
    now = time.time() if now is None else now
    valid = unexpired_cookies(cookies, now)
    if not valid:
        return AuthState(is_valid=False, needs_refresh=True)

    persistent = [c.expires for c in valid if c.expires > 0]
    return AuthState(
        is_valid=True,
        needs_refresh=not is_session_fresh(valid, now),
        expires_at=min(persistent) if persistent else None,
    )
