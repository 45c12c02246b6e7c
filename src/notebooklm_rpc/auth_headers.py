"""Authentication headers for NotebookLM requests.

Two credentials are needed besides the cookies themselves:

* the CSRF token (``SNlM0e``) embedded in the landing page HTML, sent as the
  ``at`` form field; cached for 5 minutes;
* the ``SAPISIDHASH`` Authorization header, derived from the SAPISID cookie.
"""

import hashlib
import logging
import re
import threading
import time
from typing import Callable

import httpx

from .config import BASE_URL, CSRF_TOKEN_TTL, USER_AGENT, Settings
from .cookie_store import Cookie, CookieStore
from .errors import AuthenticationError, RequestTimeoutError

logger = logging.getLogger("notebooklm_rpc.auth")

CSRF_PATTERNS = [
    re.compile(r'SNlM0e":"([^"]+)"'),
    re.compile(r"SNlM0e\\x22:\\x22([^\\]+)\\x22"),
    re.compile(r'"SNlM0e"\s*:\s*"([^"]+)"'),
]
BUILD_LABEL_PATTERN = re.compile(r'"cfb2h":"([^"]+)"')
SESSION_ID_PATTERN = re.compile(r'"FdrFJe":"([^"]+)"')

# Looked up in this order
SAPISID_COOKIE_NAMES = ("SAPISID", "__Secure-3PAPISID", "__Secure-1PAPISID")

# Browser-like headers for the landing page fetch
PAGE_FETCH_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

REAUTH_HINT = "Save fresh cookies with save_auth_cookies to re-authenticate."


def build_cookie_header(cookies: list[Cookie]) -> str:
    return "; ".join(f"{c.name}={c.value}" for c in cookies)


def compute_sapisid_hash(cookies: list[Cookie], now: float | None = None) -> str | None:
    """
    Compute the SAPISIDHASH value: ``{t}_{sha1(f"{t} {SAPISID} {origin}")}``.

    Returns None (and logs a warning) when no SAPISID-style cookie exists.
    """
    by_name = {}
    for cookie in cookies:
        by_name.setdefault(cookie.name, cookie)

    secret = next((by_name[name] for name in SAPISID_COOKIE_NAMES if name in by_name), None)
    if secret is None:
        logger.warning("SAPISID cookie not found, SAPISIDHASH header will be omitted")
        return None

    timestamp = int(time.time() if now is None else now)
    digest = hashlib.sha1(f"{timestamp} {secret.value} {BASE_URL}".encode("utf-8")).hexdigest()
    return f"{timestamp}_{digest}"


class AuthHeaders:
    """Builds request headers and owns the cached CSRF token."""

    def __init__(
        self,
        cookie_store: CookieStore,
        settings: Settings | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            cookie_store: Source of the Google cookies
            settings: Runtime settings (build label fallback, fetch timeout)
            http_client: Client used for the landing page fetch. When omitted a
                short-lived client is created for each fetch.
            clock: Monotonic clock used for token expiry
        """
        self.cookie_store = cookie_store
        self.settings = settings or Settings()
        self._http_client = http_client
        self._clock = clock

        self._lock = threading.Lock()
        self._csrf_token: str | None = None
        self._csrf_expiry = 0.0
        self._build_label: str | None = None
        self._session_id: str | None = None

    @property
    def build_label(self) -> str:
        """``bl`` URL parameter: scraped from the page, else the configured one."""
        return self._build_label or self.settings.build_label

    @property
    def session_id(self) -> str | None:
        """``f.sid`` URL parameter, known after the first page fetch."""
        return self._session_id

    def _load_cookies(self) -> list[Cookie]:
        cookies = self.cookie_store.load()
        if not cookies:
            raise AuthenticationError(f"No cookies available. {REAUTH_HINT}")
        return cookies

    def get_headers(self, cookies: list[Cookie] | None = None) -> dict[str, str]:
        """Return the full header set for a batchexecute or query request."""
        if cookies is None:
            cookies = self._load_cookies()
        elif not cookies:
            raise AuthenticationError(f"No cookies available. {REAUTH_HINT}")

        headers = {
            "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
            "Cookie": build_cookie_header(cookies),
            "Origin": BASE_URL,
            "Referer": f"{BASE_URL}/",
            "User-Agent": USER_AGENT,
            "X-Same-Domain": "1",
        }

        sapisid_hash = compute_sapisid_hash(cookies)
        if sapisid_hash:
            headers["Authorization"] = f"SAPISIDHASH {sapisid_hash}"
        return headers

    def get_csrf_token(self) -> str:
        """Return the cached CSRF token, fetching the landing page when expired."""
        with self._lock:
            if self._csrf_token and self._clock() < self._csrf_expiry:
                return self._csrf_token

        # Fetch without holding the lock; concurrent refreshes are harmless
        cookies = self._load_cookies()
        html = self._fetch_landing_page(cookies)

        token = None
        for pattern in CSRF_PATTERNS:
            match = pattern.search(html)
            if match:
                token = match.group(1)
                break

        if token is None:
            logger.error(
                f"CSRF token not found. Page length: {len(html)}, "
                f"hasWIZ_global_data: {'WIZ_global_data' in html}, hasSNlM0e: {'SNlM0e' in html}"
            )
            if len(html) < 1000:
                logger.error("Page too short, likely a redirect or login page")
            raise AuthenticationError(
                f"CSRF token not found in page. Authentication may have expired. {REAUTH_HINT}"
            )

        bl_match = BUILD_LABEL_PATTERN.search(html)
        sid_match = SESSION_ID_PATTERN.search(html)

        with self._lock:
            self._csrf_token = token
            self._csrf_expiry = self._clock() + CSRF_TOKEN_TTL
            if bl_match:
                self._build_label = bl_match.group(1)
            if sid_match:
                self._session_id = sid_match.group(1)

        logger.info("CSRF token acquired")
        return token

    def _fetch_landing_page(self, cookies: list[Cookie]) -> str:
        headers = {**PAGE_FETCH_HEADERS, "Cookie": build_cookie_header(cookies)}
        logger.info("Fetching CSRF token...")

        try:
            if self._http_client is not None:
                response = self._http_client.get(
                    f"{BASE_URL}/", headers=headers, follow_redirects=True,
                    timeout=self.settings.csrf_fetch_timeout,
                )
            else:
                with httpx.Client(
                    follow_redirects=True, timeout=self.settings.csrf_fetch_timeout
                ) as client:
                    response = client.get(f"{BASE_URL}/", headers=headers)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError("Timed out fetching the NotebookLM page for a CSRF token", e)

        # Redirected to login (cookies expired)
        if "accounts.google.com" in str(response.url):
            raise AuthenticationError(f"Redirected to Google sign-in, cookies may have expired. {REAUTH_HINT}")

        status = response.status_code
        if not 200 <= status < 300:
            logger.error(f"CSRF fetch failed: HTTP {status}")
            if status in (302, 303):
                raise AuthenticationError(
                    f"Failed to fetch CSRF token: HTTP {status}. Redirected, cookies may have expired. {REAUTH_HINT}"
                )
            raise AuthenticationError(f"Failed to fetch CSRF token: HTTP {status}. {REAUTH_HINT}")

        return response.text

    def invalidate_csrf(self) -> None:
        """Forget the cached token so the next request fetches a fresh one."""
        with self._lock:
            self._csrf_token = None
            self._csrf_expiry = 0.0
