"""Encrypted cookie persistence.

Cookies are kept as one AES-GCM encrypted JSON file; the key lives in the
system keychain. Only Google cookies are ever stored, and the same domain
filter is applied again whenever the file is read back.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from . import crypto
from .config import ALLOWED_COOKIE_DOMAINS
from .errors import SecurityError
from .keychain import KeyringSecretStore
from .secure_files import ensure_secure_directory, read_secure_file, write_secure_file

logger = logging.getLogger("notebooklm_rpc.auth")


@dataclass
class Cookie:
    """A browser cookie. ``expires <= 0`` marks a session cookie."""

    name: str
    value: str
    domain: str
    path: str = "/"
    expires: float = -1
    http_only: bool = False
    secure: bool = False
    same_site: str = "Lax"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires,
            "httpOnly": self.http_only,
            "secure": self.secure,
            "sameSite": self.same_site,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Cookie":
        """Build from a stored dict or a Chrome DevTools cookie."""
        return cls(
            name=data["name"],
            value=data.get("value", ""),
            domain=data.get("domain", ""),
            path=data.get("path", "/"),
            expires=data.get("expires", -1),
            http_only=data.get("httpOnly", False),
            secure=data.get("secure", False),
            same_site=data.get("sameSite") or "Lax",
        )


def _normalize_domain(domain: str) -> str:
    return "." + domain.strip().lower().lstrip(".")


_ALLOWED = tuple(_normalize_domain(d) for d in ALLOWED_COOKIE_DOMAINS)


def is_allowed_cookie_domain(domain: str) -> bool:
    """True if ``domain`` equals or is a subdomain of an allowed domain."""
    if not domain or not domain.strip(". "):
        return False
    normalized = _normalize_domain(domain)
    return any(normalized == allowed or normalized.endswith(allowed) for allowed in _ALLOWED)


def filter_cookies(cookies: Iterable[Cookie]) -> list[Cookie]:
    return [c for c in cookies if is_allowed_cookie_domain(c.domain)]


def cookies_from_header(cookie_header: str, domain: str = ".google.com") -> list[Cookie]:
    """
    Build cookies from a copy-pasted Cookie header value.

    Usage:
    1. Go to notebooklm.google.com in Chrome
    2. Open DevTools > Network tab
    3. Copy the Cookie header of any request to notebooklm.google.com
    """
    cookies = []
    for part in cookie_header.split(";"):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            cookies.append(Cookie(name=key.strip(), value=value.strip(), domain=domain, secure=True))
    return cookies


class CookieStore:
    """Reads and writes the encrypted cookie file."""

    def __init__(self, cookie_file: Path, secret_store: KeyringSecretStore):
        self.cookie_file = Path(cookie_file)
        self.secret_store = secret_store

    def _get_or_create_key(self) -> str:
        key = self.secret_store.get_key()
        if not key:
            key = crypto.generate_key()
            self.secret_store.set_key(key)
            logger.info("Generated new encryption key and stored it in the keychain")
        return key

    def save(self, cookies: Iterable[Cookie]) -> bool:
        """Encrypt and persist the allowed subset of ``cookies``.

        Returns False (and writes nothing) when no cookie matches the
        allowed domains.
        """
        cookies = list(cookies)
        filtered = filter_cookies(cookies)
        if not filtered:
            logger.warning("No cookies matched allowed domains, nothing saved")
            return False

        key = self._get_or_create_key()
        plaintext = json.dumps([c.to_dict() for c in filtered])
        blob = crypto.encrypt(plaintext, key)

        ensure_secure_directory(self.cookie_file.parent)
        write_secure_file(self.cookie_file, json.dumps(blob.to_dict()))

        logger.info(f"Saved {len(filtered)} cookies (filtered from {len(cookies)})")
        return True

    def load(self) -> list[Cookie]:
        """Return the stored cookies, or [] if nothing was ever saved."""
        if not self.cookie_file.exists():
            return []

        key = self.secret_store.get_key()
        if not key:
            raise SecurityError("Encryption key not found in keychain. Re-run authentication.")

        ensure_secure_directory(self.cookie_file.parent)
        raw = read_secure_file(self.cookie_file)
        try:
            blob = crypto.EncryptedBlob.from_dict(json.loads(raw))
        except (json.JSONDecodeError, AttributeError) as e:
            raise SecurityError("Cookie file is corrupted", e)

        plaintext = crypto.decrypt(blob, key)
        try:
            cookies = [Cookie.from_dict(item) for item in json.loads(plaintext)]
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise SecurityError("Decrypted cookie data is malformed", e)

        # Re-validate domains on load
        return filter_cookies(cookies)

    def clear(self) -> None:
        """Delete the cookie file and the encryption key."""
        try:
            self.cookie_file.unlink(missing_ok=True)
        except OSError as e:
            raise SecurityError(f"Failed to delete cookie file: {self.cookie_file}", e)
        self.secret_store.delete_key()
        logger.info("Cleared all stored cookies and encryption key")

    def has_cookies(self) -> bool:
        return self.cookie_file.exists()
