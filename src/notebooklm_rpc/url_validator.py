"""Allow-list checks for URLs a browser page may be sent to."""

import urllib.parse

from .config import ALLOWED_DOMAINS, BASE_URL
from .errors import ValidationError


def is_allowed_domain(hostname: str) -> bool:
    return hostname in ALLOWED_DOMAINS


def validate_url(url: str) -> None:
    """Raise ValidationError unless ``url`` is https on an allowed host."""
    if not url or not isinstance(url, str):
        raise ValidationError("URL must be a non-empty string")

    try:
        parsed = urllib.parse.urlsplit(url)
        hostname = parsed.hostname
    except ValueError as e:
        raise ValidationError(f"Invalid URL: {url}", e)

    if parsed.scheme != "https":
        raise ValidationError(f"URL must use HTTPS: {url}")

    if not hostname or not is_allowed_domain(hostname):
        raise ValidationError(
            f"Domain not allowed: {hostname}. Only {', '.join(ALLOWED_DOMAINS)} permitted."
        )


def validate_notebook_url(url: str) -> str:
    validate_url(url)
    if not url.startswith(BASE_URL):
        raise ValidationError(f"URL must start with {BASE_URL}")
    return url


def notebook_url(notebook_id: str) -> str:
    """Build and validate the page URL for a notebook."""
    if not notebook_id or "/" in notebook_id or "?" in notebook_id:
        raise ValidationError(f"Invalid notebook id: {notebook_id!r}")
    return validate_notebook_url(f"{BASE_URL}/notebook/{notebook_id}")
