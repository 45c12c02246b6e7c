"""batchexecute RPC client.

Internal API. Each call is one POST carrying a single RPC; auth failures are
retried with a fresh CSRF token, everything else fails fast.
"""

import json
import logging
import urllib.parse
from typing import Any

import httpx

from .auth_headers import AuthHeaders
from .config import BATCHEXECUTE_URL, Settings
from .constants import RPC_NAMES
from .errors import AuthenticationError, RequestTimeoutError, SecurityError, ValidationError
from .response_parser import parse_and_extract

# API internals are only logged at DEBUG level, usually disabled
logger = logging.getLogger("notebooklm_rpc.api")

MAX_RETRIES = 2


def _format_debug_json(data: Any, max_length: int = 2000) -> str:
    """Format data as pretty-printed JSON for debug logging."""
    try:
        formatted = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        formatted = str(data)
    if len(formatted) > max_length:
        return formatted[:max_length] + "\n  ... (truncated)"
    return formatted


def _decode_request_body(body: str) -> dict[str, Any]:
    """Decode a URL-encoded request body back into its params, hiding the token."""
    result: dict[str, Any] = {}
    parsed = urllib.parse.parse_qs(body.rstrip("&"))

    if "f.req" in parsed:
        f_req_raw = parsed["f.req"][0]
        try:
            f_req = json.loads(f_req_raw)
        except json.JSONDecodeError:
            result["f.req"] = f_req_raw
        else:
            result["f.req"] = f_req
            try:
                rpc_id, params_json = f_req[0][0][0], f_req[0][0][1]
                result["rpc_id"] = rpc_id
                result["params"] = json.loads(params_json)
            except (IndexError, KeyError, TypeError, json.JSONDecodeError):
                pass

    # Don't log the actual token
    if "at" in parsed:
        result["at"] = "(csrf_token)"
    return result


def _parse_url_params(url: str) -> dict[str, Any]:
    """Parse URL query parameters for debug display."""
    params = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query)
    # Flatten single-value lists
    return {k: v[0] if len(v) == 1 else v for k, v in params.items()}


def build_request_body(rpc_id: str, params: Any, csrf_token: str) -> str:
    """Build the batchexecute form body."""
    # Compact separators to match Chrome's format (no spaces)
    params_json = json.dumps(params, separators=(",", ":"))
    f_req = [[[rpc_id, params_json, None, "generic"]]]
    f_req_json = json.dumps(f_req, separators=(",", ":"))

    # safe='' encodes all characters including /
    return (
        f"f.req={urllib.parse.quote(f_req_json, safe='')}"
        f"&at={urllib.parse.quote(csrf_token, safe='')}&"
    )


class RpcClient:
    """Client for the NotebookLM batchexecute endpoint."""

    def __init__(
        self,
        auth: AuthHeaders,
        settings: Settings | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.auth = auth
        self.settings = settings or auth.settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=self.settings.rpc_timeout)

    def build_url(self, rpc_id: str, source_path: str = "/") -> str:
        """Build the batchexecute URL with query params."""
        params = {
            "rpcids": rpc_id,
            "source-path": source_path,
            "bl": self.auth.build_label,
            "hl": self.settings.locale,
            "rt": "c",
        }
        if self.auth.session_id:
            params["f.sid"] = self.auth.session_id
        return f"{BATCHEXECUTE_URL}?{urllib.parse.urlencode(params)}"

    def call_rpc(
        self,
        rpc_id: str,
        params: Any,
        source_path: str = "/",
        timeout: float | None = None,
    ) -> Any:
        """Execute an RPC call and return the extracted result.

        Auth failures (HTTP 401/403 or RPC Error 16) drop the cached CSRF token
        and are retried up to MAX_RETRIES times. Other HTTP errors, timeouts,
        validation and security errors are raised immediately.

        Returns:
            The decoded result, or NO_RESULT if the response has no envelope
            for ``rpc_id``.
        """
        if timeout is None:
            timeout = self.settings.rpc_timeout
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES + 1):
            try:
                return self._attempt(rpc_id, params, source_path, timeout)
            except AuthenticationError as e:
                last_error = e
                self.auth.invalidate_csrf()
                if attempt < MAX_RETRIES:
                    logger.warning(f"Auth error, retrying... (attempt {attempt + 1}/{MAX_RETRIES}): {e.message}")
                    continue
                raise
            except httpx.TimeoutException as e:
                raise RequestTimeoutError(f"RPC call {rpc_id} timed out after {timeout}s", e)
            except (SecurityError, ValidationError, RequestTimeoutError):
                raise
            except Exception as e:
                last_error = e
                if attempt < MAX_RETRIES:
                    logger.warning(f"RPC error, retrying... (attempt {attempt + 1}/{MAX_RETRIES}): {e}")
                    continue
                raise

        # Unreachable: the last attempt either returns or raises
        raise last_error

    def _attempt(self, rpc_id: str, params: Any, source_path: str, timeout: float) -> Any:
        csrf_token = self.auth.get_csrf_token()
        headers = self.auth.get_headers()
        body = build_request_body(rpc_id, params, csrf_token)
        url = self.build_url(rpc_id, source_path)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("=" * 70)
            logger.debug(f"RPC Call: {rpc_id} ({RPC_NAMES.get(rpc_id, 'unknown')})")
            logger.debug("-" * 70)
            logger.debug("URL Parameters:")
            for key, value in _parse_url_params(url).items():
                logger.debug(f"  {key}: {value}")
            logger.debug("-" * 70)
            logger.debug("Request Params:")
            decoded_body = _decode_request_body(body)
            logger.debug(_format_debug_json(decoded_body.get("params", decoded_body)))

        response = self._client.post(url, content=body, headers=headers, timeout=timeout)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("-" * 70)
            logger.debug(f"Response Status: {response.status_code}")
            if response.status_code >= 400:
                logger.debug("Error Response Body:")
                logger.debug(response.text[:2000])

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed (HTTP {status}). "
                "Save fresh cookies with save_auth_cookies to re-authenticate."
            )
        if not 200 <= status < 300:
            raise ValidationError(f"RPC call failed with status {status}")

        result = parse_and_extract(response.text, rpc_id)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("-" * 70)
            logger.debug("Response Data:")
            logger.debug(_format_debug_json(result))
            logger.debug("=" * 70)

        return result

    def invalidate_csrf(self) -> None:
        self.auth.invalidate_csrf()

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()
