"""NotebookLM RPC MCP Server."""

import argparse
import atexit
import functools
import json
import logging
import os
import secrets
import signal
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .auth_headers import AuthHeaders
from .auth_state import get_auth_state
from .browser import ChromeBrowser
from .config import Settings
from .cookie_store import Cookie, CookieStore, cookies_from_header
from .errors import ValidationError, describe_error
from .keychain import KeyringSecretStore
from .query_client import QueryClient
from .response_parser import NO_RESULT
from .rpc_client import RpcClient
from .session_manager import SessionManager

# MCP request/response logger
mcp_logger = logging.getLogger("notebooklm_rpc.mcp")

# Initialize MCP server
mcp = FastMCP(
    name="notebooklm-rpc",
    instructions="""NotebookLM RPC - Access NotebookLM (notebooklm.google.com) through its batchexecute API.

**Auth:** Save Google cookies with save_auth_cookies first (Cookie header or a DevTools cookie JSON array). check_auth reports whether they are still fresh.
**Queries:** notebook_query with follow_up=True continues the notebook's last conversation.
**Sessions:** session_open keeps a browser page on a notebook; close it with session_close when done.""",
)


# Health check endpoint for load balancers and monitoring
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({
        "status": "healthy",
        "service": "notebooklm-rpc",
        "version": __version__,
    })


# Global state
_settings: Settings | None = None
_cookie_store: CookieStore | None = None
_auth: AuthHeaders | None = None
_rpc_client: RpcClient | None = None
_query_client: QueryClient | None = None
_session_manager: SessionManager | None = None
_api_key: str | None = os.environ.get("NOTEBOOKLM_API_KEY")


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    # Skip auth if no API key configured
    if not _api_key:
        return None

    # Allow health check without auth (for load balancers)
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401,
        )

    provided_key = auth_header[len("Bearer "):]
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def logged_tool():
    """Decorator that combines @mcp.tool() with MCP request/response logging."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None and k != "cookies"}
                mcp_logger.debug(f"MCP Request: {tool_name}({json.dumps(params, default=str)})")

            result = func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug(f"MCP Response: {tool_name} -> {result_str}")

            return result
        # Register with MCP but keep the plain function importable
        mcp.tool()(wrapper)
        return wrapper
    return decorator


def _error(e: Exception) -> dict[str, Any]:
    return {"status": "error", **describe_error(e)}


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_cookie_store() -> CookieStore:
    global _cookie_store
    if _cookie_store is None:
        settings = get_settings()
        _cookie_store = CookieStore(
            settings.cookie_file,
            KeyringSecretStore(settings.keychain_service, settings.keychain_account),
        )
    return _cookie_store


def get_auth() -> AuthHeaders:
    global _auth
    if _auth is None:
        _auth = AuthHeaders(get_cookie_store(), get_settings())
    return _auth


def get_rpc_client() -> RpcClient:
    global _rpc_client
    if _rpc_client is None:
        _rpc_client = RpcClient(get_auth(), get_settings())
    return _rpc_client


def get_query_client() -> QueryClient:
    global _query_client
    if _query_client is None:
        _query_client = QueryClient(get_auth(), get_settings(), rpc_client=get_rpc_client())
    return _query_client


def get_session_manager() -> SessionManager:
    global _session_manager
    if _session_manager is None:
        settings = get_settings()
        _session_manager = SessionManager(ChromeBrowser(settings, get_cookie_store()), settings)
        _session_manager.start_cleanup()
    return _session_manager


def _parse_json_arg(value: Any, name: str) -> Any:
    """Accept either a decoded value or a JSON string (some clients send strings)."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{name} must be valid JSON", e)


def parse_cookies_arg(cookies: str | list) -> list[Cookie]:
    """Parse a Cookie header string or a DevTools cookie list."""
    if isinstance(cookies, str) and not cookies.lstrip().startswith("["):
        return cookies_from_header(cookies)

    items = _parse_json_arg(cookies, "cookies")
    if not isinstance(items, list):
        raise ValidationError("cookies must be a Cookie header or a JSON array of cookie objects")
    try:
        return [Cookie.from_dict(item) for item in items]
    except (KeyError, TypeError, AttributeError) as e:
        raise ValidationError("Each cookie object needs at least 'name' and 'value'", e)


@logged_tool()
def save_auth_cookies(cookies: str | list) -> dict[str, Any]:
    """Save Google cookies for NotebookLM, encrypted on disk.

    Args:
        cookies: Cookie header copied from Chrome DevTools (Network tab, any
            notebooklm.google.com request), or a JSON array of cookie objects
            as exported by DevTools (name, value, domain, ...)
    """
    try:
        parsed = parse_cookies_arg(cookies)
        if not get_cookie_store().save(parsed):
            raise ValidationError("No Google cookies found in input")

        # New cookies invalidate any token scraped with the old ones
        get_auth().invalidate_csrf()
        state = get_auth_state(get_cookie_store().load())
        return {
            "status": "success",
            "message": f"Saved cookies (from {len(parsed)} provided).",
            **state.to_dict(),
        }
    except Exception as e:
        return _error(e)


@logged_tool()
def check_auth() -> dict[str, Any]:
    """Check whether stored cookies exist and how long they stay valid."""
    try:
        return {"status": "success", **get_auth_state(get_cookie_store().load()).to_dict()}
    except Exception as e:
        return _error(e)


@logged_tool()
def clear_auth() -> dict[str, Any]:
    """Delete stored cookies, the encryption key and cached conversations."""
    try:
        get_cookie_store().clear()
        get_auth().invalidate_csrf()
        get_query_client().clear_all()
        return {"status": "success", "message": "Stored authentication cleared."}
    except Exception as e:
        return _error(e)


@logged_tool()
def rpc_call(
    rpc_id: str,
    params: list | str,
    source_path: str = "/",
    timeout: float | None = None,
) -> dict[str, Any]:
    """Call a raw batchexecute RPC and return its decoded result.

    Args:
        rpc_id: RPC identifier (e.g. "wXbhsf" lists notebooks)
        params: RPC params as a list or JSON string
        source_path: Page path the call is made from (default: "/")
        timeout: Request timeout in seconds (default: NOTEBOOKLM_RPC_TIMEOUT or 60)
    """
    try:
        result = get_rpc_client().call_rpc(
            rpc_id,
            _parse_json_arg(params, "params"),
            source_path=source_path,
            timeout=timeout,
        )
        return {
            "status": "success",
            "found": result is not NO_RESULT,
            "result": None if result is NO_RESULT else result,
        }
    except Exception as e:
        return _error(e)


@logged_tool()
def notebook_query(
    notebook_id: str,
    query: str,
    source_ids: list[str] | str | None = None,
    follow_up: bool = False,
    conversation_id: str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Ask AI about the sources already in a notebook.

    Args:
        notebook_id: Notebook UUID
        query: Question to ask
        source_ids: Source IDs to query (default: all)
        follow_up: Continue the notebook's previous conversation
        conversation_id: Optional conversation id to send along
        timeout: Request timeout in seconds (default: NOTEBOOKLM_QUERY_TIMEOUT or 120)
    """
    try:
        if isinstance(source_ids, str):
            try:
                source_ids = json.loads(source_ids)
            except json.JSONDecodeError:
                # Not JSON, treat as a single source ID
                source_ids = [source_ids]

        result = get_query_client().query(
            notebook_id,
            query,
            source_ids=source_ids,
            follow_up=follow_up,
            conversation_id=conversation_id,
            timeout=timeout,
        )
        return {"status": "success", **result.to_dict()}
    except Exception as e:
        return _error(e)


@logged_tool()
def clear_conversation(notebook_id: str | None = None) -> dict[str, Any]:
    """Forget cached conversation context for one notebook, or all if omitted."""
    try:
        client = get_query_client()
        if notebook_id is None:
            client.clear_all()
            return {"status": "success", "message": "All conversations cleared."}
        cleared = client.clear_conversation(notebook_id)
        return {"status": "success", "cleared": cleared}
    except Exception as e:
        return _error(e)


@logged_tool()
def session_open(notebook_id: str) -> dict[str, Any]:
    """Open (or reuse) a browser session on a notebook."""
    try:
        session = get_session_manager().create_session(notebook_id)
        return {"status": "success", "session": session.to_dict()}
    except Exception as e:
        return _error(e)


@logged_tool()
def session_list() -> dict[str, Any]:
    """List open browser sessions."""
    try:
        sessions = get_session_manager().list_sessions()
        return {"status": "success", "count": len(sessions), "sessions": sessions}
    except Exception as e:
        return _error(e)


@logged_tool()
def session_close(session_id: str) -> dict[str, Any]:
    """Close a browser session. Closing an unknown session is not an error."""
    try:
        closed = get_session_manager().close_session(session_id)
        return {"status": "success", "closed": closed}
    except Exception as e:
        return _error(e)


def shutdown() -> None:
    """Close sessions, the browser and HTTP clients. Best effort."""
    global _session_manager, _query_client, _rpc_client
    # Runs from atexit and from the signal handler; the second call is a no-op
    manager, _session_manager = _session_manager, None
    if manager is not None:
        manager.shutdown()
    for client in (_query_client, _rpc_client):
        if client is None:
            continue
        try:
            client.close()
        except Exception as e:
            mcp_logger.warning(f"Failed to close HTTP client: {e}")
    _query_client = None
    _rpc_client = None


def _handle_termination(signum, frame) -> None:
    """SIGTERM skips atexit hooks, so clean up here before exiting."""
    mcp_logger.info(f"Received signal {signum}, shutting down")
    shutdown()
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    signal.signal(signal.SIGTERM, _handle_termination)


def _configure_debug_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    # Covers MCP tool calls and NotebookLM API traffic
    package_logger = logging.getLogger("notebooklm_rpc")
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)


def _run_http(args: argparse.Namespace, transport: str) -> None:
    suffix = args.path if transport == "http" else "/sse"
    print(f"Starting NotebookLM RPC server ({transport.upper()}) on http://{args.host}:{args.port}{suffix}")
    print(f"Health check: http://{args.host}:{args.port}/health")
    if _api_key:
        print("API key authentication: ENABLED")
    else:
        print("WARNING: No API key set. Server is publicly accessible!")
        print("         Use --api-key or NOTEBOOKLM_API_KEY to secure your server.")

    if _api_key:
        import uvicorn

        if transport == "http":
            base_app = mcp.http_app(path=args.path, stateless_http=args.stateless)
        else:
            base_app = mcp.http_app(transport="sse")
        uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
    elif transport == "http":
        mcp.run(
            transport="http",
            host=args.host,
            port=args.port,
            path=args.path,
            stateless_http=args.stateless,
        )
    else:
        mcp.run(transport="sse", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    """Command line options. Each one can also come from the environment."""
    parser = argparse.ArgumentParser(
        description="NotebookLM RPC MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Client settings (see also the server options above):
  NOTEBOOKLM_DATA_DIR          Cookie file and Chrome profile (default: ~/.notebooklm-rpc)
  NOTEBOOKLM_BL                Build label sent with every call
  NOTEBOOKLM_HL                Locale sent with every call (default: en)
  NOTEBOOKLM_RPC_TIMEOUT       Seconds per RPC call (default: 60)
  NOTEBOOKLM_QUERY_TIMEOUT     Seconds per notebook question (default: 120)
  NOTEBOOKLM_MAX_SESSIONS      Open browser sessions (default: 5)
  NOTEBOOKLM_SESSION_IDLE_TIMEOUT  Idle seconds before a session is closed (default: 900)
        """,
    )
    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("NOTEBOOKLM_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (env: NOTEBOOKLM_MCP_TRANSPORT, default: stdio)",
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("NOTEBOOKLM_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (env: NOTEBOOKLM_MCP_HOST, default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("NOTEBOOKLM_MCP_PORT", "8000")),
        help="Port for HTTP/SSE (env: NOTEBOOKLM_MCP_PORT, default: 8000)",
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("NOTEBOOKLM_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (env: NOTEBOOKLM_MCP_PATH, default: /mcp)",
    )
    parser.add_argument(
        "--stateless",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_STATELESS", "").lower() == "true",
        help="Stateless HTTP sessions (env: NOTEBOOKLM_MCP_STATELESS=true)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_DEBUG", "").lower() == "true",
        help="Log tool calls and API traffic (env: NOTEBOOKLM_MCP_DEBUG=true)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("NOTEBOOKLM_API_KEY"),
        help="Bearer key required on HTTP/SSE requests (env: NOTEBOOKLM_API_KEY)",
    )
    return parser


def main(argv: list[str] | None = None):
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps
    - http: Streamable HTTP for network access
    - sse: Legacy SSE transport
    """
    args = build_parser().parse_args(argv)

    global _api_key
    _api_key = args.api_key

    if args.debug:
        _configure_debug_logging()
        print("Debug logging: ENABLED (MCP tool calls + NotebookLM API requests/responses)")

    atexit.register(shutdown)
    install_signal_handlers()

    if args.transport in ("http", "sse"):
        _run_http(args, args.transport)
    else:
        # stdio should be silent
        mcp.run()

    return 0


if __name__ == "__main__":
    exit(main())
