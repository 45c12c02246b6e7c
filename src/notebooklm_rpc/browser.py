"""Chrome page automation over the DevTools Protocol.

Chrome is started with remote debugging and a persistent profile, so a
Google login made in that window is remembered across runs. Each page is
a CDP target; commands go over a short-lived WebSocket per command.
"""

import json
import logging
import platform
import shutil
import subprocess
import time
import urllib.parse
from typing import Any

import httpx
import websocket

from .config import Settings
from .cookie_store import Cookie, CookieStore
from .errors import BrowserError, RequestTimeoutError

logger = logging.getLogger("notebooklm_rpc.browser")

CDP_DEFAULT_PORT = 9223
CHROME_CANDIDATES = ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"]


def find_chrome() -> str | None:
    """Locate the Chrome binary for this platform."""
    system = platform.system()
    if system == "Darwin":
        return "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
    if system == "Windows":
        return r"C:\Program Files\Google\Chrome\Application\chrome.exe"
    # Binary names vary by distro
    for candidate in CHROME_CANDIDATES:
        if shutil.which(candidate):
            return candidate
    return None


def execute_cdp_command(ws_url: str, method: str, params: dict | None = None, timeout: float = 30) -> dict:
    """Execute a CDP command via WebSocket and return its result."""
    try:
        ws = websocket.create_connection(ws_url, timeout=timeout)
    except (websocket.WebSocketException, OSError) as e:
        raise BrowserError(f"Cannot connect to page for {method}", e)

    try:
        ws.send(json.dumps({"id": 1, "method": method, "params": params or {}}))
        # Events may arrive before the reply
        while True:
            response = json.loads(ws.recv())
            if response.get("id") == 1:
                break
    except websocket.WebSocketTimeoutException as e:
        raise RequestTimeoutError(f"CDP command {method} timed out after {timeout}s", e)
    except (websocket.WebSocketException, OSError, json.JSONDecodeError) as e:
        raise BrowserError(f"CDP command {method} failed", e)
    finally:
        ws.close()

    if "error" in response:
        raise BrowserError(f"CDP command {method} failed: {response['error'].get('message', response['error'])}")
    return response.get("result", {})


class CdpPage:
    """One Chrome tab."""

    def __init__(self, port: int, target_id: str, ws_url: str):
        self.port = port
        self.target_id = target_id
        self.ws_url = ws_url
        self.closed = False

    def _command(self, method: str, params: dict | None = None, timeout: float = 30) -> dict:
        if self.closed:
            raise BrowserError("Page is closed")
        return execute_cdp_command(self.ws_url, method, params, timeout=timeout)

    def evaluate(self, expression: str) -> Any:
        result = self._command("Runtime.evaluate", {"expression": expression, "returnByValue": True})
        return result.get("result", {}).get("value")

    def goto(self, url: str, timeout: float = 30.0) -> None:
        """Navigate and wait until the document has finished loading."""
        deadline = time.monotonic() + timeout
        self._command("Page.enable")
        result = self._command("Page.navigate", {"url": url}, timeout=timeout)
        if result.get("errorText"):
            raise BrowserError(f"Navigation to {url} failed: {result['errorText']}")

        while time.monotonic() < deadline:
            if self.evaluate("document.readyState") == "complete":
                return
            time.sleep(0.25)
        raise RequestTimeoutError(f"Navigation to {url} timed out after {timeout}s")

    @property
    def url(self) -> str:
        """Current page URL (cheap, no page scripts involved)."""
        return self.evaluate("window.location.href") or ""

    def cookies(self) -> list[Cookie]:
        result = self._command("Network.getCookies")
        return [Cookie.from_dict(c) for c in result.get("cookies", [])]

    def set_cookies(self, cookies: list[Cookie]) -> None:
        if not cookies:
            return
        params = []
        for cookie in cookies:
            data = cookie.to_dict()
            if cookie.expires <= 0:
                # CDP treats a missing expiry as a session cookie
                del data["expires"]
            params.append(data)
        self._command("Network.setCookies", {"cookies": params})

    def close(self) -> None:
        """Close the tab. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        try:
            httpx.get(f"http://localhost:{self.port}/json/close/{self.target_id}", timeout=5)
        except httpx.HTTPError as e:
            raise BrowserError(f"Failed to close page {self.target_id}", e)


class ChromeBrowser:
    """A Chrome process with remote debugging; hands out new pages."""

    def __init__(
        self,
        settings: Settings | None = None,
        cookie_store: CookieStore | None = None,
        port: int = CDP_DEFAULT_PORT,
        headless: bool = True,
        startup_timeout: float = 15.0,
    ):
        self.settings = settings or Settings()
        self.cookie_store = cookie_store
        self.port = port
        self.headless = headless
        self.startup_timeout = startup_timeout
        self._process: subprocess.Popen | None = None

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    def is_running(self) -> bool:
        try:
            response = httpx.get(f"{self.base_url}/json/version", timeout=2)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def launch(self) -> None:
        """Start Chrome unless a debuggable instance already listens on the port."""
        if self.is_running():
            return

        chrome_path = find_chrome()
        if not chrome_path:
            raise BrowserError(f"Chrome not found. Tried: {', '.join(CHROME_CANDIDATES)}")

        # Chrome 136+ requires a non-default user-data-dir for remote debugging
        profile_dir = self.settings.chrome_profile_dir
        profile_dir.mkdir(parents=True, exist_ok=True)

        args = [
            chrome_path,
            f"--remote-debugging-port={self.port}",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-extensions",
            f"--user-data-dir={profile_dir}",
            "--remote-allow-origins=*",
        ]
        if self.headless:
            args.append("--headless=new")

        logger.info(f"Launching Chrome on port {self.port}")
        try:
            self._process = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            raise BrowserError("Failed to launch Chrome", e)

        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                stderr = self._process.stderr.read().decode(errors="replace") if self._process.stderr else ""
                raise BrowserError(f"Chrome exited during startup: {stderr[:500]}")
            if self.is_running():
                return
            time.sleep(0.5)
        raise BrowserError(f"Chrome did not open the debugging port within {self.startup_timeout}s")

    def new_page(self) -> CdpPage:
        """Open a blank tab, preloaded with the stored Google cookies."""
        self.launch()
        try:
            response = httpx.put(f"{self.base_url}/json/new?{urllib.parse.quote('about:blank', safe='')}", timeout=10)
            response.raise_for_status()
            target = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise BrowserError("Failed to create page", e)

        page = CdpPage(self.port, target["id"], target["webSocketDebuggerUrl"])
        if self.cookie_store is not None:
            try:
                page.set_cookies(self.cookie_store.load())
            except BaseException:
                # The caller never sees this page, so close the tab here
                try:
                    page.close()
                except BrowserError as e:
                    logger.warning(f"Failed to close page {page.target_id}: {e}")
                raise
        return page

    def close(self) -> None:
        """Stop the Chrome process this instance started."""
        if self._process is None:
            return
        process, self._process = self._process, None
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=5)
