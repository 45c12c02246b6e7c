"""Bounded pool of browser-backed notebook sessions.

A session binds one notebook to one browser page. The manager caps how many
exist at once, reuses the session of a notebook that is already open, and
closes sessions that have been idle too long.

Page work (opening, navigating, closing) never happens while the session
table lock is held.
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Protocol

from .config import Settings
from .errors import SessionError
from .url_validator import notebook_url, validate_notebook_url

logger = logging.getLogger("notebooklm_rpc.session")


class Page(Protocol):
    def goto(self, url: str, timeout: float = ...) -> None: ...

    def close(self) -> None: ...


class PageProvider(Protocol):
    def new_page(self) -> Page: ...

    def close(self) -> None: ...


class NotebookSession:
    """One notebook open in one page."""

    def __init__(self, notebook_id: str, clock: Callable[[], float] = time.time):
        self.id = str(uuid.uuid4())
        self.notebook_id = notebook_id
        self._clock = clock
        self.created_at = clock()
        self.last_activity = self.created_at
        self.page: Page | None = None
        self.closed = False
        self._ready = threading.Event()

    def bind_page(self, page: Page) -> None:
        self.page = page

    def touch(self) -> None:
        self.last_activity = self._clock()

    def require_page(self) -> Page:
        if self.page is None or self.closed:
            raise SessionError(f"Session {self.id} has no page, it may have been closed")
        return self.page

    def navigate(self, url: str | None = None, timeout: float = 30.0) -> None:
        """Open ``url`` (default: this session's notebook) in the bound page."""
        page = self.require_page()
        target = validate_notebook_url(url) if url else notebook_url(self.notebook_id)
        page.goto(target, timeout=timeout)
        self.touch()
        logger.info(f"Navigated to notebook: {self.notebook_id}")

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        self._ready.set()

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    def idle_seconds(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        return max(0.0, now - self.last_activity)

    def is_idle(self, threshold: float, now: float | None = None) -> bool:
        return self.idle_seconds(now) > threshold

    def close(self) -> None:
        """Release the page. Closing twice is a no-op."""
        if self.closed:
            return
        self.closed = True
        page, self.page = self.page, None
        if page is not None:
            page.close()

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "notebook_id": self.notebook_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "idle_seconds": round(self.idle_seconds(now), 3),
        }


class SessionManager:
    """Creates, reuses and reaps notebook sessions."""

    def __init__(
        self,
        page_provider: PageProvider,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.page_provider = page_provider
        self.settings = settings or Settings()
        self._clock = clock

        self._sessions: dict[str, NotebookSession] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._cleanup_thread: threading.Thread | None = None

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _find_by_notebook_locked(self, notebook_id: str) -> NotebookSession | None:
        for session in self._sessions.values():
            if session.notebook_id == notebook_id:
                return session
        return None

    def _oldest_idle_locked(self, now: float) -> NotebookSession | None:
        oldest = None
        for session in self._sessions.values():
            if session.is_ready and session.is_idle(self.settings.session_idle_timeout, now):
                if oldest is None or session.last_activity < oldest.last_activity:
                    oldest = session
        return oldest

    def _close_quietly(self, session: NotebookSession) -> None:
        try:
            session.close()
        except Exception as e:
            logger.warning(f"Failed to close page of session {session.id}: {e}")

    def create_session(self, notebook_id: str) -> NotebookSession:
        """Return the session for ``notebook_id``, opening one if needed.

        At capacity, the least recently active session idle beyond the
        threshold is closed to make room.

        Raises:
            SessionError: At capacity with no idle session to evict
            ValidationError: Invalid notebook id
        """
        # Validates the id before any bookkeeping
        url = notebook_url(notebook_id)
        evicted = None

        with self._lock:
            existing = self._find_by_notebook_locked(notebook_id)
            if existing is None:
                if len(self._sessions) >= self.settings.max_sessions:
                    evicted = self._oldest_idle_locked(self._clock())
                    if evicted is None:
                        raise SessionError(
                            f"Maximum sessions ({self.settings.max_sessions}) reached. Close a session first."
                        )
                    del self._sessions[evicted.id]
                session = NotebookSession(notebook_id, clock=self._clock)
                # Reserve the slot before the slow page work
                self._sessions[session.id] = session

        if existing is not None:
            return self._await_existing(existing)

        if evicted is not None:
            logger.info(f"Evicting idle session {evicted.id} (notebook: {evicted.notebook_id})")
            self._close_quietly(evicted)

        try:
            session.bind_page(self.page_provider.new_page())
            session.navigate(url, timeout=self.settings.navigation_timeout)
        except BaseException:
            with self._lock:
                self._sessions.pop(session.id, None)
            self._close_quietly(session)
            raise
        finally:
            session.mark_ready()

        logger.info(f"Created session {session.id} for notebook {notebook_id}")
        return session

    def _await_existing(self, session: NotebookSession) -> NotebookSession:
        if not session.wait_ready(self.settings.navigation_timeout * 2):
            raise SessionError(f"Session for notebook {session.notebook_id} is still opening")
        with self._lock:
            if self._sessions.get(session.id) is not session:
                raise SessionError(f"Session for notebook {session.notebook_id} failed to open")
        logger.info(f"Reusing existing session for notebook: {session.notebook_id}")
        return session

    def get_session(self, session_id: str) -> NotebookSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(f"Session not found: {session_id}")
        return session

    def find_by_notebook(self, notebook_id: str) -> NotebookSession | None:
        with self._lock:
            return self._find_by_notebook_locked(notebook_id)

    def close_session(self, session_id: str) -> bool:
        """Close one session. Returns False if it was already gone."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.info(f"Closed session: {session_id}")
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._close_quietly(session)
        logger.info("All sessions closed")

    def list_sessions(self) -> list[dict[str, Any]]:
        """Point-in-time snapshot of every session."""
        now = self._clock()
        with self._lock:
            return [s.to_dict(now) for s in self._sessions.values()]

    def cleanup_idle_sessions(self) -> int:
        """Close every session idle beyond the threshold; returns how many."""
        now = self._clock()
        with self._lock:
            idle = [
                s for s in self._sessions.values()
                if s.is_ready and s.is_idle(self.settings.session_idle_timeout, now)
            ]
            for session in idle:
                del self._sessions[session.id]

        for session in idle:
            logger.info(f"Cleaning up idle session: {session.id} (notebook: {session.notebook_id})")
            self._close_quietly(session)

        if idle:
            logger.info(f"Cleaned up {len(idle)} idle sessions")
        return len(idle)

    def start_cleanup(self) -> None:
        """Start the periodic idle sweep in a daemon thread."""
        with self._lock:
            if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                args=(self._stop_event,),
                name="notebooklm-session-cleanup",
                daemon=True,
            )
            self._cleanup_thread.start()

    def _cleanup_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.settings.cleanup_interval):
            try:
                self.cleanup_idle_sessions()
            except Exception:
                logger.exception("Session cleanup failed")

    def stop_cleanup(self) -> None:
        with self._lock:
            thread, stop_event = self._cleanup_thread, self._stop_event
            self._cleanup_thread = None
            self._stop_event = None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def shutdown(self) -> None:
        """Stop the sweep, close all sessions, then the page provider."""
        self.stop_cleanup()
        self.close_all()
        try:
            self.page_provider.close()
        except Exception as e:
            logger.warning(f"Failed to close page provider: {e}")
