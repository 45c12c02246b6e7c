import threading
from dataclasses import replace

import pytest

from notebooklm_rpc.errors import BrowserError, SessionError, ValidationError
from notebooklm_rpc.session_manager import NotebookSession, SessionManager


class FakePage:
    def __init__(self, fail_navigation=False):
        self.fail_navigation = fail_navigation
        self.visited = []
        self.closed = 0

    def goto(self, url, timeout=30.0):
        if self.fail_navigation:
            raise BrowserError("navigation failed")
        self.visited.append(url)

    def close(self):
        self.closed += 1


class FakePageProvider:
    def __init__(self):
        self.pages = []
        self.fail_next_navigation = False
        self.closed = False

    def new_page(self):
        page = FakePage(fail_navigation=self.fail_next_navigation)
        self.fail_next_navigation = False
        self.pages.append(page)
        return page

    def close(self):
        self.closed = True


@pytest.fixture
def provider():
    return FakePageProvider()


@pytest.fixture
def manager(provider, settings, clock):
    return SessionManager(provider, replace(settings, max_sessions=2, session_idle_timeout=900), clock=clock)


class TestCreateSession:

    def test_opens_page_on_notebook(self, manager, provider):
        session = manager.create_session("nb-1")

        assert session.is_ready
        assert provider.pages[0].visited == ["https://notebooklm.google.com/notebook/nb-1"]
        assert manager.get_session(session.id) is session

    def test_same_notebook_reuses_session(self, manager, provider):
        first = manager.create_session("nb-1")
        second = manager.create_session("nb-1")

        assert first is second
        assert len(provider.pages) == 1
        assert manager.session_count == 1

    def test_invalid_notebook_id_is_rejected_before_any_work(self, manager, provider):
        with pytest.raises(ValidationError):
            manager.create_session("../etc")
        assert provider.pages == []

    def test_capacity_reached_without_idle_sessions(self, manager, clock):
        manager.create_session("nb-1")
        manager.create_session("nb-2")
        clock.advance(10)

        with pytest.raises(SessionError, match=r"Maximum sessions \(2\) reached"):
            manager.create_session("nb-3")

    def test_capacity_one_evicts_idle_session(self, provider, settings, clock):
        manager = SessionManager(provider, replace(settings, max_sessions=1, session_idle_timeout=900), clock=clock)
        a = manager.create_session("nb-a")

        clock.advance(10)
        with pytest.raises(SessionError):
            manager.create_session("nb-b")
        assert not a.closed

        clock.advance(891)
        b = manager.create_session("nb-b")

        assert a.closed
        assert provider.pages[0].closed == 1
        assert [s["id"] for s in manager.list_sessions()] == [b.id]

    def test_eviction_picks_least_recently_active(self, manager, clock):
        a = manager.create_session("nb-a")
        clock.advance(1)
        b = manager.create_session("nb-b")
        clock.advance(1000)
        a.touch()
        clock.advance(901)

        manager.create_session("nb-c")

        assert b.closed
        assert not a.closed

    def test_idle_threshold_is_exclusive(self, provider, settings, clock):
        manager = SessionManager(provider, replace(settings, max_sessions=1, session_idle_timeout=900), clock=clock)
        manager.create_session("nb-a")
        clock.advance(900)

        with pytest.raises(SessionError):
            manager.create_session("nb-b")

    def test_navigation_failure_releases_slot(self, manager, provider):
        provider.fail_next_navigation = True

        with pytest.raises(BrowserError):
            manager.create_session("nb-1")

        assert manager.session_count == 0
        assert provider.pages[0].closed == 1
        assert manager.create_session("nb-1").is_ready


class TestSessionLifecycle:

    def test_get_unknown_session(self, manager):
        with pytest.raises(SessionError, match="Session not found"):
            manager.get_session("missing")

    def test_close_session_is_idempotent(self, manager, provider):
        session = manager.create_session("nb-1")

        assert manager.close_session(session.id) is True
        assert manager.close_session(session.id) is False
        assert provider.pages[0].closed == 1
        with pytest.raises(SessionError):
            session.require_page()

    def test_close_all(self, manager, provider):
        manager.create_session("nb-1")
        manager.create_session("nb-2")

        manager.close_all()

        assert manager.session_count == 0
        assert all(page.closed == 1 for page in provider.pages)

    def test_list_sessions_snapshot(self, manager, clock):
        session = manager.create_session("nb-1")
        clock.advance(42)

        [entry] = manager.list_sessions()

        assert entry == {
            "id": session.id,
            "notebook_id": "nb-1",
            "created_at": 1000.0,
            "last_activity": 1000.0,
            "idle_seconds": 42.0,
        }

    def test_find_by_notebook(self, manager):
        session = manager.create_session("nb-1")
        assert manager.find_by_notebook("nb-1") is session
        assert manager.find_by_notebook("nb-2") is None

    def test_cleanup_idle_sessions(self, manager, clock):
        stale = manager.create_session("nb-1")
        clock.advance(600)
        active = manager.create_session("nb-2")
        clock.advance(301)

        assert manager.cleanup_idle_sessions() == 1
        assert stale.closed
        assert not active.closed
        assert manager.cleanup_idle_sessions() == 0

    def test_shutdown_closes_everything(self, manager, provider):
        manager.create_session("nb-1")
        manager.start_cleanup()

        manager.shutdown()

        assert manager.session_count == 0
        assert provider.closed
        assert manager._cleanup_thread is None


class TestCleanupThread:

    def test_sweep_runs_periodically(self, provider, settings, clock):
        manager = SessionManager(
            provider,
            replace(settings, session_idle_timeout=900, cleanup_interval=0.01),
            clock=clock,
        )
        swept = threading.Event()
        original = manager.cleanup_idle_sessions

        def cleanup_and_signal():
            count = original()
            swept.set()
            return count

        manager.cleanup_idle_sessions = cleanup_and_signal
        session = manager.create_session("nb-1")
        clock.advance(901)

        manager.start_cleanup()
        try:
            assert swept.wait(timeout=5)
        finally:
            manager.stop_cleanup()

        assert session.closed

    def test_start_twice_keeps_one_thread(self, manager):
        manager.start_cleanup()
        thread = manager._cleanup_thread
        manager.start_cleanup()
        try:
            assert manager._cleanup_thread is thread
        finally:
            manager.stop_cleanup()
        assert not thread.is_alive()


class TestNotebookSession:

    def test_navigate_rejects_foreign_urls(self, clock):
        session = NotebookSession("nb-1", clock=clock)
        session.bind_page(FakePage())

        with pytest.raises(ValidationError):
            session.navigate("https://evil.com/")

    def test_touch_updates_activity(self, clock):
        session = NotebookSession("nb-1", clock=clock)
        clock.advance(5)
        session.touch()
        assert session.last_activity == 1005.0
        assert session.idle_seconds() == 0.0

    def test_navigate_without_page(self, clock):
        with pytest.raises(SessionError):
            NotebookSession("nb-1", clock=clock).navigate()
