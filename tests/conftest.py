import pytest

from notebooklm_rpc.config import Settings
from notebooklm_rpc.cookie_store import Cookie, CookieStore


class FakeSecretStore:
    """In-memory stand-in for the OS keychain."""

    def __init__(self, key: str | None = None):
        self.key = key

    def get_key(self):
        return self.key

    def set_key(self, key):
        self.key = key

    def delete_key(self):
        self.key = None


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / "data")


@pytest.fixture
def secret_store():
    return FakeSecretStore()


@pytest.fixture
def cookie_store(settings, secret_store):
    return CookieStore(settings.cookie_file, secret_store)


@pytest.fixture
def google_cookies():
    return [
        Cookie(name="SID", value="sid-value", domain=".google.com"),
        Cookie(name="SAPISID", value="sapisid-value", domain=".google.com", secure=True),
        Cookie(name="OSID", value="osid-value", domain="notebooklm.google.com"),
    ]


@pytest.fixture
def clock():
    return FakeClock()
