from notebooklm_rpc.auth_state import (
    REFRESH_THRESHOLD,
    get_auth_state,
    is_session_fresh,
    unexpired_cookies,
)
from notebooklm_rpc.cookie_store import Cookie

NOW = 1_800_000_000.0


def _cookie(name, expires=-1):
    return Cookie(name=name, value="v", domain=".google.com", expires=expires)


def test_no_cookies_is_not_authenticated():
    state = get_auth_state([], now=NOW)

    assert not state.is_valid
    assert state.needs_refresh
    assert state.to_dict(NOW)["message"].startswith("Not authenticated")


def test_expired_cookies_are_dropped():
    cookies = [_cookie("old", NOW - 1), _cookie("session"), _cookie("new", NOW + 10)]
    assert [c.name for c in unexpired_cookies(cookies, NOW)] == ["session", "new"]


def test_all_expired_means_not_authenticated():
    assert not get_auth_state([_cookie("SID", NOW - 60)], now=NOW).is_valid


def test_session_cookies_only_are_fresh():
    state = get_auth_state([_cookie("SID")], now=NOW)

    assert state.is_valid
    assert not state.needs_refresh
    assert state.expires_at is None
    assert "expires_at" not in state.to_dict(NOW)


def test_earliest_expiry_drives_refresh():
    cookies = [_cookie("SID", NOW + REFRESH_THRESHOLD + 3600), _cookie("HSID", NOW + 600)]
    state = get_auth_state(cookies, now=NOW)

    assert state.is_valid
    assert state.needs_refresh
    assert state.expires_at == NOW + 600
    assert state.to_dict(NOW)["expires_in_minutes"] == 10


def test_fresh_when_everything_outlives_threshold():
    cookies = [_cookie("SID", NOW + REFRESH_THRESHOLD + 1)]
    assert is_session_fresh(cookies, NOW)
    assert not get_auth_state(cookies, now=NOW).needs_refresh


def test_to_dict_format():
    data = get_auth_state([_cookie("SID", 1_900_000_000)], now=NOW).to_dict(NOW)

    assert data["authenticated"] is True
    assert data["expires_at"] == "2030-03-17T17:46:40Z"
    assert "message" not in data
