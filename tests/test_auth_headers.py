import hashlib
from unittest.mock import MagicMock

import httpx
import pytest

from notebooklm_rpc.auth_headers import AuthHeaders, compute_sapisid_hash
from notebooklm_rpc.config import BASE_URL, DEFAULT_BUILD_LABEL
from notebooklm_rpc.cookie_store import Cookie
from notebooklm_rpc.errors import AuthenticationError, RequestTimeoutError

LANDING_HTML = (
    '<html><script>window.WIZ_global_data = {"SNlM0e":"csrf-token-1",'
    '"cfb2h":"boq_labs-tailwind-frontend_20990101.00_p0","FdrFJe":"-4242"};</script></html>'
)


def _page(text=LANDING_HTML, status=200, url=f"{BASE_URL}/"):
    return httpx.Response(status, request=httpx.Request("GET", url), text=text)


@pytest.fixture
def http_client():
    return MagicMock(spec=httpx.Client)


@pytest.fixture
def auth(cookie_store, google_cookies, settings, http_client, clock):
    cookie_store.save(google_cookies)
    return AuthHeaders(cookie_store, settings, http_client=http_client, clock=clock)


class TestCsrfToken:

    def test_token_is_extracted_with_build_label_and_session_id(self, auth, http_client):
        http_client.get.return_value = _page()

        assert auth.get_csrf_token() == "csrf-token-1"
        assert auth.build_label == "boq_labs-tailwind-frontend_20990101.00_p0"
        assert auth.session_id == "-4242"

    def test_token_reused_within_five_minutes(self, auth, http_client, clock):
        http_client.get.return_value = _page()

        auth.get_csrf_token()
        clock.advance(299)
        auth.get_csrf_token()

        assert http_client.get.call_count == 1

    def test_token_refetched_after_expiry(self, auth, http_client, clock):
        http_client.get.side_effect = [
            _page(),
            _page(LANDING_HTML.replace("csrf-token-1", "csrf-token-2")),
        ]

        assert auth.get_csrf_token() == "csrf-token-1"
        clock.advance(301)
        assert auth.get_csrf_token() == "csrf-token-2"
        assert http_client.get.call_count == 2

    def test_invalidate_forces_refetch(self, auth, http_client):
        http_client.get.return_value = _page()

        auth.get_csrf_token()
        auth.invalidate_csrf()
        auth.get_csrf_token()

        assert http_client.get.call_count == 2

    def test_escaped_token_pattern(self, auth, http_client):
        http_client.get.return_value = _page(r'<script>var d = "SNlM0e\x22:\x22escaped-token\x22";</script>')
        assert auth.get_csrf_token() == "escaped-token"

    def test_spaced_token_pattern(self, auth, http_client):
        http_client.get.return_value = _page('{"SNlM0e" :  "spaced-token"}')
        assert auth.get_csrf_token() == "spaced-token"

    def test_missing_token_raises_and_keeps_cache_empty(self, auth, http_client):
        http_client.get.return_value = _page("<html>short</html>")

        with pytest.raises(AuthenticationError, match="CSRF token not found"):
            auth.get_csrf_token()
        assert auth.build_label == DEFAULT_BUILD_LABEL

    def test_redirect_status_mentions_expired_cookies(self, auth, http_client):
        http_client.get.return_value = _page("", status=302)
        with pytest.raises(AuthenticationError, match="cookies may have expired"):
            auth.get_csrf_token()

    def test_other_status_has_generic_message(self, auth, http_client):
        http_client.get.return_value = _page("", status=500)
        with pytest.raises(AuthenticationError, match="HTTP 500") as exc_info:
            auth.get_csrf_token()
        assert "expired" not in exc_info.value.message

    def test_login_redirect_is_auth_error(self, auth, http_client):
        http_client.get.return_value = _page("<html>Sign in</html>", url="https://accounts.google.com/signin")
        with pytest.raises(AuthenticationError, match="cookies may have expired"):
            auth.get_csrf_token()

    def test_timeout_becomes_request_timeout(self, auth, http_client):
        http_client.get.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(RequestTimeoutError):
            auth.get_csrf_token()

    def test_no_cookies_is_auth_error(self, cookie_store, settings, http_client, clock):
        auth = AuthHeaders(cookie_store, settings, http_client=http_client, clock=clock)
        with pytest.raises(AuthenticationError, match="No cookies"):
            auth.get_csrf_token()
        http_client.get.assert_not_called()


class TestHeaders:

    def test_full_header_set(self, auth):
        headers = auth.get_headers()

        assert headers["Cookie"] == "SID=sid-value; SAPISID=sapisid-value; OSID=osid-value"
        assert headers["Content-Type"] == "application/x-www-form-urlencoded;charset=UTF-8"
        assert headers["Origin"] == BASE_URL
        assert headers["Referer"] == f"{BASE_URL}/"
        assert headers["X-Same-Domain"] == "1"
        assert headers["Authorization"].startswith("SAPISIDHASH ")

    def test_authorization_omitted_without_sapisid(self, auth):
        headers = auth.get_headers([Cookie(name="SID", value="x", domain=".google.com")])
        assert "Authorization" not in headers

    def test_explicit_empty_cookie_list_is_auth_error(self, auth):
        with pytest.raises(AuthenticationError):
            auth.get_headers([])


class TestSapisidHash:

    def test_hash_format(self):
        cookies = [Cookie(name="SAPISID", value="abc123", domain=".google.com")]
        expected = hashlib.sha1(f"1700000000 abc123 {BASE_URL}".encode()).hexdigest()

        assert compute_sapisid_hash(cookies, now=1700000000.9) == f"1700000000_{expected}"

    def test_lookup_order(self):
        cookies = [
            Cookie(name="__Secure-1PAPISID", value="one", domain=".google.com"),
            Cookie(name="__Secure-3PAPISID", value="three", domain=".google.com"),
        ]
        expected = hashlib.sha1(f"10 three {BASE_URL}".encode()).hexdigest()
        assert compute_sapisid_hash(cookies, now=10) == f"10_{expected}"

    def test_missing_secret_cookie(self):
        assert compute_sapisid_hash([Cookie(name="SID", value="x", domain=".google.com")]) is None
