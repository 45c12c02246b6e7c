import json
import urllib.parse
from unittest.mock import MagicMock

import httpx
import pytest

from notebooklm_rpc.auth_headers import AuthHeaders
from notebooklm_rpc.config import QUERY_URL
from notebooklm_rpc.constants import NO_ANSWER_PLACEHOLDER, REQID_STEP, RPC_GET_NOTEBOOK
from notebooklm_rpc.errors import AuthenticationError, RequestTimeoutError, ValidationError
from notebooklm_rpc.query_client import (
    QueryClient,
    extract_source_ids_from_notebook,
    parse_query_response,
)
from notebooklm_rpc.rpc_client import RpcClient

CONTEXT = [["turn-1"], None, "q", "a"]


def _envelope(payload) -> list:
    return ["wrb.fr", None, json.dumps(payload)]


def _fragment(text, type_code, *extra):
    return [[text, None, None, None, [None, type_code]], *extra]


def _stream(*payloads) -> str:
    """Build a streamed response with one length-prefixed block per payload."""
    parts = [")]}'\n"]
    for payload in payloads:
        chunk = json.dumps([_envelope(payload)])
        parts.append(f"{len(chunk.encode('utf-8'))}\n{chunk}\n")
    return "".join(parts)


def _response(status=200, text=""):
    return httpx.Response(status, request=httpx.Request("POST", QUERY_URL), text=text)


def _form(body: str) -> list:
    """Decode the params array out of a query request body."""
    form = urllib.parse.parse_qs(body.rstrip("&"))
    outer = json.loads(form["f.req"][0])
    assert outer[0] is None
    return json.loads(outer[1])


@pytest.fixture
def auth():
    auth = MagicMock(spec=AuthHeaders)
    auth.get_csrf_token.return_value = "csrf"
    auth.get_headers.return_value = {"Cookie": "SID=x"}
    auth.build_label = "bl-test"
    auth.session_id = None
    return auth


@pytest.fixture
def http_client():
    return MagicMock(spec=httpx.Client)


@pytest.fixture
def client(auth, settings, http_client):
    return QueryClient(auth, settings, http_client=http_client)


class TestParseQueryResponse:

    def test_longest_answer_beats_longer_reasoning(self):
        text = _stream(
            _fragment("Short answer", 1),
            _fragment("A much longer stretch of internal reasoning text", 2),
            _fragment("The final, complete answer", 1),
        )
        assert parse_query_response(text).answer == "The final, complete answer"

    def test_falls_back_to_longest_reasoning(self):
        text = _stream(_fragment("thinking", 2), _fragment("thinking harder", 2))
        assert parse_query_response(text).answer == "thinking harder"

    def test_missing_discriminator_counts_as_answer(self):
        text = _stream([["plain answer"]], ["bare string answer"])
        assert parse_query_response(text).answer == "bare string answer"

    def test_placeholder_when_nothing_found(self):
        assert parse_query_response(")]}'\n").answer == NO_ANSWER_PLACEHOLDER
        assert parse_query_response(_stream([1, 2], None)).answer == NO_ANSWER_PLACEHOLDER

    def test_source_titles_are_collected_once(self):
        refs = [["src-1", "Paper A"], ["src-2", "Paper B"]]
        text = _stream(_fragment("one", 1, refs), _fragment("one two", 1, [["src-1", "Paper A"]]))

        assert parse_query_response(text).sources == ["Paper A", "Paper B"]

    def test_context_is_longest_candidate(self):
        short = [["c"], None, None, None]
        text = _stream(_fragment("a", 1, short), _fragment("ab", 1, CONTEXT + ["extra"]))

        assert parse_query_response(text).context == CONTEXT + ["extra"]

    def test_no_context(self):
        assert parse_query_response(_stream(_fragment("a", 1))).context is None


class TestRequest:

    def test_body_layout(self):
        body = QueryClient.build_request_body(["s1", "s2"], "Why?", None, None, "tok")
        assert _form(body) == [[[["s1"]], [["s2"]]], "Why?", None, [2, None, [1]], None]
        assert body.endswith("&at=tok&")

    def test_reqid_steps_by_fixed_amount(self, client):
        first = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(client.build_url()).query))
        second = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(client.build_url()).query))

        assert int(second["_reqid"]) - int(first["_reqid"]) == REQID_STEP
        assert first["bl"] == "bl-test"
        assert first["rt"] == "c"
        assert "f.sid" not in first


class TestQuery:

    def test_answer_is_sanitized(self, client, http_client):
        http_client.post.return_value = _response(
            text=_stream(_fragment(f"Answer{chr(0x200B)} text", 1))
        )

        result = client.query("nb-1", "What?", source_ids=["s1"])

        assert result.answer == "Answer text"
        assert result.warnings == ["Stripped 1 invisible characters from response"]
        assert result.is_follow_up is False

    def test_follow_up_sends_cached_context(self, client, http_client):
        http_client.post.side_effect = [
            _response(text=_stream(_fragment("first", 1, CONTEXT))),
            _response(text=_stream(_fragment("second", 1))),
        ]

        client.query("nb-1", "First?", source_ids=["s1"])
        assert client.get_conversation("nb-1") == CONTEXT

        result = client.query("nb-1", "And then?", source_ids=["s1"], follow_up=True)

        params = _form(http_client.post.call_args.kwargs["content"])
        assert params[2] == CONTEXT
        assert result.is_follow_up is True
        # No new context in the second response, the old one stays
        assert client.get_conversation("nb-1") == CONTEXT

    def test_follow_up_without_context_sends_no_history(self, client, http_client):
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1)))

        result = client.query("nb-1", "Q?", source_ids=[], follow_up=True)

        assert _form(http_client.post.call_args.kwargs["content"])[2] is None
        assert result.is_follow_up is False

    def test_conversations_are_per_notebook(self, client, http_client):
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1, CONTEXT)))

        client.query("nb-1", "Q?", source_ids=[])
        assert client.get_conversation("nb-2") is None

        assert client.clear_conversation("nb-1") is True
        assert client.clear_conversation("nb-1") is False
        assert client.get_conversation("nb-1") is None

    def test_clear_all(self, client, http_client):
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1, CONTEXT)))
        client.query("nb-1", "Q?", source_ids=[])
        client.query("nb-2", "Q?", source_ids=[])

        client.clear_all()

        assert client.get_conversation("nb-1") is None
        assert client.get_conversation("nb-2") is None

    def test_auth_failure_invalidates_csrf(self, client, auth, http_client):
        http_client.post.return_value = _response(401)

        with pytest.raises(AuthenticationError):
            client.query("nb-1", "Q?", source_ids=[])
        auth.invalidate_csrf.assert_called_once()

    def test_server_error(self, client, http_client):
        http_client.post.return_value = _response(500)
        with pytest.raises(ValidationError, match="status 500"):
            client.query("nb-1", "Q?", source_ids=[])

    def test_timeout(self, client, http_client):
        http_client.post.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(RequestTimeoutError):
            client.query("nb-1", "Q?", source_ids=[], timeout=1)

    def test_timeout_defaults_to_settings(self, client, http_client, settings):
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1)))

        client.query("nb-1", "Q?", source_ids=[])
        assert http_client.post.call_args.kwargs["timeout"] == settings.query_timeout

    def test_explicit_zero_timeout_is_kept(self, client, http_client):
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1)))

        client.query("nb-1", "Q?", source_ids=[], timeout=0)
        assert http_client.post.call_args.kwargs["timeout"] == 0

    @pytest.mark.parametrize("notebook_id,question", [("", "Q?"), ("nb-1", ""), ("nb-1", "   ")])
    def test_invalid_input(self, client, http_client, notebook_id, question):
        with pytest.raises(ValidationError):
            client.query(notebook_id, question, source_ids=[])
        http_client.post.assert_not_called()

    def test_source_ids_resolved_through_rpc_client(self, auth, settings, http_client):
        rpc_client = MagicMock(spec=RpcClient)
        rpc_client.call_rpc.return_value = [["Notebook", [[["s1"], "A"], [["s2"], "B"]], "nb-1"]]
        client = QueryClient(auth, settings, http_client=http_client, rpc_client=rpc_client)
        http_client.post.return_value = _response(text=_stream(_fragment("a", 1)))

        client.query("nb-1", "Q?")

        rpc_client.call_rpc.assert_called_once_with(
            RPC_GET_NOTEBOOK, ["nb-1", None, [2], None, 0], "/notebook/nb-1"
        )
        assert _form(http_client.post.call_args.kwargs["content"])[0] == [[["s1"]], [["s2"]]]

    def test_source_ids_required_without_rpc_client(self, client):
        with pytest.raises(ValidationError, match="source_ids"):
            client.query("nb-1", "Q?")


class TestExtractSourceIds:

    def test_extracts_ids(self):
        data = [["Title", [[["a"], "A"], [["b"], "B", {}], "junk", [[]]], "nb"]]
        assert extract_source_ids_from_notebook(data) == ["a", "b"]

    @pytest.mark.parametrize("data", [None, [], [None], [["Title"]], [["Title", None]]])
    def test_unexpected_shapes(self, data):
        assert extract_source_ids_from_notebook(data) == []
