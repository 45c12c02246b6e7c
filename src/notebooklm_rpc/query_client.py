"""Notebook questions over the GenerateFreeFormStreamed endpoint.

The streamed response reuses the batchexecute chunk framing but carries many
``wrb.fr`` envelopes, each holding one candidate fragment. Fragments are
either answer text or intermediate reasoning; the longest answer wins.
"""

import json
import logging
import random
import threading
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

import httpx

from .auth_headers import AuthHeaders
from .config import QUERY_URL, Settings
from .constants import (
    FRAGMENT_TYPES,
    NO_ANSWER_PLACEHOLDER,
    QUERY_PARAMS_TAIL,
    REQID_STEP,
    RPC_GET_NOTEBOOK,
)
from .errors import AuthenticationError, RequestTimeoutError, ValidationError
from .response_parser import decode_chunks, decode_payload, iter_envelopes
from .rpc_client import RpcClient
from .sanitizer import sanitize_response

logger = logging.getLogger("notebooklm_rpc.api")


@dataclass
class QueryResult:
    answer: str
    sources: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    is_follow_up: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": self.sources,
            "warnings": self.warnings,
            "is_follow_up": self.is_follow_up,
        }


@dataclass
class ParsedQueryResponse:
    answer: str
    sources: list[str]
    context: list | None


def extract_source_ids_from_notebook(notebook_data: Any) -> list[str]:
    """Pull source ids out of a get-notebook result.

    Notebook structure: [[title, sources, notebook_id, ...]], where each
    source is [[source_id], title, metadata, ...].
    """
    source_ids = []
    if not notebook_data or not isinstance(notebook_data, list):
        return source_ids

    notebook_info = notebook_data[0]
    if not isinstance(notebook_info, list) or len(notebook_info) < 2 or not isinstance(notebook_info[1], list):
        return source_ids

    for source in notebook_info[1]:
        if isinstance(source, list) and source and isinstance(source[0], list) and source[0]:
            source_id = source[0][0]
            if isinstance(source_id, str):
                source_ids.append(source_id)
    return source_ids


def _fragment(payload: Any) -> tuple[str | None, str]:
    """Return (text, fragment type name) for one decoded envelope payload.

    Shape: [["text", null, [...], null, [..., type]], ...] where type is
    1 for answer and 2 for reasoning. A bare string at payload[0] is an answer.
    """
    if not isinstance(payload, list) or not payload:
        return None, "answer"

    first = payload[0]
    if isinstance(first, str):
        return first, "answer"
    if not isinstance(first, list) or not first or not isinstance(first[0], str):
        return None, "answer"

    code = None
    if len(first) > 4 and isinstance(first[4], list) and first[4] and isinstance(first[4][-1], int):
        code = first[4][-1]
    # Unknown or missing discriminator counts as an answer
    return first[0], FRAGMENT_TYPES.get_name(code)


def _collect_sources(payload: Any, sources: list[str]) -> None:
    """Append titles of [source_id, title, ...] entries nested one level down."""
    if not isinstance(payload, list):
        return
    for item in payload:
        if not isinstance(item, list):
            continue
        for sub in item:
            if (
                isinstance(sub, list)
                and len(sub) >= 2
                and isinstance(sub[0], str)
                and isinstance(sub[1], str)
                and sub[1] not in sources
            ):
                sources.append(sub[1])


def _context_candidate(payload: Any) -> list | None:
    """Longest top-level item with more than 3 elements whose first is a list."""
    if not isinstance(payload, list):
        return None
    best = None
    for item in payload:
        if isinstance(item, list) and len(item) > 3 and isinstance(item[0], list):
            if best is None or len(item) > len(best):
                best = item
    return best


def parse_query_response(response_text: str) -> ParsedQueryResponse:
    """Parse the streamed response into answer, source titles and context.

    Strategy: find the LONGEST fragment marked as an answer. If no answer
    fragment exists, fall back to the longest fragment of any type.
    """
    longest_answer = ""
    longest_any = ""
    sources: list[str] = []
    context = None

    for envelope in iter_envelopes(decode_chunks(response_text)):
        if len(envelope) < 3:
            continue
        payload = decode_payload(envelope[2])

        text, kind = _fragment(payload)
        if text:
            if kind == "answer" and len(text) > len(longest_answer):
                longest_answer = text
            if len(text) > len(longest_any):
                longest_any = text

        _collect_sources(payload, sources)

        candidate = _context_candidate(payload)
        if candidate is not None and (context is None or len(candidate) > len(context)):
            context = candidate

    if context is None:
        logger.debug("No conversation context found in query response")

    return ParsedQueryResponse(
        answer=longest_answer or longest_any or NO_ANSWER_PLACEHOLDER,
        sources=sources,
        context=context,
    )


class QueryClient:
    """Asks questions against a notebook and keeps per-notebook chat context."""

    def __init__(
        self,
        auth: AuthHeaders,
        settings: Settings | None = None,
        http_client: httpx.Client | None = None,
        rpc_client: RpcClient | None = None,
    ):
        self.auth = auth
        self.settings = settings or auth.settings
        self.rpc_client = rpc_client
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=self.settings.query_timeout)

        # Key: notebook_id, Value: last conversation context returned for it
        self._conversation_cache: dict[str, list] = {}
        self._lock = threading.Lock()

        # Request counter for the _reqid parameter
        self._reqid_counter = random.randint(100000, 999999)

    def _next_reqid(self) -> int:
        with self._lock:
            self._reqid_counter += REQID_STEP
            return self._reqid_counter

    def build_url(self) -> str:
        params = {
            "bl": self.auth.build_label,
            "hl": self.settings.locale,
            "_reqid": str(self._next_reqid()),
            "rt": "c",
        }
        if self.auth.session_id:
            params["f.sid"] = self.auth.session_id
        return f"{QUERY_URL}?{urllib.parse.urlencode(params)}"

    @staticmethod
    def build_request_body(
        source_ids: list[str],
        question: str,
        history: list | None,
        conversation_id: str | None,
        csrf_token: str,
    ) -> str:
        # Each source id is wrapped as [[sid]]
        params = [
            [[[sid]] for sid in source_ids],
            question,
            history,
            QUERY_PARAMS_TAIL,
            conversation_id,
        ]
        params_json = json.dumps(params, separators=(",", ":"))
        f_req_json = json.dumps([None, params_json], separators=(",", ":"))
        return (
            f"f.req={urllib.parse.quote(f_req_json, safe='')}"
            f"&at={urllib.parse.quote(csrf_token, safe='')}&"
        )

    def _resolve_source_ids(self, notebook_id: str) -> list[str]:
        if self.rpc_client is None:
            raise ValidationError("source_ids are required when no RPC client is attached")
        notebook_data = self.rpc_client.call_rpc(
            RPC_GET_NOTEBOOK,
            [notebook_id, None, [2], None, 0],
            f"/notebook/{notebook_id}",
        )
        return extract_source_ids_from_notebook(notebook_data)

    def query(
        self,
        notebook_id: str,
        question: str,
        source_ids: list[str] | None = None,
        follow_up: bool = False,
        conversation_id: str | None = None,
        timeout: float | None = None,
    ) -> QueryResult:
        """Ask a question against a notebook.

        Args:
            notebook_id: The notebook UUID
            question: The question to ask
            source_ids: Sources to query. None means all sources of the notebook,
                looked up through the attached RPC client.
            follow_up: Send the notebook's cached conversation context as history
            conversation_id: Optional conversation id forwarded to the service
            timeout: Request timeout in seconds (default: settings.query_timeout)

        Returns:
            QueryResult with the sanitized answer, source titles and warnings
        """
        if not notebook_id:
            raise ValidationError("notebook_id is required")
        if not question or not question.strip():
            raise ValidationError("question must not be empty")

        if source_ids is None:
            source_ids = self._resolve_source_ids(notebook_id)

        history = self.get_conversation(notebook_id) if follow_up else None
        if timeout is None:
            timeout = self.settings.query_timeout

        csrf_token = self.auth.get_csrf_token()
        headers = self.auth.get_headers()
        body = self.build_request_body(source_ids, question, history, conversation_id, csrf_token)
        url = self.build_url()

        try:
            response = self._client.post(url, content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Query timed out after {timeout}s", e)

        status = response.status_code
        if status in (401, 403):
            self.auth.invalidate_csrf()
            raise AuthenticationError(
                f"Authentication failed (HTTP {status}). "
                "Save fresh cookies with save_auth_cookies to re-authenticate."
            )
        if not 200 <= status < 300:
            raise ValidationError(f"Query failed with status {status}")

        parsed = parse_query_response(response.text)

        if parsed.context is not None:
            with self._lock:
                self._conversation_cache[notebook_id] = parsed.context

        sanitized = sanitize_response(parsed.answer)
        return QueryResult(
            answer=sanitized.clean,
            sources=parsed.sources,
            warnings=sanitized.warnings,
            is_follow_up=history is not None,
        )

    def get_conversation(self, notebook_id: str) -> list | None:
        with self._lock:
            return self._conversation_cache.get(notebook_id)

    def clear_conversation(self, notebook_id: str) -> bool:
        """Drop the cached context for one notebook. False if there was none."""
        with self._lock:
            return self._conversation_cache.pop(notebook_id, None) is not None

    def clear_all(self) -> None:
        with self._lock:
            self._conversation_cache.clear()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
