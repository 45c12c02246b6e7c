"""Decoding of batchexecute responses.

Response format::

    )]}'
    <byte_count>
    <json_array>
    <byte_count>
    <json_array>
    ...

Each JSON array is a list of envelopes. The one we care about looks like
``["wrb.fr", rpc_id, "<result json>", null, null, error_codes, error_kind]``.

Byte counts are measured on the UTF-8 encoding, so all slicing here works on
bytes rather than str.
"""

import json
import logging
from typing import Any, Iterator

from .constants import ENVELOPE_MARKER, ERROR_CODE_AUTH_REJECTED, ERROR_KIND_GENERIC, XSSI_PREFIX
from .errors import AuthenticationError, ValidationError

logger = logging.getLogger("notebooklm_rpc.api")


class _NoResult:
    """Marker for "no envelope matched the call id"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_RESULT"


NO_RESULT = _NoResult()

_UNDECODABLE = object()


def strip_security_prefix(text: str) -> str:
    """Remove the anti-XSSI ``)]}'`` guard and the whitespace after it."""
    stripped = text.lstrip()
    if not stripped.startswith(XSSI_PREFIX):
        return text
    while stripped.startswith(XSSI_PREFIX):
        stripped = stripped[len(XSSI_PREFIX):].lstrip()
    return stripped


def _loads(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return _UNDECODABLE


def _length_prefix(line: bytes) -> int | None:
    """Return the byte count if ``line`` is a canonical positive integer."""
    if not line.isdigit():
        return None
    count = int(line)
    if count <= 0 or str(count).encode("ascii") != line:
        return None
    return count


def _accumulate_lines(data: bytes, start: int) -> tuple[Any, int]:
    """Grow the payload one line at a time from ``start`` until it decodes."""
    end = start
    while end < len(data):
        newline = data.find(b"\n", end)
        end = len(data) if newline == -1 else newline + 1
        value = _loads(data[start:end])
        if value is not _UNDECODABLE:
            return value, end
    return _UNDECODABLE, start


def decode_chunks(text: str) -> list[list]:
    """
    Split a response into its decoded JSON arrays.

    Never raises: undecodable fragments and non-array values are skipped.
    """
    data = strip_security_prefix(text).encode("utf-8")
    chunks: list[list] = []
    pos = 0

    while pos < len(data):
        newline = data.find(b"\n", pos)
        line_end = len(data) if newline == -1 else newline
        line = data[pos:line_end].strip()
        next_pos = line_end + 1

        if not line:
            pos = next_pos
            continue

        count = _length_prefix(line)
        if count is None:
            # Not a byte count, try to parse the line itself
            value = _loads(line)
            if isinstance(value, list):
                chunks.append(value)
            pos = next_pos
            continue

        start = next_pos
        value = _loads(data[start:start + count])
        if value is not _UNDECODABLE:
            end = start + count
        else:
            # Count disagrees with the payload; fall back to whole lines
            value, end = _accumulate_lines(data, start)
            if value is _UNDECODABLE:
                end = start + count

        if isinstance(value, list):
            chunks.append(value)
        pos = end

    return chunks


def iter_envelopes(chunks: list[list]) -> Iterator[list]:
    """Yield every ``wrb.fr`` envelope found in decoded chunks."""
    for chunk in chunks:
        for item in chunk:
            if isinstance(item, list) and len(item) >= 2 and item[0] == ENVELOPE_MARKER:
                yield item


def is_auth_rejection(envelope: list) -> bool:
    """Signature: ``["wrb.fr", id, null, null, null, [16], "generic"]``."""
    return (
        len(envelope) > 6
        and envelope[6] == ERROR_KIND_GENERIC
        and isinstance(envelope[5], list)
        and ERROR_CODE_AUTH_REJECTED in envelope[5]
    )


def decode_payload(payload: Any) -> Any:
    """Decode a JSON-string payload, keeping the raw string if it is not JSON."""
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            return payload
    return payload


def extract_result(chunks: list[list], call_id: str) -> Any:
    """
    Find the result for ``call_id``.

    An auth rejection in any envelope raises AuthenticationError, whatever its
    call id. Returns NO_RESULT when no envelope matches.
    """
    envelopes = list(iter_envelopes(chunks))

    for envelope in envelopes:
        if is_auth_rejection(envelope):
            raise AuthenticationError("RPC Error 16: Authentication rejected by API")

    for envelope in envelopes:
        if envelope[1] == call_id:
            return decode_payload(envelope[2] if len(envelope) > 2 else None)

    if logger.isEnabledFor(logging.DEBUG):
        found = [e[1] for e in envelopes]
        logger.debug(f"No envelope for {call_id}, found: {found}")
    return NO_RESULT


def parse_and_extract(text: str, call_id: str) -> Any:
    """Decode a full response and extract the result for ``call_id``."""
    chunks = decode_chunks(text)
    if not chunks:
        if text.strip():
            logger.error(f"0 chunks decoded from {len(text)} chars. Preview: {text[:300]!r}")
            raise ValidationError("Empty or unparseable response from API")
        return NO_RESULT
    return extract_result(chunks, call_id)
