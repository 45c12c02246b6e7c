"""
Constants and mappings for the NotebookLM batchexecute protocol.

RPC identifiers, wire markers and code mappings used by the clients. Payload
shapes for individual RPCs are left to callers.
"""


class CodeMapper:
    """Maps integer type codes found in payloads to readable names."""

    def __init__(self, mapping: dict[str, int], unknown_label: str = "unknown"):
        self._code_to_name: dict[int, str] = {v: k for k, v in mapping.items()}
        self._unknown_label = unknown_label

    def get_name(self, code: int | None) -> str:
        """Get string name for an integer code, or the unknown label."""
        if code is None:
            return self._unknown_label
        return self._code_to_name.get(code, self._unknown_label)


# =============================================================================
# Wire markers
# =============================================================================
XSSI_PREFIX = ")]}'"
ENVELOPE_MARKER = "wrb.fr"
# ["wrb.fr", rpc_id, null, null, null, [16], "generic"]
ERROR_KIND_GENERIC = "generic"
ERROR_CODE_AUTH_REJECTED = 16

# =============================================================================
# RPC IDs
# =============================================================================
RPC_LIST_NOTEBOOKS = "wXbhsf"
RPC_GET_NOTEBOOK = "rLM1Ne"
RPC_CREATE_NOTEBOOK = "CCqFvf"
RPC_UPDATE_NOTEBOOK = "s0tc2d"  # rename + chat configuration
RPC_DELETE_NOTEBOOK = "WWINqb"
RPC_GET_SUMMARY = "VfAZjd"
RPC_ADD_SOURCE = "izAoDd"
RPC_GET_SOURCE = "hizoJc"
RPC_CHECK_FRESHNESS = "yR9Yof"
RPC_SYNC_DRIVE = "FLmJqe"
RPC_DELETE_SOURCE = "tGMBJ"
RPC_GET_SOURCE_GUIDE = "tr032e"
RPC_START_FAST_RESEARCH = "Ljjv0c"
RPC_START_DEEP_RESEARCH = "QA9ei"
RPC_POLL_RESEARCH = "e3bVqc"
RPC_IMPORT_RESEARCH = "LBwxtb"
RPC_CREATE_STUDIO = "R7cb6c"
RPC_POLL_STUDIO = "gArtLc"
RPC_DELETE_STUDIO = "V5N4be"
RPC_GENERATE_MIND_MAP = "yyryJe"
RPC_SAVE_MIND_MAP = "CYK0Xb"
RPC_LIST_MIND_MAPS = "cFji9"

# RPC ID to method name mapping for debug logging
RPC_NAMES = {
    RPC_LIST_NOTEBOOKS: "list_notebooks",
    RPC_GET_NOTEBOOK: "get_notebook",
    RPC_CREATE_NOTEBOOK: "create_notebook",
    RPC_UPDATE_NOTEBOOK: "update_notebook",
    RPC_DELETE_NOTEBOOK: "delete_notebook",
    RPC_GET_SUMMARY: "get_summary",
    RPC_ADD_SOURCE: "add_source",
    RPC_GET_SOURCE: "get_source",
    RPC_CHECK_FRESHNESS: "check_freshness",
    RPC_SYNC_DRIVE: "sync_drive",
    RPC_DELETE_SOURCE: "delete_source",
    RPC_GET_SOURCE_GUIDE: "get_source_guide",
    RPC_START_FAST_RESEARCH: "start_fast_research",
    RPC_START_DEEP_RESEARCH: "start_deep_research",
    RPC_POLL_RESEARCH: "poll_research",
    RPC_IMPORT_RESEARCH: "import_research",
    RPC_CREATE_STUDIO: "create_studio",
    RPC_POLL_STUDIO: "poll_studio",
    RPC_DELETE_STUDIO: "delete_studio",
    RPC_GENERATE_MIND_MAP: "generate_mind_map",
    RPC_SAVE_MIND_MAP: "save_mind_map",
    RPC_LIST_MIND_MAPS: "list_mind_maps",
}

# =============================================================================
# Streaming query fragments
# =============================================================================
FRAGMENT_ANSWER = 1
FRAGMENT_REASONING = 2

# Anything without a recognizable discriminator counts as an answer
FRAGMENT_TYPES = CodeMapper({
    "answer": FRAGMENT_ANSWER,
    "reasoning": FRAGMENT_REASONING,
}, unknown_label="answer")

NO_ANSWER_PLACEHOLDER = "No response received."

# Fixed tail of the query params: [2, null, [1]]
QUERY_PARAMS_TAIL = [2, None, [1]]
REQID_STEP = 100000
