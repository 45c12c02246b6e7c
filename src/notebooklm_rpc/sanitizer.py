"""Cleanup of model answers before they are handed to an LLM caller."""

import re
from dataclasses import dataclass, field

ZERO_WIDTH_CHARS = re.compile(
    "[\u200B\u200C\u200D\u200E\u200F\uFEFF\u00AD\u2060-\u2064"
    "\u2066-\u206F]"
)

# Common prompt injection phrasings
INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+(all\s+)?prior\s+instructions", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?previous", re.IGNORECASE),
    re.compile(r"forget\s+(all\s+)?previous", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(?:a|an)\s+", re.IGNORECASE),
    re.compile(r"new\s+system\s+prompt", re.IGNORECASE),
    re.compile(r"\bSYSTEM\s*:", re.IGNORECASE),
    re.compile(r"\bASSISTANT\s*:", re.IGNORECASE),
    re.compile(r"\bUSER\s*:", re.IGNORECASE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"<<SYS>>", re.IGNORECASE),
    re.compile(r"<\|im_start\|>", re.IGNORECASE),
    re.compile(r"\bact\s+as\s+(?:a|an|if)\b", re.IGNORECASE),
    re.compile(r"\bpretend\s+(?:you(?:'re|\s+are)\s+)", re.IGNORECASE),
    re.compile(r"\brole\s*:\s*system\b", re.IGNORECASE),
]

EXCESS_NEWLINES = re.compile(r"\n{4,}")


@dataclass
class SanitizeResult:
    clean: str
    warnings: list[str] = field(default_factory=list)

    @property
    def has_injection_warnings(self) -> bool:
        return any("injection" in w for w in self.warnings)


def sanitize_response(text: str) -> SanitizeResult:
    """
    Strip invisible characters and flag likely prompt-injection text.

    The text itself is not rewritten beyond that: matches only produce
    warnings, and runs of 4+ newlines are collapsed to 3.
    """
    if not text:
        return SanitizeResult(clean="")

    warnings = []
    clean = ZERO_WIDTH_CHARS.sub("", text)
    if len(clean) != len(text):
        warnings.append(f"Stripped {len(text) - len(clean)} invisible characters from response")

    for pattern in INJECTION_PATTERNS:
        if pattern.search(clean):
            warnings.append(f'Potential prompt injection detected: pattern "{pattern.pattern}" matched')

    clean = EXCESS_NEWLINES.sub("\n\n\n", clean)
    return SanitizeResult(clean=clean, warnings=warnings)
