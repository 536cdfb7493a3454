"""Token estimation: character-density heuristics for text, messages and log entries.

Estimates are for planning the context window, not for billing. Each kind of
text gets its own chars-per-token divisor:

- prose: ~4 chars/token
- fenced code blocks: ~3.2 chars/token (identifiers, punctuation, indentation)
- structured data (JSON): ~2.8 chars/token (quotes, braces, short keys)

Every log entry also pays a fixed metadata overhead (timestamp and author
prefix) and a per-attachment overhead.
"""

from __future__ import annotations

import json
import math
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from huddle.store import LoggedMessage

PROSE_CHARS_PER_TOKEN = 4.0
CODE_CHARS_PER_TOKEN = 3.2
STRUCTURED_CHARS_PER_TOKEN = 2.8

# "[2025-01-01 10:00:00+01:00] [username]: " plus role framing
ENTRY_METADATA_TOKENS = 12
# path reference inside <slack_attachments>
ATTACHMENT_TOKENS = 24
# images are sent inline; ~1,200 tokens at 4 chars/token
IMAGE_ESTIMATED_CHARS = 4800
IMAGE_TOKENS = math.ceil(IMAGE_ESTIMATED_CHARS / PROSE_CHARS_PER_TOKEN)

_FENCE_RE = re.compile(r"```.*?(?:```|\Z)", re.DOTALL)


def _ceil_div(chars: int, chars_per_token: float) -> int:
    if chars <= 0:
        return 0
    return math.ceil(chars / chars_per_token)


def _looks_structured(text: str) -> bool:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        json.loads(stripped)
    except ValueError:
        # JSON lines: every non-empty line is its own document
        lines = [l for l in stripped.split("\n") if l.strip()]
        if len(lines) < 2:
            return False
        try:
            for l in lines:
                json.loads(l)
        except ValueError:
            return False
    return True


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens for free-form chat text.

    Fenced code blocks are costed with the code divisor, a body that parses
    as JSON (or JSON lines) with the structured divisor, the rest as prose.
    """
    if not text:
        return 0

    code_chars = 0
    prose_parts: list[str] = []
    last = 0
    for m in _FENCE_RE.finditer(text):
        prose_parts.append(text[last : m.start()])
        code_chars += m.end() - m.start()
        last = m.end()
    prose_parts.append(text[last:])
    rest = "".join(prose_parts)

    if _looks_structured(rest):
        rest_tokens = _ceil_div(len(rest), STRUCTURED_CHARS_PER_TOKEN)
    else:
        rest_tokens = _ceil_div(len(rest), PROSE_CHARS_PER_TOKEN)

    return rest_tokens + _ceil_div(code_chars, CODE_CHARS_PER_TOKEN)


def estimate_structured_tokens(value: Any) -> int:
    """Estimate tokens for a JSON-serializable value (tool schemas, payloads)."""
    if value is None:
        return 0
    return _ceil_div(len(json.dumps(value, separators=(",", ":"))), STRUCTURED_CHARS_PER_TOKEN)


def estimate_message_tokens(message: dict[str, Any]) -> int:
    """Estimate tokens for a model message (``{"role", "content"}``).

    Content may be a string or a list of typed blocks.
    """
    content = message.get("content", "")
    if isinstance(content, str):
        return estimate_text_tokens(content)

    total = 0
    if isinstance(content, list):
        for item in content:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type", "")
            if item_type == "text":
                total += estimate_text_tokens(item.get("text", ""))
            elif item_type == "thinking":
                total += estimate_text_tokens(item.get("thinking", ""))
            elif item_type in ("tool_use", "tool_call"):
                total += _ceil_div(len(item.get("name", "")), PROSE_CHARS_PER_TOKEN)
                total += estimate_structured_tokens(item.get("input", item.get("arguments", {})))
            elif item_type == "image":
                total += IMAGE_TOKENS
    return total


def estimate_entry_tokens(entry: LoggedMessage) -> int:
    """Estimate what one log entry costs once rendered into the context.

    History entries carry attachments as path references only; images are
    inlined for the triggering message alone.
    """
    return (
        ENTRY_METADATA_TOKENS
        + estimate_text_tokens(entry.text)
        + ATTACHMENT_TOKENS * len(entry.attachments)
    )
