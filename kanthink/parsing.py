"""
Tolerant parsing of model output.

Models wrap JSON in prose and code fences. These helpers find the
first top-level JSON array or object in a response without requiring
the whole body to be JSON, and turn markdown card bodies into
sanitized HTML.
"""

from __future__ import annotations

import json
from typing import Any

import bleach
import markdown
from loguru import logger

ALLOWED_TAGS = [
    "p", "br", "hr", "strong", "em", "b", "i", "u", "s", "del", "code", "pre",
    "blockquote", "ul", "ol", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "a", "table", "thead", "tbody", "tr", "th", "td",
]
ALLOWED_ATTRIBUTES = {"a": ["href", "title"]}
ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


def _balanced_end(text: str, start: int) -> int | None:
    """Index just past the bracket that closes text[start], honoring JSON strings."""
    opener = text[start]
    closer = "]" if opener == "[" else "}"
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _find_json(text: str, opener: str, expected: type) -> Any | None:
    if not text:
        return None

    pos = text.find(opener)
    while pos != -1:
        end = _balanced_end(text, pos)
        if end is None:
            break
        try:
            value = json.loads(text[pos:end])
            if isinstance(value, expected):
                return value
        except json.JSONDecodeError:
            pass
        # Skip past the whole region so nested brackets never win over the top level
        pos = text.find(opener, end)

    # Unbalanced output: try the widest span as a last resort
    first, last = text.find(opener), text.rfind("]" if opener == "[" else "}")
    if first != -1 and last > first:
        try:
            value = json.loads(text[first:last + 1])
            if isinstance(value, expected):
                return value
        except json.JSONDecodeError:
            pass
    return None


def extract_json_array(text: str) -> list | None:
    """First top-level JSON array embedded in `text`, or None."""
    return _find_json(text, "[", list)


def extract_json_object(text: str) -> dict | None:
    """First top-level JSON object embedded in `text`, or None."""
    return _find_json(text, "{", dict)


def markdown_to_html(text: str) -> str:
    """Escaped markdown (as it arrives inside JSON strings) to sanitized HTML."""
    unescaped = text.replace("\\n", "\n")
    try:
        html = markdown.markdown(unescaped, extensions=["extra", "nl2br", "sane_lists"])
    except Exception as e:
        logger.warning(f"[PARSE] Markdown conversion failed: {e}")
        return bleach.clean(unescaped, tags=[], strip=True)
    return bleach.clean(
        html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )
