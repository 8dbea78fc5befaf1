"""
Conversation continuity via a thread id hidden in assistant text.

The Notion thread id is appended to the last assistant message as an HTML
comment, which most chat clients do not render:

    Hello!

    <!-- tid:0f0e5c1a-... -->

Clients echo the history back on the next call, so the marker comes back with
it and the next exchange can continue the same Notion thread instead of
re-sending the whole transcript.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

THREAD_ID_PREFIX = "\n\n<!-- tid:"
THREAD_ID_SUFFIX = " -->"
THREAD_ID_RE = re.compile(r"<!-- tid:([a-f0-9-]+) -->")
# The marker together with the whitespace that separates it from the text.
_MARKER_SPAN_RE = re.compile(r"\s*<!-- tid:[a-f0-9-]+ -->")


def flatten_content(content: Any) -> str:
    """Flatten message content to text, keeping only text-typed parts."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: List[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


def marker(token: str) -> str:
    """Return the visible-text marker carrying `token`."""
    return f"{THREAD_ID_PREFIX}{token}{THREAD_ID_SUFFIX}"


def embed(content: str, token: str) -> str:
    """Append the thread marker to `content`, replacing any marker already there."""
    return strip(content) + marker(token)


def strip(content: str) -> str:
    """Remove the thread marker and the whitespace in front of it; other text is kept as is."""
    if not isinstance(content, str) or not THREAD_ID_RE.search(content):
        return content
    return _MARKER_SPAN_RE.sub("", content)


def extract(messages: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """Return the thread id carried by the most recent assistant message, if any."""
    if not isinstance(messages, list):
        return None
    for msg in reversed(messages):
        if not isinstance(msg, dict) or msg.get("role") != "assistant":
            continue
        match = THREAD_ID_RE.search(flatten_content(msg.get("content")))
        return match.group(1) if match else None
    return None


def is_continuation(messages: Optional[List[Dict[str, Any]]]) -> bool:
    return extract(messages) is not None
