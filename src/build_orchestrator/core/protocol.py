"""Decoding of the agent's stream-json stdout.

The agent writes one JSON record per line. Records may be split across read
chunks, so text is accumulated in a buffer and only complete lines are
decoded. Assistant text blocks may embed a status annotation such as::

    <builder status="clarify" phase="design">Which database should I use?</builder>
"""

import json
import re

from build_orchestrator.db.models import NOTIFICATION_KINDS, Notification

ANNOTATION_TAG = "builder"

_ANNOTATION_RE = re.compile(
    rf'<{ANNOTATION_TAG}\s+status="({"|".join(NOTIFICATION_KINDS)})"'
    rf'(?:\s+phase="([^"]*)")?>'
    rf"([\s\S]*?)</{ANNOTATION_TAG}>"
)


def reassemble(buffer: str, text: str) -> tuple[list[str], str]:
    """Append text to buffer and split off complete lines.

    Returns the complete lines and the trailing fragment to carry forward.
    """
    lines = (buffer + text).split("\n")
    remainder = lines.pop()
    return lines, remainder


def decode_record(line: str) -> dict | None:
    """Parse one NDJSON line. Blank or malformed lines yield None."""
    if not line.strip():
        return None
    try:
        record = json.loads(line)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    return record


def extract_annotation(text: str) -> Notification | None:
    """Return the first status annotation embedded in text, if any."""
    match = _ANNOTATION_RE.search(text)
    if not match:
        return None
    status, phase, content = match.groups()
    return Notification(status=status, phase=phase or None, content=content.strip())


def session_id_of(record: dict) -> str | None:
    """Session id announced by a system/init record."""
    if record.get("type") == "system" and record.get("subtype") == "init":
        session_id = record.get("session_id")
        if isinstance(session_id, str) and session_id:
            return session_id
    return None


def annotations_in(record: dict) -> list[Notification]:
    """Annotations carried by an assistant record, one at most per text block."""
    if record.get("type") != "assistant":
        return []
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []

    found = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if not isinstance(text, str) or not text:
            continue
        notification = extract_annotation(text)
        if notification:
            found.append(notification)
    return found


def is_turn_result(record: dict) -> bool:
    """True for the record that closes one agent turn."""
    return record.get("type") == "result"
