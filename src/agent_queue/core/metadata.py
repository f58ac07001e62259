"""Versioned metadata blocks embedded in issue and comment bodies.

A block looks like ``<!-- agent-queue:v1:plan {"goals": [...]} -->`` and sits
after the human-readable text. Readers walk ``_PARSERS`` in order: the current
version first, then older formats. A new version is added by prepending a
parser, never by loosening an existing one.
"""

import json
import re

MARKER = "agent-queue"
META_VERSION = "v1"


def _versioned_pattern(kind: str, version: str) -> re.Pattern:
    return re.compile(
        rf"<!-- {re.escape(MARKER)}:{re.escape(version)}:{re.escape(kind)} (\{{.*?\}}) -->",
        re.DOTALL,
    )


def _legacy_pattern(kind: str) -> re.Pattern:
    return re.compile(rf"<!-- {re.escape(MARKER)}:{re.escape(kind)} (\{{.*?\}}) -->", re.DOTALL)


_PARSERS = (
    lambda kind: _versioned_pattern(kind, META_VERSION),
    _legacy_pattern,
)


def _decode(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_metadata(body: str | None, kind: str) -> dict | None:
    """Return the payload of the first ``kind`` block, or None if absent or malformed."""
    if not body:
        return None
    for build in _PARSERS:
        match = build(kind).search(body)
        if match:
            data = _decode(match.group(1))
            if data is not None:
                return data
    return None


def metadata_block(kind: str, data: dict) -> str:
    # ">" never appears raw, so payload text cannot end the HTML comment
    payload = json.dumps(data, separators=(",", ":")).replace(">", "\\u003e")
    return f"<!-- {MARKER}:{META_VERSION}:{kind} {payload} -->"


def format_metadata(kind: str, data: dict, human_text: str) -> str:
    """Human-readable text followed by a trailing metadata block."""
    return f"{human_text}\n\n{metadata_block(kind, data)}"


def replace_metadata(body: str | None, kind: str, data: dict) -> str:
    """Rewrite every ``kind`` block in ``body`` as one current-version block."""
    body = body or ""
    stripped = body
    for build in _PARSERS:
        stripped = build(kind).sub("", stripped)
    stripped = stripped.rstrip()
    block = metadata_block(kind, data)
    return f"{stripped}\n\n{block}" if stripped else block
