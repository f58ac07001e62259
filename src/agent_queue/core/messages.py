"""Inbound directives: tracker comments addressed to ``@<agent>``."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from agent_queue.integrations.tracker import TrackerClient
from agent_queue.models import Message

logger = logging.getLogger(__name__)

_START_RE = re.compile(r"start\s+(?:working\s+on\s+)?task\s+#?(\d+)")
_STATUS_PHRASES = ("status", "what are you doing")


@dataclass
class Directive:
    action: str  # "start", "status" or "unknown"
    task_id: int | None = None


def _issue_number(raw: dict) -> int | None:
    url = raw.get("issue_url") or ""
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val.replace("Z", "+00:00"))


def fetch_messages(
    client: TrackerClient, agent_name: str, since: str
) -> tuple[list[Message], datetime | None]:
    """Comments created at or after ``since`` whose body starts with ``@<agent_name>``.

    Also returns the newest ``created_at`` among all comments read, mention or
    not, so the caller's cursor moves past unrelated traffic.
    """
    mention = f"@{agent_name}".lower()
    messages = []
    newest: datetime | None = None
    for raw in client.list_repo_comments(since):
        created_at = _parse_dt(raw.get("created_at"))
        if created_at and (newest is None or created_at > newest):
            newest = created_at
        body = (raw.get("body") or "").strip()
        if not body.lower().startswith(mention):
            continue
        rest = body[len(mention):]
        if rest and not (rest[0].isspace() or rest[0] in ",:"):
            continue  # @agent-name-2 is not @agent-name
        task_id = _issue_number(raw)
        if task_id is None:
            continue
        messages.append(
            Message(
                id=raw["id"],
                task_id=task_id,
                body=rest.lstrip(" ,:\t\n"),
                author=(raw.get("user") or {}).get("login"),
                created_at=created_at,
            )
        )
    return messages, newest


def parse_directive(text: str) -> Directive:
    content = " ".join(text.strip().lower().split()).rstrip("?!.")
    if match := _START_RE.search(content):
        return Directive("start", int(match.group(1)))
    if content in _STATUS_PHRASES:
        return Directive("status")
    return Directive("unknown")
