"""Classification of the coding agent's stream-json output for the log."""

import json
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TOOL_SURFACE_PREFIX = "mcp__agent_queue"

FILE_EDIT_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")
SEARCH_TOOLS = ("Glob", "Grep")
SUBAGENT_TOOLS = ("Task", "Agent")


@dataclass
class AgentEvent:
    kind: str  # tool, edit, read, shell, search, subagent, queue, text, result
    detail: str


def _tool_event(name: str, params: dict) -> AgentEvent:
    if name in FILE_EDIT_TOOLS:
        return AgentEvent("edit", f"{name}: {params.get('file_path', '')}")
    if name == "Read":
        return AgentEvent("read", f"Read: {params.get('file_path', '')}")
    if name == "Bash":
        return AgentEvent("shell", f"Bash: {str(params.get('command', ''))[:120]}")
    if name in SEARCH_TOOLS:
        return AgentEvent("search", f"{name}: {params.get('pattern', '')}")
    if name in SUBAGENT_TOOLS:
        bg = " [bg]" if params.get("run_in_background") else ""
        return AgentEvent(
            "subagent",
            f"Subagent ({params.get('subagent_type', '')}): {params.get('description', '')}{bg}",
        )
    if name.startswith(TOOL_SURFACE_PREFIX):
        tool = name.rsplit("__", 1)[-1]
        task_id = params.get("task_id")
        suffix = f" #{task_id}" if task_id is not None else ""
        return AgentEvent("queue", f"{tool}{suffix}")
    return AgentEvent("tool", name or "unknown")


def classify_event(event: dict) -> list[AgentEvent]:
    """Turn one decoded stream-json event into zero or more loggable entries."""
    etype = event.get("type")

    if etype == "content_block_start":
        block = event.get("content_block") or {}
        if block.get("type") == "tool_use":
            return [AgentEvent("tool", f"Tool: {block.get('name') or 'unknown'}")]
        return []

    if etype == "assistant":
        message = event.get("message") or {}
        entries = []
        for block in message.get("content") or []:
            if block.get("type") == "tool_use":
                entries.append(_tool_event(block.get("name") or "", block.get("input") or {}))
            elif block.get("type") == "text":
                text = " ".join((block.get("text") or "")[:200].split())
                if text:
                    entries.append(AgentEvent("text", text))
        return entries

    if etype == "result":
        if event.get("subtype") == "tool_result":
            return []
        parts = [f"{event.get('num_turns') or 0} turns"]
        if duration := event.get("duration_ms"):
            parts.append(f"{duration / 1000:.1f}s")
        cost = event.get("total_cost_usd") or event.get("cost_usd")
        if cost:
            parts.append(f"${cost:.4f}")
        return [AgentEvent("result", "Done: " + ", ".join(parts))]

    return []


def handle_output_line(line: str) -> list[AgentEvent]:
    """Log one stdout line from the agent. Non-JSON lines are logged raw."""
    line = line.strip()
    if not line:
        return []
    try:
        event = json.loads(line)
    except ValueError:
        logger.info("  %s", line)
        return []
    if not isinstance(event, dict):
        logger.info("  %s", line)
        return []

    entries = classify_event(event)
    for entry in entries:
        logger.info("[%s] %s", entry.kind, entry.detail)
    return entries
