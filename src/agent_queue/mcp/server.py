"""MCP server exposing the task store to the coding agent."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_queue.config import Config, get_config
from agent_queue.core import tasks as tasks_mod
from agent_queue.integrations.tracker import TrackerClient, TrackerError
from agent_queue.models import Comment, Plan, Report, Task


@dataclass
class AppContext:
    client: TrackerClient
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the tracker client on startup, close on shutdown."""
    config = get_config()
    client = TrackerClient.from_config(config)
    try:
        yield AppContext(client=client, config=config)
    finally:
        client.close()


mcp = FastMCP("agent-queue", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: Exception) -> dict:
    status = getattr(e, "status", None)
    return {"error": str(e), "status": status} if status else {"error": str(e)}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    assignee: str | None = None,
) -> list[dict] | dict:
    """List open tasks. Defaults to tasks assigned to this agent."""
    app = _ctx(ctx)
    try:
        found = tasks_mod.list_tasks(
            app.client, assignee=assignee or app.config.agent_name, status=status
        )
    except TrackerError as e:
        return _error(e)
    return [_task_to_dict(t) for t in found]


@mcp.tool()
def get_task(ctx: Context, task_id: int) -> dict:
    """Get a task with its plan, report and comments."""
    try:
        task = tasks_mod.get_task(_ctx(ctx).client, task_id)
    except TrackerError as e:
        return _error(e)
    result = _task_to_dict(task)
    result["plan"] = _plan_to_dict(task.plan) if task.plan else None
    result["report"] = _report_to_dict(task.report) if task.report else None
    result["comments"] = [_comment_to_dict(c) for c in task.comments]
    return result


@mcp.tool()
def save_plan(
    ctx: Context,
    task_id: int,
    goals: list[str],
    affected_files: list[str] | None = None,
    effort: str = "medium",
    notes: str | None = None,
) -> dict:
    """Attach a technical plan to a task."""
    try:
        plan = tasks_mod.save_plan(_ctx(ctx).client, task_id, goals, affected_files, effort, notes)
    except TrackerError as e:
        return _error(e)
    return {"task_id": task_id, "plan": _plan_to_dict(plan)}


@mcp.tool()
def update_task_status(ctx: Context, task_id: int, status: str) -> dict:
    """Set a task's status: draft, planned, approved, assigned, in-progress, completed, failed."""
    try:
        labels = tasks_mod.update_task_status(_ctx(ctx).client, task_id, status)
    except (TrackerError, ValueError) as e:
        return _error(e)
    return {"task_id": task_id, "status": status, "labels": labels}


@mcp.tool()
def complete_task(
    ctx: Context,
    task_id: int,
    summary: str,
    modified_files: list[str] | None = None,
    new_files: list[str] | None = None,
) -> dict:
    """Post the completion report and mark the task completed. Call this when done."""
    try:
        report = tasks_mod.complete_task(
            _ctx(ctx).client, task_id, summary, modified_files, new_files
        )
    except TrackerError as e:
        return _error(e)
    return {"task_id": task_id, "status": "completed", "report": _report_to_dict(report)}


@mcp.tool()
def add_comment(ctx: Context, task_id: int, content: str) -> dict:
    """Add a free-form comment to a task."""
    try:
        comment = tasks_mod.add_comment(_ctx(ctx).client, task_id, content)
    except TrackerError as e:
        return _error(e)
    return {"task_id": task_id, "comment": _comment_to_dict(comment)}


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_to_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "assignee": t.assignee,
        "priority": t.priority,
        "state": t.state,
        "body": t.body,
        "workspace": t.workspace,
        "retries": t.retries,
        "delegated_from": t.delegated_from,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def _plan_to_dict(p: Plan) -> dict:
    return {
        "goals": p.goals,
        "affected_files": p.affected_files,
        "effort": p.effort,
        "notes": p.notes,
    }


def _report_to_dict(r: Report) -> dict:
    return {
        "summary": r.summary,
        "modified_files": r.modified_files,
        "new_files": r.new_files,
    }


def _comment_to_dict(c: Comment) -> dict:
    return {
        "id": c.id,
        "author": c.author,
        "body": c.body,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


if __name__ == "__main__":
    mcp.run(transport="stdio")
