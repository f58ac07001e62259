"""Task management operations over tracker issues, labels and comments."""

import logging
from datetime import datetime

from agent_queue.core.metadata import format_metadata, parse_metadata, replace_metadata
from agent_queue.integrations.tracker import TrackerClient
from agent_queue.models import (
    AGENT_PREFIX,
    PRIORITY_PREFIX,
    STATUS_PREFIX,
    TYPE_LABEL,
    Comment,
    Plan,
    Report,
    Task,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

VALID_STATUSES = (
    "draft",
    "planned",
    "approved",
    "assigned",
    "in-progress",
    "completed",
    "failed",
)


def list_tasks(
    client: TrackerClient,
    assignee: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List open tasks matching the assignee/status labels. Order is not meaningful."""
    labels = [TYPE_LABEL]
    if assignee:
        labels.append(f"{AGENT_PREFIX}{assignee}")
    if status:
        labels.append(f"{STATUS_PREFIX}{status}")
    issues = client.list_issues(labels)
    return [_issue_to_task(issue) for issue in issues if "pull_request" not in issue]


def get_task(client: TrackerClient, task_id: int) -> Task:
    """Get a task with its comments and the first plan and report posted."""
    issue = client.get_issue(task_id)
    raw_comments = client.list_comments(task_id)

    task = _issue_to_task(issue)
    task.comments = [_to_comment(c) for c in raw_comments]

    for comment in task.comments:
        if task.plan is None and (data := parse_metadata(comment.body, "plan")):
            task.plan = _to_plan(data)
        if task.report is None and (data := parse_metadata(comment.body, "report")):
            task.report = _to_report(data)

    return task


def create_task(
    client: TrackerClient,
    title: str,
    assignee: str,
    priority: str | None = None,
    body: str = "",
    workspace: str | None = None,
    delegated_from: str | None = None,
) -> Task:
    """Create a new task in 'assigned' status."""
    labels = [TYPE_LABEL, f"{AGENT_PREFIX}{assignee}", f"{STATUS_PREFIX}assigned"]
    if priority:
        labels.append(f"{PRIORITY_PREFIX}{priority}")

    meta = {}
    if workspace:
        meta["workspace"] = workspace
    if delegated_from:
        meta["delegated_from"] = delegated_from
    if meta:
        body = replace_metadata(body, "meta", meta)

    issue = client.create_issue(title, body, labels)
    task = _issue_to_task(issue)
    logger.info("Created task #%s: %s (assigned to %s)", task.id, title, assignee)
    return task


def save_plan(
    client: TrackerClient,
    task_id: int,
    goals: list[str],
    affected_files: list[str] | None = None,
    effort: str = "medium",
    notes: str | None = None,
) -> Plan:
    """Attach a plan comment to a task. Status is not changed."""
    plan = Plan(
        goals=list(goals),
        affected_files=list(affected_files or []),
        effort=effort or "medium",
        notes=notes,
    )

    lines = ["## Plan"]
    lines += [f"- {goal}" for goal in plan.goals]
    if plan.affected_files:
        lines.append("")
        lines.append("Affected files: " + ", ".join(plan.affected_files))
    lines.append(f"Estimated effort: {plan.effort}")
    if plan.notes:
        lines.append("")
        lines.append(plan.notes)

    payload = {
        "goals": plan.goals,
        "affected_files": plan.affected_files,
        "effort": plan.effort,
        "notes": plan.notes,
    }
    client.create_comment(task_id, format_metadata("plan", payload, "\n".join(lines)))
    return plan


def update_task_status(client: TrackerClient, task_id: int, status: str) -> list[str]:
    """Replace the task's status label in a single write. Returns the new label set.

    Every existing status label is dropped, so the result always carries
    exactly one. Moving to 'completed' also closes the issue.
    """
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid status: {status}")

    issue = client.get_issue(task_id)
    kept = [
        name for name in _label_names(issue)
        if not name.startswith(STATUS_PREFIX)
    ]
    kept.append(f"{STATUS_PREFIX}{status}")
    client.replace_labels(task_id, kept)

    if status == "completed":
        client.update_issue(task_id, state="closed")

    logger.info("Task #%s -> %s", task_id, status)
    return kept


def complete_task(
    client: TrackerClient,
    task_id: int,
    summary: str,
    modified_files: list[str] | None = None,
    new_files: list[str] | None = None,
) -> Report:
    """Post a completion report, then mark the task completed and close it.

    If the report cannot be written the error propagates and the status is
    left as it was.
    """
    report = Report(
        summary=summary,
        modified_files=list(modified_files or []),
        new_files=list(new_files or []),
    )

    text = f"## Completion Report\n{summary}"
    if report.modified_files:
        text += "\n\nModified: " + ", ".join(report.modified_files)
    if report.new_files:
        text += "\nNew: " + ", ".join(report.new_files)

    payload = {
        "summary": report.summary,
        "modified_files": report.modified_files,
        "new_files": report.new_files,
    }
    client.create_comment(task_id, format_metadata("report", payload, text))
    update_task_status(client, task_id, "completed")
    return report


def add_comment(client: TrackerClient, task_id: int, content: str) -> Comment:
    """Append a free-form comment to a task."""
    return _to_comment(client.create_comment(task_id, content) or {"body": content})


def update_task_meta(client: TrackerClient, task_id: int, **fields) -> dict:
    """Merge fields into the task body's meta block. Returns the merged metadata."""
    issue = client.get_issue(task_id)
    body = issue.get("body") or ""
    meta = parse_metadata(body, "meta") or {}
    meta.update(fields)
    client.update_issue(task_id, body=replace_metadata(body, "meta", meta))
    return meta


def _label_names(issue: dict) -> list[str]:
    names = []
    for label in issue.get("labels") or []:
        names.append(label["name"] if isinstance(label, dict) else str(label))
    return names


def _issue_to_task(issue: dict) -> Task:
    body = issue.get("body") or ""
    meta = parse_metadata(body, "meta") or {}
    try:
        retries = int(meta.get("retries", 0))
    except (TypeError, ValueError):
        retries = 0
    return Task(
        id=issue["number"],
        title=issue.get("title", ""),
        labels=_label_names(issue),
        body=body,
        state=issue.get("state", "open"),
        workspace=meta.get("workspace") or None,
        retries=max(0, min(MAX_RETRIES, retries)),
        delegated_from=meta.get("delegated_from") or None,
        updated_at=_parse_dt(issue.get("updated_at")),
    )


def _to_comment(raw: dict) -> Comment:
    user = raw.get("user") or {}
    return Comment(
        id=raw.get("id"),
        body=raw.get("body") or "",
        author=user.get("login"),
        created_at=_parse_dt(raw.get("created_at")),
    )


def _to_plan(data: dict) -> Plan:
    return Plan(
        goals=[str(g) for g in data.get("goals") or []],
        affected_files=[str(f) for f in data.get("affected_files") or []],
        effort=data.get("effort") or "medium",
        notes=data.get("notes"),
    )


def _to_report(data: dict) -> Report:
    return Report(
        summary=data.get("summary") or "",
        modified_files=list(data.get("modified_files") or []),
        new_files=list(data.get("new_files") or []),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val.replace("Z", "+00:00"))
