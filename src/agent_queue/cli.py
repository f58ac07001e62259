"""CLI entry point for agent-queue."""

import dataclasses
import json
import sys
from contextlib import contextmanager
from pathlib import Path

import click

from agent_queue.config import ConfigError, get_config
from agent_queue.core import tasks as tasks_mod
from agent_queue.core import worktrees as worktrees_mod
from agent_queue.integrations.tracker import TrackerClient, TrackerError


def _make_client(config) -> TrackerClient:
    return TrackerClient.from_config(config)


@contextmanager
def _client():
    config = get_config()
    if not (config.tracker_token and config.tracker_repo):
        click.echo("Error: tracker token and repository must be configured", err=True)
        sys.exit(1)
    client = _make_client(config)
    try:
        yield client
    except TrackerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        client.close()


@click.group()
def main():
    """aq - issue-tracker task queue for coding agents"""
    pass


# ── Daemon ────────────────────────────────────────────────────────────────────


@main.command("run")
@click.option("--agent-name", default=None, help="Agent identity (agent:<name> label)")
@click.option("--poll-interval", type=float, default=None, help="Seconds between polls")
@click.option("--work-dir", type=click.Path(file_okay=False), default=None, help="Default workspace")
@click.option("--model", default=None, help="Model passed to the coding agent")
@click.option("--worktree/--branch", "use_worktree", default=None, help="Isolation strategy")
@click.option("--public-url", default=None, help="Public base URL to register as webhook")
@click.option("--webhook-host", default=None, help="Webhook listen host")
@click.option("--webhook-port", type=int, default=None, help="Webhook listen port (0 disables)")
@click.option("--timeout", "execution_timeout", type=float, default=None,
              help="Agent wall-clock limit in seconds (0 disables)")
def run(agent_name, poll_interval, work_dir, model, use_worktree, public_url,
        webhook_host, webhook_port, execution_timeout):
    """Run the agent daemon."""
    from agent_queue.core.daemon import Daemon
    from agent_queue.log import setup_logging

    overrides = {
        "agent_name": agent_name,
        "poll_interval": poll_interval,
        "work_dir": Path(work_dir).resolve() if work_dir else None,
        "model": model,
        "use_worktree": use_worktree,
        "public_url": public_url,
        "webhook_host": webhook_host,
        "webhook_port": webhook_port,
        "execution_timeout": execution_timeout,
    }
    config = dataclasses.replace(
        get_config(), **{k: v for k, v in overrides.items() if v is not None}
    )
    try:
        config.validate()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    setup_logging(config)
    sys.exit(Daemon(config).run())


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--assignee", "-a", default=None, help="Agent name (defaults to AQ_AGENT_NAME)")
@click.option("--priority", "-p", default=None, help="Priority label value")
@click.option("--body", "-b", default="", help="Task description")
@click.option("--workspace", "-w", default=None, help="Workspace path hint")
@click.option("--delegated-from", default=None, help="Who to notify on failure")
def task_add(title, assignee, priority, body, workspace, delegated_from):
    """Create a new task."""
    assignee = assignee or get_config().agent_name
    if not assignee:
        click.echo("Error: --assignee or AQ_AGENT_NAME is required", err=True)
        sys.exit(1)

    with _client() as client:
        task = tasks_mod.create_task(
            client, title, assignee, priority=priority, body=body,
            workspace=workspace, delegated_from=delegated_from,
        )
        click.echo(f"Created task: #{task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Assignee: {task.assignee}")
        click.echo(f"  Status: {task.status}")
        if task.priority:
            click.echo(f"  Priority: {task.priority}")


@task_group.command("list")
@click.option("--assignee", "-a", default=None, help="Filter by agent")
@click.option("--status", "-s", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(assignee, status, json_output):
    """List open tasks."""
    with _client() as client:
        found = tasks_mod.list_tasks(client, assignee=assignee, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in found], indent=2))
            return

        if not found:
            click.echo("No tasks found.")
            return

        status_icons = {
            "assigned": "○",
            "in-progress": "●",
            "completed": "✓",
            "failed": "✗",
        }

        for task in found:
            icon = status_icons.get(task.status, "?")
            prio = f" [{task.priority}]" if task.priority else ""
            retries = f" [retries: {task.retries}]" if task.retries else ""
            click.echo(
                f"  {icon} #{task.id}: {task.title} ({task.status}, {task.assignee}){prio}{retries}"
            )


@task_group.command("show")
@click.argument("task_id", type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_show(task_id, json_output):
    """Show task details."""
    with _client() as client:
        task = tasks_mod.get_task(client, task_id)

        if json_output:
            data = _task_dict(task)
            data["plan"] = dataclasses.asdict(task.plan) if task.plan else None
            data["report"] = dataclasses.asdict(task.report) if task.report else None
            data["comments"] = len(task.comments)
            click.echo(json.dumps(data, indent=2))
            return

        click.echo(f"Task: #{task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Assignee: {task.assignee}")
        if task.priority:
            click.echo(f"  Priority: {task.priority}")
        if task.workspace:
            click.echo(f"  Workspace: {task.workspace}")
        if task.retries:
            click.echo(f"  Retries: {task.retries}")
        if task.delegated_from:
            click.echo(f"  Delegated from: {task.delegated_from}")
        if task.plan:
            click.echo(f"  Plan ({task.plan.effort}):")
            for goal in task.plan.goals:
                click.echo(f"    - {goal}")
        if task.report:
            click.echo(f"  Report: {task.report.summary}")
        click.echo(f"  Comments: {len(task.comments)}")


@task_group.command("status")
@click.argument("task_id", type=int)
@click.argument("status")
def task_status(task_id, status):
    """Set a task's status."""
    if status not in tasks_mod.VALID_STATUSES:
        click.echo(
            f"Error: invalid status {status!r} (one of {', '.join(tasks_mod.VALID_STATUSES)})",
            err=True,
        )
        sys.exit(1)
    with _client() as client:
        labels = tasks_mod.update_task_status(client, task_id, status)
        click.echo(f"Task #{task_id} -> {status}")
        click.echo(f"  Labels: {', '.join(labels)}")


@task_group.command("plan")
@click.argument("task_id", type=int)
@click.option("--goal", "-g", "goals", multiple=True, required=True, help="Plan goal (repeatable)")
@click.option("--file", "-f", "files", multiple=True, help="Affected file (repeatable)")
@click.option("--effort", default="medium", help="Estimated effort")
@click.option("--notes", default=None, help="Free-form notes")
def task_plan(task_id, goals, files, effort, notes):
    """Attach a plan to a task."""
    with _client() as client:
        plan = tasks_mod.save_plan(client, task_id, list(goals), list(files), effort, notes)
        click.echo(f"Plan saved on #{task_id}: {len(plan.goals)} goal(s), effort {plan.effort}")


@task_group.command("complete")
@click.argument("task_id", type=int)
@click.argument("summary")
@click.option("--modified", "-m", multiple=True, help="Modified file (repeatable)")
@click.option("--new", "-n", "new_files", multiple=True, help="New file (repeatable)")
def task_complete(task_id, summary, modified, new_files):
    """Post a completion report and close the task."""
    with _client() as client:
        tasks_mod.complete_task(client, task_id, summary, list(modified), list(new_files))
        click.echo(f"Task #{task_id} completed")


@task_group.command("comment")
@click.argument("task_id", type=int)
@click.argument("content")
def task_comment(task_id, content):
    """Add a comment to a task."""
    with _client() as client:
        tasks_mod.add_comment(client, task_id, content)
        click.echo(f"Comment added to #{task_id}")


# ── Worktree Commands ─────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Manage agent worktrees."""
    pass


@worktree_group.command("clean")
@click.argument("workspace", required=False, type=click.Path(file_okay=False))
def worktree_clean(workspace):
    """Remove stale worktrees under <workspace>/.worktrees."""
    workspace = Path(workspace) if workspace else get_config().work_dir
    removed = worktrees_mod.clean_stale_worktrees(workspace)
    if not removed:
        click.echo("No stale worktrees.")
        return
    for path in removed:
        click.echo(f"  Removed: {path}")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.command("mcp")
def mcp_serve():
    """Start the task tool MCP server (stdio transport)."""
    from agent_queue.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "assignee": task.assignee,
        "priority": task.priority,
        "labels": task.labels,
        "workspace": task.workspace,
        "retries": task.retries,
        "delegated_from": task.delegated_from,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }


if __name__ == "__main__":
    main()
