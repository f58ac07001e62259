"""Crash recovery for tasks left in-progress.

Two scans exist. The startup scan treats an in-progress task owned by this
agent as evidence of a crash and spends one of its retry slots. The runtime
scan runs while the daemon is idle and resets tasks that stopped moving,
without touching the retry counter.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from agent_queue.core import tasks
from agent_queue.core.worktrees import clean_stale_worktrees
from agent_queue.integrations import slack
from agent_queue.integrations.git import GitError
from agent_queue.integrations.tracker import TrackerClient, TrackerError
from agent_queue.models import Task

logger = logging.getLogger(__name__)


@dataclass
class RecoveryOutcome:
    task_id: int
    action: str  # "reset", "failed" or "skipped"
    retries: int


def _age_seconds(task: Task, now: datetime) -> float | None:
    if task.updated_at is None:
        return None
    updated = task.updated_at
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return (now - updated).total_seconds()


def resolve_workspace(path: str | None, default: str | Path | None = None) -> Path | None:
    """Resolve a task's workspace hint to an existing directory.

    ``~/x`` and relative paths are taken relative to the home directory.
    Falls back to ``default`` when the hint is empty or does not exist.
    """
    fallback = Path(default) if default is not None else None
    if not path:
        return fallback

    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.home() / candidate
    if candidate.is_dir():
        return candidate

    logger.warning("Workspace %s does not exist, using %s", candidate, fallback)
    return fallback


# ── Startup scan ─────────────────────────────────────────────────────────────


def recover_stale_tasks(
    client: TrackerClient,
    config,
    now: datetime | None = None,
) -> list[RecoveryOutcome]:
    """Requeue or fail in-progress tasks this agent owned before a restart."""
    now = now or datetime.now(timezone.utc)
    logger.info("Checking for stale in-progress tasks from a previous run")

    try:
        stale = tasks.list_tasks(client, assignee=config.agent_name, status="in-progress")
    except TrackerError as e:
        logger.error("Startup recovery check failed: %s", e)
        return []

    if not stale:
        logger.info("No stale in-progress tasks found")
        return []

    outcomes = []
    for task in stale:
        age = _age_seconds(task, now)
        if age is not None and age < config.startup_grace_seconds:
            logger.info("Skipping task #%s (updated %.0fs ago, may still be active)", task.id, age)
            outcomes.append(RecoveryOutcome(task.id, "skipped", task.retries))
            continue

        try:
            detail = tasks.get_task(client, task.id)
            outcome = _recover_or_fail(client, config, detail)
        except TrackerError as e:
            logger.error("Failed to recover task #%s: %s", task.id, e)
            continue
        outcomes.append(outcome)

        workspace = resolve_workspace(detail.workspace)
        if workspace is not None:
            try:
                clean_stale_worktrees(workspace)
            except (GitError, OSError) as e:
                logger.warning("Stale worktree cleanup failed for %s: %s", workspace, e)

    logger.info("Startup recovery complete")
    return outcomes


def _recover_or_fail(client: TrackerClient, config, task: Task) -> RecoveryOutcome:
    if task.retries < tasks.MAX_RETRIES:
        retries = task.retries + 1
        logger.info(
            "Recovering task #%s %r (retry %d/%d)", task.id, task.title, retries, tasks.MAX_RETRIES
        )
        tasks.update_task_meta(client, task.id, retries=retries)
        tasks.update_task_status(client, task.id, "assigned")
        tasks.add_comment(
            client,
            task.id,
            f"Auto-recovery: task was in-progress when the agent stopped "
            f"(retry {retries}/{tasks.MAX_RETRIES}).",
        )
        slack.notify(
            config,
            f"Task #{task.id} requeued after crash (retry {retries}/{tasks.MAX_RETRIES}): {task.title}",
            task_id=task.id,
            kind="requeued",
        )
        return RecoveryOutcome(task.id, "reset", retries)

    logger.warning(
        "Task #%s %r exhausted %d crash recoveries, marking failed",
        task.id, task.title, tasks.MAX_RETRIES,
    )
    tasks.update_task_status(client, task.id, "failed")
    tasks.add_comment(
        client,
        task.id,
        f"Task failed after {tasks.MAX_RETRIES} crash recoveries. Manual review needed.",
    )
    slack.notify(
        config,
        f"Task #{task.id} failed after {tasks.MAX_RETRIES} retries: {task.title}",
        task_id=task.id,
        kind="failed",
    )
    return RecoveryOutcome(task.id, "failed", task.retries)


# ── Runtime scan ─────────────────────────────────────────────────────────────


def check_runtime_stale_tasks(
    client: TrackerClient,
    config,
    now: datetime | None = None,
    active_task_id: int | None = None,
) -> list[int]:
    """Reset in-progress tasks that have not been updated recently. Returns their ids."""
    now = now or datetime.now(timezone.utc)
    try:
        in_progress = tasks.list_tasks(client, assignee=config.agent_name, status="in-progress")
    except TrackerError as e:
        logger.debug("Runtime stale-task check failed: %s", e)
        return []

    reset = []
    for task in in_progress:
        if task.id == active_task_id:
            continue
        age = _age_seconds(task, now)
        if age is None or age < config.runtime_stale_seconds:
            continue

        minutes = round(age / 60)
        logger.warning(
            "Task #%s %r stuck in-progress for %dm, resetting to assigned", task.id, task.title, minutes
        )
        try:
            tasks.update_task_status(client, task.id, "assigned")
            tasks.add_comment(
                client,
                task.id,
                f"Runtime recovery: task was stuck in-progress for {minutes} minutes. "
                "Reset to assigned for retry.",
            )
        except TrackerError as e:
            logger.error("Failed to reset task #%s: %s", task.id, e)
            continue
        reset.append(task.id)

    return reset
