"""Agent execution: environment preparation, subprocess launch, monitoring and merge-back."""

import json
import logging
import os
import queue
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from agent_queue.core import tasks
from agent_queue.core.events import handle_output_line
from agent_queue.core.locks import branch_lock
from agent_queue.core.recovery import resolve_workspace
from agent_queue.core.worktrees import (
    abandon_branch,
    cleanup_worktree,
    create_worktree,
    merge_branch,
    merge_worktree,
    task_branch,
)
from agent_queue.integrations import git, slack
from agent_queue.integrations.tracker import TrackerClient, TrackerError
from agent_queue.models import ExecutionResult, MergeResult, Task, WorktreeInfo

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 1
TERMINATE_GRACE_SECONDS = 10.0
OUTPUT_QUEUE_SIZE = 1000
DRAIN_SECONDS = 5.0

STRIPPED_ENV_KEYS = ("CLAUDECODE", "CLAUDE_SHELL_SESSION_ID")
STRIPPED_ENV_PREFIX = "CLAUDE_CODE"

REQUIRED_PERMISSIONS = [
    "mcp__agent_queue",
    "Bash(*)",
    "Read(*)",
    "Write(*)",
    "Edit(*)",
    "Glob(*)",
    "Grep(*)",
    "Task(*)",
    "WebFetch(*)",
    "WebSearch(*)",
]
DENIED_TOOLS = ["TodoWrite", "Agent"]

MCP_SERVER_NAME = "agent_queue"
SETTINGS_EXCLUDE = ".claude/"

DEFAULT_REPORT = "Agent exited successfully without filing a completion report."


# ── Environment ──────────────────────────────────────────────────────────────


def git_identity(config) -> dict[str, str]:
    owner = config.tracker_repo.split("/")[0] if config.tracker_repo else config.agent_name
    email = f"{owner}@users.noreply.github.com"
    return {
        "GIT_AUTHOR_NAME": config.agent_name,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_COMMITTER_NAME": config.agent_name,
        "GIT_COMMITTER_EMAIL": email,
    }


def build_agent_env(config, base: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for the agent subprocess.

    Variables that would make the agent think it is nested inside another
    agent session are removed. Tracker credentials and git identity are set.
    """
    env = {
        key: value
        for key, value in (os.environ if base is None else base).items()
        if key not in STRIPPED_ENV_KEYS and not key.startswith(STRIPPED_ENV_PREFIX)
    }
    env.update(
        {
            "AQ_AGENT_NAME": config.agent_name,
            "AQ_TRACKER_TOKEN": config.tracker_token,
            "AQ_TRACKER_REPO": config.tracker_repo,
            "AQ_API_URL": config.api_url,
            "GITHUB_TOKEN": config.tracker_token,
            "GITHUB_REPO": config.tracker_repo,
        }
    )
    env.update(git_identity(config))
    return env


def write_token_file(config) -> Path | None:
    """Write the tracker token to ``<log_dir>/.tracker-token`` with mode 0600."""
    path = Path(config.log_dir) / ".tracker-token"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o600, exist_ok=True)
        path.chmod(0o600)
        path.write_text(config.tracker_token)
    except OSError as e:
        logger.warning("Could not write token file %s: %s", path, e)
        return None
    return path


def merge_claude_settings(settings_file: Path, deny: bool = False) -> bool:
    """Add the permissions the agent needs to a settings.json, keeping existing entries."""
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        existing: dict = {}
        if settings_file.exists():
            try:
                loaded = json.loads(settings_file.read_text())
                if isinstance(loaded, dict):
                    existing = loaded
            except ValueError as e:
                logger.debug("Ignoring unreadable %s: %s", settings_file, e)

        perms = dict(existing.get("permissions") or {})
        perms["allow"] = list(dict.fromkeys([*(perms.get("allow") or []), *REQUIRED_PERMISSIONS]))
        if deny:
            perms["deny"] = list(dict.fromkeys([*(perms.get("deny") or []), *DENIED_TOOLS]))
        existing["permissions"] = perms

        settings_file.write_text(json.dumps(existing, indent=2) + "\n")
    except OSError as e:
        logger.warning("Could not write agent settings to %s: %s", settings_file, e)
        return False
    return True


def write_mcp_config(config) -> Path | None:
    """Write a temporary MCP config that starts the task tool server over stdio."""
    path = Path(config.log_dir) / f"mcp-{config.agent_name}.json"
    payload = {
        "mcpServers": {
            MCP_SERVER_NAME: {
                "command": sys.executable,
                "args": ["-m", "agent_queue.mcp.server"],
                "env": {
                    "AQ_AGENT_NAME": config.agent_name,
                    "AQ_TRACKER_TOKEN": config.tracker_token,
                    "AQ_TRACKER_REPO": config.tracker_repo,
                    "AQ_API_URL": config.api_url,
                },
            }
        }
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2))
        path.chmod(0o600)
    except OSError as e:
        logger.warning("Could not write MCP config %s: %s", path, e)
        return None
    return path


# ── Branch strategy ──────────────────────────────────────────────────────────


@dataclass
class BranchSetup:
    cwd: Path
    worktree: WorktreeInfo | None = None
    branch: str | None = None


def setup_branch_strategy(config, task_id: int, workspace: Path) -> BranchSetup:
    """Pick where the agent runs: its own worktree, a task branch, or the plain workspace."""
    if not git.is_git_repo_root(workspace):
        logger.info("Workspace %s is not a git repository root, no branch isolation", workspace)
        return BranchSetup(cwd=workspace)

    if config.use_worktree:
        info = create_worktree(workspace, config.agent_name, task_id)
        if info is None:
            logger.warning("Worktree unavailable for %s, running in the workspace", workspace)
            return BranchSetup(cwd=workspace)
        logger.info("Worktree: %s (branch %s)", info.worktree_path, info.branch)
        return BranchSetup(cwd=Path(info.worktree_path), worktree=info)

    branch = task_branch(task_id, config.agent_name)
    base = git.get_default_branch(workspace) or "HEAD"
    if not git.checkout_new_branch(workspace, branch, base):
        logger.warning("Could not check out %s in %s, running without a branch", branch, workspace)
        return BranchSetup(cwd=workspace)
    logger.info("Branch strategy: agent works on %s", branch)
    return BranchSetup(cwd=workspace, branch=branch)


# ── Prompt Construction ──────────────────────────────────────────────────────


def build_task_prompt(task: Task, config, setup: BranchSetup) -> str:
    """Build the prompt for the coding agent including task context."""
    parts = []
    parts.append(f"# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    parts.append(f"Priority: {task.priority or 'normal'}")
    if task.body:
        parts.append(f"\n## Description\n{task.body}")

    if task.plan:
        plan = task.plan
        parts.append("\n## Plan")
        if plan.goals:
            parts.append("### Goals")
            parts.extend(f"- {goal}" for goal in plan.goals)
        if plan.affected_files:
            parts.append("### Affected Files")
            parts.extend(f"- {path}" for path in plan.affected_files)
        parts.append(f"Estimated effort: {plan.effort}")
        if plan.notes:
            parts.append(f"### Notes\n{plan.notes}")

    parts.append(f"\n## Working Directory\n{setup.cwd}")

    if setup.worktree:
        parts.append(
            f"You are in a dedicated git worktree on branch `{setup.worktree.branch}`. "
            "Commit your changes on this branch. Do not switch branches, merge or push; "
            "the runner merges the branch back when you exit."
        )
    elif setup.branch:
        parts.append(
            f"You are on branch `{setup.branch}` in the shared workspace. "
            "Commit your changes on this branch. Do not merge or push; "
            "the runner merges the branch when you exit."
        )

    parts.append(
        "\n## Completion\n"
        "When you are finished, call the `complete_task` tool with:\n"
        f"- task_id: {task.id}\n"
        "- summary: a brief summary of what you did\n"
        "- modified_files and new_files as appropriate\n"
        "\n"
        "Use `add_comment` for progress notes and `save_plan` if you revise the plan. "
        f"You are agent `{config.agent_name}`."
    )

    return "\n".join(parts)


def build_command(config, prompt: str, mcp_config: Path | None) -> list[str]:
    cmd = shlex.split(config.agent_command)
    cmd += ["--print", "--verbose", "--output-format", "stream-json", "--model", config.model]
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        cmd.append("--dangerously-skip-permissions")
    if mcp_config is not None:
        cmd += ["--mcp-config", str(mcp_config)]
    cmd += ["-p", prompt]
    return cmd


# ── Subprocess ───────────────────────────────────────────────────────────────


def _pump(stream, name: str, sink: queue.Queue) -> None:
    try:
        for line in stream:
            sink.put((name, line))
    except ValueError:
        pass  # stream closed under us
    finally:
        sink.put((name, None))


def terminate_process(process: subprocess.Popen, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    """SIGTERM, wait ``grace`` seconds, then SIGKILL."""
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Agent process %s ignored SIGTERM, killing", process.pid)
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace)


class Executor:
    """Runs one task at a time through the coding agent."""

    def __init__(self, client: TrackerClient, config):
        self.client = client
        self.config = config
        self.current_task: Task | None = None
        self._lock = threading.Lock()
        self._processed: set[int] = set()
        self._process: subprocess.Popen | None = None
        self._stop = threading.Event()
        self._stop_requested_at: float | None = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def was_processed(self, task_id: int) -> bool:
        return task_id in self._processed

    def request_stop(self) -> None:
        """Ask the running agent to exit. It is killed after the shutdown grace period."""
        if self._stop.is_set():
            return
        self._stop.set()
        self._stop_requested_at = time.monotonic()
        process = self._process
        if process is not None and process.poll() is None:
            logger.info("Sending SIGTERM to agent process %s", process.pid)
            try:
                process.terminate()
            except OSError:
                pass

    def execute(self, task: Task) -> ExecutionResult | None:
        """Run the agent for ``task``. Returns None if skipped."""
        if task.id in self._processed:
            logger.debug("Task #%s already processed this session", task.id)
            return None
        if not self._lock.acquire(blocking=False):
            current = self.current_task.id if self.current_task else "?"
            logger.warning("Already working on task #%s, skipping #%s", current, task.id)
            return None

        try:
            if task.id in self._processed:
                return None
            self._processed.add(task.id)
            self.current_task = task
            return self._run(task)
        finally:
            self.current_task = None
            self._lock.release()

    # ── Steps ────────────────────────────────────────────────────────────────

    def _run(self, task: Task) -> ExecutionResult:
        logger.info("Starting task #%s: %s", task.id, task.title)
        try:
            tasks.update_task_status(self.client, task.id, "in-progress")
        except TrackerError as e:
            logger.error("Failed to mark task #%s in-progress: %s", task.id, e)

        if task.plan is None and not task.comments:
            try:
                task = tasks.get_task(self.client, task.id)
            except TrackerError as e:
                logger.warning("Could not load details for task #%s: %s", task.id, e)

        workspace = resolve_workspace(task.workspace, self.config.work_dir)
        env = build_agent_env(self.config)
        write_token_file(self.config)
        merge_claude_settings(Path.home() / ".claude" / "settings.json", deny=True)

        setup = setup_branch_strategy(self.config, task.id, workspace)
        if git.is_git_repo(setup.cwd):
            git.add_exclude(setup.cwd, SETTINGS_EXCLUDE)
        merge_claude_settings(setup.cwd / ".claude" / "settings.json")
        mcp_config = write_mcp_config(self.config)

        prompt = build_task_prompt(task, self.config, setup)
        cmd = build_command(self.config, prompt, mcp_config)

        try:
            exit_code, timed_out = self._run_process(cmd, setup.cwd, env)
        finally:
            if mcp_config is not None:
                mcp_config.unlink(missing_ok=True)

        result = ExecutionResult(task_id=task.id, exit_code=exit_code, timed_out=timed_out)
        if exit_code == 0:
            logger.info("Task #%s agent exited successfully", task.id)
            result.merge = self._after_success(task, setup, workspace)
        else:
            logger.error("Task #%s agent exited with code %s", task.id, exit_code)
            self._after_failure(task, setup, workspace, exit_code, timed_out)
        return result

    def _run_process(self, cmd: list[str], cwd: Path, env: dict[str, str]) -> tuple[int, bool]:
        logger.info("Spawning: %s (cwd %s)", " ".join(cmd[:3]), cwd)
        try:
            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            logger.error("Could not start %r: %s", cmd[0], e)
            return SPAWN_FAILURE_EXIT_CODE, False

        self._process = process
        output: queue.Queue = queue.Queue(maxsize=OUTPUT_QUEUE_SIZE)
        readers = [
            threading.Thread(target=_pump, args=(process.stdout, "stdout", output), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, "stderr", output), daemon=True),
        ]
        for reader in readers:
            reader.start()

        started = time.monotonic()
        timeout = self.config.execution_timeout
        timed_out = False
        open_streams = len(readers)
        exited_at: float | None = None

        try:
            # An agent that closes its pipes keeps running under the same limits
            while open_streams or process.poll() is None:
                try:
                    name, line = output.get(timeout=0.5)
                except queue.Empty:
                    name, line = None, None

                if name is not None:
                    if line is None:
                        open_streams -= 1
                    elif name == "stdout":
                        handle_output_line(line)
                    elif line.strip():
                        logger.debug("[stderr] %s", line.rstrip())

                now = time.monotonic()
                if timeout and not timed_out and now - started >= timeout:
                    logger.error("Agent exceeded %.0fs, terminating", timeout)
                    timed_out = True
                    terminate_process(process)

                if (
                    self._stop_requested_at is not None
                    and process.poll() is None
                    and now - self._stop_requested_at >= self.config.shutdown_grace_seconds
                ):
                    logger.warning("Agent did not exit in time, killing")
                    process.kill()

                if process.poll() is not None:
                    exited_at = exited_at or now
                    if now - exited_at >= DRAIN_SECONDS:
                        break
            exit_code = process.wait()
        finally:
            self._process = None

        if timed_out:
            return TIMEOUT_EXIT_CODE, True
        return exit_code, False

    def _after_success(self, task: Task, setup: BranchSetup, workspace: Path) -> MergeResult | None:
        if setup.worktree:
            info = setup.worktree
            lock = branch_lock(info.original_workspace) if self.config.merge_lock else None
            logger.info("Merging %s back into %s", info.branch, info.original_workspace)
            merge = merge_worktree(info.original_workspace, info.branch, lock=lock)
            if merge.success:
                logger.info("Merged %s (%s)", info.branch, merge.strategy)
                cleanup_worktree(info.original_workspace, self.config.agent_name, info.branch)
                self._ensure_completed(task)
            else:
                self._report_merge_failure(
                    task, info.branch, merge, f"Worktree preserved at: `{info.worktree_path}`"
                )
            return merge

        if setup.branch:
            logger.info("Merging %s in %s", setup.branch, workspace)
            merge = merge_branch(workspace, setup.branch)
            if merge.success:
                logger.info("Merged %s", setup.branch)
                self._ensure_completed(task)
            else:
                self._report_merge_failure(
                    task, setup.branch, merge, "Branch preserved for manual review."
                )
            return merge

        self._ensure_completed(task)
        return None

    def _report_merge_failure(
        self, task: Task, branch: str, merge: MergeResult, preserved: str
    ) -> None:
        """The agent's work stays where it is; the task says where and why."""
        if merge.has_conflicts:
            logger.error("Merge conflict on %s: %s", branch, merge.output[:200])
            headline = (
                f"**Merge conflict**: the agent finished on branch `{branch}` but the "
                "automatic merge into the default branch failed."
            )
        else:
            logger.error("Merge/push of %s failed: %s", branch, merge.output[:200])
            headline = (
                f"**Merge failed**: the agent finished on branch `{branch}` but merging "
                "or pushing the default branch failed."
            )
        self._comment(
            task.id,
            f"{headline} Manual review needed.\n\n{preserved}\n\n```\n{merge.output}\n```",
        )
        slack.notify(
            self.config, f"Task #{task.id} could not be merged: {task.title}",
            task_id=task.id, kind="failed",
        )

    def _after_failure(
        self,
        task: Task,
        setup: BranchSetup,
        workspace: Path,
        exit_code: int,
        timed_out: bool,
    ) -> None:
        if setup.worktree:
            cleanup_worktree(
                setup.worktree.original_workspace, self.config.agent_name, setup.worktree.branch
            )
        elif setup.branch:
            abandon_branch(workspace, setup.branch)

        if timed_out:
            reason = f"timed out after {self.config.execution_timeout:.0f}s"
        else:
            reason = f"exited with code {exit_code}"
        self._comment(task.id, f"Agent `{self.config.agent_name}` {reason}. Task not completed.")
        slack.notify(
            self.config, f"Task #{task.id} failed ({reason}): {task.title}",
            task_id=task.id, kind="failed",
        )

        if task.delegated_from:
            self._comment(
                task.id,
                f"@{task.delegated_from} task \"{task.title}\" (#{task.id}) failed: agent {reason}.",
            )

    def _ensure_completed(self, task: Task) -> None:
        try:
            current = tasks.get_task(self.client, task.id)
            if current.status != "completed":
                tasks.complete_task(self.client, task.id, DEFAULT_REPORT)
                logger.info("Task #%s completed with a default report", task.id)
        except TrackerError as e:
            logger.error("Could not complete task #%s: %s", task.id, e)

    def _comment(self, task_id: int, text: str) -> None:
        try:
            tasks.add_comment(self.client, task_id, text)
        except TrackerError as e:
            logger.warning("Comment on task #%s failed: %s", task_id, e)
