"""Per-task git worktree lifecycle and the merge-back protocol."""

import contextlib
import logging
import shutil
from collections.abc import Callable
from pathlib import Path

from agent_queue.integrations import git
from agent_queue.models import MergeResult, WorktreeInfo

logger = logging.getLogger(__name__)

WORKTREE_DIR = ".worktrees"
PUSH_ATTEMPTS = 3
REMOTE = "origin"

LockFactory = Callable[[str], contextlib.AbstractContextManager]


def task_branch(task_id: int, agent_name: str) -> str:
    return f"task-{task_id}-{agent_name}"


def worktree_path(workspace: str | Path, agent_name: str) -> Path:
    return Path(workspace) / WORKTREE_DIR / agent_name


def ensure_worktree_in_gitignore(workspace: str | Path) -> None:
    """Add ``.worktrees/`` to the workspace .gitignore if it is not listed."""
    gitignore = Path(workspace) / ".gitignore"
    try:
        content = gitignore.read_text() if gitignore.exists() else ""
        lines = [line.strip() for line in content.splitlines()]
        if f"{WORKTREE_DIR}/" in lines or WORKTREE_DIR in lines:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(content + f"{WORKTREE_DIR}/\n")
    except OSError as e:
        logger.warning("Could not update %s: %s", gitignore, e)


# ── Lifecycle ────────────────────────────────────────────────────────────────


def create_worktree(workspace: str | Path, agent_name: str, task_id: int) -> WorktreeInfo | None:
    """Create ``<workspace>/.worktrees/<agent>`` on branch ``task-<id>-<agent>``.

    Whatever occupied the agent's slot before is removed first. Returns None
    when the workspace is not a git repository or the worktree cannot be added.
    """
    if not git.is_git_repo(workspace):
        return None

    branch = task_branch(task_id, agent_name)
    path = worktree_path(workspace, agent_name)

    path.parent.mkdir(parents=True, exist_ok=True)
    ensure_worktree_in_gitignore(workspace)

    git.worktree_remove(workspace, path)
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
    git.worktree_prune(workspace)
    git.delete_branch(workspace, branch)

    if not git.worktree_add(workspace, path, branch):
        logger.error("Could not create worktree %s for task #%s", path, task_id)
        return None

    logger.info("Created worktree %s on branch %s", path, branch)
    return WorktreeInfo(
        worktree_path=str(path),
        branch=branch,
        original_workspace=str(workspace),
    )


def cleanup_worktree(workspace: str | Path, agent_name: str, branch: str) -> None:
    """Remove the agent's worktree and the task branch, locally and on the remote.

    Safe to call repeatedly.
    """
    path = worktree_path(workspace, agent_name)
    git.worktree_remove(workspace, path)
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
    git.worktree_prune(workspace)
    git.delete_branch(workspace, branch)
    git.delete_remote_branch(workspace, branch)


def clean_stale_worktrees(workspace: str | Path) -> list[str]:
    """Remove every worktree left under ``.worktrees/`` by a crashed run."""
    if not git.is_git_repo(workspace):
        return []

    git.worktree_prune(workspace)
    base = Path(workspace) / WORKTREE_DIR
    if not base.is_dir():
        return []

    removed = []
    for entry in sorted(base.iterdir()):
        if not entry.is_dir():
            continue
        git.worktree_remove(workspace, entry)
        if entry.exists():
            shutil.rmtree(entry, ignore_errors=True)
        removed.append(str(entry))

    git.worktree_prune(workspace)
    if removed:
        logger.info("Removed %d stale worktree(s) in %s", len(removed), workspace)
    return removed


# ── Merge-back ───────────────────────────────────────────────────────────────


def merge_worktree(
    workspace: str | Path,
    branch: str,
    lock: LockFactory | None = None,
) -> MergeResult:
    """Merge a task branch into the default branch of ``workspace`` and push.

    Direct merge first; on conflict the branch is rebased onto the default
    branch inside its worktree and fast-forwarded. A rejected push resets to
    the remote head, pulls and merges again, up to PUSH_ATTEMPTS times.
    Local uncommitted changes are stashed for the duration.
    """
    default = git.get_default_branch(workspace)
    if default is None:
        return MergeResult(success=False, output="No main or master branch")

    guard = lock(default) if lock else contextlib.nullcontext()
    with guard:
        stashed = git.stash(workspace)
        try:
            return _merge_and_push(workspace, default, branch)
        finally:
            if stashed:
                git.stash_pop(workspace)


def _merge_and_push(workspace: str | Path, default: str, branch: str) -> MergeResult:
    if git.get_current_branch(workspace) != default and not git.checkout(workspace, default):
        return MergeResult(success=False, output=f"Could not check out {default}")
    git.pull(workspace, REMOTE, default)

    result = _merge_into(workspace, default, branch)
    if not result.success:
        return result

    if not git.has_remote(workspace, REMOTE):
        result.output += " (no remote, not pushed)"
        return result

    for attempt in range(1, PUSH_ATTEMPTS + 1):
        if git.push(workspace, REMOTE, default):
            result.output += " and pushed"
            return result
        if attempt == PUSH_ATTEMPTS:
            break
        logger.warning(
            "Push of %s failed (attempt %d/%d), resetting and merging again",
            default, attempt, PUSH_ATTEMPTS,
        )
        git.reset_hard(workspace, f"{REMOTE}/{default}")
        git.pull(workspace, REMOTE, default)
        result = _merge_into(workspace, default, branch)
        if not result.success:
            result.output = f"Push retry {attempt}: {result.output}"
            return result

    return MergeResult(
        success=False,
        output=f"Push failed after {PUSH_ATTEMPTS} attempts",
        strategy=result.strategy,
    )


def _merge_into(workspace: str | Path, default: str, branch: str) -> MergeResult:
    if git.merge(workspace, branch):
        return MergeResult(success=True, output="Merged", strategy="direct")

    conflicted = git.has_conflicts(workspace)
    git.merge_abort(workspace)
    if not conflicted:
        return MergeResult(success=False, output=f"Merge of {branch} failed")

    logger.info("Direct merge of %s conflicted, trying rebase", branch)
    return _try_rebase(workspace, default, branch)


def _try_rebase(workspace: str | Path, default: str, branch: str) -> MergeResult:
    location = git.find_worktree_for_branch(workspace, branch)
    if not location or not Path(location).exists():
        return MergeResult(
            success=False,
            has_conflicts=True,
            output=f"Merge conflict and no worktree holds {branch}",
        )

    if not git.rebase(location, default):
        git.rebase_abort(location)
        return MergeResult(
            success=False,
            has_conflicts=True,
            output=f"Rebase of {branch} onto {default} conflicts",
        )

    if not git.merge(workspace, branch, ff_only=True):
        return MergeResult(
            success=False,
            output=f"Fast-forward of {default} to rebased {branch} failed",
        )
    return MergeResult(success=True, output="Rebased and merged", strategy="rebase")


# ── Simple branch strategy ───────────────────────────────────────────────────


def merge_branch(workspace: str | Path, branch: str) -> MergeResult:
    """Merge a branch checked out in the shared workspace, then delete it.

    No rebase fallback: a conflict is aborted and reported.
    """
    default = git.get_default_branch(workspace)
    if default is None:
        return MergeResult(success=False, output="No main or master branch")

    if not git.checkout(workspace, default):
        return MergeResult(success=False, output=f"Could not check out {default}")
    git.pull(workspace, REMOTE, default)

    if not git.merge(workspace, branch):
        conflicted = git.has_conflicts(workspace)
        git.merge_abort(workspace)
        return MergeResult(
            success=False,
            has_conflicts=conflicted,
            output=f"Merge of {branch} into {default} failed",
        )

    result = MergeResult(success=True, output="Merged", strategy="direct")
    if git.has_remote(workspace, REMOTE):
        for attempt in range(1, PUSH_ATTEMPTS + 1):
            if git.push(workspace, REMOTE, default):
                result.output += " and pushed"
                break
            if attempt == PUSH_ATTEMPTS:
                return MergeResult(
                    success=False,
                    output=f"Push failed after {PUSH_ATTEMPTS} attempts",
                    strategy="direct",
                )
            git.pull(workspace, REMOTE, default)

    git.delete_branch(workspace, branch)
    git.delete_remote_branch(workspace, branch)
    return result


def abandon_branch(workspace: str | Path, branch: str) -> None:
    """Return the shared workspace to its default branch after a failed run.

    Uncommitted edits left by the agent are stashed rather than carried onto
    the default branch, then the task branch is deleted.
    """
    default = git.get_default_branch(workspace)
    if default is None:
        return
    if git.stash(workspace, message=f"agent-queue {branch} leftovers"):
        logger.warning("Stashed uncommitted changes left on %s in %s", branch, workspace)
    if not git.checkout(workspace, default):
        logger.error("Could not check out %s in %s, keeping %s", default, workspace, branch)
        return
    git.delete_branch(workspace, branch)
