"""Git subprocess wrappers for worktree, branch and merge operations.

``run_git`` raises GitError. The boolean helpers below it report failure by
returning False, because the merge protocol branches on outcomes rather than
treating them as errors.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class GitWorktree:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def try_git(args: list[str], cwd: str | Path | None = None) -> bool:
    """Run a git command, returning False instead of raising."""
    try:
        run_git(args, cwd=cwd)
        return True
    except GitError as e:
        logger.debug("%s", e)
        return False


# ── Repository inspection ────────────────────────────────────────────────────


def is_git_repo(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def is_git_repo_root(path: str | Path) -> bool:
    """True if ``path`` is the top level of a git working tree."""
    if not Path(path).is_dir():
        return False
    try:
        top = run_git(["rev-parse", "--show-toplevel"], cwd=path)
    except GitError:
        return False
    return Path(top).resolve() == Path(path).resolve()


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def get_default_branch(repo_path: str | Path) -> str | None:
    """Return 'main' or 'master', whichever exists locally (main first)."""
    for candidate in ("main", "master"):
        if branch_exists(repo_path, candidate):
            return candidate
    return None


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def has_conflicts(cwd: str | Path) -> bool:
    try:
        return bool(run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd))
    except GitError:
        return False


def has_remote(cwd: str | Path, remote: str = "origin") -> bool:
    try:
        return remote in run_git(["remote"], cwd=cwd).split()
    except GitError:
        return False


def add_exclude(cwd: str | Path, pattern: str) -> bool:
    """List ``pattern`` in the repository's info/exclude, which every worktree shares."""
    try:
        common = run_git(["rev-parse", "--path-format=absolute", "--git-common-dir"], cwd=cwd)
    except GitError as e:
        logger.debug("%s", e)
        return False

    exclude = Path(common) / "info" / "exclude"
    try:
        content = exclude.read_text() if exclude.exists() else ""
        if pattern in (line.strip() for line in content.splitlines()):
            return True
        if content and not content.endswith("\n"):
            content += "\n"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        exclude.write_text(content + pattern + "\n")
    except OSError as e:
        logger.warning("Could not update %s: %s", exclude, e)
        return False
    return True


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base: str = "HEAD",
) -> bool:
    """Create a worktree on a new branch starting at ``base``."""
    return try_git(["worktree", "add", "-b", branch, str(worktree_path), base], cwd=repo_path)


def _parse_worktree_record(record: str) -> GitWorktree:
    fields: dict[str, str] = {}
    for entry in record.splitlines():
        key, _, value = entry.partition(" ")
        fields[key] = value
    return GitWorktree(
        path=fields.get("worktree", ""),
        branch=fields.get("branch", "").removeprefix("refs/heads/"),
        head=fields.get("HEAD", ""),
        is_bare="bare" in fields,
    )


def worktree_list(repo_path: str | Path) -> list[GitWorktree]:
    """Worktrees of ``repo_path``, main working tree first."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    return [_parse_worktree_record(record) for record in output.split("\n\n") if record.strip()]


def find_worktree_for_branch(repo_path: str | Path, branch: str) -> str | None:
    """Path of the worktree that has ``branch`` checked out, if any."""
    try:
        worktrees = worktree_list(repo_path)
    except GitError:
        return None
    for wt in worktrees:
        if wt.branch == branch:
            return wt.path
    return None


def worktree_remove(repo_path: str | Path, worktree_path: str | Path) -> bool:
    """Force-remove a worktree. False if there was nothing to remove or git refused."""
    return try_git(["worktree", "remove", "--force", str(worktree_path)], cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> bool:
    return try_git(["worktree", "prune"], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str) -> bool:
    """Force-delete a local branch."""
    return try_git(["branch", "-D", branch], cwd=repo_path)


def delete_remote_branch(repo_path: str | Path, branch: str, remote: str = "origin") -> bool:
    if not has_remote(repo_path, remote):
        return False
    return try_git(["push", remote, "--delete", branch], cwd=repo_path)


# ── Branch / merge operations ────────────────────────────────────────────────


def checkout(cwd: str | Path, branch: str) -> bool:
    return try_git(["checkout", branch], cwd=cwd)


def checkout_new_branch(cwd: str | Path, branch: str, base: str = "HEAD") -> bool:
    """Check out ``branch``, resetting it to ``base`` if it already exists."""
    return try_git(["checkout", "-B", branch, base], cwd=cwd)


def stash(cwd: str | Path, message: str = "agent-queue merge") -> bool:
    """Stash tracked and untracked changes. True only if something was stashed."""
    try:
        if not get_status(cwd):
            return False
    except GitError:
        return False
    return try_git(["stash", "push", "--include-untracked", "-m", message], cwd=cwd)


def stash_pop(cwd: str | Path) -> bool:
    ok = try_git(["stash", "pop"], cwd=cwd)
    if not ok:
        logger.warning("Could not restore stashed changes in %s (left in git stash)", cwd)
    return ok


def pull(cwd: str | Path, remote: str = "origin", branch: str | None = None) -> bool:
    if not has_remote(cwd, remote):
        return False
    args = ["pull", "--no-rebase", "--no-edit", remote]
    if branch:
        args.append(branch)
    return try_git(args, cwd=cwd)


def merge(cwd: str | Path, branch: str, ff_only: bool = False) -> bool:
    args = ["merge", "--ff-only", branch] if ff_only else ["merge", "--no-edit", branch]
    return try_git(args, cwd=cwd)


def merge_abort(cwd: str | Path) -> bool:
    return try_git(["merge", "--abort"], cwd=cwd)


def rebase(cwd: str | Path, onto: str) -> bool:
    return try_git(["rebase", onto], cwd=cwd)


def rebase_abort(cwd: str | Path) -> bool:
    return try_git(["rebase", "--abort"], cwd=cwd)


def push(cwd: str | Path, remote: str = "origin", branch: str | None = None) -> bool:
    if not has_remote(cwd, remote):
        return False
    args = ["push", remote]
    if branch:
        args.append(branch)
    return try_git(args, cwd=cwd)


def reset_hard(cwd: str | Path, ref: str = "HEAD") -> bool:
    return try_git(["reset", "--hard", ref], cwd=cwd)
