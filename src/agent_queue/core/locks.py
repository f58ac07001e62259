"""Host-local flock leases for serializing merge-backs."""

import contextlib
import fcntl
import logging
from collections.abc import Callable, Iterator
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_DIR = ".worktrees"


@contextlib.contextmanager
def locked_file(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def branch_lock(workspace: str | Path) -> Callable[[str], contextlib.AbstractContextManager]:
    """Lock factory for ``merge_worktree``: one lease file per target branch.

    Agents on the same host that share a workspace block each other while
    merging into and pushing the same branch.
    """
    root = Path(workspace) / LOCK_DIR

    def factory(branch: str) -> contextlib.AbstractContextManager:
        safe = branch.replace("/", "_")
        logger.debug("Waiting for merge lock on %s", branch)
        return locked_file(root / f".merge-{safe}.lock")

    return factory
