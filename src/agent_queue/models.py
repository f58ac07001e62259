"""Data models for agent-queue."""

from dataclasses import dataclass, field
from datetime import datetime

TYPE_LABEL = "task"
AGENT_PREFIX = "agent:"
STATUS_PREFIX = "status:"
PRIORITY_PREFIX = "priority:"


def _label_value(labels: list[str], prefix: str) -> str | None:
    for label in labels:
        if label.startswith(prefix):
            return label[len(prefix):]
    return None


@dataclass
class Plan:
    goals: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    effort: str = "medium"
    notes: str | None = None


@dataclass
class Report:
    summary: str = ""
    modified_files: list[str] = field(default_factory=list)
    new_files: list[str] = field(default_factory=list)


@dataclass
class Comment:
    id: int | None = None
    body: str = ""
    author: str | None = None
    created_at: datetime | None = None


@dataclass
class Task:
    """A tracker issue viewed as a task.

    Status, assignee and priority are projections of the label set and are
    recomputed on every access.
    """

    id: int
    title: str = ""
    labels: list[str] = field(default_factory=list)
    body: str = ""
    state: str = "open"
    workspace: str | None = None
    retries: int = 0
    delegated_from: str | None = None
    updated_at: datetime | None = None
    plan: Plan | None = None
    report: Report | None = None
    comments: list[Comment] = field(default_factory=list)

    @property
    def status(self) -> str:
        return _label_value(self.labels, STATUS_PREFIX) or "unknown"

    @property
    def assignee(self) -> str | None:
        return _label_value(self.labels, AGENT_PREFIX)

    @property
    def priority(self) -> str | None:
        return _label_value(self.labels, PRIORITY_PREFIX)


@dataclass
class Message:
    id: int
    task_id: int
    body: str
    author: str | None = None
    created_at: datetime | None = None


@dataclass
class WorktreeInfo:
    worktree_path: str
    branch: str
    original_workspace: str


@dataclass
class MergeResult:
    success: bool
    has_conflicts: bool = False
    output: str = ""
    strategy: str | None = None


@dataclass
class ExecutionResult:
    task_id: int
    exit_code: int
    timed_out: bool = False
    merge: MergeResult | None = None
