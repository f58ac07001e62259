"""Shared fixtures: an in-memory issue tracker behind httpx.MockTransport, and git repos."""

import itertools
import json
import os
import re
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from agent_queue.config import Config
from agent_queue.integrations.tracker import TrackerClient

REPO = "octo/repo"
API_URL = "https://tracker.test"

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeTracker:
    """Enough of the GitHub issues API to drive the real TrackerClient."""

    def __init__(self):
        self.issues: dict[int, dict] = {}
        self.comments: dict[int, list[dict]] = {}
        self.hooks: list[dict] = []
        self.requests: list[tuple[str, str]] = []
        self.failures: list[tuple[str, str, int]] = []
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._numbers = itertools.count(1)
        self._comment_ids = itertools.count(1000)

    # ── Seeding ───────────────────────────────────────────────────────────────

    def add_issue(self, title, labels, body="", state="open", updated_at=None, number=None):
        number = number or next(self._numbers)
        self.issues[number] = {
            "number": number,
            "title": title,
            "body": body,
            "labels": [{"name": name} for name in labels],
            "state": state,
            "updated_at": iso(updated_at or self.now),
        }
        self.comments.setdefault(number, [])
        return number

    def add_comment(self, number, body, author="human", created_at=None):
        comment = {
            "id": next(self._comment_ids),
            "body": body,
            "user": {"login": author},
            "created_at": iso(created_at or self.now),
            "issue_url": f"{API_URL}/repos/{REPO}/issues/{number}",
        }
        self.comments.setdefault(number, []).append(comment)
        return comment

    def fail(self, method, path_pattern, status, times=1):
        """Make the next ``times`` matching requests return ``status``."""
        for _ in range(times):
            self.failures.append((method, path_pattern, status))

    # ── Inspection ────────────────────────────────────────────────────────────

    def labels(self, number):
        return [label["name"] for label in self.issues[number]["labels"]]

    def comment_bodies(self, number):
        return [c["body"] for c in self.comments.get(number, [])]

    def calls(self, method=None):
        return [(m, p) for m, p in self.requests if method is None or m == method]

    # ── Transport ─────────────────────────────────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        for i, (f_method, pattern, status) in enumerate(self.failures):
            if f_method == method and re.search(pattern, path):
                del self.failures[i]
                return httpx.Response(status, json={"message": "injected failure"})

        prefix = f"/repos/{REPO}"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        rest = path[len(prefix):]
        params = {k: v[0] for k, v in parse_qs(request.url.query.decode()).items()}
        body = json.loads(request.content) if request.content else {}

        if rest == "/issues/comments" and method == "GET":
            since = params.get("since", "")
            found = [
                c for cs in self.comments.values() for c in cs if c["created_at"] >= since
            ]
            found.sort(key=lambda c: (c["created_at"], c["id"]))
            per_page = int(params.get("per_page", 30))
            page = int(params.get("page", 1))
            return httpx.Response(200, json=found[(page - 1) * per_page:page * per_page])

        if rest == "/issues" and method == "GET":
            wanted = [name for name in params.get("labels", "").split(",") if name]
            state = params.get("state", "open")
            found = [
                issue for issue in self.issues.values()
                if issue["state"] == state
                and all(name in self.labels(issue["number"]) for name in wanted)
            ]
            return httpx.Response(200, json=found)

        if rest == "/issues" and method == "POST":
            number = self.add_issue(body["title"], body.get("labels", []), body.get("body", ""))
            return httpx.Response(201, json=self.issues[number])

        if rest == "/hooks" and method == "POST":
            self.hooks.append(body)
            return httpx.Response(201, json={"id": len(self.hooks), **body})

        match = re.fullmatch(r"/issues/(\d+)(/comments|/labels)?", rest)
        if not match:
            return httpx.Response(404, json={"message": "Not Found"})
        number = int(match.group(1))
        if number not in self.issues:
            return httpx.Response(404, json={"message": "Not Found"})
        issue = self.issues[number]
        sub = match.group(2)

        if sub is None and method == "GET":
            return httpx.Response(200, json=issue)
        if sub is None and method == "PATCH":
            issue.update({k: v for k, v in body.items() if k in ("state", "body", "title")})
            issue["updated_at"] = iso(self.now)
            return httpx.Response(200, json=issue)
        if sub == "/comments" and method == "GET":
            return httpx.Response(200, json=self.comments[number])
        if sub == "/comments" and method == "POST":
            comment = self.add_comment(number, body["body"], author="bot-account")
            issue["updated_at"] = iso(self.now)
            return httpx.Response(201, json=comment)
        if sub == "/labels" and method == "PUT":
            issue["labels"] = [{"name": name} for name in body["labels"]]
            issue["updated_at"] = iso(self.now)
            return httpx.Response(200, json=issue["labels"])

        return httpx.Response(405, json={"message": "Method Not Allowed"})


@pytest.fixture
def fake():
    return FakeTracker()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(fake, sleeps):
    c = TrackerClient(
        "test-token",
        REPO,
        api_url=API_URL,
        transport=httpx.MockTransport(fake.handler),
        sleep=sleeps.append,
    )
    yield c
    c.close()


@pytest.fixture
def config(tmp_path):
    return Config(
        agent_name="bot",
        tracker_token="test-token",
        tracker_repo=REPO,
        api_url=API_URL,
        work_dir=tmp_path,
        log_dir=tmp_path / "logs",
        webhook_port=0,
        execution_timeout=60.0,
        shutdown_grace_seconds=2.0,
    )


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real home directory and global git config."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)
    for key in list(os.environ):
        if key.startswith("AQ_") or key in ("GITHUB_TOKEN", "GITHUB_REPO", "SLACK_BOT_TOKEN"):
            monkeypatch.delenv(key, raising=False)


# ── Git helpers ───────────────────────────────────────────────────────────────


def git(*args, cwd):
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo, name, content, message=None):
    path = Path(repo) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git("add", name, cwd=repo)
    git("commit", "-q", "-m", message or f"update {name}", cwd=repo)
    return git("rev-parse", "HEAD", cwd=repo)


def init_repo(path):
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    git("init", "-q", cwd=path)
    git("checkout", "-q", "-b", "main", cwd=path)
    commit_file(path, "README.md", "# Test\n", "init")
    return path


@pytest.fixture
def git_repo(tmp_path):
    """A temporary git repo on main with an initial commit."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def origin_repo(tmp_path):
    """A bare origin with main, plus a clone ``workspace`` tracking it."""
    origin = tmp_path / "origin.git"
    git("init", "-q", "--bare", str(origin), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=origin)

    workspace = init_repo(tmp_path / "workspace")
    git("remote", "add", "origin", str(origin), cwd=workspace)
    git("push", "-q", "-u", "origin", "main", cwd=workspace)
    return origin, workspace


def clone(origin, dest):
    git("clone", "-q", str(origin), str(dest), cwd=Path(dest).parent)
    return Path(dest)


@pytest.fixture
def stale_time(fake):
    return fake.now - timedelta(hours=1)
