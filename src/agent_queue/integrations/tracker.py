"""Issue-tracker REST client with rate-limit aware retries."""

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_TIMEOUT_SECONDS = 30.0

RATE_LIMIT_STATUSES = (403, 429)
PAGE_SIZE = 100
MAX_COMMENT_PAGES = 10


class TrackerError(Exception):
    """Raised when a tracker request fails. Carries the HTTP status when known."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TrackerClient:
    """Thin wrapper over the tracker REST API.

    403/429 responses, 5xx responses and transport errors are retried with
    exponential backoff. Any other 4xx raises TrackerError right away.
    """

    def __init__(
        self,
        token: str,
        repo: str,
        *,
        api_url: str = DEFAULT_API_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo = repo
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=api_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": API_VERSION,
            },
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, **kwargs) -> "TrackerClient":
        return cls(
            config.tracker_token,
            config.tracker_repo,
            api_url=config.api_url,
            **kwargs,
        )

    # ── Transport ─────────────────────────────────────────────────────────────

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (or None)."""
        last_error: TrackerError | None = None

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            try:
                response = self._client.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                last_error = TrackerError(f"{method} {path} failed: {e}")
                logger.warning(
                    "Tracker %s %s network error (attempt %d/%d): %s",
                    method, path, attempt + 1, self.max_retries, e,
                )
                if not is_last:
                    self._sleep(self._backoff(attempt))
                continue

            status = response.status_code
            if status in RATE_LIMIT_STATUSES or status >= 500:
                last_error = TrackerError(
                    f"{method} {path} -> {status}: {response.text[:200]}", status=status
                )
                delay = self._backoff(attempt)
                if status in RATE_LIMIT_STATUSES:
                    delay = self._retry_after(response, delay)
                logger.warning(
                    "Tracker %s %s -> %s (attempt %d/%d)",
                    method, path, status, attempt + 1, self.max_retries,
                )
                if not is_last:
                    self._sleep(delay)
                continue

            if status >= 400:
                raise TrackerError(
                    f"{method} {path} -> {status}: {response.text[:200]}", status=status
                )

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return response.text

        raise last_error or TrackerError(
            f"{method} {path} failed after {self.max_retries} attempts"
        )

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    @staticmethod
    def _retry_after(response: httpx.Response, default: float) -> float:
        value = response.headers.get("retry-after")
        if not value:
            return default
        try:
            return float(value)
        except ValueError:
            return default

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TrackerClient":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ── Issue endpoints ───────────────────────────────────────────────────────

    def _repo_path(self, suffix: str = "") -> str:
        return f"/repos/{self.repo}{suffix}"

    def list_issues(self, labels: list[str], state: str = "open") -> list[dict]:
        params = {"labels": ",".join(labels), "state": state, "per_page": 100}
        return self.request("GET", self._repo_path("/issues"), params=params) or []

    def get_issue(self, number: int) -> dict:
        return self.request("GET", self._repo_path(f"/issues/{number}"))

    def list_comments(self, number: int) -> list[dict]:
        return (
            self.request(
                "GET", self._repo_path(f"/issues/{number}/comments"), params={"per_page": 100}
            )
            or []
        )

    def list_repo_comments(self, since: str, max_pages: int = MAX_COMMENT_PAGES) -> list[dict]:
        """Repository-wide comments created since ``since``, oldest first.

        Follows pages until a short page or ``max_pages`` pages have been read.
        """
        params = {"since": since, "sort": "created", "direction": "asc", "per_page": PAGE_SIZE}
        comments: list[dict] = []
        for page in range(1, max_pages + 1):
            batch = (
                self.request(
                    "GET", self._repo_path("/issues/comments"), params={**params, "page": page}
                )
                or []
            )
            comments.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return comments

    def create_issue(self, title: str, body: str, labels: list[str]) -> dict:
        return self.request(
            "POST",
            self._repo_path("/issues"),
            json={"title": title, "body": body, "labels": labels},
        )

    def replace_labels(self, number: int, labels: list[str]) -> list[dict]:
        return self.request(
            "PUT", self._repo_path(f"/issues/{number}/labels"), json={"labels": labels}
        )

    def create_comment(self, number: int, body: str) -> dict:
        return self.request(
            "POST", self._repo_path(f"/issues/{number}/comments"), json={"body": body}
        )

    def update_issue(self, number: int, **fields) -> dict:
        return self.request("PATCH", self._repo_path(f"/issues/{number}"), json=fields)

    def create_webhook(self, url: str, events: list[str] | None = None) -> dict:
        payload = {
            "name": "web",
            "active": True,
            "events": events or ["issues", "issue_comment"],
            "config": {"url": url, "content_type": "json"},
        }
        return self.request("POST", self._repo_path("/hooks"), json=payload)
