"""Tests for the retrying tracker client."""

import httpx
import pytest

from agent_queue.integrations.tracker import TrackerClient, TrackerError


def make_client(handler, sleeps, **kwargs):
    return TrackerClient(
        "tok",
        "octo/repo",
        api_url="https://tracker.test",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
        **kwargs,
    )


class TestRetries:
    def test_always_rate_limited_makes_exactly_max_retries_attempts(self):
        attempts = []
        sleeps = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(429, json={"message": "slow down"})

        client = make_client(handler, sleeps)
        with pytest.raises(TrackerError) as exc:
            client.get_issue(1)
        assert len(attempts) == 3
        assert exc.value.status == 429
        # No sleep after the final attempt
        assert sleeps == [1.0, 2.0]

    def test_retry_after_header_overrides_backoff(self):
        responses = [
            httpx.Response(403, headers={"Retry-After": "7"}, json={}),
            httpx.Response(200, json={"number": 1}),
        ]
        sleeps = []
        client = make_client(lambda request: responses.pop(0), sleeps)
        assert client.get_issue(1) == {"number": 1}
        assert sleeps == [7.0]

    def test_server_error_then_success(self):
        responses = [
            httpx.Response(502, text="bad gateway"),
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json=[]),
        ]
        sleeps = []
        client = make_client(lambda request: responses.pop(0), sleeps, base_delay=0.5)
        assert client.list_issues(["task"]) == []
        assert sleeps == [0.5, 1.0]

    def test_client_error_raises_immediately(self):
        attempts = []
        sleeps = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(404, json={"message": "Not Found"})

        client = make_client(handler, sleeps)
        with pytest.raises(TrackerError) as exc:
            client.get_issue(99)
        assert exc.value.status == 404
        assert len(attempts) == 1
        assert sleeps == []

    def test_network_errors_exhaust_without_status(self):
        attempts = []
        sleeps = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, sleeps)
        with pytest.raises(TrackerError) as exc:
            client.get_issue(1)
        assert exc.value.status is None
        assert len(attempts) == 3


class TestRequests:
    def test_headers_and_paths(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        client = make_client(handler, [])
        client.list_issues(["task", "agent:bot"])
        request = seen[0]
        assert request.url.path == "/repos/octo/repo/issues"
        assert request.url.params["labels"] == "task,agent:bot"
        assert request.url.params["state"] == "open"
        assert request.headers["authorization"] == "Bearer tok"
        assert request.headers["accept"] == "application/vnd.github+json"
        assert request.headers["x-github-api-version"] == "2022-11-28"

    def test_empty_body_returns_none(self):
        client = make_client(lambda request: httpx.Response(204), [])
        assert client.update_issue(1, state="closed") is None

    def test_replace_labels_uses_put(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"name": "task"}])

        client = make_client(handler, [])
        client.replace_labels(5, ["task"])
        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/repos/octo/repo/issues/5/labels"

    def test_repo_comments_follow_pages(self):
        pages = []

        def handler(request):
            page = int(request.url.params["page"])
            pages.append(page)
            size = 100 if page < 3 else 5
            return httpx.Response(200, json=[{"id": page * 1000 + i} for i in range(size)])

        client = make_client(handler, [])
        comments = client.list_repo_comments("2026-01-01T00:00:00Z")
        assert pages == [1, 2, 3]
        assert len(comments) == 205

    def test_repo_comments_page_limit(self):
        pages = []

        def handler(request):
            pages.append(int(request.url.params["page"]))
            assert request.url.params["per_page"] == "100"
            assert request.url.params["since"] == "2026-01-01T00:00:00Z"
            return httpx.Response(200, json=[{"id": i} for i in range(100)])

        client = make_client(handler, [])
        assert len(client.list_repo_comments("2026-01-01T00:00:00Z", max_pages=2)) == 200
        assert pages == [1, 2]
