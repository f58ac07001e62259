"""Tests for the label-based task store."""

import pytest

from agent_queue.core import tasks as tasks_mod
from agent_queue.core.metadata import metadata_block
from agent_queue.integrations.tracker import TrackerError


class TestCreateAndList:
    def test_create_task_labels_and_meta(self, client, fake):
        task = tasks_mod.create_task(
            client, "Add login", "bot", priority="high", body="Details",
            workspace="~/proj", delegated_from="lead",
        )
        assert task.status == "assigned"
        assert task.assignee == "bot"
        assert task.priority == "high"
        assert task.workspace == "~/proj"
        assert task.delegated_from == "lead"
        assert set(fake.labels(task.id)) == {"task", "agent:bot", "status:assigned", "priority:high"}
        assert fake.issues[task.id]["body"].startswith("Details")

    def test_list_filters_by_labels(self, client, fake):
        fake.add_issue("mine", ["task", "agent:bot", "status:assigned"])
        fake.add_issue("other agent", ["task", "agent:other", "status:assigned"])
        fake.add_issue("not a task", ["agent:bot", "status:assigned"])
        fake.add_issue("done", ["task", "agent:bot", "status:completed"], state="closed")

        found = tasks_mod.list_tasks(client, assignee="bot", status="assigned")
        assert [t.title for t in found] == ["mine"]

    def test_list_skips_pull_requests(self, client, fake):
        number = fake.add_issue("pr", ["task"])
        fake.issues[number]["pull_request"] = {"url": "x"}
        assert tasks_mod.list_tasks(client) == []

    def test_missing_status_projects_unknown(self, client, fake):
        number = fake.add_issue("bare", ["task"])
        assert tasks_mod.get_task(client, number).status == "unknown"

    def test_retries_clamped(self, client, fake):
        number = fake.add_issue("t", ["task"], body=metadata_block("meta", {"retries": 9}))
        assert tasks_mod.get_task(client, number).retries == 3

    def test_get_missing_task_raises_with_status(self, client):
        with pytest.raises(TrackerError) as exc:
            tasks_mod.get_task(client, 404)
        assert exc.value.status == 404


class TestStatus:
    def test_exactly_one_status_label_remains(self, client, fake):
        number = fake.add_issue(
            "t", ["task", "agent:bot", "status:assigned", "status:in-progress", "priority:low"]
        )
        labels = tasks_mod.update_task_status(client, number, "failed")
        assert labels == fake.labels(number)
        assert [l for l in labels if l.startswith("status:")] == ["status:failed"]
        assert "priority:low" in labels
        assert fake.issues[number]["state"] == "open"

    def test_single_label_write(self, client, fake):
        number = fake.add_issue("t", ["task", "status:assigned"])
        tasks_mod.update_task_status(client, number, "in-progress")
        assert len(fake.calls("PUT")) == 1

    def test_completed_closes_issue(self, client, fake):
        number = fake.add_issue("t", ["task", "status:in-progress"])
        tasks_mod.update_task_status(client, number, "completed")
        assert fake.issues[number]["state"] == "closed"

    def test_invalid_status_rejected(self, client, fake):
        number = fake.add_issue("t", ["task", "status:assigned"])
        with pytest.raises(ValueError):
            tasks_mod.update_task_status(client, number, "done")
        assert fake.calls("PUT") == []


class TestPlanAndReport:
    def test_plan_round_trip(self, client, fake):
        number = fake.add_issue("t", ["task", "status:planned"])
        tasks_mod.save_plan(
            client, number, ["Add model", "Add view"], ["app/models.py"], "large", "Watch migrations"
        )
        task = tasks_mod.get_task(client, number)
        assert task.plan.goals == ["Add model", "Add view"]
        assert task.plan.affected_files == ["app/models.py"]
        assert task.plan.effort == "large"
        assert task.plan.notes == "Watch migrations"
        assert task.status == "planned"

    def test_first_plan_wins(self, client, fake):
        number = fake.add_issue("t", ["task"])
        tasks_mod.save_plan(client, number, ["first"])
        tasks_mod.save_plan(client, number, ["second"])
        assert tasks_mod.get_task(client, number).plan.goals == ["first"]

    def test_legacy_plan_comment_is_read(self, client, fake):
        number = fake.add_issue("t", ["task"])
        fake.add_comment(number, '## Plan\n<!-- agent-queue:plan {"goals": ["old"]} -->')
        plan = tasks_mod.get_task(client, number).plan
        assert plan.goals == ["old"]
        assert plan.effort == "medium"

    def test_complete_task_comments_then_closes(self, client, fake):
        number = fake.add_issue("t", ["task", "agent:bot", "status:in-progress"])
        tasks_mod.complete_task(client, number, "Did it", ["a.py"], ["b.py"])

        methods = [m for m, _ in fake.requests if m in ("POST", "PUT", "PATCH")]
        assert methods == ["POST", "PUT", "PATCH"]
        task = tasks_mod.get_task(client, number)
        assert task.status == "completed"
        assert task.state == "closed"
        assert task.report.summary == "Did it"
        assert task.report.modified_files == ["a.py"]
        assert task.report.new_files == ["b.py"]

    def test_complete_task_report_failure_leaves_status(self, client, fake):
        number = fake.add_issue("t", ["task", "status:in-progress"])
        fake.fail("POST", r"/comments$", 422)
        with pytest.raises(TrackerError):
            tasks_mod.complete_task(client, number, "Did it")
        assert "status:in-progress" in fake.labels(number)
        assert fake.issues[number]["state"] == "open"


class TestCommentsAndMeta:
    def test_add_comment(self, client, fake):
        number = fake.add_issue("t", ["task"])
        comment = tasks_mod.add_comment(client, number, "hello")
        assert comment.body == "hello"
        assert fake.comment_bodies(number) == ["hello"]

    def test_update_meta_merges_and_upgrades(self, client, fake):
        number = fake.add_issue(
            "t", ["task"], body='Work\n<!-- agent-queue:meta {"workspace": "/w", "retries": 1} -->'
        )
        meta = tasks_mod.update_task_meta(client, number, retries=2)
        assert meta == {"workspace": "/w", "retries": 2}
        body = fake.issues[number]["body"]
        assert "agent-queue:v1:meta" in body
        task = tasks_mod.get_task(client, number)
        assert task.retries == 2
        assert task.workspace == "/w"
