"""Unit tests for task execution and on_fail policies."""
import copy
from unittest.mock import patch

import pytest


def _statuses(outcome):
    return {node: result.status.value for node, result in outcome.report.results.items()}


class TestFromHash:
    """Tests for parsing tasks and hooks."""

    def test_default_name(self, make_playbook):
        """Should name an unnamed task after its agent and action."""
        playbook = make_playbook({
            "name": "x",
            "nodes": {"all": ["a"]},
            "tasks": [{"nodes": "all", "agent": "puppet", "action": "disable"}],
        })

        assert playbook.tasks.tasks[0].name == "puppet#disable"
        assert playbook.tasks.tasks[0].label == "task puppet#disable"

    def test_unknown_key_rejected(self, make_playbook):
        """Should reject task keys it does not know."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError) as exc_info:
            make_playbook({
                "name": "x",
                "tasks": [{"nodes": "all", "agent": "puppet", "action": "disable", "when": "x"}],
            })

        assert exc_info.value.field == "tasks[0]"
        assert "when" in str(exc_info.value)

    def test_required_keys(self, make_playbook):
        """Should require nodes, agent and action."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError) as exc_info:
            make_playbook({"name": "x", "tasks": [{"nodes": "all", "agent": "puppet"}]})

        assert exc_info.value.field == "tasks[0].action"

    def test_invalid_hook_point(self, make_playbook):
        """Should reject unknown lifecycle points."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError) as exc_info:
            make_playbook({
                "name": "x",
                "hooks": {"later": [{"nodes": "all", "agent": "puppet", "action": "enable"}]},
            })

        assert exc_info.value.field == "hooks.later"

    def test_single_hook_dictionary(self, make_playbook):
        """Should accept a single hook given as a dictionary."""
        from Conductor.Core.playbook import HookPoint

        playbook = make_playbook({
            "name": "x",
            "hooks": {"post": {"nodes": "all", "agent": "puppet", "action": "enable"}},
        })

        hooks = playbook.tasks.hooks(HookPoint.POST)
        assert len(hooks) == 1
        assert hooks[0].hook == HookPoint.POST
        assert hooks[0].label == "post hook puppet#enable"

    def test_tasks_must_be_a_list(self, make_playbook):
        """Should reject a tasks section that is not a list."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError):
            make_playbook({"name": "x", "tasks": {"nodes": "all"}})


class TestPrepare:
    """Tests for Tasks.prepare."""

    def test_converts_numeric_options(self, make_playbook):
        """Should convert batch sizes, retries and durations."""
        playbook = make_playbook({
            "name": "x",
            "nodes": {"all": ["a"]},
            "tasks": [{
                "nodes": "all", "agent": "puppet", "action": "disable",
                "batch_size": "3", "retries": "1", "timeout": "1m", "retry_backoff": "10s",
            }],
        })

        playbook.run({})
        task = playbook.tasks.tasks[0]

        assert task.batch_size == 3
        assert task.retries == 1
        assert task.timeout == 60
        assert task.retry_backoff == 10

    def test_collects_every_invalid_option(self, make_playbook):
        """Should report every invalid option at once."""
        from Conductor.Core.errors import ValidationError

        playbook = make_playbook({
            "name": "x",
            "nodes": {"all": ["a"]},
            "tasks": [
                {"nodes": "all", "agent": "puppet", "action": "disable", "batch_size": 0},
                {"nodes": "all", "agent": "puppet", "action": "enable", "timeout": "soon"},
                {"nodes": "all", "agent": "puppet", "action": "status", "retries": "many"},
            ],
        })

        with pytest.raises(ValidationError) as exc_info:
            playbook.run({})

        assert exc_info.value.subject == "tasks"
        assert len(exc_info.value.errors) == 3
        assert exc_info.value.errors[0] == "task puppet#disable: batch_size must be at least 1"

    def test_undeclared_group(self, make_playbook):
        """Should fail preparation for a task targeting an unknown group."""
        from Conductor.Core.errors import UndeclaredGroup

        playbook = make_playbook({
            "name": "x",
            "tasks": [{"nodes": "missing", "agent": "puppet", "action": "disable"}],
        })

        with pytest.raises(UndeclaredGroup):
            playbook.run({})

    def test_undeclared_hook_group(self, make_playbook):
        """Should check the node groups of hooks too."""
        from Conductor.Core.errors import UndeclaredGroup

        playbook = make_playbook({
            "name": "x",
            "hooks": {"post": [{"nodes": "missing", "agent": "puppet", "action": "enable"}]},
        })

        with pytest.raises(UndeclaredGroup):
            playbook.run({})


class TestFailPolicy:
    """Tests for the fail policy."""

    def test_five_nodes_batch_of_two_with_one_timeout(self, make_playbook, five_node_document, rpc_client):
        """Should time out one node, fail the task, run on_fail hooks and abort."""
        from Conductor.Core.playbook import RunStatus, TaskState, TaskStatus

        rpc_client.failures["node3"] = "timeout"
        playbook = make_playbook(five_node_document)

        report = playbook.run({})

        disable_calls = [c["nodes"] for c in rpc_client.calls if c["action"] == "disable"]
        assert disable_calls == [["node1", "node2"], ["node3", "node4"], ["node5"]]

        outcome = report.tasks[0]
        assert outcome.status == TaskStatus.FAILED
        assert _statuses(outcome) == {
            "node1": "succeeded",
            "node2": "succeeded",
            "node3": "timeout",
            "node4": "succeeded",
            "node5": "succeeded",
        }
        assert outcome.report.batches == 3
        assert "node3" in outcome.error

        assert report.status == RunStatus.ABORTED
        assert report.success is False
        assert [h.name for h in report.hooks] == ["notify"]
        assert playbook.tasks.state == TaskState.ABORTED

    def test_remaining_tasks_skipped(self, make_playbook, five_node_document, rpc_client):
        """Should skip every task after the failed one."""
        from Conductor.Core.playbook import TaskStatus

        document = copy.deepcopy(five_node_document)
        document["tasks"].append(
            {"name": "run puppet", "nodes": "servers", "agent": "puppet", "action": "runonce"}
        )
        rpc_client.failures["node1"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        assert [t.status for t in report.tasks] == [TaskStatus.FAILED, TaskStatus.SKIPPED]
        assert set(_statuses(report.tasks[1]).values()) == {"skipped"}
        assert report.tasks[1].report.attempted == 0
        assert not any(c["action"] == "runonce" for c in rpc_client.calls)

    def test_all_succeed(self, make_playbook, five_node_document, rpc_client):
        """Should complete and run on_success then post hooks."""
        from Conductor.Core.playbook import RunStatus, TaskState

        playbook = make_playbook(five_node_document)

        report = playbook.run({})

        assert report.status == RunStatus.COMPLETED
        assert report.success is True
        assert [h.name for h in report.hooks] == ["celebrate", "enable"]
        assert playbook.tasks.state == TaskState.COMPLETED
        assert report.node_results()["node1"] == {"0:disable puppet": "succeeded"}

    def test_node_results_keep_tasks_with_the_same_name(self, make_playbook, rpc_client):
        """Should report every task even when default names repeat."""
        rpc_client.failures["b"] = 1
        playbook = make_playbook({
            "name": "twice",
            "on_fail": "continue",
            "nodes": {"all": ["a", "b"]},
            "tasks": [
                {"nodes": "all", "agent": "puppet", "action": "disable"},
                {"nodes": "all", "agent": "puppet", "action": "disable"},
            ],
        })

        report = playbook.run({})

        assert report.node_results()["b"] == {
            "0:puppet#disable": "failed",
            "1:puppet#disable": "failed",
        }
        assert report.node_results()["a"] == {
            "0:puppet#disable": "succeeded",
            "1:puppet#disable": "succeeded",
        }

    def test_no_retry_under_fail(self, make_playbook, five_node_document, rpc_client):
        """Should not re-dispatch failed nodes under the fail policy."""
        rpc_client.failures["node3"] = 1
        playbook = make_playbook(five_node_document)

        report = playbook.run({})

        assert report.tasks[0].attempts == 1
        assert len([c for c in rpc_client.calls if c["action"] == "disable"]) == 3


class TestContinuePolicy:
    """Tests for the continue policy."""

    def test_continues_after_failure(self, make_playbook, five_node_document, rpc_client):
        """Should run later tasks and finish as failed."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "continue"
        document["tasks"].append(
            {"name": "run puppet", "nodes": "servers", "agent": "puppet", "action": "runonce"}
        )
        rpc_client.failures["node2"] = [1, 0, 0, 0]
        playbook = make_playbook(document)

        report = playbook.run({})

        assert [t.status for t in report.tasks] == [TaskStatus.FAILED, TaskStatus.SUCCEEDED]
        assert report.status == RunStatus.FAILED
        assert [h.name for h in report.hooks] == ["notify", "enable"]
        assert len(report.failed_tasks) == 1


class TestRetryPolicy:
    """Tests for the retry policy."""

    def test_retry_recovers(self, make_playbook, five_node_document, rpc_client):
        """Should re-dispatch only the failed node and succeed."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "retry"
        rpc_client.failures["node3"] = [1, 0]
        playbook = make_playbook(document)

        with patch("Conductor.Core.playbook.tasks.record_task_retry") as mock_retry:
            report = playbook.run({})

        disable_calls = [c["nodes"] for c in rpc_client.calls if c["action"] == "disable"]
        assert disable_calls == [["node1", "node2"], ["node3", "node4"], ["node5"], ["node3"]]

        outcome = report.tasks[0]
        assert outcome.status == TaskStatus.SUCCEEDED
        assert outcome.attempts == 2
        assert outcome.report.results["node3"].attempts == 2
        assert outcome.report.results["node1"].attempts == 1
        assert report.status == RunStatus.COMPLETED
        mock_retry.assert_called_once_with("puppet", "disable")

    def test_retry_exhausted_aborts(self, make_playbook, five_node_document, rpc_client):
        """Should give up after the configured retries and abort."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "retry"
        rpc_client.failures["node3"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        disable_calls = [c for c in rpc_client.calls if c["action"] == "disable"]
        # 3 batches plus the default 2 retries
        assert len(disable_calls) == 5
        assert report.tasks[0].status == TaskStatus.FAILED
        assert report.tasks[0].attempts == 3
        assert report.status == RunStatus.ABORTED
        assert [h.name for h in report.hooks] == ["notify"]

    def test_task_retries_override(self, make_playbook, five_node_document, rpc_client):
        """Should use the task retries and backoff over the configured defaults."""
        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "retry"
        document["tasks"][0]["retries"] = 1
        document["tasks"][0]["retry_backoff"] = "5s"
        rpc_client.failures["node3"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        assert report.tasks[0].attempts == 2
        playbook.tasks.sleep.assert_called_once_with(5.0)

    def test_no_sleep_without_backoff(self, make_playbook, five_node_document, rpc_client):
        """Should not sleep when the backoff is zero."""
        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "retry"
        rpc_client.failures["node3"] = [1, 0]
        playbook = make_playbook(document)

        playbook.run({})

        playbook.tasks.sleep.assert_not_called()

    def test_hooks_not_retried(self, make_playbook, five_node_document, rpc_client):
        """Should never retry hooks."""
        from Conductor.Core.playbook import TaskStatus

        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "retry"
        document["hooks"]["post"][0]["nodes"] = "broken"
        document["nodes"]["broken"] = ["bad1"]
        rpc_client.failures["bad1"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        post = report.hooks[-1]
        assert post.name == "enable"
        assert post.status == TaskStatus.FAILED
        assert post.attempts == 1
        assert len([c for c in rpc_client.calls if c["action"] == "enable"]) == 1


class TestHooks:
    """Tests for lifecycle hooks."""

    def _with_pre(self, document, *pre):
        document = copy.deepcopy(document)
        document["nodes"]["broken"] = ["bad1"]
        document["hooks"]["pre"] = list(pre)
        return document

    def test_pre_hook_runs_first(self, make_playbook, five_node_document, rpc_client):
        """Should run pre hooks before the first task."""
        document = self._with_pre(
            five_node_document,
            {"name": "check", "nodes": "servers", "agent": "puppet", "action": "status"},
        )
        playbook = make_playbook(document)

        report = playbook.run({})

        assert rpc_client.calls[0]["action"] == "status"
        assert [h.name for h in report.hooks] == ["check", "celebrate", "enable"]

    def test_failed_pre_hook_aborts(self, make_playbook, five_node_document, rpc_client):
        """Should skip every task and later hook when a pre hook fails."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        document = self._with_pre(
            five_node_document,
            {"name": "check", "nodes": "broken", "agent": "puppet", "action": "status"},
            {"name": "second check", "nodes": "servers", "agent": "puppet", "action": "status"},
        )
        rpc_client.failures["bad1"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        assert report.status == RunStatus.ABORTED
        assert [t.status for t in report.tasks] == [TaskStatus.SKIPPED]
        assert [(h.name, h.status) for h in report.hooks] == [
            ("check", TaskStatus.FAILED),
            ("second check", TaskStatus.SKIPPED),
        ]
        assert [c["nodes"] for c in rpc_client.calls] == [["bad1"]]

    def test_failed_post_hook_keeps_status(self, make_playbook, five_node_document, rpc_client):
        """Should record a failing post hook without failing the run."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        document = copy.deepcopy(five_node_document)
        document["nodes"]["broken"] = ["bad1"]
        document["hooks"]["post"][0]["nodes"] = "broken"
        rpc_client.failures["bad1"] = 1
        playbook = make_playbook(document)

        report = playbook.run({})

        assert report.status == RunStatus.COMPLETED
        assert report.hooks[-1].status == TaskStatus.FAILED

    def test_on_fail_hook_runs_per_failed_task(self, make_playbook, five_node_document, rpc_client):
        """Should run on_fail hooks after each failed task under continue."""
        document = copy.deepcopy(five_node_document)
        document["on_fail"] = "continue"
        document["tasks"].append(
            {"name": "run puppet", "nodes": "servers", "agent": "puppet", "action": "runonce"}
        )
        rpc_client.failures["node5"] = [1, 0, 1, 0]
        playbook = make_playbook(document)

        report = playbook.run({})

        assert [h.name for h in report.hooks] == ["notify", "notify", "enable"]


class TestRunEdgeCases:
    """Tests for unusual runs."""

    def test_empty_group_succeeds(self, make_playbook, rpc_client):
        """Should succeed trivially for a task with no nodes."""
        from Conductor.Core.playbook import RunStatus, TaskStatus

        playbook = make_playbook({
            "name": "x",
            "nodes": {"none": []},
            "tasks": [{"nodes": "none", "agent": "puppet", "action": "disable"}],
        })

        report = playbook.run({})

        assert report.tasks[0].status == TaskStatus.SUCCEEDED
        assert report.status == RunStatus.COMPLETED
        assert rpc_client.calls == []

    def test_no_tasks(self, make_playbook):
        """Should complete a playbook with no tasks."""
        from Conductor.Core.playbook import RunStatus

        report = make_playbook({"name": "x"}).run({})

        assert report.status == RunStatus.COMPLETED
        assert report.tasks == []

    def test_unexpected_error_aborts_and_raises(self, make_playbook, five_node_document, rpc_client):
        """Should mark the run aborted and re-raise unexpected errors."""
        from Conductor.Core.playbook import TaskState

        rpc_client.transport_error = RuntimeError("bug")
        playbook = make_playbook(five_node_document)

        with patch("Conductor.Core.playbook.tasks.record_playbook_run") as mock_record:
            with pytest.raises(RuntimeError):
                playbook.run({})

        assert playbook.tasks.state == TaskState.ABORTED
        assert mock_record.call_args.args[1] == "aborted"

    def test_default_batch_size_from_config(self, make_playbook, rpc_client):
        """Should fall back to the playbook batch size."""
        nodes = [f"n{i}" for i in range(1, 8)]
        playbook = make_playbook(
            {
                "name": "x",
                "nodes": {"all": nodes},
                "tasks": [{"nodes": "all", "agent": "puppet", "action": "disable"}],
            },
            batch_size=3,
        )

        playbook.run({})

        assert [len(c["nodes"]) for c in rpc_client.calls] == [3, 3, 1]

    def test_default_timeout_from_config(self, make_playbook, rpc_client):
        """Should use the configured RPC timeout when the task has none."""
        playbook = make_playbook({
            "name": "x",
            "nodes": {"all": ["a"]},
            "tasks": [{"nodes": "all", "agent": "puppet", "action": "disable"}],
        })

        playbook.run({})

        assert rpc_client.calls[0]["timeout"] == 60

    def test_report_serializes(self, make_playbook, five_node_document):
        """Should convert the run report to plain data."""
        report = make_playbook(five_node_document).run({})

        data = report.to_dict()

        assert data["status"] == "completed"
        assert data["tasks"][0]["report"]["batches"] == 3
        assert [h["hook"] for h in data["hooks"]] == ["on_success", "post"]
