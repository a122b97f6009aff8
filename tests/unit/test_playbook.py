"""Unit tests for the Playbook lifecycle controller."""
from unittest.mock import MagicMock, patch

import pytest


class TestMetadata:
    """Tests for metadata loading."""

    def test_from_hash_sets_metadata_as_declared(self, make_playbook, playbook_document):
        """Should keep every metadata field exactly as declared."""
        playbook = make_playbook(playbook_document)

        assert playbook.metadata.to_dict() == {
            "name": "test_playbook",
            "version": "1.1.2",
            "author": "R.I.Pienaar <rip@devco.net>",
            "description": "test description",
            "tags": ["test"],
            "on_fail": "fail",
            "loglevel": "debug",
            "run_as": "deployer.bob",
        }

    def test_from_hash_applies_defaults(self, make_playbook):
        """Should default on_fail to fail and loglevel to info."""
        playbook = make_playbook({"name": "minimal"})

        assert playbook.metadata.to_dict() == {
            "name": "minimal",
            "version": "",
            "author": "",
            "description": "",
            "tags": [],
            "on_fail": "fail",
            "loglevel": "info",
            "run_as": "",
        }

    def test_from_hash_returns_self(self, config):
        """Should return the playbook for chaining."""
        from Conductor.Core.playbook import Playbook

        playbook = Playbook(config=config)
        assert playbook.from_hash({"name": "x"}) is playbook

    def test_invalid_on_fail_raises(self, make_playbook):
        """Should reject unknown on_fail policies."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError) as exc_info:
            make_playbook({"name": "x", "on_fail": "panic"})

        assert exc_info.value.field == "on_fail"

    def test_invalid_loglevel_raises(self, make_playbook):
        """Should reject unknown log levels."""
        from Conductor.Core.errors import PlaybookParseError

        with pytest.raises(PlaybookParseError) as exc_info:
            make_playbook({"name": "x", "loglevel": "trace"})

        assert exc_info.value.field == "loglevel"

    def test_metadata_item_returns_declared_value(self, make_playbook, playbook_document):
        """Should look up metadata by name."""
        playbook = make_playbook(playbook_document)

        assert playbook.metadata_item("name") == "test_playbook"
        assert playbook.metadata_item("run_as") == "deployer.bob"
        assert playbook.metadata_item("tags") == ["test"]

    def test_metadata_item_unknown_raises(self, make_playbook, playbook_document):
        """Should raise NotFound naming the unknown key."""
        from Conductor.Core.errors import NotFound

        playbook = make_playbook(playbook_document)

        with pytest.raises(NotFound) as exc_info:
            playbook.metadata_item("unknown")

        assert exc_info.value.key == "unknown"
        assert str(exc_info.value) == "Unknown playbook metadata unknown"

    def test_properties(self, make_playbook, playbook_document):
        """Should expose metadata through properties."""
        playbook = make_playbook(playbook_document)

        assert playbook.name == "test_playbook"
        assert playbook.version == "1.1.2"
        assert playbook.loglevel == "debug"
        assert playbook.on_fail == "fail"
        assert playbook.run_as == "deployer.bob"


class TestLogLevel:
    """Tests for log level handling."""

    def test_document_loglevel_is_applied(self, make_playbook, playbook_document):
        """Should apply the document log level to the package loggers."""
        with patch("Conductor.Helpers.logSettings.set_package_level") as mock_set:
            make_playbook(playbook_document)

        mock_set.assert_called_with("debug")

    def test_constructor_loglevel_overrides_document(self, make_playbook, playbook_document):
        """Should prefer an explicit log level over the document."""
        with patch("Conductor.Helpers.logSettings.set_package_level") as mock_set:
            playbook = make_playbook(playbook_document, loglevel="error")

        assert playbook.loglevel == "error"
        assert playbook.metadata.loglevel == "debug"
        mock_set.assert_called_with("error")


class TestSecondsToHuman:
    """Tests for Playbook.seconds_to_human."""

    def test_literal_cases(self, make_playbook):
        """Should format the documented examples exactly."""
        playbook = make_playbook({"name": "x"})

        assert playbook.seconds_to_human(90061) == "1 day 1 hours 1 minutes 01 seconds"
        assert playbook.seconds_to_human(46861) == "13 hours 1 minutes 01 seconds"
        assert playbook.seconds_to_human(61) == "1 minutes 01 seconds"


class TestContext:
    """Tests for the playbook context."""

    def test_in_context_sets_and_restores(self, make_playbook):
        """Should make the name current only inside the block."""
        playbook = make_playbook({"name": "x"})
        playbook.context = "outer"

        with playbook.in_context("inner"):
            assert playbook.context == "inner"

        assert playbook.context == "outer"

    def test_in_context_restores_on_error(self, make_playbook):
        """Should restore the previous context when the block raises."""
        playbook = make_playbook({"name": "x"})
        playbook.context = "outer"

        with pytest.raises(RuntimeError):
            with playbook.in_context("inner"):
                raise RuntimeError("boom")

        assert playbook.context == "outer"

    def test_nested_contexts(self, make_playbook):
        """Should unwind nested contexts in order."""
        playbook = make_playbook({"name": "x"})

        assert playbook.context is None
        with playbook.in_context("a"):
            with playbook.in_context("b"):
                assert playbook.context == "b"
            assert playbook.context == "a"
        assert playbook.context is None

    def test_context_setter_replaces_current(self, make_playbook):
        """Should replace the current context rather than stacking."""
        playbook = make_playbook({"name": "x"})

        playbook.context = "one"
        playbook.context = "two"

        assert playbook.context == "two"
        assert len(playbook._context) == 1


class TestPrepare:
    """Tests for the preparation pipeline."""

    def test_prepare_runs_steps_in_order(self, make_playbook, five_node_document):
        """Should prepare inputs, uses, nodes and tasks in that order."""
        playbook = make_playbook(five_node_document)
        order = []

        for step in ("prepare_inputs", "prepare_uses", "prepare_nodes", "prepare_tasks"):
            setattr(playbook, step, MagicMock(side_effect=lambda s=step: order.append(s)))

        playbook.prepare()

        assert order == ["prepare_inputs", "prepare_uses", "prepare_nodes", "prepare_tasks"]

    def test_prepare_stops_at_first_failure(self, make_playbook, five_node_document):
        """Should not run later steps once a step fails."""
        from Conductor.Core.errors import AgentUnavailable

        playbook = make_playbook(five_node_document)
        playbook.prepare_inputs = MagicMock()
        playbook.prepare_uses = MagicMock(side_effect=AgentUnavailable("puppet"))
        playbook.prepare_nodes = MagicMock()
        playbook.prepare_tasks = MagicMock()

        with pytest.raises(AgentUnavailable):
            playbook.prepare()

        playbook.prepare_inputs.assert_called_once()
        playbook.prepare_nodes.assert_not_called()
        playbook.prepare_tasks.assert_not_called()

    def test_node_groups_cannot_reference_each_other(self, make_playbook):
        """Should refuse node group references while node groups resolve."""
        from Conductor.Core.errors import ValidationError

        playbook = make_playbook({
            "name": "copy",
            "nodes": {"all": ["a", "b"], "copy": "${nodes.all}"},
        })

        with pytest.raises(ValidationError) as exc_info:
            playbook.prepare()

        assert exc_info.value.errors == [
            "node group all is referenced before node groups are resolved"
        ]
        assert playbook.nodes.prepared is False

    def test_input_failure_skips_agent_checks(self, make_playbook, playbook_document, rpc_client):
        """Should not contact the controller when inputs are invalid."""
        from Conductor.Core.errors import ValidationError

        rpc_client.agents = MagicMock(return_value=rpc_client.catalog)
        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "NOT VALID"}

        with pytest.raises(ValidationError):
            playbook.prepare()

        rpc_client.agents.assert_not_called()

    def test_missing_agent_fails_preparation(self, make_playbook, playbook_document, rpc_client):
        """Should fail when a used agent is not on the controller."""
        from Conductor.Core.errors import AgentUnavailable

        rpc_client.catalog = {"puppet": ["disable", "enable"]}
        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "web"}

        with pytest.raises(AgentUnavailable) as exc_info:
            playbook.prepare()

        assert exc_info.value.agent == "service"

    def test_templates_resolve_against_earlier_steps(self, make_playbook, playbook_document, discovery):
        """Should template node filters with inputs and tasks with nodes."""
        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "web"}

        playbook.prepare()

        assert discovery.filters == ["cluster=web"]
        tasks = playbook.tasks.tasks
        assert tasks[0].batch_size == 2
        assert tasks[0].properties["message"] == "deploying as deployer.bob"
        assert tasks[1].timeout == 120
        assert tasks[1].properties["targets"] == ["web1", "web2", "web3", "web4", "web5"]

    def test_empty_discovery_uses_when_empty_message(self, make_playbook, playbook_document):
        """Should fail with the when_empty message when at_least is not met."""
        from Conductor.Core.errors import ValidationError

        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "empty"}

        with pytest.raises(ValidationError) as exc_info:
            playbook.prepare()

        assert exc_info.value.errors == ["No nodes found in cluster empty"]


class TestTemplating:
    """Tests for placeholder resolution."""

    def _prepared(self, make_playbook, playbook_document):
        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "web"}
        playbook.prepare()
        return playbook

    def test_resolves_namespaces(self, make_playbook, playbook_document):
        """Should resolve inputs, nodes, metadata and context."""
        playbook = self._prepared(make_playbook, playbook_document)

        assert playbook.t("${inputs.batch}") == 2
        assert playbook.t("${nodes.web}") == ["web1", "web2", "web3", "web4", "web5"]
        assert playbook.t("by ${metadata.author}") == "by R.I.Pienaar <rip@devco.net>"

        with playbook.in_context("task 1"):
            assert playbook.t("${context}") == "task 1"

    def test_unknown_namespace_left_alone(self, make_playbook, playbook_document):
        """Should keep placeholders for namespaces it does not know."""
        playbook = self._prepared(make_playbook, playbook_document)

        assert playbook.t("${env.HOME}") == "${env.HOME}"

    def test_unknown_names_raise(self, make_playbook, playbook_document):
        """Should raise the matching not found error for unknown names."""
        from Conductor.Core.errors import MissingInput, NotFound, UndeclaredGroup

        playbook = self._prepared(make_playbook, playbook_document)

        with pytest.raises(MissingInput):
            playbook.t("${inputs.nope}")
        with pytest.raises(UndeclaredGroup):
            playbook.t("${nodes.nope}")
        with pytest.raises(NotFound):
            playbook.t("${metadata.nope}")

    def test_does_not_modify_source(self, make_playbook, playbook_document):
        """Should return a new structure, leaving the document intact."""
        playbook = self._prepared(make_playbook, playbook_document)
        source = {"filter": "cluster=${inputs.cluster}"}

        assert playbook.t(source) == {"filter": "cluster=web"}
        assert source == {"filter": "cluster=${inputs.cluster}"}


class TestDelegates:
    """Tests for delegation to components."""

    def test_add_cli_options_delegates_to_inputs(self, make_playbook, playbook_document):
        """Should register declared inputs on the application."""
        playbook = make_playbook(playbook_document)
        app = MagicMock()

        playbook.add_cli_options(app, allow_empty=True)

        options = [c.args[0] for c in app.add_argument.call_args_list]
        assert options == ["--cluster", "--batch", "--message"]

    def test_input_value_and_discovered_nodes(self, make_playbook, playbook_document):
        """Should read prepared inputs and node groups."""
        playbook = make_playbook(playbook_document)
        playbook.input_data = {"cluster": "web"}
        playbook.prepare()

        assert playbook.input_value("cluster") == "web"
        assert playbook.discovered_nodes("web")[0] == "web1"

    def test_validate_agents_delegates_to_uses(self, make_playbook, playbook_document):
        """Should check agents against the controller catalog."""
        from Conductor.Core.errors import AgentUnavailable

        playbook = make_playbook(playbook_document)

        playbook.validate_agents({"puppet": ["disable"]})
        with pytest.raises(AgentUnavailable):
            playbook.validate_agents({"puppet": ["explode"]})

    def test_orchestrator_factory(self, make_playbook, rpc_client):
        """Should build an Orchestrator bound to the playbook."""
        from Conductor.Core.playbook import Orchestrator

        playbook = make_playbook({"name": "x"})
        orchestrator = playbook.orchestrator(rpc_client, 10)

        assert isinstance(orchestrator, Orchestrator)
        assert orchestrator.playbook is playbook
        assert orchestrator.batch_size == 10

    def test_explicit_batch_size(self, make_playbook):
        """Should prefer an explicit batch size over the configured one."""
        playbook = make_playbook({"name": "x"}, batch_size=1)

        assert playbook.batch_size == 1
        assert make_playbook({"name": "x"}).batch_size == 50

    def test_batch_size_below_one(self, make_playbook):
        """Should reject an explicit batch size of zero."""
        from Conductor.Core.errors import ValidationError

        with pytest.raises(ValidationError, match="batch_size must be at least 1, got 0"):
            make_playbook({"name": "x"}, batch_size=0)


class TestRun:
    """Tests for Playbook.run."""

    def test_run_returns_tasks_result_unchanged(self, make_playbook, five_node_document):
        """Should pass the Tasks result through as-is."""
        playbook = make_playbook(five_node_document)
        sentinel = object()
        playbook.prepare = MagicMock()
        playbook.tasks.run = MagicMock(return_value=sentinel)

        assert playbook.run({"a": 1}) is sentinel
        assert playbook.input_data == {"a": 1}
        playbook.prepare.assert_called_once()

    def test_run_fixture_playbook(self, make_playbook, playbook_document, rpc_client):
        """Should dispatch every task and hook in batches."""
        from Conductor.Core.playbook import RunStatus

        playbook = make_playbook(playbook_document)

        report = playbook.run({"cluster": "web"})

        assert report.status == RunStatus.COMPLETED
        assert [t.name for t in report.tasks] == ["disable puppet", "restart nginx"]
        assert [h.name for h in report.hooks] == ["enable puppet"]

        # 3 batches of 2 for the first task, 1 batch each afterwards
        assert [c["action"] for c in rpc_client.calls] == [
            "disable", "disable", "disable", "restart", "enable",
        ]
        assert rpc_client.calls[0]["nodes"] == ["web1", "web2"]
        assert rpc_client.calls[3]["timeout"] == 120
        assert all(c["run_as"] == "deployer.bob" for c in rpc_client.calls)

    def test_rpc_client_created_once(self, make_playbook, five_node_document, rpc_client):
        """Should reuse a single RPC client for the whole run."""
        factory = MagicMock(return_value=rpc_client)
        playbook = make_playbook(five_node_document, client_factory=factory)

        playbook.run({})

        factory.assert_called_once()

    def test_second_run_raises(self, make_playbook, five_node_document):
        """Should refuse to run the same instance twice."""
        from Conductor.Core.errors import PlaybookError

        playbook = make_playbook(five_node_document)
        playbook.run({})

        with pytest.raises(PlaybookError):
            playbook.run({})

    def test_concurrent_run_raises(self, make_playbook, five_node_document):
        """Should refuse to start while a run is in progress."""
        from Conductor.Core.errors import PlaybookError

        playbook = make_playbook(five_node_document)
        playbook._run_lock.acquire()

        try:
            with pytest.raises(PlaybookError, match="already running"):
                playbook.run({})
        finally:
            playbook._run_lock.release()

    def test_preparation_errors_propagate(self, make_playbook, playbook_document):
        """Should raise preparation errors instead of running tasks."""
        from Conductor.Core.errors import ValidationError

        playbook = make_playbook(playbook_document)
        playbook.tasks.run = MagicMock()

        with pytest.raises(ValidationError):
            playbook.run({})

        playbook.tasks.run.assert_not_called()


class TestToDict:
    """Tests for Playbook.to_dict."""

    def test_includes_every_section(self, make_playbook, playbook_document):
        """Should describe metadata, inputs, uses, nodes, tasks and hooks."""
        playbook = make_playbook(playbook_document)

        data = playbook.to_dict()

        assert data["name"] == "test_playbook"
        assert set(data["inputs"]) == {"cluster", "batch", "message"}
        assert data["uses"] == {"puppet": ["disable", "enable"], "service": ["restart"]}
        assert data["nodes"]["web"]["type"] == "discovery"
        assert [t["name"] for t in data["tasks"]] == ["disable puppet", "restart nginx"]
        assert list(data["hooks"]) == ["post"]
