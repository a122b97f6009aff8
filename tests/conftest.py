"""Pytest configuration and shared fixtures."""
import os
import sys
from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from Conductor.Core.rpc import Discovery, RpcClient, RpcReply  # noqa: E402

FIXTURES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures")


class FakeRpcClient(RpcClient):
    """In-memory RpcClient.

    failures maps a node to the status code it replies with, or to
    "timeout" for no reply. A list is consumed one entry per dispatch, so
    [1, 0] fails the first attempt and succeeds the retry.
    """

    def __init__(self, catalog: Dict[str, List[str]] = None):
        self.catalog = catalog if catalog is not None else {
            "puppet": ["disable", "enable", "runonce", "status"],
            "service": ["restart", "status"],
        }
        self.failures: Dict[str, Any] = {}
        self.transport_error = None
        self.calls: List[Dict[str, Any]] = []

    def dispatch(self, agent, action, arguments, nodes, timeout=None, run_as=None):
        self.calls.append({
            "agent": agent,
            "action": action,
            "arguments": arguments,
            "nodes": list(nodes),
            "timeout": timeout,
            "run_as": run_as,
        })

        if self.transport_error is not None:
            raise self.transport_error

        replies = []
        for node in nodes:
            outcome = self.failures.get(node, 0)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if outcome else 0
            if outcome == "timeout":
                continue
            replies.append(RpcReply(
                sender=node,
                statuscode=outcome,
                statusmsg="OK" if outcome == 0 else "Action failed",
                data={"action": action},
            ))
        return replies

    def agents(self):
        return self.catalog


class FakeDiscovery(Discovery):
    """Discovery answering from a filter -> nodes mapping."""

    def __init__(self, results: Dict[str, List[str]] = None):
        self.results = results or {}
        self.filters: List[Any] = []

    def discover(self, filter):
        self.filters.append(filter)
        return list(self.results.get(filter, []))


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Set up environment variables for testing.

    This fixture is autouse=True so it runs for all tests automatically,
    keeping the process configuration independent of the host.
    """
    env_vars = {
        "CONDUCTOR_IDENTITY": "client.example.net",
        "CONDUCTOR_CHECK_SSL": "false",
        "CONDUCTOR_CONTROLLER_SCHEME": "https",
        "CONDUCTOR_BATCH_SIZE": "50",
        "CONDUCTOR_RETRY_COUNT": "2",
        "CONDUCTOR_RETRY_BACKOFF": "0",
        "CONDUCTOR_RPC_TIMEOUT": "60",
        "LOG_LEVEL": "WARNING",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def config():
    """Explicit configuration for playbooks under test."""
    from config import Config, ControllerConfig, RunConfig, SSLConfig

    return Config(
        controller=ControllerConfig(scheme="https", timeout_seconds=30.0),
        ssl=SSLConfig(identity="client.example.net", ssl_dir="", check_ssl=False),
        run=RunConfig(
            batch_size=50,
            retry_count=2,
            retry_backoff_seconds=0.0,
            rpc_timeout_seconds=60,
        ),
        options={"controller.host": "controller.example.net", "controller.port": 8443},
    )


@pytest.fixture
def rpc_client():
    """Fake RPC client with the puppet and service agents."""
    return FakeRpcClient()


@pytest.fixture
def discovery():
    """Fake discovery with a web and a db cluster."""
    return FakeDiscovery({
        "cluster=web": ["web1", "web2", "web3", "web4", "web5"],
        "cluster=db": ["db1", "db2"],
        "cluster=empty": [],
    })


@pytest.fixture
def make_playbook(config, rpc_client, discovery):
    """Factory building a Playbook wired to the fakes and loaded from a document."""
    from Conductor.Core.playbook import Playbook

    def _make(document: Dict[str, Any], **kwargs: Any) -> Playbook:
        kwargs.setdefault("config", config)
        kwargs.setdefault("client_factory", lambda: rpc_client)
        kwargs.setdefault("discovery", discovery)
        playbook = Playbook(**kwargs)
        playbook.tasks.sleep = MagicMock()
        return playbook.from_hash(document)

    return _make


@pytest.fixture
def fixture_path():
    """Path of the sample playbook file."""
    return os.path.join(FIXTURES_DIR, "playbooks", "playbook.yaml")


@pytest.fixture
def playbook_document(fixture_path):
    """The sample playbook file as a dictionary."""
    import yaml

    with open(fixture_path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


@pytest.fixture
def five_node_document():
    """One task against five static nodes, failing fast."""
    return {
        "name": "five_nodes",
        "version": "1.0.0",
        "on_fail": "fail",
        "nodes": {"servers": ["node1", "node2", "node3", "node4", "node5"]},
        "tasks": [
            {
                "name": "disable puppet",
                "nodes": "servers",
                "agent": "puppet",
                "action": "disable",
                "batch_size": 2,
            },
        ],
        "hooks": {
            "on_fail": [
                {"name": "notify", "nodes": "servers", "agent": "service", "action": "status"},
            ],
            "on_success": [
                {"name": "celebrate", "nodes": "servers", "agent": "service", "action": "status"},
            ],
            "post": [
                {"name": "enable", "nodes": "servers", "agent": "puppet", "action": "enable"},
            ],
        },
    }
