"""RPC and discovery transport.

The playbook engine only depends on the abstract RpcClient and Discovery
interfaces. The HTTP implementations talk JSON to a controller:

    POST /rpc       {"agent", "action", "arguments", "nodes", "timeout", "run_as"}
                    -> {"replies": [{"sender", "statuscode", "statusmsg", "data"}]}
    GET  /agents    -> {"agents": {"<agent>": ["<action>", ...]}}
    POST /discover  {"filter": ...} -> {"nodes": ["<node>", ...]}

The controller location comes from the controller.host and
controller.port plugin options.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.credentials import ClientCredentials
from Conductor.Core.errors import PlaybookError

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

DEFAULT_CONTROLLER_HOST = "puppet"
DEFAULT_CONTROLLER_PORT = "8443"


class RpcError(PlaybookError):
    """The transport failed to deliver a request or read its replies."""


class RpcTimeout(RpcError):
    """The transport gave up waiting for replies."""


@dataclass
class RpcReply:
    """Reply from one node."""

    sender: str
    statuscode: int = 0
    statusmsg: str = "OK"
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.statuscode == 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RpcReply":
        try:
            statuscode = int(data.get("statuscode", 0))
        except (TypeError, ValueError):
            statuscode = 1
        return cls(
            sender=str(data.get("sender", "")),
            statuscode=statuscode,
            statusmsg=str(data.get("statusmsg", "")),
            data=data.get("data") or {},
        )


class RpcClient(ABC):
    """Dispatches agent actions to nodes."""

    @abstractmethod
    def dispatch(
        self,
        agent: str,
        action: str,
        arguments: Dict[str, Any],
        nodes: List[str],
        timeout: Optional[int] = None,
        run_as: Optional[str] = None,
    ) -> List[RpcReply]:
        """
        Run an action on exactly the given nodes and wait for replies.

        Nodes that did not reply are absent from the result.
        """

    @abstractmethod
    def agents(self) -> Dict[str, List[str]]:
        """Agent catalog of the controller: agent name to action names."""


class Discovery(ABC):
    """Resolves a filter to node names."""

    @abstractmethod
    def discover(self, filter: Any) -> List[str]:
        """Return the names of nodes matching filter."""


class _HttpTransport:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                 timeout: Optional[float] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as e:
            raise RpcTimeout(f"Request to {url} timed out: {e}")
        except requests.RequestException as e:
            raise RpcError(f"Request to {url} failed: {e}")

        if response.status_code != 200:
            raise RpcError(
                f"Request to {url} failed: {response.status_code}: {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError:
            raise RpcError(f"Invalid JSON response from {url}")

        if not isinstance(body, dict):
            raise RpcError(f"Unexpected response from {url}")

        return body


class HttpRpcClient(_HttpTransport, RpcClient):
    """RpcClient speaking JSON over HTTPS to the controller."""

    def dispatch(self, agent, action, arguments, nodes, timeout=None, run_as=None):
        payload = {
            "agent": agent,
            "action": action,
            "arguments": arguments or {},
            "nodes": list(nodes),
            "timeout": timeout,
            "run_as": run_as,
        }

        logger.log(
            level=10,
            msg=f"Dispatching {agent}#{action} to {len(payload['nodes'])} nodes"
        )

        # allow the controller its own timeout plus the transport timeout
        body = self._request(
            "POST", "/rpc", payload, timeout=(timeout or 0) + self.timeout
        )

        return [RpcReply.from_dict(r) for r in body.get("replies", []) if isinstance(r, dict)]

    def agents(self) -> Dict[str, List[str]]:
        body = self._request("GET", "/agents")
        catalog = body.get("agents") or {}
        return {str(agent): list(actions or []) for agent, actions in catalog.items()}


class HttpDiscovery(_HttpTransport, Discovery):
    """Discovery through the controller."""

    def discover(self, filter: Any) -> List[str]:
        body = self._request("POST", "/discover", {"filter": filter})
        nodes = body.get("nodes") or []
        logger.log(level=10, msg=f"Discovered {len(nodes)} nodes for {filter!r}")
        return [str(n) for n in nodes]


def controller_url(config) -> str:
    """Base URL of the controller from configuration."""
    host = config.get_option("controller.host", DEFAULT_CONTROLLER_HOST)
    port = config.get_option("controller.port", DEFAULT_CONTROLLER_PORT)
    return f"{config.controller.scheme}://{host}:{port}"


def _session_for(config) -> requests.Session:
    if config.controller.scheme != "https":
        return requests.Session()

    credentials = ClientCredentials(config)
    if config.ssl.check_ssl:
        credentials.check_ssl_setup()
    return credentials.https_session()


def rpc_client_factory(config) -> Callable[[], RpcClient]:
    """
    Get a callable that builds an authenticated RpcClient.

    Credentials are only checked when the callable is invoked.
    """

    def build() -> RpcClient:
        return HttpRpcClient(
            controller_url(config),
            session=_session_for(config),
            timeout=config.controller.timeout_seconds,
        )

    return build


def discovery_factory(config) -> Callable[[], Discovery]:
    """Get a callable that builds an authenticated Discovery."""

    def build() -> Discovery:
        return HttpDiscovery(
            controller_url(config),
            session=_session_for(config),
            timeout=config.controller.timeout_seconds,
        )

    return build
