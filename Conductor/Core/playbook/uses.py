"""Agent requirements of a playbook.

A playbook lists the RPC agents it talks to and the actions it needs from
each. Before anything is dispatched the list is checked against the
agent catalog of the controller.

Example:
    uses:
      puppet: [disable, enable, runonce]
      service:
        - restart
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import AgentUnavailable, PlaybookParseError

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

CatalogProvider = Callable[[], Dict[str, List[str]]]


class Uses:
    """Mapping of agent name to the ordered actions a playbook needs."""

    def __init__(self, catalog_provider: Optional[CatalogProvider] = None):
        self._catalog_provider = catalog_provider
        self._agents: Dict[str, List[str]] = {}
        self.prepared = False

    def from_hash(self, data: Optional[Dict[str, Any]]) -> "Uses":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PlaybookParseError("uses must be a dictionary of agent to actions", "uses")

        agents: Dict[str, List[str]] = {}
        for agent, actions in data.items():
            if actions is None:
                actions = []
            elif isinstance(actions, str):
                actions = [a.strip() for a in actions.split(",") if a.strip()]
            elif not isinstance(actions, list):
                raise PlaybookParseError("actions must be a list", f"uses.{agent}")

            ordered: List[str] = []
            for action in actions:
                if str(action) not in ordered:
                    ordered.append(str(action))
            agents[str(agent)] = ordered

        self._agents = agents
        self.prepared = False
        return self

    def keys(self) -> List[str]:
        return list(self._agents.keys())

    def __getitem__(self, agent: str) -> List[str]:
        return list(self._agents[agent])

    def __contains__(self, agent: object) -> bool:
        return agent in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def to_dict(self) -> Dict[str, List[str]]:
        return {agent: list(actions) for agent, actions in self._agents.items()}

    def validate_agents(self, mapping: Dict[str, List[str]]) -> None:
        """
        Check that every agent and action in mapping exists on the controller.

        Stops at the first problem found.

        Args:
            mapping: Agent name to required actions

        Raises:
            AgentUnavailable: Naming the first missing agent or action
        """
        if not mapping:
            return

        if self._catalog_provider is None:
            raise AgentUnavailable(next(iter(mapping)))

        catalog = self._catalog_provider() or {}

        for agent, actions in mapping.items():
            if agent not in catalog:
                logger.log(level=40, msg=f"Agent {agent} is not available")
                raise AgentUnavailable(agent)

            available = set(catalog.get(agent) or [])
            for action in actions:
                if action not in available:
                    logger.log(
                        level=40,
                        msg=f"Agent {agent} does not provide action {action}"
                    )
                    raise AgentUnavailable(agent, action)

            logger.log(level=10, msg=f"Agent {agent} provides {', '.join(actions) or 'no actions'}")

    def prepare(self) -> "Uses":
        """Validate the declared agents against the controller."""
        self.validate_agents(self._agents)
        self.prepared = True
        return self
