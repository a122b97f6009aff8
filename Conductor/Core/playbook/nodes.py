"""Node groups of a playbook.

Every group resolves to an ordered, de-duplicated list of node names.
Groups come from a discovery filter, from a static list or from a
templated value that expands to either.

Example:
    nodes:
      web:
        type: discovery
        filter: "cluster=${inputs.cluster}"
        at_least: 1
        when_empty: "No web servers found"
        limit: 50
      db:
        type: list
        nodes: [db1.example.net, db2.example.net]
      cache: [cache1.example.net]
      edge: "edge1.example.net, edge2.example.net"
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import PlaybookParseError, UndeclaredGroup, ValidationError

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

DiscoverFn = Callable[[Any], List[str]]


class NodeSource(str, Enum):
    """Where the members of a node group come from."""

    DISCOVERY = "discovery"
    LIST = "list"


@dataclass
class NodeGroup:
    """Declaration of one node group, as written in the document."""

    name: str
    source: NodeSource = NodeSource.LIST
    nodes: List[Any] = field(default_factory=list)
    filter: Any = None
    at_least: Any = None
    limit: Any = None
    when_empty: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {"type": self.source.value}
        if self.source == NodeSource.DISCOVERY:
            data["filter"] = self.filter
        else:
            data["nodes"] = list(self.nodes)
        for key in ("at_least", "limit", "when_empty"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


def _split_nodes(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [n.strip() for n in value.split(",") if n.strip()]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise PlaybookParseError(f"Expected a list of nodes, got {type(value).__name__}", "nodes")


def _parse_group(name: str, spec: Any) -> NodeGroup:
    if not isinstance(spec, dict):
        return NodeGroup(name=name, source=NodeSource.LIST, nodes=_split_nodes(spec))

    type_str = str(spec.get("type", "discovery" if "filter" in spec else "list")).lower()
    try:
        source = NodeSource(type_str)
    except ValueError:
        valid = [s.value for s in NodeSource]
        raise PlaybookParseError(
            f"Invalid node source: {type_str}. Must be one of {valid}",
            f"nodes.{name}.type",
        )

    if source == NodeSource.DISCOVERY and spec.get("filter") is None:
        raise PlaybookParseError("Discovery groups require a filter", f"nodes.{name}.filter")

    when_empty = spec.get("when_empty")

    return NodeGroup(
        name=name,
        source=source,
        nodes=_split_nodes(spec.get("nodes")) if source == NodeSource.LIST else [],
        filter=spec.get("filter"),
        at_least=spec.get("at_least"),
        limit=spec.get("limit"),
        when_empty=str(when_empty) if when_empty is not None else None,
    )


def _as_count(value: Any, group: str, key: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError([f"{group}: {key} must be an integer"], "nodes")
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError([f"{group}: {key} must be an integer, got {value!r}"], "nodes")
    if count < 0:
        raise ValidationError([f"{group}: {key} must not be negative"], "nodes")
    return count


def _dedupe(nodes: List[Any]) -> List[str]:
    seen = set()
    result = []
    for node in nodes:
        # templated values can expand to nested lists or comma strings
        if isinstance(node, (list, tuple)):
            expanded = list(node)
        elif isinstance(node, str) and "," in node:
            expanded = _split_nodes(node)
        else:
            expanded = [node]
        for item in expanded:
            name = str(item).strip()
            if name and name not in seen:
                seen.add(name)
                result.append(name)
    return result


class Nodes:
    """The node groups of a playbook and their resolved members."""

    def __init__(self, discover: Optional[DiscoverFn] = None):
        self._discover = discover
        self._groups: Dict[str, NodeGroup] = {}
        self._resolved: Dict[str, List[str]] = {}
        self.prepared = False

    def from_hash(self, data: Optional[Dict[str, Any]]) -> "Nodes":
        """
        Load node group declarations.

        Args:
            data: Mapping of group name to declaration

        Returns:
            self
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PlaybookParseError("nodes must be a dictionary of groups", "nodes")

        self._groups = {str(name): _parse_group(str(name), spec) for name, spec in data.items()}
        self._resolved = {}
        self.prepared = False
        return self

    def keys(self) -> List[str]:
        return list(self._groups.keys())

    def group(self, name: str) -> NodeGroup:
        if name not in self._groups:
            raise UndeclaredGroup(name)
        return self._groups[name]

    def __contains__(self, name: object) -> bool:
        return name in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __getitem__(self, name: str) -> List[str]:
        """
        Get the resolved members of a group.

        Returns an empty list for a group that is declared but has no
        members, either because it resolved empty or because it has not
        been prepared yet. Templates check prepared first.

        Raises:
            UndeclaredGroup: If the group was never declared
        """
        if name not in self._groups:
            raise UndeclaredGroup(name)
        return list(self._resolved.get(name, []))

    def _resolve(self, group: NodeGroup) -> List[str]:
        if group.source == NodeSource.LIST:
            return _dedupe(group.nodes)

        if self._discover is None:
            raise ValidationError(
                [f"{group.name}: discovery is not available"], "nodes"
            )

        logger.log(level=20, msg=f"Discovering nodes for group {group.name} using {group.filter!r}")
        return _dedupe(list(self._discover(group.filter) or []))

    def prepare(self) -> "Nodes":
        """
        Resolve every group, then apply limit and at_least.

        Raises:
            ValidationError: When a group has fewer members than at_least
        """
        resolved: Dict[str, List[str]] = {}

        for name, group in self._groups.items():
            at_least = _as_count(group.at_least, name, "at_least")
            limit = _as_count(group.limit, name, "limit")

            members = self._resolve(group)
            if limit is not None and len(members) > limit:
                logger.log(
                    level=20,
                    msg=f"Limiting node group {name} from {len(members)} to {limit} nodes"
                )
                members = members[:limit]

            if at_least is not None and len(members) < at_least:
                message = group.when_empty or (
                    f"Node group {name} needs at least {at_least} nodes, found {len(members)}"
                )
                logger.log(level=40, msg=message)
                raise ValidationError([message], "nodes")

            logger.log(level=20, msg=f"Node group {name} resolved to {len(members)} nodes")
            resolved[name] = members

        self._resolved = resolved
        self.prepared = True
        return self

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for name, group in self._groups.items():
            entry = group.to_dict()
            if name in self._resolved:
                entry["resolved"] = list(self._resolved[name])
            result[name] = entry
        return result
