"""Playbook data models.

This module contains the value types shared by the playbook components:

- Metadata: the immutable playbook header
- NodeResult / DispatchReport: what the Orchestrator returns per dispatch
- TaskOutcome / RunReport: what a playbook run returns

Statuses:
- NodeStatus: succeeded, failed, timeout, skipped
- TaskStatus: succeeded, failed, skipped
- RunStatus: completed (every task succeeded), failed (a task failed under
  the continue policy), aborted (the run stopped early)
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from Conductor.Core.utils.datetime_helpers import isoformat


class OnFailPolicy(str, Enum):
    """What a playbook does when a task fails."""

    FAIL = "fail"  # Abort the run
    CONTINUE = "continue"  # Record and carry on with the next task
    RETRY = "retry"  # Re-dispatch failed nodes, then behave like fail

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a value is a valid policy."""
        try:
            cls(str(value).lower())
            return True
        except ValueError:
            return False


class LogLevel(str, Enum):
    """Playbook log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class HookPoint(str, Enum):
    """Lifecycle points that hooks attach to."""

    PRE = "pre"
    ON_FAIL = "on_fail"
    ON_SUCCESS = "on_success"
    POST = "post"


class NodeStatus(str, Enum):
    """Result of an RPC request on one node."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    """Outcome of a task or hook."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Final status of a playbook run."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Metadata:
    """Playbook header, set once from the document."""

    name: str = ""
    version: str = ""
    author: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()
    on_fail: str = OnFailPolicy.FAIL.value
    loglevel: str = LogLevel.INFO.value
    run_as: str = ""

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "version": self.version,
            "author": self.author,
            "description": self.description,
            "tags": list(self.tags),
            "on_fail": self.on_fail,
            "loglevel": self.loglevel,
            "run_as": self.run_as,
        }


@dataclass
class NodeResult:
    """Result of dispatching an action to a single node."""

    node: str
    status: NodeStatus
    batch: int = 0
    attempts: int = 1
    statuscode: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "node": self.node,
            "status": self.status.value,
            "batch": self.batch,
            "attempts": self.attempts,
            "statuscode": self.statuscode,
            "data": self.data,
            "error": self.error,
        }


@dataclass
class DispatchReport:
    """Aggregate result of dispatching one action to a node set.

    Results are kept in the order the nodes were targeted.
    """

    agent: str
    action: str
    nodes: List[str] = field(default_factory=list)
    results: Dict[str, NodeResult] = field(default_factory=dict)
    batches: int = 0

    def record(self, result: NodeResult) -> None:
        self.results[result.node] = result

    @property
    def attempted(self) -> int:
        """Number of nodes that were sent a request."""
        return sum(
            1 for r in self.results.values() if r.status != NodeStatus.SKIPPED
        )

    @property
    def succeeded_nodes(self) -> List[str]:
        return [n for n in self.nodes if n in self.results and self.results[n].succeeded]

    @property
    def failed_nodes(self) -> List[str]:
        """Nodes that failed or timed out, in target order."""
        return [
            n for n in self.nodes
            if n in self.results
            and self.results[n].status in (NodeStatus.FAILED, NodeStatus.TIMEOUT)
        ]

    @property
    def success(self) -> bool:
        """True when every targeted node succeeded."""
        return all(
            n in self.results and self.results[n].succeeded for n in self.nodes
        )

    def merge(self, retry: "DispatchReport") -> None:
        """
        Fold a retry of a subset of nodes into this report.

        Retried nodes take the newer result, attempts accumulate.
        """
        for node, result in retry.results.items():
            previous = self.results.get(node)
            if previous is not None:
                result.attempts = previous.attempts + result.attempts
            self.results[node] = result
        self.batches += retry.batches

    @classmethod
    def skipped(cls, agent: str, action: str, nodes: Iterable[str]) -> "DispatchReport":
        """Report for a dispatch that never happened."""
        report = cls(agent=agent, action=action, nodes=list(nodes))
        for node in report.nodes:
            report.record(NodeResult(node=node, status=NodeStatus.SKIPPED, attempts=0))
        return report

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "agent": self.agent,
            "action": self.action,
            "attempted": self.attempted,
            "batches": self.batches,
            "success": self.success,
            "results": [
                self.results[n].to_dict() for n in self.nodes if n in self.results
            ],
        }


@dataclass
class TaskOutcome:
    """Outcome of one task or hook."""

    name: str
    index: int
    status: TaskStatus
    report: DispatchReport
    hook: Optional[HookPoint] = None
    attempts: int = 1
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "index": self.index,
            "hook": self.hook.value if self.hook else None,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "report": self.report.to_dict(),
        }


@dataclass
class RunReport:
    """Structured result of a playbook run."""

    playbook: str
    status: RunStatus = RunStatus.COMPLETED
    tasks: List[TaskOutcome] = field(default_factory=list)
    hooks: List[TaskOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def failed_tasks(self) -> List[TaskOutcome]:
        return [t for t in self.tasks if t.failed]

    def node_results(self) -> Dict[str, Dict[str, str]]:
        """
        Aggregate per node statuses across every task.

        Returns:
            Mapping of node -> {"<task index>:<task name>": status}
        """
        aggregate: Dict[str, Dict[str, str]] = {}
        for outcome in self.tasks:
            for node in outcome.report.nodes:
                result = outcome.report.results.get(node)
                if result is None:
                    continue
                key = f"{outcome.index}:{outcome.name}"
                aggregate.setdefault(node, {})[key] = result.status.value
        return aggregate

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "playbook": self.playbook,
            "status": self.status.value,
            "success": self.success,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "tasks": [t.to_dict() for t in self.tasks],
            "hooks": [h.to_dict() for h in self.hooks],
            "nodes": self.node_results(),
        }
