"""Exception types raised by the Conductor playbook engine.

Preparation errors (ValidationError, AgentUnavailable, MissingInput,
UndeclaredGroup, NotFound) abort the preparation pipeline. DispatchFailure
is the only error that the playbook on_fail policy acts on during a run.
"""
from typing import Any, Iterable, List, Optional


class PlaybookError(Exception):
    """Base class for all playbook engine errors."""


class UserError(PlaybookError):
    """Operator facing misconfiguration, such as missing credential files."""


class PlaybookParseError(PlaybookError):
    """Exception raised when a playbook document cannot be parsed."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(f"{message}" if not field else f"Field '{field}': {message}")


class ValidationError(PlaybookError):
    """One or more values failed validation.

    Every problem found in a single pass is kept in ``errors`` so
    operators can fix them together.
    """

    def __init__(self, errors: Iterable[str], subject: str = "inputs"):
        self.errors: List[str] = list(errors)
        self.subject = subject
        super().__init__(
            f"Invalid {subject}: " + "; ".join(self.errors)
        )


class NotFound(PlaybookError, KeyError):
    """A lookup for an unknown key."""

    def __init__(self, key: str, message: Optional[str] = None):
        self.key = key
        self.message = message or f"Unknown key {key}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class MissingInput(NotFound):
    """An input was referenced that is not declared or has no value."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(name, message or f"Unknown input {name}")
        self.name = name


class UndeclaredGroup(NotFound):
    """A node group was referenced that the playbook never declared."""

    def __init__(self, name: str):
        super().__init__(name, f"Unknown node group {name}")
        self.name = name


class AgentUnavailable(PlaybookError):
    """A required agent or action is not available on the controller."""

    def __init__(self, agent: str, action: Optional[str] = None):
        self.agent = agent
        self.action = action
        if action:
            message = f"Agent {agent} does not provide the required action {action}"
        else:
            message = f"Agent {agent} is not available"
        super().__init__(message)


class DispatchFailure(PlaybookError):
    """One or more nodes failed or timed out during an RPC dispatch."""

    def __init__(self, task: str, report: Any = None):
        self.task = task
        self.report = report
        failed = list(getattr(report, "failed_nodes", []) or [])
        self.failed_nodes: List[str] = failed
        super().__init__(
            f"Task '{task}' failed on {len(failed)} node(s): {', '.join(failed)}"
        )
