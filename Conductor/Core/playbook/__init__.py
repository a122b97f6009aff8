"""Playbook engine package.

This package provides the playbook engine:
- Playbook: lifecycle controller owning the components below
- Inputs, Uses, Nodes, Tasks: the document sections and their preparation
- Orchestrator: batched RPC dispatch
- ContextStack: naming context for logs and templates
- Data models for metadata and run reports

Usage:
    from Conductor.Core.playbook import (
        Playbook,
        RunReport,
        RunStatus,
    )

    playbook = Playbook(config=config).from_hash(document)
    report = playbook.run({"cluster": "alpha"})
"""

# Models
from Conductor.Core.playbook.models import (
    DispatchReport,
    HookPoint,
    LogLevel,
    Metadata,
    NodeResult,
    NodeStatus,
    OnFailPolicy,
    RunReport,
    RunStatus,
    TaskOutcome,
    TaskStatus,
)

# Components
from Conductor.Core.playbook.context import ContextStack
from Conductor.Core.playbook.inputs import InputDefinition, Inputs, InputType
from Conductor.Core.playbook.nodes import NodeGroup, Nodes, NodeSource
from Conductor.Core.playbook.orchestrator import Orchestrator
from Conductor.Core.playbook.playbook import Playbook
from Conductor.Core.playbook.tasks import TaskDefinition, Tasks, TaskState
from Conductor.Core.playbook.uses import Uses

__all__ = [
    # Models
    "DispatchReport",
    "HookPoint",
    "LogLevel",
    "Metadata",
    "NodeResult",
    "NodeStatus",
    "OnFailPolicy",
    "RunReport",
    "RunStatus",
    "TaskOutcome",
    "TaskStatus",
    # Components
    "ContextStack",
    "InputDefinition",
    "Inputs",
    "InputType",
    "NodeGroup",
    "Nodes",
    "NodeSource",
    "Orchestrator",
    "Playbook",
    "TaskDefinition",
    "Tasks",
    "TaskState",
    "Uses",
]
