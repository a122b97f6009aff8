"""Task execution for playbooks.

Tasks run in document order, each dispatching one agent action to a node
group through the Orchestrator. Hooks are tasks bound to a lifecycle
point and run there regardless of where they appear in the document.

Run state machine:
    IDLE -> RUNNING -> HOOK_FAILING -> RUNNING (continue policy)
                    -> ABORTED (pre hook failed, or a task failed under fail/retry)
                    -> COMPLETED

on_fail policies:
- fail: run the on_fail hooks, then abort. Remaining tasks are skipped.
- continue: run the on_fail hooks, record the failure, go on.
- retry: re-dispatch only the failed nodes up to retries times, sleeping
  retry_backoff seconds before each attempt. Still failing nodes fall
  back to fail.

Hooks:
- pre: before the first task. A failing pre hook aborts the run and no
  other hook runs.
- on_fail: after each failed task.
- on_success: when every task succeeded.
- post: at the end of every run that was not aborted.

Hook failures are recorded but never trigger other hooks.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import DispatchFailure, PlaybookParseError, ValidationError
from Conductor.Core.metrics import record_playbook_run, record_task_outcome, record_task_retry
from Conductor.Core.playbook.models import (
    DispatchReport,
    HookPoint,
    OnFailPolicy,
    RunReport,
    RunStatus,
    TaskOutcome,
    TaskStatus,
)
from Conductor.Core.telemetry import get_current_trace_id, get_tracer
from Conductor.Core.utils.datetime_helpers import now, parse_duration, seconds_to_human

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

tracer = get_tracer(__name__)

TASK_KEYS = (
    "name",
    "description",
    "nodes",
    "agent",
    "action",
    "properties",
    "batch_size",
    "timeout",
    "retries",
    "retry_backoff",
)


class TaskState(str, Enum):
    """State of a Tasks run."""

    IDLE = "idle"
    RUNNING = "running"
    HOOK_FAILING = "hook_failing"
    ABORTED = "aborted"
    COMPLETED = "completed"


@dataclass
class TaskDefinition:
    """A task or hook as declared in the document.

    Numeric options hold the raw document values until prepare() turns
    them into integers.
    """

    name: str
    index: int
    nodes: str
    agent: str
    action: str
    description: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)
    batch_size: Any = None
    timeout: Any = None
    retries: Any = None
    retry_backoff: Any = None
    hook: Optional[HookPoint] = None

    @property
    def label(self) -> str:
        if self.hook:
            return f"{self.hook.value} hook {self.name}"
        return f"task {self.name}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "name": self.name,
            "nodes": self.nodes,
            "agent": self.agent,
            "action": self.action,
            "properties": self.properties,
        }
        if self.description:
            data["description"] = self.description
        for key in ("batch_size", "timeout", "retries", "retry_backoff"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


def _parse_task(data: Any, index: int, path: str, hook: Optional[HookPoint] = None) -> TaskDefinition:
    if not isinstance(data, dict):
        raise PlaybookParseError("Task must be a dictionary", path)

    unknown = [k for k in data if k not in TASK_KEYS]
    if unknown:
        raise PlaybookParseError(f"Unknown task keys: {', '.join(map(str, unknown))}", path)

    for key in ("nodes", "agent", "action"):
        if not data.get(key):
            raise PlaybookParseError(f"Task requires '{key}'", f"{path}.{key}")

    properties = data.get("properties") or {}
    if not isinstance(properties, dict):
        raise PlaybookParseError("properties must be a dictionary", f"{path}.properties")

    agent = str(data["agent"])
    action = str(data["action"])

    return TaskDefinition(
        name=str(data.get("name") or f"{agent}#{action}"),
        index=index,
        nodes=str(data["nodes"]),
        agent=agent,
        action=action,
        description=str(data.get("description", "")),
        properties=dict(properties),
        batch_size=data.get("batch_size"),
        timeout=data.get("timeout"),
        retries=data.get("retries"),
        retry_backoff=data.get("retry_backoff"),
        hook=hook,
    )


class Tasks:
    """Ordered tasks and lifecycle hooks of a playbook."""

    def __init__(self, playbook: Any, sleep: Callable[[float], None] = time.sleep):
        self.playbook = playbook
        self.sleep = sleep
        self._tasks: List[TaskDefinition] = []
        self._hooks: Dict[HookPoint, List[TaskDefinition]] = {p: [] for p in HookPoint}
        self.state = TaskState.IDLE
        self.prepared = False

    def from_hash(self, tasks: Optional[List[Any]], hooks: Optional[Dict[str, Any]] = None) -> "Tasks":
        """
        Load task and hook declarations.

        Args:
            tasks: List of task declarations
            hooks: Mapping of lifecycle point to a list of task declarations

        Returns:
            self
        """
        if tasks is None:
            tasks = []
        if not isinstance(tasks, list):
            raise PlaybookParseError("tasks must be a list", "tasks")

        if hooks is None:
            hooks = {}
        if not isinstance(hooks, dict):
            raise PlaybookParseError("hooks must be a dictionary of lifecycle point to tasks", "hooks")

        parsed_hooks: Dict[HookPoint, List[TaskDefinition]] = {p: [] for p in HookPoint}
        for point, entries in hooks.items():
            try:
                hook_point = HookPoint(str(point))
            except ValueError:
                valid = [p.value for p in HookPoint]
                raise PlaybookParseError(
                    f"Invalid hook point: {point}. Must be one of {valid}", f"hooks.{point}"
                )
            if entries is None:
                entries = []
            if isinstance(entries, dict):
                entries = [entries]
            if not isinstance(entries, list):
                raise PlaybookParseError("hook entries must be a list", f"hooks.{point}")
            parsed_hooks[hook_point] = [
                _parse_task(entry, i, f"hooks.{point}[{i}]", hook_point)
                for i, entry in enumerate(entries)
            ]

        self._tasks = [_parse_task(entry, i, f"tasks[{i}]") for i, entry in enumerate(tasks)]
        self._hooks = parsed_hooks
        self.state = TaskState.IDLE
        self.prepared = False
        return self

    @property
    def tasks(self) -> List[TaskDefinition]:
        return list(self._tasks)

    def hooks(self, point: HookPoint) -> List[TaskDefinition]:
        return list(self._hooks.get(point, []))

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(list(self._tasks))

    def _all_definitions(self) -> List[TaskDefinition]:
        definitions = list(self._tasks)
        for point in HookPoint:
            definitions.extend(self._hooks[point])
        return definitions

    def prepare(self) -> "Tasks":
        """
        Check node groups and numeric options of every task and hook.

        Raises:
            UndeclaredGroup: For a task referencing an unknown node group
            ValidationError: Listing every invalid numeric option
        """
        errors: List[str] = []

        for task in self._all_definitions():
            self.playbook.discovered_nodes(task.nodes)

            for key in ("batch_size", "retries"):
                value = getattr(task, key)
                if value is None:
                    continue
                try:
                    if isinstance(value, bool):
                        raise ValueError(value)
                    number = int(value)
                except (TypeError, ValueError):
                    errors.append(f"{task.label}: {key} must be an integer, got {value!r}")
                    continue
                minimum = 1 if key == "batch_size" else 0
                if number < minimum:
                    errors.append(f"{task.label}: {key} must be at least {minimum}")
                    continue
                setattr(task, key, number)

            for key in ("timeout", "retry_backoff"):
                value = getattr(task, key)
                if value is None:
                    continue
                try:
                    setattr(task, key, parse_duration(value))
                except ValueError as e:
                    errors.append(f"{task.label}: {key}: {e}")

        if errors:
            raise ValidationError(errors, "tasks")

        self.prepared = True
        return self

    def _batch_size(self, task: TaskDefinition) -> int:
        if task.batch_size is not None:
            return int(task.batch_size)
        return self.playbook.batch_size

    def _timeout(self, task: TaskDefinition) -> int:
        if task.timeout is not None:
            return int(task.timeout)
        return self.playbook.config.run.rpc_timeout_seconds

    def _dispatch(self, task: TaskDefinition, nodes: List[str]) -> DispatchReport:
        orchestrator = self.playbook.orchestrator(self.playbook.rpc_client(), self._batch_size(task))
        return orchestrator.dispatch(
            nodes, task.agent, task.action, task.properties, self._timeout(task)
        )

    def _execute(self, task: TaskDefinition, nodes: List[str]) -> DispatchReport:
        """
        Dispatch a task.

        Raises:
            DispatchFailure: If any node failed or timed out
        """
        if not nodes:
            logger.log(level=30, msg=f"{task.label} has no nodes in group {task.nodes}")

        report = self._dispatch(task, nodes)
        if not report.success:
            raise DispatchFailure(task.name, report)
        return report

    def _retry(self, task: TaskDefinition, report: DispatchReport) -> int:
        """
        Re-dispatch failed nodes until they succeed or retries run out.

        Retry results are merged into report.

        Returns:
            Number of retries made
        """
        retries = task.retries if task.retries is not None else self.playbook.config.run.retry_count
        backoff = (
            task.retry_backoff
            if task.retry_backoff is not None
            else self.playbook.config.run.retry_backoff_seconds
        )

        attempt = 0
        while report.failed_nodes and attempt < int(retries):
            attempt += 1
            failed = report.failed_nodes
            logger.log(
                level=30,
                msg=f"{task.label} retry {attempt}/{retries} for {len(failed)} nodes "
                    f"in {backoff}s"
            )
            if backoff:
                self.sleep(float(backoff))

            record_task_retry(task.agent, task.action)
            report.merge(self._dispatch(task, failed))

        return attempt

    def _outcome(
        self,
        task: TaskDefinition,
        status: TaskStatus,
        report: DispatchReport,
        started_at,
        attempts: int = 1,
        error: Optional[str] = None,
    ) -> TaskOutcome:
        record_task_outcome(task.agent, task.action, status.value)
        return TaskOutcome(
            name=task.name,
            index=task.index,
            status=status,
            report=report,
            hook=task.hook,
            attempts=attempts,
            error=error,
            started_at=started_at,
            completed_at=now(),
        )

    def _run_task(self, task: TaskDefinition, policy: OnFailPolicy) -> TaskOutcome:
        started_at = now()
        nodes = self.playbook.discovered_nodes(task.nodes)

        with self.playbook.in_context(task.label), tracer.start_as_current_span(task.label) as span:
            span.set_attribute("conductor.agent", task.agent)
            span.set_attribute("conductor.action", task.action)
            span.set_attribute("conductor.nodes", len(nodes))

            logger.log(level=20, msg=f"Running {task.label}: {task.agent}#{task.action} on "
                                     f"{len(nodes)} nodes")
            attempts = 1
            try:
                report = self._execute(task, nodes)
            except DispatchFailure as failure:
                report = failure.report
                if policy == OnFailPolicy.RETRY and task.hook is None:
                    attempts += self._retry(task, report)

                if not report.success:
                    error = DispatchFailure(task.name, report)
                    logger.log(level=40, msg=f"{task.label} failed: {error}")
                    span.set_attribute("conductor.failed_nodes", len(error.failed_nodes))
                    return self._outcome(task, TaskStatus.FAILED, report, started_at,
                                         attempts, str(error))

            logger.log(level=20, msg=f"{task.label} succeeded on {len(report.nodes)} nodes")
            return self._outcome(task, TaskStatus.SUCCEEDED, report, started_at, attempts)

    def _skip_task(self, task: TaskDefinition) -> TaskOutcome:
        nodes = self.playbook.discovered_nodes(task.nodes)
        logger.log(level=20, msg=f"Skipping {task.label}")
        return self._outcome(
            task, TaskStatus.SKIPPED, DispatchReport.skipped(task.agent, task.action, nodes),
            now(), attempts=0,
        )

    def _run_hooks(self, point: HookPoint, report: RunReport) -> bool:
        """Run every hook for a lifecycle point, returning False if any failed."""
        success = True
        for hook in self._hooks[point]:
            if not success and point == HookPoint.PRE:
                report.hooks.append(self._skip_task(hook))
                continue
            outcome = self._run_task(hook, OnFailPolicy.FAIL)
            report.hooks.append(outcome)
            if outcome.failed:
                success = False
        return success

    def run(self) -> RunReport:
        """
        Execute every task in order, applying the playbook on_fail policy.

        Returns:
            RunReport listing every task and hook outcome
        """
        policy = OnFailPolicy(self.playbook.on_fail)
        report = RunReport(playbook=self.playbook.name, started_at=now())
        started = time.monotonic()
        self.state = TaskState.RUNNING

        logger.log(
            level=20,
            msg=f"Running playbook {self.playbook.name} with {len(self._tasks)} tasks "
                f"and on_fail={policy.value}"
        )

        with tracer.start_as_current_span(f"playbook {self.playbook.name}") as span:
            span.set_attribute("conductor.playbook", self.playbook.name)
            span.set_attribute("conductor.on_fail", policy.value)

            try:
                report.status = self._run_all(policy, report)
            except Exception:
                self.state = TaskState.ABORTED
                report.status = RunStatus.ABORTED
                raise
            finally:
                report.completed_at = now()
                report.duration_seconds = time.monotonic() - started
                span.set_attribute("conductor.status", report.status.value)
                record_playbook_run(self.playbook.name, report.status.value,
                                    report.duration_seconds, get_current_trace_id())

        logger.log(
            level=20 if report.success else 40,
            msg=f"Playbook {self.playbook.name} {report.status.value} in "
                f"{seconds_to_human(report.duration_seconds)}"
        )

        return report

    def _run_all(self, policy: OnFailPolicy, report: RunReport) -> RunStatus:
        if not self._run_hooks(HookPoint.PRE, report):
            logger.log(level=40, msg="A pre hook failed, aborting")
            report.tasks.extend(self._skip_task(task) for task in self._tasks)
            self.state = TaskState.ABORTED
            return RunStatus.ABORTED

        failed = False
        aborted = False

        for task in self._tasks:
            if aborted:
                report.tasks.append(self._skip_task(task))
                continue

            self.state = TaskState.RUNNING
            outcome = self._run_task(task, policy)
            report.tasks.append(outcome)

            if not outcome.failed:
                continue

            failed = True
            self.state = TaskState.HOOK_FAILING
            self._run_hooks(HookPoint.ON_FAIL, report)

            if policy == OnFailPolicy.CONTINUE:
                logger.log(level=30, msg=f"Continuing after failed {task.label}")
                self.state = TaskState.RUNNING
            else:
                logger.log(level=40, msg=f"Aborting after failed {task.label}")
                aborted = True

        if aborted:
            self.state = TaskState.ABORTED
            return RunStatus.ABORTED

        if not failed:
            self._run_hooks(HookPoint.ON_SUCCESS, report)
        self._run_hooks(HookPoint.POST, report)

        self.state = TaskState.COMPLETED
        return RunStatus.FAILED if failed else RunStatus.COMPLETED
