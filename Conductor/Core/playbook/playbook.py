"""The Playbook lifecycle controller.

A Playbook owns its metadata and the Inputs, Uses, Nodes and Tasks
components. Its lifecycle is:

    playbook = Playbook(config=config)
    playbook.from_hash(document)          # parse only
    report = playbook.run(input_data)     # prepare, then run the tasks

prepare() runs strictly in the order inputs, uses, nodes, tasks. Each step
templates its part of the document against what earlier steps resolved,
so node filters can use ${inputs.x} and tasks can use ${nodes.group}.
The first failing step aborts preparation and nothing after it runs.

A Playbook instance runs once.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import Conductor.Helpers.logSettings as logLevel
from config import Config, get_config
from Conductor.Core.errors import NotFound, PlaybookError, PlaybookParseError, ValidationError
from Conductor.Core.playbook.context import ContextStack
from Conductor.Core.playbook.inputs import Inputs
from Conductor.Core.playbook.models import HookPoint, LogLevel, Metadata, OnFailPolicy, RunReport
from Conductor.Core.playbook.nodes import Nodes
from Conductor.Core.playbook.orchestrator import Orchestrator
from Conductor.Core.playbook.tasks import Tasks
from Conductor.Core.playbook.templating import UNRESOLVED, render
from Conductor.Core.playbook.uses import Uses
from Conductor.Core.rpc import Discovery, RpcClient, discovery_factory, rpc_client_factory
from Conductor.Core.telemetry import get_tracer
from Conductor.Core.utils.datetime_helpers import seconds_to_human

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

tracer = get_tracer(__name__)


def _parse_tags(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(t.strip() for t in value.split(",") if t.strip())
    if isinstance(value, (list, tuple)):
        return tuple(str(t) for t in value)
    raise PlaybookParseError("tags must be a list of strings", "tags")


class Playbook:
    """A playbook document and the engine that runs it."""

    def __init__(
        self,
        loglevel: Optional[str] = None,
        config: Optional[Config] = None,
        client_factory: Optional[Callable[[], RpcClient]] = None,
        discovery: Optional[Discovery] = None,
        batch_size: Optional[int] = None,
    ):
        self.config = config or get_config()
        self._loglevel_override = loglevel
        self._client_factory = client_factory or rpc_client_factory(self.config)
        self._discovery = discovery
        self._client: Optional[RpcClient] = None
        if batch_size is not None and int(batch_size) < 1:
            raise ValidationError([f"batch_size must be at least 1, got {batch_size}"], "options")
        self._batch_size = batch_size

        self.metadata = Metadata()
        self.input_data: Dict[str, Any] = {}
        self._document: Dict[str, Any] = {}
        self._context = ContextStack()

        self.inputs = Inputs()
        self.uses = Uses(self._agent_catalog)
        self.nodes = Nodes(self._discover)
        self.tasks = Tasks(self)

        self._run_lock = threading.Lock()
        self._has_run = False

        if loglevel:
            self.set_logger_level()

    # Metadata

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def loglevel(self) -> str:
        return self._loglevel_override or self.metadata.loglevel

    @property
    def on_fail(self) -> str:
        return self.metadata.on_fail

    @property
    def run_as(self) -> str:
        return self.metadata.run_as

    @property
    def batch_size(self) -> int:
        if self._batch_size is not None:
            return int(self._batch_size)
        return int(self.config.run.batch_size)

    def metadata_item(self, name: str) -> Any:
        """
        Get a metadata field by name.

        Raises:
            NotFound: If name is not a metadata field
        """
        if name not in Metadata.field_names():
            raise NotFound(name, f"Unknown playbook metadata {name}")
        return self.metadata.to_dict()[name]

    def set_logger_level(self) -> None:
        level = logLevel.set_package_level(self.loglevel)
        logger.log(level=10, msg=f"Playbook log level set to {self.loglevel} ({level})")

    # Context

    @property
    def context(self) -> Optional[str]:
        return self._context.current

    @context.setter
    def context(self, name: str) -> None:
        self._context.set(name)

    def in_context(self, name: str):
        """Context manager running its block with name as the current context."""
        return self._context.scoped(name)

    @staticmethod
    def seconds_to_human(seconds: float) -> str:
        return seconds_to_human(seconds)

    # Collaborators

    def rpc_client(self) -> RpcClient:
        """The RPC client for this run, created on first use."""
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def orchestrator(self, client: RpcClient, batch_size: int) -> Orchestrator:
        return Orchestrator(self, client, batch_size)

    def _agent_catalog(self) -> Dict[str, List[str]]:
        return self.rpc_client().agents()

    def _discover(self, filter: Any) -> List[str]:
        if self._discovery is None:
            self._discovery = discovery_factory(self.config)()
        return self._discovery.discover(filter)

    # Delegates

    def add_cli_options(self, app: Any, allow_empty: bool = False) -> None:
        self.inputs.add_cli_options(app, allow_empty)

    def input_value(self, name: str) -> Any:
        return self.inputs[name]

    def discovered_nodes(self, group: str) -> List[str]:
        return self.nodes[group]

    def validate_agents(self, mapping: Dict[str, List[str]]) -> None:
        self.uses.validate_agents(mapping)

    # Templating

    def _lookup(self, name: str) -> Any:
        if name == "context":
            return self.context if self.context is not None else UNRESOLVED

        namespace, _, key = name.partition(".")
        if not key:
            return UNRESOLVED

        if namespace == "inputs":
            return self.input_value(key)
        if namespace == "nodes":
            if not self.nodes.prepared:
                raise ValidationError(
                    [f"node group {key} is referenced before node groups are resolved"], "nodes"
                )
            return self.discovered_nodes(key)
        if namespace == "metadata":
            return self.metadata_item(key)

        return UNRESOLVED

    def t(self, data: Any) -> Any:
        """Resolve ${...} placeholders in data against the playbook state."""
        return render(copy.deepcopy(data), self._lookup)

    # Lifecycle

    def from_hash(self, data: Dict[str, Any]) -> "Playbook":
        """
        Load a playbook document.

        Only parses; inputs, agents, nodes and tasks are validated by
        prepare().

        Args:
            data: The playbook document

        Returns:
            self
        """
        if not isinstance(data, dict):
            raise PlaybookParseError("Playbook must be a YAML dictionary")

        on_fail = str(data.get("on_fail") or OnFailPolicy.FAIL.value).lower()
        if not OnFailPolicy.is_valid(on_fail):
            valid = [p.value for p in OnFailPolicy]
            raise PlaybookParseError(
                f"Invalid on_fail: {on_fail}. Must be one of {valid}", "on_fail"
            )

        loglevel = str(data.get("loglevel") or LogLevel.INFO.value).lower()
        if loglevel not in [level.value for level in LogLevel]:
            valid = [level.value for level in LogLevel]
            raise PlaybookParseError(
                f"Invalid loglevel: {loglevel}. Must be one of {valid}", "loglevel"
            )

        self.metadata = Metadata(
            name=str(data.get("name") or ""),
            version=str(data.get("version") or ""),
            author=str(data.get("author") or ""),
            description=str(data.get("description") or ""),
            tags=_parse_tags(data.get("tags")),
            on_fail=on_fail,
            loglevel=loglevel,
            run_as=str(data.get("run_as") or ""),
        )

        self.set_logger_level()

        self._document = copy.deepcopy(data)

        self.inputs.from_hash(data.get("inputs"))
        self.uses.from_hash(data.get("uses"))
        self.nodes.from_hash(data.get("nodes"))
        self.tasks.from_hash(data.get("tasks"), data.get("hooks"))

        logger.log(level=20, msg=f"Loaded playbook {self.name} version {self.version}")

        return self

    def prepare_inputs(self) -> None:
        self.inputs.prepare(self.input_data)

    def prepare_uses(self) -> None:
        self.uses.from_hash(self.t(self._document.get("uses"))).prepare()

    def prepare_nodes(self) -> None:
        self.nodes.from_hash(self.t(self._document.get("nodes"))).prepare()

    def prepare_tasks(self) -> None:
        self.tasks.from_hash(
            self.t(self._document.get("tasks")), self.t(self._document.get("hooks"))
        ).prepare()

    def prepare(self) -> None:
        """Prepare inputs, uses, nodes and tasks in that order."""
        for step in ("inputs", "uses", "nodes", "tasks"):
            logger.log(level=10, msg=f"Playbook {self.name}: preparing {step}")
            getattr(self, f"prepare_{step}")()

    def run(self, input_data: Optional[Dict[str, Any]] = None) -> RunReport:
        """
        Prepare and run the playbook.

        Args:
            input_data: Raw input values keyed by input name

        Returns:
            The RunReport produced by the tasks

        Raises:
            PlaybookError: If this playbook is already running or has run
        """
        if not self._run_lock.acquire(blocking=False):
            raise PlaybookError(f"Playbook {self.name} is already running")

        try:
            if self._has_run:
                raise PlaybookError(
                    f"Playbook {self.name} has already run, load it again to run it again"
                )
            self._has_run = True

            self.input_data = dict(input_data or {})

            with tracer.start_as_current_span(f"prepare {self.name}"):
                self.prepare()

            return self.tasks.run()
        finally:
            self._run_lock.release()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = self.metadata.to_dict()
        data["inputs"] = self.inputs.to_dict()
        data["uses"] = self.uses.to_dict()
        data["nodes"] = self.nodes.to_dict()
        data["tasks"] = [t.to_dict() for t in self.tasks.tasks]
        data["hooks"] = {
            point.value: [h.to_dict() for h in self.tasks.hooks(point)]
            for point in HookPoint
            if self.tasks.hooks(point)
        }
        return data
