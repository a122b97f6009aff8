"""Playbook YAML loader for Conductor.

This module reads playbook documents and checks them statically, without
contacting the controller. Runtime validation (input values, agent
availability, node discovery) happens when the playbook is prepared.

Static checks:
- the document is a YAML dictionary with a name
- metadata, inputs, nodes, tasks and hooks parse
- every ${inputs.x} placeholder refers to a declared input
- every ${nodes.x} placeholder and task node group refers to a declared group
- task names are unique
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml  # type: ignore[import-untyped]

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import PlaybookParseError
from Conductor.Core.playbook.playbook import Playbook
from Conductor.Core.playbook.templating import references

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

TEMPLATED_SECTIONS = ("uses", "nodes", "tasks", "hooks")

# prepared before node groups resolve
UNRESOLVED_GROUP_SECTIONS = ("uses", "nodes")


def load_playbook_yaml(yaml_content: str) -> Dict[str, Any]:
    """
    Load a playbook document from YAML.

    Args:
        yaml_content: YAML string containing the playbook

    Returns:
        The document as a dictionary

    Raises:
        PlaybookParseError: If the YAML is invalid or not a dictionary

    Example YAML format:
        name: restart_web
        version: "1.0.0"
        on_fail: continue
        inputs:
          cluster:
            type: string
        nodes:
          web:
            type: discovery
            filter: "cluster=${inputs.cluster}"
        tasks:
          - name: restart
            nodes: web
            agent: service
            action: restart
            properties:
              service: nginx
    """
    if not yaml_content or not yaml_content.strip():
        raise PlaybookParseError("Playbook YAML content cannot be empty")

    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PlaybookParseError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise PlaybookParseError("Playbook must be a YAML dictionary/object")

    if not data.get("name"):
        raise PlaybookParseError("Playbook name is required", "name")

    return data


def load_playbook_file(path: str) -> Dict[str, Any]:
    """
    Load a playbook document from a file.

    Raises:
        PlaybookParseError: If the file cannot be read or parsed
    """
    if not os.path.isfile(path):
        raise PlaybookParseError(f"Playbook file {path} does not exist")

    try:
        with open(path, "r", encoding="utf-8") as handle:
            content = handle.read()
    except OSError as e:
        raise PlaybookParseError(f"Cannot read playbook file {path}: {e}")

    logger.log(level=10, msg=f"Loaded playbook file {path}")
    return load_playbook_yaml(content)


def _declared(section: Any) -> set:
    return set(section.keys()) if isinstance(section, dict) else set()


def check_references(document: Dict[str, Any]) -> List[str]:
    """
    Find placeholders and node group names that refer to undeclared things.

    Args:
        document: Playbook document

    Returns:
        List of error messages (empty if every reference resolves)
    """
    errors: List[str] = []
    inputs = _declared(document.get("inputs"))
    groups = _declared(document.get("nodes"))

    for section in TEMPLATED_SECTIONS:
        for name in references(document.get(section)):
            namespace, _, key = name.partition(".")
            if namespace == "inputs" and key not in inputs:
                errors.append(f"{section}: reference to undeclared input {key}")
            elif namespace == "nodes" and key not in groups:
                errors.append(f"{section}: reference to undeclared node group {key}")
            elif namespace == "nodes" and section in UNRESOLVED_GROUP_SECTIONS:
                errors.append(
                    f"{section}: node group {key} is referenced before node groups are resolved"
                )

    tasks = document.get("tasks")
    hooks = document.get("hooks")
    entries: List[Any] = list(enumerate(tasks)) if isinstance(tasks, list) else []
    if isinstance(hooks, dict):
        for point, hook_list in hooks.items():
            if isinstance(hook_list, list):
                entries.extend((str(point), hook) for hook in hook_list)

    seen = set()
    for where, task in entries:
        if not isinstance(task, dict):
            continue
        group = task.get("nodes")
        if isinstance(group, str) and not references(group) and group not in groups:
            errors.append(f"tasks[{where}]: undeclared node group {group}")
        if isinstance(where, int) and task.get("name"):
            if task["name"] in seen:
                errors.append(f"tasks[{where}]: duplicate task name '{task['name']}'")
            seen.add(task["name"])

    return errors


def parse_playbook_yaml(yaml_content: str, **playbook_args: Any) -> Playbook:
    """
    Parse YAML into a Playbook that is ready to run.

    Args:
        yaml_content: YAML string containing the playbook
        playbook_args: Passed to the Playbook constructor

    Returns:
        Playbook loaded from the document

    Raises:
        PlaybookParseError: If the document is invalid
    """
    document = load_playbook_yaml(yaml_content)

    errors = check_references(document)
    if errors:
        raise PlaybookParseError("; ".join(errors))

    return Playbook(**playbook_args).from_hash(document)


def validate_playbook_yaml(yaml_content: str, config: Optional[Any] = None) -> List[str]:
    """
    Validate a playbook YAML definition without returning the parsed result.

    Args:
        yaml_content: YAML string containing the playbook
        config: Configuration for the Playbook, defaults to the process config

    Returns:
        List of error messages (empty if valid)
    """
    errors: List[str] = []

    try:
        document = load_playbook_yaml(yaml_content)
        errors.extend(check_references(document))
        Playbook(config=config).from_hash(document)
    except PlaybookParseError as e:
        errors.append(str(e))

    return errors
