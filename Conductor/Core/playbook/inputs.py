"""Playbook inputs.

Inputs are the named parameters a playbook accepts. Each declaration has
a type, an optional default and validation rules. Values arrive from the
caller (often as strings from the command line). The declarations are
turned into a cerberus schema, so values are coerced to the declared type
and validated in one pass and every problem is reported at once.

Supported types: string, integer, float, boolean, array, hash

Example declaration:
    inputs:
      cluster:
        description: Cluster to upgrade
        type: string
        validation: "^[a-z0-9]+$"
      batch:
        type: integer
        default: 10
      token:
        type: string
        sensitive: true
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from cerberus import Validator

import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.errors import MissingInput, PlaybookParseError, ValidationError

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

_UNSET = object()

TRUE_STRINGS = ("true", "yes", "y", "1", "on")
FALSE_STRINGS = ("false", "no", "n", "0", "off")


class InputType(str, Enum):
    """Supported input types."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    ARRAY = "array"
    HASH = "hash"


@dataclass
class InputDefinition:
    """A declared playbook input."""

    name: str
    type: InputType = InputType.STRING
    description: str = ""
    required: bool = True
    default: Any = _UNSET
    validation: Optional[str] = None
    choices: List[Any] = field(default_factory=list)
    sensitive: bool = False

    @property
    def has_default(self) -> bool:
        return self.default is not _UNSET

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "required": self.required,
            "sensitive": self.sensitive,
        }
        if self.has_default:
            data["default"] = "********" if self.sensitive else self.default
        if self.validation:
            data["validation"] = self.validation
        if self.choices:
            data["choices"] = list(self.choices)
        return data


def coerce(definition: InputDefinition, value: Any) -> Any:
    """
    Convert a raw value to the declared type of an input.

    Strings are accepted for every type since command line values arrive
    as text.

    Raises:
        ValueError: If the value cannot be converted
    """
    kind = definition.type

    if kind == InputType.STRING:
        if isinstance(value, (dict, list)):
            raise ValueError("expected a string")
        return str(value)

    if kind == InputType.INTEGER:
        if isinstance(value, bool):
            raise ValueError("expected an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.match(r"^-?\d+$", value.strip()):
            return int(value.strip())
        raise ValueError("expected an integer")

    if kind == InputType.FLOAT:
        if isinstance(value, bool):
            raise ValueError("expected a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError("expected a number")

    if kind == InputType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError("expected a boolean")

    if kind == InputType.ARRAY:
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    raise ValueError("expected a JSON array")
                if not isinstance(parsed, list):
                    raise ValueError("expected a JSON array")
                return parsed
            return [item.strip() for item in text.split(",") if item.strip()]
        raise ValueError("expected an array")

    if kind == InputType.HASH:
        if isinstance(value, dict):
            return dict(value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                raise ValueError("expected a JSON object")
            if isinstance(parsed, dict):
                return parsed
        raise ValueError("expected a hash")

    raise ValueError(f"unsupported type {kind}")


CERBERUS_TYPES = {
    InputType.STRING: "string",
    InputType.INTEGER: "integer",
    InputType.FLOAT: "float",
    InputType.BOOLEAN: "boolean",
    InputType.ARRAY: "list",
    InputType.HASH: "dict",
}


def _coercer(definition: InputDefinition) -> Callable[[Any], Any]:
    choices = {str(c): c for c in definition.choices}

    def convert(value: Any) -> Any:
        if value is None:
            return None
        value = coerce(definition, value)
        # array items from the command line arrive as strings
        if choices and isinstance(value, list):
            return [choices.get(str(item), item) for item in value]
        return value

    return convert


class InputValidator(Validator):
    """Validator for input values with unanchored pattern matching."""

    def _validate_pattern(self, pattern, field, value):
        """Search the value for a regular expression.

        The rule's arguments are validated against this schema:
        {'type': 'string'}
        """
        if isinstance(value, str) and not re.search(pattern, value):
            self._error(field, f"value does not match {pattern}")


def _parse_definition(name: str, spec: Any) -> InputDefinition:
    """
    Parse one input declaration.

    Raises:
        PlaybookParseError: If the declaration is malformed
    """
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise PlaybookParseError("Input declaration must be a dictionary", f"inputs.{name}")

    type_str = str(spec.get("type", "string")).lower()
    try:
        input_type = InputType(type_str)
    except ValueError:
        valid_types = [t.value for t in InputType]
        raise PlaybookParseError(
            f"Invalid input type: {type_str}. Must be one of {valid_types}",
            f"inputs.{name}.type",
        )

    validation = spec.get("validation")
    if validation is not None:
        validation = str(validation)
        if len(validation) > 1 and validation.startswith("/") and validation.endswith("/"):
            validation = validation[1:-1]
        try:
            re.compile(validation)
        except re.error as e:
            raise PlaybookParseError(
                f"Invalid validation expression: {e}", f"inputs.{name}.validation"
            )

    choices = spec.get("choices", [])
    if not isinstance(choices, list):
        raise PlaybookParseError("choices must be a list", f"inputs.{name}.choices")

    default = spec["default"] if "default" in spec else _UNSET
    required = bool(spec.get("required", default is _UNSET))

    return InputDefinition(
        name=str(name),
        type=input_type,
        description=str(spec.get("description", "")),
        required=required,
        default=default,
        validation=validation,
        choices=list(choices),
        sensitive=bool(spec.get("sensitive", False)),
    )


class Inputs:
    """The declared inputs of a playbook and their resolved values."""

    def __init__(self):
        self._definitions: Dict[str, InputDefinition] = {}
        self._values: Dict[str, Any] = {}
        self.prepared = False

    def from_hash(self, data: Optional[Dict[str, Any]]) -> "Inputs":
        """
        Load input declarations.

        Args:
            data: Mapping of input name to declaration

        Returns:
            self
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PlaybookParseError("Inputs must be a dictionary", "inputs")

        self._definitions = {
            str(name): _parse_definition(str(name), spec) for name, spec in data.items()
        }
        self._values = {}
        self.prepared = False

        return self

    def keys(self) -> List[str]:
        return list(self._definitions.keys())

    def definition(self, name: str) -> InputDefinition:
        if name not in self._definitions:
            raise MissingInput(name)
        return self._definitions[name]

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[InputDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def __getitem__(self, name: str) -> Any:
        """
        Get the resolved value of an input.

        Raises:
            MissingInput: If the input is not declared or has no value
        """
        if name not in self._definitions:
            raise MissingInput(name)
        if name not in self._values:
            raise MissingInput(name, f"Input {name} has no value")
        return self._values[name]

    def add_cli_options(self, app: Any, allow_empty: bool = False) -> None:
        """
        Register every input as a --<name> option on an argparse style object.

        Args:
            app: Object with an argparse compatible add_argument()
            allow_empty: When true no option is marked required, for commands
                         that only inspect the playbook
        """
        for definition in self._definitions.values():
            option = "--%s" % definition.name.replace("_", "-")
            help_text = definition.description or f"Input {definition.name}"
            if definition.has_default and not definition.sensitive:
                help_text += f" (default: {definition.default})"

            kwargs: Dict[str, Any] = {
                "dest": definition.name,
                "help": help_text,
                "default": None,
                "required": (
                    definition.required and not definition.has_default and not allow_empty
                ),
            }

            if definition.type == InputType.ARRAY:
                kwargs["action"] = "append"
            elif definition.type == InputType.BOOLEAN:
                kwargs["metavar"] = "true|false"
            if definition.choices:
                kwargs["choices"] = [str(c) for c in definition.choices]

            logger.log(level=10, msg=f"Adding CLI option {option} for input {definition.name}")
            app.add_argument(option, **kwargs)

    def _schema_entry(self, definition: InputDefinition) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "type": CERBERUS_TYPES[definition.type],
            "required": definition.required and not definition.has_default,
            "nullable": True,
            "coerce": _coercer(definition),
        }
        if definition.has_default:
            entry["default"] = definition.default
        if definition.validation and definition.type == InputType.STRING:
            entry["pattern"] = definition.validation
        if definition.choices:
            if definition.type == InputType.STRING:
                entry["allowed"] = [str(c) for c in definition.choices]
            else:
                entry["allowed"] = list(definition.choices)
        return entry

    def schema(self) -> Dict[str, Dict[str, Any]]:
        """The cerberus schema for the declared inputs."""
        return {name: self._schema_entry(d) for name, d in self._definitions.items()}

    def prepare(self, data: Optional[Dict[str, Any]] = None) -> "Inputs":
        """
        Resolve, coerce and validate input values.

        Values given as None are treated as not supplied, which is what
        argparse reports for options that were not passed.

        Args:
            data: Mapping of input name to raw value

        Returns:
            self

        Raises:
            ValidationError: Listing every invalid, missing or unknown input
        """
        data = {k: v for k, v in (data or {}).items() if v is not None}

        v = InputValidator(self.schema())
        if not v.validate(data):
            errors = [
                f"{name}: {message}"
                for name, messages in sorted(v.errors.items())
                for message in messages
            ]
            logger.log(level=40, msg=f"Input validation failed: {'; '.join(errors)}")
            raise ValidationError(errors, "inputs")

        values = dict(v.document)

        self._values = values
        self.prepared = True

        for name, value in values.items():
            shown = "********" if self._definitions[name].sensitive else repr(value)
            logger.log(level=10, msg=f"Input {name} = {shown}")

        return self

    def values(self) -> Dict[str, Any]:
        """Resolved values, sensitive ones included."""
        return dict(self._values)

    def to_dict(self) -> Dict[str, Any]:
        """Declarations with resolved values, sensitive values masked."""
        result = {}
        for name, definition in self._definitions.items():
            entry = definition.to_dict()
            if name in self._values:
                entry["value"] = "********" if definition.sensitive else self._values[name]
            result[name] = entry
        return result
