"""Variable substitution for playbook documents.

Supports ${name} and ${namespace.name} placeholders inside strings, and
recurses through dicts and lists. Lookups go through a resolver callable.

- A string that is exactly one placeholder becomes the raw value, so
  "${inputs.hosts}" can expand to a list and "${inputs.batch}" to an int.
- Placeholders embedded in text are rendered as strings, lists are joined
  with commas.
- When the resolver returns UNRESOLVED the placeholder is kept as-is.

Usage:
    from Conductor.Core.playbook.templating import render

    render({"message": "deploy ${inputs.version}"}, resolver)
"""

import re
from typing import Any, Callable

# Variable pattern for substitution: ${VAR_NAME} or ${namespace.name}
VARIABLE_PATTERN = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)\s*\}")


class _Unresolved:
    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED = _Unresolved()

Resolver = Callable[[str], Any]


def _stringify(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(value: Any, resolver: Resolver) -> Any:
    """
    Substitute variables in a value.

    Args:
        value: Value to substitute (string, dict, list, or other)
        resolver: Callable returning the value for a variable name, or
                  UNRESOLVED to leave the placeholder untouched

    Returns:
        Value with variables substituted
    """
    if isinstance(value, str):
        whole = VARIABLE_PATTERN.fullmatch(value.strip())
        if whole:
            resolved = resolver(whole.group(1))
            return value if resolved is UNRESOLVED else resolved

        def replace_var(match: re.Match) -> str:
            resolved = resolver(match.group(1))
            if resolved is UNRESOLVED or resolved is None:
                return match.group(0)
            return _stringify(resolved)

        return VARIABLE_PATTERN.sub(replace_var, value)

    elif isinstance(value, dict):
        return {
            render(k, resolver): render(v, resolver)
            for k, v in value.items()
        }

    elif isinstance(value, list):
        return [render(item, resolver) for item in value]

    else:
        return value


def references(value: Any) -> list:
    """List every variable name referenced in a value, in order of appearance."""
    found: list = []
    if isinstance(value, str):
        found.extend(VARIABLE_PATTERN.findall(value))
    elif isinstance(value, dict):
        for k, v in value.items():
            found.extend(references(k))
            found.extend(references(v))
    elif isinstance(value, list):
        for item in value:
            found.extend(references(item))
    return found
