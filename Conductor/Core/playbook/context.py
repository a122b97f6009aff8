"""Naming context for the currently executing part of a playbook."""

from contextlib import contextmanager
from typing import Iterator, List, Optional


class ContextStack:
    """Stack of active context names such as "task 2" or "hook on_fail".

    The top of the stack names what is running now and is used in log
    messages and templates.
    """

    def __init__(self, initial: Optional[str] = None):
        self._stack: List[str] = []
        if initial:
            self._stack.append(initial)

    @property
    def current(self) -> Optional[str]:
        return self._stack[-1] if self._stack else None

    def set(self, name: str) -> None:
        """Replace the top of the stack, or start it when empty."""
        if self._stack:
            self._stack[-1] = name
        else:
            self._stack.append(name)

    def push(self, name: str) -> None:
        self._stack.append(name)

    def pop(self) -> Optional[str]:
        return self._stack.pop() if self._stack else None

    @contextmanager
    def scoped(self, name: str) -> Iterator[str]:
        """Push name for the duration of the block, restoring on any exit."""
        depth = len(self._stack)
        self._stack.append(name)
        try:
            yield name
        finally:
            del self._stack[depth:]

    def __len__(self) -> int:
        return len(self._stack)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._stack))

    def __repr__(self) -> str:
        return f"ContextStack({self._stack!r})"
