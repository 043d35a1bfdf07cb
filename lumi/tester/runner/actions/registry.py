"""
Command name to handler table.

Each handler module registers its functions with `@action(...)`. A handler
receives the executor and the command parameters, already variable-expanded
unless the handler was registered with `raw=True`.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from lumi.tester.errors import LumiError

if TYPE_CHECKING:
    from lumi.tester.runner.executor import TestExecutor

Handler = Callable[["TestExecutor", Any], Awaitable[None]]


@dataclass(frozen=True)
class ActionEntry:
    name: str
    handler: Handler
    # Failures turn into soft failures when the params carry `soft: true`
    soft: bool = False
    # Handler expands variables itself, at the moment it needs them
    raw: bool = False


_HANDLERS: dict[str, ActionEntry] = {}


def action(*names: str, soft: bool = False, raw: bool = False):
    def decorator(func: Handler) -> Handler:
        for name in names:
            if name in _HANDLERS:
                raise LumiError(f"Duplicate handler for command '{name}'")
            _HANDLERS[name] = ActionEntry(name=name, handler=func, soft=soft, raw=raw)
        return func

    return decorator


def get_action(name: str) -> ActionEntry:
    entry = _HANDLERS.get(name)
    if entry is None:
        raise LumiError(f"No handler registered for command '{name}'")
    return entry


def registered_names() -> set[str]:
    return set(_HANDLERS)
