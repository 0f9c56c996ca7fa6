"""
Call-execution collaborator boundary.

The code that actually performs a schedule's outbound API call lives
outside the scheduling core. The worker only needs something it can hand a
``Schedule`` to and get back ``{success, message}``; raising is also
accepted and counted as a failure.

Accepted shapes:
    - an object with ``execute_scheduled_call(schedule)``
    - a plain callable ``fn(schedule)``

Either may be sync or async, and may return a ``CallResult`` or a mapping.
Sync callables run in a worker thread so a slow call never blocks the
event loop.

Example:
    ``APICRON_CALL_EXECUTOR=myapp.integrations:execute_scheduled_call``
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from apicron.core.errors import ConfigError
from apicron.core.models import CallResult, Schedule

RawResult = CallResult | Mapping[str, Any]


@runtime_checkable
class CallExecutor(Protocol):
    def execute_scheduled_call(self, schedule: Schedule) -> RawResult | Awaitable[RawResult]: ...


class FunctionCallExecutor:
    """Adapts a plain (sync or async) callable to ``CallExecutor``."""

    def __init__(self, fn: Callable[[Schedule], Any]) -> None:
        self._fn = fn

    def execute_scheduled_call(self, schedule: Schedule) -> Any:
        return self._fn(schedule)

    def __repr__(self) -> str:
        return f"FunctionCallExecutor({getattr(self._fn, '__qualname__', self._fn)!r})"


async def invoke(executor: CallExecutor, schedule: Schedule) -> CallResult:
    """Call the collaborator and coerce its answer into a ``CallResult``."""
    method = executor.execute_scheduled_call
    target = getattr(executor, "_fn", method)
    if inspect.iscoroutinefunction(target) or inspect.iscoroutinefunction(method):
        raw = await method(schedule)
    else:
        raw = await asyncio.to_thread(method, schedule)
        if inspect.isawaitable(raw):
            raw = await raw
    return CallResult.coerce(raw)


def load_call_executor(path: str) -> CallExecutor:
    """Import ``module:attribute`` and wrap it as a ``CallExecutor``.

    Raises:
        ConfigError: path is malformed or does not resolve to a callable
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"call executor must be 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import call executor module {module_name!r}", cause=e) from e

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigError(f"{path!r} has no attribute {part!r}", cause=e) from e

    if inspect.isclass(target):
        target = target()
    if isinstance(target, CallExecutor):
        return target
    if callable(target):
        return FunctionCallExecutor(target)
    raise ConfigError(f"{path!r} is not callable")


__all__ = ["CallExecutor", "FunctionCallExecutor", "invoke", "load_call_executor"]
