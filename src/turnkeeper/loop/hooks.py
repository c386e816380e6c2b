"""In-process hook registry with optional file-based callback dispatch."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from turnkeeper.loop.callbacks import CallbackResult, CallbackRunner
from turnkeeper.loop.contracts import CallbackContext, HookPoint, parse_hook_point

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HookInvocation:
    """What a handler sees: the running point, caller arguments and context."""

    point: HookPoint
    args: tuple[Any, ...] = ()
    context: CallbackContext | None = None


HookHandler = Callable[[HookInvocation], object]


@dataclass(slots=True)
class HookFailure:
    """One handler that returned False or raised."""

    handler: str
    error: str | None = None


@dataclass(slots=True)
class HookRunResult:
    """Aggregate of all handlers plus the file callback for one point."""

    point: HookPoint
    handlers_run: int = 0
    failures: list[HookFailure] = field(default_factory=list)
    callback: CallbackResult | None = None

    @property
    def ok(self) -> bool:
        if self.failures:
            return False
        return self.callback is None or self.callback.ok

    @property
    def soft_failure(self) -> bool:
        """Only the callback asked for a redo; no hard failure anywhere."""

        return (
            not self.failures
            and self.callback is not None
            and self.callback.soft_failure
        )

    @property
    def exit_code(self) -> int:
        if self.callback is not None and not self.callback.ok:
            return self.callback.exit_code
        return 1 if self.failures else 0


class HookRegistry:
    """Ordered handlers per lifecycle point.

    Handlers are callables or ``"package.module:function"`` references.
    References are imported when registered, so a typo fails immediately
    rather than at the first run.
    """

    def __init__(self, callback_runner: CallbackRunner | None = None) -> None:
        self.callback_runner = callback_runner
        self._handlers: dict[HookPoint, list[tuple[str, HookHandler]]] = {
            point: [] for point in HookPoint
        }

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Sequence[str | HookHandler]],
        *,
        callback_runner: CallbackRunner | None = None,
    ) -> HookRegistry:
        registry = cls(callback_runner=callback_runner)
        for point, handlers in mapping.items():
            for handler in handlers:
                registry.register(point, handler)
        return registry

    def register(self, point: str | HookPoint, handler: str | HookHandler) -> str:
        """Append ``handler`` to ``point`` and return the name it is tracked by."""

        hook_point = parse_hook_point(point)
        name, resolved = _resolve_handler(handler)
        self._handlers[hook_point].append((name, resolved))
        logger.debug("Registered hook %s for %s", name, hook_point.value)
        return name

    def unregister(self, point: str | HookPoint, name: str) -> None:
        hook_point = parse_hook_point(point)
        self._handlers[hook_point] = [
            entry for entry in self._handlers[hook_point] if entry[0] != name
        ]

    def clear(self, point: str | HookPoint | None = None) -> None:
        if point is None:
            for handlers in self._handlers.values():
                handlers.clear()
            return
        self._handlers[parse_hook_point(point)].clear()

    def handlers(self, point: str | HookPoint) -> list[str]:
        return [name for name, _ in self._handlers[parse_hook_point(point)]]

    def execute(
        self,
        point: str | HookPoint,
        *args: Any,
        context: CallbackContext | None = None,
    ) -> HookRunResult:
        """Run every handler for ``point`` in order, then its callback script.

        A failing handler does not stop the remaining ones.  The callback
        script only runs when a runner and a context are both available.
        """

        hook_point = parse_hook_point(point)
        if context is not None and context.hook_point != hook_point.value:
            context = replace(context, hook_point=hook_point.value)
        invocation = HookInvocation(point=hook_point, args=args, context=context)
        result = HookRunResult(point=hook_point)

        for name, handler in list(self._handlers[hook_point]):
            result.handlers_run += 1
            try:
                returned = handler(invocation)
            except Exception as error:  # noqa: BLE001
                logger.warning("Hook %s raised at %s: %s", name, hook_point.value, error)
                result.failures.append(HookFailure(handler=name, error=str(error)))
                continue
            if returned is False:
                logger.warning("Hook %s failed at %s", name, hook_point.value)
                result.failures.append(HookFailure(handler=name))

        if self.callback_runner is not None and context is not None:
            result.callback = self.callback_runner.run(context)

        return result


def _resolve_handler(handler: str | HookHandler) -> tuple[str, HookHandler]:
    if callable(handler):
        name = getattr(handler, "__qualname__", None) or repr(handler)
        module = getattr(handler, "__module__", None)
        return (f"{module}:{name}" if module else name), handler

    if not isinstance(handler, str) or not handler.strip():
        raise ValueError("Hook handler must be a callable or a 'module:function' reference")
    module_name, separator, attribute = handler.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"Hook reference {handler!r} must look like 'module:function'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ValueError(f"Hook reference {handler!r}: cannot import {module_name!r}") from error

    target: object = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as error:
            raise ValueError(
                f"Hook reference {handler!r}: {module_name!r} has no attribute {attribute!r}",
            ) from error
    if not callable(target):
        raise ValueError(f"Hook reference {handler!r} does not name a callable")
    return handler, target  # type: ignore[return-value]
