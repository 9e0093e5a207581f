"""Lifecycle hooks for the operate loop.

Hooks observe the loop; they never steer it.  Each event may have one callback
or a list of them, and every callback runs inside its own error boundary so a
failing subscriber cannot abort the loop or hide the error/result it was being
told about.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable

from utils import get_logger, run_sync

logger = get_logger(__name__)

HookCallbacks = Callable[[Any], Any] | list[Callable[[Any], Any]] | None


@dataclass
class LlmHooks:
    before_each_model_request: HookCallbacks = None
    after_each_model_response: HookCallbacks = None
    before_each_tool: HookCallbacks = None
    after_each_tool: HookCallbacks = None
    on_tool_error: HookCallbacks = None
    on_retryable_model_error: HookCallbacks = None
    on_unrecoverable_model_error: HookCallbacks = None


# ── Hook contexts (read-only snapshots) ───────────────────────────────────────

@dataclass(frozen=True)
class BeforeModelRequestContext:
    input: list
    options: Any
    provider_request: Any


@dataclass(frozen=True)
class AfterModelResponseContext:
    content: Any
    input: list
    options: Any
    provider_request: Any
    provider_response: Any
    usage: list


@dataclass(frozen=True)
class BeforeToolContext:
    args: str
    tool_name: str


@dataclass(frozen=True)
class AfterToolContext:
    args: str
    result: Any
    tool_name: str


@dataclass(frozen=True)
class ToolErrorContext:
    args: str
    error: BaseException
    tool_name: str


@dataclass(frozen=True)
class ModelErrorContext:
    """Context for both retryable and unrecoverable model errors."""
    error: BaseException
    input: list
    options: Any
    provider_request: Any
    attempt: int = 0


def _subscribers(hooks, event: str) -> list:
    if hooks is None:
        return []
    if isinstance(hooks, dict):
        callbacks = hooks.get(event)
    else:
        callbacks = getattr(hooks, event, None)
    if callbacks is None:
        return []
    if callable(callbacks):
        return [callbacks]
    return list(callbacks)


class HookRunner:
    """Dispatches lifecycle events to the caller's hooks."""

    def _dispatch(self, hooks, event: str, context) -> None:
        for callback in _subscribers(hooks, event):
            try:
                result = callback(context)
                if inspect.isawaitable(result):
                    run_sync(result)
            except Exception:
                logger.warning("Hook %s raised; ignoring", event, exc_info=True)

    def run_before_model_request(self, hooks, context: BeforeModelRequestContext) -> None:
        self._dispatch(hooks, "before_each_model_request", context)

    def run_after_model_response(self, hooks, context: AfterModelResponseContext) -> None:
        self._dispatch(hooks, "after_each_model_response", context)

    def run_before_tool(self, hooks, context: BeforeToolContext) -> None:
        self._dispatch(hooks, "before_each_tool", context)

    def run_after_tool(self, hooks, context: AfterToolContext) -> None:
        self._dispatch(hooks, "after_each_tool", context)

    def run_on_tool_error(self, hooks, context: ToolErrorContext) -> None:
        self._dispatch(hooks, "on_tool_error", context)

    def run_on_retryable_error(self, hooks, context: ModelErrorContext) -> None:
        self._dispatch(hooks, "on_retryable_model_error", context)

    def run_on_unrecoverable_error(self, hooks, context: ModelErrorContext) -> None:
        self._dispatch(hooks, "on_unrecoverable_model_error", context)


hook_runner = HookRunner()
