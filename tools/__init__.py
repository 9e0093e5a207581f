"""Tool registry for LLM function-calling."""

import copy
import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable

from llm.errors import ToolNotFoundError
from utils import get_logger, run_sync

logger = get_logger(__name__)

EXPLANATION_PARAMETER = "__Explanation"

_EXPLANATION_SCHEMA = {
    "type": "string",
    "description": (
        "Clearly state why the tool is being called and what larger question it helps answer. "
        "For example, 'I am checking the current time to see if the store is open'"
    ),
}


@dataclass
class LlmTool:
    """A callable the model may request, with its JSON Schema parameters."""
    name: str
    description: str
    parameters: dict
    call: Callable[..., Any]
    type: str = "function"


def _parse_arguments(arguments):
    if not isinstance(arguments, str):
        return arguments
    if not arguments.strip():
        return {}
    try:
        return json.loads(arguments)
    except ValueError:
        # Plain-text arguments go to the tool as-is
        return arguments


class Toolkit:
    """Looks tools up by name and invokes them with model-supplied arguments."""

    def __init__(self, tools: list[LlmTool] | None = None, explain: bool = False):
        self.explain = explain
        self._tools = {tool.name: tool for tool in tools or []}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def tools(self) -> list[dict]:
        """Tool definitions without their callables.

        In explain mode every tool gains a required ``__Explanation`` argument
        so the model states why it is calling the tool.
        """
        definitions = []
        for tool in self._tools.values():
            parameters = copy.deepcopy(tool.parameters) or {"type": "object", "properties": {}}
            if self.explain:
                parameters.setdefault("properties", {})[EXPLANATION_PARAMETER] = dict(_EXPLANATION_SCHEMA)
            definitions.append({
                "name": tool.name,
                "description": tool.description,
                "parameters": parameters,
                "type": tool.type or "function",
            })
        return definitions

    def call(self, name: str, arguments=None) -> Any:
        """Execute a tool by name.

        Args:
            name: Name of the tool to execute
            arguments: JSON string (or already-decoded value) from the model

        Returns:
            Whatever the tool returns

        Raises:
            ToolNotFoundError: No tool registered under ``name``
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' not found")

        args = _parse_arguments(arguments)
        if isinstance(args, dict):
            args = {key: value for key, value in args.items() if key != EXPLANATION_PARAMETER}

        logger.trace(f"{name}:{json.dumps(args, default=str)}")

        if isinstance(args, dict):
            result = tool.call(**args)
        else:
            result = tool.call(args)

        if inspect.isawaitable(result):
            result = run_sync(result)
        return result
