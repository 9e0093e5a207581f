"""Input normalization, placeholder substitution and history merging."""

import re
from dataclasses import dataclass

from .base import MessageRole, MessageType, OperateOptions, message_item

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")


def placeholders(template: str, data: dict | None) -> str:
    """Replace ``{{key}}`` (or ``{{ key }}``) with ``data[key]``; unknown keys stay verbatim."""
    if not data or not isinstance(template, str):
        return template

    def _replace(match: re.Match) -> str:
        key = match.group(1).strip()
        if key in data:
            return str(data[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def _substitute_content(content, data: dict):
    if isinstance(content, str):
        return placeholders(content, data)
    if isinstance(content, list):
        substituted = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                item = {**item, "text": placeholders(item["text"], data)}
            substituted.append(item)
        return substituted
    return content


def _format_message(message: dict, data: dict | None) -> dict:
    formatted = dict(message)
    if "role" in formatted and "type" not in formatted:
        formatted["type"] = MessageType.MESSAGE
    if data and "content" in formatted:
        formatted["content"] = _substitute_content(formatted["content"], data)
    return formatted


def format_operate_input(input, data: dict | None = None) -> list:
    """Turn a string, a single message or a history list into a history list.

    Args:
        input: Raw caller input
        data: Placeholder values; substitution is skipped when None

    Returns:
        New list of history items (caller's objects are not mutated)
    """
    if input is None:
        return []
    if isinstance(input, str):
        return [message_item(MessageRole.USER, placeholders(input, data) if data else input)]
    if isinstance(input, dict):
        return [_format_message(input, data)]
    if isinstance(input, (list, tuple)):
        history = []
        for item in input:
            if isinstance(item, str):
                history.append(message_item(MessageRole.USER, placeholders(item, data) if data else item))
            else:
                history.append(_format_message(item, data))
        return history
    raise TypeError(f"Unsupported operate input: {type(input).__name__}")


@dataclass
class ProcessedInput:
    history: list
    instructions: str | None = None
    system: str | None = None


def _is_system_message(item) -> bool:
    return (
        isinstance(item, dict)
        and item.get("type", MessageType.MESSAGE) == MessageType.MESSAGE
        and item.get("role") == MessageRole.SYSTEM
    )


class InputProcessor:
    """Builds the starting history for an operate call."""

    def process(self, input, options: OperateOptions | None = None) -> ProcessedInput:
        options = options or OperateOptions()

        history = format_operate_input(
            input, options.data if options.placeholder_enabled("input") else None
        )
        instructions = self._apply(options.instructions, options, "instructions")
        system = self._apply(options.system, options, "system")

        # Prior history is older, so it sorts first
        if options.history:
            history = list(options.history) + history

        if system:
            history = self.prepend_system_message(history, system)

        return ProcessedInput(history=history, instructions=instructions, system=system)

    @staticmethod
    def _apply(text: str | None, options: OperateOptions, target: str) -> str | None:
        if not text:
            return None
        if options.placeholder_enabled(target):
            return placeholders(text, options.data)
        return text

    @staticmethod
    def prepend_system_message(history: list, system: str) -> list:
        """Ensure exactly one leading system message carrying ``system``."""
        first = history[0] if history else None
        if _is_system_message(first):
            if first.get("content") == system:
                return history
            return [message_item(MessageRole.SYSTEM, system)] + history[1:]
        return [message_item(MessageRole.SYSTEM, system)] + history


input_processor = InputProcessor()
