"""Loop state accumulation and the final, immutable operate response."""

from dataclasses import dataclass, field
from typing import Any

from .base import MessageType, ResponseStatus, UsageItem


@dataclass
class OperateLoopState:
    """Mutable accumulator owned by a single operate call."""
    model: str
    provider: str
    status: str = ResponseStatus.RUNNING
    history: list = field(default_factory=list)
    responses: list = field(default_factory=list)
    output: list = field(default_factory=list)
    usage: list[UsageItem] = field(default_factory=list)
    content: Any = None
    error: dict | None = None
    current_turn: int = 0
    max_turns: int = 1


@dataclass(frozen=True)
class OperateResponse:
    status: str
    content: Any
    error: dict | None
    history: list
    output: list
    responses: list
    usage: list[UsageItem]
    reasoning: list[str]
    model: str
    provider: str


def extract_reasoning(history: list) -> list[str]:
    """Collect reasoning text from history items.

    Understands OpenAI reasoning items (``summary[].text`` or ``content``),
    Anthropic thinking items, and a ``reasoning`` string on message items.
    """
    texts = []
    for item in history:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == MessageType.REASONING:
            for summary in item.get("summary") or []:
                text = summary.get("text") if isinstance(summary, dict) else None
                if isinstance(text, str) and text:
                    texts.append(text)
            if isinstance(item.get("content"), str) and item["content"]:
                texts.append(item["content"])
        if item_type == MessageType.THINKING and isinstance(item.get("thinking"), str):
            texts.append(item["thinking"])
        if isinstance(item.get("reasoning"), str) and item["reasoning"]:
            texts.append(item["reasoning"])
    return texts


class ResponseBuilder:
    """Folds per-turn responses, usage and history into an OperateLoopState."""

    def __init__(self, model: str, provider: str):
        self.state = OperateLoopState(model=model, provider=provider)

    @property
    def history(self) -> list:
        return self.state.history

    @property
    def usage(self) -> list[UsageItem]:
        return self.state.usage

    def set_history(self, history: list) -> "ResponseBuilder":
        self.state.history = list(history)
        return self

    def append_to_history(self, *items: dict) -> "ResponseBuilder":
        self.state.history.extend(items)
        return self

    def append_to_output(self, *items) -> "ResponseBuilder":
        self.state.output.extend(items)
        return self

    def add_response(self, response) -> "ResponseBuilder":
        self.state.responses.append(response)
        return self

    def add_usage(self, usage: UsageItem) -> "ResponseBuilder":
        self.state.usage.append(usage)
        return self

    def set_content(self, content) -> "ResponseBuilder":
        self.state.content = content
        return self

    def set_error(self, status: int, title: str, detail: str | None = None) -> "ResponseBuilder":
        self.state.error = {"status": status, "title": title, "detail": detail}
        return self

    def complete(self) -> "ResponseBuilder":
        self.state.status = ResponseStatus.COMPLETED
        return self

    def fail(self) -> "ResponseBuilder":
        self.state.status = ResponseStatus.ERRORED
        return self

    def finalize(self) -> OperateResponse:
        """Copy the state out into an OperateResponse."""
        state = self.state
        return OperateResponse(
            status=state.status,
            content=state.content,
            error=dict(state.error) if state.error else None,
            history=list(state.history),
            output=list(state.output),
            responses=list(state.responses),
            usage=list(state.usage),
            reasoning=extract_reasoning(state.history),
            model=state.model,
            provider=state.provider,
        )
