"""Normalized LLM interface shared by all adapters and the operate loop."""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator

from .errors import AttemptCancelledError


# ── Message vocabulary ────────────────────────────────────────────────────────
# History items are plain dicts in the OpenAI Responses item vocabulary; every
# adapter translates from these to its own wire format.

class MessageRole:
    ASSISTANT = "assistant"
    DEVELOPER = "developer"
    SYSTEM = "system"
    USER = "user"


class MessageType:
    FUNCTION_CALL = "function_call"
    FUNCTION_CALL_OUTPUT = "function_call_output"
    INPUT_FILE = "input_file"
    INPUT_IMAGE = "input_image"
    INPUT_TEXT = "input_text"
    MESSAGE = "message"
    OUTPUT_TEXT = "output_text"
    REASONING = "reasoning"
    THINKING = "thinking"


class ResponseStatus:
    RUNNING = "in_progress"
    COMPLETED = "completed"
    ERRORED = "incomplete"


class ErrorCategory:
    RETRYABLE = "retryable"
    RATE_LIMIT = "rate_limit"
    UNRECOVERABLE = "unrecoverable"
    UNKNOWN = "unknown"


STRUCTURED_OUTPUT_TOOL_NAME = "structured_output"


def message_item(role: str, content: Any) -> dict:
    return {"content": content, "role": role, "type": MessageType.MESSAGE}


def content_to_text(content: Any) -> str:
    """Flatten message content (string or list of content items) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return str(content)


_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def parse_data_url(url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<data>`` into ``(mime, data)``."""
    match = _DATA_URL.match(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def parse_arguments(arguments: str | None) -> dict:
    """Decode a tool call's JSON arguments, tolerating empty or invalid text."""
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ── Request / response types ──────────────────────────────────────────────────

@dataclass
class ProviderToolDefinition:
    name: str
    description: str
    parameters: dict


def toolkit_definitions(toolkit) -> list[ProviderToolDefinition]:
    """Tool definitions for every tool in ``toolkit`` (which may be None)."""
    if toolkit is None:
        return []
    return [
        ProviderToolDefinition(
            name=tool["name"],
            description=tool.get("description", ""),
            parameters={**(tool.get("parameters") or {}), "type": "object"},
        )
        for tool in toolkit.tools
    ]


def structured_output_tool(schema: dict) -> ProviderToolDefinition:
    return ProviderToolDefinition(
        name=STRUCTURED_OUTPUT_TOOL_NAME,
        description=(
            "Output a structured JSON object, "
            "use this before your final response to give structured outputs to the user"
        ),
        parameters=schema,
    )


@dataclass(frozen=True)
class OperateRequest:
    """Provider-agnostic request, rebuilt from history on every turn."""
    model: str
    messages: list
    system: str | None = None
    instructions: str | None = None
    tools: list[ProviderToolDefinition] | None = None
    format: dict | None = None
    provider_options: dict | None = None
    user: str | None = None
    temperature: float | None = None


@dataclass
class UsageItem:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    total: int = 0
    provider: str = ""
    model: str = ""


@dataclass
class ParsedResponse:
    has_tool_calls: bool
    content: Any = None             # str, dict (structured output) or None
    stop_reason: str | None = None
    usage: UsageItem | None = None
    raw: Any = field(repr=False, default=None)


@dataclass
class StandardToolCall:
    call_id: str
    name: str
    arguments: str                  # JSON string
    raw: Any = field(repr=False, default=None)


@dataclass
class StandardToolResult:
    call_id: str
    output: str                     # JSON string
    success: bool = True
    error: str | None = None
    result: Any = field(repr=False, default=None)


@dataclass(frozen=True)
class ClassifiedError:
    error: BaseException
    category: str
    should_retry: bool
    suggested_delay: float | None = None


class StreamChunkType:
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    ERROR = "error"


@dataclass
class StreamChunk:
    """One item yielded by a stream.

    ``content`` is set on text chunks, ``tool_call`` on tool-call chunks,
    ``tool_result`` (``{"id", "name", "result"}``) on tool-result chunks,
    ``usage`` on done chunks and ``error`` (status/title/detail) on error chunks.
    """
    type: str
    content: str | None = None
    tool_call: StandardToolCall | None = None
    tool_result: dict | None = None
    usage: list[UsageItem] | None = None
    error: dict | None = None


# ── Caller-facing options ─────────────────────────────────────────────────────

@dataclass
class PlaceholderOptions:
    input: bool = True
    instructions: bool = True
    system: bool = True


@dataclass
class OperateOptions:
    """Options accepted by ``LlmProvider.operate`` and ``OperateLoop.execute``."""
    model: str | None = None
    system: str | None = None
    instructions: str | None = None
    data: dict | None = None
    placeholders: PlaceholderOptions | dict | None = None
    history: list | None = None
    tools: Any = None               # list[LlmTool] or Toolkit
    explain: bool = False
    format: dict | None = None
    provider_options: dict | None = None
    user: str | None = None
    temperature: float | None = None
    hooks: Any = None               # LlmHooks or dict
    turns: bool | int | None = None
    escalate_tool_errors: bool = False

    def placeholder_enabled(self, target: str) -> bool:
        """Whether ``{{placeholder}}`` substitution applies to ``target``."""
        if not self.data:
            return False
        placeholders = self.placeholders
        if placeholders is None:
            return True
        if isinstance(placeholders, dict):
            return placeholders.get(target, True) is not False
        return getattr(placeholders, target, True) is not False


# ── Adapter contract ──────────────────────────────────────────────────────────

class BaseProviderAdapter(ABC):
    """Common interface for all LLM provider adapters.

    Adapters are stateless: the operate loop owns history and the provider
    owns the SDK client.  Vendor errors must propagate un-wrapped so the
    retry executor can classify them.
    """

    name: str = ""
    default_model: str = ""
    api_key_env: str = ""
    supports_streaming: bool = False

    @abstractmethod
    def create_client(self, api_key: str) -> Any:
        """Build the vendor SDK client."""

    @abstractmethod
    def build_request(self, request: OperateRequest) -> dict:
        """Translate an OperateRequest into the vendor request payload."""

    @abstractmethod
    def format_tools(self, toolkit, output_schema: dict | None = None) -> list[ProviderToolDefinition]:
        """Convert a Toolkit (may be None) into tool definitions for OperateRequest.tools."""

    @abstractmethod
    def format_output_schema(self, schema: dict) -> dict:
        """Normalize a structured-output schema into what build_request expects."""

    @abstractmethod
    def send_request(self, client: Any, request: dict) -> Any:
        """Issue the vendor API call and return the raw response."""

    @abstractmethod
    def parse_response(self, response: Any, options: OperateOptions | None = None) -> ParsedResponse:
        """Normalize a raw vendor response."""

    @abstractmethod
    def extract_tool_calls(self, response: Any) -> list[StandardToolCall]:
        """List the tool calls requested by a raw vendor response."""

    @abstractmethod
    def extract_usage(self, response: Any, model: str) -> UsageItem:
        """Token counts for one raw vendor response."""

    @abstractmethod
    def response_to_history_items(self, response: Any) -> list[dict]:
        """Generic history items (messages, function calls, reasoning) for a response."""

    @abstractmethod
    def classify_error(self, error: BaseException) -> ClassifiedError:
        """Assign an ErrorCategory to a raised error."""

    def execute_request(self, client: Any, request: dict, signal=None) -> Any:
        """Run one attempt, refusing to start if the attempt was already abandoned."""
        if signal is not None and signal.cancelled:
            raise AttemptCancelledError("Retry attempt was cancelled before the request was sent")
        return self.send_request(client, request)

    # ── Streaming ─────────────────────────────────────────────────────────────

    def send_stream_request(self, client: Any, request: dict) -> Iterator[StreamChunk]:
        """Issue a streaming API call, yielding text, tool-call and done chunks."""
        raise NotImplementedError(f"{self.name} adapter does not stream")

    def execute_stream_request(self, client: Any, request: dict, signal=None) -> Iterator[StreamChunk]:
        """Stream one attempt, stopping as soon as the attempt is abandoned."""
        if signal is not None and signal.cancelled:
            raise AttemptCancelledError("Retry attempt was cancelled before the request was sent")
        for chunk in self.send_stream_request(client, request):
            if signal is not None and signal.cancelled:
                return
            yield chunk

    def tool_call_history_item(self, tool_call: StandardToolCall) -> dict:
        """Generic ``function_call`` history item for a tool call."""
        return {
            "arguments": tool_call.arguments,
            "call_id": tool_call.call_id,
            "name": tool_call.name,
            "type": MessageType.FUNCTION_CALL,
        }

    def format_tool_result(self, tool_call: StandardToolCall, result: StandardToolResult) -> dict:
        return {
            "call_id": tool_call.call_id,
            "name": tool_call.name,
            "output": result.output,
            "type": MessageType.FUNCTION_CALL_OUTPUT,
        }

    @staticmethod
    def _classified(error: BaseException, category: str, suggested_delay: float | None = None) -> ClassifiedError:
        return ClassifiedError(
            error=error,
            category=category,
            should_retry=category != ErrorCategory.UNRECOVERABLE,
            suggested_delay=suggested_delay,
        )

    def has_structured_output(self, response: Any) -> bool:
        return False

    def extract_structured_output(self, response: Any) -> dict | None:
        return None


