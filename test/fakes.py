"""Scripted stand-ins for vendor adapters used across the test suite."""

import json
from types import SimpleNamespace

from llm.base import (
    BaseProviderAdapter,
    ErrorCategory,
    MessageRole,
    MessageType,
    ParsedResponse,
    StandardToolCall,
    StreamChunk,
    StreamChunkType,
    UsageItem,
    structured_output_tool,
    toolkit_definitions,
)
from llm.schema import to_json_schema


class RetryableError(Exception):
    pass


class FatalError(Exception):
    pass


class RateLimitedError(Exception):
    pass


def reply(text=None, tool_calls=(), structured=None):
    """Fake raw response: text, ``(call_id, name, arguments)`` tuples, structured output."""
    return SimpleNamespace(
        text=text,
        tool_calls=[
            SimpleNamespace(call_id=call_id, name=name, arguments=arguments)
            for call_id, name, arguments in tool_calls
        ],
        structured=structured,
    )


def tool_reply(name="roll", arguments="{}", call_id="call_1"):
    return reply(tool_calls=[(call_id, name, arguments)])


def text_chunk(text):
    return StreamChunk(type=StreamChunkType.TEXT, content=text)


def call_chunk(name="roll", arguments="{}", call_id="call_1"):
    return StreamChunk(
        type=StreamChunkType.TOOL_CALL,
        tool_call=StandardToolCall(call_id=call_id, name=name, arguments=arguments),
    )


def done_chunk():
    return StreamChunk(
        type=StreamChunkType.DONE,
        usage=[UsageItem(input=10, output=5, total=15, provider="fake", model="fake-model")],
    )


class FakeStream:
    """Iterable context manager standing in for an SDK stream."""

    def __init__(self, events):
        self.events = list(events)
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True
        return False

    def __iter__(self):
        return iter(self.events)


class FakeAdapter(BaseProviderAdapter):
    """Adapter that replays scripted responses (or raises scripted errors)."""

    name = "fake"
    default_model = "fake-model"
    api_key_env = "FAKE_API_KEY"
    supports_streaming = True

    def __init__(self, script=None, rate_limit_delay=None):
        self.script = list(script or [])
        self.requests = []
        self.rate_limit_delay = rate_limit_delay

    def create_client(self, api_key):
        return SimpleNamespace(api_key=api_key)

    def build_request(self, request):
        return {
            "format": request.format,
            "instructions": request.instructions,
            "messages": list(request.messages),
            "model": request.model,
            "system": request.system,
            "tools": request.tools,
        }

    def format_tools(self, toolkit, output_schema=None):
        tools = toolkit_definitions(toolkit)
        if output_schema:
            tools.append(structured_output_tool(output_schema))
        return tools

    def format_output_schema(self, schema):
        return to_json_schema(schema)

    def send_request(self, client, request):
        self.requests.append(request)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    def send_stream_request(self, client, request):
        """Replay a scripted list of chunks; exceptions in the list are raised in place."""
        self.requests.append(request)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        for chunk in step:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    def parse_response(self, response, options=None):
        content = response.structured if response.structured is not None else response.text
        return ParsedResponse(
            has_tool_calls=bool(response.tool_calls),
            content=content,
            stop_reason="tool_use" if response.tool_calls else "end_turn",
            usage=self.extract_usage(response, self.default_model),
            raw=response,
        )

    def extract_tool_calls(self, response):
        return [
            StandardToolCall(call_id=call.call_id, name=call.name, arguments=call.arguments, raw=call)
            for call in response.tool_calls
        ]

    def extract_usage(self, response, model):
        return UsageItem(input=10, output=5, total=15, provider=self.name, model=model)

    def response_to_history_items(self, response):
        items = []
        if response.text:
            items.append({"content": response.text, "role": MessageRole.ASSISTANT, "type": MessageType.MESSAGE})
        for call in response.tool_calls:
            items.append({
                "arguments": call.arguments,
                "call_id": call.call_id,
                "name": call.name,
                "type": MessageType.FUNCTION_CALL,
            })
        if response.structured is not None:
            items.append({
                "arguments": json.dumps(response.structured),
                "call_id": "call_structured",
                "name": "structured_output",
                "type": MessageType.FUNCTION_CALL,
            })
        return items

    def classify_error(self, error):
        if isinstance(error, RetryableError):
            return self._classified(error, ErrorCategory.RETRYABLE)
        if isinstance(error, FatalError):
            return self._classified(error, ErrorCategory.UNRECOVERABLE)
        if isinstance(error, RateLimitedError):
            return self._classified(error, ErrorCategory.RATE_LIMIT, self.rate_limit_delay)
        return self._classified(error, ErrorCategory.UNKNOWN)

    def has_structured_output(self, response):
        return response.structured is not None

    def extract_structured_output(self, response):
        return response.structured


class Recorder:
    """Callable that records every argument it is called with."""

    def __init__(self, raises=None):
        self.calls = []
        self.raises = raises

    def __call__(self, value):
        self.calls.append(value)
        if self.raises is not None:
            raise self.raises
