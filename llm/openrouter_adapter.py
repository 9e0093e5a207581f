"""OpenRouter adapter.

OpenRouter speaks the OpenAI Chat Completions API, so this adapter drives the
OpenAI SDK pointed at OPENROUTER_BASE_URL.  Structured output goes through a
``structured_output`` tool because not every routed model supports
``response_format``.
"""

import json

import openai

import config
from .base import (
    BaseProviderAdapter,
    ClassifiedError,
    ErrorCategory,
    MessageRole,
    MessageType,
    OperateRequest,
    ParsedResponse,
    ProviderToolDefinition,
    STRUCTURED_OUTPUT_TOOL_NAME,
    StandardToolCall,
    StreamChunk,
    StreamChunkType,
    UsageItem,
    content_to_text,
    toolkit_definitions,
)
from .retry import is_transient_network_error
from .schema import parse_json_from_markdown, to_json_schema

RATE_LIMIT_STATUS_CODE = 429
RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 524, 529}

STRUCTURED_OUTPUT_DESCRIPTION = (
    "REQUIRED: You MUST call this tool to provide your final response. "
    "After gathering all necessary information (including results from other tools), "
    "call this tool with the structured data to complete the request."
)


def _convert_tools(tools: list[ProviderToolDefinition]) -> list:
    """Convert tool definitions to OpenAI function format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def _convert_content(content):
    if isinstance(content, str):
        return content

    parts = []
    for item in content or []:
        if isinstance(item, str):
            parts.append({"type": "text", "text": item})
            continue
        item_type = item.get("type")
        if item_type in (MessageType.INPUT_TEXT, MessageType.OUTPUT_TEXT, "text"):
            parts.append({"type": "text", "text": item.get("text", "")})
        elif item_type == MessageType.INPUT_IMAGE:
            parts.append({"type": "image_url", "image_url": {"url": item.get("image_url", "")}})
        elif item_type == MessageType.INPUT_FILE:
            parts.append({
                "type": "file",
                "file": {"filename": item.get("filename") or "file", "file_data": item.get("file_data", "")},
            })
        else:
            parts.append({"type": "text", "text": json.dumps(item, default=str)})
    return parts


def _first_choice(response):
    choices = getattr(response, "choices", None) or []
    return choices[0] if choices else None


def _tool_calls(response) -> list:
    choice = _first_choice(response)
    message = getattr(choice, "message", None)
    return list(getattr(message, "tool_calls", None) or [])


class OpenRouterAdapter(BaseProviderAdapter):
    """Calls OpenRouter via chat.completions.create."""

    name = "openrouter"
    default_model = config.OPENROUTER_MODEL
    api_key_env = config.OPENROUTER_API_KEY_NAME
    supports_streaming = True

    def create_client(self, api_key: str) -> openai.OpenAI:
        # Retries are owned by RetryExecutor
        return openai.OpenAI(api_key=api_key, base_url=config.OPENROUTER_BASE_URL, max_retries=0)

    # ── Request building ──────────────────────────────────────────────────────

    def _convert_messages(self, history: list, system: str | None) -> list:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})

        for item in history:
            item_type = item.get("type", MessageType.MESSAGE)
            role = item.get("role")

            if item_type == MessageType.FUNCTION_CALL:
                tool_call = {
                    "id": item.get("call_id", ""),
                    "type": "function",
                    "function": {"name": item.get("name", ""), "arguments": item.get("arguments") or "{}"},
                }
                previous = messages[-1] if messages else None
                if previous and previous["role"] == "assistant":
                    previous.setdefault("tool_calls", []).append(tool_call)
                else:
                    messages.append({"role": "assistant", "content": None, "tool_calls": [tool_call]})
            elif item_type == MessageType.FUNCTION_CALL_OUTPUT:
                messages.append({
                    "role": "tool",
                    "tool_call_id": item.get("call_id", ""),
                    "content": item.get("output", ""),
                })
            elif item_type != MessageType.MESSAGE:
                # Reasoning and thinking items are not replayable here
                continue
            elif role in (MessageRole.SYSTEM, MessageRole.DEVELOPER):
                if not system:
                    messages.append({"role": "system", "content": content_to_text(item.get("content"))})
            elif role == MessageRole.ASSISTANT:
                messages.append({"role": "assistant", "content": content_to_text(item.get("content")) or None})
            elif item.get("content") is not None:
                messages.append({"role": "user", "content": _convert_content(item["content"])})

        return messages

    def build_request(self, request: OperateRequest) -> dict:
        messages = self._convert_messages(request.messages, request.system)

        if request.instructions and messages:
            last = messages[-1]
            if isinstance(last.get("content"), str):
                last["content"] = last["content"] + "\n\n" + request.instructions

        payload = {
            "model": request.model or self.default_model,
            "messages": messages,
        }

        if request.user:
            payload["user"] = request.user

        if request.tools:
            payload["tools"] = _convert_tools(request.tools)
            has_structured_output = any(tool.name == STRUCTURED_OUTPUT_TOOL_NAME for tool in request.tools)
            payload["tool_choice"] = "required" if has_structured_output else "auto"

        if request.provider_options:
            payload.update(request.provider_options)

        if request.temperature is not None:
            payload["temperature"] = request.temperature

        return payload

    def format_tools(self, toolkit, output_schema: dict | None = None) -> list[ProviderToolDefinition]:
        tools = toolkit_definitions(toolkit)
        if output_schema:
            tools.append(ProviderToolDefinition(
                name=STRUCTURED_OUTPUT_TOOL_NAME,
                description=STRUCTURED_OUTPUT_DESCRIPTION,
                parameters=output_schema,
            ))
        return tools

    def format_output_schema(self, schema: dict) -> dict:
        return to_json_schema(schema)

    # ── API execution ─────────────────────────────────────────────────────────

    def send_request(self, client: openai.OpenAI, request: dict):
        return client.chat.completions.create(**request)

    def send_stream_request(self, client: openai.OpenAI, request: dict):
        model = request.get("model") or self.default_model
        calls = {}
        last = None

        stream = client.chat.completions.create(**request, stream=True, stream_options={"include_usage": True})
        with stream as chunks:
            for chunk in chunks:
                model = getattr(chunk, "model", None) or model
                if getattr(chunk, "usage", None) is not None:
                    last = chunk
                choice = _first_choice(chunk)
                delta = getattr(choice, "delta", None)
                if delta is None:
                    continue
                if delta.content:
                    yield StreamChunk(type=StreamChunkType.TEXT, content=delta.content)
                # Tool calls arrive in fragments keyed by index
                for fragment in getattr(delta, "tool_calls", None) or []:
                    call = calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    if fragment.id:
                        call["id"] = fragment.id
                    function = getattr(fragment, "function", None)
                    if function is not None:
                        call["name"] = function.name or call["name"]
                        call["arguments"] += function.arguments or ""

        for index in sorted(calls):
            call = calls[index]
            yield StreamChunk(type=StreamChunkType.TOOL_CALL, tool_call=StandardToolCall(
                call_id=call["id"],
                name=call["name"],
                arguments=call["arguments"] or "{}",
            ))
        yield StreamChunk(type=StreamChunkType.DONE, usage=[self.extract_usage(last, model)])

    # ── Response parsing ──────────────────────────────────────────────────────

    def parse_response(self, response, options=None) -> ParsedResponse:
        choice = _first_choice(response)
        if self.has_structured_output(response):
            content = self.extract_structured_output(response)
        else:
            content = getattr(getattr(choice, "message", None), "content", None)
            if options is not None and options.format and isinstance(content, str):
                # Model answered in text despite the tool; try to salvage JSON
                parsed = parse_json_from_markdown(content)
                if parsed is not None:
                    content = parsed

        model = getattr(response, "model", None) or self.default_model
        return ParsedResponse(
            has_tool_calls=bool(_tool_calls(response)),
            content=content,
            stop_reason=getattr(choice, "finish_reason", None),
            usage=self.extract_usage(response, model),
            raw=response,
        )

    def extract_tool_calls(self, response) -> list[StandardToolCall]:
        return [
            StandardToolCall(
                call_id=tool_call.id,
                name=tool_call.function.name,
                arguments=tool_call.function.arguments or "{}",
                raw=tool_call,
            )
            for tool_call in _tool_calls(response)
        ]

    def extract_usage(self, response, model: str) -> UsageItem:
        usage = getattr(response, "usage", None)
        if usage is None:
            return UsageItem(provider=self.name, model=model)

        details = getattr(usage, "completion_tokens_details", None)
        return UsageItem(
            input=getattr(usage, "prompt_tokens", 0) or 0,
            output=getattr(usage, "completion_tokens", 0) or 0,
            reasoning=getattr(details, "reasoning_tokens", 0) or 0,
            total=getattr(usage, "total_tokens", 0) or 0,
            provider=self.name,
            model=model,
        )

    def response_to_history_items(self, response) -> list[dict]:
        choice = _first_choice(response)
        message = getattr(choice, "message", None)
        if message is None:
            return []

        items = []
        if message.content:
            item = {"content": message.content, "role": MessageRole.ASSISTANT, "type": MessageType.MESSAGE}
            reasoning = getattr(message, "reasoning", None)
            if reasoning:
                item["reasoning"] = reasoning
            items.append(item)

        for tool_call in self.extract_tool_calls(response):
            items.append({
                "arguments": tool_call.arguments,
                "call_id": tool_call.call_id,
                "name": tool_call.name,
                "type": MessageType.FUNCTION_CALL,
            })
        return items

    # ── Error classification ──────────────────────────────────────────────────

    def classify_error(self, error: BaseException) -> ClassifiedError:
        status_code = getattr(error, "status_code", None)
        if not isinstance(status_code, int):
            status_code = getattr(error, "status", None)

        if isinstance(status_code, int):
            if status_code == RATE_LIMIT_STATUS_CODE:
                return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)
            if status_code in RETRYABLE_STATUS_CODES:
                return self._classified(error, ErrorCategory.RETRYABLE)
            if 400 <= status_code < 500:
                return self._classified(error, ErrorCategory.UNRECOVERABLE)

        message = str(error).lower()
        if "rate limit" in message or "too many requests" in message:
            return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)

        if isinstance(error, openai.APIConnectionError) or is_transient_network_error(error):
            return self._classified(error, ErrorCategory.RETRYABLE)

        return self._classified(error, ErrorCategory.UNKNOWN)

    # ── Structured output ─────────────────────────────────────────────────────

    def has_structured_output(self, response) -> bool:
        tool_calls = _tool_calls(response)
        return bool(tool_calls) and tool_calls[-1].function.name == STRUCTURED_OUTPUT_TOOL_NAME

    def extract_structured_output(self, response) -> dict | None:
        if not self.has_structured_output(response):
            return None
        try:
            return json.loads(_tool_calls(response)[-1].function.arguments)
        except ValueError:
            return None


openrouter_adapter = OpenRouterAdapter()
