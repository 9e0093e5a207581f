"""OpenAI adapter: wraps the OpenAI SDK Responses API.

History items already use the Responses vocabulary, so translation is mostly
role mapping and dropping fields the endpoint rejects.  Reasoning items from
the model are kept in history and sent back on the next turn.
"""

import copy
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
    StandardToolCall,
    StreamChunk,
    StreamChunkType,
    UsageItem,
    toolkit_definitions,
)
from .errors import BadGatewayError
from .retry import is_transient_network_error
from .schema import disallow_additional_properties, to_json_schema

_RETRYABLE_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.InternalServerError,
)

_UNRECOVERABLE_ERRORS = (
    openai.AuthenticationError,
    openai.BadRequestError,
    openai.ConflictError,
    openai.NotFoundError,
    openai.PermissionDeniedError,
    openai.UnprocessableEntityError,
)


def _to_dict(item) -> dict:
    """Plain-dict copy of an SDK output item."""
    if isinstance(item, dict):
        return copy.deepcopy(item)
    if hasattr(item, "model_dump"):
        return item.model_dump(exclude_none=True)
    return {key: value for key, value in vars(item).items() if value is not None}


def _output_items(response) -> list:
    return list(getattr(response, "output", None) or [])


def _item_type(item):
    return item.get("type") if isinstance(item, dict) else getattr(item, "type", None)


class OpenAIAdapter(BaseProviderAdapter):
    """Calls OpenAI via responses.create."""

    name = "openai"
    default_model = config.OPENAI_MODEL
    api_key_env = config.OPENAI_API_KEY_NAME
    supports_streaming = True

    def create_client(self, api_key: str) -> openai.OpenAI:
        # Retries are owned by RetryExecutor
        return openai.OpenAI(
            api_key=api_key,
            base_url=config.OPENAI_BASE_URL or None,
            max_retries=0,
        )

    # ── Request building ──────────────────────────────────────────────────────

    def _convert_item(self, item: dict) -> dict | None:
        item_type = item.get("type", MessageType.MESSAGE)

        if item_type == MessageType.THINKING:
            # Anthropic thinking blocks cannot be replayed here
            return None

        if item_type == MessageType.FUNCTION_CALL_OUTPUT:
            return {
                "call_id": item.get("call_id", ""),
                "output": item.get("output", ""),
                "type": MessageType.FUNCTION_CALL_OUTPUT,
            }

        if item_type == MessageType.FUNCTION_CALL:
            return {
                "arguments": item.get("arguments") or "{}",
                "call_id": item.get("call_id", ""),
                "name": item.get("name", ""),
                "type": MessageType.FUNCTION_CALL,
            }

        converted = dict(item)
        if item_type == MessageType.MESSAGE:
            converted["type"] = MessageType.MESSAGE
            if converted.get("role") == MessageRole.SYSTEM:
                converted["role"] = MessageRole.DEVELOPER
        return converted

    def build_request(self, request: OperateRequest) -> dict:
        items = [self._convert_item(item) for item in request.messages]

        payload = {
            "model": request.model or self.default_model,
            "input": [item for item in items if item is not None],
        }

        if request.user:
            payload["user"] = request.user

        if request.instructions:
            payload["instructions"] = request.instructions

        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                }
                for tool in request.tools
            ]

        if request.format:
            payload["text"] = {"format": request.format}

        if request.provider_options:
            payload.update(request.provider_options)

        if request.temperature is not None:
            payload["temperature"] = request.temperature

        return payload

    def format_tools(self, toolkit, output_schema: dict | None = None) -> list[ProviderToolDefinition]:
        # Structured output goes through text.format, not a tool
        return toolkit_definitions(toolkit)

    def format_output_schema(self, schema: dict) -> dict:
        """Wrap a schema as a strict ``json_schema`` text format.

        Schemas already in response-format shape (``"type": "json_schema"``
        with a nested ``schema``) pass through unchanged.
        """
        if isinstance(schema, dict) and schema.get("type") == "json_schema" and "schema" in schema:
            return schema

        json_schema = disallow_additional_properties(to_json_schema(schema))
        return {
            "name": "response",
            "schema": json_schema,
            "strict": True,
            "type": "json_schema",
        }

    # ── API execution ─────────────────────────────────────────────────────────

    def send_request(self, client: openai.OpenAI, request: dict):
        return client.responses.create(**request)

    def send_stream_request(self, client: openai.OpenAI, request: dict):
        with client.responses.create(**request, stream=True) as events:
            for event in events:
                if event.type == "response.output_text.delta":
                    yield StreamChunk(type=StreamChunkType.TEXT, content=event.delta)
                elif event.type == "response.output_item.done" and _item_type(event.item) == MessageType.FUNCTION_CALL:
                    data = _to_dict(event.item)
                    yield StreamChunk(type=StreamChunkType.TOOL_CALL, tool_call=StandardToolCall(
                        call_id=data.get("call_id", ""),
                        name=data.get("name", ""),
                        arguments=data.get("arguments") or "{}",
                        raw=event.item,
                    ))
                elif event.type == "response.completed":
                    response = event.response
                    model = getattr(response, "model", None) or request.get("model") or self.default_model
                    yield StreamChunk(type=StreamChunkType.DONE, usage=[self.extract_usage(response, model)])
                elif event.type == "error":
                    detail = getattr(event, "message", None)
                    yield StreamChunk(type=StreamChunkType.ERROR, error=BadGatewayError(detail).to_dict())

    # ── Response parsing ──────────────────────────────────────────────────────

    def _message_text(self, response) -> str | None:
        for item in _output_items(response):
            if _item_type(item) != MessageType.MESSAGE:
                continue
            content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
            for part in content or []:
                part_type = part.get("type") if isinstance(part, dict) else getattr(part, "type", None)
                if part_type == MessageType.OUTPUT_TEXT:
                    return part.get("text") if isinstance(part, dict) else part.text
        return None

    def parse_response(self, response, options=None) -> ParsedResponse:
        content = self._message_text(response)
        if options is not None and options.format and isinstance(content, str):
            try:
                content = json.loads(content)
            except ValueError:
                pass

        model = getattr(response, "model", None) or (options.model if options else None) or self.default_model
        return ParsedResponse(
            has_tool_calls=any(_item_type(item) == MessageType.FUNCTION_CALL for item in _output_items(response)),
            content=content,
            stop_reason=getattr(response, "status", None),
            usage=self.extract_usage(response, model),
            raw=response,
        )

    def extract_tool_calls(self, response) -> list[StandardToolCall]:
        calls = []
        for item in _output_items(response):
            if _item_type(item) != MessageType.FUNCTION_CALL:
                continue
            data = _to_dict(item)
            calls.append(StandardToolCall(
                call_id=data.get("call_id", ""),
                name=data.get("name", ""),
                arguments=data.get("arguments") or "{}",
                raw=item,
            ))
        return calls

    def extract_usage(self, response, model: str) -> UsageItem:
        usage = getattr(response, "usage", None)
        if usage is None:
            return UsageItem(provider=self.name, model=model)

        details = getattr(usage, "output_tokens_details", None)
        return UsageItem(
            input=getattr(usage, "input_tokens", 0) or 0,
            output=getattr(usage, "output_tokens", 0) or 0,
            reasoning=getattr(details, "reasoning_tokens", 0) or 0,
            total=getattr(usage, "total_tokens", 0) or 0,
            provider=self.name,
            model=model,
        )

    def response_to_history_items(self, response) -> list[dict]:
        return [_to_dict(item) for item in _output_items(response)]

    # ── Error classification ──────────────────────────────────────────────────

    def classify_error(self, error: BaseException) -> ClassifiedError:
        if isinstance(error, openai.RateLimitError):
            return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)

        if isinstance(error, _RETRYABLE_ERRORS):
            return self._classified(error, ErrorCategory.RETRYABLE)

        if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
            return self._classified(error, ErrorCategory.RETRYABLE)

        if isinstance(error, _UNRECOVERABLE_ERRORS):
            return self._classified(error, ErrorCategory.UNRECOVERABLE)

        if is_transient_network_error(error):
            return self._classified(error, ErrorCategory.RETRYABLE)

        return self._classified(error, ErrorCategory.UNKNOWN)


openai_adapter = OpenAIAdapter()
