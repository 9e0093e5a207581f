"""Anthropic Claude adapter: wraps the Anthropic SDK Messages API."""

import json

import anthropic

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
    parse_arguments,
    parse_data_url,
    structured_output_tool,
    toolkit_definitions,
)
from .retry import is_transient_network_error
from .schema import to_json_schema

_RETRYABLE_ERRORS = (
    anthropic.APIConnectionError,  # includes APITimeoutError
    anthropic.InternalServerError,
)

_UNRECOVERABLE_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.BadRequestError,
    anthropic.NotFoundError,
    anthropic.PermissionDeniedError,
    anthropic.UnprocessableEntityError,
)


def _convert_content(content):
    """Convert generic content items to Anthropic content blocks."""
    if isinstance(content, str):
        return content

    blocks = []
    for item in content or []:
        if isinstance(item, str):
            blocks.append({"type": "text", "text": item})
            continue
        item_type = item.get("type")
        if item_type in (MessageType.INPUT_TEXT, MessageType.OUTPUT_TEXT, "text"):
            blocks.append({"type": "text", "text": item.get("text", "")})
        elif item_type == MessageType.INPUT_IMAGE:
            image_url = item.get("image_url") or ""
            parsed = parse_data_url(image_url)
            if parsed:
                media_type, data = parsed
                source = {"type": "base64", "media_type": media_type, "data": data}
            else:
                source = {"type": "url", "url": image_url}
            blocks.append({"type": "image", "source": source})
        elif item_type == MessageType.INPUT_FILE:
            parsed = parse_data_url(item.get("file_data") or "")
            if parsed:
                media_type, data = parsed
                blocks.append({
                    "type": "document",
                    "source": {"type": "base64", "media_type": media_type, "data": data},
                })
            else:
                blocks.append({"type": "text", "text": f"[File: {item.get('filename') or 'unknown'}]"})
        else:
            blocks.append({"type": "text", "text": json.dumps(item, default=str)})
    return blocks


def _as_blocks(content) -> list:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content)


def _append_message(messages: list, role: str, content) -> None:
    """Append, merging into the previous message when the role repeats."""
    if messages and messages[-1]["role"] == role:
        previous = messages[-1]
        previous["content"] = _as_blocks(previous["content"]) + _as_blocks(content)
        return
    messages.append({"role": role, "content": content})


class AnthropicAdapter(BaseProviderAdapter):
    """Calls Anthropic Claude via messages.create."""

    name = "anthropic"
    default_model = config.ANTHROPIC_MODEL
    api_key_env = config.ANTHROPIC_API_KEY_NAME
    supports_streaming = True

    def create_client(self, api_key: str) -> anthropic.Anthropic:
        # Retries are owned by RetryExecutor
        return anthropic.Anthropic(
            api_key=api_key,
            base_url=config.ANTHROPIC_BASE_URL or None,
            max_retries=0,
        )

    # ── Request building ──────────────────────────────────────────────────────

    def build_request(self, request: OperateRequest) -> dict:
        messages = []
        system_texts = []

        for item in request.messages:
            item_type = item.get("type", MessageType.MESSAGE)
            role = item.get("role")

            if item_type == MessageType.FUNCTION_CALL:
                _append_message(messages, MessageRole.ASSISTANT, [{
                    "type": "tool_use",
                    "id": item.get("call_id", ""),
                    "name": item.get("name", ""),
                    "input": parse_arguments(item.get("arguments")),
                }])
            elif item_type == MessageType.FUNCTION_CALL_OUTPUT:
                # All results for one turn end up in a single user message
                _append_message(messages, MessageRole.USER, [{
                    "type": "tool_result",
                    "tool_use_id": item.get("call_id", ""),
                    "content": item.get("output", ""),
                }])
            elif item_type == MessageType.THINKING:
                _append_message(messages, MessageRole.ASSISTANT, [{
                    "type": "thinking",
                    "thinking": item.get("thinking", ""),
                    "signature": item.get("signature", ""),
                }])
            elif item_type == MessageType.MESSAGE and role == MessageRole.SYSTEM:
                # Anthropic only accepts system as a top-level field
                system_texts.append(content_to_text(item.get("content")))
            elif item_type == MessageType.MESSAGE and item.get("content") is not None:
                role = MessageRole.ASSISTANT if role == MessageRole.ASSISTANT else MessageRole.USER
                _append_message(messages, role, _convert_content(item["content"]))
            # Reasoning items from other vendors are not replayable here

        if request.instructions and messages:
            last = messages[-1]
            if isinstance(last["content"], str):
                last["content"] = last["content"] + "\n\n" + request.instructions
            else:
                last["content"] = last["content"] + [{"type": "text", "text": request.instructions}]

        payload = {
            "model": request.model or self.default_model,
            "messages": messages,
            "max_tokens": config.MAX_TOKENS,
        }

        system = request.system or "\n\n".join(text for text in system_texts if text)
        if system:
            payload["system"] = system

        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": {**tool.parameters, "type": "object"},
                }
                for tool in request.tools
            ]
            has_structured_output = any(tool.name == STRUCTURED_OUTPUT_TOOL_NAME for tool in request.tools)
            payload["tool_choice"] = {"type": "any" if has_structured_output else "auto"}

        if request.user:
            payload["metadata"] = {"user_id": request.user}

        if request.provider_options:
            payload.update(request.provider_options)

        # First-class temperature wins over provider_options
        if request.temperature is not None:
            payload["temperature"] = request.temperature

        return payload

    def format_tools(self, toolkit, output_schema: dict | None = None) -> list[ProviderToolDefinition]:
        tools = toolkit_definitions(toolkit)
        if output_schema:
            tools.append(structured_output_tool(output_schema))
        return tools

    def format_output_schema(self, schema: dict) -> dict:
        return to_json_schema(schema)

    # ── API execution ─────────────────────────────────────────────────────────

    def send_request(self, client: anthropic.Anthropic, request: dict):
        return client.messages.create(**request)

    def send_stream_request(self, client: anthropic.Anthropic, request: dict):
        model = request.get("model") or self.default_model
        input_tokens = output_tokens = thinking_tokens = 0
        tool_call = None

        with client.messages.create(**request, stream=True) as events:
            for event in events:
                if event.type == "message_start":
                    input_tokens = getattr(event.message.usage, "input_tokens", 0) or 0
                    model = getattr(event.message, "model", None) or model
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_call = {"id": block.id, "name": block.name, "arguments": ""}
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield StreamChunk(type=StreamChunkType.TEXT, content=delta.text)
                    elif delta.type == "input_json_delta" and tool_call is not None:
                        tool_call["arguments"] += delta.partial_json
                elif event.type == "content_block_stop":
                    # Tool input arrives as JSON fragments; emit once the block closes
                    if tool_call is not None:
                        yield StreamChunk(
                            type=StreamChunkType.TOOL_CALL,
                            tool_call=StandardToolCall(
                                call_id=tool_call["id"],
                                name=tool_call["name"],
                                arguments=tool_call["arguments"] or "{}",
                            ),
                        )
                        tool_call = None
                elif event.type == "message_delta":
                    output_tokens = getattr(event.usage, "output_tokens", 0) or output_tokens
                    thinking_tokens = getattr(event.usage, "thinking_tokens", 0) or thinking_tokens
                elif event.type == "message_stop":
                    yield StreamChunk(type=StreamChunkType.DONE, usage=[UsageItem(
                        input=input_tokens,
                        output=output_tokens,
                        reasoning=thinking_tokens,
                        total=input_tokens + output_tokens,
                        provider=self.name,
                        model=model,
                    )])

    # ── Response parsing ──────────────────────────────────────────────────────

    def parse_response(self, response, options=None) -> ParsedResponse:
        if self.has_structured_output(response):
            content = self.extract_structured_output(response)
        else:
            texts = [block.text for block in response.content if block.type == "text"]
            content = "\n".join(texts) if texts else None

        has_tool_calls = response.stop_reason == "tool_use" or any(
            block.type == "tool_use" for block in response.content
        )
        return ParsedResponse(
            has_tool_calls=has_tool_calls,
            content=content,
            stop_reason=response.stop_reason,
            usage=self.extract_usage(response, response.model),
            raw=response,
        )

    def extract_tool_calls(self, response) -> list[StandardToolCall]:
        return [
            StandardToolCall(
                call_id=block.id,
                name=block.name,
                arguments=json.dumps(block.input),
                raw=block,
            )
            for block in response.content
            if block.type == "tool_use"
        ]

    def extract_usage(self, response, model: str) -> UsageItem:
        usage = response.usage
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        return UsageItem(
            input=input_tokens,
            output=output_tokens,
            reasoning=getattr(usage, "thinking_tokens", 0) or 0,
            total=input_tokens + output_tokens,
            provider=self.name,
            model=model,
        )

    def response_to_history_items(self, response) -> list[dict]:
        items = []
        for block in response.content:
            if block.type == "thinking":
                items.append({
                    "type": MessageType.THINKING,
                    "thinking": block.thinking,
                    "signature": getattr(block, "signature", ""),
                })

        text = "\n".join(block.text for block in response.content if block.type == "text")
        if text:
            items.append({"content": text, "role": MessageRole.ASSISTANT, "type": MessageType.MESSAGE})

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
        if isinstance(error, anthropic.RateLimitError):
            return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)

        if isinstance(error, _RETRYABLE_ERRORS):
            return self._classified(error, ErrorCategory.RETRYABLE)

        if isinstance(error, anthropic.APIStatusError) and error.status_code >= 500:
            # 529 overloaded and other server-side failures
            return self._classified(error, ErrorCategory.RETRYABLE)

        if isinstance(error, _UNRECOVERABLE_ERRORS):
            return self._classified(error, ErrorCategory.UNRECOVERABLE)

        if is_transient_network_error(error):
            return self._classified(error, ErrorCategory.RETRYABLE)

        return self._classified(error, ErrorCategory.UNKNOWN)

    # ── Structured output ─────────────────────────────────────────────────────

    def has_structured_output(self, response) -> bool:
        if not response.content:
            return False
        last = response.content[-1]
        return last.type == "tool_use" and last.name == STRUCTURED_OUTPUT_TOOL_NAME

    def extract_structured_output(self, response) -> dict | None:
        if self.has_structured_output(response):
            return response.content[-1].input
        return None


anthropic_adapter = AnthropicAdapter()
