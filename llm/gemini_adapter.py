"""Google Gemini adapter using the google.genai SDK."""

import base64
import json

from google import genai
from google.genai import errors as genai_errors

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

RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}
UNRECOVERABLE_STATUS_CODES = {400, 401, 403, 404, 409, 422}

STRUCTURED_OUTPUT_INSTRUCTION = (
    "IMPORTANT: Before providing your final response, you MUST use the structured_output tool "
    "to output your answer in the required JSON format."
)


def _text_parts(content) -> list[dict]:
    if isinstance(content, str):
        return [{"text": content}]

    parts = []
    for item in content or []:
        if isinstance(item, str):
            parts.append({"text": item})
            continue
        item_type = item.get("type")
        if item_type in (MessageType.INPUT_TEXT, MessageType.OUTPUT_TEXT, "text"):
            parts.append({"text": item.get("text", "")})
        elif item_type in (MessageType.INPUT_IMAGE, MessageType.INPUT_FILE):
            url = item.get("image_url") or item.get("file_data") or ""
            parsed = parse_data_url(url)
            if parsed:
                mime_type, data = parsed
                parts.append({"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}})
            elif url:
                parts.append({"file_data": {"file_uri": url}})
        else:
            parts.append({"text": json.dumps(item, default=str)})
    return parts


def _append_content(contents: list, role: str, parts: list) -> None:
    """Append, merging into the previous content when the role repeats."""
    if contents and contents[-1]["role"] == role:
        contents[-1]["parts"].extend(parts)
        return
    contents.append({"role": role, "parts": list(parts)})


def _candidate_parts(response) -> list:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


def _response_payload(output: str) -> dict:
    try:
        decoded = json.loads(output or "{}")
    except ValueError:
        return {"result": output}
    return decoded if isinstance(decoded, dict) else {"result": decoded}


class GeminiAdapter(BaseProviderAdapter):
    """Calls Gemini via models.generate_content."""

    name = "gemini"
    default_model = config.GEMINI_MODEL
    api_key_env = config.GEMINI_API_KEY_NAME
    supports_streaming = True

    def create_client(self, api_key: str) -> genai.Client:
        return genai.Client(api_key=api_key)

    # ── Request building ──────────────────────────────────────────────────────

    def _convert_messages(self, messages: list) -> tuple[list, list]:
        contents = []
        system_texts = []

        for item in messages:
            item_type = item.get("type", MessageType.MESSAGE)
            role = item.get("role")

            if item_type == MessageType.FUNCTION_CALL:
                function_call = {
                    "name": item.get("name", ""),
                    "args": parse_arguments(item.get("arguments")),
                }
                if item.get("call_id"):
                    function_call["id"] = item["call_id"]
                part = {"function_call": function_call}
                if item.get("thought_signature"):
                    part["thought_signature"] = base64.b64decode(item["thought_signature"])
                _append_content(contents, "model", [part])
            elif item_type == MessageType.FUNCTION_CALL_OUTPUT:
                function_response = {
                    "name": item.get("name") or "function",
                    "response": _response_payload(item.get("output")),
                }
                if item.get("call_id"):
                    function_response["id"] = item["call_id"]
                _append_content(contents, "user", [{"function_response": function_response}])
            elif item_type == MessageType.MESSAGE and role in (MessageRole.SYSTEM, MessageRole.DEVELOPER):
                system_texts.append(content_to_text(item.get("content")))
            elif item_type == MessageType.MESSAGE and item.get("content") is not None:
                gemini_role = "model" if role == MessageRole.ASSISTANT else "user"
                _append_content(contents, gemini_role, _text_parts(item["content"]))
            # Reasoning and thinking items belong to other vendors

        return contents, system_texts

    def build_request(self, request: OperateRequest) -> dict:
        contents, system_texts = self._convert_messages(request.messages)
        generation_config = {}

        system = request.system or "\n\n".join(text for text in system_texts if text)

        if request.instructions:
            if contents and contents[-1]["role"] == "user":
                contents[-1]["parts"].append({"text": request.instructions})
            else:
                contents.append({"role": "user", "parts": [{"text": request.instructions}]})

        if request.tools:
            generation_config["tools"] = [{
                "function_declarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters_json_schema": tool.parameters,
                    }
                    for tool in request.tools
                ],
            }]

        if request.format:
            if request.tools:
                # Tools and a response schema cannot be combined; steer to the tool instead
                system = f"{system}\n\n{STRUCTURED_OUTPUT_INSTRUCTION}" if system else STRUCTURED_OUTPUT_INSTRUCTION
            else:
                generation_config["response_mime_type"] = "application/json"
                generation_config["response_json_schema"] = request.format

        if system:
            generation_config["system_instruction"] = system

        if request.provider_options:
            generation_config.update(request.provider_options)

        if request.temperature is not None:
            generation_config["temperature"] = request.temperature

        return {
            "model": request.model or self.default_model,
            "contents": contents,
            "config": generation_config,
        }

    def format_tools(self, toolkit, output_schema: dict | None = None) -> list[ProviderToolDefinition]:
        tools = toolkit_definitions(toolkit)
        if output_schema and tools:
            tools.append(structured_output_tool(output_schema))
        return tools

    def format_output_schema(self, schema: dict) -> dict:
        return to_json_schema(schema)

    # ── API execution ─────────────────────────────────────────────────────────

    def send_request(self, client: genai.Client, request: dict):
        return client.models.generate_content(
            model=request["model"],
            contents=request["contents"],
            config=request.get("config") or None,
        )

    def send_stream_request(self, client: genai.Client, request: dict):
        last = None
        index = 0
        chunks = client.models.generate_content_stream(
            model=request["model"],
            contents=request["contents"],
            config=request.get("config") or None,
        )
        for response in chunks:
            for part in _candidate_parts(response):
                if getattr(part, "function_call", None):
                    # Calls are numbered across the whole stream for fallback ids
                    yield StreamChunk(type=StreamChunkType.TOOL_CALL, tool_call=self._tool_call(response, part, index))
                    index += 1
                elif getattr(part, "text", None) and not getattr(part, "thought", False):
                    yield StreamChunk(type=StreamChunkType.TEXT, content=part.text)
            if getattr(response, "usage_metadata", None) is not None:
                last = response

        model = getattr(last, "model_version", None) or request["model"]
        yield StreamChunk(type=StreamChunkType.DONE, usage=[self.extract_usage(last, model)])

    # ── Response parsing ──────────────────────────────────────────────────────

    def _text(self, response) -> str | None:
        texts = [
            part.text for part in _candidate_parts(response)
            if getattr(part, "text", None) and not getattr(part, "thought", False)
        ]
        return "".join(texts) if texts else None

    def parse_response(self, response, options=None) -> ParsedResponse:
        if self.has_structured_output(response):
            content = self.extract_structured_output(response)
        else:
            content = self._text(response)
            if options is not None and options.format and isinstance(content, str):
                try:
                    content = json.loads(content)
                except ValueError:
                    pass

        candidates = getattr(response, "candidates", None) or []
        finish_reason = getattr(candidates[0], "finish_reason", None) if candidates else None
        model = getattr(response, "model_version", None) or (options.model if options else None) or self.default_model

        return ParsedResponse(
            has_tool_calls=any(getattr(part, "function_call", None) for part in _candidate_parts(response)),
            content=content,
            stop_reason=str(finish_reason) if finish_reason is not None else None,
            usage=self.extract_usage(response, model),
            raw=response,
        )

    def extract_tool_calls(self, response) -> list[StandardToolCall]:
        return [
            self._tool_call(response, part, index)
            for index, part in enumerate(_candidate_parts(response))
            if getattr(part, "function_call", None)
        ]

    def _tool_call(self, response, part, index: int) -> StandardToolCall:
        function_call = part.function_call
        return StandardToolCall(
            call_id=getattr(function_call, "id", None) or self._fallback_call_id(response, index),
            name=function_call.name or "",
            arguments=json.dumps(dict(function_call.args or {}), default=str),
            raw=part,
        )

    @staticmethod
    def _fallback_call_id(response, index: int) -> str:
        # Stable per response so history and tool results agree
        response_id = getattr(response, "response_id", None) or format(id(response), "x")
        return f"call_{response_id}_{index}"

    def extract_usage(self, response, model: str) -> UsageItem:
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return UsageItem(provider=self.name, model=model)
        return UsageItem(
            input=getattr(usage, "prompt_token_count", 0) or 0,
            output=getattr(usage, "candidates_token_count", 0) or 0,
            reasoning=getattr(usage, "thoughts_token_count", 0) or 0,
            total=getattr(usage, "total_token_count", 0) or 0,
            provider=self.name,
            model=model,
        )

    def response_to_history_items(self, response) -> list[dict]:
        items = []
        text = self._text(response)
        if text:
            items.append({"content": text, "role": MessageRole.ASSISTANT, "type": MessageType.MESSAGE})

        for tool_call in self.extract_tool_calls(response):
            items.append(self.tool_call_history_item(tool_call))
        return items

    def tool_call_history_item(self, tool_call: StandardToolCall) -> dict:
        item = super().tool_call_history_item(tool_call)
        signature = getattr(tool_call.raw, "thought_signature", None)
        if signature:
            item["thought_signature"] = base64.b64encode(signature).decode("ascii")
        return item

    # ── Error classification ──────────────────────────────────────────────────

    def classify_error(self, error: BaseException) -> ClassifiedError:
        status_code = getattr(error, "code", None) if isinstance(error, genai_errors.APIError) else None

        if status_code == 429:
            return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)

        if status_code in RETRYABLE_STATUS_CODES:
            return self._classified(error, ErrorCategory.RETRYABLE)

        if status_code in UNRECOVERABLE_STATUS_CODES:
            return self._classified(error, ErrorCategory.UNRECOVERABLE)

        message = str(error).lower()
        if "rate limit" in message or "quota exceeded" in message:
            return self._classified(error, ErrorCategory.RATE_LIMIT, config.RATE_LIMIT_DELAY)

        if is_transient_network_error(error) or "timeout" in message or "connection" in message:
            return self._classified(error, ErrorCategory.RETRYABLE)

        return self._classified(error, ErrorCategory.UNKNOWN)

    # ── Structured output ─────────────────────────────────────────────────────

    def _structured_call(self, response):
        parts = _candidate_parts(response)
        if not parts:
            return None
        function_call = getattr(parts[-1], "function_call", None)
        if function_call and function_call.name == STRUCTURED_OUTPUT_TOOL_NAME:
            return function_call
        return None

    def has_structured_output(self, response) -> bool:
        return self._structured_call(response) is not None

    def extract_structured_output(self, response) -> dict | None:
        function_call = self._structured_call(response)
        if function_call is None:
            return None
        return dict(function_call.args or {})


gemini_adapter = GeminiAdapter()
