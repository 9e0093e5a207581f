"""The stream loop: the operate loop, yielding chunks as the model produces them.

Text and tool-call chunks are passed through as they arrive.  Tool calls are
collected per turn and, once the turn's stream ends, run exactly as the
operate loop runs them; each result is yielded as a tool-result chunk (or an
error chunk when the tool failed).  A final done chunk carries the usage of
every turn.
"""

from typing import Iterator

from observability import get_tracer
from utils.logger import get_logger
from .base import (
    MessageRole,
    OperateOptions,
    STRUCTURED_OUTPUT_TOOL_NAME,
    StreamChunk,
    StreamChunkType,
    message_item,
)
from .errors import BadGatewayError, StreamInterruptedError, TooManyRequestsError
from .hooks import AfterModelResponseContext, BeforeModelRequestContext
from .operate import BAD_FUNCTION_CALL, BaseLoop, max_turns_from_options
from .retry import RetryContext

logger = get_logger(__name__)
tracer = get_tracer()


def error_chunk(status: int, title: str, detail: str) -> StreamChunk:
    return StreamChunk(type=StreamChunkType.ERROR, error={"status": status, "title": title, "detail": detail})


class StreamLoop(BaseLoop):
    """Drives one streaming adapter and client through the multi-turn loop."""

    def execute(self, input, options: OperateOptions | None = None) -> Iterator[StreamChunk]:
        """Stream the loop to completion.

        Args:
            input: Prompt string, single message or history list
            options: OperateOptions for this call

        Yields:
            StreamChunk items; the last one is always a done chunk unless an
            exception is raised

        Raises:
            BadGatewayError: The adapter cannot stream, the model call failed
                for good, or a tool failed with ``escalate_tool_errors`` set
        """
        if not self.adapter.supports_streaming:
            raise BadGatewayError(f"Provider {self.adapter.name} does not support streaming")

        options = options or OperateOptions()
        processed = self.input_processor.process(input, options)
        model = options.model or self.adapter.default_model
        history = list(processed.history)
        usage = []
        max_turns = max_turns_from_options(options)

        toolkit, output_format, tools = self._prepare_tools(options)
        executor = self._retry_executor()

        turn = 0
        while turn < max_turns:
            turn += 1
            logger.trace(f"[stream] Turn {turn}/{max_turns}")
            request = self._build_request(model, history, processed, tools, output_format, options)

            span = tracer.start_span("llm.stream.turn")
            span.set_attribute("llm.provider", self.adapter.name)
            span.set_attribute("llm.model", model)
            span.set_attribute("llm.operate.turn", turn)
            try:
                tool_calls = yield from self._stream_turn(request, history, usage, executor, options)
            finally:
                span.end()

            if tool_calls is None:
                break

            structured = any(call.name == STRUCTURED_OUTPUT_TOOL_NAME for call in tool_calls)
            if structured or not tool_calls or toolkit is None or max_turns <= 1:
                break

            history.extend(self.adapter.tool_call_history_item(call) for call in tool_calls)
            results = self._call_tools(tool_calls, toolkit, options)
            for tool_call, result in zip(tool_calls, results):
                history.append(self.adapter.format_tool_result(tool_call, result))
                if result.success:
                    yield StreamChunk(
                        type=StreamChunkType.TOOL_RESULT,
                        tool_result={"id": tool_call.call_id, "name": tool_call.name, "result": result.result},
                    )
                else:
                    yield error_chunk(BadGatewayError.status, BAD_FUNCTION_CALL, result.error)

            if turn >= max_turns:
                detail = f"Model requested function call but exceeded {max_turns} turns"
                logger.warn(detail)
                yield error_chunk(TooManyRequestsError.status, TooManyRequestsError.title, detail)
                break

        yield StreamChunk(type=StreamChunkType.DONE, usage=list(usage))

    def _stream_turn(self, request, history, usage, executor, options):
        """Stream one model response.

        Returns the turn's tool calls, or None when the stream broke after
        chunks had already been yielded.
        """
        hooks = options.hooks
        provider_request = self.adapter.build_request(request)
        snapshot = list(history)

        self.hook_runner.run_before_model_request(
            hooks,
            BeforeModelRequestContext(input=snapshot, options=options, provider_request=provider_request),
        )

        texts = []
        tool_calls = []
        chunks = executor.stream(
            lambda signal: self.adapter.execute_stream_request(self.client, provider_request, signal),
            RetryContext(input=snapshot, options=options, provider_request=provider_request),
            hooks,
        )
        try:
            for chunk in chunks:
                if chunk.type == StreamChunkType.TEXT:
                    texts.append(chunk.content or "")
                    yield chunk
                elif chunk.type == StreamChunkType.TOOL_CALL:
                    tool_calls.append(chunk.tool_call)
                    yield chunk
                elif chunk.type == StreamChunkType.DONE:
                    # Merged into the loop's own done chunk
                    usage.extend(chunk.usage or [])
                elif chunk.type == StreamChunkType.ERROR:
                    yield chunk
        except StreamInterruptedError as error:
            yield error_chunk(error.status, error.title, error.detail)
            return None

        content = "".join(texts)
        self.hook_runner.run_after_model_response(
            hooks,
            AfterModelResponseContext(
                content=content,
                input=snapshot,
                options=options,
                provider_request=provider_request,
                provider_response=None,
                usage=list(usage),
            ),
        )

        if content:
            history.append(message_item(MessageRole.ASSISTANT, content))
        return tool_calls
