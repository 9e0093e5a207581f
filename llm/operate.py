"""The operate loop: multi-turn model requests with tool calling.

Each turn rebuilds the vendor request from the generic history, sends it
through the RetryExecutor, and either finishes (text or structured output) or
runs the requested tools and loops.  The loop is bounded by ``max_turns``;
running out of turns while the model still wants tools is an error.
"""

import json
from concurrent.futures import ThreadPoolExecutor

import config
from observability import get_tracer
from utils.logger import get_logger
from .base import (
    BaseProviderAdapter,
    MessageRole,
    MessageType,
    OperateOptions,
    OperateRequest,
    StandardToolCall,
    StandardToolResult,
    message_item,
)
from .errors import BadGatewayError, TooManyRequestsError
from .hooks import (
    AfterModelResponseContext,
    AfterToolContext,
    BeforeModelRequestContext,
    BeforeToolContext,
    HookRunner,
    ToolErrorContext,
    hook_runner as default_hook_runner,
)
from .input import InputProcessor, input_processor as default_input_processor
from .response import OperateResponse, ResponseBuilder
from .retry import AdapterErrorClassifier, RetryContext, RetryExecutor, RetryPolicy

logger = get_logger(__name__)
tracer = get_tracer()

BAD_FUNCTION_CALL = "Bad Function Call"


def max_turns_from_options(options: OperateOptions | None) -> int:
    """Resolve the ``turns`` option to a turn limit.

    None or True gives the default; a positive int is capped at the absolute
    limit; False, zero or a negative number gives exactly one turn.
    """
    turns = options.turns if options is not None else None
    if turns is None or turns is True:
        return min(config.MAX_TURNS_DEFAULT, config.MAX_TURNS_ABSOLUTE_LIMIT)
    if turns is False:
        return 1
    if isinstance(turns, int) and turns > 0:
        return min(turns, config.MAX_TURNS_ABSOLUTE_LIMIT)
    return 1


def _resolve_toolkit(options: OperateOptions):
    configured = options.tools
    if not configured:
        return None
    if isinstance(configured, (list, tuple)):
        from tools import Toolkit
        return Toolkit(list(configured), explain=options.explain)
    return configured


def _without_function_calls(items: list[dict]) -> list[dict]:
    return [item for item in items if item.get("type") != MessageType.FUNCTION_CALL]


class BaseLoop:
    """Request setup and tool execution shared by OperateLoop and StreamLoop."""

    def __init__(
        self,
        adapter: BaseProviderAdapter,
        client,
        hook_runner: HookRunner | None = None,
        input_processor: InputProcessor | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep=None,
    ):
        self.adapter = adapter
        self.client = client
        self.hook_runner = hook_runner or default_hook_runner
        self.input_processor = input_processor or default_input_processor
        self.retry_policy = retry_policy
        self.sleep = sleep

    def _prepare_tools(self, options: OperateOptions):
        """Return ``(toolkit, output_format, tools)`` for this call."""
        toolkit = _resolve_toolkit(options)
        output_format = self.adapter.format_output_schema(options.format) if options.format else None
        tools = None
        if toolkit is not None or output_format is not None:
            tools = self.adapter.format_tools(toolkit, output_format) or None
        return toolkit, output_format, tools

    def _retry_executor(self) -> RetryExecutor:
        return RetryExecutor(
            AdapterErrorClassifier(self.adapter),
            hook_runner=self.hook_runner,
            policy=self.retry_policy,
            sleep=self.sleep,
        )

    @staticmethod
    def _build_request(model, history, processed, tools, output_format, options) -> OperateRequest:
        return OperateRequest(
            model=model,
            messages=list(history),
            system=processed.system,
            instructions=processed.instructions,
            tools=tools,
            format=output_format,
            provider_options=options.provider_options,
            user=options.user,
            temperature=options.temperature,
        )

    # ── Tools ─────────────────────────────────────────────────────────────────

    def _call_tools(self, tool_calls: list[StandardToolCall], toolkit, options) -> list[StandardToolResult]:
        """Run a turn's tool calls; results come back in call order."""
        if len(tool_calls) == 1:
            return [self._call_tool(tool_calls[0], toolkit, options)]

        with ThreadPoolExecutor(max_workers=len(tool_calls)) as pool:
            return list(pool.map(lambda call: self._call_tool(call, toolkit, options), tool_calls))

    def _call_tool(self, tool_call: StandardToolCall, toolkit, options) -> StandardToolResult:
        hooks = options.hooks
        self.hook_runner.run_before_tool(
            hooks, BeforeToolContext(args=tool_call.arguments, tool_name=tool_call.name)
        )
        logger.trace(f"[operate] Calling tool - {tool_call.name}")

        try:
            result = toolkit.call(tool_call.name, tool_call.arguments)
        except Exception as error:
            self.hook_runner.run_on_tool_error(
                hooks, ToolErrorContext(args=tool_call.arguments, error=error, tool_name=tool_call.name)
            )
            detail = f"Error executing function call {tool_call.name}.\n{error}"
            logger.error(f"Error executing function call {tool_call.name}")
            logger.var(error=error)

            if options.escalate_tool_errors:
                raise BadGatewayError(detail) from error
            return StandardToolResult(
                call_id=tool_call.call_id,
                output=json.dumps({"error": detail}),
                success=False,
                error=detail,
            )

        self.hook_runner.run_after_tool(
            hooks, AfterToolContext(args=tool_call.arguments, result=result, tool_name=tool_call.name)
        )
        return StandardToolResult(
            call_id=tool_call.call_id,
            output=json.dumps(result, default=str),
            result=result,
        )


class OperateLoop(BaseLoop):
    """Drives one adapter and client through the multi-turn operate loop."""

    def execute(self, input, options: OperateOptions | None = None) -> OperateResponse:
        """Run the loop to completion.

        Args:
            input: Prompt string, single message or history list
            options: OperateOptions for this call

        Returns:
            OperateResponse with the final content, full history and usage

        Raises:
            BadGatewayError: The model call failed for good, or a tool failed
                with ``escalate_tool_errors`` set
        """
        options = options or OperateOptions()
        processed = self.input_processor.process(input, options)
        model = options.model or self.adapter.default_model

        builder = ResponseBuilder(model=model, provider=self.adapter.name)
        builder.set_history(processed.history)
        builder.state.max_turns = max_turns_from_options(options)

        toolkit, output_format, tools = self._prepare_tools(options)
        executor = self._retry_executor()

        while builder.state.current_turn < builder.state.max_turns:
            builder.state.current_turn += 1
            request = self._build_request(model, builder.history, processed, tools, output_format, options)
            with tracer.start_as_current_span("llm.operate.turn") as span:
                span.set_attribute("llm.provider", self.adapter.name)
                span.set_attribute("llm.model", model)
                span.set_attribute("llm.operate.turn", builder.state.current_turn)
                if not self._run_turn(request, builder, executor, toolkit, options):
                    break

        return builder.finalize()

    def _run_turn(self, request, builder, executor, toolkit, options) -> bool:
        """Run one request/response cycle. Returns True to keep looping."""
        hooks = options.hooks
        state = builder.state
        logger.trace(f"[operate] Turn {state.current_turn}/{state.max_turns}")

        provider_request = self.adapter.build_request(request)
        snapshot = list(builder.history)

        self.hook_runner.run_before_model_request(
            hooks,
            BeforeModelRequestContext(input=snapshot, options=options, provider_request=provider_request),
        )

        response = executor.execute(
            lambda signal: self.adapter.execute_request(self.client, provider_request, signal),
            RetryContext(input=snapshot, options=options, provider_request=provider_request),
            hooks,
        )

        parsed = self.adapter.parse_response(response, options)
        if parsed.usage:
            builder.add_usage(parsed.usage)
        builder.add_response(response)

        self.hook_runner.run_after_model_response(
            hooks,
            AfterModelResponseContext(
                content=parsed.content if parsed.content is not None else "",
                input=snapshot,
                options=options,
                provider_request=provider_request,
                provider_response=response,
                usage=list(builder.usage),
            ),
        )

        items = self.adapter.response_to_history_items(response)
        builder.append_to_output(*items)

        if self.adapter.has_structured_output(response):
            structured = self.adapter.extract_structured_output(response)
            if structured is not None:
                builder.append_to_history(*_without_function_calls(items))
                builder.append_to_history(message_item(MessageRole.ASSISTANT, json.dumps(structured)))
                builder.set_content(structured).complete()
                return False

        tool_calls = self.adapter.extract_tool_calls(response) if parsed.has_tool_calls else []
        if tool_calls and toolkit is not None and state.max_turns > 1:
            builder.append_to_history(*items)
            try:
                results = self._call_tools(tool_calls, toolkit, options)
            except BadGatewayError as error:
                builder.set_error(error.status, BAD_FUNCTION_CALL, error.detail).fail()
                raise
            for tool_call, result in zip(tool_calls, results):
                builder.append_to_history(self.adapter.format_tool_result(tool_call, result))

            if state.current_turn >= state.max_turns:
                detail = f"Model requested function call but exceeded {state.max_turns} turns"
                logger.warn(detail)
                builder.set_error(TooManyRequestsError.status, TooManyRequestsError.title, detail).fail()
                return False
            return True

        # Final answer: drop tool calls nobody will answer
        builder.append_to_history(*_without_function_calls(items))
        builder.set_content(parsed.content).complete()
        return False
