"""Tests for the operate loop driven by a scripted adapter."""

import asyncio
import json
import threading
import time

import pytest

from llm.base import MessageType, OperateOptions, ResponseStatus, message_item
from llm.errors import BadGatewayError
from llm.hooks import LlmHooks
from llm.operate import OperateLoop, max_turns_from_options
from tools import LlmTool, Toolkit

from fakes import FakeAdapter, FatalError, Recorder, RetryableError, reply, tool_reply

ROLL_PARAMETERS = {"type": "object", "properties": {"sides": {"type": "number"}}}


def make_loop(script):
    adapter = FakeAdapter(script)
    sleeps = []
    return OperateLoop(adapter, client=object(), sleep=sleeps.append), adapter, sleeps


def roll_tool(call=None):
    return LlmTool(
        name="roll",
        description="Roll a die",
        parameters=ROLL_PARAMETERS,
        call=call or (lambda sides=6: {"value": 4}),
    )


def types(history):
    return [item["type"] for item in history]


class TestMaxTurnsFromOptions:
    """Tests for max_turns_from_options."""

    def test_default(self):
        """Test that unset and True give the default of 12."""
        assert max_turns_from_options(None) == 12
        assert max_turns_from_options(OperateOptions()) == 12
        assert max_turns_from_options(OperateOptions(turns=True)) == 12

    def test_single_turn_values(self):
        """Test that False, zero and negatives mean one turn."""
        for turns in (False, 0, -3):
            assert max_turns_from_options(OperateOptions(turns=turns)) == 1

    def test_explicit_and_capped(self):
        """Test explicit counts and the absolute cap."""
        assert max_turns_from_options(OperateOptions(turns=4)) == 4
        assert max_turns_from_options(OperateOptions(turns=500)) == 72


class TestOperateLoop:
    """Tests for OperateLoop.execute."""

    def test_single_turn_text(self):
        """Test that a plain text reply completes in one turn."""
        loop, adapter, _ = make_loop([reply(text="Hello!")])
        response = loop.execute("Hi")

        assert response.status == ResponseStatus.COMPLETED
        assert response.content == "Hello!"
        assert response.error is None
        assert len(adapter.requests) == 1
        assert len(response.responses) == 1
        assert len(response.usage) == 1
        assert response.history == [message_item("user", "Hi"), message_item("assistant", "Hello!")]
        assert response.provider == "fake"
        assert response.model == "fake-model"

    def test_multi_turn_tool_calls(self):
        """Test three tool turns followed by a final answer."""
        script = [
            tool_reply(arguments='{"sides": 6}', call_id="call_1"),
            tool_reply(arguments='{"sides": 8}', call_id="call_2"),
            tool_reply(arguments='{"sides": 20}', call_id="call_3"),
            reply(text="You rolled three times."),
        ]
        loop, adapter, _ = make_loop(script)
        response = loop.execute("Roll three dice", OperateOptions(tools=[roll_tool()]))

        assert response.status == ResponseStatus.COMPLETED
        assert response.content == "You rolled three times."
        assert len(adapter.requests) == 4
        assert len(response.usage) == 4
        assert types(response.history) == [
            MessageType.MESSAGE,
            MessageType.FUNCTION_CALL,
            MessageType.FUNCTION_CALL_OUTPUT,
            MessageType.FUNCTION_CALL,
            MessageType.FUNCTION_CALL_OUTPUT,
            MessageType.FUNCTION_CALL,
            MessageType.FUNCTION_CALL_OUTPUT,
            MessageType.MESSAGE,
        ]
        outputs = [item for item in response.history if item["type"] == MessageType.FUNCTION_CALL_OUTPUT]
        assert [item["call_id"] for item in outputs] == ["call_1", "call_2", "call_3"]
        assert json.loads(outputs[0]["output"]) == {"value": 4}

    def test_requests_rebuilt_from_history(self):
        """Test that each turn's request carries the history so far."""
        loop, adapter, _ = make_loop([tool_reply(), reply(text="done")])
        loop.execute("Roll", OperateOptions(tools=[roll_tool()]))

        assert len(adapter.requests[0]["messages"]) == 1
        assert types(adapter.requests[1]["messages"]) == [
            MessageType.MESSAGE,
            MessageType.FUNCTION_CALL,
            MessageType.FUNCTION_CALL_OUTPUT,
        ]
        assert [tool.name for tool in adapter.requests[0]["tools"]] == ["roll"]

    def test_single_turn_drops_function_calls(self):
        """Test that turns=False makes one request and leaves tool calls unanswered."""
        loop, adapter, _ = make_loop([tool_reply()])
        tool = Recorder()
        response = loop.execute(
            "Roll",
            OperateOptions(tools=[roll_tool(call=tool)], turns=False),
        )

        assert len(adapter.requests) == 1
        assert response.status == ResponseStatus.COMPLETED
        assert tool.calls == []
        assert MessageType.FUNCTION_CALL not in types(response.history)

    def test_turn_limit_exceeded(self):
        """Test that running out of turns while tools are requested is an error."""
        loop, adapter, _ = make_loop([tool_reply(call_id="a"), tool_reply(call_id="b")])
        response = loop.execute("Roll forever", OperateOptions(tools=[roll_tool()], turns=2))

        assert len(adapter.requests) == 2
        assert response.status == ResponseStatus.ERRORED
        assert response.error == {
            "status": 429,
            "title": "Too Many Requests",
            "detail": "Model requested function call but exceeded 2 turns",
        }
        assert types(response.history)[-1] == MessageType.FUNCTION_CALL_OUTPUT

    def test_tool_error_returned_to_model(self):
        """Test that a failing tool becomes an error output and the loop continues."""
        def broken(sides=6):
            raise RuntimeError("die fell off the table")

        on_tool_error = Recorder()
        loop, _, _ = make_loop([tool_reply(), reply(text="Sorry")])
        response = loop.execute(
            "Roll",
            OperateOptions(tools=[roll_tool(call=broken)], hooks=LlmHooks(on_tool_error=on_tool_error)),
        )

        assert response.status == ResponseStatus.COMPLETED
        assert response.error is None
        output = next(item for item in response.history if item["type"] == MessageType.FUNCTION_CALL_OUTPUT)
        assert "die fell off the table" in json.loads(output["output"])["error"]
        assert len(on_tool_error.calls) == 1
        assert on_tool_error.calls[0].tool_name == "roll"

    def test_missing_tool_returned_to_model(self):
        """Test that an unknown tool name produces an error output."""
        loop, _, _ = make_loop([tool_reply(name="teleport"), reply(text="ok")])
        response = loop.execute("Go", OperateOptions(tools=[roll_tool()]))

        output = next(item for item in response.history if item["type"] == MessageType.FUNCTION_CALL_OUTPUT)
        assert "Tool 'teleport' not found" in json.loads(output["output"])["error"]
        assert response.status == ResponseStatus.COMPLETED

    def test_escalated_tool_error_raises(self):
        """Test that escalate_tool_errors turns a tool failure into a gateway error."""
        def broken(sides=6):
            raise RuntimeError("nope")

        loop, adapter, _ = make_loop([tool_reply(), reply(text="unreached")])
        with pytest.raises(BadGatewayError) as excinfo:
            loop.execute("Roll", OperateOptions(tools=[roll_tool(call=broken)], escalate_tool_errors=True))

        assert excinfo.value.status == 502
        assert "nope" in excinfo.value.detail
        assert len(adapter.requests) == 1

    def test_tool_hooks(self):
        """Test before/after tool hooks receive name, args and result."""
        before = Recorder()
        after = Recorder()
        loop, _, _ = make_loop([tool_reply(arguments='{"sides": 6}'), reply(text="ok")])
        loop.execute(
            "Roll",
            OperateOptions(tools=[roll_tool()], hooks=LlmHooks(before_each_tool=before, after_each_tool=after)),
        )

        assert before.calls[0].tool_name == "roll"
        assert before.calls[0].args == '{"sides": 6}'
        assert after.calls[0].result == {"value": 4}

    def test_async_tool_and_hook_inside_running_event_loop(self):
        """Test async tools and hooks still run when the caller is inside an event loop."""
        seen = []

        async def roll_async(sides=6):
            return {"value": sides}

        async def before(context):
            seen.append(context.tool_name)

        loop, _, _ = make_loop([tool_reply(arguments='{"sides": 20}'), reply(text="ok")])
        options = OperateOptions(tools=[roll_tool(call=roll_async)], hooks=LlmHooks(before_each_tool=before))

        async def main():
            return loop.execute("Roll", options)

        response = asyncio.run(main())

        outputs = [item for item in response.history if item["type"] == MessageType.FUNCTION_CALL_OUTPUT]
        assert json.loads(outputs[0]["output"]) == {"value": 20}
        assert seen == ["roll"]
        assert response.content == "ok"

    def test_model_hooks(self):
        """Test before/after model hooks fire once per turn."""
        before = Recorder()
        after = Recorder()
        loop, _, _ = make_loop([reply(text="Hello")])
        loop.execute("Hi", OperateOptions(hooks=LlmHooks(before_each_model_request=before, after_each_model_response=after)))

        assert len(before.calls) == 1
        assert before.calls[0].input == [message_item("user", "Hi")]
        assert after.calls[0].content == "Hello"
        assert len(after.calls[0].usage) == 1

    def test_structured_output(self):
        """Test that structured output becomes content and an assistant JSON message."""
        data = {"answer": 42}
        loop, adapter, _ = make_loop([reply(structured=data)])
        response = loop.execute("Answer", OperateOptions(format={"answer": int}))

        assert response.status == ResponseStatus.COMPLETED
        assert response.content == data
        assert response.history[-1] == message_item("assistant", json.dumps(data))
        assert MessageType.FUNCTION_CALL not in types(response.history)
        assert adapter.requests[0]["format"]["properties"]["answer"] == {"type": "integer"}
        assert adapter.requests[0]["tools"][-1].name == "structured_output"

    def test_concurrent_tool_calls_keep_order(self):
        """Test that several calls in one turn run together and keep call order."""
        barrier = threading.Barrier(3, timeout=5)

        def slow(sides=6):
            barrier.wait()
            time.sleep(0.01 * (20 - sides))
            return {"sides": sides}

        calls = [("c6", "roll", '{"sides": 6}'), ("c12", "roll", '{"sides": 12}'), ("c20", "roll", '{"sides": 20}')]
        loop, _, _ = make_loop([reply(tool_calls=calls), reply(text="done")])
        response = loop.execute("Roll all", OperateOptions(tools=[roll_tool(call=slow)]))

        outputs = [item for item in response.history if item["type"] == MessageType.FUNCTION_CALL_OUTPUT]
        assert [item["call_id"] for item in outputs] == ["c6", "c12", "c20"]
        assert [json.loads(item["output"])["sides"] for item in outputs] == [6, 12, 20]

    def test_retryable_model_error_then_success(self):
        """Test that the loop retries a failed model call."""
        loop, adapter, sleeps = make_loop([RetryableError("overloaded"), reply(text="ok")])
        response = loop.execute("Hi")

        assert response.content == "ok"
        assert len(adapter.requests) == 2
        assert sleeps == [1.0]

    def test_unrecoverable_model_error_raises(self):
        """Test that an unrecoverable model error surfaces as BadGatewayError."""
        loop, _, sleeps = make_loop([FatalError("bad key")])
        with pytest.raises(BadGatewayError):
            loop.execute("Hi")
        assert sleeps == []

    def test_system_and_instructions_forwarded(self):
        """Test that system and instructions reach the adapter request."""
        loop, adapter, _ = make_loop([reply(text="ok")])
        loop.execute("Hi {{name}}", OperateOptions(system="Be kind", instructions="Greet {{name}}", data={"name": "Ada"}))

        request = adapter.requests[0]
        assert request["system"] == "Be kind"
        assert request["instructions"] == "Greet Ada"
        assert request["messages"][0] == message_item("system", "Be kind")
        assert request["messages"][1]["content"] == "Hi Ada"

    def test_explain_strips_explanation_argument(self):
        """Test that explain mode adds the explanation parameter and hides it from the tool."""
        received = []

        def record(**kwargs):
            received.append(kwargs)
            return "ok"

        tool = LlmTool(name="roll", description="Roll", parameters=ROLL_PARAMETERS, call=record)
        arguments = json.dumps({"sides": 6, "__Explanation": "Checking luck"})
        loop, adapter, _ = make_loop([tool_reply(arguments=arguments), reply(text="ok")])
        loop.execute("Roll", OperateOptions(tools=[tool], explain=True))

        assert received == [{"sides": 6}]
        assert "__Explanation" in adapter.requests[0]["tools"][0].parameters["properties"]

    def test_accepts_toolkit_instance(self):
        """Test that a prebuilt Toolkit may be passed as tools."""
        loop, _, _ = make_loop([tool_reply(), reply(text="ok")])
        response = loop.execute("Roll", OperateOptions(tools=Toolkit([roll_tool()])))
        assert response.content == "ok"
