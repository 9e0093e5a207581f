"""Tests for HookRunner dispatch."""

import asyncio

from llm.hooks import BeforeToolContext, HookRunner, LlmHooks

from fakes import Recorder

CONTEXT = BeforeToolContext(args="{}", tool_name="roll")


class TestHookRunner:
    """Tests for HookRunner."""

    def test_single_callback(self):
        """Test that a single callable receives the context."""
        callback = Recorder()
        HookRunner().run_before_tool(LlmHooks(before_each_tool=callback), CONTEXT)
        assert callback.calls == [CONTEXT]

    def test_list_of_callbacks_in_order(self):
        """Test that every subscriber in a list is called in order."""
        order = []
        hooks = LlmHooks(before_each_tool=[lambda c: order.append("a"), lambda c: order.append("b")])
        HookRunner().run_before_tool(hooks, CONTEXT)
        assert order == ["a", "b"]

    def test_failing_subscriber_isolated(self):
        """Test that one raising subscriber does not stop the next."""
        after = Recorder()
        hooks = LlmHooks(before_each_tool=[Recorder(raises=RuntimeError("bug")), after])

        HookRunner().run_before_tool(hooks, CONTEXT)
        assert after.calls == [CONTEXT]

    def test_dict_hooks(self):
        """Test that hooks may be given as a plain dict."""
        callback = Recorder()
        HookRunner().run_before_tool({"before_each_tool": callback}, CONTEXT)
        assert callback.calls == [CONTEXT]

    def test_missing_hooks(self):
        """Test that absent hooks are a no-op."""
        HookRunner().run_before_tool(None, CONTEXT)
        HookRunner().run_before_tool(LlmHooks(), CONTEXT)

    def test_async_callback_awaited(self):
        """Test that coroutine callbacks run to completion."""
        seen = []

        async def callback(context):
            seen.append(context.tool_name)

        HookRunner().run_before_tool(LlmHooks(before_each_tool=callback), CONTEXT)
        assert seen == ["roll"]

    def test_async_callback_inside_running_event_loop(self):
        """Test that coroutine callbacks run when the caller already has a loop."""
        seen = []

        async def callback(context):
            seen.append(context.tool_name)

        async def main():
            HookRunner().run_before_tool(LlmHooks(before_each_tool=callback), CONTEXT)

        asyncio.run(main())
        assert seen == ["roll"]

    def test_events_routed_to_matching_field(self):
        """Test that each run method fires only its own event."""
        before = Recorder()
        after = Recorder()
        hooks = LlmHooks(before_each_tool=before, after_each_tool=after)

        HookRunner().run_after_tool(hooks, CONTEXT)
        assert before.calls == []
        assert after.calls == [CONTEXT]
