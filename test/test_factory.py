"""Tests for provider selection and the LlmProvider conversation wrapper."""

import pytest

import config
from llm.base import OperateOptions, StreamChunkType, message_item
from llm.errors import ConfigurationError
from llm.factory import create_provider, determine_model_provider
from llm.provider import LlmProvider

from fakes import FakeAdapter, done_chunk, reply, text_chunk


def make_provider(script, **kwargs):
    adapter = FakeAdapter(script)
    kwargs.setdefault("secret_resolver", lambda name: "secret")
    return LlmProvider(adapter, sleep=lambda delay: None, **kwargs), adapter


class TestDetermineModelProvider:
    """Tests for determine_model_provider."""

    def test_provider_names_select_default_model(self):
        """Test provider names map to their configured default model."""
        assert determine_model_provider("anthropic") == (config.ANTHROPIC_MODEL, "anthropic")
        assert determine_model_provider("gemini") == (config.GEMINI_MODEL, "gemini")
        assert determine_model_provider("openai") == (config.OPENAI_MODEL, "openai")
        assert determine_model_provider("openrouter") == (config.OPENROUTER_MODEL, "openrouter")

    @pytest.mark.parametrize("model, provider", [
        ("claude-3-5-haiku-latest", "anthropic"),
        ("Claude-Sonnet-4", "anthropic"),
        ("gemini-2.0-flash", "gemini"),
        ("gpt-4.1-mini", "openai"),
        ("o3-mini", "openai"),
        ("meta-llama/llama-3.1-70b", "openrouter"),
        ("anthropic/claude-3.5-sonnet", "openrouter"),
        ("models/gemini-2.5-flash", "gemini"),
    ])
    def test_model_ids_matched(self, model, provider):
        """Test vendor keyword matching on model ids."""
        assert determine_model_provider(model) == (model, provider)

    def test_unknown_model_uses_configured_provider(self, monkeypatch):
        """Test that unrecognised models run on LLM_PROVIDER."""
        monkeypatch.setattr(config, "LLM_PROVIDER", "gemini")
        assert determine_model_provider("mystery-model") == ("mystery-model", "gemini")

    def test_empty_uses_configured_provider(self, monkeypatch):
        """Test the default provider and its model."""
        monkeypatch.setattr(config, "LLM_PROVIDER", "anthropic")
        assert determine_model_provider(None) == (config.ANTHROPIC_MODEL, "anthropic")


class TestCreateProvider:
    """Tests for create_provider."""

    def test_returns_provider_for_model(self):
        """Test that a model id picks the adapter and keeps the model."""
        provider = create_provider("claude-3-5-haiku-latest", api_key="sk-test")
        assert provider.name == "anthropic"
        assert provider.model == "claude-3-5-haiku-latest"

    def test_unknown_provider_raises(self, monkeypatch):
        """Test that an invalid configured provider is a configuration error."""
        monkeypatch.setattr(config, "LLM_PROVIDER", "bogus")
        with pytest.raises(ConfigurationError) as excinfo:
            create_provider("mystery-model")
        assert "bogus" in excinfo.value.detail


class TestLlmProvider:
    """Tests for LlmProvider."""

    def test_client_created_lazily_once(self):
        """Test that the client is built on first use and cached."""
        provider, _ = make_provider([])
        client = provider.get_client()
        assert client.api_key == "secret"
        assert provider.get_client() is client

    def test_missing_key_raises(self):
        """Test that an unresolvable key is a configuration error naming the variable."""
        provider, _ = make_provider([reply(text="hi")], secret_resolver=lambda name: None)
        with pytest.raises(ConfigurationError) as excinfo:
            provider.operate("Hi")
        assert "FAKE_API_KEY" in excinfo.value.detail

    def test_explicit_key_wins(self):
        """Test that a constructor api_key skips the resolver."""
        provider, _ = make_provider([], api_key="direct", secret_resolver=lambda name: None)
        assert provider.get_client().api_key == "direct"

    def test_history_continues_across_calls(self):
        """Test that successive operate calls share one conversation."""
        provider, adapter = make_provider([reply(text="one"), reply(text="two")])
        provider.operate("first")
        response = provider.operate("second")

        assert adapter.requests[1]["messages"] == [
            message_item("user", "first"),
            message_item("assistant", "one"),
            message_item("user", "second"),
        ]
        assert provider.history == response.history
        assert len(provider.history) == 4

    def test_clear_history(self):
        """Test that clear_history starts a fresh conversation."""
        provider, adapter = make_provider([reply(text="one"), reply(text="two")])
        provider.operate("first")
        provider.clear_history()
        provider.operate("second")

        assert adapter.requests[1]["messages"] == [message_item("user", "second")]

    def test_keyword_overrides(self):
        """Test that keyword arguments override option fields."""
        provider, adapter = make_provider([reply(text="ok")])
        provider.operate("Hi", OperateOptions(system="A"), system="B")
        assert adapter.requests[0]["system"] == "B"

    def test_default_model_used(self):
        """Test that the provider's model is sent when options omit one."""
        provider, adapter = make_provider([reply(text="ok")], model="fake-large")
        response = provider.operate("Hi")
        assert adapter.requests[0]["model"] == "fake-large"
        assert response.model == "fake-large"

    def test_send_returns_content_without_history(self):
        """Test that send is a single stateless turn."""
        provider, adapter = make_provider([reply(text="pong")])
        assert provider.send("ping") == "pong"
        assert provider.history == []
        assert adapter.requests[0]["tools"] is None

    def test_instance_history_precedes_caller_history(self):
        """Test that instance history comes before caller-supplied history."""
        provider, adapter = make_provider([reply(text="one"), reply(text="two")])
        provider.operate("first")
        provider.operate("second", history=[message_item("user", "caller")])

        assert [item["content"] for item in adapter.requests[1]["messages"]] == ["first", "one", "caller", "second"]

    def test_stream_sends_instance_history_without_updating_it(self):
        """Test that streaming continues the conversation but leaves history untouched."""
        provider, adapter = make_provider([reply(text="one"), [text_chunk("two"), done_chunk()]])
        provider.operate("first")
        chunks = list(provider.stream("second"))

        assert [chunk.type for chunk in chunks] == [StreamChunkType.TEXT, StreamChunkType.DONE]
        assert [item["content"] for item in adapter.requests[1]["messages"]] == ["first", "one", "second"]
        assert len(provider.history) == 2
