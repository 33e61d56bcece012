"""Tests for provider routing, chunk normalization, error mapping and retries."""

import types
from unittest.mock import patch

import litellm
import pytest

from kestrel.cancel import CancelToken
from kestrel.errors import (
    AuthError,
    Cancelled,
    ConfigError,
    ContextTooLarge,
    InvalidRequest,
    NetworkError,
    ProviderError,
    RateLimitError,
)
from kestrel.messages import Message, ToolCall, ToolResult
from kestrel.providers import (
    AnthropicProvider,
    HuggingFaceProvider,
    LMStudioProvider,
    OpenAIProvider,
    OpenRouterProvider,
    Provider,
    RetryPolicy,
    ScriptedProvider,
    classify_exception,
    create_provider,
    encode_messages,
    events_from_chunks,
    normalize_finish_reason,
)
from kestrel.stream import (
    StreamError,
    TextDelta,
    ToolCallArgumentsDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
)

NO_WAIT = RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0)


def _chunk(content=None, tool_calls=None, finish_reason=None):
    delta = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = types.SimpleNamespace(delta=delta, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice])


def _tc(index, call_id=None, name=None, arguments=None):
    return types.SimpleNamespace(
        index=index,
        id=call_id,
        function=types.SimpleNamespace(name=name, arguments=arguments),
    )


# ---------------------------------------------------------------------------
# Wire encoding
# ---------------------------------------------------------------------------


class TestEncodeMessages:
    def test_system_prompt_first(self):
        wire = encode_messages([Message.user("hi")], "be brief")
        assert wire == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]

    def test_no_system_prompt(self):
        assert encode_messages([Message.user("hi")])[0]["role"] == "user"

    def test_tool_round_trip(self):
        wire = encode_messages(
            [
                Message.user("go"),
                Message.assistant("", [ToolCall("c1", "grep", '{"pattern": "x"}')]),
                Message.tool(ToolResult("c1", "success", "Found 1 matches")),
            ]
        )
        assert wire[1] == {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": "c1",
                    "type": "function",
                    "function": {"name": "grep", "arguments": '{"pattern": "x"}'},
                }
            ],
        }
        assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "Found 1 matches"}

    def test_error_results_are_prefixed_once(self):
        wire = encode_messages(
            [
                Message.user("go"),
                Message.assistant("", [ToolCall("a", "grep"), ToolCall("b", "grep")]),
                Message.tool(ToolResult("a", "error", "boom", "execution_failed")),
                Message.tool(ToolResult("b", "error", "error: already", "not_found")),
            ]
        )
        assert wire[2]["content"] == "error: boom"
        assert wire[3]["content"] == "error: already"


def test_normalize_finish_reason():
    assert normalize_finish_reason("stop") == "end_turn"
    assert normalize_finish_reason("tool_calls") == "tool_use"
    assert normalize_finish_reason("length") == "max_tokens"
    assert normalize_finish_reason(None) == "end_turn"
    assert normalize_finish_reason("content_filter") == "content_filter"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyException:
    def test_context_window(self):
        exc = litellm.ContextWindowExceededError(
            message="too long", model="test", llm_provider="openai"
        )
        assert isinstance(classify_exception(exc), ContextTooLarge)

    def test_bad_request_inferred_overflow(self):
        exc = litellm.BadRequestError(
            message="This model's maximum context length is 8192 tokens",
            model="test",
            llm_provider="openai",
        )
        assert isinstance(classify_exception(exc), ContextTooLarge)

    def test_other_bad_request(self):
        exc = litellm.BadRequestError(
            message="unknown parameter foo", model="test", llm_provider="openai"
        )
        assert isinstance(classify_exception(exc), InvalidRequest)

    def test_auth(self):
        exc = litellm.AuthenticationError(
            message="bad key", llm_provider="openai", model="test"
        )
        err = classify_exception(exc)
        assert isinstance(err, AuthError)
        assert not err.retryable

    def test_rate_limit(self):
        exc = litellm.RateLimitError(message="slow down", llm_provider="openai", model="test")
        err = classify_exception(exc)
        assert isinstance(err, RateLimitError)
        assert err.retryable

    def test_connection(self):
        exc = litellm.APIConnectionError(
            message="refused", llm_provider="openai", model="test"
        )
        assert isinstance(classify_exception(exc), NetworkError)

    def test_builtin_connection_error(self):
        assert isinstance(classify_exception(ConnectionResetError("reset")), NetworkError)

    def test_unknown_is_base_provider_error(self):
        err = classify_exception(RuntimeError("weird"))
        assert type(err) is ProviderError
        assert "weird" in str(err)

    def test_provider_error_passes_through(self):
        err = AuthError("x")
        assert classify_exception(err) is err


# ---------------------------------------------------------------------------
# Chunk normalization
# ---------------------------------------------------------------------------


class TestEventsFromChunks:
    def test_text_stream(self):
        events = list(
            events_from_chunks(
                [_chunk("Hel"), _chunk("lo"), _chunk(finish_reason="stop")]
            )
        )
        assert events == [TextDelta("Hel"), TextDelta("lo"), TurnEnd("end_turn")]

    def test_tool_call_fragments(self):
        chunks = [
            _chunk(tool_calls=[_tc(0, "call_a", "grep", '{"pat')]),
            _chunk(tool_calls=[_tc(0, None, None, 'tern": "x"}')]),
            _chunk(tool_calls=[_tc(1, "call_b", "list_dir", "{}")]),
            _chunk(finish_reason="tool_calls"),
        ]
        assert list(events_from_chunks(chunks)) == [
            ToolCallStart("call_a", "grep"),
            ToolCallArgumentsDelta("call_a", '{"pat'),
            ToolCallArgumentsDelta("call_a", 'tern": "x"}'),
            ToolCallStart("call_b", "list_dir"),
            ToolCallArgumentsDelta("call_b", "{}"),
            ToolCallEnd("call_a"),
            ToolCallEnd("call_b"),
            TurnEnd("tool_use"),
        ]

    def test_missing_id_gets_generated(self):
        events = list(
            events_from_chunks(
                [_chunk(tool_calls=[_tc(0, None, "grep", "{}")]), _chunk(finish_reason="stop")]
            )
        )
        start = events[0]
        assert isinstance(start, ToolCallStart)
        assert start.id.startswith("call_")

    def test_chunks_without_choices_ignored(self):
        events = list(
            events_from_chunks([types.SimpleNamespace(choices=[]), _chunk("x")])
        )
        assert events == [TextDelta("x"), TurnEnd("end_turn")]

    def test_exception_becomes_stream_error(self):
        def chunks():
            yield _chunk("partial")
            raise RuntimeError("garbled chunk")

        events = list(events_from_chunks(chunks()))
        assert events[0] == TextDelta("partial")
        assert isinstance(events[1], StreamError)
        assert events[1].kind == "malformed_response"
        assert len(events) == 2

    def test_network_failure_mid_stream(self):
        def chunks():
            yield _chunk("partial")
            raise litellm.APIConnectionError(
                message="reset", llm_provider="openai", model="test"
            )

        events = list(events_from_chunks(chunks()))
        assert events[-1].kind == "network"


# ---------------------------------------------------------------------------
# LiteLLM routing
# ---------------------------------------------------------------------------


class TestLiteLLMRouting:
    def test_openai_request(self):
        provider = OpenAIProvider(api_key="sk-test", temperature=0.2, seed=7)
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = iter([_chunk("ok"), _chunk(finish_reason="stop")])
            events = list(
                provider.open_stream(
                    [{"role": "user", "content": "hi"}],
                    "gpt-4o",
                    [{"type": "function", "function": {"name": "grep"}}],
                    256,
                )
            )
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/gpt-4o"
        assert kwargs["stream"] is True
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["max_tokens"] == 256
        assert kwargs["temperature"] == 0.2
        assert kwargs["seed"] == 7
        assert "top_p" not in kwargs
        assert events[-1] == TurnEnd("end_turn")

    def test_no_tools_no_tool_choice(self):
        provider = AnthropicProvider(api_key="k")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = iter([_chunk(finish_reason="stop")])
            list(provider.open_stream([], "claude-sonnet", None, None))
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "anthropic/claude-sonnet"
        assert "tools" not in kwargs
        assert "max_tokens" not in kwargs

    def test_lmstudio_routing(self):
        provider = LMStudioProvider(base_url="http://localhost:1234")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = iter([_chunk(finish_reason="stop")])
            list(provider.open_stream([], "my-model", None, None))
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/my-model"
        assert kwargs["api_key"] == "lm-studio"
        assert kwargs["api_base"] == "http://localhost:1234/v1"

    def test_openrouter_no_double_prefix(self):
        provider = OpenRouterProvider(api_key="k")
        assert provider.model_string("openrouter/openrouter/free") == "openrouter/openrouter/free"
        assert provider.model_string("openrouter/free") == "openrouter/openrouter/free"
        assert provider.model_string("z-ai/glm-5") == "openrouter/z-ai/glm-5"

    def test_huggingface_requires_org(self):
        provider = HuggingFaceProvider(api_key="k")
        assert provider.model_string("zai-org/GLM-5") == "huggingface/zai-org/GLM-5"
        assert provider.model_string("huggingface/zai-org/GLM-5") == "huggingface/zai-org/GLM-5"
        with pytest.raises(InvalidRequest, match="org/model"):
            provider.model_string("GLM-5")

    def test_connection_error_is_classified(self):
        provider = OpenAIProvider(api_key="k")
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = litellm.AuthenticationError(
                message="bad key", llm_provider="openai", model="test"
            )
            with pytest.raises(AuthError):
                provider.open_stream([], "gpt-4o", None, None)

    def test_supported_models_from_catalogue(self, monkeypatch):
        monkeypatch.setattr(
            litellm, "models_by_provider", {"anthropic": {"b-model", "a-model"}}
        )
        assert AnthropicProvider(api_key="k").supported_models() == ["a-model", "b-model"]

    def test_supported_models_configured(self):
        provider = OpenAIProvider(api_key="k", models=["x", "y"])
        assert provider.supported_models() == ["x", "y"]

    def test_lmstudio_discover(self):
        provider = LMStudioProvider()
        entries = [
            {"id": "embed", "type": "embeddings"},
            {"id": "idle", "type": "llm", "loaded_instances": []},
            {
                "id": "qwen",
                "type": "llm",
                "loaded_instances": [{"config": {"context_length": 32768}}],
            },
        ]
        with patch.object(LMStudioProvider, "_fetch_models", return_value=entries):
            assert provider.discover() == ("qwen", 32768)
            assert provider.supported_models() == ["idle", "qwen"]


# ---------------------------------------------------------------------------
# send(): context guard and retries
# ---------------------------------------------------------------------------


class TestSend:
    def test_returns_events(self):
        provider = ScriptedProvider([ScriptedProvider.text("hello")])
        events = list(provider.send([Message.user("hi")], "m", system_prompt="sys"))
        assert events == [TextDelta("hello"), TurnEnd("end_turn")]
        assert provider.requests[0]["messages"][0] == {"role": "system", "content": "sys"}
        assert provider.requests[0]["model"] == "m"

    def test_retries_rate_limit_then_succeeds(self):
        provider = ScriptedProvider(
            [RateLimitError("slow"), ScriptedProvider.text("ok")], retry_policy=NO_WAIT
        )
        seen = []
        events = list(
            provider.send(
                [Message.user("hi")],
                "m",
                on_retry=lambda attempt, delay, err: seen.append((attempt, err.kind)),
            )
        )
        assert events[0] == TextDelta("ok")
        assert seen == [(1, "rate_limit")]
        assert len(provider.requests) == 2

    def test_rate_limit_exhausted(self):
        provider = ScriptedProvider(
            [RateLimitError("slow")] * 3 + [ScriptedProvider.text("never")],
            retry_policy=NO_WAIT,
        )
        with pytest.raises(RateLimitError):
            provider.send([Message.user("hi")], "m")
        assert len(provider.requests) == 3

    def test_auth_not_retried(self):
        provider = ScriptedProvider(
            [AuthError("bad key"), ScriptedProvider.text("never")], retry_policy=NO_WAIT
        )
        with pytest.raises(AuthError):
            provider.send([Message.user("hi")], "m")
        assert len(provider.requests) == 1

    def test_cancel_during_backoff(self):
        token = CancelToken()
        provider = ScriptedProvider(
            [NetworkError("down"), ScriptedProvider.text("never")], retry_policy=NO_WAIT
        )
        with pytest.raises(Cancelled):
            provider.send(
                [Message.user("hi")],
                "m",
                cancel_token=token,
                on_retry=lambda *a: token.cancel(),
            )
        assert len(provider.requests) == 1

    def test_context_too_large_rejected_before_request(self):
        provider = ScriptedProvider([ScriptedProvider.text("never")], context_length=20)
        with pytest.raises(ContextTooLarge) as exc_info:
            provider.send([Message.user("word " * 200)], "m")
        assert exc_info.value.limit == 20
        assert exc_info.value.current > 20
        assert provider.requests == []


class TestRetryPolicy:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_honoured(self):
        policy = RetryPolicy(max_delay=30.0)
        assert policy.delay(0, RateLimitError("x", retry_after=12)) == 12.0
        assert policy.delay(0, RateLimitError("x", retry_after=120)) == 30.0


class TestOutputBudget:
    def test_clamped_to_remaining_window(self):
        provider = Provider(context_length=1000, max_output_tokens=500)
        assert provider.output_budget(100) == 500
        assert provider.output_budget(800) == 200
        assert provider.output_budget(1000) == 1

    def test_unknown_context(self):
        assert Provider(max_output_tokens=500).output_budget(10_000) == 500


class TestCreateProvider:
    def test_unknown_name(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            create_provider("nope")

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            create_provider("openai")

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        provider = create_provider("gemini", context_length=1000)
        assert provider.api_key == "g-key"
        assert provider.context_length == 1000
        assert provider.model_string("gemini-2.0-flash") == "gemini/gemini-2.0-flash"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "env")
        assert create_provider("huggingface", api_key="cli").api_key == "cli"

    def test_lmstudio_needs_no_key(self):
        provider = create_provider("lmstudio")
        assert isinstance(provider, LMStudioProvider)
        assert provider.base_url == "http://127.0.0.1:1234"

    def test_scripted_is_registered(self):
        provider = create_provider(
            "scripted",
            api_key="ignored",
            base_url="http://unused",
            temperature=0.2,
            context_length=4096,
            max_output_tokens=512,
        )
        assert isinstance(provider, ScriptedProvider)
        assert provider.context_length == 4096
        assert provider.max_output_tokens == 512
        assert provider.supported_models() == ["scripted-model"]
