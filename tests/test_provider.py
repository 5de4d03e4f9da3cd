"""Tests for provider variants: call arguments, error classification, streaming."""

import asyncio
import types
from unittest.mock import AsyncMock, patch

import litellm
import pytest

from switchyard.providers import (
    AuthFailedError,
    CompletionRequest,
    ContextOverflowError,
    ModelDescriptor,
    Provider,
    ProviderError,
    ProviderKind,
    RateLimitedError,
    RoutingPreferences,
    StreamAccumulator,
    TransientError,
    classify_error,
    model_string,
    parse_routed_model,
)
from switchyard.report import ConfigError


def _provider(family="openai", model="gpt-4o", **kwargs):
    descriptor = ModelDescriptor(
        provider_family=family,
        model_id=model,
        context_window_tokens=kwargs.pop("window", 128_000),
        supports_streaming=kwargs.pop("supports_streaming", True),
    )
    kwargs.setdefault("api_key", "sk-test")
    return Provider(f"{family}-1", descriptor, **kwargs)


def _request(**kwargs):
    kwargs.setdefault("messages", [{"role": "user", "content": "hi"}])
    kwargs.setdefault("max_output_tokens", 256)
    return CompletionRequest(**kwargs)


def _response(content="ok", tool_calls=None, finish_reason="stop", usage=None):
    message = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = types.SimpleNamespace(message=message, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice], usage=usage)


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = types.SimpleNamespace(delta=delta, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice], usage=usage)


def _tc_delta(index, id=None, name=None, arguments=None):
    function = types.SimpleNamespace(name=name, arguments=arguments)
    return types.SimpleNamespace(index=index, id=id, function=function)


async def _stream(chunks):
    for c in chunks:
        yield c


# ---------------------------------------------------------------------------
# Call arguments per variant
# ---------------------------------------------------------------------------


class TestVariants:
    def test_family_kinds(self):
        assert _provider("anthropic", "claude").kind is ProviderKind.DIRECT
        assert _provider("openrouter", "a/b").kind is ProviderKind.ROUTING
        assert _provider("lmstudio", "qwen").kind is ProviderKind.GENERIC

    def test_direct_call(self):
        kwargs = _provider("anthropic", "claude-sonnet-4").build_call(
            _request(temperature=0.2, seed=7)
        )
        assert kwargs["model"] == "anthropic/claude-sonnet-4"
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["max_tokens"] == 256
        assert kwargs["temperature"] == 0.2
        assert kwargs["seed"] == 7
        assert "top_p" not in kwargs
        assert "api_base" not in kwargs

    def test_tools_enable_auto_choice(self):
        tools = [{"type": "function", "function": {"name": "x"}}]
        kwargs = _provider().build_call(_request(tools=tools))
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"

    def test_lmstudio_call(self):
        kwargs = _provider("lmstudio", "my-model", api_key=None).build_call(_request())
        assert kwargs["model"] == "openai/my-model"
        assert kwargs["api_key"] == "lm-studio"
        assert kwargs["api_base"] == "http://127.0.0.1:1234/v1"

    def test_generic_needs_base_url(self):
        with pytest.raises(ConfigError):
            _provider("generic", "m", api_key=None)

    def test_generic_call(self):
        kwargs = _provider(
            "generic", "m", api_key=None, base_url="http://gpu:8000/v1"
        ).build_call(_request())
        assert kwargs["api_base"] == "http://gpu:8000/v1"
        assert kwargs["api_key"] == "none"

    def test_routing_call_carries_preferences(self):
        provider = _provider(
            "openrouter",
            "anthropic/claude-3.5-sonnet",
            routing=RoutingPreferences(
                order=("Anthropic", "Google"),
                ignore=("Azure",),
                allow_fallbacks=False,
                require_parameters=True,
            ),
            http_referer="https://example.com",
            x_title="switchyard",
        )
        kwargs = provider.build_call(_request())
        assert kwargs["model"] == "openrouter/anthropic/claude-3.5-sonnet"
        assert kwargs["extra_body"] == {
            "provider": {
                "order": ["Anthropic", "Google"],
                "ignore": ["Azure"],
                "allow_fallbacks": False,
                "require_parameters": True,
            }
        }
        assert kwargs["extra_headers"] == {
            "HTTP-Referer": "https://example.com",
            "X-Title": "switchyard",
        }

    def test_routing_without_preferences(self):
        kwargs = _provider("openrouter", "openrouter/auto").build_call(_request())
        assert "extra_body" not in kwargs
        assert "extra_headers" not in kwargs

    def test_nonpositive_override_rejected(self):
        with pytest.raises(ConfigError):
            _provider(context_override=0)


class TestModelNames:
    def test_bare_ids(self):
        assert model_string("openai", "gpt-4o") == "openai/gpt-4o"
        assert model_string("huggingface", "zai-org/GLM-5") == "huggingface/zai-org/GLM-5"

    def test_already_prefixed_no_double(self):
        assert model_string("anthropic", "anthropic/claude") == "anthropic/claude"
        assert (
            model_string("huggingface", "huggingface/zai-org/GLM-5")
            == "huggingface/zai-org/GLM-5"
        )
        assert model_string("openrouter", "openrouter/openrouter/auto") == "openrouter/openrouter/auto"

    def test_openrouter_org_named_openrouter(self):
        assert model_string("openrouter", "openrouter/auto") == "openrouter/openrouter/auto"

    def test_unknown_family(self):
        with pytest.raises(ConfigError):
            model_string("nope", "m")

    def test_parse_routed_model(self):
        assert parse_routed_model("a/b@X, Y") == ("a/b", ("X", "Y"))
        assert parse_routed_model("a/b") == ("a/b", None)
        assert parse_routed_model("a/b@") == ("a/b", None)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_rate_limit(self):
        exc = litellm.RateLimitError(message="slow down", llm_provider="openai", model="gpt-4o")
        err = classify_error(exc, "p")
        assert isinstance(err, RateLimitedError)
        assert err.retryable
        assert err.provider_id == "p"

    def test_auth(self):
        exc = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4o")
        err = classify_error(exc)
        assert isinstance(err, AuthFailedError)
        assert not err.retryable

    def test_typed_context_window(self):
        exc = litellm.ContextWindowExceededError(
            message="too long", model="gpt-4o", llm_provider="openai"
        )
        assert isinstance(classify_error(exc), ContextOverflowError)

    def test_inferred_context_window(self):
        exc = litellm.BadRequestError(
            message="This model's maximum context length is 8192 tokens",
            model="gpt-4o",
            llm_provider="openai",
        )
        assert isinstance(classify_error(exc), ContextOverflowError)

    def test_other_bad_request_is_fatal(self):
        exc = litellm.BadRequestError(
            message="unknown parameter 'foo'", model="gpt-4o", llm_provider="openai"
        )
        err = classify_error(exc)
        assert type(err) is ProviderError
        assert err.kind == "provider_error"
        assert not err.retryable

    def test_status_codes(self):
        class Boom(Exception):
            def __init__(self, status_code):
                super().__init__(f"status {status_code}")
                self.status_code = status_code

        assert isinstance(classify_error(Boom(503)), TransientError)
        assert isinstance(classify_error(Boom(429)), RateLimitedError)
        assert isinstance(classify_error(Boom(401)), AuthFailedError)
        assert type(classify_error(Boom(418))) is ProviderError

    def test_retry_after_header(self):
        class Limited(Exception):
            status_code = 429
            response = types.SimpleNamespace(headers={"retry-after": "12"})

        err = classify_error(Limited("429"))
        assert err.retry_after == 12.0

    def test_connection_error(self):
        assert isinstance(classify_error(ConnectionError("reset")), TransientError)


# ---------------------------------------------------------------------------
# complete()
# ---------------------------------------------------------------------------


class TestComplete:
    def test_parses_response(self):
        tc = types.SimpleNamespace(
            id="call_1",
            function=types.SimpleNamespace(name="read_file", arguments='{"file_path": "a"}'),
        )
        usage = types.SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response(
                content=None, tool_calls=[tc], finish_reason="tool_calls", usage=usage
            )
            response = asyncio.run(_provider().complete(_request()))
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].name == "read_file"
        assert response.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        assert response.provider_id == "openai-1"
        assert mock_comp.await_args.kwargs["model"] == "openai/gpt-4o"

    def test_litellm_errors_classified(self):
        exc = litellm.RateLimitError(message="429", llm_provider="openai", model="gpt-4o")
        with patch("litellm.acompletion", new_callable=AsyncMock, side_effect=exc):
            with pytest.raises(RateLimitedError) as exc_info:
                asyncio.run(_provider().complete(_request()))
        assert exc_info.value.provider_id == "openai-1"

    def test_timeout_is_transient(self):
        async def hang(**kwargs):
            await asyncio.sleep(10)

        with patch("litellm.acompletion", new=hang):
            with pytest.raises(TransientError, match="no response"):
                asyncio.run(_provider(timeout=0.01).complete(_request()))

    def test_empty_choices_is_transient(self):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = types.SimpleNamespace(choices=[], usage=None)
            with pytest.raises(TransientError):
                asyncio.run(_provider().complete(_request()))

    def test_streaming_accumulates(self):
        chunks = [
            _chunk(content="Hel"),
            _chunk(content="lo"),
            _chunk(tool_calls=[_tc_delta(0, id="c1", name="read_file", arguments='{"file')]),
            _chunk(tool_calls=[_tc_delta(0, arguments='_path": "a"}')]),
            _chunk(tool_calls=[_tc_delta(1, id="c2", name="list_files", arguments="{}")]),
            _chunk(finish_reason="tool_calls"),
            types.SimpleNamespace(
                choices=[], usage=types.SimpleNamespace(prompt_tokens=3, completion_tokens=4, total_tokens=7)
            ),
        ]
        deltas = []
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _stream(chunks)
            response = asyncio.run(
                _provider().complete(_request(stream=True), on_delta=deltas.append)
            )
        assert deltas == ["Hel", "lo"]
        assert response.content == "Hello"
        assert [(t.id, t.name, t.arguments) for t in response.tool_calls] == [
            ("c1", "read_file", '{"file_path": "a"}'),
            ("c2", "list_files", "{}"),
        ]
        assert response.finish_reason == "tool_calls"
        assert response.usage["total_tokens"] == 7
        assert mock_comp.await_args.kwargs["stream"] is True
        assert mock_comp.await_args.kwargs["stream_options"] == {"include_usage": True}

    def test_no_streaming_when_unsupported(self):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response()
            asyncio.run(_provider(supports_streaming=False).complete(_request(stream=True)))
        assert "stream" not in mock_comp.await_args.kwargs


class TestStreamAccumulator:
    def test_defaults_finish_reason(self):
        acc = StreamAccumulator()
        acc.add(_chunk(content="x"))
        assert acc.finish(model="m", provider_id="p").finish_reason == "stop"

    def test_empty_content_is_none(self):
        acc = StreamAccumulator()
        acc.add(_chunk(finish_reason="stop"))
        assert acc.finish(model="m", provider_id="p").content is None
