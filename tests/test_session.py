"""Tests for the Session library API."""

import asyncio
import types
from unittest.mock import AsyncMock, patch

import pytest

from switchyard import ConfigError, Result, Session
from switchyard import registry as reg
from switchyard.tools import FunctionToolExecutor


def _response(content="done", tool_calls=None, finish_reason="stop"):
    message = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = types.SimpleNamespace(message=message, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice], usage=None)


def _tool_call(name, arguments, call_id="call_1"):
    function = types.SimpleNamespace(name=name, arguments=arguments)
    return types.SimpleNamespace(id=call_id, function=function)


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(
        reg, "lookup_model_info", lambda family, model: {"max_input_tokens": 128_000}
    )


def _session(tmp_path, **kwargs):
    kwargs.setdefault("provider", "openai.gpt-4o")
    kwargs.setdefault("stream", False)
    return Session(base_dir=str(tmp_path), **kwargs)


class TestSessionRun:
    def test_simple_answer(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response("hello")
            result = _session(tmp_path).run("say hello")
        assert isinstance(result, Result)
        assert result.ok
        assert result.answer == "hello"
        assert result.turns == 1
        assert result.messages[0]["role"] == "system"
        assert result.report is None

    def test_custom_system_prompt(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response()
            result = _session(tmp_path, system_prompt="Be brief.").run("go")
        assert result.messages[0] == {"role": "system", "content": "Be brief."}

    def test_no_system_prompt(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response()
            result = _session(tmp_path, no_system_prompt=True).run("go")
        assert result.messages[0] == {"role": "user", "content": "go"}

    def test_builtin_tools_read_base_dir(self, tmp_path):
        (tmp_path / "notes.txt").write_text("remember the milk\n", encoding="utf-8")
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.side_effect = [
                _response(
                    None,
                    [_tool_call("read_file", '{"file_path": "notes.txt"}')],
                    "tool_calls",
                ),
                _response("milk"),
            ]
            result = _session(tmp_path).run("what should I remember?")
        assert result.answer == "milk"
        tool_msg = next(m for m in result.messages if m["role"] == "tool")
        assert tool_msg["content"] == "1: remember the milk"

    def test_custom_executor(self, tmp_path):
        executor = FunctionToolExecutor()
        executor.register("weather", lambda city: f"sunny in {city}")
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.side_effect = [
                _response(None, [_tool_call("weather", '{"city": "Oslo"}')], "tool_calls"),
                _response("It is sunny."),
            ]
            result = _session(tmp_path, executor=executor).run("weather?")
        assert result.ok
        first_tools = mock_comp.await_args_list[0].kwargs["tools"]
        assert [t["function"]["name"] for t in first_tools] == ["weather"]
        assert any(m.get("content") == "sunny in Oslo" for m in result.messages)

    def test_no_tools(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response()
            _session(tmp_path, no_tools=True).run("go")
        assert "tools" not in mock_comp.await_args.kwargs

    def test_exhausted(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response(
                None, [_tool_call("list_files", '{"pattern": "*"}')], "tool_calls"
            )
            result = _session(tmp_path, max_turns=2).run("loop")
        assert not result.ok
        assert result.exhausted
        assert result.status == "failed"
        assert result.turns == 2

    def test_report(self, tmp_path):
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response("ok")
            result = _session(tmp_path).run("go", report=True)
        assert result.report["result"]["outcome"] == "completed"
        assert result.report["provider"] == "openai"
        assert result.report["settings"]["preferences"] == ["openai"]

    def test_messages_are_copies(self, tmp_path):
        session = _session(tmp_path)
        with patch("litellm.acompletion", new_callable=AsyncMock) as mock_comp:
            mock_comp.return_value = _response()
            first = session.run("one")
            first.messages.clear()
            second = session.run("two")
        assert second.messages[-2] == {"role": "user", "content": "two"}


class TestSessionSetup:
    def test_unknown_provider(self, tmp_path):
        with pytest.raises(ConfigError, match="unknown provider"):
            _session(tmp_path, provider="mystery").run("go")

    def test_no_provider(self, tmp_path):
        with pytest.raises(ConfigError, match="no provider selected"):
            _session(tmp_path, provider=None).run("go")

    def test_context_override_applies_to_primary(self, tmp_path):
        session = _session(tmp_path, max_context_tokens=50_000)
        assert session.registry.primary().context_override == 50_000

    def test_registry_built_once(self, tmp_path):
        session = _session(tmp_path)
        assert session.registry is session.registry

    def test_concurrent_runs_share_registry(self, tmp_path):
        async def reply(**kwargs):
            await asyncio.sleep(0.01)
            return _response(f"re: {kwargs['messages'][-1]['content']}")

        session = _session(tmp_path, no_tools=True)

        async def scenario():
            return await asyncio.gather(session.arun("a"), session.arun("b"))

        with patch("litellm.acompletion", new=AsyncMock(side_effect=reply)):
            first, second = asyncio.run(scenario())
        assert first.answer == "re: a"
        assert second.answer == "re: b"
        assert session.registry.counters("openai").snapshot()["calls"] == 2
