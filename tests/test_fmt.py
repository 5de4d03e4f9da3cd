"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from switchyard import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=120)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestTurnHeader:
    def test_contains_turn_info(self):
        out = _capture(fmt.turn_header, 3, 10, 4200)
        assert "Turn 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_stop_reason(self):
        out = _capture(fmt.llm_timing, 1.4, "stop", "anthropic")
        assert "anthropic responded in 1.4s" in out
        assert "finish_reason=stop" in out

    def test_length_reason(self):
        out = _capture(fmt.llm_timing, 2.3, "length", "openrouter")
        assert "finish_reason=length" in out


class TestCompletion:
    def test_completed(self):
        out = _capture(fmt.completion, 5, "completed")
        assert "✓ Agent finished" in out
        assert "5 turns" in out

    def test_failed(self):
        out = _capture(fmt.completion, 3, "failed")
        assert "✓" not in out
        assert "3 turns" in out
        assert "status=failed" in out


class TestResilience:
    def test_retry_notice(self):
        out = _capture(fmt.retry_notice, "anthropic", "rate_limited", 2, 4.0)
        assert "Retry" in out
        assert "anthropic rate_limited (attempt 2), waiting 4.0s" in out

    def test_fallback_notice(self):
        out = _capture(fmt.fallback_notice, "anthropic", "openrouter", "auth_failed")
        assert "anthropic failed (auth_failed), switching to openrouter" in out


class TestToolOutput:
    def test_tool_call(self):
        out = _capture(fmt.tool_call, "read_file", '{\n  "file_path": "a.py"\n}')
        assert "read_file" in out
        assert '"file_path": "a.py"' in out

    def test_tool_call_empty_args(self):
        out = _capture(fmt.tool_call, "list_files", "")
        assert out.strip().endswith("list_files")

    def test_tool_result(self):
        out = _capture(fmt.tool_result, "read_file", 0.25, "1: hello")
        assert "read_file" in out
        assert "0.2s" in out or "0.3s" in out
        assert "1: hello" in out

    def test_tool_error(self):
        out = _capture(fmt.tool_error, "read_file", "error: path does not exist")
        assert "✗ read_file" in out
        assert "path does not exist" in out

    def test_guardrail(self):
        out = _capture(fmt.guardrail, "read_file", 2, "error: nope")
        assert "Guardrail" in out
        assert "2 times" in out


class TestDiagnostics:
    def test_context_stats(self):
        out = _capture(fmt.context_stats, "Context after turn 2", 1234)
        assert "Context after turn 2: ~1234 tokens" in out

    def test_warning(self):
        out = _capture(fmt.warning, "context window exceeded, truncating history...")
        assert "Warning" in out
        assert "context window exceeded" in out

    def test_error(self):
        out = _capture(fmt.error, "failed: auth_failed: bad key")
        assert "Error: failed: auth_failed: bad key" in out


class TestMarkupEscaping:
    """Dynamic text containing Rich markup brackets should appear literally."""

    def test_brackets_in_tool_call_args(self):
        out = _capture(fmt.tool_call, "read_file", '{"file_path": "[bold]x[/]"}')
        assert "[bold]x[/]" in out

    def test_brackets_in_assistant_text(self):
        out = _capture(fmt.assistant_text, "The tag is [bold red]")
        assert "[bold red]" in out

    def test_brackets_in_error(self):
        out = _capture(fmt.error, "unexpected [tag] in response")
        assert "[tag]" in out


class TestInit:
    def test_no_color(self):
        old = fmt._console
        fmt.init(no_color=True)
        assert fmt._console._color_system is None
        fmt._console = old

    def test_color_overrides_no_color_env(self, monkeypatch):
        """--color must explicitly set no_color=False so it overrides NO_COLOR env."""
        monkeypatch.setenv("NO_COLOR", "1")
        old = fmt._console
        fmt.init(color=True)
        assert fmt._console.no_color is False
        fmt._console = old
