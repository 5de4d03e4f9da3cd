"""Tests for the JSON run report collector."""

import json

import pytest

from switchyard.report import AgentError, ConfigError, ReportCollector


def _build(rc, **overrides):
    kwargs = dict(
        task="t",
        model="m",
        provider="p",
        settings={},
        outcome="completed",
        answer="ok",
        exit_code=0,
        turns=1,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestErrors:
    def test_kinds(self):
        assert AgentError("x").kind == "agent_error"
        assert ConfigError("x").kind == "config_error"
        assert isinstance(ConfigError("x"), AgentError)


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector(), task="hello", turns=0)
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "completed", "answer": "ok", "exit_code": 0}
        assert r["stats"]["turns"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["stats"]["providers"] == {}
        assert "usage" not in r["stats"]
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "tool_calls", provider="anthropic")
        rc.record_llm_call(2, 1.3, 1500, "stop", provider="anthropic")
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_turn_seen == 2
        assert rc.events[0]["provider"] == "anthropic"
        assert rc.events[0]["is_retry"] is False
        assert "retry_reason" not in rc.events[0]
        assert rc.provider_stats["anthropic"] == {"calls": 2, "retries": 0, "failures": 0}

    def test_retry_and_fallback(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.1, 100, "rate_limited", provider="a")
        rc.record_retry(1, "a", 1, "rate_limited", 1.0)
        rc.record_llm_call(
            1, 0.1, 100, "auth_failed", provider="a", is_retry=True, retry_reason="backoff"
        )
        rc.record_fallback(1, "a", "b", "auth_failed")
        rc.record_llm_call(1, 0.2, 100, "stop", provider="b")

        assert rc.retries == 1
        assert rc.fallbacks == 1
        assert rc.provider_stats["a"] == {"calls": 2, "retries": 1, "failures": 1}
        assert rc.provider_stats["b"]["calls"] == 1
        assert [e["type"] for e in rc.events] == [
            "llm_call",
            "retry",
            "llm_call",
            "fallback",
            "llm_call",
        ]
        assert rc.events[1]["delay_s"] == 1.0
        assert rc.events[2]["retry_reason"] == "backoff"
        assert rc.events[3] == {
            "turn": 1,
            "type": "fallback",
            "from": "a",
            "to": "b",
            "error_kind": "auth_failed",
        }
        r = _build(rc)
        assert r["stats"]["retries"] == 1
        assert r["stats"]["fallbacks"] == 1

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", {"file_path": "a.txt"}, True, 0.01, 500)
        rc.record_tool_call(
            1, "read_file", {"file_path": "b.txt"}, False, 0.02, 30, error="error: not found"
        )
        rc.record_tool_call(2, "list_files", {"pattern": "*"}, True, 0.05, 200)

        assert rc.tool_stats["read_file"] == {"succeeded": 1, "failed": 1}
        assert rc.total_tool_time == pytest.approx(0.08)
        assert rc.events[1]["error"] == "error: not found"

        r = _build(rc, turns=2)
        assert r["stats"]["tool_calls_total"] == 3
        assert r["stats"]["tool_calls_succeeded"] == 2
        assert r["stats"]["tool_calls_failed"] == 1

    def test_compaction_tracking(self):
        rc = ReportCollector()
        rc.record_compaction(3, "compact_messages", 95000, 62000)
        rc.record_compaction(3, "drop_oldest_turns", 62000, 30000)
        assert rc.compactions == 1
        assert rc.turn_drops == 1
        assert rc.events[1]["tokens_after"] == 30000

    def test_guardrail_and_malformed(self):
        rc = ReportCollector()
        rc.record_guardrail(3, "read_file", "nudge")
        rc.record_malformed_tool_call(4, "invalid JSON in arguments for 'x'")
        rc.record_truncated_response(5)
        assert rc.guardrail_interventions == 1
        assert rc.malformed_tool_calls == 1
        assert rc.truncated_responses == 1
        assert [e["type"] for e in rc.events] == [
            "guardrail",
            "malformed_tool_call",
            "truncated_response",
        ]

    def test_failed_outcome(self):
        r = _build(
            ReportCollector(),
            outcome="failed",
            answer=None,
            exit_code=1,
            error_kind="context_overflow",
            error_message="context window exceeded even after truncation",
        )
        assert r["result"]["outcome"] == "failed"
        assert r["result"]["error_kind"] == "context_overflow"
        assert r["result"]["answer"] is None

    def test_usage_included(self):
        r = _build(ReportCollector(), usage={"prompt_tokens": 10, "completion_tokens": 2})
        assert r["stats"]["usage"] == {"prompt_tokens": 10, "completion_tokens": 2}

    def test_write_creates_valid_json(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 1.0, 500, "stop")
        rc.finalize(
            task="test",
            model="m",
            provider="p",
            settings={"a": 1},
            outcome="completed",
            answer="ok",
            exit_code=0,
            turns=1,
        )
        path = tmp_path / "report.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert data["result"]["answer"] == "ok"
        assert data["settings"] == {"a": 1}

    def test_max_turn_seen(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.1, 100, "tool_calls")
        rc.record_llm_call(5, 0.1, 100, "stop")
        rc.record_llm_call(3, 0.1, 100, "stop")  # out of order
        assert rc.max_turn_seen == 5
