"""Error base classes and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the planner or setup helpers for reportable runtime failures."""

    kind = "agent_error"


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, missing model, unset key, etc.)."""

    kind = "config_error"


class ReportCollector:
    """Accumulates events during a conversation for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.provider_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.turn_drops = 0
        self.retries = 0
        self.fallbacks = 0
        self.guardrail_interventions = 0
        self.malformed_tool_calls = 0
        self.truncated_responses = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0

    def _provider(self, provider_id: str) -> dict[str, int]:
        return self.provider_stats.setdefault(
            provider_id, {"calls": 0, "retries": 0, "failures": 0}
        )

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        finish_reason: str,
        *,
        provider: str | None = None,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        if provider is not None:
            self._provider(provider)["calls"] += 1
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
            "is_retry": is_retry,
        }
        if provider is not None:
            event["provider"] = provider
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_retry(
        self, turn: int, provider: str, attempt: int, error_kind: str, delay: float
    ):
        self.retries += 1
        self._provider(provider)["retries"] += 1
        self.events.append(
            {
                "turn": turn,
                "type": "retry",
                "provider": provider,
                "attempt": attempt,
                "error_kind": error_kind,
                "delay_s": round(delay, 3),
            }
        )

    def record_fallback(
        self, turn: int, from_provider: str, to_provider: str, error_kind: str
    ):
        self.fallbacks += 1
        self._provider(from_provider)["failures"] += 1
        self.events.append(
            {
                "turn": turn,
                "type": "fallback",
                "from": from_provider,
                "to": to_provider,
                "error_kind": error_kind,
            }
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compaction(
        self, turn: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        if strategy == "drop_oldest_turns":
            self.turn_drops += 1
        else:
            self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_guardrail(self, turn: int, tool: str, level: str):
        self.guardrail_interventions += 1
        self.events.append(
            {"turn": turn, "type": "guardrail", "tool": tool, "level": level}
        )

    def record_malformed_tool_call(self, turn: int, detail: str):
        self.malformed_tool_calls += 1
        self.events.append(
            {"turn": turn, "type": "malformed_tool_call", "detail": detail}
        )

    def record_truncated_response(self, turn: int):
        self.truncated_responses += 1
        self.events.append({"turn": turn, "type": "truncated_response"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_kind: str | None = None,
        error_message: str | None = None,
        usage: dict | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_kind is not None:
            result["error_kind"] = error_kind
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "providers": dict(self.provider_stats),
                "compactions": self.compactions,
                "turn_drops": self.turn_drops,
                "retries": self.retries,
                "fallbacks": self.fallbacks,
                "guardrail_interventions": self.guardrail_interventions,
                "malformed_tool_calls": self.malformed_tool_calls,
                "truncated_responses": self.truncated_responses,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                **({"usage": usage} if usage else {}),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
