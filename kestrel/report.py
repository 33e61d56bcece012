"""JSON run reports: a timeline of model calls, tool calls and interventions."""

import json
from datetime import datetime, timezone


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.turn_drops = 0
        self.guardrail_interventions = 0
        self.truncated_responses = 0
        self.retries = 0
        self.cancellations = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def _seen(self, turn: int):
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        finish_reason: str,
        *,
        error_kind: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self._seen(turn)
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
        }
        if error_kind is not None:
            event["error_kind"] = error_kind
        self.events.append(event)

    def record_retry(self, turn: int, attempt: int, delay: float, kind: str):
        self.retries += 1
        self.events.append(
            {
                "turn": turn,
                "type": "retry",
                "attempt": attempt,
                "delay_s": round(delay, 3),
                "error_kind": kind,
            }
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: str,
        outcome: str,
        duration: float,
        result_length: int,
        error_kind: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"succeeded": 0, "failed": 0, "cancelled": 0}
        )
        if outcome == "success":
            stats["succeeded"] += 1
        elif outcome == "cancelled":
            stats["cancelled"] += 1
        else:
            stats["failed"] += 1
        try:
            parsed = json.loads(arguments)
        except (json.JSONDecodeError, TypeError):
            parsed = arguments
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": parsed,
            "outcome": outcome,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error_kind is not None:
            event["error_kind"] = error_kind
        self.events.append(event)

    def record_compaction(
        self, turn: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        if strategy == "drop_middle_turns":
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

    def record_truncated_response(self, turn: int):
        self.truncated_responses += 1
        self.events.append({"turn": turn, "type": "truncated_response"})

    def record_cancellation(self, turn: int, partial_chars: int):
        self.cancellations += 1
        self.events.append(
            {"turn": turn, "type": "cancellation", "partial_chars": partial_chars}
        )

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
        error_message: str | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())
        cancelled = sum(s["cancelled"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
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
                "tool_calls_total": succeeded + failed + cancelled,
                "tool_calls_succeeded": succeeded,
                "tool_calls_failed": failed,
                "tool_calls_cancelled": cancelled,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "turn_drops": self.turn_drops,
                "guardrail_interventions": self.guardrail_interventions,
                "truncated_responses": self.truncated_responses,
                "retries": self.retries,
                "cancellations": self.cancellations,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for ``write``."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise RuntimeError("finalize() must be called before write()")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
