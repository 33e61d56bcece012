"""End-to-end tests for the agent loop against a scripted provider."""

import sys
import time

import pytest

from kestrel.agent import CONTINUATION_PROMPT, AgentLoop, TurnOutcome
from kestrel.errors import AgentError, AuthError, RateLimitError, TurnLimitExceeded
from kestrel.executor import ToolExecutor
from kestrel.messages import CANCELLED_MARKER, Role
from kestrel.providers import ScriptedProvider
from kestrel.report import ReportCollector
from kestrel.session import Session
from kestrel.stream import (
    Notice,
    TextDelta,
    ToolCallRequested,
    ToolResultReady,
    TurnEnd,
    TurnFinished,
)
from kestrel.tools import Tool, ToolContext, build_tools

text = ScriptedProvider.text
tool_calls = ScriptedProvider.tool_calls


def _loop(tmp_path, responses, *, tools=None, max_turns=50, report=None, **provider_kw):
    provider = ScriptedProvider(responses, **provider_kw)
    session = Session(provider, "model-a")
    executor = ToolExecutor(
        tools if tools is not None else build_tools(), ToolContext(base_dir=str(tmp_path))
    )
    return AgentLoop(session, executor, max_turns=max_turns, report=report), provider


def _events(loop, message):
    return list(loop.submit_user_message(message))


def _roles(loop):
    return [m.role for m in loop.session.conversation]


class TestCompletion:
    def test_plain_answer(self, tmp_path):
        loop, provider = _loop(tmp_path, [text("Hello there")])
        events = _events(loop, "hi")

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hello there"]
        assert isinstance(events[-1], TurnFinished)
        outcome = events[-1].outcome
        assert outcome.status == "completed"
        assert outcome.answer == "Hello there"
        assert outcome.round_trips == 1
        assert _roles(loop) == [Role.USER, Role.ASSISTANT]
        assert provider.requests[0]["model"] == "model-a"
        assert provider.requests[0]["tools"]

    def test_run_turn_returns_outcome(self, tmp_path):
        loop, _ = _loop(tmp_path, [text("ok")])
        outcome = loop.run_turn("hi")
        assert isinstance(outcome, TurnOutcome)
        assert outcome.status == "completed"

    def test_list_dir_then_answer(self, tmp_path):
        (tmp_path / "README.md").write_text("# demo\n")
        loop, provider = _loop(
            tmp_path,
            [
                tool_calls(("call_1", "list_dir", {"path": "."})),
                text("The directory has a README."),
            ],
        )
        events = _events(loop, "What's in this directory?")

        requested = [e for e in events if isinstance(e, ToolCallRequested)]
        ready = [e for e in events if isinstance(e, ToolResultReady)]
        assert requested[0].call.name == "list_dir"
        assert ready[0].result.outcome == "success"
        assert "README.md" in ready[0].result.content
        assert ready[0].result.content.startswith("Directory: .")

        assert _roles(loop) == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        second_request = provider.requests[1]["messages"]
        assert second_request[-1]["role"] == "tool"
        assert second_request[-1]["tool_call_id"] == "call_1"
        assert events[-1].outcome.answer == "The directory has a README."

    def test_text_and_calls_in_one_response(self, tmp_path):
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(("c1", "list_files", {"pattern": "*"}), text="Let me look."),
                text("Nothing here."),
            ],
        )
        loop.run_turn("look")
        assistant = loop.session.conversation[1]
        assert assistant.text == "Let me look."
        assert assistant.tool_calls[0].name == "list_files"

    def test_conversation_carries_over_between_turns(self, tmp_path):
        loop, provider = _loop(tmp_path, [text("first"), text("second")])
        loop.run_turn("one")
        loop.run_turn("two")
        wire = provider.requests[1]["messages"]
        assert [m["role"] for m in wire] == ["user", "assistant", "user"]
        assert loop.total_round_trips == 2


class TestToolResults:
    def test_results_appended_in_request_order(self, tmp_path):
        for name in ("a.txt", "b.txt", "c.txt"):
            (tmp_path / name).write_text(name)
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(
                    ("c1", "read_file", {"file_path": "a.txt"}),
                    ("c2", "read_file", {"file_path": "b.txt"}),
                    ("c3", "read_file", {"file_path": "c.txt"}),
                ),
                text("read them all"),
            ],
        )
        events = _events(loop, "read")
        ready = [e.result.tool_call_id for e in events if isinstance(e, ToolResultReady)]
        assert ready == ["c1", "c2", "c3"]
        stored = [m.tool_result.tool_call_id for m in loop.session.conversation if m.tool_result]
        assert stored == ["c1", "c2", "c3"]

    def test_concurrent_calls_keep_order(self, tmp_path):
        def slow(ctx, value):
            time.sleep(float(value))
            return f"slept {value}"

        nap = Tool(
            "nap",
            "sleep a while",
            {"type": "object", "properties": {"value": {"type": "string"}}},
            slow,
            read_only=True,
        )
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(("a", "nap", {"value": "0.2"}), ("b", "nap", {"value": "0"})),
                text("rested"),
            ],
            tools=[nap],
        )
        loop.run_turn("nap")
        results = [m.tool_result for m in loop.session.conversation if m.tool_result]
        assert [r.content for r in results] == ["slept 0.2", "slept 0"]

    def test_malformed_arguments_reported_to_model(self, tmp_path):
        loop, provider = _loop(
            tmp_path,
            [
                tool_calls(("c1", "read_file", '{"file_path": ')),
                text("Sorry, retrying differently."),
            ],
        )
        outcome = loop.run_turn("read")
        assert outcome.status == "completed"
        result = loop.session.conversation[2].tool_result
        assert result.error_kind == "validation_error"
        assert "invalid JSON" in provider.requests[1]["messages"][-1]["content"]

    def test_unknown_tool(self, tmp_path):
        loop, _ = _loop(tmp_path, [tool_calls(("c1", "fly", {})), text("ok")])
        loop.run_turn("go")
        result = loop.session.conversation[2].tool_result
        assert result.outcome == "error"
        assert "unknown tool 'fly'" in result.content

    @pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX sleep")
    def test_shell_timeout_does_not_end_turn(self, tmp_path):
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(("c1", "run_command", {"command": "sleep 10", "timeout": 1})),
                text("The command timed out."),
            ],
        )
        t0 = time.monotonic()
        outcome = loop.run_turn("run it")
        assert time.monotonic() - t0 < 8
        assert outcome.status == "completed"
        result = loop.session.conversation[2].tool_result
        assert result.error_kind == "timeout"
        assert "timed out after 1s" in result.content


class TestProviderFailures:
    def test_rate_limit_exhausted_leaves_only_user_message(self, tmp_path):
        loop, provider = _loop(
            tmp_path, [RateLimitError("slow down") for _ in range(4)]
        )
        events = _events(loop, "hi")
        outcome = events[-1].outcome

        assert outcome.status == "failed"
        assert outcome.retryable
        assert isinstance(outcome.error, RateLimitError)
        assert len(provider.requests) == 4
        assert [e.kind for e in events if isinstance(e, Notice)] == ["retry"] * 3
        assert _roles(loop) == [Role.USER]

    def test_retry_then_success(self, tmp_path):
        loop, _ = _loop(tmp_path, [RateLimitError("busy"), text("made it")])
        outcome = loop.run_turn("hi")
        assert outcome.status == "completed"
        assert outcome.answer == "made it"

    def test_auth_error_not_retryable(self, tmp_path):
        loop, provider = _loop(tmp_path, [AuthError("bad key")])
        outcome = loop.run_turn("hi")
        assert outcome.status == "failed"
        assert not outcome.retryable
        assert len(provider.requests) == 1

    def test_context_too_large_fails_turn(self, tmp_path):
        loop, provider = _loop(tmp_path, [text("never")], context_length=5)
        outcome = loop.run_turn("a message that is clearly longer than five tokens")
        assert outcome.status == "failed"
        assert outcome.error.kind == "context_too_large"
        assert provider.requests == []

    def test_session_usable_after_failure(self, tmp_path):
        loop, _ = _loop(tmp_path, [AuthError("bad key"), text("fixed")])
        loop.run_turn("hi")
        assert loop.run_turn("again").status == "completed"
        assert _roles(loop) == [Role.USER, Role.USER, Role.ASSISTANT]


class TestTermination:
    def test_max_tokens_prompts_continuation(self, tmp_path):
        loop, _ = _loop(
            tmp_path, [text("partial answer", reason="max_tokens"), text("finished")]
        )
        events = _events(loop, "write a lot")
        assert [e.kind for e in events if isinstance(e, Notice)] == ["continuation"]
        texts = [m.text for m in loop.session.conversation]
        assert texts == ["write a lot", "partial answer", CONTINUATION_PROMPT, "finished"]
        assert events[-1].outcome.round_trips == 2

    def test_turn_limit(self, tmp_path):
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(("c1", "list_dir", {})),
                tool_calls(("c2", "list_dir", {})),
                text("never reached"),
            ],
            max_turns=2,
        )
        outcome = loop.run_turn("loop forever")
        assert outcome.status == "turn_limit"
        assert outcome.round_trips == 2
        assert isinstance(outcome.error, TurnLimitExceeded)
        assert loop.session.conversation.pending_tool_calls == ()
        assert loop.session.conversation[-1].role is Role.TOOL


class TestGuardrail:
    def test_repeated_errors_escalate(self, tmp_path):
        bad = {"file_path": "missing.txt"}
        loop, provider = _loop(
            tmp_path,
            [
                tool_calls(("c1", "read_file", bad)),
                tool_calls(("c2", "read_file", bad)),
                tool_calls(("c3", "read_file", bad)),
                text("giving up"),
            ],
        )
        events = _events(loop, "read it")

        notices = [e for e in events if isinstance(e, Notice)]
        assert [n.kind for n in notices] == ["guardrail", "guardrail"]
        user_texts = [m.text for m in loop.session.conversation if m.role is Role.USER]
        assert user_texts[1].startswith("IMPORTANT: You have called `read_file` 2 times")
        assert "path does not exist: missing.txt" in user_texts[1]
        assert user_texts[2].startswith("STOP: You have failed to use `read_file`")
        assert provider.requests[3]["messages"][-1]["role"] == "user"

    def test_success_resets_count(self, tmp_path):
        (tmp_path / "real.txt").write_text("x")
        bad = {"file_path": "missing.txt"}
        loop, _ = _loop(
            tmp_path,
            [
                tool_calls(("c1", "read_file", bad)),
                tool_calls(("c2", "read_file", {"file_path": "real.txt"})),
                tool_calls(("c3", "read_file", bad)),
                text("done"),
            ],
        )
        events = _events(loop, "read")
        assert not [e for e in events if isinstance(e, Notice)]


class TestCancellation:
    def test_cancel_mid_stream_keeps_partial_text(self, tmp_path):
        loop = None

        def response(wire):
            yield TextDelta("partial ")
            loop.cancel_active_turn()
            yield TextDelta("never shown")
            yield TurnEnd("end_turn")

        loop, _ = _loop(tmp_path, [response])
        events = _events(loop, "go")
        outcome = events[-1].outcome

        assert outcome.status == "cancelled"
        assert outcome.answer == "partial "
        last = loop.session.conversation[-1]
        assert last.role is Role.ASSISTANT
        assert last.text == f"partial \n\n{CANCELLED_MARKER}"
        assert [e.text for e in events if isinstance(e, TextDelta)] == ["partial "]

    def test_cancel_during_tools(self, tmp_path):
        loop = None

        def interrupt(ctx):
            loop.cancel_active_turn()
            return "interrupted"

        tools = [
            Tool("first", "", {"type": "object", "properties": {}}, interrupt),
            Tool("second", "", {"type": "object", "properties": {}}, lambda ctx: "ran"),
        ]
        loop, provider = _loop(
            tmp_path,
            [tool_calls(("c1", "first", {}), ("c2", "second", {})), text("unused")],
            tools=tools,
        )
        outcome = loop.run_turn("go")

        assert outcome.status == "cancelled"
        results = [m.tool_result for m in loop.session.conversation if m.tool_result]
        assert [r.outcome for r in results] == ["success", "cancelled"]
        assert loop.session.conversation[-1].text == CANCELLED_MARKER
        assert len(provider.requests) == 1

    def test_next_turn_after_cancel(self, tmp_path):
        loop = None

        def response(wire):
            loop.cancel_active_turn()
            yield TurnEnd("end_turn")

        loop, provider = _loop(tmp_path, [response, text("back")])
        assert loop.run_turn("first").status == "cancelled"
        assert loop.run_turn("second").answer == "back"
        wire = provider.requests[1]["messages"]
        assert wire[1]["content"] == CANCELLED_MARKER

    def test_closing_stream_resolves_open_calls(self, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        loop, provider = _loop(
            tmp_path,
            [
                tool_calls(("c1", "list_dir", {"path": "."}), ("c2", "list_dir", {"path": "."})),
                text("back"),
            ],
        )
        stream = loop.submit_user_message("look")
        for event in stream:
            if isinstance(event, ToolResultReady):
                break
        stream.close()

        conversation = loop.session.conversation
        assert conversation.pending_tool_calls == ()
        results = [m.tool_result for m in conversation if m.tool_result]
        assert [(r.tool_call_id, r.outcome) for r in results] == [
            ("c1", "success"),
            ("c2", "cancelled"),
        ]
        assert conversation[-1].text == CANCELLED_MARKER
        assert loop.session.is_active is False

        assert loop.run_turn("again").answer == "back"
        assert len(provider.requests) == 2

    def test_abandoned_stream_before_tools(self, tmp_path):
        loop, _ = _loop(tmp_path, [[TextDelta("half"), TextDelta(" more"), TurnEnd("end_turn")]])
        stream = loop.submit_user_message("go")
        assert next(stream) == TextDelta("half")
        stream.close()

        assert _roles(loop) == [Role.USER, Role.ASSISTANT]
        assert loop.session.conversation[-1].text == CANCELLED_MARKER

    def test_cancel_without_active_turn(self, tmp_path):
        loop, _ = _loop(tmp_path, [])
        assert loop.cancel_active_turn() is False


class TestSessionInteraction:
    def test_model_switch_waits_for_turn_end(self, tmp_path):
        loop = None

        def switch(wire):
            loop.session.set_model("model-b")
            return tool_calls(("c1", "list_dir", {}))

        loop, provider = _loop(tmp_path, [switch, text("done"), text("again")])
        loop.run_turn("go")
        assert [r["model"] for r in provider.requests] == ["model-a", "model-a"]
        loop.run_turn("next")
        assert provider.requests[-1]["model"] == "model-b"

    def test_turn_releases_session(self, tmp_path):
        loop, _ = _loop(tmp_path, [AuthError("nope")])
        loop.run_turn("hi")
        assert not loop.session.is_active

    def test_concurrent_submit_rejected(self, tmp_path):
        loop, _ = _loop(tmp_path, [text("a")])
        loop.session.begin_turn()
        with pytest.raises(AgentError):
            loop.run_turn("hi")


class TestReport:
    def test_events_recorded(self, tmp_path):
        report = ReportCollector()
        loop, _ = _loop(
            tmp_path,
            [
                RateLimitError("busy"),
                tool_calls(("c1", "read_file", {"file_path": "nope.txt"})),
                text("done"),
            ],
            report=report,
        )
        loop.run_turn("go")

        types = [e["type"] for e in report.events]
        assert types == ["retry", "llm_call", "tool_call", "llm_call"]
        tool_event = report.events[2]
        assert tool_event["name"] == "read_file"
        assert tool_event["arguments"] == {"file_path": "nope.txt"}
        assert tool_event["outcome"] == "error"
        assert tool_event["error_kind"] == "not_found"
        assert report.tool_stats == {
            "read_file": {"succeeded": 0, "failed": 1, "cancelled": 0}
        }
        assert report.max_turn_seen == 2

    def test_failed_call_recorded(self, tmp_path):
        report = ReportCollector()
        loop, _ = _loop(tmp_path, [AuthError("bad key")], report=report)
        loop.run_turn("go")
        assert report.events[-1]["finish_reason"] == "error"
        assert report.events[-1]["error_kind"] == "auth"

    def test_compaction_recorded(self, tmp_path):
        report = ReportCollector()
        lines = "".join(f"alpha beta gamma delta {i}\n" for i in range(300))
        (tmp_path / "big.txt").write_text(lines)
        responses = [
            tool_calls((f"c{i}", "read_file", {"file_path": "big.txt"})) for i in range(5)
        ] + [text("done")]
        loop, _ = _loop(tmp_path, responses, report=report, context_length=12_000)
        events = _events(loop, "read repeatedly")
        assert any(isinstance(e, Notice) and e.kind == "compaction" for e in events)
        assert report.compactions >= 1
        assert events[-1].outcome.status == "completed"
