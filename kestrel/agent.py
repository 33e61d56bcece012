"""The agent loop: model round-trips, tool dispatch and turn termination."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterator

from .cancel import CancelToken
from .errors import Cancelled, ProviderError, TurnLimitExceeded
from .executor import ToolExecutor, cancelled_result
from .messages import CANCELLED_MARKER, Message, Role, TextBlock
from .report import ReportCollector
from .session import ProviderSession, Session
from .stream import Notice, StreamDispatcher, ToolResultReady, TurnFinished

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 50

CONTINUATION_PROMPT = (
    "Your response was cut off. Please use the provided tools to complete "
    "the task step by step."
)


@dataclass
class TurnOutcome:
    status: str  # "completed" | "cancelled" | "failed" | "turn_limit"
    answer: str | None = None
    round_trips: int = 0
    error: Exception | None = None
    retryable: bool = False


def _canonical_error(error: str) -> str:
    """Extract a stable error fingerprint for repeat detection."""
    return error.split("\n", 1)[0]


class _RepeatedErrorGuard:
    """Tracks identical consecutive errors per tool and writes interventions."""

    def __init__(self):
        self.consecutive: dict[str, tuple[str, int]] = {}

    def observe(self, tool_name: str, content: str, failed: bool):
        """Return (level, count, canonical_error, text) or None."""
        if not failed:
            self.consecutive.pop(tool_name, None)
            return None
        canonical = _canonical_error(content)
        prev_error, prev_count = self.consecutive.get(tool_name, ("", 0))
        count = prev_count + 1 if canonical == prev_error else 1
        self.consecutive[tool_name] = (canonical, count)

        if count >= 3:
            return (
                "stop",
                count,
                canonical,
                f"STOP: You have failed to use `{tool_name}` correctly {count} times "
                "in a row with the same error. Do NOT call "
                f"`{tool_name}` again with the same arguments. "
                "Either fix the arguments or use a completely different approach "
                "to accomplish your task.",
            )
        if count == 2:
            return (
                "nudge",
                count,
                canonical,
                f"IMPORTANT: You have called `{tool_name}` {count} times with the "
                f"same error. The error is: {canonical}\n"
                "Please carefully re-read the error message and fix your tool call. "
                "If you cannot use this tool correctly, use a different approach.",
            )
        return None


class AgentLoop:
    """Drives turns of one Session.

    The loop is the only place where model output turns into tool side
    effects. Each turn gets its own CancelToken so ``cancel_active_turn``
    can be called from another thread (a signal handler, a UI thread).
    """

    def __init__(
        self,
        session: Session,
        executor: ToolExecutor,
        *,
        max_turns: int = DEFAULT_MAX_TURNS,
        report: ReportCollector | None = None,
    ):
        self.session = session
        self.executor = executor
        self.max_turns = max_turns
        self.report = report
        self.total_round_trips = 0
        self._lock = threading.Lock()
        self._active_token: CancelToken | None = None

    def cancel_active_turn(self) -> bool:
        """Cancel the running turn. Returns False if no turn is running."""
        with self._lock:
            token = self._active_token
        if token is None:
            return False
        token.cancel()
        return True

    def run_turn(self, text: str) -> TurnOutcome:
        outcome = None
        for event in self.submit_user_message(text):
            if isinstance(event, TurnFinished):
                outcome = event.outcome
        return outcome

    def submit_user_message(self, text: str) -> Iterator:
        """Run one turn, yielding display events; always ends with TurnFinished."""
        provider_session = self.session.begin_turn()
        token = CancelToken()
        with self._lock:
            self._active_token = token
        try:
            outcome = yield from self._drive(text, provider_session, token)
        except BaseException:
            # Caller closed the stream or the turn blew up between appends
            token.cancel()
            self._close_abandoned_turn()
            raise
        finally:
            with self._lock:
                self._active_token = None
            self.session.end_turn()
        logger.info(
            "turn %d finished: %s after %d round trips",
            provider_session.turn_index,
            outcome.status,
            outcome.round_trips,
        )
        yield TurnFinished(outcome)

    # -- Turn body -----------------------------------------------------------

    def _cancel(self, text: str, round_trips: int) -> TurnOutcome:
        """Close the turn with the partial text and a cancellation marker."""
        blocks = [TextBlock(text)] if text else []
        blocks.append(TextBlock(CANCELLED_MARKER))
        self.session.conversation.append(Message(Role.ASSISTANT, tuple(blocks)))
        if self.report:
            self.report.record_cancellation(self.total_round_trips, len(text))
        return TurnOutcome("cancelled", text or None, round_trips)

    def _close_abandoned_turn(self) -> None:
        """Resolve every open call and mark the turn cancelled."""
        conversation = self.session.conversation
        for call_id in conversation.pending_tool_calls:
            conversation.append(Message.tool(cancelled_result(call_id)))
        conversation.append(Message.assistant(CANCELLED_MARKER))
        if self.report:
            self.report.record_cancellation(self.total_round_trips, 0)

    def _drive(self, text: str, ps: ProviderSession, token: CancelToken):
        conversation = self.session.conversation
        conversation.append(Message.user(text))
        tools = self.executor.schemas()
        dispatcher = StreamDispatcher(token)
        guard = _RepeatedErrorGuard()
        last_text: str | None = None
        round_trips = 0

        while round_trips < self.max_turns:
            if token.is_cancelled:
                return self._cancel("", round_trips)
            round_trips += 1
            self.total_round_trips += 1
            turn_no = self.total_round_trips

            for step in self.session.prepare_context(tools):
                if self.report:
                    self.report.record_compaction(
                        turn_no, step.strategy, step.tokens_before, step.tokens_after
                    )
                yield Notice(
                    "compaction",
                    f"{step.strategy}: {step.tokens_before} -> {step.tokens_after} tokens",
                )

            token_est = self.session.token_estimate(tools)
            logger.debug(
                "round trip %d/%d with %s (~%d tokens)",
                round_trips,
                self.max_turns,
                ps.model,
                token_est,
            )

            retries: list[Notice] = []

            def on_retry(attempt: int, delay: float, err: ProviderError):
                if self.report:
                    self.report.record_retry(turn_no, attempt, delay, err.kind)
                retries.append(
                    Notice(
                        "retry",
                        f"{err.kind}: retrying in {delay:.1f}s (attempt {attempt})",
                    )
                )

            t0 = time.monotonic()
            try:
                events = ps.provider.send(
                    list(conversation),
                    ps.model,
                    tools,
                    system_prompt=self.session.system_prompt,
                    cancel_token=token,
                    on_retry=on_retry,
                )
                yield from retries
                result = yield from dispatcher.dispatch(events)
            except Cancelled:
                yield from retries
                return self._cancel("", round_trips)
            except ProviderError as e:
                yield from retries
                if self.report:
                    self.report.record_llm_call(
                        turn_no, time.monotonic() - t0, token_est, "error", error_kind=e.kind
                    )
                logger.warning("provider %s failed: %s", ps.provider.name, e)
                return TurnOutcome("failed", last_text, round_trips, e, e.retryable)

            elapsed = time.monotonic() - t0
            if result.cancelled:
                return self._cancel(result.text, round_trips)
            if self.report:
                self.report.record_llm_call(
                    turn_no, elapsed, token_est, result.finish_reason
                )

            if result.text:
                last_text = result.text

            if not result.tool_calls:
                if result.finish_reason == "max_tokens":
                    if result.text:
                        conversation.append(Message.assistant(result.text))
                    if self.report:
                        self.report.record_truncated_response(turn_no)
                    yield Notice(
                        "continuation", "response truncated, prompting continuation"
                    )
                    conversation.append(Message.user(CONTINUATION_PROMPT))
                    continue
                conversation.append(Message.assistant(result.text))
                return TurnOutcome("completed", result.text, round_trips)

            conversation.append(Message.assistant(result.text, result.tool_calls))
            timed = self.executor.execute_batch_timed(list(result.tool_calls), token)

            interventions: list[str] = []
            for call, (tool_result, tool_elapsed) in zip(result.tool_calls, timed):
                conversation.append(Message.tool(tool_result))
                yield ToolResultReady(call, tool_result, tool_elapsed)
                if self.report:
                    self.report.record_tool_call(
                        turn_no,
                        call.name,
                        call.arguments,
                        tool_result.outcome,
                        tool_elapsed,
                        len(tool_result.content),
                        tool_result.error_kind,
                    )
                verdict = guard.observe(
                    call.name, tool_result.content, tool_result.outcome == "error"
                )
                if verdict is not None:
                    level, count, canonical, note = verdict
                    interventions.append(note)
                    if self.report:
                        self.report.record_guardrail(turn_no, call.name, level)
                    yield Notice(
                        "guardrail",
                        f"{call.name} repeated the same error {count} times. "
                        f"Last error: {canonical}",
                    )

            if token.is_cancelled:
                return self._cancel("", round_trips)
            if interventions:
                conversation.append(Message.user("\n\n".join(interventions)))

        return TurnOutcome(
            "turn_limit", last_text, round_trips, TurnLimitExceeded(self.max_turns)
        )
