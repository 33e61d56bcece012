"""Normalized streaming vocabulary and the dispatcher that consumes it.

Providers turn backend chunks into the provider events below. The
dispatcher folds them into text and complete tool calls, forwarding display
events to the caller as they become available.
"""

from dataclasses import dataclass, field
from typing import Any, Generator, Iterable

from .cancel import CancelToken
from .errors import MalformedResponse, provider_error
from .messages import ToolCall, ToolResult


# -- Provider events ---------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgumentsDelta:
    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class TurnEnd:
    reason: str  # "end_turn" | "tool_use" | "max_tokens" | backend-specific


@dataclass(frozen=True)
class StreamError:
    kind: str
    message: str = ""


# -- Display events ----------------------------------------------------------


@dataclass(frozen=True)
class ToolCallRequested:
    call: ToolCall


@dataclass(frozen=True)
class ToolResultReady:
    call: ToolCall
    result: ToolResult
    elapsed: float = 0.0


@dataclass(frozen=True)
class Notice:
    kind: str  # "retry" | "compaction" | "guardrail" | "continuation" | ...
    message: str


@dataclass(frozen=True)
class TurnFinished:
    outcome: Any  # agent.TurnOutcome


@dataclass
class StreamResult:
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    finish_reason: str | None = None
    cancelled: bool = False


class _PendingCall:
    __slots__ = ("id", "name", "fragments", "closed")

    def __init__(self, call_id: str, name: str):
        self.id = call_id
        self.name = name
        self.fragments: list[str] = []
        self.closed = False

    def build(self) -> ToolCall:
        return ToolCall(self.id, self.name, "".join(self.fragments) or "{}")


class StreamDispatcher:
    """Single consumer of one provider stream.

    ``dispatch`` is a generator: it yields display events and returns a
    StreamResult, so callers drive it with ``yield from``.
    """

    def __init__(self, cancel_token: CancelToken | None = None):
        self.cancel_token = cancel_token or CancelToken()

    def dispatch(self, events: Iterable) -> Generator[Any, None, StreamResult]:
        text_parts: list[str] = []
        pending: dict[str, _PendingCall] = {}
        finish_reason = None
        iterator = iter(events)
        completed = False

        try:
            while True:
                if self.cancel_token.is_cancelled:
                    break
                try:
                    event = next(iterator)
                except StopIteration:
                    raise MalformedResponse("stream ended before the turn finished")
                # A cancel request that arrived while waiting wins over the event
                if self.cancel_token.is_cancelled:
                    break

                if isinstance(event, TextDelta):
                    if event.text:
                        text_parts.append(event.text)
                        yield event
                elif isinstance(event, ToolCallStart):
                    if event.id in pending:
                        raise MalformedResponse(f"duplicate tool call id {event.id!r}")
                    pending[event.id] = _PendingCall(event.id, event.name)
                elif isinstance(event, ToolCallArgumentsDelta):
                    call = pending.get(event.id)
                    if call is None or call.closed:
                        raise MalformedResponse(
                            f"arguments for unknown tool call {event.id!r}"
                        )
                    call.fragments.append(event.fragment)
                elif isinstance(event, ToolCallEnd):
                    call = pending.get(event.id)
                    if call is None or call.closed:
                        raise MalformedResponse(f"unexpected end of tool call {event.id!r}")
                    call.closed = True
                    yield ToolCallRequested(call.build())
                elif isinstance(event, TurnEnd):
                    for call in pending.values():
                        if not call.closed:
                            call.closed = True
                            yield ToolCallRequested(call.build())
                    finish_reason = event.reason
                    completed = True
                    break
                elif isinstance(event, StreamError):
                    raise provider_error(event.kind, event.message or event.kind)
                else:
                    raise MalformedResponse(f"unknown stream event {event!r}")
        finally:
            if not completed:
                close = getattr(iterator, "close", None)
                if close is not None:
                    close()

        return StreamResult(
            text="".join(text_parts),
            tool_calls=tuple(c.build() for c in pending.values() if c.closed),
            finish_reason=finish_reason,
            cancelled=not completed,
        )
