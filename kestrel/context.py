"""Context-size accounting and compaction strategies.

Compaction works on groups: an assistant message that requested tools is
always kept or dropped together with the results answering it.
"""

import json
from collections import Counter
from dataclasses import dataclass

import tiktoken

from .messages import Message, Role, ToolResult

_encoder = tiktoken.get_encoding("cl100k_base")

DEFAULT_THRESHOLD_RATIO = 0.8


def _message_text(m) -> str:
    if isinstance(m, Message):
        parts = [m.text]
        for tc in m.tool_calls:
            parts.append(tc.name + (tc.arguments or ""))
        if m.tool_result is not None:
            parts.append(m.tool_result.content)
        return "".join(parts)
    content = m.get("content", "") or ""
    for tc in m.get("tool_calls") or []:
        fn = tc.get("function", {})
        content += fn.get("name", "") + (fn.get("arguments", "") or "")
    return content


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across messages (Message objects or wire dicts) using tiktoken."""
    total = 0
    for m in messages:
        total += len(_encoder.encode(_message_text(m), disallowed_special=()))
    if tools:
        total += len(_encoder.encode(json.dumps(tools), disallowed_special=()))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def group_into_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into atomic units.

    A unit is either a single message, or an assistant message with tool
    calls followed by all of its tool results.
    """
    groups: list[list[Message]] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            ids = {tc.id for tc in msg.tool_calls}
            group = [msg]
            j = i + 1
            while (
                j < len(messages)
                and messages[j].role is Role.TOOL
                and messages[j].tool_result.tool_call_id in ids
            ):
                group.append(messages[j])
                j += 1
            groups.append(group)
            i = j
        else:
            groups.append([msg])
            i += 1
    return groups


def _flatten(groups: list[list[Message]]) -> list[Message]:
    return [m for g in groups for m in g]


class CompactionStrategy:
    """Reduces a message list without separating calls from their results."""

    name = "compaction"

    def compact(self, messages: list[Message]) -> list[Message]:
        raise NotImplementedError


class TruncateToolResults(CompactionStrategy):
    """Replace large tool results in older groups with a short stub."""

    name = "truncate_tool_results"

    def __init__(self, keep_recent: int = 2, max_chars: int = 1000):
        self.keep_recent = keep_recent
        self.max_chars = max_chars

    def compact(self, messages):
        groups = group_into_turns(messages)
        cutoff = max(0, len(groups) - self.keep_recent)
        for group in groups[:cutoff]:
            for k, msg in enumerate(group):
                result = msg.tool_result
                if result is None or len(result.content) <= self.max_chars:
                    continue
                stub = f"[compacted: originally {len(result.content)} chars]"
                group[k] = Message.tool(
                    ToolResult(result.tool_call_id, result.outcome, stub, result.error_kind)
                )
        return _flatten(groups)


class DropMiddleTurns(CompactionStrategy):
    """Drop whole groups between the opening request and the latest exchange.

    Kept: the leading user messages, the latest user message and the last
    ``keep_tail`` groups. The first dropped span is replaced by one user
    message summarizing what was removed, including which tools were called.
    """

    name = "drop_middle_turns"

    def __init__(self, keep_tail: int = 3):
        self.keep_tail = keep_tail

    def compact(self, messages):
        groups = group_into_turns(messages)

        keep: set[int] = set()
        for i, group in enumerate(groups):
            if group[0].role is not Role.USER:
                break
            keep.add(i)
        user_groups = [i for i, g in enumerate(groups) if g[0].role is Role.USER]
        if user_groups:
            keep.add(user_groups[-1])
        keep.update(range(max(0, len(groups) - self.keep_tail), len(groups)))

        dropped = [g for i, g in enumerate(groups) if i not in keep]
        if not dropped:
            return _flatten(groups)

        marker = Message.user(self._marker_text(dropped))
        result: list[Message] = []
        marker_placed = False
        for i, group in enumerate(groups):
            if i in keep:
                result.extend(group)
            elif not marker_placed:
                result.append(marker)
                marker_placed = True
        return result

    @staticmethod
    def _marker_text(dropped: list[list[Message]]) -> str:
        count = sum(len(g) for g in dropped)
        calls = Counter(tc.name for g in dropped for m in g for tc in m.tool_calls)
        text = (
            f"[context compacted: {count} earlier messages were removed "
            "to fit the context window"
        )
        if calls:
            digest = ", ".join(f"{name} x{n}" for name, n in sorted(calls.items()))
            text += f"; dropped tool calls: {digest}"
        return text + "]"


@dataclass
class CompactionStep:
    strategy: str
    tokens_before: int
    tokens_after: int


class ContextPolicy:
    """Applies compaction strategies in order until usage fits the threshold."""

    def __init__(self, threshold_tokens: int | None, strategies=None):
        self.threshold_tokens = threshold_tokens
        self.strategies = (
            list(strategies)
            if strategies is not None
            else [TruncateToolResults(), DropMiddleTurns()]
        )

    @classmethod
    def for_context_length(
        cls, context_length: int | None, ratio: float = DEFAULT_THRESHOLD_RATIO
    ) -> "ContextPolicy":
        if not context_length:
            return cls(None)
        return cls(int(context_length * ratio))

    def needs_compaction(self, messages, tools=None, extra_tokens: int = 0) -> bool:
        if self.threshold_tokens is None:
            return False
        return estimate_tokens(messages, tools) + extra_tokens > self.threshold_tokens

    def apply(
        self, messages: list[Message], tools=None, extra_tokens: int = 0, force=False
    ) -> tuple[list[Message], list[CompactionStep]]:
        """Return the compacted messages and the steps that changed something."""
        steps: list[CompactionStep] = []
        current = list(messages)
        for strategy in self.strategies:
            if not force and not self.needs_compaction(current, tools, extra_tokens):
                break
            before = estimate_tokens(current, tools)
            compacted = strategy.compact(current)
            after = estimate_tokens(compacted, tools)
            if compacted != current:
                steps.append(CompactionStep(strategy.name, before, after))
                current = compacted
        return current, steps
