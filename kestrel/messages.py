"""Provider-agnostic conversation model.

Messages are immutable once built. The Conversation is an append-only log
that refuses any append which would leave a tool call without its result or
attach a result to the wrong call.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Union

CANCELLED_MARKER = "[turn cancelled by user]"

SERIAL_VERSION = 1


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the raw JSON text as emitted by the model; it is only
    decoded by the executor so malformed payloads can be reported back.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    outcome: str  # "success" | "error" | "cancelled"
    content: str
    error_kind: str | None = None

    @property
    def is_error(self) -> bool:
        return self.outcome != "success"


Block = Union[TextBlock, ToolCall, ToolResult]

_ALLOWED_BLOCKS = {
    Role.USER: (TextBlock,),
    Role.ASSISTANT: (TextBlock, ToolCall),
    Role.TOOL: (ToolResult,),
}

_OUTCOMES = ("success", "error", "cancelled")


@dataclass(frozen=True)
class Message:
    role: Role
    content: tuple = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "content", tuple(self.content))
        allowed = _ALLOWED_BLOCKS[self.role]
        for block in self.content:
            if not isinstance(block, allowed):
                raise ValueError(
                    f"{type(block).__name__} is not allowed in a {self.role.value} message"
                )
        if self.role is Role.TOOL and len(self.content) != 1:
            raise ValueError("a tool message carries exactly one ToolResult")
        if self.role is Role.TOOL and self.content[0].outcome not in _OUTCOMES:
            raise ValueError(f"invalid tool outcome {self.content[0].outcome!r}")

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(Role.USER, (TextBlock(text),))

    @classmethod
    def assistant(cls, text: str = "", tool_calls=()) -> "Message":
        blocks: list = [TextBlock(text)] if text else []
        blocks.extend(tool_calls)
        return cls(Role.ASSISTANT, tuple(blocks))

    @classmethod
    def tool(cls, result: ToolResult) -> "Message":
        return cls(Role.TOOL, (result,))

    @property
    def text(self) -> str:
        return "\n\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(b for b in self.content if isinstance(b, ToolCall))

    @property
    def tool_result(self) -> ToolResult | None:
        if self.role is Role.TOOL:
            return self.content[0]
        return None


class Conversation:
    """Ordered, append-only log of Messages.

    Invariants enforced by ``append``:
    - a tool message answers an outstanding call of the latest assistant
      message, and each call is answered at most once;
    - no user or assistant message is appended while calls are outstanding.
    """

    def __init__(self, messages=()):
        self._messages: list[Message] = []
        self._outstanding: list[str] = []
        for msg in messages:
            self.append(msg)

    def append(self, message: Message) -> None:
        if message.role is Role.TOOL:
            call_id = message.tool_result.tool_call_id
            if call_id not in self._outstanding:
                raise ValueError(
                    f"tool result {call_id!r} does not match an outstanding tool call"
                )
            self._outstanding.remove(call_id)
        else:
            if self._outstanding:
                raise ValueError(
                    f"cannot append a {message.role.value} message with unresolved "
                    f"tool calls: {', '.join(self._outstanding)}"
                )
            if message.role is Role.ASSISTANT:
                ids = [tc.id for tc in message.tool_calls]
                if len(set(ids)) != len(ids):
                    raise ValueError("duplicate tool call id in assistant message")
                self._outstanding = ids
        self._messages.append(message)

    @property
    def pending_tool_calls(self) -> tuple[str, ...]:
        """Ids of tool calls still waiting for a result."""
        return tuple(self._outstanding)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __getitem__(self, index):
        return self._messages[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, Conversation):
            return NotImplemented
        return self._messages == other._messages

    def replace(self, messages) -> None:
        """Swap in a compacted message list after validating it."""
        rebuilt = Conversation(messages)
        self._messages = rebuilt._messages
        self._outstanding = rebuilt._outstanding

    def clear(self) -> None:
        self._messages = []
        self._outstanding = []

    # -- Serialization -------------------------------------------------------

    def to_list(self) -> list[dict]:
        return [_message_to_dict(m) for m in self._messages]

    @classmethod
    def from_list(cls, data: list[dict]) -> "Conversation":
        return cls(_message_from_dict(d) for d in data)

    def dumps(self) -> str:
        return json.dumps(
            {"version": SERIAL_VERSION, "messages": self.to_list()}, indent=2
        )

    @classmethod
    def loads(cls, text: str) -> "Conversation":
        data = json.loads(text)
        if not isinstance(data, dict) or data.get("version") != SERIAL_VERSION:
            raise ValueError("unsupported conversation format")
        return cls.from_list(data.get("messages", []))


def _block_to_dict(block: Block) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolCall):
        return {
            "type": "tool_call",
            "id": block.id,
            "name": block.name,
            "arguments": block.arguments,
        }
    d = {
        "type": "tool_result",
        "tool_call_id": block.tool_call_id,
        "outcome": block.outcome,
        "content": block.content,
    }
    if block.error_kind is not None:
        d["error_kind"] = block.error_kind
    return d


def _block_from_dict(d: dict) -> Block:
    kind = d.get("type")
    if kind == "text":
        return TextBlock(d["text"])
    if kind == "tool_call":
        return ToolCall(d["id"], d["name"], d.get("arguments", "{}"))
    if kind == "tool_result":
        return ToolResult(
            d["tool_call_id"], d["outcome"], d["content"], d.get("error_kind")
        )
    raise ValueError(f"unknown content block type {kind!r}")


def _message_to_dict(message: Message) -> dict:
    return {
        "role": message.role.value,
        "content": [_block_to_dict(b) for b in message.content],
    }


def _message_from_dict(d: dict) -> Message:
    try:
        return Message(Role(d["role"]), [_block_from_dict(b) for b in d["content"]])
    except KeyError as e:
        raise ValueError(f"missing field {e} in serialized message") from e
