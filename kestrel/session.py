"""Session state: the conversation, model selection and context policy."""

import threading
from dataclasses import dataclass
from pathlib import Path

from .context import CompactionStep, ContextPolicy, estimate_tokens
from .errors import AgentError
from .messages import Conversation
from .providers import Provider


@dataclass(frozen=True)
class ProviderSession:
    """Backend and model pinned for the duration of one turn."""

    provider: Provider
    model: str
    turn_index: int


class Session:
    """One conversation with one model, driven a turn at a time.

    Model changes requested while a turn is running are held back and
    applied when the next turn begins.
    """

    def __init__(
        self,
        provider: Provider,
        model: str,
        *,
        system_prompt: str | None = None,
        context_policy: ContextPolicy | None = None,
        conversation: Conversation | None = None,
    ):
        self.system_prompt = system_prompt
        self.conversation = conversation if conversation is not None else Conversation()
        self.context_policy = context_policy or ContextPolicy.for_context_length(
            provider.context_length
        )
        self._provider = provider
        self._model = model
        self._pending: tuple[Provider, str] | None = None
        self._lock = threading.Lock()
        self._active = False
        self._turn_index = 0

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    @property
    def pending_model(self) -> str | None:
        return self._pending[1] if self._pending else None

    @property
    def is_active(self) -> bool:
        return self._active

    def set_model(self, model: str, provider: Provider | None = None) -> None:
        with self._lock:
            selection = (provider or self._provider, model)
            if self._active:
                self._pending = selection
            else:
                self._provider, self._model = selection
                self._pending = None

    def begin_turn(self) -> ProviderSession:
        with self._lock:
            if self._active:
                raise AgentError("a turn is already in progress for this session")
            if self._pending is not None:
                self._provider, self._model = self._pending
                self._pending = None
            self._active = True
            self._turn_index += 1
            return ProviderSession(self._provider, self._model, self._turn_index)

    def end_turn(self) -> None:
        with self._lock:
            self._active = False
            if self._pending is not None:
                self._provider, self._model = self._pending
                self._pending = None

    def clear_conversation(self) -> int:
        """Drop every message. Returns how many were removed."""
        with self._lock:
            if self._active:
                raise AgentError("cannot clear the conversation during a turn")
            removed = len(self.conversation)
            self.conversation.clear()
            return removed

    def _system_tokens(self) -> int:
        if not self.system_prompt:
            return 0
        return estimate_tokens([{"role": "system", "content": self.system_prompt}])

    def token_estimate(self, tools: list | None = None) -> int:
        return estimate_tokens(list(self.conversation), tools) + self._system_tokens()

    def prepare_context(
        self, tools: list | None = None, *, force: bool = False
    ) -> list[CompactionStep]:
        """Compact the conversation if it exceeds the policy threshold."""
        if self.conversation.pending_tool_calls:
            return []
        messages, steps = self.context_policy.apply(
            list(self.conversation),
            tools,
            extra_tokens=self._system_tokens(),
            force=force,
        )
        if steps:
            self.conversation.replace(messages)
        return steps

    def save(self, path) -> None:
        Path(path).write_text(self.conversation.dumps() + "\n", encoding="utf-8")

    def load(self, path) -> None:
        """Replace the conversation with the one stored at ``path``."""
        conversation = Conversation.loads(Path(path).read_text(encoding="utf-8"))
        with self._lock:
            if self._active:
                raise AgentError("cannot load a conversation during a turn")
            self.conversation = conversation
