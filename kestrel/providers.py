"""Provider adapters: conversation encoding, streaming and error normalization.

Every hosted backend goes through LiteLLM. The variants differ only in how
they route the model name, where credentials come from and which models
they advertise. Each adapter turns LiteLLM stream chunks into the
normalized events of ``kestrel.stream``.
"""

import itertools
import json
import logging
import os
import re
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Callable, Iterator

from .cancel import CancelToken
from .context import estimate_tokens
from .errors import (
    AuthError,
    Cancelled,
    ConfigError,
    ContextTooLarge,
    InvalidRequest,
    MalformedResponse,
    NetworkError,
    ProviderError,
    RateLimitError,
)
from .messages import Message, Role
from .stream import (
    StreamError,
    TextDelta,
    ToolCallArgumentsDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
)

logger = logging.getLogger(__name__)

LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

FINISH_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}

RetryCallback = Callable[[int, float, ProviderError], None]


def normalize_finish_reason(reason: str | None) -> str:
    if not reason:
        return "end_turn"
    return FINISH_REASONS.get(reason, reason)


# ---------------------------------------------------------------------------
# Wire encoding
# ---------------------------------------------------------------------------


def encode_messages(messages, system_prompt: str | None = None) -> list[dict]:
    """Encode Messages in the OpenAI chat schema accepted by LiteLLM."""
    wire: list[dict] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for m in messages:
        if m.role is Role.USER:
            wire.append({"role": "user", "content": m.text})
        elif m.role is Role.ASSISTANT:
            entry: dict = {"role": "assistant", "content": m.text or None}
            if m.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in m.tool_calls
                ]
            wire.append(entry)
        else:
            result = m.tool_result
            content = result.content
            if result.outcome == "error" and not content.startswith("error:"):
                content = f"error: {content}"
            wire.append(
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": content}
            )
    return wire


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_exception(exc: BaseException) -> ProviderError:
    """Map a LiteLLM (or transport) exception onto the ProviderError taxonomy."""
    import litellm

    if isinstance(exc, ProviderError):
        return exc
    text = str(exc)
    if isinstance(exc, litellm.ContextWindowExceededError):
        return ContextTooLarge(f"context window exceeded: {text}")
    if isinstance(exc, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return AuthError(f"authentication failed: {text}")
    if isinstance(exc, litellm.RateLimitError):
        retry_after = getattr(exc, "retry_after", None)
        if not isinstance(retry_after, (int, float)):
            retry_after = None
        return RateLimitError(f"rate limit exceeded: {text}", retry_after=retry_after)
    if isinstance(
        exc,
        (
            litellm.APIConnectionError,
            litellm.Timeout,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
        ),
    ):
        return NetworkError(f"transient backend failure: {text}")
    if isinstance(exc, litellm.BadRequestError):
        if _CONTEXT_OVERFLOW_RE.search(text):
            return ContextTooLarge(f"context window exceeded (inferred): {text}")
        return InvalidRequest(f"request rejected: {text}")
    if isinstance(exc, litellm.NotFoundError):
        return InvalidRequest(f"model or endpoint not found: {text}")
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return NetworkError(f"connection failed: {text}")
    if isinstance(exc, litellm.APIError):
        status = getattr(exc, "status_code", None)
        if isinstance(status, int) and status >= 500:
            return NetworkError(f"server error ({status}): {text}")
    return ProviderError(f"LLM call failed: {text}")


# ---------------------------------------------------------------------------
# Chunk normalization
# ---------------------------------------------------------------------------


def events_from_chunks(chunks) -> Iterator:
    """Translate LiteLLM streaming chunks into normalized stream events.

    Failures while iterating become a single StreamError event; nothing is
    raised out of the generator.
    """
    open_calls: dict[int, str] = {}
    finish_reason = None
    try:
        for chunk in chunks:
            choices = getattr(chunk, "choices", None)
            if not choices:
                continue
            choice = choices[0]
            delta = getattr(choice, "delta", None)
            if delta is not None:
                content = getattr(delta, "content", None)
                if content:
                    yield TextDelta(content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tc, "index", None)
                    if index is None:
                        known = [k for k, v in open_calls.items() if v == tc.id]
                        if known:
                            index = known[0]
                        elif tc.id:
                            index = len(open_calls)
                        else:
                            index = max(open_calls, default=0)
                    fn = getattr(tc, "function", None)
                    if index not in open_calls:
                        # Some backends omit ids
                        call_id = tc.id or f"call_{uuid.uuid4().hex[:12]}"
                        open_calls[index] = call_id
                        yield ToolCallStart(call_id, (fn and fn.name) or "")
                    arguments = fn.arguments if fn is not None else None
                    if arguments:
                        yield ToolCallArgumentsDelta(open_calls[index], arguments)
            if getattr(choice, "finish_reason", None):
                finish_reason = choice.finish_reason
    except Exception as e:
        error = classify_exception(e)
        kind = error.kind if type(error) is not ProviderError else "malformed_response"
        yield StreamError(kind, str(error))
        return

    for call_id in open_calls.values():
        yield ToolCallEnd(call_id)
    yield TurnEnd(normalize_finish_reason(finish_reason))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for retryable provider errors."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int, error: ProviderError | None = None) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(self.max_delay, float(retry_after))
        return min(self.max_delay, self.base_delay * (2**attempt))


class Provider:
    """Common contract of every backend adapter."""

    name = "provider"

    def __init__(
        self,
        *,
        context_length: int | None = None,
        max_output_tokens: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.context_length = context_length
        self.max_output_tokens = max_output_tokens
        self.retry_policy = retry_policy or RetryPolicy()

    def supported_models(self) -> list[str]:
        return []

    def open_stream(
        self, wire: list[dict], model: str, tools: list | None, max_tokens: int | None
    ) -> Iterator:
        """Start a request and return its event iterator. Raise ProviderError to fail."""
        raise NotImplementedError

    def check_context(self, wire: list[dict], tools: list | None) -> int:
        """Reject requests that cannot fit the context window. Returns the estimate."""
        tokens = estimate_tokens(wire, tools)
        if self.context_length and tokens > self.context_length:
            raise ContextTooLarge(
                f"context window exceeded: {tokens} tokens exceeds "
                f"{self.context_length} limit",
                current=tokens,
                limit=self.context_length,
            )
        return tokens

    def output_budget(self, prompt_tokens: int) -> int | None:
        """Reduce max output tokens if prompt + output would exceed the context."""
        if self.max_output_tokens is None or not self.context_length:
            return self.max_output_tokens
        return max(1, min(self.max_output_tokens, self.context_length - prompt_tokens))

    def send(
        self,
        messages: list[Message],
        model: str,
        tools: list | None = None,
        *,
        system_prompt: str | None = None,
        cancel_token: CancelToken | None = None,
        on_retry: RetryCallback | None = None,
    ) -> Iterator:
        """Send the conversation and return a stream of normalized events.

        Retryable errors raised while opening the stream are retried with
        backoff; the backoff wait ends early with Cancelled if the token fires.
        """
        wire = encode_messages(messages, system_prompt)
        max_tokens = self.output_budget(self.check_context(wire, tools))
        token = cancel_token or CancelToken()

        attempt = 0
        while True:
            token.raise_if_cancelled()
            try:
                return self.open_stream(wire, model, tools, max_tokens)
            except ProviderError as e:
                if not e.retryable or attempt >= self.retry_policy.max_retries:
                    raise
                delay = self.retry_policy.delay(attempt, e)
                attempt += 1
                logger.warning(
                    "%s: %s, retrying in %.1fs (attempt %d/%d)",
                    self.name,
                    e.kind,
                    delay,
                    attempt,
                    self.retry_policy.max_retries,
                )
                if on_retry is not None:
                    on_retry(attempt, delay, e)
                if token.wait(delay):
                    raise Cancelled()


class LiteLLMProvider(Provider):
    """Backend reached through ``litellm.completion(stream=True)``."""

    name = "litellm"
    prefix = ""
    env_key: str | None = None

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        models: list[str] | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.models = models

    def model_string(self, model: str) -> str:
        if not self.prefix or model.startswith(self.prefix + "/"):
            return model
        return f"{self.prefix}/{model}"

    def connection_kwargs(self) -> dict:
        kwargs = {}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs

    def supported_models(self) -> list[str]:
        if self.models:
            return list(self.models)
        import litellm

        return sorted(litellm.models_by_provider.get(self.prefix, []))

    def open_stream(self, wire, model, tools, max_tokens=None):
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs = dict(
            model=self.model_string(model),
            messages=wire,
            stream=True,
            **self.connection_kwargs(),
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"
        for key, val in [
            ("max_tokens", max_tokens),
            ("temperature", self.temperature),
            ("top_p", self.top_p),
            ("seed", self.seed),
        ]:
            if val is not None:
                completion_kwargs[key] = val

        logger.debug("calling %s", completion_kwargs["model"])
        try:
            response = litellm.completion(**completion_kwargs)
            chunks = iter(response)
            # Pull the first chunk so connection-time failures stay retryable
            first = next(chunks, None)
        except Exception as e:
            raise classify_exception(e) from e

        head = [first] if first is not None else []
        return events_from_chunks(itertools.chain(head, chunks))


class LMStudioProvider(LiteLLMProvider):
    name = "lmstudio"
    prefix = "openai"

    def __init__(self, *, base_url: str | None = None, **kwargs):
        super().__init__(base_url=base_url or LMSTUDIO_BASE_URL, **kwargs)

    def model_string(self, model):
        return f"openai/{model}"

    def connection_kwargs(self):
        return {"api_base": f"{self.base_url}/v1", "api_key": "lm-studio"}

    def _fetch_models(self) -> list[dict]:
        url = f"{self.base_url}/api/v1/models"
        try:
            with urllib.request.urlopen(urllib.request.Request(url), timeout=10) as resp:
                data = json.loads(resp.read().decode())
        except urllib.error.URLError as e:
            raise NetworkError(f"could not connect to LM Studio at {self.base_url}: {e}")
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"invalid JSON from {url}: {e}")
        # "data" (OpenAI-compat) or "models" (native API)
        return data.get("data") or data.get("models") or []

    def supported_models(self) -> list[str]:
        if self.models:
            return list(self.models)
        return [
            e.get("id", e.get("key"))
            for e in self._fetch_models()
            if e.get("type") == "llm"
        ]

    def discover(self) -> tuple[str | None, int | None]:
        """Return (model, context_length) of the first loaded LLM."""
        for entry in self._fetch_models():
            if entry.get("type") == "llm" and entry.get("loaded_instances"):
                instance = entry["loaded_instances"][0]
                context_length = instance.get("config", {}).get("context_length")
                return entry.get("id", entry.get("key")), context_length
        return None, None


class OpenAIProvider(LiteLLMProvider):
    name = "openai"
    prefix = "openai"
    env_key = "OPENAI_API_KEY"


class AnthropicProvider(LiteLLMProvider):
    name = "anthropic"
    prefix = "anthropic"
    env_key = "ANTHROPIC_API_KEY"


class GeminiProvider(LiteLLMProvider):
    name = "gemini"
    prefix = "gemini"
    env_key = "GEMINI_API_KEY"


class OpenRouterProvider(LiteLLMProvider):
    name = "openrouter"
    prefix = "openrouter"
    env_key = "OPENROUTER_API_KEY"

    def model_string(self, model):
        # Only strip a doubled prefix; "openrouter/free" is an org/model id
        if model.startswith("openrouter/openrouter/"):
            model = model[len("openrouter/") :]
        return f"openrouter/{model}"


class HuggingFaceProvider(LiteLLMProvider):
    name = "huggingface"
    prefix = "huggingface"
    env_key = "HF_TOKEN"

    def model_string(self, model):
        bare = model.removeprefix("huggingface/")
        if "/" not in bare:
            raise InvalidRequest(
                "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
            )
        return f"huggingface/{bare}"


class ScriptedProvider(Provider):
    """Replays prepared responses; used by tests and offline runs.

    Each response is a list of events, an exception to raise when the
    request is opened, or a callable taking the wire messages and returning
    an event iterable. Every request is recorded in ``requests``.
    """

    name = "scripted"

    def __init__(self, responses=(), *, models=None, **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(base_delay=0.0, max_delay=0.0))
        super().__init__(**kwargs)
        self.responses = list(responses)
        self.requests: list[dict] = []
        self.models = models or ["scripted-model"]

    def supported_models(self):
        return list(self.models)

    def open_stream(self, wire, model, tools, max_tokens=None):
        self.requests.append({"messages": wire, "model": model, "tools": tools})
        if not self.responses:
            raise InvalidRequest("scripted provider has no more responses")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return iter(response(wire))
        return iter(response)

    @staticmethod
    def text(text: str, reason: str = "end_turn") -> list:
        return [TextDelta(text), TurnEnd(reason)]

    @staticmethod
    def tool_calls(*calls, text: str = "") -> list:
        """Events for a response requesting ``calls`` given as (id, name, args)."""
        events: list = [TextDelta(text)] if text else []
        for call_id, name, args in calls:
            if not isinstance(args, str):
                args = json.dumps(args)
            events.append(ToolCallStart(call_id, name))
            events.append(ToolCallArgumentsDelta(call_id, args))
            events.append(ToolCallEnd(call_id))
        events.append(TurnEnd("tool_use"))
        return events


PROVIDERS: dict[str, type[Provider]] = {
    cls.name: cls
    for cls in (
        LMStudioProvider,
        OpenAIProvider,
        AnthropicProvider,
        GeminiProvider,
        OpenRouterProvider,
        HuggingFaceProvider,
        ScriptedProvider,
    )
}

_BACKEND_OPTIONS = ("base_url", "temperature", "top_p", "seed")


def create_provider(name: str, *, api_key: str | None = None, **options) -> Provider:
    """Build the provider registered under ``name``.

    Credentials come from ``api_key`` or the provider's environment variable.
    """
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ConfigError(
            f"unknown provider {name!r} (choose from {', '.join(sorted(PROVIDERS))})"
        )
    if not issubclass(cls, LiteLLMProvider):
        # Offline providers take no credentials or backend settings
        return cls(**{k: v for k, v in options.items() if k not in _BACKEND_OPTIONS})
    if cls.env_key:
        api_key = api_key or os.environ.get(cls.env_key)
        if not api_key:
            raise ConfigError(
                f"--api-key or {cls.env_key} env var required for {name} provider"
            )
    return cls(api_key=api_key, **options)
