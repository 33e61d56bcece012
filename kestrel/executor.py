"""Validation and execution of tool calls.

The executor never raises for a tool failure: every outcome, including
malformed arguments and unknown tools, becomes a ToolResult the agent loop
appends to the conversation.
"""

import dataclasses
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from .cancel import CancelToken
from .errors import Cancelled, ToolError
from .messages import ToolCall, ToolResult
from .tools import MAX_OUTPUT_BYTES, Tool, ToolContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4

# (call, decoded arguments) -> None to allow, or the user's feedback to deny
Approver = Callable[[ToolCall, dict], str | None]

_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
    "null": (type(None),),
}

# (keywords in the lowercased error, hints appended to the result)
_ERROR_HINTS: list[tuple[tuple[str, ...], tuple[str, ...]]] = [
    (
        ("does not exist", "no such file"),
        ("Verify the path is correct", "Use list_dir or list_files to explore"),
    ),
    (
        ("outside base directory", "contains '..'"),
        ("Only paths inside the project directory are accessible",),
    ),
    (
        ("permission denied",),
        ("The file may be read-only or owned by another user",),
    ),
    (
        ("old_string not found",),
        (
            "Re-read the file with read_file and copy the exact text",
            "Check indentation and line breaks in old_string",
        ),
    ),
    (
        ("add context or set replace_all",),
        ("Include more surrounding lines so the match is unique",),
    ),
    (
        ("timed out",),
        (
            "Try breaking the operation into smaller steps",
            "Pass a larger timeout if the command is expected to be slow",
        ),
    ),
    (
        ("command not found",),
        ("Check that the command is installed and on PATH",),
    ),
    (
        ("invalid json",),
        ("Tool arguments must be a single JSON object",),
    ),
]


def _json_type_ok(value, expected: str) -> bool:
    types = _JSON_TYPES.get(expected)
    if types is None:
        return True
    # bool is a subclass of int; JSON keeps them apart
    if isinstance(value, bool) and expected in ("integer", "number"):
        return False
    return isinstance(value, types)


def validate_arguments(schema: dict, args: dict) -> list[str]:
    """Check ``args`` against a JSON-schema subset. Returns a list of problems.

    Supported keywords: properties, required, type, enum, minimum, maximum,
    items.type. Properties not declared in the schema are rejected.
    """
    problems: list[str] = []
    properties = schema.get("properties", {})

    for name in schema.get("required", []):
        if name not in args:
            problems.append(f"missing required argument {name!r}")

    for name, value in args.items():
        spec = properties.get(name)
        if spec is None:
            problems.append(f"unexpected argument {name!r}")
            continue
        expected = spec.get("type")
        if expected and not _json_type_ok(value, expected):
            problems.append(
                f"argument {name!r} must be of type {expected}, got {type(value).__name__}"
            )
            continue
        if "enum" in spec and value not in spec["enum"]:
            choices = ", ".join(repr(c) for c in spec["enum"])
            problems.append(f"argument {name!r} must be one of {choices}")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "minimum" in spec and value < spec["minimum"]:
                problems.append(f"argument {name!r} must be >= {spec['minimum']}")
            if "maximum" in spec and value > spec["maximum"]:
                problems.append(f"argument {name!r} must be <= {spec['maximum']}")
        item_type = spec.get("items", {}).get("type")
        if isinstance(value, list) and item_type:
            for i, item in enumerate(value):
                if not _json_type_ok(item, item_type):
                    problems.append(f"argument {name}[{i}] must be of type {item_type}")
    return problems


def truncate_output(text: str, max_bytes: int) -> str:
    """Keep the head of ``text`` within ``max_bytes`` and say what was cut."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    head = data[:max_bytes].decode("utf-8", errors="ignore")
    return (
        f"{head}\n[output truncated: {max_bytes} of {len(data)} bytes shown]"
    )


def error_hints(message: str) -> list[str]:
    lowered = message.lower()
    hints: list[str] = []
    for keywords, suggestions in _ERROR_HINTS:
        if any(kw in lowered for kw in keywords):
            hints.extend(s for s in suggestions if s not in hints)
    return hints


def _error_result(call: ToolCall, kind: str, message: str) -> ToolResult:
    hints = error_hints(message)
    if hints:
        message += "\n\nHints:\n" + "\n".join(f"- {h}" for h in hints)
    return ToolResult(call.id, "error", f"error: {message}", error_kind=kind)


def _denied_result(call: ToolCall, feedback: str) -> ToolResult:
    message = f"{call.name} was blocked by the user"
    if feedback:
        message += f". User feedback: {feedback}"
    return ToolResult(call.id, "error", f"error: {message}", error_kind="permission_denied")


def cancelled_result(call_id: str, detail: str = "") -> ToolResult:
    content = "cancelled: tool call was not completed because the turn was cancelled"
    if detail:
        content += f"\n{detail}"
    return ToolResult(call_id, "cancelled", content)


def plan_segments(calls: list[ToolCall], tools: dict[str, Tool]) -> list[list[int]]:
    """Split a batch into ordered segments of call indices.

    Consecutive read-only calls share a segment and may run concurrently.
    Each mutating call gets a segment of its own. Unknown tools have no side
    effects and count as read-only.
    """
    segments: list[list[int]] = []
    previous_read_only = False
    for i, call in enumerate(calls):
        tool = tools.get(call.name)
        read_only = tool is None or tool.read_only
        if read_only and previous_read_only:
            segments[-1].append(i)
        else:
            segments.append([i])
        previous_read_only = read_only
    return segments


class ToolExecutor:
    """Runs tool calls against a fixed tool set and workspace context."""

    def __init__(
        self,
        tools: list[Tool],
        context: ToolContext,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        approve: Approver | None = None,
    ):
        self.tools = {t.name: t for t in tools}
        self.context = context
        self.max_workers = max(1, max_workers)
        self.max_output_bytes = max_output_bytes
        self.approve = approve

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self.tools.values()]

    def execute(self, call: ToolCall, cancel_token: CancelToken | None = None) -> ToolResult:
        return self.execute_timed(call, cancel_token)[0]

    def execute_timed(
        self, call: ToolCall, cancel_token: CancelToken | None = None
    ) -> tuple[ToolResult, float]:
        """Run one call; returns the result and the elapsed seconds."""
        token = cancel_token or self.context.cancel_token
        t0 = time.monotonic()
        result = self._run(call, token)
        return result, time.monotonic() - t0

    def _run(self, call: ToolCall, token: CancelToken) -> ToolResult:
        if token.is_cancelled:
            return cancelled_result(call.id)

        tool = self.tools.get(call.name)
        if tool is None:
            available = ", ".join(sorted(self.tools))
            return _error_result(
                call,
                "validation_error",
                f"unknown tool {call.name!r}; available tools: {available}",
            )

        try:
            args = json.loads(call.arguments or "{}")
        except (json.JSONDecodeError, TypeError) as e:
            return _error_result(
                call, "validation_error", f"invalid JSON in tool arguments: {e}"
            )
        if not isinstance(args, dict):
            return _error_result(
                call, "validation_error", "tool arguments must be a JSON object"
            )

        problems = validate_arguments(tool.parameters, args)
        if problems:
            return _error_result(
                call,
                "validation_error",
                f"invalid arguments for {call.name}: " + "; ".join(problems),
            )

        # Read-only tools never ask
        if self.approve is not None and not tool.read_only:
            feedback = self.approve(call, args)
            if token.is_cancelled:
                return cancelled_result(call.id)
            if feedback is not None:
                logger.info("user denied %s", call.name)
                return _denied_result(call, feedback)

        ctx = dataclasses.replace(self.context, cancel_token=token)
        try:
            output = tool.invoke(args, ctx)
        except ToolError as e:
            return _error_result(
                call, e.kind, truncate_output(e.render(), self.max_output_bytes)
            )
        except Cancelled as e:
            return cancelled_result(
                call.id, truncate_output(e.render(), self.max_output_bytes)
            )
        except Exception as e:
            logger.exception("tool %s raised unexpectedly", call.name)
            return _error_result(call, "execution_failed", f"{type(e).__name__}: {e}")

        return ToolResult(
            call.id, "success", truncate_output(output, self.max_output_bytes)
        )

    def execute_batch(
        self, calls: list[ToolCall], cancel_token: CancelToken | None = None
    ) -> list[ToolResult]:
        return [r for r, _ in self.execute_batch_timed(calls, cancel_token)]

    def execute_batch_timed(
        self, calls: list[ToolCall], cancel_token: CancelToken | None = None
    ) -> list[tuple[ToolResult, float]]:
        """Run a batch; results come back in request order."""
        token = cancel_token or self.context.cancel_token
        results: list[tuple[ToolResult, float] | None] = [None] * len(calls)

        for segment in plan_segments(calls, self.tools):
            if len(segment) == 1 or self.max_workers == 1:
                for i in segment:
                    results[i] = self.execute_timed(calls[i], token)
                continue

            workers = min(self.max_workers, len(segment))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    pool.submit(self.execute_timed, calls[i], token): i for i in segment
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        return results
