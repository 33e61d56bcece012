"""Tool definitions and implementations for the agent.

Every tool is a Tool instance: a name, a JSON-schema argument contract and
a function that either returns text for the model or raises a ToolError.
Read-only tools may run concurrently; mutating ones are serialized by the
executor.
"""

import fnmatch
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable

from .cancel import CancelToken
from .errors import (
    Cancelled,
    ExecutionFailed,
    NotFound,
    PermissionDenied,
    Timeout,
    ValidationError,
)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_LIST_DEPTH = 5

DEFAULT_COMMAND_TIMEOUT = 120
MAX_COMMAND_TIMEOUT = 600
MAX_COMMAND_OUTPUT = 1024 * 1024  # 1 MB
_POLL_INTERVAL = 0.1
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


@dataclass
class ToolContext:
    """Per-invocation environment handed to every tool function."""

    base_dir: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    unrestricted: bool = False
    extra_roots: tuple[Path, ...] = ()
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT


class Tool:
    """A capability the model can call."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        func: Callable[..., str],
        *,
        read_only: bool = False,
    ):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.func = func
        self.read_only = read_only

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def schema(self) -> dict:
        """OpenAI function-calling format, as sent to the provider."""
        return {"type": "function", "function": self.describe()}

    def invoke(self, arguments: dict, ctx: ToolContext) -> str:
        return self.func(ctx, **arguments)

    def __repr__(self):
        return f"Tool({self.name!r}, read_only={self.read_only})"


# ---------------------------------------------------------------------------
# Path handling
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, ctx: ToolContext) -> Path:
    """Resolve a path, ensuring it stays within the base directory or extra roots.

    Symlinks are resolved before the containment check. In unrestricted mode
    only the filesystem root is refused.

    Raises:
        PermissionDenied: If the resolved path escapes all allowed roots.
    """
    base = Path(ctx.base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if ctx.unrestricted:
        if resolved == Path(resolved.anchor):
            raise PermissionDenied(
                f"path {file_path!r} resolves to the filesystem root, "
                f"which is not allowed even in unrestricted mode"
            )
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    for root in ctx.extra_roots:
        if resolved.is_relative_to(root):
            return resolved

    raise PermissionDenied(
        f"path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _is_within_roots(path: Path, ctx: ToolContext) -> bool:
    if ctx.unrestricted:
        return True
    try:
        resolved = path.resolve()
    except (OSError, ValueError):
        return False
    if resolved.is_relative_to(Path(ctx.base_dir).resolve()):
        return True
    return any(resolved.is_relative_to(root) for root in ctx.extra_roots)


def _check_pattern(pattern: str) -> None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise ValidationError(f"pattern {pattern!r} must be relative, not absolute")
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise PermissionDenied(f"pattern {pattern!r} contains '..', which is not allowed")


def _existing_dir(path: str, ctx: ToolContext) -> Path:
    root = safe_resolve(path, ctx)
    if not root.exists():
        raise NotFound(f"path does not exist: {path}")
    if not root.is_dir():
        raise ValidationError(f"path is not a directory: {path}")
    return root


def _display_path(path: Path, ctx: ToolContext) -> str:
    try:
        return str(path.relative_to(Path(ctx.base_dir).resolve()))
    except ValueError:
        return str(path)


def _glob_regex(pattern: str) -> re.Pattern:
    """Compile a glob where ``**`` spans directories and ``*`` does not."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        elif pattern[i] == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape("["))
                i += 1
            else:
                body = pattern[i + 1 : end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def _walk_files(root: Path):
    """Yield files under root, pruning .git directories."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            yield Path(dirpath) / filename


def _stat(path: Path) -> os.stat_result | None:
    """Stat through symlinks, falling back to the link itself when dangling."""
    try:
        return path.stat()
    except OSError:
        pass
    try:
        return path.lstat()
    except OSError:
        return None


def _mtime(path: Path) -> float:
    st = _stat(path)
    return st.st_mtime if st else 0.0


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _join_capped(lines: list[str]) -> tuple[str, bool]:
    """Join lines until MAX_OUTPUT_BYTES; report whether anything was dropped."""
    parts: list[str] = []
    total = 0
    for line in lines:
        encoded_len = len(line.encode("utf-8")) + 1
        if total + encoded_len > MAX_OUTPUT_BYTES:
            return "\n".join(parts), True
        parts.append(line)
        total += encoded_len
    return "\n".join(parts), False


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def read_file(ctx: ToolContext, file_path: str, offset: int = 1, limit: int = 2000) -> str:
    """Read a file with line numbers, or list a directory."""
    resolved = safe_resolve(file_path, ctx)
    if not resolved.exists():
        raise NotFound(f"path does not exist: {file_path}")

    try:
        if resolved.is_dir():
            names = [
                child.name + ("/" if child.is_dir() else "")
                for child in sorted(resolved.iterdir())
            ]
            result, truncated = _join_capped(names)
            return result + ("\n[truncated at 50KB]" if truncated else "")

        if _is_binary(resolved):
            raise ExecutionFailed(f"binary file detected: {file_path}")
        text = resolved.read_text(encoding="utf-8")
    except PermissionError as exc:
        raise PermissionDenied(str(exc))
    except UnicodeDecodeError as exc:
        raise ExecutionFailed(f"failed to decode {file_path} as UTF-8: {exc}")

    lines = text.splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    numbered = []
    for i, line in enumerate(selected, start=start + 1):
        numbered.append(f"{i}: {line[:MAX_LINE_LENGTH]}")
    result, _ = _join_capped(numbered)
    emitted = result.count("\n") + 1 if result else 0

    remaining = len(lines) - (start + emitted)
    if remaining > 0:
        next_offset = start + emitted + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return result


def write_file(ctx: ToolContext, file_path: str, content: str) -> str:
    """Create or overwrite a file with content."""
    resolved = safe_resolve(file_path, ctx)
    ctx.cancel_token.raise_if_cancelled()
    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except PermissionError as exc:
        raise PermissionDenied(str(exc))
    except IsADirectoryError:
        raise ValidationError(f"path is a directory: {file_path}")
    return f"Wrote {len(data)} bytes to {file_path}"


def _find_trimmed(content: str, old: str) -> list[tuple[int, int]]:
    """Spans of content whose lines equal old's lines after .strip()."""
    lines = content.split("\n")
    wanted = [line.strip() for line in old.split("\n")]
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + len(line) + 1)
    spans = []
    for i in range(len(lines) - len(wanted) + 1):
        if all(lines[i + j].strip() == wanted[j] for j in range(len(wanted))):
            end = offsets[i + len(wanted)]
            if not old.endswith("\n"):
                end -= 1
            spans.append((offsets[i], min(end, len(content))))
    return spans


def edit_file(
    ctx: ToolContext,
    file_path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> str:
    """Replace old_string with new_string in an existing file.

    Exact matches are tried first, then a whitespace-insensitive per-line
    match. Ambiguous matches are refused unless replace_all is set.
    """
    resolved = safe_resolve(file_path, ctx)
    if not resolved.is_file():
        raise NotFound(f"file does not exist: {file_path}")
    if not old_string:
        raise ValidationError("old_string must not be empty")
    if old_string == new_string:
        raise ValidationError("old_string and new_string are identical")

    try:
        content = resolved.read_text(encoding="utf-8")
    except PermissionError as exc:
        raise PermissionDenied(str(exc))
    except UnicodeDecodeError as exc:
        raise ExecutionFailed(f"failed to decode {file_path} as UTF-8: {exc}")

    count = content.count(old_string)
    if count:
        if count > 1 and not replace_all:
            raise ValidationError(
                f"old_string matches {count} times; add context or set replace_all"
            )
        updated = content.replace(old_string, new_string, -1 if replace_all else 1)
    else:
        spans = _find_trimmed(content, old_string)
        if not spans:
            raise NotFound(f"old_string not found in {file_path}")
        if len(spans) > 1 and not replace_all:
            raise ValidationError(
                f"old_string matches {len(spans)} times; add context or set replace_all"
            )
        count = len(spans)
        updated = content
        for start, end in reversed(spans):
            updated = updated[:start] + new_string + updated[end:]

    ctx.cancel_token.raise_if_cancelled()
    resolved.write_text(updated, encoding="utf-8")
    return f"Edited {file_path} ({count} replacement{'s' if count != 1 else ''})"


def list_files(ctx: ToolContext, pattern: str, path: str = ".") -> str:
    """Recursively list files matching a glob pattern, newest first."""
    _check_pattern(pattern)
    root = _existing_dir(path, ctx)
    regex = _glob_regex(pattern)

    matched: list[Path] = []
    for filepath in _walk_files(root):
        if ctx.cancel_token.is_cancelled:
            raise Cancelled()
        rel = filepath.relative_to(root).as_posix()
        if regex.match(rel) and _is_within_roots(filepath, ctx):
            matched.append(filepath)

    if not matched:
        return "No files matched the pattern."

    matched.sort(key=_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    result, byte_truncated = _join_capped(
        [_display_path(f, ctx) for f in matched[:MAX_LIST_RESULTS]]
    )
    if truncated or byte_truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} of "
            f"{len(matched)} files. Use a more specific pattern or path.)"
        )
    return result


def grep(ctx: ToolContext, pattern: str, path: str = ".", include: str | None = None) -> str:
    """Search file contents for a regex pattern."""
    if include is not None:
        _check_pattern(include)
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ValidationError(f"invalid regex {pattern!r}: {exc}")
    root = _existing_dir(path, ctx)

    # Collect everything, then sort and cap, so the cap keeps the newest files
    matches: list[tuple[Path, int, str, float]] = []
    for filepath in _walk_files(root):
        if ctx.cancel_token.is_cancelled:
            raise Cancelled()
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        if not _is_within_roots(filepath, ctx):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
            mtime = filepath.stat().st_mtime
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((filepath, line_no, line, mtime))

    if not matches:
        return "No matches found."

    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total_found = len(matches)

    lines = [f"Found {total_found} matches"]
    current = None
    for filepath, line_no, line_text, _ in matches[:MAX_GREP_MATCHES]:
        if filepath != current:
            current = filepath
            lines.append(f"\n{_display_path(filepath, ctx)}:")
        lines.append(f"  Line {line_no}: {line_text[:MAX_LINE_LENGTH]}")

    result, byte_truncated = _join_capped(lines)
    if total_found > MAX_GREP_MATCHES or byte_truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return result


def format_size(size: int) -> str:
    for unit, scale in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size >= scale:
            return f"{size / scale:.1f} {unit}"
    return f"{size} B"


def list_dir(
    ctx: ToolContext,
    path: str = ".",
    depth: int = 0,
    include_hidden: bool = False,
    sort_by: str = "name",
) -> str:
    """List a directory as an indented tree with file sizes."""
    root = _existing_dir(path, ctx)
    depth = min(depth, MAX_LIST_DEPTH)

    def sort_key(p: Path):
        if sort_by == "size":
            st = _stat(p)
            return -(st.st_size if st and not p.is_dir() else 0)
        if sort_by == "modified":
            return -_mtime(p)
        return p.name

    lines: list[str] = []
    counts = {"files": 0, "dirs": 0}

    def walk(directory: Path, level: int):
        if ctx.cancel_token.is_cancelled:
            raise Cancelled()
        try:
            children = [
                c
                for c in directory.iterdir()
                if c.name != ".git" and (include_hidden or not c.name.startswith("."))
            ]
        except PermissionError:
            return
        for child in sorted(children, key=sort_key):
            indent = "  " * level
            if child.is_dir():
                counts["dirs"] += 1
                lines.append(f"{indent}{child.name}/")
                if level < depth:
                    walk(child, level + 1)
            else:
                st = _stat(child)
                if st is None:
                    continue
                counts["files"] += 1
                lines.append(f"{indent}{child.name} ({format_size(st.st_size)})")

    walk(root, 0)
    if not lines:
        return f"Directory: {_display_path(root, ctx)}\n\nDirectory is empty"

    body, truncated = _join_capped(lines)
    header = (
        f"Directory: {_display_path(root, ctx)}\n"
        f"Total: {counts['files']} files, {counts['dirs']} directories\n"
    )
    footer = f"\n\n[Sorted by: {sort_by}]"
    if depth:
        footer += f"\n[Depth: {depth}]"
    if truncated:
        footer += "\n[truncated at 50KB]"
    return f"{header}\n{body}{footer}"


# ---------------------------------------------------------------------------
# Shell execution
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable; the reader thread is a daemon


def run_command(ctx: ToolContext, command: str, timeout: int | None = None) -> str:
    """Run a shell string via /bin/sh -c in the base directory."""
    base_path = Path(ctx.base_dir)
    if not base_path.is_dir():
        raise NotFound(f"base directory does not exist: {ctx.base_dir}")
    timeout = max(1, min(timeout or ctx.command_timeout, MAX_COMMAND_TIMEOUT))

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=ctx.base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    ctx.cancel_token.raise_if_cancelled()
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ExecutionFailed(f"failed to start shell command: {e}")

    chunks: list[bytes] = []
    state = {"total": 0, "truncated": False}

    def _reader():
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if state["truncated"]:
                    continue  # keep draining to prevent pipe backpressure
                chunk = chunk[: MAX_COMMAND_OUTPUT - state["total"]]
                chunks.append(chunk)
                state["total"] += len(chunk)
                if state["total"] >= MAX_COMMAND_OUTPUT:
                    state["truncated"] = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    deadline = time.monotonic() + timeout
    timed_out = cancelled = False
    while True:
        try:
            proc.wait(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if ctx.cancel_token.is_cancelled:
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            _kill_process_tree(proc)
            break

    reader_thread.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    if state["truncated"]:
        output += f"\n[output truncated at {MAX_COMMAND_OUTPUT // 1024 // 1024}MB]"

    if cancelled:
        raise Cancelled("command cancelled by user", output=output)
    if timed_out:
        raise Timeout(
            f"command timed out after {timeout}s", output=output, seconds=timeout
        )
    if proc.returncode != 0:
        raise ExecutionFailed(
            f"Exit code: {proc.returncode}", output=output, exit_code=proc.returncode
        )
    return output or "(no output)"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_PATH_PROPERTY = {
    "type": "string",
    "description": (
        "Directory to search in, relative to base directory. "
        'Defaults to "." (base directory).'
    ),
    "default": ".",
}

BUILTIN_TOOLS: dict[str, Tool] = {
    t.name: t
    for t in [
        Tool(
            "read_file",
            "Read the contents of a file or list a directory. "
            "For files, returns lines prefixed with line numbers. "
            "Use offset/limit to paginate; if output is truncated, a continuation "
            "hint shows the offset for the next page.",
            {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file or directory to read.",
                    },
                    "offset": {
                        "type": "integer",
                        "minimum": 1,
                        "description": "1-based line number to start reading from. Defaults to 1.",
                        "default": 1,
                    },
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "description": "Maximum number of lines to return. Defaults to 2000.",
                        "default": 2000,
                    },
                },
                "required": ["file_path"],
            },
            read_file,
            read_only=True,
        ),
        Tool(
            "write_file",
            "Create or overwrite a file with the given content, "
            "creating parent directories as needed.",
            {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["file_path", "content"],
            },
            write_file,
        ),
        Tool(
            "edit_file",
            "Make a targeted edit to an existing file by replacing old_string "
            "with new_string. For creating new files, use write_file instead.",
            {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to edit.",
                    },
                    "old_string": {
                        "type": "string",
                        "description": "The exact text to find and replace.",
                    },
                    "new_string": {
                        "type": "string",
                        "description": "The replacement text.",
                    },
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace all occurrences.",
                        "default": False,
                    },
                },
                "required": ["file_path", "old_string", "new_string"],
            },
            edit_file,
        ),
        Tool(
            "list_files",
            "Recursively list files matching a glob pattern. Returns paths "
            "sorted by modification time (newest first), relative to the base directory.",
            {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": 'Glob pattern to match files, e.g. "**/*.py", "src/**/*.ts".',
                    },
                    "path": _PATH_PROPERTY,
                },
                "required": ["pattern"],
            },
            list_files,
            read_only=True,
        ),
        Tool(
            "grep",
            "Search file contents for a regex pattern. Returns matches grouped "
            "by file with line numbers, newest files first.",
            {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Python regex pattern to search for.",
                    },
                    "path": _PATH_PROPERTY,
                    "include": {
                        "type": "string",
                        "description": 'Glob pattern to filter filenames, e.g. "*.py".',
                    },
                },
                "required": ["pattern"],
            },
            grep,
            read_only=True,
        ),
        Tool(
            "list_dir",
            "List the contents of a directory with optional recursion and sorting. "
            "Directories end with /, files show their size.",
            {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": 'Directory to list. Defaults to ".".',
                        "default": ".",
                    },
                    "depth": {
                        "type": "integer",
                        "minimum": 0,
                        "maximum": MAX_LIST_DEPTH,
                        "description": "How many levels of subdirectories to expand (0-5).",
                        "default": 0,
                    },
                    "include_hidden": {
                        "type": "boolean",
                        "description": "Include dotfiles.",
                        "default": False,
                    },
                    "sort_by": {
                        "type": "string",
                        "enum": ["name", "size", "modified"],
                        "default": "name",
                    },
                },
                "required": [],
            },
            list_dir,
            read_only=True,
        ),
        Tool(
            "run_command",
            "Run a shell command (via sh -c) in the base directory and return "
            "its combined stdout and stderr. Supports pipes, redirects and &&.",
            {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": 'Shell command string, e.g. "ls -la | head".',
                    },
                    "timeout": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": MAX_COMMAND_TIMEOUT,
                        "description": f"Timeout in seconds (1-{MAX_COMMAND_TIMEOUT}). "
                        f"Defaults to {DEFAULT_COMMAND_TIMEOUT}.",
                    },
                },
                "required": ["command"],
            },
            run_command,
        ),
    ]
}


def build_tools(names=None, *, no_shell: bool = False) -> list[Tool]:
    """Return the tool set in a stable order, optionally filtered."""
    tools = list(BUILTIN_TOOLS.values())
    if names is not None:
        unknown = set(names) - set(BUILTIN_TOOLS)
        if unknown:
            raise ValueError(f"unknown tools: {', '.join(sorted(unknown))}")
        tools = [t for t in tools if t.name in names]
    if no_shell:
        tools = [t for t in tools if t.name != "run_command"]
    return tools
