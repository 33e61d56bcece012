"""ANSI-formatted output using Rich.

Diagnostics go to stderr. Streamed assistant text goes to stdout so that
one-shot answers can be piped.
"""

from rich.console import Console
from rich.text import Text

_console = Console(stderr=True)
_out = Console()


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)


def completion(round_trips: int, status: str) -> None:
    if status == "completed":
        _console.print(
            Text(f"  ✓ Turn finished: {round_trips} round trips", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Turn finished: {round_trips} round trips, status={status}",
                style="bold red",
            )
        )


# -- Streamed text -----------------------------------------------------------


def stream_text(text: str) -> None:
    _out.print(text, end="", markup=False, highlight=False, soft_wrap=True)


def stream_end() -> None:
    _out.print()


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def approval(name: str, args_json: str) -> None:
    header = Text()
    header.append(f"  ? {name}", style="bold cyan")
    header.append("  needs approval", style="cyan")
    _console.print(header)
    for line in (args_json or "").splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def guardrail(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Guardrail: ", style="bold yellow")
    line.append(msg, style="yellow")
    _console.print(line)


# -- Notices -----------------------------------------------------------------


def notice(kind: str, msg: str) -> None:
    line = Text()
    line.append(f"  [{kind}] ", style="yellow")
    line.append(msg, style="dim")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(model: str) -> None:
    _console.print(
        Text(
            f"Interactive mode ({model}). Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
