"""Command-line entry point: one-shot runs and the interactive REPL."""

import argparse
import logging
import os
import queue
import sys
import threading
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import AgentLoop, TurnOutcome
from .cancel import CancelToken
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .context import ContextPolicy
from .errors import ConfigError, KestrelError, ProviderError
from .executor import ToolExecutor
from .providers import PROVIDERS, LMStudioProvider, RetryPolicy, create_provider
from .report import ReportCollector
from .session import Session
from .stream import (
    Notice,
    TextDelta,
    ToolCallRequested,
    ToolResultReady,
    TurnFinished,
)
from .tools import ToolContext, build_tools

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

EXIT_CODES = {"completed": 0, "failed": 1, "turn_limit": 2, "cancelled": 130}


def build_parser():
    """Build and return the argument parser.

    Options that may also come from a config file default to the _UNSET
    sentinel so ``apply_config_to_args`` can tell them apart.
    """
    parser = argparse.ArgumentParser(
        prog="kestrel",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="An interactive coding agent with streaming output, tool calling "
        "and multi-provider LLM support.",
    )
    parser.add_argument(
        "--version", action="store_true", help="Print the version and exit."
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=sorted(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier. Auto-discovered for lmstudio when omitted.",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window of the model, used for compaction and request checks.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--compact-threshold",
        type=float,
        default=_UNSET,
        help="Fraction of the context window that triggers compaction (default: 0.8).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: 1.0).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (model support varies).",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=_UNSET,
        help="Retries for rate-limited or transient provider errors (default: 3).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt", default=_UNSET, help="System prompt to use."
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model round trips per turn (default: 50).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--add-dir",
        action="append",
        default=None,
        metavar="DIR",
        help="Grant read/write access to an extra directory (repeatable).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable the filesystem sandbox (unrestricted mode).",
    )
    parser.add_argument(
        "--confirm",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Ask before running tools that modify files or run commands.",
    )
    parser.add_argument(
        "--no-shell",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Do not offer the run_command tool.",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Default shell command timeout in seconds (default: 120).",
    )
    parser.add_argument(
        "--max-tool-output",
        type=int,
        default=_UNSET,
        help="Bytes of tool output kept in the conversation (default: 51200).",
    )
    parser.add_argument(
        "--tool-workers",
        type=int,
        default=_UNSET,
        help="Maximum concurrent read-only tool calls (default: 4).",
    )
    parser.add_argument(
        "--session-file",
        default=_UNSET,
        metavar="FILE",
        help="Restore the conversation from FILE and save it after every turn.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print the model's text.",
    )
    parser.add_argument(
        "-v",
        "--verbose-log",
        action="store_true",
        help="Log library debug messages to stderr.",
    )
    return parser


def _configure_logging(verbose_log: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose_log else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if not verbose_log:
        # LiteLLM is chatty at INFO
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def _build_provider(args):
    """Create the provider and resolve the model. Returns (provider, model)."""
    options = dict(
        base_url=args.base_url,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
        context_length=args.max_context_tokens,
        max_output_tokens=args.max_output_tokens,
        retry_policy=RetryPolicy(max_retries=args.max_retries),
    )
    provider = create_provider(args.provider, api_key=args.api_key, **options)
    model = args.model

    if isinstance(provider, LMStudioProvider) and not model:
        model, context_length = provider.discover()
        if not model:
            raise ConfigError(
                "no loaded LLM found in LM Studio. "
                "Load a model in LM Studio or use --model to specify one."
            )
        if provider.context_length is None:
            provider.context_length = context_length
        if args.verbose:
            fmt.info(f"Discovered model: {model} (context {context_length or 'unknown'})")
    elif not model:
        raise ConfigError(f"--model is required when --provider is {args.provider}")
    return provider, model


def _resolve_allowed_dirs(dirs) -> list[Path]:
    allowed: list[Path] = []
    for d in dirs:
        p = Path(d).expanduser().resolve()
        if not p.is_dir():
            raise ConfigError(f"--add-dir path is not a directory: {d}")
        if p == Path(p.anchor):
            raise ConfigError(f"--add-dir cannot be the filesystem root: {d}")
        allowed.append(p)
    return allowed


def _system_prompt(args) -> str | None:
    if args.no_system_prompt:
        return None
    if args.system_prompt:
        return args.system_prompt
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")


def build_agent(args, report: ReportCollector | None = None) -> AgentLoop:
    """Wire provider, tools, session and loop from resolved arguments."""
    provider, model = _build_provider(args)
    base_dir = str(Path(args.base_dir).resolve())
    context = ToolContext(
        base_dir=base_dir,
        cancel_token=CancelToken(),
        unrestricted=args.yolo,
        extra_roots=tuple(_resolve_allowed_dirs(args.add_dir)),
        command_timeout=args.command_timeout,
    )
    executor = ToolExecutor(
        build_tools(no_shell=args.no_shell),
        context,
        max_workers=args.tool_workers,
        max_output_bytes=args.max_tool_output,
        approve=ApprovalGate() if args.confirm else None,
    )
    session = Session(
        provider,
        model,
        system_prompt=_system_prompt(args),
        context_policy=ContextPolicy.for_context_length(
            provider.context_length, args.compact_threshold
        ),
    )
    if args.session_file and os.path.exists(args.session_file):
        try:
            session.load(args.session_file)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot restore session from {args.session_file}: {e}")
        if args.verbose:
            fmt.info(
                f"Restored {len(session.conversation)} messages from {args.session_file}"
            )
    return AgentLoop(session, executor, max_turns=args.max_turns, report=report)


# ---------------------------------------------------------------------------
# Turn rendering
# ---------------------------------------------------------------------------


def _preview(text: str, limit: int = 120) -> str:
    first = text.split("\n", 1)[0]
    return first if len(first) <= limit else first[:limit] + "..."


class _Renderer:
    """Turns display events into terminal output."""

    def __init__(self, verbose: bool):
        self.verbose = verbose
        self.mid_line = False

    def _break_line(self):
        if self.mid_line:
            fmt.stream_end()
            self.mid_line = False

    def handle(self, event) -> None:
        if isinstance(event, TextDelta):
            fmt.stream_text(event.text)
            self.mid_line = not event.text.endswith("\n")
            return
        self._break_line()
        if isinstance(event, ToolCallRequested):
            if self.verbose:
                fmt.tool_call(event.call.name, event.call.arguments)
        elif isinstance(event, ToolResultReady):
            if not self.verbose:
                return
            result = event.result
            if result.outcome == "success":
                fmt.tool_result(event.call.name, event.elapsed, _preview(result.content))
            else:
                fmt.tool_error(event.call.name, _preview(result.content))
        elif isinstance(event, Notice):
            if event.kind == "retry":
                fmt.warning(event.message)
            elif event.kind == "guardrail":
                if self.verbose:
                    fmt.guardrail(event.message)
            elif self.verbose:
                fmt.notice(event.kind, event.message)
        elif isinstance(event, TurnFinished):
            outcome = event.outcome
            if self.verbose:
                fmt.completion(outcome.round_trips, outcome.status)
            if outcome.status in ("failed", "turn_limit") and outcome.error is not None:
                fmt.error(str(outcome.error))
                if outcome.retryable:
                    fmt.info("The error may be transient; you can retry the request.")


_DONE = object()


class _ApprovalRequest:
    def __init__(self, call):
        self.call = call
        self.reply: queue.Queue = queue.Queue(maxsize=1)


class ApprovalGate:
    """Asks the user before a mutating tool runs.

    The executor calls the gate on the turn thread. The question is handed to
    the thread that owns the terminal through ``pending`` and the turn thread
    blocks until ``answer`` is called. "always" answers are remembered per
    tool for the rest of the session.
    """

    def __init__(self):
        self.pending: queue.Queue = queue.Queue()
        self.always: set[str] = set()

    def __call__(self, call, args: dict) -> str | None:
        if call.name in self.always:
            return None
        request = _ApprovalRequest(call)
        self.pending.put(request)
        return request.reply.get()

    def answer(self, request: _ApprovalRequest, reply: str) -> None:
        """Resolve a request from the user's reply.

        y/yes allows once, a/always allows the tool for the session, an empty
        reply or n/no denies, and any other text denies with that text as
        feedback for the model.
        """
        reply = reply.strip()
        word = reply.lower()
        if word in ("y", "yes"):
            request.reply.put(None)
        elif word in ("a", "always"):
            self.always.add(request.call.name)
            request.reply.put(None)
        elif word in ("", "n", "no"):
            request.reply.put("")
        else:
            request.reply.put(reply)


def _read_approval(request: _ApprovalRequest) -> str:
    from prompt_toolkit import prompt
    from prompt_toolkit.formatted_text import FormattedText

    fmt.approval(request.call.name, request.call.arguments)
    return prompt(
        FormattedText(
            [("bold fg:ansicyan", "  allow? "), ("", "[y]es / [a]lways / [N]o or feedback: ")]
        )
    )


def run_interruptible(loop: AgentLoop, text: str, verbose: bool) -> TurnOutcome:
    """Run one turn on a worker thread; Ctrl-C cancels the turn instead of exiting."""
    events: queue.Queue = queue.Queue()
    failure: list[BaseException] = []

    def worker():
        try:
            for event in loop.submit_user_message(text):
                events.put(event)
        except Exception as e:
            failure.append(e)
        finally:
            events.put(_DONE)

    gate = loop.executor.approve if isinstance(loop.executor.approve, ApprovalGate) else None
    thread = threading.Thread(target=worker, name="kestrel-turn", daemon=True)
    thread.start()

    renderer = _Renderer(verbose)
    outcome = None
    while True:
        try:
            try:
                item = events.get(timeout=0.1)
            except queue.Empty:
                # Approval prompts wait until earlier events are rendered
                if gate is not None:
                    _serve_approval(loop, gate, renderer)
                continue
            if item is _DONE:
                break
            renderer.handle(item)
            if isinstance(item, TurnFinished):
                outcome = item.outcome
        except KeyboardInterrupt:
            if loop.cancel_active_turn():
                renderer._break_line()
                fmt.warning("cancelling the current turn...")
    thread.join()
    if failure:
        raise failure[0]
    return outcome


def _serve_approval(loop: AgentLoop, gate: ApprovalGate, renderer: _Renderer) -> None:
    """Answer one waiting approval request, if any."""
    try:
        request = gate.pending.get_nowait()
    except queue.Empty:
        return
    renderer._break_line()
    try:
        reply = _read_approval(request)
    except (EOFError, KeyboardInterrupt):
        # The turn thread is blocked on this request; deny it and cancel
        loop.cancel_active_turn()
        reply = "n"
    gate.answer(request, reply)


def _save_session(loop: AgentLoop, path: str | None) -> None:
    if not path:
        return
    try:
        loop.session.save(path)
    except OSError as e:
        fmt.warning(f"failed to save session to {path}: {e}")


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation\n"
        "  /model [name]      Show or switch the model (applies to the next turn)\n"
        "  /models            List models offered by the provider\n"
        "  /compact           Compact the conversation now\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(loop: AgentLoop) -> None:
    removed = loop.session.clear_conversation()
    fmt.info(f"context cleared ({removed} messages removed)")


def _repl_model(loop: AgentLoop, arg: str) -> None:
    name = arg.strip()
    session = loop.session
    if not name:
        fmt.info(f"current model: {session.model} ({session.provider.name})")
        return
    session.set_model(name)
    fmt.info(f"model set to {name}")


def _repl_models(loop: AgentLoop) -> None:
    try:
        models = loop.session.provider.supported_models()
    except ProviderError as e:
        fmt.warning(f"cannot list models: {e}")
        return
    if not models:
        fmt.info("the provider did not report any models")
        return
    current = loop.session.model
    fmt.info("\n".join(f"{'*' if m == current else ' '} {m}" for m in models))


def _repl_compact(loop: AgentLoop) -> None:
    tools = loop.executor.schemas()
    before = loop.session.token_estimate(tools)
    steps = loop.session.prepare_context(tools, force=True)
    after = loop.session.token_estimate(tools)
    if not steps:
        fmt.info("nothing to compact")
        return
    fmt.info(f"compacted: {before} -> {after} tokens ({before - after} saved)")


def repl_loop(loop: AgentLoop, args, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(args.base_dir, ".kestrel", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "kestrel> ")])

    if args.verbose:
        fmt.repl_banner(loop.session.model)

    pending = initial
    while True:
        if pending is not None:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)
                line = prompt_session.prompt(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)
                break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd, _, cmd_arg = line.partition(" ")
        cmd = cmd.lower()
        # Only known commands are intercepted; anything else goes to the model
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            _repl_clear(loop)
            _save_session(loop, args.session_file)
            continue
        if cmd == "/model":
            _repl_model(loop, cmd_arg)
            continue
        if cmd == "/models":
            _repl_models(loop)
            continue
        if cmd == "/compact":
            _repl_compact(loop)
            continue

        try:
            run_interruptible(loop, line, args.verbose)
        except KestrelError as e:
            fmt.error(str(e))
            continue
        _save_session(loop, args.session_file)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _report_settings(args) -> dict:
    return {
        "temperature": args.temperature,
        "top_p": args.top_p,
        "seed": args.seed,
        "max_turns": args.max_turns,
        "max_output_tokens": args.max_output_tokens,
        "context_length": args.max_context_tokens,
        "compact_threshold": args.compact_threshold,
        "yolo": args.yolo,
        "no_shell": args.no_shell,
        "confirm": args.confirm,
        "tool_workers": args.tool_workers,
    }


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("kestrel")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)
    if args.init_config:
        print(generate_config())
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    # The built-in output default is clamped per request, never rejected
    output_chosen = args.max_output_tokens is not _UNSET or "max_output_tokens" in config
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if (
        output_chosen
        and args.max_context_tokens is not None
        and args.max_output_tokens > args.max_context_tokens
    ):
        parser.error(
            "--max-output-tokens must be <= --max-context-tokens when both are specified."
        )

    fmt.init(color=args.color, no_color=args.no_color)
    _configure_logging(args.verbose_log)

    report = ReportCollector() if args.report else None

    def _write_report(
        outcome,
        answer=None,
        exit_code=0,
        turns=0,
        error_message=None,
        model="unknown",
    ):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=model,
            provider=args.provider,
            settings=_report_settings(args),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=turns,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        loop = build_agent(args, report)
        if args.repl:
            repl_loop(loop, args, args.question)
            sys.exit(0)

        outcome = run_interruptible(loop, args.question, args.verbose)
        _save_session(loop, args.session_file)
    except KestrelError as e:
        fmt.error(str(e))
        _write_report(
            "error",
            exit_code=1,
            error_message=str(e),
            model=args.model or "unknown",
        )
        sys.exit(1)

    exit_code = EXIT_CODES.get(outcome.status, 1)
    _write_report(
        outcome.status,
        answer=outcome.answer,
        exit_code=exit_code,
        turns=outcome.round_trips,
        error_message=str(outcome.error) if outcome.error is not None else None,
        model=loop.session.model,
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
