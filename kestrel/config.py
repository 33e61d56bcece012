"""Configuration file loading and merging for kestrel.

Two TOML files are read: the global one under $XDG_CONFIG_HOME/kestrel
(``~/.config/kestrel`` by default) and ``kestrel.toml`` in the base
directory. Values resolve CLI > project > global > built-in default.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


@dataclass(frozen=True)
class Option:
    """One config key and how it maps onto the argument namespace."""

    key: str
    types: type | tuple[type, ...]
    default: Any = None
    dest: str | None = None
    minimum: int | None = None
    is_path: bool = False

    @property
    def arg_dest(self) -> str:
        return self.dest or self.key


_NUMBER = (int, float)

OPTIONS: tuple[Option, ...] = (
    # Provider / model
    Option("provider", str, "lmstudio"),
    Option("model", str),
    Option("api_key", str),
    Option("base_url", str),
    Option("max_retries", int, 3, minimum=0),
    # Generation
    Option("max_output_tokens", int, 32768, minimum=1),
    Option("max_context_tokens", int, minimum=1),
    Option("compact_threshold", _NUMBER, 0.8),
    Option("temperature", _NUMBER),
    Option("top_p", _NUMBER, 1.0),
    Option("seed", int),
    # Agent
    Option("max_turns", int, 50, minimum=1),
    Option("system_prompt", str),
    Option("no_system_prompt", bool, False),
    Option("session_file", str, is_path=True),
    # Tools
    Option("yolo", bool, False),
    Option("allowed_dirs", list, [], dest="add_dir", is_path=True),
    Option("no_shell", bool, False),
    Option("confirm", bool, False),
    Option("command_timeout", int, 120, minimum=1),
    Option("max_tool_output", int, 50 * 1024, minimum=1),
    Option("tool_workers", int, 4, minimum=1),
    # UI; "color" drives both --color and --no-color
    Option("color", bool, False),
    Option("quiet", bool, False),
)

_BY_KEY = {opt.key: opt for opt in OPTIONS}

# argparse dests filled by an append action default to None, not _UNSET
_APPEND_DESTS = {"add_dir"}


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "kestrel"


def _describe(types) -> str:
    if isinstance(types, tuple):
        return " or ".join(t.__name__ for t in types)
    return types.__name__


def _check_value(opt: Option, value, source: str) -> None:
    # TOML booleans are ints to isinstance(); only bool options accept them
    if isinstance(value, bool) and opt.types is not bool:
        raise ConfigError(f"{source}: {opt.key!r} expected {_describe(opt.types)}, got bool")
    if not isinstance(value, opt.types):
        raise ConfigError(
            f"{source}: {opt.key!r} expected {_describe(opt.types)}, "
            f"got {type(value).__name__}"
        )
    if opt.types is list:
        bad = next(
            ((i, e) for i, e in enumerate(value) if not isinstance(e, str)), None
        )
        if bad is not None:
            raise ConfigError(
                f"{source}: {opt.key}[{bad[0]}]: expected string, "
                f"got {type(bad[1]).__name__}"
            )
    if opt.minimum is not None and value < opt.minimum:
        raise ConfigError(f"{source}: {opt.key!r} must be at least {opt.minimum}")


def _check_conflicts(config: dict, source: str) -> None:
    if "compact_threshold" in config and not 0 < config["compact_threshold"] <= 1:
        raise ConfigError(f"{source}: 'compact_threshold' must be in (0, 1]")
    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _relative_to(value: str, config_dir: Path) -> str:
    # ~ is expanded before the join so "~/x" stays in the home directory
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else config_dir / value)


def _parse_file(path: Path) -> dict:
    """Read one config file, keeping only known keys. Missing file -> {}."""
    if not path.is_file():
        return {}
    label = str(path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    config: dict = {}
    for key, value in raw.items():
        opt = _BY_KEY.get(key)
        if opt is None:
            print(f"warning: {label}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(opt, value, label)
        if opt.is_path:
            if isinstance(value, list):
                value = [_relative_to(v, path.parent) for v in value]
            else:
                value = _relative_to(value, path.parent)
        config[key] = value
    _check_conflicts(config, label)
    return config


def _inside_git_checkout(path: Path) -> bool:
    return any((parent / ".git").exists() for parent in path.parents)


def load_config(base_dir: Path) -> dict:
    """Load the global and project files and merge them.

    Only keys present in a file appear in the result; defaults are applied
    later by ``apply_config_to_args``.
    """
    global_config = _parse_file(global_config_dir() / "config.toml")

    project_path = Path(base_dir).resolve() / "kestrel.toml"
    project_config = _parse_file(project_path)
    if "api_key" in project_config and _inside_git_checkout(project_path):
        print(
            f"warning: {project_path}: 'api_key' in a git-tracked project config "
            "may be committed by accident; prefer the provider's environment variable.",
            file=sys.stderr,
        )

    merged = {**global_config, **project_config}
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill namespace entries the CLI left unset, from config then defaults."""

    def unset(dest: str) -> bool:
        value = getattr(args, dest, _UNSET)
        return value is None if dest in _APPEND_DESTS else value is _UNSET

    if "color" in config and unset("color") and unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for opt in OPTIONS:
        dest = opt.arg_dest
        if not unset(dest):
            continue
        if opt.key in config and opt.key != "color":
            setattr(args, dest, config[opt.key])
        else:
            default = opt.default
            setattr(args, dest, list(default) if isinstance(default, list) else default)

    if unset("no_color"):
        args.no_color = False


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    where = "Project config: <project>/kestrel.toml" if project else (
        "Global config: ~/.config/kestrel/config.toml"
    )
    return "\n".join(
        [
            "# kestrel configuration file",
            f"# {where}",
            "#",
            "# Command-line flags take precedence. Uncomment the keys you want to set.",
            "",
            "# --- Provider / model ---",
            '# provider = "lmstudio"   # lmstudio | openai | anthropic | gemini | openrouter | huggingface',
            '# model = "qwen/qwen3-coder-30b"',
            '# api_key = "sk-..."      # the provider env var is preferred',
            '# base_url = "http://127.0.0.1:1234"',
            "# max_retries = 3",
            "",
            "# --- Generation ---",
            "# max_output_tokens = 32768",
            "# max_context_tokens = 131072",
            "# compact_threshold = 0.8",
            "# temperature = 0.7",
            "# top_p = 1.0",
            "# seed = 42",
            "",
            "# --- Agent ---",
            "# max_turns = 50",
            '# system_prompt = "Answer briefly."',
            "# no_system_prompt = false",
            '# session_file = ".kestrel/session.json"',
            "",
            "# --- Tools ---",
            "# yolo = false",
            '# allowed_dirs = ["../shared-lib"]',
            "# no_shell = false",
            "# confirm = false         # ask before tools that modify files or run commands",
            "# command_timeout = 120",
            "# max_tool_output = 51200",
            "# tool_workers = 4",
            "",
            "# --- Output ---",
            "# color = true   # true forces color, false disables it, unset means auto",
            "# quiet = false",
            "",
        ]
    )
