"""Configuration file loading and merging for tether.

Reads TOML config from ~/.config/tether/config.toml (global) and
<base_dir>/tether.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .permission import parse_action
from .provider import PROVIDERS
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_steps": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "yolo": bool,
    "persist_permissions": bool,
    "color": bool,
    "quiet": bool,
    "permission": dict,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 32768,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_steps": 10,
    "system_prompt": None,
    "no_system_prompt": False,
    "yolo": False,
    "persist_permissions": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "permission": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "tether"
    return Path.home() / ".config" / "tether"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    if expected is dict:
        return "table"
    return expected.__name__


def _validate_permission_table(table: dict, source: str) -> dict:
    """Check every entry parses as an action; returns the normalized table."""
    normalized = {}
    for name, value in table.items():
        try:
            normalized[name] = parse_action(value)
        except ValueError as e:
            raise ConfigError(f"{source}: permission.{name}: {e}") from e
    return normalized


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    if "max_steps" in config and config["max_steps"] < 1:
        raise ConfigError(f"{source}: 'max_steps' must be at least 1")

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if "permission" in known:
        known["permission"] = _validate_permission_table(known["permission"], label)
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    The ``permission`` tables are merged per tool name, project winning.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "tether.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    global_perms = global_config.pop("permission", None)
    project_perms = project_config.pop("permission", None)
    merged = {**global_config, **project_config}
    if global_perms or project_perms:
        merged["permission"] = {**(global_perms or {}), **(project_perms or {})}

    # The two files may conflict even when each is valid on its own.
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )

    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with hardcoded defaults
    from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair.
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted); color is a CLI-only concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# tether configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/tether.toml' if project else '~/.config/tether/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "huggingface" | "openrouter" | "generic"',
        '# model = "qwen/qwen3-235b-a22b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 32768",
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "",
        "# --- Agent behaviour ---",
        "# max_steps = 10",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "",
        "# --- Permissions ---",
        "# yolo = false                 # allow every tool without asking",
        "# persist_permissions = false  # remember 'always' answers in .tether/permissions.json",
        "",
        "# [permission]",
        '# bash = "ask"                 # "allow" | "ask" | "deny"',
        '# write = "allow"',
        '# doom_loop = "deny"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
