"""Configuration file loading and merging for switchyard.

Reads TOML config from ~/.config/switchyard/config.toml (global) and
<base_dir>/switchyard.toml (project). Precedence: CLI > project > global > defaults.

Besides flat keys, a config file may carry ``[providers.<id>]`` tables and a
``[preferences]`` table describing the fallback order.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .providers import FAMILY_KINDS
from .report import ConfigError  # noqa: F401

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_turns": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "no_stream": bool,
    "tool_concurrency": int,
    "tool_timeout": (int, float),
    "retry_attempts": int,
    "retry_base_delay": (int, float),
    "retry_max_delay": (int, float),
    "color": bool,
    "quiet": bool,
}

PROVIDER_KEYS: dict[str, type | tuple[type, ...]] = {
    "family": str,
    "model": str,
    "api_key_env": str,
    "base_url": str,
    "max_context_tokens": int,
    "max_output_tokens": int,
    "supports_cache": bool,
    "supports_streaming": bool,
    "upstream_order": list,
    "upstream_ignore": list,
    "allow_upstream_fallbacks": bool,
    "require_parameters": bool,
    "http_referer": str,
    "x_title": str,
    "timeout": (int, float),
}

_LIST_OF_STR_KEYS = {"upstream_order", "upstream_ignore"}

_POSITIVE_INT_KEYS = {
    "max_output_tokens",
    "max_context_tokens",
    "max_turns",
    "tool_concurrency",
    "retry_attempts",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "max_output_tokens": 32768,
    "max_context_tokens": None,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_turns": 100,
    "system_prompt": None,
    "no_system_prompt": False,
    "no_stream": False,
    "tool_concurrency": 1,
    "tool_timeout": 120.0,
    "retry_attempts": 4,
    "retry_base_delay": 1.0,
    "retry_max_delay": 30.0,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "switchyard"
    return Path.home() / ".config" / "switchyard"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_type(value, expected, where: str) -> None:
    # bool is a subclass of int in Python, so isinstance(True, int) is True.
    # Reject bools for non-bool fields explicitly.
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"{where} expected {_type_name(expected)}, got bool")
    if not isinstance(value, expected):
        raise ConfigError(
            f"{where} expected {_type_name(expected)}, got {type(value).__name__}"
        )


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in the flat part of a config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_type(value, CONFIG_KEYS[key], f"{source}: {key!r}")
        if key in _POSITIVE_INT_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    # Mutual exclusion: system_prompt + no_system_prompt
    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _validate_providers(providers: dict, source: str) -> None:
    """Validate [providers.<id>] tables. Inline credentials are refused."""
    if not isinstance(providers, dict):
        raise ConfigError(f"{source}: 'providers' must be a table")
    for provider_id, cfg in providers.items():
        prefix = f"{source}: providers.{provider_id}"
        if "." in provider_id:
            raise ConfigError(f"{prefix}: provider ids cannot contain '.'")
        if not isinstance(cfg, dict):
            raise ConfigError(f"{prefix} must be a table")
        if "api_key" in cfg:
            raise ConfigError(
                f"{prefix}: inline 'api_key' is not supported; "
                "set 'api_key_env' to the name of an environment variable instead"
            )
        for key in list(cfg):
            if key not in PROVIDER_KEYS:
                print(f"warning: {prefix}: unknown key {key!r}", file=sys.stderr)
                del cfg[key]
                continue
            _check_type(cfg[key], PROVIDER_KEYS[key], f"{prefix}.{key}:")
            if key in _LIST_OF_STR_KEYS:
                for i, elem in enumerate(cfg[key]):
                    if not isinstance(elem, str):
                        raise ConfigError(
                            f"{prefix}.{key}[{i}]: expected string, got {type(elem).__name__}"
                        )
            if key in _POSITIVE_INT_KEYS and cfg[key] <= 0:
                raise ConfigError(f"{prefix}.{key}: must be positive, got {cfg[key]}")
        family = cfg.get("family", provider_id)
        if family not in FAMILY_KINDS:
            raise ConfigError(
                f"{prefix}: unknown family {family!r} "
                f"(expected one of: {', '.join(sorted(FAMILY_KINDS))})"
            )


def _validate_preferences(preferences: dict, source: str) -> None:
    if not isinstance(preferences, dict):
        raise ConfigError(f"{source}: 'preferences' must be a table")
    for key in preferences:
        if key not in ("order", "allow_fallback"):
            print(f"warning: {source}: unknown preferences key {key!r}", file=sys.stderr)
    if "allow_fallback" in preferences:
        _check_type(
            preferences["allow_fallback"], bool, f"{source}: preferences.allow_fallback"
        )
    order = preferences.get("order", [])
    _check_type(order, list, f"{source}: preferences.order")
    for i, item in enumerate(order):
        where = f"{source}: preferences.order[{i}]"
        if isinstance(item, str):
            continue
        if not isinstance(item, dict) or not isinstance(item.get("provider"), str):
            raise ConfigError(
                f"{where}: expected a provider id or a table with a 'provider' string"
            )
        if "allow_fallback" in item:
            _check_type(item["allow_fallback"], bool, f"{where}.allow_fallback")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # Nested tables are validated on their own
    providers = config.pop("providers", None)
    preferences = config.pop("preferences", None)

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if providers is not None:
        _validate_providers(providers, label)
        known["providers"] = providers
    if preferences is not None:
        _validate_preferences(preferences, label)
        known["preferences"] = preferences
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a dict with config-canonical keys. Only keys that were actually
    set in config files are included (no defaults injected). Provider tables
    merge by id, the project table replacing the global one for the same id.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "switchyard.toml"
    project_config = _load_single(project_path, str(project_path))

    global_providers = global_config.pop("providers", {})
    project_providers = project_config.pop("providers", {})
    global_prefs = global_config.pop("preferences", {})
    project_prefs = project_config.pop("preferences", {})
    merged = {**global_config, **project_config}

    providers = {**global_providers, **project_providers}
    if providers:
        merged["providers"] = providers
    preferences = {**global_prefs, **project_prefs}
    if preferences:
        merged["preferences"] = preferences

    # Re-validate mutual exclusion on merged result (could conflict across files)
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Flat keys fill in _UNSET dests; the providers and preferences tables are
    attached as-is. Remaining sentinels get hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if key in ("providers", "preferences"):
            setattr(args, key, value)
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)
    if not hasattr(args, "providers"):
        args.providers = {}
    if not hasattr(args, "preferences"):
        args.preferences = {}


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose and no_stream -> stream are inverted; color is dropped.
    """
    kwargs = {}
    _INVERT_KEYS = {"quiet": "verbose", "no_stream": "stream"}
    for key, value in config.items():
        if key == "color":
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# Switchyard configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/switchyard.toml' if project else '~/.config/switchyard/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider selection ---",
        '# provider = "anthropic"              # or "openrouter.anthropic/claude-3.5-sonnet"',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 32768",
        "# max_context_tokens = 131072",
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "# no_stream = false",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 50",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# tool_concurrency = 1",
        "# tool_timeout = 120",
        "",
        "# --- Retries ---",
        "# retry_attempts = 4",
        "# retry_base_delay = 1.0",
        "# retry_max_delay = 30.0",
        "",
        "# --- Providers ---",
        "# Credentials are read from the environment variable named by api_key_env.",
        "",
        "# [providers.anthropic]",
        '# model = "claude-sonnet-4-20250514"',
        '# api_key_env = "ANTHROPIC_API_KEY"',
        "",
        "# [providers.openrouter]",
        '# model = "anthropic/claude-3.5-sonnet@Anthropic,Google"',
        "# allow_upstream_fallbacks = true",
        '# http_referer = "https://example.com"',
        '# x_title = "switchyard"',
        "",
        "# [providers.local]",
        '# family = "lmstudio"',
        '# base_url = "http://127.0.0.1:1234"',
        "",
        "# [preferences]",
        "# allow_fallback = false",
        '# order = [{ provider = "anthropic", allow_fallback = true }, "openrouter"]',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
