"""
Runtime config loader.

Layers, lowest first: built-in defaults, ``delivery.toml``, the selected
profile, ``DELIVERY_*`` environment variables, then CLI overrides. The profile
comes from the ``profile`` argument, a ``profile`` CLI override, or
``DELIVERY_PROFILE``, in that order.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from delivery_pipeline.config.schema import (
    PATH_FIELDS,
    FieldRule,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    iter_field_rules,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "delivery.toml"
ENV_PREFIX: Final[str] = "DELIVERY_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config: CLI > env > profile > file > defaults."""

    source = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()
    env = os.environ if environ is None else environ
    cli = dict(cli_overrides or {})
    selected = _pick_profile(profile, cli, env)

    config = assert_valid_config(merge_config(default_config(), _read_toml(source, config_path)))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(cli))
    config = assert_valid_config(config, active_profile=selected)
    return normalize_paths(config, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve configured path fields, including ones inside profiles, against ``base_dir``."""

    resolved = merge_config({}, config)
    targets: list[dict[str, Any]] = [resolved]
    profiles = resolved.get("profiles")
    if isinstance(profiles, dict):
        targets.extend(overlay for overlay in profiles.values() if isinstance(overlay, dict))

    for target in targets:
        for section, key in PATH_FIELDS:
            body = target.get(section)
            if isinstance(body, dict) and isinstance(body.get(key), str):
                body[key] = _absolute(body[key], base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic JSON dump of the redacted effective config."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _read_toml(path: Path, requested: str | Path | None) -> dict[str, Any]:
    if not path.exists():
        if requested is not None:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _pick_profile(
    explicit: str | None, cli: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        return explicit.strip() or None
    if "profile" in cli and cli["profile"] is not None:
        from_cli = cli["profile"]
        if not isinstance(from_cli, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
        return from_cli.strip() or None
    from_env = env.get(f"{ENV_PREFIX}PROFILE")
    if from_env is None:
        return None
    return from_env.strip() or None


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for (section, key), rule in iter_field_rules():
        name = env_name_for_path((section, key))
        if name in env:
            layer.setdefault(section, {})[key] = _coerce(env[name], rule, name, f"{section}.{key}")
    return layer


def _coerce(raw: str, rule: FieldRule, env_name: str, dotted: str) -> object:
    text = raw.strip()
    if rule.kind == "str":
        return text
    if rule.kind == "bool":
        if text.lower() in _TRUTHY:
            return True
        if text.lower() in _FALSY:
            return False
        raise ConfigLoadError(
            f"{env_name} -> {dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    convert, noun = (int, "an integer") if rule.kind == "int" else (float, "a number")
    try:
        return convert(text)
    except ValueError as exc:
        raise ConfigLoadError(f"{env_name} -> {dotted} must be {noun}") from exc


def _cli_layer(cli: Mapping[str, object]) -> dict[str, Any]:
    """``{"subagents.module": "x"}`` becomes ``{"subagents": {"module": "x"}}``."""

    layer: dict[str, Any] = {}
    for dotted, value in cli.items():
        if dotted == "profile":
            continue
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        node = layer
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
    return layer


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
