"""
Shape of ``delivery.toml``: defaults, field rules and profile overlays.

Each section is a table of ``FieldRule`` entries. One walk over that table
validates a document, and the loader uses the same rules to type
``DELIVERY_*`` environment overrides. Every problem is collected with its
dotted path before anything is raised.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from delivery_pipeline.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_REVIEW_ATTEMPTS,
    DEFAULT_SUBAGENT_TIMEOUT_SECONDS,
    LOG_DIR,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "exploration")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

ValueKind = Literal["str", "int", "float", "bool"]


class PipelineConfig(TypedDict):
    max_review_attempts: int
    subagent_timeout_seconds: float
    gate_timeout_seconds: NotRequired[float | None]
    definition: NotRequired[str | None]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "console"]
    log_dir: str
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    pipeline: dict[str, object]
    subagents: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class DeliveryConfig(TypedDict):
    meta: dict[str, int]
    pipeline: PipelineConfig
    subagents: dict[str, str | None]
    paths: dict[str, str]
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[DeliveryConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "pipeline": {
        "max_review_attempts": DEFAULT_MAX_REVIEW_ATTEMPTS,
        "subagent_timeout_seconds": DEFAULT_SUBAGENT_TIMEOUT_SECONDS,
        "gate_timeout_seconds": None,
        "definition": None,
    },
    "subagents": {"module": None},
    "paths": {"state_db": (STATE_DIR / "pipeline.sqlite").as_posix()},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": f"{LOG_DIR.as_posix()}/",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "pipeline": {"max_review_attempts": 2, "gate_timeout_seconds": 86400.0},
        },
        "permissive": {},
        "exploration": {
            "pipeline": {"max_review_attempts": 5, "subagent_timeout_seconds": 900.0},
            "observability": {"log_level": "DEBUG"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Rejected(ValueError):
    """A single field value failed its rule."""


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Rejected(f"expected string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise _Rejected("must not be empty")
    return stripped


def _path_text(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Rejected("must not contain NUL bytes")
    return text


def _module_path(value: object) -> str:
    text = _text(value)
    if not all(part.isidentifier() for part in text.split(".")):
        raise _Rejected("must be a dotted import path (example: my_project.subagents)")
    return text


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Rejected(f"expected boolean, got {type(value).__name__}")
    return value


def _count(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _Rejected(f"expected integer, got {type(value).__name__}")
    if value < 1:
        raise _Rejected("must be >= 1")
    return value


def _seconds(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Rejected(f"expected number, got {type(value).__name__}")
    seconds = float(value)
    if not math.isfinite(seconds):
        raise _Rejected("must be finite")
    if seconds <= 0:
        raise _Rejected("must be > 0")
    return seconds


def _one_of(choices: tuple[str, ...]) -> Callable[[object], str]:
    def _check(value: object) -> str:
        text = _text(value)
        if text not in choices:
            raise _Rejected(f"invalid value {text!r}; expected one of: {', '.join(sorted(choices))}")
        return text

    return _check


def _schema_version(value: object) -> int:
    version = _count(value)
    if version != ConfigSchemaVersion:
        raise _Rejected(migration_guidance(version))
    return version


@dataclass(frozen=True, slots=True)
class FieldRule:
    """How one key is checked, and how an env override for it is typed."""

    check: Callable[[object], object]
    kind: ValueKind
    required: bool = True
    nullable: bool = False
    is_path: bool = False


SECTIONS: Final[dict[str, dict[str, FieldRule]]] = {
    "meta": {"schema_version": FieldRule(_schema_version, "int")},
    "pipeline": {
        "max_review_attempts": FieldRule(_count, "int"),
        "subagent_timeout_seconds": FieldRule(_seconds, "float"),
        "gate_timeout_seconds": FieldRule(_seconds, "float", required=False, nullable=True),
        "definition": FieldRule(_path_text, "str", required=False, nullable=True, is_path=True),
    },
    "subagents": {
        "module": FieldRule(_module_path, "str", required=False, nullable=True),
    },
    "paths": {"state_db": FieldRule(_path_text, "str", is_path=True)},
    "observability": {
        "log_level": FieldRule(_one_of(LOG_LEVELS), "str"),
        "log_format": FieldRule(_one_of(LOG_FORMATS), "str"),
        "log_dir": FieldRule(_path_text, "str", is_path=True),
        "redact_secrets": FieldRule(_flag, "bool"),
    },
}

# Profiles may override anything but ``meta``.
OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in SECTIONS if name != "meta")


def iter_field_rules() -> Iterator[tuple[tuple[str, str], FieldRule]]:
    for section, fields in SECTIONS.items():
        for name, rule in fields.items():
            yield (section, name), rule


# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = tuple(
    path for path, rule in iter_field_rules() if rule.is_path
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> DeliveryConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade delivery.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the delivery-pipeline runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``."""

    return _overlay_onto(_plain_copy(base), overlay)


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    selected = (profile or "").strip()
    if not selected:
        return _plain_copy(config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError((ConfigValidationIssue("profiles", "profiles section is required"),))
    overlay = profiles.get(selected)
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    issues: list[ConfigValidationIssue] = []
    document = _object_at(config, "<root>", issues)
    if document is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    checked = _check_document(document, issues)

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected:
        profiles = checked.get("profiles", {})
        if selected in profiles:
            _check_document(merge_config(checked, profiles[selected]), issues)
        else:
            issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=checked, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking values replaced, for logs and dumps."""

    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


# ---------------------------------------------------------------------------
# Document walk
# ---------------------------------------------------------------------------


def _check_document(document: Mapping[str, object], issues: list[ConfigValidationIssue]) -> dict[str, Any]:
    _flag_unknown(document, [*SECTIONS, "profiles"], "", issues)
    checked: dict[str, Any] = {}
    for section in SECTIONS:
        if section not in document:
            issues.append(ConfigValidationIssue(section, "missing required field"))
            continue
        body = _object_at(document[section], section, issues)
        if body is not None:
            checked[section] = _check_section(body, section, issues, partial=False)

    if document.get("profiles") is not None:
        profiles = _object_at(document["profiles"], "profiles", issues)
        if profiles is not None:
            checked["profiles"] = _check_profiles(profiles, issues)
    return checked


def _check_section(
    body: Mapping[str, object],
    section: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
    prefix: str = "",
) -> dict[str, Any]:
    rules = SECTIONS[section]
    where = f"{prefix}{section}"
    _flag_unknown(body, rules, where, issues)
    checked: dict[str, Any] = {}
    for name, rule in rules.items():
        path = f"{where}.{name}"
        if name not in body:
            if rule.required and not partial:
                issues.append(ConfigValidationIssue(path, "missing required field"))
            continue
        value = body[name]
        if value is None and rule.nullable:
            checked[name] = None
            continue
        try:
            checked[name] = rule.check(value)
        except _Rejected as exc:
            issues.append(ConfigValidationIssue(path, str(exc)))
    return checked


def _check_profiles(
    profiles: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    checked: dict[str, Any] = {}
    for name in sorted(profiles):
        where = f"profiles.{name}"
        if re.fullmatch(r"[a-z][a-z0-9_-]*", name) is None:
            issues.append(ConfigValidationIssue(where, "profile name must match ^[a-z][a-z0-9_-]*$"))
            continue
        overlay = _object_at(profiles[name], where, issues)
        if overlay is None:
            continue
        _flag_unknown(overlay, OVERLAY_SECTIONS, where, issues)
        sections: dict[str, Any] = {}
        for section in OVERLAY_SECTIONS:
            if overlay.get(section) is None:
                continue
            body = _object_at(overlay[section], f"{where}.{section}", issues)
            if body is not None:
                sections[section] = _check_section(
                    body, section, issues, partial=True, prefix=f"{where}."
                )
        checked[name] = sections
    return checked


def _object_at(
    value: object, path: str, issues: list[ConfigValidationIssue]
) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    body: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            body[key] = item
        else:
            issues.append(
                ConfigValidationIssue(path, f"object key must be string, got {type(key).__name__}")
            )
    return body


def _flag_unknown(
    body: Mapping[str, object],
    known: Mapping[str, object] | Sequence[str],
    where: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(set(body) - set(known)):
        path = f"{where}.{key}" if where else key
        if is_sensitive_key(key):
            issues.append(
                ConfigValidationIssue(path, "embedded secret values are forbidden in config files")
            )
        else:
            issues.append(ConfigValidationIssue(path, "unknown field"))


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "api", "apikey", "private", "credential", "auth"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
)


def is_sensitive_key(key: str) -> bool:
    """``authToken``, ``client-secret`` and ``db_password`` are; ``token_env`` is not."""

    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    snake = re.sub(r"[^a-z0-9]+", "_", snake).strip("_")
    if snake.endswith("_env"):
        return False
    if any(phrase in snake for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_WORDS.isdisjoint(snake.split("_"))


def _redacted(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if is_sensitive_key(key) else _redacted(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


def _plain_copy(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(item) for key, item in value.items()}


def _overlay_onto(target: dict[str, Any], overlay: Mapping[str, object]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, Mapping):
            current = target.get(key)
            target[key] = _overlay_onto(current if isinstance(current, dict) else {}, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DeliveryConfig",
    "FieldRule",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "OVERLAY_SECTIONS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "SECTIONS",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "is_sensitive_key",
    "iter_field_rules",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
