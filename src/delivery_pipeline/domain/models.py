"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from delivery_pipeline.constants import (
    ARTIFACT_VERSION_SEPARATOR,
    MAX_TEXT_LENGTH,
    PIPELINE_DEFINITION_SCHEMA_VERSION,
)
from delivery_pipeline.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = MAX_TEXT_LENGTH
_MAX_JSON_DEPTH = 32
_MAX_STAGES = 256


class StageKind(StrEnum):
    AUTOMATIC = "automatic"
    GATED = "gated"


class RunStatus(StrEnum):
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    BLOCKED_RETRY = "blocked_retry"
    COMPLETED = "completed"
    ABORTED = "aborted"


class StageOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    APPROVED = "approved"
    REJECTED = "rejected"


class IssueSeverity(StrEnum):
    CRITICAL = "critical"
    MINOR = "minor"


class VerdictOutcome(StrEnum):
    PASS = "PASS"
    BLOCK = "BLOCK"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.ABORTED})
CANCELLABLE_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL}
)
_RESUMABLE_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.RUNNING, RunStatus.BLOCKED_RETRY})


class CanonicalModel:
    """Dataclass mixin: deterministic ``to_dict``/``to_json`` plus ``from_json``.

    Subclasses provide ``from_dict``; enums serialize to their values and
    datetimes to ISO-8601 with a ``Z`` suffix.
    """

    def to_dict(self) -> dict[str, JSONValue]:
        return cast("dict[str, JSONValue]", _to_json_data(self, type(self).__name__))

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        where = cls.__name__
        if not isinstance(raw, str):
            _fail(where, f"expected JSON string, got {type(raw).__name__}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(where, f"invalid JSON: {exc}")
        if not isinstance(data, dict):
            _fail(where, "JSON root must be an object")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        raise NotImplementedError(f"{cls.__name__} does not support from_dict")


# ---------------------------------------------------------------------------
# Field coercion. Every failure is a ValueError reading "<path>: <problem>".
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _type_name(value: object) -> str:
    return type(value).__name__


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    """Shallow copy of a mapping whose keys are exactly ``required`` plus some of ``optional``."""

    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {_type_name(value)}")
    non_string = [key for key in value if not isinstance(key, str)]
    if non_string:
        _fail(path, f"object keys must be strings, got {_type_name(non_string[0])}")
    present = set(value)
    if unknown := sorted(present - required - (optional or set())):
        _fail(path, f"unexpected fields: {unknown}")
    if missing := sorted(required - present):
        _fail(path, f"missing required fields: {missing}")
    return dict(value)


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    """Stripped text of ``min_len``..``max_len`` characters."""

    if not isinstance(value, str):
        _fail(path, f"expected string, got {_type_name(value)}")
    text = value.strip()
    if not min_len <= len(text) <= max_len:
        _fail(
            path,
            f"must be at least {min_len} character(s)"
            if len(text) < min_len
            else f"must be <= {max_len} characters",
        )
    return text


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    return None if value is None else _as_str(value, path, max_len=max_len)


def _as_name(value: object, path: str) -> str:
    name = _as_str(value, path, max_len=64)
    try:
        domain_ids.validate_stage_name(name)
    except ValueError as exc:
        _fail(path, str(exc))
    return name


def _as_optional_name(value: object, path: str) -> str | None:
    return None if value is None else _as_name(value, path)


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {_type_name(value)}")
    return value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {_type_name(value)}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_positive_float(value: object, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {_type_name(value)}")
    number = float(value)
    if not (math.isfinite(number) and number > 0):
        _fail(path, "must be a finite number > 0")
    return number


def _as_datetime(value: object, path: str) -> datetime:
    """Aware datetime (or ISO-8601 text, ``Z`` allowed) normalized to UTC."""

    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(f"{value[:-1]}+00:00" if value.endswith("Z") else value)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    if not isinstance(value, datetime):
        _fail(path, f"expected datetime or ISO-8601 string, got {_type_name(value)}")
    if value.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return value.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    return (
        _as_datetime(value, "datetime").isoformat(timespec="microseconds").replace("+00:00", "Z")
    )


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {_type_name(value)}")
    by_value = {member.value: member for member in enum_type}
    if value not in by_value:
        _fail(path, f"invalid value {value!r}; expected one of: {', '.join(sorted(by_value))}")
    return by_value[value]


def _as_sequence(value: object, path: str) -> list[object]:
    """Lists and tuples keep their order; sets are sorted so output stays deterministic."""

    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {_type_name(value)}")
    return list(value)


def _as_name_tuple(value: object, path: str) -> tuple[str, ...]:
    names = tuple(
        _as_name(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )
    if len(frozenset(names)) < len(names):
        _fail(path, "contains duplicate values")
    return names


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    """Deep copy of ``value`` restricted to JSON types, finite floats and string keys."""

    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if isinstance(value, float) and not math.isfinite(value):
        _fail(path, "float values must be finite")
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{i}]", depth=depth + 1) for i, item in enumerate(value)]
    if not isinstance(value, Mapping):
        _fail(path, f"value is not JSON-serializable ({_type_name(value)})")
    copied: dict[str, JSONValue] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object key must be string, got {_type_name(key)}")
        copied[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
    return copied


def _to_json_data(value: object, path: str) -> JSONValue:
    """JSON form of a model tree: dataclasses, enums, datetimes, containers, scalars."""

    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: _to_json_data(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    if isinstance(value, Enum):
        if not isinstance(value.value, str):
            _fail(path, "enum value must be string")
        return value.value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [_to_json_data(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        if any(not isinstance(key, str) for key in value):
            _fail(path, "dict keys must be strings")
        return {key: _to_json_data(item, f"{path}.{key}") for key, item in value.items()}
    if value is None or isinstance(value, (str, bool, int, float)):
        return _as_json_value(value, path)
    _fail(path, f"cannot serialize value of type {_type_name(value)}")


def _validate_run_id(value: str, path: str) -> str:
    try:
        domain_ids.validate_run_id(value)
    except ValueError as exc:
        _fail(path, str(exc))
    return value


def format_artifact_ref(key: str, version: int) -> str:
    """Render the versioned reference of an artifact, e.g. ``design@v2``."""

    return f"{key}{ARTIFACT_VERSION_SEPARATOR}{version}"


def parse_artifact_ref(ref: str) -> tuple[str, int | None]:
    """Split ``design@v2`` into ``("design", 2)``; bare keys yield ``(key, None)``."""

    if not isinstance(ref, str):
        raise ValueError(f"artifact ref must be a string, got {type(ref).__name__}")
    key, separator, raw_version = ref.partition(ARTIFACT_VERSION_SEPARATOR)
    if not separator:
        return key, None
    if not raw_version.isdigit() or int(raw_version) < 1:
        raise ValueError(f"invalid artifact version in {ref!r}")
    return key, int(raw_version)


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StageSpec(CanonicalModel):
    """One row of the stage table: who runs it, what it reads, what it produces."""

    name: str
    kind: StageKind
    produces: str
    role: str | None = None
    reads: tuple[str, ...] = ()
    description: str | None = None
    instructions: str | None = None
    fix_role: str | None = None
    max_attempts: int | None = None
    rework_from: str | None = None
    timeout_seconds: float | None = None
    terminal: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_name(self.name, "StageSpec.name"))
        path = f"StageSpec[{self.name}]"
        object.__setattr__(self, "kind", _as_enum(StageKind, self.kind, f"{path}.kind"))
        object.__setattr__(self, "produces", _as_name(self.produces, f"{path}.produces"))
        object.__setattr__(self, "role", _as_optional_name(self.role, f"{path}.role"))
        object.__setattr__(self, "reads", _as_name_tuple(self.reads, f"{path}.reads"))
        object.__setattr__(
            self, "description", _as_optional_str(self.description, f"{path}.description")
        )
        object.__setattr__(
            self, "instructions", _as_optional_str(self.instructions, f"{path}.instructions")
        )
        object.__setattr__(self, "fix_role", _as_optional_name(self.fix_role, f"{path}.fix_role"))
        if self.max_attempts is not None:
            object.__setattr__(
                self, "max_attempts", _as_int(self.max_attempts, f"{path}.max_attempts", minimum=1)
            )
        object.__setattr__(
            self, "rework_from", _as_optional_name(self.rework_from, f"{path}.rework_from")
        )
        object.__setattr__(
            self,
            "timeout_seconds",
            _as_optional_positive_float(self.timeout_seconds, f"{path}.timeout_seconds"),
        )
        object.__setattr__(self, "terminal", _as_bool(self.terminal, f"{path}.terminal"))

    @property
    def is_gated(self) -> bool:
        return self.kind is StageKind.GATED

    @property
    def is_review_loop(self) -> bool:
        return self.fix_role is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageSpec:
        parsed = _expect_object(
            data,
            "StageSpec",
            required={"name", "kind", "produces"},
            optional={
                "role",
                "reads",
                "description",
                "instructions",
                "fix_role",
                "max_attempts",
                "rework_from",
                "timeout_seconds",
                "terminal",
            },
        )
        return cls(
            name=_as_str(parsed["name"], "StageSpec.name", max_len=64),
            kind=_as_enum(StageKind, parsed["kind"], "StageSpec.kind"),
            produces=_as_str(parsed["produces"], "StageSpec.produces", max_len=64),
            role=_as_optional_str(parsed.get("role"), "StageSpec.role", max_len=64),
            reads=tuple(_as_name_tuple(parsed.get("reads", ()), "StageSpec.reads")),
            description=_as_optional_str(parsed.get("description"), "StageSpec.description"),
            instructions=_as_optional_str(parsed.get("instructions"), "StageSpec.instructions"),
            fix_role=_as_optional_str(parsed.get("fix_role"), "StageSpec.fix_role", max_len=64),
            max_attempts=(
                _as_int(parsed["max_attempts"], "StageSpec.max_attempts", minimum=1)
                if parsed.get("max_attempts") is not None
                else None
            ),
            rework_from=_as_optional_str(
                parsed.get("rework_from"), "StageSpec.rework_from", max_len=64
            ),
            timeout_seconds=_as_optional_positive_float(
                parsed.get("timeout_seconds"), "StageSpec.timeout_seconds"
            ),
            terminal=_as_bool(parsed.get("terminal", False), "StageSpec.terminal"),
        )


@dataclass(frozen=True, slots=True)
class PipelineDefinition(CanonicalModel):
    """Ordered stage table. The last stage is marked terminal when none is."""

    name: str
    stages: tuple[StageSpec, ...]
    description: str | None = None
    schema_version: int = PIPELINE_DEFINITION_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_name(self.name, "PipelineDefinition.name"))
        object.__setattr__(
            self,
            "description",
            _as_optional_str(self.description, "PipelineDefinition.description"),
        )
        object.__setattr__(
            self,
            "schema_version",
            _as_int(self.schema_version, "PipelineDefinition.schema_version", minimum=1),
        )
        stages = tuple(_as_sequence(self.stages, "PipelineDefinition.stages"))
        if len(stages) > _MAX_STAGES:
            _fail("PipelineDefinition.stages", f"too many stages (>{_MAX_STAGES})")
        for index, stage in enumerate(stages):
            if not isinstance(stage, StageSpec):
                _fail(f"PipelineDefinition.stages[{index}]", "must be StageSpec")
        if stages and not any(stage.terminal for stage in stages):
            stages = (*stages[:-1], replace(stages[-1], terminal=True))
        object.__setattr__(self, "stages", stages)

    @property
    def ref(self) -> str:
        """Content address of the definition (sha256 of its canonical JSON)."""

        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineDefinition:
        parsed = _expect_object(
            data,
            "PipelineDefinition",
            required={"name", "stages"},
            optional={"description", "schema_version"},
        )
        raw_stages = parsed["stages"]
        if not isinstance(raw_stages, (list, tuple)):
            _fail("PipelineDefinition.stages", f"expected array, got {type(raw_stages).__name__}")
        return cls(
            name=_as_str(parsed["name"], "PipelineDefinition.name", max_len=64),
            stages=tuple(StageSpec.from_dict(_mapping(item)) for item in raw_stages),
            description=_as_optional_str(
                parsed.get("description"), "PipelineDefinition.description"
            ),
            schema_version=_as_int(
                parsed.get("schema_version", PIPELINE_DEFINITION_SCHEMA_VERSION),
                "PipelineDefinition.schema_version",
                minimum=1,
            ),
        )


def _mapping(value: object) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail("StageSpec", f"expected object, got {type(value).__name__}")
    return cast("Mapping[str, object]", value)


# ---------------------------------------------------------------------------
# Context entries, review verdicts, events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContextEntry(CanonicalModel):
    """One stored artifact version with its provenance metadata."""

    key: str
    version: int
    payload: JSONValue
    produced_by_stage: str
    created_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", _as_name(self.key, "ContextEntry.key"))
        object.__setattr__(self, "version", _as_int(self.version, "ContextEntry.version", minimum=1))
        object.__setattr__(self, "payload", _as_json_value(self.payload, "ContextEntry.payload"))
        object.__setattr__(
            self,
            "produced_by_stage",
            _as_name(self.produced_by_stage, "ContextEntry.produced_by_stage"),
        )
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "ContextEntry.created_at"))

    @property
    def ref(self) -> str:
        return format_artifact_ref(self.key, self.version)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ContextEntry:
        parsed = _expect_object(
            data,
            "ContextEntry",
            required={"key", "version", "payload", "produced_by_stage", "created_at"},
        )
        return cls(
            key=_as_str(parsed["key"], "ContextEntry.key", max_len=64),
            version=_as_int(parsed["version"], "ContextEntry.version", minimum=1),
            payload=_as_json_value(parsed["payload"], "ContextEntry.payload"),
            produced_by_stage=_as_str(
                parsed["produced_by_stage"], "ContextEntry.produced_by_stage", max_len=64
            ),
            created_at=_as_datetime(parsed["created_at"], "ContextEntry.created_at"),
        )


@dataclass(frozen=True, slots=True)
class Issue(CanonicalModel):
    severity: IssueSeverity
    location: str
    description: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "severity", _as_enum(IssueSeverity, self.severity, "Issue.severity"))
        object.__setattr__(self, "location", _as_str(self.location, "Issue.location", max_len=1024))
        object.__setattr__(self, "description", _as_str(self.description, "Issue.description"))

    @property
    def is_critical(self) -> bool:
        return self.severity is IssueSeverity.CRITICAL

    def summary(self) -> str:
        return f"[{self.severity.value}] {self.location}: {self.description}"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Issue:
        parsed = _expect_object(
            data, "Issue", required={"severity", "location", "description"}
        )
        return cls(
            severity=_as_enum(IssueSeverity, parsed["severity"], "Issue.severity"),
            location=_as_str(parsed["location"], "Issue.location", max_len=1024),
            description=_as_str(parsed["description"], "Issue.description"),
        )


@dataclass(frozen=True, slots=True)
class ReviewVerdict(CanonicalModel):
    """Reviewer output. BLOCK exactly when at least one critical issue is present."""

    outcome: VerdictOutcome
    issues: tuple[Issue, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "outcome", _as_enum(VerdictOutcome, self.outcome, "ReviewVerdict.outcome")
        )
        issues = tuple(_as_sequence(self.issues, "ReviewVerdict.issues"))
        for index, issue in enumerate(issues):
            if not isinstance(issue, Issue):
                _fail(f"ReviewVerdict.issues[{index}]", "must be Issue")
        object.__setattr__(self, "issues", issues)

        expected = _outcome_for(issues)
        if self.outcome is not expected:
            _fail(
                "ReviewVerdict.outcome",
                f"{self.outcome.value} is inconsistent with issues (expected {expected.value})",
            )

    @property
    def passed(self) -> bool:
        return self.outcome is VerdictOutcome.PASS

    @property
    def critical_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.issues if issue.is_critical)

    @classmethod
    def from_issues(cls, issues: Iterable[Issue]) -> ReviewVerdict:
        materialized = tuple(issues)
        return cls(outcome=_outcome_for(materialized), issues=materialized)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ReviewVerdict:
        parsed = _expect_object(data, "ReviewVerdict", required=set(), optional={"outcome", "issues"})
        raw_issues = _as_sequence(parsed.get("issues", ()), "ReviewVerdict.issues")
        issues = tuple(
            Issue.from_dict(
                _expect_object(
                    item,
                    f"ReviewVerdict.issues[{index}]",
                    required={"severity", "location", "description"},
                )
            )
            for index, item in enumerate(raw_issues)
        )
        if parsed.get("outcome") is None:
            return cls.from_issues(issues)
        return cls(
            outcome=_as_enum(VerdictOutcome, parsed["outcome"], "ReviewVerdict.outcome"),
            issues=issues,
        )


def _outcome_for(issues: tuple[Issue, ...]) -> VerdictOutcome:
    if any(issue.is_critical for issue in issues):
        return VerdictOutcome.BLOCK
    return VerdictOutcome.PASS


@dataclass(frozen=True, slots=True)
class StageEvent(CanonicalModel):
    """Immutable audit record written after every stage attempt."""

    sequence: int
    stage_name: str
    attempt_number: int
    outcome: StageOutcome
    recorded_at: datetime
    artifact_ref: str | None = None
    note: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "sequence", _as_int(self.sequence, "StageEvent.sequence", minimum=1))
        object.__setattr__(self, "stage_name", _as_name(self.stage_name, "StageEvent.stage_name"))
        object.__setattr__(
            self,
            "attempt_number",
            _as_int(self.attempt_number, "StageEvent.attempt_number", minimum=1),
        )
        object.__setattr__(self, "outcome", _as_enum(StageOutcome, self.outcome, "StageEvent.outcome"))
        object.__setattr__(self, "recorded_at", _as_datetime(self.recorded_at, "StageEvent.recorded_at"))
        if self.artifact_ref is not None:
            ref = _as_str(self.artifact_ref, "StageEvent.artifact_ref", max_len=128)
            try:
                parse_artifact_ref(ref)
            except ValueError as exc:
                _fail("StageEvent.artifact_ref", str(exc))
            object.__setattr__(self, "artifact_ref", ref)
        object.__setattr__(self, "note", _as_optional_str(self.note, "StageEvent.note"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageEvent:
        parsed = _expect_object(
            data,
            "StageEvent",
            required={"sequence", "stage_name", "attempt_number", "outcome", "recorded_at"},
            optional={"artifact_ref", "note"},
        )
        return cls(
            sequence=_as_int(parsed["sequence"], "StageEvent.sequence", minimum=1),
            stage_name=_as_str(parsed["stage_name"], "StageEvent.stage_name", max_len=64),
            attempt_number=_as_int(parsed["attempt_number"], "StageEvent.attempt_number", minimum=1),
            outcome=_as_enum(StageOutcome, parsed["outcome"], "StageEvent.outcome"),
            recorded_at=_as_datetime(parsed["recorded_at"], "StageEvent.recorded_at"),
            artifact_ref=_as_optional_str(parsed.get("artifact_ref"), "StageEvent.artifact_ref"),
            note=_as_optional_str(parsed.get("note"), "StageEvent.note"),
        )


@dataclass(frozen=True, slots=True)
class PendingGate(CanonicalModel):
    """The artifact a gated stage is waiting on, with its optional deadline."""

    stage_name: str
    artifact_ref: str
    attempt_number: int
    opened_at: datetime
    description: str | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage_name", _as_name(self.stage_name, "PendingGate.stage_name"))
        object.__setattr__(
            self, "artifact_ref", _as_str(self.artifact_ref, "PendingGate.artifact_ref", max_len=128)
        )
        object.__setattr__(
            self,
            "attempt_number",
            _as_int(self.attempt_number, "PendingGate.attempt_number", minimum=1),
        )
        object.__setattr__(self, "opened_at", _as_datetime(self.opened_at, "PendingGate.opened_at"))
        object.__setattr__(
            self, "description", _as_optional_str(self.description, "PendingGate.description")
        )
        object.__setattr__(
            self, "expires_at", _as_optional_datetime(self.expires_at, "PendingGate.expires_at")
        )
        if self.expires_at is not None and self.expires_at < self.opened_at:
            _fail("PendingGate.expires_at", "must be >= PendingGate.opened_at")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PendingGate:
        parsed = _expect_object(
            data,
            "PendingGate",
            required={"stage_name", "artifact_ref", "attempt_number", "opened_at"},
            optional={"description", "expires_at"},
        )
        return cls(
            stage_name=_as_str(parsed["stage_name"], "PendingGate.stage_name", max_len=64),
            artifact_ref=_as_str(parsed["artifact_ref"], "PendingGate.artifact_ref", max_len=128),
            attempt_number=_as_int(
                parsed["attempt_number"], "PendingGate.attempt_number", minimum=1
            ),
            opened_at=_as_datetime(parsed["opened_at"], "PendingGate.opened_at"),
            description=_as_optional_str(parsed.get("description"), "PendingGate.description"),
            expires_at=_as_optional_datetime(parsed.get("expires_at"), "PendingGate.expires_at"),
        )


@dataclass(frozen=True, slots=True)
class ReviewProgress(CanonicalModel):
    """Where an unfinished review loop stands.

    With ``verdict`` set, review ``attempt`` blocked on ``artifact`` and the fix
    for it has not been applied. Without it, ``artifact`` is the fixed version
    and review ``attempt`` is the next one to run.
    """

    stage_name: str
    attempt: int
    artifact: JSONValue
    verdict: ReviewVerdict | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage_name", _as_name(self.stage_name, "ReviewProgress.stage_name"))
        object.__setattr__(
            self, "attempt", _as_int(self.attempt, "ReviewProgress.attempt", minimum=1)
        )
        object.__setattr__(self, "artifact", _as_json_value(self.artifact, "ReviewProgress.artifact"))
        if self.verdict is not None:
            if not isinstance(self.verdict, ReviewVerdict):
                _fail("ReviewProgress.verdict", "must be ReviewVerdict")
            if self.verdict.passed:
                _fail("ReviewProgress.verdict", "only a BLOCK verdict can be pending")

    @property
    def fix_pending(self) -> bool:
        return self.verdict is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ReviewProgress:
        parsed = _expect_object(
            data,
            "ReviewProgress",
            required={"stage_name", "attempt", "artifact"},
            optional={"verdict"},
        )
        verdict_raw = parsed.get("verdict")
        if verdict_raw is not None and not isinstance(verdict_raw, Mapping):
            _fail("ReviewProgress.verdict", "must be an object")
        return cls(
            stage_name=_as_str(parsed["stage_name"], "ReviewProgress.stage_name", max_len=64),
            attempt=_as_int(parsed["attempt"], "ReviewProgress.attempt", minimum=1),
            artifact=_as_json_value(parsed["artifact"], "ReviewProgress.artifact"),
            verdict=(
                ReviewVerdict.from_dict(cast("Mapping[str, object]", verdict_raw))
                if verdict_raw is not None
                else None
            ),
        )


def clip_text(text: str | None, limit: int = MAX_TEXT_LENGTH) -> str | None:
    """``text`` stripped and cut to ``limit`` characters (ending in an ellipsis when cut).

    Blank text becomes ``None``.
    """

    if text is None:
        return None
    cleaned = text.strip()
    if not cleaned:
        return None
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 1].rstrip() + "…"


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RunState(CanonicalModel):
    """Snapshot of one pipeline run: position, status, context, and event log."""

    run_id: str
    pipeline_ref: str
    pipeline_name: str
    status: RunStatus
    current_stage_index: int
    created_at: datetime
    updated_at: datetime
    context: tuple[ContextEntry, ...] = ()
    history: tuple[StageEvent, ...] = ()
    stage_attempts: dict[str, int] = field(default_factory=dict)
    pending_gate: PendingGate | None = None
    revision_note: str | None = None
    issues: tuple[Issue, ...] = ()
    abort_reason: str | None = None
    abort_error: str | None = None
    review_progress: ReviewProgress | None = None
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "schema_version", _as_int(self.schema_version, "RunState.schema_version", minimum=1)
        )
        object.__setattr__(
            self, "run_id", _validate_run_id(_as_str(self.run_id, "RunState.run_id"), "RunState.run_id")
        )
        object.__setattr__(
            self, "pipeline_ref", _as_str(self.pipeline_ref, "RunState.pipeline_ref", max_len=64)
        )
        object.__setattr__(
            self, "pipeline_name", _as_name(self.pipeline_name, "RunState.pipeline_name")
        )
        object.__setattr__(self, "status", _as_enum(RunStatus, self.status, "RunState.status"))
        object.__setattr__(
            self,
            "current_stage_index",
            _as_int(self.current_stage_index, "RunState.current_stage_index", minimum=0),
        )
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "RunState.created_at"))
        object.__setattr__(self, "updated_at", _as_datetime(self.updated_at, "RunState.updated_at"))
        if self.updated_at < self.created_at:
            _fail("RunState.updated_at", "must be >= RunState.created_at")

        context = tuple(_as_sequence(self.context, "RunState.context"))
        seen_refs: set[str] = set()
        for index, entry in enumerate(context):
            if not isinstance(entry, ContextEntry):
                _fail(f"RunState.context[{index}]", "must be ContextEntry")
            if entry.ref in seen_refs:
                _fail(f"RunState.context[{index}]", f"duplicate artifact {entry.ref}")
            seen_refs.add(entry.ref)
        object.__setattr__(self, "context", context)

        history = tuple(_as_sequence(self.history, "RunState.history"))
        for index, event in enumerate(history):
            if not isinstance(event, StageEvent):
                _fail(f"RunState.history[{index}]", "must be StageEvent")
            if event.sequence != index + 1:
                _fail(
                    f"RunState.history[{index}]",
                    f"sequence must be {index + 1}, got {event.sequence}",
                )
        object.__setattr__(self, "history", history)

        if not isinstance(self.stage_attempts, Mapping):
            _fail("RunState.stage_attempts", "must be an object")
        attempts: dict[str, int] = {}
        for name in sorted(self.stage_attempts):
            attempts[_as_name(name, "RunState.stage_attempts.<key>")] = _as_int(
                self.stage_attempts[name], f"RunState.stage_attempts.{name}", minimum=0
            )
        object.__setattr__(self, "stage_attempts", attempts)

        if self.pending_gate is not None and not isinstance(self.pending_gate, PendingGate):
            _fail("RunState.pending_gate", "must be PendingGate")
        if (self.pending_gate is not None) != (self.status is RunStatus.AWAITING_APPROVAL):
            _fail("RunState.pending_gate", "must be set exactly when awaiting approval")

        issues = tuple(_as_sequence(self.issues, "RunState.issues"))
        for index, issue in enumerate(issues):
            if not isinstance(issue, Issue):
                _fail(f"RunState.issues[{index}]", "must be Issue")
        object.__setattr__(self, "issues", issues)

        object.__setattr__(
            self, "revision_note", _as_optional_str(self.revision_note, "RunState.revision_note")
        )
        object.__setattr__(
            self, "abort_reason", _as_optional_str(self.abort_reason, "RunState.abort_reason")
        )
        object.__setattr__(
            self, "abort_error", _as_optional_str(self.abort_error, "RunState.abort_error", max_len=128)
        )
        if self.review_progress is not None:
            if not isinstance(self.review_progress, ReviewProgress):
                _fail("RunState.review_progress", "must be ReviewProgress")
            if self.status not in _RESUMABLE_STATUSES:
                _fail("RunState.review_progress", "only a running or blocked_retry run can hold it")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def attempts_for(self, stage_name: str) -> int:
        return self.stage_attempts.get(stage_name, 0)

    def events_for(self, stage_name: str) -> tuple[StageEvent, ...]:
        return tuple(event for event in self.history if event.stage_name == stage_name)

    def artifact_versions(self, key: str) -> tuple[ContextEntry, ...]:
        return tuple(
            sorted(
                (entry for entry in self.context if entry.key == key),
                key=lambda entry: entry.version,
            )
        )

    def abort_report(self) -> dict[str, JSONValue]:
        """Explain an aborted run: reason, error type, issues and full history."""

        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "reason": self.abort_reason,
            "error": self.abort_error,
            "issues": [issue.to_dict() for issue in self.issues],
            "history": [event.to_dict() for event in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunState:
        parsed = _expect_object(
            data,
            "RunState",
            required={
                "run_id",
                "pipeline_ref",
                "pipeline_name",
                "status",
                "current_stage_index",
                "created_at",
                "updated_at",
            },
            optional={
                "context",
                "history",
                "stage_attempts",
                "pending_gate",
                "revision_note",
                "issues",
                "abort_reason",
                "abort_error",
                "review_progress",
                "schema_version",
            },
        )

        def _objects(key: str) -> list[Mapping[str, object]]:
            items = _as_sequence(parsed.get(key, ()), f"RunState.{key}")
            out: list[Mapping[str, object]] = []
            for index, item in enumerate(items):
                if not isinstance(item, Mapping):
                    _fail(f"RunState.{key}[{index}]", f"expected object, got {type(item).__name__}")
                out.append(cast("Mapping[str, object]", item))
            return out

        attempts_raw = parsed.get("stage_attempts", {})
        if not isinstance(attempts_raw, Mapping):
            _fail("RunState.stage_attempts", "must be an object")
        gate_raw = parsed.get("pending_gate")
        if gate_raw is not None and not isinstance(gate_raw, Mapping):
            _fail("RunState.pending_gate", "must be an object")
        progress_raw = parsed.get("review_progress")
        if progress_raw is not None and not isinstance(progress_raw, Mapping):
            _fail("RunState.review_progress", "must be an object")

        return cls(
            run_id=_as_str(parsed["run_id"], "RunState.run_id"),
            pipeline_ref=_as_str(parsed["pipeline_ref"], "RunState.pipeline_ref", max_len=64),
            pipeline_name=_as_str(parsed["pipeline_name"], "RunState.pipeline_name", max_len=64),
            status=_as_enum(RunStatus, parsed["status"], "RunState.status"),
            current_stage_index=_as_int(
                parsed["current_stage_index"], "RunState.current_stage_index", minimum=0
            ),
            created_at=_as_datetime(parsed["created_at"], "RunState.created_at"),
            updated_at=_as_datetime(parsed["updated_at"], "RunState.updated_at"),
            context=tuple(ContextEntry.from_dict(item) for item in _objects("context")),
            history=tuple(StageEvent.from_dict(item) for item in _objects("history")),
            stage_attempts={
                str(key): _as_int(value, f"RunState.stage_attempts.{key}", minimum=0)
                for key, value in attempts_raw.items()
            },
            pending_gate=(
                PendingGate.from_dict(cast("Mapping[str, object]", gate_raw))
                if gate_raw is not None
                else None
            ),
            revision_note=_as_optional_str(parsed.get("revision_note"), "RunState.revision_note"),
            issues=tuple(Issue.from_dict(item) for item in _objects("issues")),
            abort_reason=_as_optional_str(parsed.get("abort_reason"), "RunState.abort_reason"),
            abort_error=_as_optional_str(parsed.get("abort_error"), "RunState.abort_error"),
            review_progress=(
                ReviewProgress.from_dict(cast("Mapping[str, object]", progress_raw))
                if progress_raw is not None
                else None
            ),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "RunState.schema_version", minimum=1
            ),
        )


__all__ = [
    "CANCELLABLE_RUN_STATUSES",
    "CanonicalModel",
    "ContextEntry",
    "Issue",
    "IssueSeverity",
    "JSONScalar",
    "JSONValue",
    "PendingGate",
    "PipelineDefinition",
    "ReviewProgress",
    "ReviewVerdict",
    "RunState",
    "RunStatus",
    "StageEvent",
    "StageKind",
    "StageOutcome",
    "StageSpec",
    "TERMINAL_RUN_STATUSES",
    "VerdictOutcome",
    "clip_text",
    "format_artifact_ref",
    "parse_artifact_ref",
]
