"""What the run supervisor announces while a run moves through its stages."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from delivery_pipeline.domain import ids
from delivery_pipeline.domain.models import (
    JSONValue,
    _as_datetime,
    _as_enum,
    _as_json_value,
    _as_optional_str,
    _canonical_json,
    _datetime_to_iso8601z,
    _expect_object,
    _fail,
)

REDACTED: Final[str] = "***REDACTED***"
_SENSITIVE_FRAGMENTS: Final[tuple[str, ...]] = ("secret", "key", "password", "token")


class EventType(StrEnum):
    RUN_STARTED = "RunStarted"
    RUN_RESUMED = "RunResumed"
    RUN_COMPLETED = "RunCompleted"
    RUN_ABORTED = "RunAborted"
    STAGE_SUCCEEDED = "StageSucceeded"
    STAGE_FAILED = "StageFailed"
    REVIEW_BLOCKED = "ReviewBlocked"
    GATE_OPENED = "GateOpened"
    GATE_APPROVED = "GateApproved"
    GATE_REJECTED = "GateRejected"
    GATE_EXPIRED = "GateExpired"

    @classmethod
    def parse(cls, value: object) -> EventType:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"event type must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip())
        except ValueError as exc:
            allowed = ", ".join(member.value for member in cls)
            raise ValueError(f"invalid event_type {value!r}; allowed: {allowed}") from exc


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """One lifecycle event; ``correlation_id`` is the run id it belongs to."""

    event_id: str
    event_type: EventType
    timestamp: datetime
    correlation_id: str | None
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        object.__setattr__(
            self, "event_type", _as_enum(EventType, self.event_type, "PipelineEvent.event_type")
        )
        object.__setattr__(self, "timestamp", _as_datetime(self.timestamp, "PipelineEvent.timestamp"))
        object.__setattr__(
            self,
            "correlation_id",
            _as_optional_str(self.correlation_id, "PipelineEvent.correlation_id", max_len=256),
        )
        object.__setattr__(self, "payload", _json_object(self.payload, "PipelineEvent.payload"))

    @classmethod
    def create(
        cls,
        event_type: EventType | str,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> PipelineEvent:
        """New event with a fresh ``evt-`` id, stamped now."""

        return cls(
            event_id=ids.generate_event_id(),
            event_type=EventType.parse(event_type),
            timestamp=datetime.now(tz=UTC),
            correlation_id=correlation_id,
            payload=dict(payload),  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineEvent:
        fields = _expect_object(
            data,
            "PipelineEvent",
            required={"event_id", "event_type", "timestamp", "payload"},
            optional={"correlation_id"},
        )
        return cls(
            event_id=fields["event_id"],  # type: ignore[arg-type]
            event_type=fields["event_type"],  # type: ignore[arg-type]
            timestamp=fields["timestamp"],  # type: ignore[arg-type]
            correlation_id=fields.get("correlation_id"),  # type: ignore[arg-type]
            payload=fields["payload"],  # type: ignore[arg-type]
        )


def redact_sensitive(event: PipelineEvent) -> PipelineEvent:
    """Copy of ``event`` whose payload hides values under secret-looking keys."""

    return dataclasses.replace(event, payload=_masked(event.payload))


def _json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected object")
    return parsed


def _masked(payload: dict[str, JSONValue]) -> dict[str, JSONValue]:
    def mask(value: JSONValue) -> JSONValue:
        if isinstance(value, dict):
            return {
                key: REDACTED
                if any(fragment in key.lower() for fragment in _SENSITIVE_FRAGMENTS)
                else mask(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [mask(item) for item in value]
        return value

    return mask(payload)  # type: ignore[return-value]


__all__ = ["REDACTED", "EventType", "PipelineEvent", "redact_sensitive"]
