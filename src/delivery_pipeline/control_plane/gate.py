"""Approval gate state machine: ``PENDING_APPROVAL -> {APPROVED, REJECTED}``."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import NoReturn

from delivery_pipeline.constants import MAX_TEXT_LENGTH
from delivery_pipeline.domain.errors import UserRejection
from delivery_pipeline.domain.models import PendingGate, StageSpec


class GateState(StrEnum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Resolution of one pending gate."""

    state: GateState
    stage_name: str
    artifact_ref: str
    attempt_number: int
    decided_at: datetime
    note: str | None = None


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class GateController:
    """Opens and resolves gates; holds no per-run state.

    Rejection is an expected outcome, surfaced as ``UserRejection`` so the
    supervisor can run the revise loop. There is no ceiling on rejections.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if timeout_seconds is not None:
            if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
                raise ValueError("gate timeout_seconds must be numeric")
            if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
                raise ValueError("gate timeout_seconds must be a finite number > 0")
        self._timeout_seconds = None if timeout_seconds is None else float(timeout_seconds)
        self._clock = clock if clock is not None else _utc_now

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout_seconds

    def open(self, stage: StageSpec, *, artifact_ref: str, attempt_number: int) -> PendingGate:
        if not stage.is_gated:
            raise ValueError(f"stage {stage.name!r} is not gated")
        opened_at = self._clock()
        expires_at = (
            opened_at + timedelta(seconds=self._timeout_seconds)
            if self._timeout_seconds is not None
            else None
        )
        return PendingGate(
            stage_name=stage.name,
            artifact_ref=artifact_ref,
            attempt_number=attempt_number,
            opened_at=opened_at,
            description=stage.description,
            expires_at=expires_at,
        )

    def is_expired(self, gate: PendingGate, *, now: datetime | None = None) -> bool:
        if gate.expires_at is None:
            return False
        current = now if now is not None else self._clock()
        return current >= gate.expires_at

    def approve(self, gate: PendingGate, *, note: str | None = None) -> GateDecision:
        return GateDecision(
            state=GateState.APPROVED,
            stage_name=gate.stage_name,
            artifact_ref=gate.artifact_ref,
            attempt_number=gate.attempt_number,
            decided_at=self._clock(),
            note=_clean_note(note),
        )

    def reject(self, gate: PendingGate, *, note: str) -> NoReturn:
        """Validate the revision note and raise ``UserRejection`` for the gate."""

        revision = _clean_note(note)
        if revision is None:
            raise ValueError("note must not be empty")
        raise UserRejection(gate.stage_name, gate.artifact_ref, revision)


def _clean_note(note: str | None) -> str | None:
    """Stripped note, or ``None`` when absent or blank."""

    if note is None:
        return None
    if not isinstance(note, str):
        raise ValueError(f"note must be a string, got {type(note).__name__}")
    cleaned = note.strip()
    if len(cleaned) > MAX_TEXT_LENGTH:
        raise ValueError(f"note must be at most {MAX_TEXT_LENGTH} characters")
    return cleaned or None


__all__ = ["GateController", "GateDecision", "GateState"]
