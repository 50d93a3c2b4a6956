from __future__ import annotations

from datetime import timedelta

import pytest

from delivery_pipeline.constants import MAX_TEXT_LENGTH
from delivery_pipeline.control_plane.gate import GateController, GateState
from delivery_pipeline.domain.errors import UserRejection
from delivery_pipeline.domain.models import StageKind, StageSpec

from . import FakeClock

GATED = StageSpec(
    name="design",
    kind=StageKind.GATED,
    role="architect",
    produces="design",
    description="Approve the design.",
)


def test_open_gate_carries_stage_description() -> None:
    clock = FakeClock()
    gate = GateController(clock=clock).open(GATED, artifact_ref="design@v1", attempt_number=1)

    assert gate.stage_name == "design"
    assert gate.artifact_ref == "design@v1"
    assert gate.description == "Approve the design."
    assert gate.opened_at == clock.now
    assert gate.expires_at is None


def test_open_rejects_automatic_stage() -> None:
    stage = StageSpec(name="build", kind=StageKind.AUTOMATIC, role="builder", produces="build")

    with pytest.raises(ValueError, match="not gated"):
        GateController().open(stage, artifact_ref="build@v1", attempt_number=1)


def test_expiry_follows_timeout() -> None:
    clock = FakeClock()
    controller = GateController(timeout_seconds=30, clock=clock)
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=1)

    assert gate.expires_at == clock.now + timedelta(seconds=30)
    assert not controller.is_expired(gate)
    clock.advance(29)
    assert not controller.is_expired(gate)
    clock.advance(1)
    assert controller.is_expired(gate)


def test_gate_without_timeout_never_expires() -> None:
    clock = FakeClock()
    controller = GateController(clock=clock)
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=1)

    assert not controller.is_expired(gate, now=clock.now + timedelta(days=365))


def test_approve_records_normalized_note() -> None:
    controller = GateController(clock=FakeClock())
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=2)

    decision = controller.approve(gate, note="  ship it ")

    assert decision.state is GateState.APPROVED
    assert decision.note == "ship it"
    assert decision.attempt_number == 2
    assert controller.approve(gate).note is None
    assert controller.approve(gate, note="   ").note is None


def test_reject_raises_user_rejection() -> None:
    controller = GateController(clock=FakeClock())
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=1)

    with pytest.raises(UserRejection) as excinfo:
        controller.reject(gate, note="split the module")

    assert excinfo.value.artifact_ref == "design@v1"
    assert excinfo.value.note == "split the module"
    assert str(excinfo.value) == "design@v1 rejected: split the module"


@pytest.mark.parametrize("note", ["", "   ", None])
def test_reject_requires_note(note: object) -> None:
    controller = GateController(clock=FakeClock())
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=1)

    with pytest.raises(ValueError, match="note"):
        controller.reject(gate, note=note)  # type: ignore[arg-type]


def test_notes_longer_than_the_text_limit_are_refused() -> None:
    controller = GateController(clock=FakeClock())
    gate = controller.open(GATED, artifact_ref="design@v1", attempt_number=1)
    too_long = "n" * (MAX_TEXT_LENGTH + 1)

    with pytest.raises(ValueError, match="at most"):
        controller.approve(gate, note=too_long)
    with pytest.raises(ValueError, match="at most"):
        controller.reject(gate, note=too_long)
    with pytest.raises(ValueError, match="must be a string"):
        controller.approve(gate, note=42)  # type: ignore[arg-type]


@pytest.mark.parametrize("timeout", [0, -5, float("inf"), True])
def test_rejects_invalid_timeout(timeout: object) -> None:
    with pytest.raises(ValueError):
        GateController(timeout_seconds=timeout)  # type: ignore[arg-type]
