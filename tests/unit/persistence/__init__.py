"""Fixtures shared by persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from delivery_pipeline.domain import ids
from delivery_pipeline.domain.models import (
    ContextEntry,
    PendingGate,
    PipelineDefinition,
    RunState,
    RunStatus,
    StageEvent,
    StageKind,
    StageOutcome,
    StageSpec,
)

BASE_TIME = datetime(2026, 2, 10, 15, 0, tzinfo=UTC)


def make_definition(name: str = "persisted") -> PipelineDefinition:
    return PipelineDefinition(
        name=name,
        stages=(
            StageSpec(
                name="plan",
                kind=StageKind.AUTOMATIC,
                role="planner",
                reads=("input",),
                produces="plan",
            ),
            StageSpec(
                name="design",
                kind=StageKind.GATED,
                role="architect",
                reads=("plan",),
                produces="design",
                description="Approve the design.",
            ),
        ),
    )


def make_awaiting_state(
    definition: PipelineDefinition, *, offset_seconds: int = 0
) -> RunState:
    """A run parked on the design gate after one rejection."""

    created = BASE_TIME + timedelta(seconds=offset_seconds)
    return RunState(
        run_id=ids.generate_run_id(),
        pipeline_ref=definition.ref,
        pipeline_name=definition.name,
        status=RunStatus.AWAITING_APPROVAL,
        current_stage_index=1,
        created_at=created,
        updated_at=created,
        context=(
            ContextEntry("input", 1, {"request": "add search"}, "input", created),
            ContextEntry("plan", 1, {"steps": ["index", "query"]}, "plan", created),
            ContextEntry("design", 1, "first design", "design", created),
            ContextEntry("design", 2, "second design", "design", created),
        ),
        history=(
            StageEvent(1, "plan", 1, StageOutcome.SUCCESS, created, "plan@v1"),
            StageEvent(2, "design", 1, StageOutcome.REJECTED, created, "design@v1", "too coupled"),
        ),
        stage_attempts={"design": 2, "plan": 1},
        pending_gate=PendingGate(
            stage_name="design",
            artifact_ref="design@v2",
            attempt_number=2,
            opened_at=created,
            description="Approve the design.",
        ),
    )


__all__ = ["BASE_TIME", "make_awaiting_state", "make_definition"]
