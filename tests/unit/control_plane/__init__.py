"""Shared fakes for control plane tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from delivery_pipeline.domain.models import JSONValue, PipelineDefinition, StageKind, StageSpec
from delivery_pipeline.synthesis_plane.invoker import SubagentInvoker, SubagentTask
from delivery_pipeline.synthesis_plane.roles import SubagentRegistry

PASS_VERDICT: dict[str, JSONValue] = {"outcome": "PASS", "issues": []}
BLOCK_VERDICT: dict[str, JSONValue] = {
    "outcome": "BLOCK",
    "issues": [
        {"severity": "critical", "location": "src/app.py:12", "description": "unchecked input"}
    ],
}


@dataclass(slots=True)
class FakeClock:
    now: datetime = field(default_factory=lambda: datetime(2026, 1, 1, 12, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def debug(self, event: str, **kwargs: Any) -> None:
        self.events.append(("debug", event, kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self.events.append(("info", event, kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.events.append(("warning", event, kwargs))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class ScriptedSubagents:
    """Role handlers producing deterministic artifacts and recording every task.

    Reviewer verdicts are taken from ``verdicts`` in order; once exhausted the
    last verdict repeats. Roles in ``failing`` raise instead of answering.
    """

    def __init__(
        self,
        *,
        verdicts: Iterable[Mapping[str, JSONValue]] = (PASS_VERDICT,),
        failing: Iterable[str] = (),
        review_role: str = "reviewer",
    ) -> None:
        self.verdicts = [dict(verdict) for verdict in verdicts]
        self.failing = set(failing)
        self.review_role = review_role
        self.tasks: list[SubagentTask] = []
        self._review_calls = 0

    def handler(self, role: str) -> Callable[[SubagentTask], JSONValue]:
        def _handle(task: SubagentTask) -> JSONValue:
            self.tasks.append(task)
            if role in self.failing:
                raise RuntimeError(f"{role} is unavailable")
            if role == self.review_role:
                index = min(self._review_calls, len(self.verdicts) - 1)
                self._review_calls += 1
                return self.verdicts[index]
            return {
                "role": role,
                "stage": task.stage_name,
                "attempt": task.attempt_number,
                "revision_note": task.revision_note,
                "reads": sorted(task.context_slice),
            }

        return _handle

    def registry(self, roles: Iterable[str]) -> SubagentRegistry:
        return SubagentRegistry.from_mapping({role: self.handler(role) for role in roles})

    def invoker(self, roles: Iterable[str], **kwargs: Any) -> SubagentInvoker:
        return SubagentInvoker(self.registry(roles), **kwargs)

    def calls_for(self, role: str) -> list[SubagentTask]:
        return [task for task in self.tasks if task.role == role]


def three_stage_pipeline() -> PipelineDefinition:
    """automatic -> gated -> automatic."""

    return PipelineDefinition(
        name="three-stage",
        stages=(
            StageSpec(
                name="draft",
                kind=StageKind.AUTOMATIC,
                role="planner",
                reads=("input",),
                produces="draft",
            ),
            StageSpec(
                name="design",
                kind=StageKind.GATED,
                role="architect",
                reads=("draft",),
                produces="design",
                description="Approve the design before building.",
            ),
            StageSpec(
                name="build",
                kind=StageKind.AUTOMATIC,
                role="builder",
                reads=("design",),
                produces="build",
            ),
        ),
    )


def review_pipeline(*, max_attempts: int | None = None) -> PipelineDefinition:
    return PipelineDefinition(
        name="reviewed",
        stages=(
            StageSpec(
                name="build",
                kind=StageKind.AUTOMATIC,
                role="builder",
                reads=("input",),
                produces="build",
            ),
            StageSpec(
                name="review",
                kind=StageKind.AUTOMATIC,
                role="reviewer",
                fix_role="builder",
                max_attempts=max_attempts,
                reads=("build",),
                produces="review",
            ),
        ),
    )


__all__ = [
    "BLOCK_VERDICT",
    "FakeClock",
    "PASS_VERDICT",
    "RecordingLogger",
    "ScriptedSubagents",
    "review_pipeline",
    "three_stage_pipeline",
]
