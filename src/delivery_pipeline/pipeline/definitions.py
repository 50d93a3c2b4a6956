"""Built-in delivery pipeline and YAML pipeline definition files."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import cast

import yaml

from delivery_pipeline.constants import INPUT_ARTIFACT_KEY
from delivery_pipeline.domain.models import JSONValue, PipelineDefinition, StageKind, StageSpec
from delivery_pipeline.synthesis_plane.roles import (
    ROLE_ARCHITECT,
    ROLE_BUILDER,
    ROLE_DOCUMENTER,
    ROLE_GIT_OPERATOR,
    ROLE_INTAKE_ANALYST,
    ROLE_PLANNER,
    ROLE_REVIEWER,
    ROLE_TEST_WRITER,
)

DEFAULT_PIPELINE_NAME = "delivery"


def default_pipeline() -> PipelineDefinition:
    """Ten-stage delivery flow: intake through debrief with plan, design and verify gates."""

    return PipelineDefinition(
        name=DEFAULT_PIPELINE_NAME,
        description="Feature delivery from request intake to commit and debrief.",
        stages=(
            StageSpec(
                name="intake",
                kind=StageKind.AUTOMATIC,
                role=ROLE_INTAKE_ANALYST,
                reads=(INPUT_ARTIFACT_KEY,),
                produces="intake",
                instructions="Summarise the request and list open questions.",
            ),
            StageSpec(
                name="plan",
                kind=StageKind.GATED,
                role=ROLE_PLANNER,
                reads=("intake",),
                produces="plan",
                description="Implementation plan awaiting approval.",
                instructions="Produce a step-by-step implementation plan.",
            ),
            StageSpec(
                name="design",
                kind=StageKind.GATED,
                role=ROLE_ARCHITECT,
                reads=("intake", "plan"),
                produces="design",
                description="Technical design awaiting approval.",
                instructions="Describe components, interfaces and data changes.",
            ),
            StageSpec(
                name="branch",
                kind=StageKind.AUTOMATIC,
                role=ROLE_GIT_OPERATOR,
                reads=("plan",),
                produces="branch",
                instructions="Create a feature branch for the planned work.",
            ),
            StageSpec(
                name="tests",
                kind=StageKind.AUTOMATIC,
                role=ROLE_TEST_WRITER,
                reads=("design", "branch"),
                produces="tests",
                instructions="Write failing tests that pin the designed behaviour.",
            ),
            StageSpec(
                name="build",
                kind=StageKind.AUTOMATIC,
                role=ROLE_BUILDER,
                reads=("design", "tests"),
                produces="build",
                instructions="Implement the design until the tests pass.",
            ),
            StageSpec(
                name="review",
                kind=StageKind.AUTOMATIC,
                role=ROLE_REVIEWER,
                fix_role=ROLE_BUILDER,
                reads=("design", "build"),
                produces="review",
                instructions="Review the build; report issues as critical or minor.",
            ),
            StageSpec(
                name="manual-verify",
                kind=StageKind.GATED,
                reads=("build", "review"),
                produces="manual-verify",
                rework_from="build",
                description="Manual verification of the reviewed build.",
            ),
            StageSpec(
                name="commit",
                kind=StageKind.AUTOMATIC,
                role=ROLE_GIT_OPERATOR,
                reads=("branch", "build", "manual-verify"),
                produces="commit",
                instructions="Commit the verified build on the feature branch.",
            ),
            StageSpec(
                name="debrief",
                kind=StageKind.AUTOMATIC,
                role=ROLE_DOCUMENTER,
                reads=("intake", "plan", "design", "review", "commit"),
                produces="debrief",
                instructions="Record what was delivered and lessons learned.",
                terminal=True,
            ),
        ),
    )


def load_pipeline_definition(path: Path | str) -> PipelineDefinition:
    """Parse a YAML definition file; structural problems raise ``ValueError``."""

    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc

    if not isinstance(loaded, Mapping):
        raise ValueError(f"{source}: expected top-level YAML mapping, got {type(loaded).__name__}")
    try:
        return PipelineDefinition.from_dict(cast("Mapping[str, object]", loaded))
    except ValueError as exc:
        raise ValueError(f"{source}: {exc}") from exc


def dump_pipeline_definition(
    definition: PipelineDefinition, path: Path | str | None = None
) -> str:
    """Render ``definition`` as YAML, writing it to ``path`` when given."""

    rendered = yaml.safe_dump(
        _compact_record(definition.to_dict()),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=False,
        width=120,
    )
    if not rendered.endswith("\n"):
        rendered = rendered + "\n"
    if path is not None:
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(rendered, encoding="utf-8")
    return rendered


def _compact_record(record: dict[str, JSONValue]) -> dict[str, JSONValue]:
    compact: dict[str, JSONValue] = {}
    for key, value in record.items():
        if value is None or value == [] or value is False:
            continue
        if key == "stages" and isinstance(value, list):
            compact[key] = [
                _compact_record(item) if isinstance(item, dict) else item for item in value
            ]
            continue
        compact[key] = value
    return compact


__all__ = [
    "DEFAULT_PIPELINE_NAME",
    "default_pipeline",
    "dump_pipeline_definition",
    "load_pipeline_definition",
]
