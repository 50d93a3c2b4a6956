"""Validated, read-only stage table driving a run."""

from __future__ import annotations

from collections.abc import Iterator
from types import MappingProxyType

from delivery_pipeline.constants import INPUT_ARTIFACT_KEY
from delivery_pipeline.domain.errors import ConfigError
from delivery_pipeline.domain.models import PipelineDefinition, StageSpec


class StageRegistry:
    """Ordered stage lookup over one ``PipelineDefinition``.

    Construction validates the whole definition and reports every problem in a
    single ``ConfigError``. The table is static: re-entering an earlier stage
    is the supervisor's decision, never the registry's.
    """

    __slots__ = ("_definition", "_index_by_name", "_stages")

    def __init__(self, definition: PipelineDefinition) -> None:
        if not isinstance(definition, PipelineDefinition):
            raise ConfigError(
                f"pipeline definition must be PipelineDefinition, got {type(definition).__name__}"
            )
        self._definition = definition
        self._stages: tuple[StageSpec, ...] = definition.stages
        self._index_by_name = MappingProxyType(
            {stage.name: index for index, stage in enumerate(self._stages)}
        )
        self.validate()

    @property
    def definition(self) -> PipelineDefinition:
        return self._definition

    @property
    def stages(self) -> tuple[StageSpec, ...]:
        return self._stages

    def validate(self) -> None:
        issues = _collect_issues(self._stages)
        if issues:
            raise ConfigError(
                f"invalid pipeline definition {self._definition.name!r}", issues=issues
            )

    def next(self, current_index: int) -> StageSpec | None:
        """Return the stage to execute at ``current_index``, or ``None`` past the end."""

        if isinstance(current_index, bool) or not isinstance(current_index, int):
            raise ValueError(f"current_index must be an integer, got {type(current_index).__name__}")
        if current_index < 0:
            raise ValueError("current_index must be >= 0")
        if current_index >= len(self._stages):
            return None
        return self._stages[current_index]

    def index_of(self, stage_name: str) -> int:
        try:
            return self._index_by_name[stage_name]
        except KeyError:
            raise KeyError(f"unknown stage: {stage_name}") from None

    def stage(self, stage_name: str) -> StageSpec:
        return self._stages[self.index_of(stage_name)]

    def required_roles(self) -> tuple[str, ...]:
        roles: set[str] = set()
        for stage in self._stages:
            if stage.role is not None:
                roles.add(stage.role)
            if stage.fix_role is not None:
                roles.add(stage.fix_role)
        return tuple(sorted(roles))

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self._stages)


def _collect_issues(stages: tuple[StageSpec, ...]) -> list[str]:
    if not stages:
        return ["pipeline must define at least one stage"]

    issues: list[str] = []
    seen_names: dict[str, int] = {}
    producers: dict[str, str] = {}

    for index, stage in enumerate(stages):
        path = f"stages[{index}]({stage.name})"

        if stage.name in seen_names:
            issues.append(f"{path}: duplicate stage name (first at stages[{seen_names[stage.name]}])")
        else:
            seen_names[stage.name] = index

        if stage.produces == INPUT_ARTIFACT_KEY:
            issues.append(f"{path}.produces: {INPUT_ARTIFACT_KEY!r} is reserved for the run input")
        elif stage.produces in producers:
            issues.append(
                f"{path}.produces: artifact key {stage.produces!r} already produced by "
                f"stage {producers[stage.produces]!r}"
            )
        else:
            producers[stage.produces] = stage.name

        if stage.is_gated and stage.description is None:
            issues.append(f"{path}.description: gated stages require a human-readable description")
        if stage.is_gated and stage.role is None and stage.rework_from is None:
            issues.append(f"{path}.rework_from: a gated stage without a role must name a stage to re-enter")

        if stage.fix_role is not None:
            if stage.is_gated:
                issues.append(f"{path}.fix_role: review loops are only allowed on automatic stages")
            if stage.role is None:
                issues.append(f"{path}.fix_role: a review loop stage requires a review role")
        elif stage.max_attempts is not None:
            issues.append(f"{path}.max_attempts: only meaningful on a stage with fix_role")

        if stage.rework_from is not None:
            target = seen_names.get(stage.rework_from)
            if stage.rework_from != stage.name and target is None:
                issues.append(
                    f"{path}.rework_from: {stage.rework_from!r} is not this stage or an earlier one"
                )
            if not stage.is_gated:
                issues.append(f"{path}.rework_from: only gated stages can be rejected")

        if stage.terminal and index != len(stages) - 1:
            issues.append(f"{path}.terminal: only the last stage may be terminal")

    terminal_count = sum(1 for stage in stages if stage.terminal)
    if terminal_count != 1:
        issues.append(f"stages: exactly one terminal stage required, found {terminal_count}")

    return issues


__all__ = ["StageRegistry"]
