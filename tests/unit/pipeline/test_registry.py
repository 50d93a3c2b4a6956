"""Stage table validation and ordered lookup."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from delivery_pipeline.domain.errors import ConfigError
from delivery_pipeline.domain.models import PipelineDefinition, StageKind, StageSpec
from delivery_pipeline.pipeline.registry import StageRegistry


def _auto(name: str, **kwargs: object) -> StageSpec:
    return StageSpec(
        name=name,
        kind=StageKind.AUTOMATIC,
        role=kwargs.pop("role", "builder"),  # type: ignore[arg-type]
        produces=kwargs.pop("produces", name),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def _gated(name: str, **kwargs: object) -> StageSpec:
    return StageSpec(
        name=name,
        kind=StageKind.GATED,
        produces=kwargs.pop("produces", name),  # type: ignore[arg-type]
        description=kwargs.pop("description", f"Approve {name}."),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def _registry(*stages: StageSpec) -> StageRegistry:
    return StageRegistry(PipelineDefinition(name="test", stages=stages))


def _issues(*stages: StageSpec) -> tuple[str, ...]:
    with pytest.raises(ConfigError) as excinfo:
        _registry(*stages)
    return excinfo.value.issues


def test_next_walks_stages_in_order() -> None:
    registry = _registry(_auto("intake"), _gated("plan", role="planner"), _auto("build"))

    assert [registry.next(index).name for index in range(3)] == [  # type: ignore[union-attr]
        "intake",
        "plan",
        "build",
    ]
    assert registry.next(3) is None
    assert registry.next(99) is None
    assert registry.index_of("build") == 2
    assert registry.stage("plan").is_gated
    assert len(registry) == 3
    assert [stage.name for stage in registry] == ["intake", "plan", "build"]


@pytest.mark.parametrize("index", [-1, True, "0"])
def test_next_rejects_bad_index(index: object) -> None:
    with pytest.raises(ValueError):
        _registry(_auto("build")).next(index)  # type: ignore[arg-type]


def test_unknown_stage_lookup() -> None:
    with pytest.raises(KeyError, match="unknown stage: deploy"):
        _registry(_auto("build")).index_of("deploy")


def test_required_roles_include_fix_roles() -> None:
    registry = _registry(
        _auto("intake", role="intake_analyst"),
        _auto("review", role="reviewer", fix_role="builder", max_attempts=2),
        _gated("verify", reads=("review",), rework_from="intake"),
    )

    assert registry.required_roles() == ("builder", "intake_analyst", "reviewer")


def test_last_stage_becomes_terminal() -> None:
    registry = _registry(_auto("build"), _auto("ship"))

    assert [stage.terminal for stage in registry.stages] == [False, True]


def test_collects_every_issue_at_once() -> None:
    issues = _issues(
        _auto("build"),
        _auto("build", produces="other"),
        _auto("echo", produces="input"),
        _auto("copy", produces="other"),
    )

    assert len(issues) == 3
    assert "duplicate stage name" in issues[0]
    assert "reserved for the run input" in issues[1]
    assert "already produced by stage 'build'" in issues[2]


def test_gated_stage_rules() -> None:
    issues = _issues(
        StageSpec(name="plan", kind=StageKind.GATED, role="planner", produces="plan"),
        _gated("verify"),
    )

    assert any("require a human-readable description" in issue for issue in issues)
    assert any("must name a stage to re-enter" in issue for issue in issues)


def test_review_loop_rules() -> None:
    issues = _issues(
        _gated("design", role="architect", fix_role="builder"),
        _auto("lint", role=None, fix_role="builder"),
        _auto("build", max_attempts=3),
    )

    assert any("only allowed on automatic stages" in issue for issue in issues)
    assert any("requires a review role" in issue for issue in issues)
    assert any("only meaningful on a stage with fix_role" in issue for issue in issues)


def test_rework_rules() -> None:
    issues = _issues(
        _gated("verify", reads=("build",), rework_from="build"),
        _auto("build", rework_from="build"),
    )

    assert any("is not this stage or an earlier one" in issue for issue in issues)
    assert any("only gated stages can be rejected" in issue for issue in issues)


def test_terminal_must_be_last() -> None:
    issues = _issues(_auto("build", terminal=True), _auto("ship"))

    assert issues == ("stages[0](build).terminal: only the last stage may be terminal",)


def test_empty_pipeline_is_rejected() -> None:
    assert _issues() == ("pipeline must define at least one stage",)


@given(
    names=st.lists(
        st.from_regex(r"[a-z][a-z0-9]{0,8}", fullmatch=True).filter(lambda name: name != "input"),
        min_size=1,
        max_size=12,
        unique=True,
    )
)
def test_registry_preserves_declared_order(names: list[str]) -> None:
    registry = _registry(*(_auto(name) for name in names))

    walked: list[str] = []
    index = 0
    while (stage := registry.next(index)) is not None:
        walked.append(stage.name)
        index += 1

    assert walked == names
    assert all(registry.index_of(name) == position for position, name in enumerate(names))
    assert sum(stage.terminal for stage in registry) == 1
