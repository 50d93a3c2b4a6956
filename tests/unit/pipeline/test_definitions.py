from __future__ import annotations

from pathlib import Path

import pytest

from delivery_pipeline.domain.models import StageKind
from delivery_pipeline.pipeline.definitions import (
    DEFAULT_PIPELINE_NAME,
    default_pipeline,
    dump_pipeline_definition,
    load_pipeline_definition,
)
from delivery_pipeline.pipeline.registry import StageRegistry
from delivery_pipeline.synthesis_plane.roles import DEFAULT_ROLE_NAMES


def test_default_pipeline_is_valid() -> None:
    registry = StageRegistry(default_pipeline())

    assert registry.definition.name == DEFAULT_PIPELINE_NAME
    assert [stage.name for stage in registry] == [
        "intake",
        "plan",
        "design",
        "branch",
        "tests",
        "build",
        "review",
        "manual-verify",
        "commit",
        "debrief",
    ]
    assert registry.required_roles() == tuple(sorted(DEFAULT_ROLE_NAMES))
    gated = [stage.name for stage in registry if stage.kind is StageKind.GATED]
    assert gated == ["plan", "design", "manual-verify"]
    assert registry.stage("review").fix_role == "builder"
    assert registry.stage("manual-verify").rework_from == "build"
    assert registry.stages[-1].terminal


def test_yaml_round_trip(tmp_path: Path) -> None:
    target = tmp_path / "defs" / "delivery.yaml"

    rendered = dump_pipeline_definition(default_pipeline(), target)

    assert target.read_text(encoding="utf-8") == rendered
    assert "terminal: false" not in rendered
    loaded = load_pipeline_definition(target)
    assert loaded == default_pipeline()
    assert loaded.ref == default_pipeline().ref


def test_load_minimal_definition(tmp_path: Path) -> None:
    path = tmp_path / "tiny.yaml"
    path.write_text(
        "name: tiny\n"
        "stages:\n"
        "  - name: build\n"
        "    kind: automatic\n"
        "    role: builder\n"
        "    reads: [input]\n"
        "    produces: build\n",
        encoding="utf-8",
    )

    definition = load_pipeline_definition(path)

    assert definition.name == "tiny"
    assert definition.stages[0].reads == ("input",)
    assert definition.stages[0].terminal


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("name: [unclosed\n", "invalid YAML"),
        ("- just\n- a list\n", "expected top-level YAML mapping"),
        ("name: tiny\nstages:\n  - name: build\n    kind: sometimes\n    produces: x\n", "kind"),
        ("name: tiny\nstages: []\nextra: 1\n", "unexpected fields"),
    ],
)
def test_load_reports_source_path(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=message) as excinfo:
        load_pipeline_definition(path)
    assert str(path) in str(excinfo.value)
