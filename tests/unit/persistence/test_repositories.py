from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from delivery_pipeline.domain import ids
from delivery_pipeline.domain.models import (
    ReviewProgress,
    ReviewVerdict,
    RunStatus,
    StageEvent,
    StageOutcome,
)
from delivery_pipeline.persistence.repositories import (
    ArtifactRepo,
    PipelineRepo,
    SQLiteRunStore,
    StageEventRepo,
)
from delivery_pipeline.persistence.state_db import StateDB, StateDBError

from . import make_awaiting_state, make_definition


def _store(tmp_path: Path) -> tuple[SQLiteRunStore, StateDB]:
    db = StateDB(tmp_path / "state" / "runs.sqlite")
    return SQLiteRunStore(db), db


def test_run_state_round_trip(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    definition = make_definition()
    state = make_awaiting_state(definition)

    assert store.save_definition(definition) == definition.ref
    store.save(state)

    assert store.load(state.run_id) == state
    assert store.load_definition(definition.ref) == definition
    assert store.load(ids.generate_run_id()) is None


def test_save_is_incremental(tmp_path: Path) -> None:
    store, db = _store(tmp_path)
    definition = make_definition()
    state = make_awaiting_state(definition)
    store.save(state, definition=definition)

    approved = StageEvent(
        3, "design", 2, StageOutcome.APPROVED, state.updated_at, "design@v2", "ship it"
    )
    completed = replace(
        state,
        status=RunStatus.COMPLETED,
        current_stage_index=2,
        pending_gate=None,
        history=(*state.history, approved),
        updated_at=state.updated_at + timedelta(minutes=5),
    )
    store.save(completed)

    assert store.load(state.run_id) == completed
    counts = db.query_one(
        "SELECT (SELECT COUNT(*) FROM artifacts) AS artifacts, "
        "(SELECT COUNT(*) FROM stage_events) AS events"
    )
    assert counts == {"artifacts": 4, "events": 3}


def test_terminal_runs_cannot_be_rewritten(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    definition = make_definition()
    state = replace(make_awaiting_state(definition), status=RunStatus.ABORTED, pending_gate=None)
    store.save(state, definition=definition)

    with pytest.raises(StateDBError, match="terminal runs are immutable"):
        store.save(replace(state, abort_reason="second opinion"))


def test_unknown_pipeline_is_rejected(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    state = make_awaiting_state(make_definition())

    with pytest.raises(StateDBError, match="cannot persist run"):
        store.save(state)
    assert store.load(state.run_id) is None


def test_definition_must_match_run(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    state = make_awaiting_state(make_definition())

    with pytest.raises(ValueError, match="does not match"):
        store.save(state, definition=make_definition("other"))


def test_list_runs_newest_first_with_filter(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    definition = make_definition()
    older = make_awaiting_state(definition)
    newer = replace(
        make_awaiting_state(definition, offset_seconds=60),
        status=RunStatus.RUNNING,
        pending_gate=None,
    )
    store.save(older, definition=definition)
    store.save(newer)

    assert [state.run_id for state in store.list_runs()] == [newer.run_id, older.run_id]
    assert [state.run_id for state in store.list_runs(status="awaiting_approval")] == [
        older.run_id
    ]
    assert [state.run_id for state in store.list_runs(limit=1)] == [newer.run_id]
    with pytest.raises(ValueError, match="limit"):
        store.list_runs(limit=0)


def test_list_runs_returns_every_match_by_default(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    definition = make_definition()
    store.save_definition(definition)
    for offset in range(130):
        store.save(make_awaiting_state(definition, offset_seconds=offset))

    waiting = store.list_runs(status=RunStatus.AWAITING_APPROVAL)

    assert len(waiting) == 130
    assert waiting[0].created_at > waiting[-1].created_at
    assert len(store.list_runs(limit=5)) == 5


def test_review_progress_survives_reload(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    definition = make_definition()
    verdict = ReviewVerdict.from_dict(
        {
            "outcome": "BLOCK",
            "issues": [{"severity": "critical", "location": "api.py:9", "description": "no auth"}],
        }
    )
    state = replace(
        make_awaiting_state(definition),
        status=RunStatus.BLOCKED_RETRY,
        pending_gate=None,
        review_progress=ReviewProgress("design", 1, {"modules": ["api"]}, verdict),
    )
    store.save(state, definition=definition)

    restored = store.load(state.run_id)

    assert restored == state
    assert restored is not None and restored.review_progress is not None
    assert restored.review_progress.fix_pending


def test_artifacts_and_events_are_append_only(tmp_path: Path) -> None:
    store, db = _store(tmp_path)
    definition = make_definition()
    state = make_awaiting_state(definition)
    store.save(state, definition=definition)

    with pytest.raises(sqlite3.IntegrityError, match="artifacts is append-only"):
        db.execute("UPDATE artifacts SET payload_json = '\"x\"' WHERE key = 'plan'")
    with pytest.raises(sqlite3.IntegrityError, match="stage_events is append-only"):
        db.execute("DELETE FROM stage_events")
    with pytest.raises(sqlite3.IntegrityError, match="pipelines is append-only"):
        db.execute("DELETE FROM pipelines")


def test_repos_skip_rows_already_stored(tmp_path: Path) -> None:
    _, db = _store(tmp_path)
    definition = make_definition()
    state = make_awaiting_state(definition)
    PipelineRepo(db).add(definition)
    SQLiteRunStore(db).save(state)

    assert ArtifactRepo(db).append(state.run_id, state.context) == 0
    assert StageEventRepo(db).append(state.run_id, state.history) == 0
    assert ArtifactRepo(db).list_for_run(state.run_id) == state.context


def test_event_sequence_gap_is_an_error(tmp_path: Path) -> None:
    store, db = _store(tmp_path)
    definition = make_definition()
    state = make_awaiting_state(definition)
    store.save(state, definition=definition)
    orphan = StageEvent(5, "design", 3, StageOutcome.APPROVED, state.updated_at)

    with pytest.raises(StateDBError, match="sequence gap"):
        StageEventRepo(db).append(state.run_id, [orphan])
