"""
Repositories over the run-state database, and the SQLite-backed run store.

- ``PipelineRepo``: content-addressed pipeline definitions
- ``RunRepo``: one row per run holding status, position and scalar state
- ``ArtifactRepo`` / ``StageEventRepo``: append-only context versions and audit log
- ``SQLiteRunStore``: saves a whole ``RunState`` in one transaction and loads it back
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Mapping
from typing import Final, cast

from delivery_pipeline.control_plane.run_store import check_list_limit
from delivery_pipeline.domain import ids
from delivery_pipeline.domain.models import (
    ContextEntry,
    JSONValue,
    PipelineDefinition,
    RunState,
    RunStatus,
    StageEvent,
)
from delivery_pipeline.persistence.state_db import (
    RowValue,
    SQLParams,
    StateDB,
    StateDBError,
    canonical_json,
)

_MAX_PAGE_SIZE: Final[int] = 1_000
_RUN_ROW_EXCLUDED_FIELDS: Final[frozenset[str]] = frozenset({"context", "history"})


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class PipelineRepo(_BaseRepo):
    """Pipeline definitions keyed by the sha256 of their canonical JSON."""

    def add(self, definition: PipelineDefinition, *, conn: sqlite3.Connection | None = None) -> str:
        ref = definition.ref
        self._db.execute(
            """
            INSERT INTO pipelines (ref, name, definition_json, created_at)
            VALUES (?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            ON CONFLICT(ref) DO NOTHING
            """,
            (ref, definition.name, definition.to_json()),
            conn=conn,
        )
        return ref

    def get(self, ref: str) -> PipelineDefinition | None:
        row = self._db.query_one("SELECT definition_json FROM pipelines WHERE ref = ?", (ref,))
        if row is None:
            return None
        return PipelineDefinition.from_json(
            _row_text(row, "definition_json", "pipelines.definition_json")
        )


class RunRepo(_BaseRepo):
    """Run rows: scalar state only; context and history live in their own tables."""

    def upsert(self, state: RunState, *, conn: sqlite3.Connection | None = None) -> None:
        payload = {
            key: value
            for key, value in state.to_dict().items()
            if key not in _RUN_ROW_EXCLUDED_FIELDS
        }
        self._db.execute(
            """
            INSERT INTO runs (
                id,
                pipeline_ref,
                pipeline_name,
                status,
                current_stage_index,
                state_json,
                created_at,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status=excluded.status,
                current_stage_index=excluded.current_stage_index,
                state_json=excluded.state_json,
                updated_at=excluded.updated_at
            """,
            (
                state.run_id,
                state.pipeline_ref,
                state.pipeline_name,
                state.status.value,
                state.current_stage_index,
                canonical_json(payload),
                cast("str", payload["created_at"]),
                cast("str", payload["updated_at"]),
            ),
            conn=conn,
        )

    def get(
        self, run_id: str, *, conn: sqlite3.Connection | None = None
    ) -> dict[str, JSONValue] | None:
        ids.validate_run_id(run_id)
        row = self._db.query_one("SELECT state_json FROM runs WHERE id = ?", (run_id,), conn=conn)
        if row is None:
            return None
        return _json_object(_row_text(row, "state_json", "runs.state_json"), "runs.state_json")

    def list_ids(
        self,
        *,
        status: RunStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[str]:
        self._validate_page(limit, offset)
        sql = "SELECT id FROM runs"
        params: list[object] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(RunStatus(status).value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_row_text(row, "id", "runs.id") for row in rows]


class ArtifactRepo(_BaseRepo):
    """Append-only artifact versions per run."""

    def append(
        self,
        run_id: str,
        entries: Iterable[ContextEntry],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        existing = {
            (_row_text(row, "key", "artifacts.key"), _row_int(row, "version", "artifacts.version"))
            for row in self._db.query_all(
                "SELECT key, version FROM artifacts WHERE run_id = ?", (run_id,), conn=conn
            )
        }
        rows: list[SQLParams] = []
        for entry in entries:
            if (entry.key, entry.version) in existing:
                continue
            record = entry.to_dict()
            rows.append(
                (
                    run_id,
                    entry.key,
                    entry.version,
                    entry.produced_by_stage,
                    canonical_json(record["payload"]),
                    cast("str", record["created_at"]),
                )
            )
        if not rows:
            return 0
        self._db.executemany(
            """
            INSERT INTO artifacts (
                run_id, key, version, produced_by_stage, payload_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            rows,
            conn=conn,
        )
        return len(rows)

    def list_for_run(
        self, run_id: str, *, conn: sqlite3.Connection | None = None
    ) -> tuple[ContextEntry, ...]:
        rows = self._db.query_all(
            """
            SELECT key, version, produced_by_stage, payload_json, created_at
            FROM artifacts
            WHERE run_id = ?
            ORDER BY rowid ASC
            """,
            (run_id,),
            conn=conn,
        )
        return tuple(
            ContextEntry.from_dict(
                {
                    "key": row["key"],
                    "version": row["version"],
                    "produced_by_stage": row["produced_by_stage"],
                    "payload": _json_value(
                        _row_text(row, "payload_json", "artifacts.payload_json"),
                        "artifacts.payload_json",
                    ),
                    "created_at": row["created_at"],
                }
            )
            for row in rows
        )


class StageEventRepo(_BaseRepo):
    """Append-only, totally ordered stage event log per run."""

    def append(
        self,
        run_id: str,
        events: Iterable[StageEvent],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(sequence), 0) AS last FROM stage_events WHERE run_id = ?",
            (run_id,),
            conn=conn,
        )
        last = _row_int(row, "last", "stage_events.sequence") if row is not None else 0
        rows: list[SQLParams] = []
        expected = last + 1
        for event in events:
            if event.sequence <= last:
                continue
            if event.sequence != expected:
                raise StateDBError(
                    f"stage event sequence gap for run {run_id}: expected {expected}, "
                    f"got {event.sequence}"
                )
            expected += 1
            rows.append(
                (
                    run_id,
                    event.sequence,
                    event.stage_name,
                    event.attempt_number,
                    event.outcome.value,
                    event.artifact_ref,
                    event.note,
                    cast("str", event.to_dict()["recorded_at"]),
                )
            )
        if not rows:
            return 0
        self._db.executemany(
            """
            INSERT INTO stage_events (
                run_id, sequence, stage_name, attempt_number, outcome,
                artifact_ref, note, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
            conn=conn,
        )
        return len(rows)

    def list_for_run(
        self, run_id: str, *, conn: sqlite3.Connection | None = None
    ) -> tuple[StageEvent, ...]:
        rows = self._db.query_all(
            """
            SELECT sequence, stage_name, attempt_number, outcome, artifact_ref, note, recorded_at
            FROM stage_events
            WHERE run_id = ?
            ORDER BY sequence ASC
            """,
            (run_id,),
            conn=conn,
        )
        return tuple(StageEvent.from_dict(dict(row)) for row in rows)


class SQLiteRunStore:
    """Durable run store: a run row plus its append-only artifacts and events."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._pipelines = PipelineRepo(db)
        self._runs = RunRepo(db)
        self._artifacts = ArtifactRepo(db)
        self._events = StageEventRepo(db)

    @classmethod
    def open(cls, path: str) -> SQLiteRunStore:
        return cls(StateDB(path))

    def save_definition(self, definition: PipelineDefinition) -> str:
        return self._pipelines.add(definition)

    def load_definition(self, ref: str) -> PipelineDefinition | None:
        return self._pipelines.get(ref)

    def save(self, state: RunState, *, definition: PipelineDefinition | None = None) -> None:
        """Persist ``state``; artifacts and events already stored are left untouched."""

        if definition is not None and definition.ref != state.pipeline_ref:
            raise ValueError("definition does not match RunState.pipeline_ref")
        try:
            with self._db.transaction() as conn:
                if definition is not None:
                    self._pipelines.add(definition, conn=conn)
                self._runs.upsert(state, conn=conn)
                self._artifacts.append(state.run_id, state.context, conn=conn)
                self._events.append(state.run_id, state.history, conn=conn)
        except sqlite3.IntegrityError as exc:
            raise StateDBError(f"cannot persist run {state.run_id}: {exc}") from exc

    def load(self, run_id: str) -> RunState | None:
        with self._db.connection() as conn:
            payload = self._runs.get(run_id, conn=conn)
            if payload is None:
                return None
            context = self._artifacts.list_for_run(run_id, conn=conn)
            history = self._events.list_for_run(run_id, conn=conn)
        return RunState.from_dict(
            {
                **payload,
                "context": [entry.to_dict() for entry in context],
                "history": [event.to_dict() for event in history],
            }
        )

    def list_runs(
        self, *, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[RunState]:
        """Newest first, paging through ``runs``; ``limit=None`` reads every match."""

        check_list_limit(limit)
        run_ids: list[str] = []
        while limit is None or len(run_ids) < limit:
            page_size = _MAX_PAGE_SIZE if limit is None else min(_MAX_PAGE_SIZE, limit - len(run_ids))
            page = self._runs.list_ids(status=status, limit=page_size, offset=len(run_ids))
            run_ids.extend(page)
            if len(page) < page_size:
                break
        states: list[RunState] = []
        for run_id in run_ids:
            state = self.load(run_id)
            if state is not None:
                states.append(state)
        return states


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise StateDBError(f"{path} must be text")
    return value


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if not isinstance(value, int):
        raise StateDBError(f"{path} must be integer")
    return value


def _json_value(raw: str, path: str) -> JSONValue:
    try:
        return cast("JSONValue", json.loads(raw))
    except json.JSONDecodeError as exc:
        raise StateDBError(f"{path}: invalid JSON ({exc})") from exc


def _json_object(raw: str, path: str) -> dict[str, JSONValue]:
    parsed = _json_value(raw, path)
    if not isinstance(parsed, dict):
        raise StateDBError(f"{path}: expected JSON object")
    return parsed


__all__ = [
    "ArtifactRepo",
    "PipelineRepo",
    "RunRepo",
    "SQLiteRunStore",
    "StageEventRepo",
]
