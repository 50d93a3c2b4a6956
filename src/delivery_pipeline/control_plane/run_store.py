"""Run store contract used by the supervisor, plus an in-memory implementation."""

from __future__ import annotations

import threading
from typing import Protocol

from delivery_pipeline.domain.errors import InvalidTransitionError
from delivery_pipeline.domain.models import PipelineDefinition, RunState, RunStatus


class RunStore(Protocol):
    """Durable home of run snapshots; terminal runs are never overwritten."""

    def save_definition(self, definition: PipelineDefinition) -> str: ...

    def load_definition(self, ref: str) -> PipelineDefinition | None: ...

    def save(self, state: RunState) -> None: ...

    def load(self, run_id: str) -> RunState | None: ...

    def list_runs(
        self, *, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[RunState]:
        """Newest first. ``limit=None`` means every matching run."""
        ...


def check_list_limit(limit: int | None) -> None:
    if limit is None:
        return
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValueError(f"limit must be a positive integer or None, got {limit!r}")


class InMemoryRunStore:
    """Process-local store for tests and one-shot runs."""

    def __init__(self) -> None:
        self._definitions: dict[str, PipelineDefinition] = {}
        self._runs: dict[str, RunState] = {}
        self._lock = threading.RLock()

    def save_definition(self, definition: PipelineDefinition) -> str:
        ref = definition.ref
        with self._lock:
            self._definitions.setdefault(ref, definition)
        return ref

    def load_definition(self, ref: str) -> PipelineDefinition | None:
        with self._lock:
            return self._definitions.get(ref)

    def save(self, state: RunState) -> None:
        with self._lock:
            if state.pipeline_ref not in self._definitions:
                raise ValueError(f"unknown pipeline_ref for run {state.run_id}: {state.pipeline_ref}")
            existing = self._runs.get(state.run_id)
            if existing is not None and existing.is_terminal:
                raise InvalidTransitionError(
                    f"run {state.run_id} is {existing.status.value} and cannot change"
                )
            self._runs[state.run_id] = state

    def load(self, run_id: str) -> RunState | None:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(
        self, *, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[RunState]:
        check_list_limit(limit)
        wanted = RunStatus(status) if status is not None else None
        with self._lock:
            states = list(self._runs.values())
        if wanted is not None:
            states = [state for state in states if state.status is wanted]
        newest = sorted(states, key=lambda state: (state.created_at, state.run_id), reverse=True)
        return newest if limit is None else newest[:limit]


__all__ = ["InMemoryRunStore", "RunStore", "check_list_limit"]
