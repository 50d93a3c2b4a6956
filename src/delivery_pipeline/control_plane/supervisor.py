"""
Run supervisor: the only component that mutates a run.

State machine::

    RUNNING --automatic ok-------------> RUNNING (advance)
    RUNNING --automatic fails----------> ABORTED
    RUNNING --gated artifact produced--> AWAITING_APPROVAL
    AWAITING_APPROVAL --approved-------> RUNNING (advance)
    AWAITING_APPROVAL --rejected-------> RUNNING (re-enter stage)
    RUNNING --review ceiling exceeded--> ABORTED
    RUNNING --last stage completes-----> COMPLETED

``BLOCKED_RETRY`` is persisted while a review loop is between a BLOCK and the
next review, together with a ``ReviewProgress`` holding the attempts spent and
the artifact under review. The run is saved after every stage; a run found
``running`` or ``blocked_retry`` after a restart re-enters its in-flight stage
through ``resume``, and an interrupted review loop continues where it stopped.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Final

import structlog

from delivery_pipeline.constants import DEFAULT_MAX_REVIEW_ATTEMPTS, INPUT_ARTIFACT_KEY
from delivery_pipeline.control_plane.gate import GateController
from delivery_pipeline.control_plane.review_loop import ReviewLoopController
from delivery_pipeline.control_plane.run_store import RunStore
from delivery_pipeline.domain import ids
from delivery_pipeline.domain.errors import (
    ConfigError,
    InvalidTransitionError,
    MissingArtifactError,
    QualityBlock,
    RunNotFoundError,
    UserRejection,
)
from delivery_pipeline.domain.events import EventType
from delivery_pipeline.domain.models import (
    CANCELLABLE_RUN_STATUSES,
    ContextEntry,
    Issue,
    JSONValue,
    PendingGate,
    PipelineDefinition,
    ReviewProgress,
    ReviewVerdict,
    RunState,
    RunStatus,
    StageEvent,
    StageOutcome,
    StageSpec,
    clip_text,
)
from delivery_pipeline.observability.events import EventBus
from delivery_pipeline.observability.logging import correlation_scope
from delivery_pipeline.pipeline.context_store import ContextStore
from delivery_pipeline.pipeline.registry import StageRegistry
from delivery_pipeline.synthesis_plane.invoker import (
    SubagentFailure,
    SubagentInvoker,
    SubagentTask,
)

CANCELLED_NOTE: Final[str] = "cancelled"
GATE_EXPIRED_NOTE: Final[str] = "approval gate expired"

_RESUMABLE_RUN_STATUSES: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.RUNNING, RunStatus.BLOCKED_RETRY}
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class _RunLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


@dataclass(slots=True)
class _ActiveRun:
    """Mutable working copy of a run while the supervisor holds its lock."""

    run_id: str
    pipeline_ref: str
    pipeline_name: str
    created_at: datetime
    registry: StageRegistry
    context: ContextStore
    status: RunStatus
    index: int
    history: list[StageEvent] = field(default_factory=list)
    stage_attempts: dict[str, int] = field(default_factory=dict)
    pending_gate: PendingGate | None = None
    revision_note: str | None = None
    issues: tuple[Issue, ...] = ()
    abort_reason: str | None = None
    abort_error: str | None = None
    review_progress: ReviewProgress | None = None

    @classmethod
    def from_state(
        cls,
        state: RunState,
        registry: StageRegistry,
        *,
        clock: Callable[[], datetime],
    ) -> _ActiveRun:
        return cls(
            run_id=state.run_id,
            pipeline_ref=state.pipeline_ref,
            pipeline_name=state.pipeline_name,
            created_at=state.created_at,
            registry=registry,
            context=ContextStore.from_entries(state.context, clock=clock),
            status=state.status,
            index=state.current_stage_index,
            history=list(state.history),
            stage_attempts=dict(state.stage_attempts),
            pending_gate=state.pending_gate,
            revision_note=state.revision_note,
            issues=state.issues,
            abort_reason=state.abort_reason,
            abort_error=state.abort_error,
            review_progress=state.review_progress,
        )

    def snapshot(self, now: datetime) -> RunState:
        return RunState(
            run_id=self.run_id,
            pipeline_ref=self.pipeline_ref,
            pipeline_name=self.pipeline_name,
            status=self.status,
            current_stage_index=self.index,
            created_at=self.created_at,
            updated_at=max(now, self.created_at),
            context=self.context.snapshot(),
            history=tuple(self.history),
            stage_attempts=dict(self.stage_attempts),
            pending_gate=self.pending_gate,
            revision_note=self.revision_note,
            issues=self.issues,
            abort_reason=self.abort_reason,
            abort_error=self.abort_error,
            review_progress=self.review_progress,
        )

    def in_flight_stage(self) -> StageSpec:
        stage = self.registry.next(self.index)
        if stage is None:
            return self.registry.stages[-1]
        return stage


class RunSupervisor:
    """Drives runs through their stage table and exposes the run control API."""

    def __init__(
        self,
        invoker: SubagentInvoker,
        store: RunStore,
        *,
        max_review_attempts: int = DEFAULT_MAX_REVIEW_ATTEMPTS,
        gate_timeout_seconds: float | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_review_attempts, bool) or not isinstance(max_review_attempts, int):
            raise ValueError("max_review_attempts must be an integer")
        if max_review_attempts < 1:
            raise ValueError("max_review_attempts must be >= 1")
        self._invoker = invoker
        self._store = store
        self._max_review_attempts = max_review_attempts
        self._clock = clock if clock is not None else _utc_now
        self._gates = GateController(timeout_seconds=gate_timeout_seconds, clock=self._clock)
        self._events = event_bus if event_bus is not None else EventBus()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._lock = threading.RLock()
        self._run_locks: dict[str, _RunLock] = {}
        self._registries: dict[str, StageRegistry] = {}
        self._cancel_requests: set[str] = set()

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def store(self) -> RunStore:
        return self._store

    # ------------------------------------------------------------------
    # Run control API
    # ------------------------------------------------------------------

    def start(self, definition: PipelineDefinition, initial_input: JSONValue) -> str:
        """Validate wiring, create the run and drive it to its first suspension point."""

        registry = StageRegistry(definition)
        self._invoker.ensure_roles(registry.required_roles())

        run_id = ids.generate_run_id()
        now = self._clock()
        context = ContextStore(clock=self._clock)
        context.put(INPUT_ARTIFACT_KEY, initial_input, produced_by_stage=INPUT_ARTIFACT_KEY)
        pipeline_ref = self._store.save_definition(definition)
        with self._lock:
            self._registries[pipeline_ref] = registry

        active = _ActiveRun(
            run_id=run_id,
            pipeline_ref=pipeline_ref,
            pipeline_name=definition.name,
            created_at=now,
            registry=registry,
            context=context,
            status=RunStatus.RUNNING,
            index=0,
        )
        with self._run_lock(run_id), correlation_scope(run_id=run_id):
            self._save(active)
            self._logger.info(
                "run_started",
                pipeline=definition.name,
                pipeline_ref=pipeline_ref,
                stages=len(registry),
            )
            self._emit(
                active,
                EventType.RUN_STARTED,
                {"pipeline": definition.name, "pipeline_ref": pipeline_ref},
            )
            self._drive(active)
        return run_id

    def approve(self, run_id: str, note: str | None = None) -> RunState:
        with self._run_lock(run_id), correlation_scope(run_id=run_id):
            active = self._activate(run_id)
            gate = self._require_gate(active, "approve")
            if self._gates.is_expired(gate):
                self._expire_gate(active, gate)
                return self._save(active)

            decision = self._gates.approve(gate, note=note)
            self._record(
                active,
                gate.stage_name,
                gate.attempt_number,
                StageOutcome.APPROVED,
                artifact_ref=decision.artifact_ref,
                note=decision.note,
            )
            active.pending_gate = None
            active.status = RunStatus.RUNNING
            active.index += 1
            active.revision_note = None
            self._logger.info(
                "gate_approved", stage=gate.stage_name, artifact_ref=decision.artifact_ref
            )
            self._emit(
                active,
                EventType.GATE_APPROVED,
                {"stage": gate.stage_name, "artifact_ref": decision.artifact_ref},
            )
            self._save(active)
            return self._drive(active)

    def reject(self, run_id: str, note: str) -> RunState:
        """Reject the pending artifact; the stage (or its ``rework_from``) runs again."""

        with self._run_lock(run_id), correlation_scope(run_id=run_id):
            active = self._activate(run_id)
            gate = self._require_gate(active, "reject")
            if self._gates.is_expired(gate):
                self._expire_gate(active, gate)
                return self._save(active)

            try:
                self._gates.reject(gate, note=note)
            except UserRejection as rejection:
                stage = active.registry.stage(gate.stage_name)
                target = stage.rework_from or stage.name
                self._record(
                    active,
                    gate.stage_name,
                    gate.attempt_number,
                    StageOutcome.REJECTED,
                    artifact_ref=rejection.artifact_ref,
                    note=rejection.note,
                )
                active.pending_gate = None
                active.status = RunStatus.RUNNING
                active.index = active.registry.index_of(target)
                active.revision_note = rejection.note
                self._logger.info(
                    "gate_rejected",
                    stage=gate.stage_name,
                    artifact_ref=rejection.artifact_ref,
                    rework_from=target,
                )
                self._emit(
                    active,
                    EventType.GATE_REJECTED,
                    {
                        "stage": gate.stage_name,
                        "artifact_ref": rejection.artifact_ref,
                        "rework_from": target,
                        "note": rejection.note,
                    },
                )
                self._save(active)
            return self._drive(active)

    def cancel(self, run_id: str) -> RunState:
        """Abort a running or suspended run; an in-flight subagent call is never interrupted."""

        with self._lock:
            self._cancel_requests.add(run_id)
        try:
            with self._run_lock(run_id), correlation_scope(run_id=run_id):
                with self._lock:
                    pending = run_id in self._cancel_requests
                if not pending:
                    # The driving thread honoured the request at a stage boundary.
                    return self.get_state(run_id)
                active = self._activate(run_id, require_roles=False)
                if active.status not in CANCELLABLE_RUN_STATUSES:
                    raise InvalidTransitionError(
                        f"run {run_id} is {active.status.value}; cancel requires "
                        f"{' or '.join(sorted(s.value for s in CANCELLABLE_RUN_STATUSES))}"
                    )
                self._cancel(active)
                return self._save(active)
        finally:
            with self._lock:
                self._cancel_requests.discard(run_id)

    def get_state(self, run_id: str) -> RunState:
        state = self._store.load(run_id)
        if state is None:
            raise RunNotFoundError(run_id)
        return state

    def list_runs(
        self, *, status: RunStatus | str | None = None, limit: int | None = None
    ) -> list[RunState]:
        """Runs newest first; ``limit=None`` returns all of them."""

        return self._store.list_runs(status=status, limit=limit)

    def pending_artifact(self, run_id: str) -> JSONValue:
        """Return the artifact awaiting approval on ``run_id``."""

        state = self.get_state(run_id)
        if state.pending_gate is None:
            raise InvalidTransitionError(f"run {run_id} has no pending approval")
        for entry in state.context:
            if entry.ref == state.pending_gate.artifact_ref:
                return copy.deepcopy(entry.payload)
        raise MissingArtifactError(state.pending_gate.artifact_ref)

    def resume(self, run_id: str) -> RunState:
        """Continue a run interrupted while ``running`` or ``blocked_retry``."""

        with self._run_lock(run_id), correlation_scope(run_id=run_id):
            active = self._activate(run_id)
            if active.status is RunStatus.AWAITING_APPROVAL:
                return active.snapshot(self._clock())
            if active.status not in _RESUMABLE_RUN_STATUSES:
                raise InvalidTransitionError(
                    f"run {run_id} is {active.status.value} and cannot be resumed"
                )
            active.status = RunStatus.RUNNING
            stage = active.in_flight_stage()
            self._logger.info("run_resumed", stage=stage.name, stage_index=active.index)
            self._emit(active, EventType.RUN_RESUMED, {"stage": stage.name})
            return self._drive(active)

    def expire_gates(self, now: datetime | None = None) -> list[RunState]:
        """Abort every run whose approval gate is past its deadline."""

        expired: list[RunState] = []
        for state in self._store.list_runs(status=RunStatus.AWAITING_APPROVAL):
            gate = state.pending_gate
            if gate is None or not self._gates.is_expired(gate, now=now):
                continue
            with self._run_lock(state.run_id), correlation_scope(run_id=state.run_id):
                active = self._activate(state.run_id, require_roles=False)
                current = active.pending_gate
                if current is None or not self._gates.is_expired(current, now=now):
                    continue
                self._expire_gate(active, current)
                expired.append(self._save(active))
        return expired

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _drive(self, active: _ActiveRun) -> RunState:
        while active.status is RunStatus.RUNNING:
            if self._take_cancel_request(active.run_id):
                self._cancel(active)
            else:
                stage = active.registry.next(active.index)
                if stage is None:
                    self._complete(active)
                else:
                    with correlation_scope(stage=stage.name):
                        self._execute_stage(active, stage)
            self._save(active)
        return active.snapshot(self._clock())

    def _execute_stage(self, active: _ActiveRun, stage: StageSpec) -> None:
        progress = active.review_progress
        if progress is not None and progress.stage_name == stage.name:
            # Resuming a review loop continues the attempt that started it.
            attempt = max(active.stage_attempts.get(stage.name, 0), 1)
        else:
            attempt = active.stage_attempts.get(stage.name, 0) + 1
        active.stage_attempts[stage.name] = attempt

        try:
            context_slice = active.context.slice(stage.reads)
        except MissingArtifactError as exc:
            self._fail_stage(active, stage, attempt, reason=str(exc), error=exc.__class__.__name__)
            return

        if stage.role is None:
            artifact: JSONValue = dict(context_slice)
        elif stage.is_review_loop:
            reviewed = self._run_review_loop(active, stage, attempt, context_slice)
            if reviewed is None:
                return
            artifact = reviewed
        else:
            result = self._invoker.invoke(
                stage.role,
                SubagentTask(
                    role=stage.role,
                    instructions=stage.instructions or "",
                    context_slice=context_slice,
                    stage_name=stage.name,
                    attempt_number=attempt,
                    revision_note=active.revision_note,
                    run_id=active.run_id,
                ),
                timeout_seconds=stage.timeout_seconds,
            )
            if isinstance(result, SubagentFailure):
                error = result.to_error(stage.role)
                self._fail_stage(
                    active, stage, attempt, reason=str(error), error=error.__class__.__name__
                )
                return
            artifact = result.artifact

        try:
            entry = self._store_artifact(active, stage, artifact)
        except ValueError as exc:
            self._fail_stage(
                active, stage, attempt, reason=f"invalid artifact: {exc}", error="ValueError"
            )
            return

        if stage.is_gated:
            self._open_gate(active, stage, attempt, entry)
            return

        self._record(active, stage.name, attempt, StageOutcome.SUCCESS, artifact_ref=entry.ref)
        active.index += 1
        active.revision_note = None
        self._logger.info("stage_succeeded", attempt=attempt, artifact_ref=entry.ref)
        self._emit(
            active,
            EventType.STAGE_SUCCEEDED,
            {"stage": stage.name, "attempt": attempt, "artifact_ref": entry.ref},
        )

    def _run_review_loop(
        self,
        active: _ActiveRun,
        stage: StageSpec,
        attempt: int,
        context_slice: Mapping[str, JSONValue],
    ) -> JSONValue | None:
        assert stage.role is not None and stage.fix_role is not None
        loop = ReviewLoopController(
            self._invoker,
            review_role=stage.role,
            fix_role=stage.fix_role,
            max_attempts=stage.max_attempts or self._max_review_attempts,
            logger=self._logger,
        )

        def _on_blocked(review_attempt: int, verdict: ReviewVerdict) -> None:
            self._emit(
                active,
                EventType.REVIEW_BLOCKED,
                {
                    "stage": stage.name,
                    "review_attempt": review_attempt,
                    "issues": [issue.to_dict() for issue in verdict.critical_issues],
                },
            )

        def _on_progress(progress: ReviewProgress) -> None:
            active.status = RunStatus.BLOCKED_RETRY
            active.review_progress = progress
            self._save(active)

        resume = active.review_progress
        if resume is not None and resume.stage_name != stage.name:
            resume = None
        if resume is not None:
            self._logger.info(
                "review_loop_resumed", attempt=resume.attempt, fix_pending=resume.fix_pending
            )
        outcome = loop.run(
            dict(context_slice),
            stage_name=stage.name,
            instructions=stage.instructions or "",
            run_id=active.run_id,
            timeout_seconds=stage.timeout_seconds,
            on_blocked=_on_blocked,
            on_progress=_on_progress,
            resume=resume,
        )
        active.status = RunStatus.RUNNING
        active.review_progress = None

        if outcome.failure is not None:
            error = outcome.failure.to_error(stage.role)
            self._fail_stage(active, stage, attempt, reason=str(error), error=error.__class__.__name__)
            return None
        try:
            outcome.raise_for_block(stage.name)
        except QualityBlock as block:
            active.issues = block.issues
            self._fail_stage(
                active,
                stage,
                attempt,
                reason=str(block),
                error=block.__class__.__name__,
                outcome=StageOutcome.BLOCKED,
                note="; ".join(issue.summary() for issue in block.issues if issue.is_critical),
            )
            return None

        assert outcome.verdict is not None
        return {
            "verdict": outcome.verdict.to_dict(),
            "artifact": outcome.artifact,
            "attempts": outcome.attempts,
        }

    def _store_artifact(
        self, active: _ActiveRun, stage: StageSpec, artifact: JSONValue
    ) -> ContextEntry:
        if stage.produces in active.context:
            return active.context.put_revision(
                stage.produces, artifact, produced_by_stage=stage.name
            )
        return active.context.put(stage.produces, artifact, produced_by_stage=stage.name)

    def _open_gate(
        self, active: _ActiveRun, stage: StageSpec, attempt: int, entry: ContextEntry
    ) -> None:
        gate = self._gates.open(stage, artifact_ref=entry.ref, attempt_number=attempt)
        active.pending_gate = gate
        active.status = RunStatus.AWAITING_APPROVAL
        self._logger.info(
            "gate_opened",
            artifact_ref=entry.ref,
            attempt=attempt,
            expires_at=gate.expires_at.isoformat() if gate.expires_at is not None else None,
        )
        self._emit(
            active,
            EventType.GATE_OPENED,
            {
                "stage": stage.name,
                "artifact_ref": entry.ref,
                "attempt": attempt,
                "description": stage.description,
            },
        )

    def _fail_stage(
        self,
        active: _ActiveRun,
        stage: StageSpec,
        attempt: int,
        *,
        reason: str,
        error: str,
        outcome: StageOutcome = StageOutcome.FAILURE,
        note: str | None = None,
    ) -> None:
        self._record(active, stage.name, attempt, outcome, note=note or reason)
        self._logger.warning("stage_failed", attempt=attempt, error_type=error, reason=reason)
        self._emit(
            active,
            EventType.STAGE_FAILED,
            {"stage": stage.name, "attempt": attempt, "outcome": outcome.value, "reason": reason},
        )
        self._abort(active, reason=reason, error=error)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self, active: _ActiveRun) -> None:
        active.status = RunStatus.COMPLETED
        self._logger.info("run_completed", events=len(active.history))
        self._emit(active, EventType.RUN_COMPLETED, {"events": len(active.history)})

    def _abort(self, active: _ActiveRun, *, reason: str, error: str | None) -> None:
        active.status = RunStatus.ABORTED
        active.pending_gate = None
        active.review_progress = None
        active.abort_reason = clip_text(reason)
        active.abort_error = error
        self._logger.warning(
            "run_aborted", reason=reason, error_type=error, issues=len(active.issues)
        )
        self._emit(
            active,
            EventType.RUN_ABORTED,
            {
                "reason": reason,
                "error": error,
                "issues": [issue.to_dict() for issue in active.issues],
            },
        )

    def _cancel(self, active: _ActiveRun) -> None:
        stage = active.in_flight_stage()
        attempt = max(active.stage_attempts.get(stage.name, 0), 1)
        self._record(active, stage.name, attempt, StageOutcome.FAILURE, note=CANCELLED_NOTE)
        self._abort(active, reason=f"run cancelled during stage {stage.name!r}", error=None)

    def _expire_gate(self, active: _ActiveRun, gate: PendingGate) -> None:
        self._record(
            active,
            gate.stage_name,
            gate.attempt_number,
            StageOutcome.FAILURE,
            artifact_ref=gate.artifact_ref,
            note=GATE_EXPIRED_NOTE,
        )
        self._emit(
            active,
            EventType.GATE_EXPIRED,
            {"stage": gate.stage_name, "artifact_ref": gate.artifact_ref},
        )
        expires = gate.expires_at.isoformat() if gate.expires_at is not None else "unknown"
        self._abort(
            active,
            reason=f"approval gate for stage {gate.stage_name!r} expired at {expires}",
            error="GateExpired",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(
        self,
        active: _ActiveRun,
        stage_name: str,
        attempt: int,
        outcome: StageOutcome,
        *,
        artifact_ref: str | None = None,
        note: str | None = None,
    ) -> StageEvent:
        event = StageEvent(
            sequence=len(active.history) + 1,
            stage_name=stage_name,
            attempt_number=attempt,
            outcome=outcome,
            recorded_at=self._clock(),
            artifact_ref=artifact_ref,
            note=clip_text(note),
        )
        active.history.append(event)
        return event

    def _emit(self, active: _ActiveRun, event_type: EventType, payload: dict[str, object]) -> None:
        _, errors = self._events.emit(event_type, payload, correlation_id=active.run_id)
        for error in errors:
            self._logger.warning(
                "event_subscriber_failed",
                event_type=event_type.value,
                target=error.target,
                error_type=error.error_type,
                error=error.message,
            )

    def _save(self, active: _ActiveRun) -> RunState:
        state = active.snapshot(self._clock())
        self._store.save(state)
        return state

    def _activate(self, run_id: str, *, require_roles: bool = True) -> _ActiveRun:
        state = self.get_state(run_id)
        registry = self._registry_for(state)
        if require_roles and not state.is_terminal:
            self._invoker.ensure_roles(registry.required_roles())
        return _ActiveRun.from_state(state, registry, clock=self._clock)

    def _registry_for(self, state: RunState) -> StageRegistry:
        with self._lock:
            cached = self._registries.get(state.pipeline_ref)
        if cached is not None:
            return cached
        definition = self._store.load_definition(state.pipeline_ref)
        if definition is None:
            raise ConfigError(
                f"pipeline definition {state.pipeline_ref} for run {state.run_id} is not stored"
            )
        registry = StageRegistry(definition)
        with self._lock:
            self._registries[state.pipeline_ref] = registry
        return registry

    def _require_gate(self, active: _ActiveRun, operation: str) -> PendingGate:
        if active.status is not RunStatus.AWAITING_APPROVAL or active.pending_gate is None:
            raise InvalidTransitionError(
                f"cannot {operation} run {active.run_id}: status is {active.status.value}"
            )
        return active.pending_gate

    def _take_cancel_request(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._cancel_requests:
                self._cancel_requests.discard(run_id)
                return True
        return False

    @contextmanager
    def _run_lock(self, run_id: str) -> Iterator[None]:
        """Serialize control calls on ``run_id``; the lock is dropped once nobody holds it."""

        with self._lock:
            entry = self._run_locks.get(run_id)
            if entry is None:
                entry = self._run_locks[run_id] = _RunLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._run_locks[run_id]


__all__ = ["CANCELLED_NOTE", "GATE_EXPIRED_NOTE", "RunSupervisor"]
