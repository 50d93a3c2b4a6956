from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from delivery_pipeline.constants import MAX_TEXT_LENGTH
from delivery_pipeline.control_plane.run_store import InMemoryRunStore
from delivery_pipeline.control_plane.supervisor import (
    CANCELLED_NOTE,
    GATE_EXPIRED_NOTE,
    RunSupervisor,
)
from delivery_pipeline.domain import ids
from delivery_pipeline.domain.errors import (
    InvalidTransitionError,
    RoleUnavailableError,
    RunNotFoundError,
)
from delivery_pipeline.domain.events import EventType
from delivery_pipeline.domain.models import (
    ContextEntry,
    JSONValue,
    PipelineDefinition,
    RunState,
    RunStatus,
    StageKind,
    StageOutcome,
    StageSpec,
)
from delivery_pipeline.observability.events import EventBus
from delivery_pipeline.persistence.repositories import SQLiteRunStore
from delivery_pipeline.persistence.state_db import StateDB
from delivery_pipeline.synthesis_plane.invoker import SubagentInvoker, SubagentTask
from delivery_pipeline.synthesis_plane.roles import SubagentRegistry

from . import (
    BLOCK_VERDICT,
    PASS_VERDICT,
    FakeClock,
    RecordingLogger,
    ScriptedSubagents,
    review_pipeline,
    three_stage_pipeline,
)

THREE_STAGE_ROLES = ("architect", "builder", "planner")


class StatusRecordingStore(InMemoryRunStore):
    def __init__(self) -> None:
        super().__init__()
        self.saved_statuses: list[RunStatus] = []

    def save(self, state: RunState) -> None:
        self.saved_statuses.append(state.status)
        super().save(state)


class _ProcessKilled(BaseException):
    """Escapes the invoker the way a dying worker process would."""


def _handlers(
    subagents: ScriptedSubagents, roles: tuple[str, ...]
) -> dict[str, Callable[[SubagentTask], JSONValue]]:
    return {role: subagents.handler(role) for role in roles}


def _supervisor_for(
    handlers: dict[str, Callable[[SubagentTask], JSONValue]],
    store: InMemoryRunStore,
    clock: FakeClock,
) -> RunSupervisor:
    return RunSupervisor(
        SubagentInvoker(SubagentRegistry.from_mapping(handlers)), store, clock=clock
    )

def _supervisor(
    subagents: ScriptedSubagents,
    roles: tuple[str, ...] = THREE_STAGE_ROLES,
    *,
    store: InMemoryRunStore | None = None,
    clock: FakeClock | None = None,
    **kwargs: object,
) -> RunSupervisor:
    return RunSupervisor(
        subagents.invoker(roles),
        store if store is not None else InMemoryRunStore(),
        clock=clock if clock is not None else FakeClock(),
        **kwargs,  # type: ignore[arg-type]
    )


def test_start_runs_until_first_gate() -> None:
    subagents = ScriptedSubagents()
    supervisor = _supervisor(subagents)

    run_id = supervisor.start(three_stage_pipeline(), {"request": "add login"})
    state = supervisor.get_state(run_id)

    assert state.status is RunStatus.AWAITING_APPROVAL
    assert state.pending_gate is not None
    assert state.pending_gate.stage_name == "design"
    assert state.pending_gate.artifact_ref == "design@v1"
    assert state.pending_gate.description == "Approve the design before building."
    assert [(event.stage_name, event.outcome) for event in state.history] == [
        ("draft", StageOutcome.SUCCESS)
    ]
    assert [task.role for task in subagents.tasks] == ["planner", "architect"]
    assert subagents.tasks[0].context_slice == {"input": {"request": "add login"}}


def test_approve_completes_run_with_three_events() -> None:
    subagents = ScriptedSubagents()
    supervisor = _supervisor(subagents)
    run_id = supervisor.start(three_stage_pipeline(), "ship it")

    state = supervisor.approve(run_id, note="looks good")

    assert state.status is RunStatus.COMPLETED
    assert state.pending_gate is None
    assert [event.outcome for event in state.history] == [
        StageOutcome.SUCCESS,
        StageOutcome.APPROVED,
        StageOutcome.SUCCESS,
    ]
    assert state.history[1].note == "looks good"
    assert [event.sequence for event in state.history] == [1, 2, 3]
    assert supervisor.get_state(run_id) == state


def test_reject_reenters_gated_stage_with_revision_note() -> None:
    subagents = ScriptedSubagents()
    supervisor = _supervisor(subagents)
    run_id = supervisor.start(three_stage_pipeline(), "ship it")

    rejected = supervisor.reject(run_id, "  add a caching layer  ")

    assert rejected.status is RunStatus.AWAITING_APPROVAL
    assert rejected.pending_gate is not None
    assert rejected.pending_gate.artifact_ref == "design@v2"
    assert rejected.pending_gate.attempt_number == 2
    architect_calls = subagents.calls_for("architect")
    assert [task.attempt_number for task in architect_calls] == [1, 2]
    assert architect_calls[1].revision_note == "add a caching layer"

    state = supervisor.approve(run_id)
    assert state.status is RunStatus.COMPLETED
    assert [event.outcome for event in state.history] == [
        StageOutcome.SUCCESS,
        StageOutcome.REJECTED,
        StageOutcome.APPROVED,
        StageOutcome.SUCCESS,
    ]
    assert [entry.ref for entry in state.artifact_versions("design")] == ["design@v1", "design@v2"]
    assert state.revision_note is None
    # The downstream stage never sees the revision note.
    assert subagents.calls_for("builder")[0].revision_note is None


def test_blank_approval_note_is_recorded_as_none() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    state = supervisor.approve(run_id, note="   ")

    assert state.status is RunStatus.COMPLETED
    assert state.history[1].outcome is StageOutcome.APPROVED
    assert state.history[1].note is None


def test_oversized_gate_note_leaves_run_waiting() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    with pytest.raises(ValueError, match="at most"):
        supervisor.reject(run_id, "n" * (MAX_TEXT_LENGTH + 1))

    state = supervisor.get_state(run_id)
    assert state.status is RunStatus.AWAITING_APPROVAL
    assert len(state.history) == 1

def test_reject_requires_non_empty_note() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    with pytest.raises(ValueError, match="note must not be empty"):
        supervisor.reject(run_id, "   ")

    assert supervisor.get_state(run_id).status is RunStatus.AWAITING_APPROVAL


def test_approve_requires_pending_gate() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")
    supervisor.approve(run_id)

    with pytest.raises(InvalidTransitionError, match="status is completed"):
        supervisor.approve(run_id)


def test_pending_artifact_returns_gated_payload() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    artifact = supervisor.pending_artifact(run_id)

    assert isinstance(artifact, dict)
    assert artifact["role"] == "architect"
    assert artifact["reads"] == ["draft"]


def test_start_fails_fast_on_missing_role() -> None:
    store = InMemoryRunStore()
    subagents = ScriptedSubagents()
    supervisor = RunSupervisor(subagents.invoker(("planner", "builder")), store, clock=FakeClock())

    with pytest.raises(RoleUnavailableError, match="architect"):
        supervisor.start(three_stage_pipeline(), "x")

    assert store.list_runs() == []
    assert subagents.tasks == []


def test_subagent_failure_aborts_run() -> None:
    subagents = ScriptedSubagents(failing={"planner"})
    supervisor = _supervisor(subagents)

    run_id = supervisor.start(three_stage_pipeline(), "x")
    state = supervisor.get_state(run_id)

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "TransientInvocationError"
    assert state.abort_reason is not None and "planner is unavailable" in state.abort_reason
    assert [(event.stage_name, event.outcome) for event in state.history] == [
        ("draft", StageOutcome.FAILURE)
    ]
    assert subagents.calls_for("architect") == []


def test_oversized_failure_text_is_clipped_and_run_aborts() -> None:
    store = InMemoryRunStore()
    handlers = _handlers(ScriptedSubagents(), THREE_STAGE_ROLES)

    def _verbose_planner(task: SubagentTask) -> JSONValue:
        raise RuntimeError("x" * 9000)

    handlers["planner"] = _verbose_planner
    supervisor = _supervisor_for(handlers, store, FakeClock())

    state = supervisor.get_state(supervisor.start(three_stage_pipeline(), "x"))

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "TransientInvocationError"
    note = state.history[-1].note
    assert note is not None
    assert len(note) == MAX_TEXT_LENGTH
    assert note.endswith("…")
    assert state.abort_reason is not None
    assert len(state.abort_reason) <= MAX_TEXT_LENGTH
    assert [run.status for run in store.list_runs()] == [RunStatus.ABORTED]

def test_missing_read_aborts_run() -> None:
    definition = PipelineDefinition(
        name="broken-reads",
        stages=(
            StageSpec(
                name="build",
                kind=StageKind.AUTOMATIC,
                role="builder",
                reads=("design",),
                produces="build",
            ),
        ),
    )
    subagents = ScriptedSubagents()
    supervisor = _supervisor(subagents, ("builder",))

    state = supervisor.get_state(supervisor.start(definition, "x"))

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "MissingArtifactError"
    assert subagents.tasks == []


def test_review_block_ceiling_aborts_with_issues() -> None:
    subagents = ScriptedSubagents(verdicts=[BLOCK_VERDICT])
    store = StatusRecordingStore()
    supervisor = _supervisor(subagents, ("builder", "reviewer"), store=store)

    state = supervisor.get_state(supervisor.start(review_pipeline(max_attempts=2), "x"))

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "QualityBlock"
    assert len(subagents.calls_for("reviewer")) == 2
    # One build, one fix.
    assert len(subagents.calls_for("builder")) == 2
    assert state.history[-1].outcome is StageOutcome.BLOCKED
    assert state.history[-1].note == "[critical] src/app.py:12: unchecked input"
    assert [issue.location for issue in state.issues] == ["src/app.py:12"]
    assert RunStatus.BLOCKED_RETRY in store.saved_statuses

    report = state.abort_report()
    assert report["error"] == "QualityBlock"
    assert len(report["history"]) == 2  # type: ignore[arg-type]


def test_review_pass_after_fix_completes() -> None:
    subagents = ScriptedSubagents(verdicts=[BLOCK_VERDICT, PASS_VERDICT])
    bus = EventBus()
    supervisor = _supervisor(subagents, ("builder", "reviewer"), event_bus=bus)

    run_id = supervisor.start(review_pipeline(), "x")
    state = supervisor.get_state(run_id)

    assert state.status is RunStatus.COMPLETED
    review_entry = state.artifact_versions("review")[0]
    assert isinstance(review_entry.payload, dict)
    assert review_entry.payload["attempts"] == 2
    assert review_entry.payload["verdict"] == {"issues": [], "outcome": "PASS"}
    fix_task = subagents.calls_for("builder")[1]
    assert fix_task.context_slice["issues"] == BLOCK_VERDICT["issues"]

    types = [event.event_type for event in bus.replay(correlation_id=run_id)]
    assert types == [
        EventType.RUN_STARTED,
        EventType.STAGE_SUCCEEDED,
        EventType.REVIEW_BLOCKED,
        EventType.STAGE_SUCCEEDED,
        EventType.RUN_COMPLETED,
    ]


def test_review_block_note_is_clipped_to_the_text_limit() -> None:
    issues: list[JSONValue] = [
        {"severity": "critical", "location": f"src/mod{n}.py", "description": "d" * 3000}
        for n in range(4)
    ]
    subagents = ScriptedSubagents(verdicts=[{"outcome": "BLOCK", "issues": issues}])
    supervisor = _supervisor(subagents, ("builder", "reviewer"))

    state = supervisor.get_state(supervisor.start(review_pipeline(max_attempts=2), "x"))

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "QualityBlock"
    assert len(state.issues) == 4
    note = state.history[-1].note
    assert note is not None
    assert note.startswith("[critical] src/mod0.py: ddd")
    assert len(note) == MAX_TEXT_LENGTH
    assert note.endswith("…")


def test_resume_applies_fix_owed_before_crash() -> None:
    clock = FakeClock()
    store = StatusRecordingStore()
    crashed_with = ScriptedSubagents(verdicts=[BLOCK_VERDICT])
    handlers = _handlers(crashed_with, ("builder", "reviewer"))
    build = handlers["builder"]

    def _build_then_die_on_fix(task: SubagentTask) -> JSONValue:
        if task.stage_name == "review":
            raise _ProcessKilled()
        return build(task)

    handlers["builder"] = _build_then_die_on_fix
    with pytest.raises(_ProcessKilled):
        _supervisor_for(handlers, store, clock).start(review_pipeline(max_attempts=2), "x")

    [crashed] = store.list_runs()
    assert crashed.status is RunStatus.BLOCKED_RETRY
    progress = crashed.review_progress
    assert progress is not None
    assert progress.fix_pending
    assert progress.attempt == 1
    reviewed = progress.artifact

    restarted = ScriptedSubagents(verdicts=[BLOCK_VERDICT])
    state = _supervisor(restarted, ("builder", "reviewer"), store=store, clock=clock).resume(
        crashed.run_id
    )

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "QualityBlock"
    assert state.review_progress is None
    # The ceiling of two counts the review made before the crash.
    assert len(crashed_with.calls_for("reviewer")) + len(restarted.calls_for("reviewer")) == 2
    [fix] = restarted.calls_for("builder")
    assert fix.stage_name == "review"
    assert fix.context_slice["artifact"] == reviewed
    assert restarted.calls_for("reviewer")[0].attempt_number == 2
    assert state.history[-1].outcome is StageOutcome.BLOCKED
    assert state.history[-1].attempt_number == 1


def test_resume_reviews_artifact_fixed_before_crash() -> None:
    clock = FakeClock()
    store = InMemoryRunStore()
    crashed_with = ScriptedSubagents(verdicts=[BLOCK_VERDICT])
    handlers = _handlers(crashed_with, ("builder", "reviewer"))
    review = handlers["reviewer"]

    def _review_once(task: SubagentTask) -> JSONValue:
        if task.attempt_number > 1:
            raise _ProcessKilled()
        return review(task)

    handlers["reviewer"] = _review_once
    with pytest.raises(_ProcessKilled):
        _supervisor_for(handlers, store, clock).start(review_pipeline(max_attempts=3), "x")

    [crashed] = store.list_runs()
    progress = crashed.review_progress
    assert progress is not None
    assert not progress.fix_pending
    assert progress.attempt == 2
    fixed = progress.artifact
    assert isinstance(fixed, dict)
    assert fixed["stage"] == "review"

    restarted = ScriptedSubagents(verdicts=[PASS_VERDICT])
    state = _supervisor(restarted, ("builder", "reviewer"), store=store, clock=clock).resume(
        crashed.run_id
    )

    assert state.status is RunStatus.COMPLETED
    assert restarted.calls_for("builder") == []
    assert [task.context_slice for task in restarted.calls_for("reviewer")] == [
        {"artifact": fixed}
    ]
    payload = state.artifact_versions("review")[0].payload
    assert isinstance(payload, dict)
    assert payload["attempts"] == 2
    assert payload["artifact"] == fixed

def test_supervisor_review_ceiling_applies_when_stage_has_none() -> None:
    subagents = ScriptedSubagents(verdicts=[BLOCK_VERDICT])
    supervisor = _supervisor(subagents, ("builder", "reviewer"), max_review_attempts=1)

    state = supervisor.get_state(supervisor.start(review_pipeline(), "x"))

    assert state.status is RunStatus.ABORTED
    assert len(subagents.calls_for("reviewer")) == 1
    assert len(subagents.calls_for("builder")) == 1


def test_passthrough_gate_rework_reenters_earlier_stage() -> None:
    definition = PipelineDefinition(
        name="verify-flow",
        stages=(
            StageSpec(
                name="build",
                kind=StageKind.AUTOMATIC,
                role="builder",
                reads=("input",),
                produces="build",
            ),
            StageSpec(
                name="manual-verify",
                kind=StageKind.GATED,
                reads=("build",),
                produces="verification",
                rework_from="build",
                description="Try the build by hand.",
            ),
        ),
    )
    subagents = ScriptedSubagents()
    supervisor = _supervisor(subagents, ("builder",))
    run_id = supervisor.start(definition, "x")

    first = supervisor.pending_artifact(run_id)
    assert isinstance(first, dict)
    assert first["build"]["attempt"] == 1  # type: ignore[index]

    state = supervisor.reject(run_id, "crashes on save")

    assert state.status is RunStatus.AWAITING_APPROVAL
    assert state.pending_gate is not None
    assert state.pending_gate.artifact_ref == "verification@v2"
    builder_calls = subagents.calls_for("builder")
    assert builder_calls[1].revision_note == "crashes on save"
    assert builder_calls[1].attempt_number == 2
    assert [entry.ref for entry in state.artifact_versions("build")] == ["build@v1", "build@v2"]

    assert supervisor.approve(run_id).status is RunStatus.COMPLETED


def test_cancel_suspended_run() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    state = supervisor.cancel(run_id)

    assert state.status is RunStatus.ABORTED
    assert state.abort_error is None
    assert state.pending_gate is None
    assert state.history[-1].stage_name == "design"
    assert state.history[-1].note == CANCELLED_NOTE

    with pytest.raises(InvalidTransitionError):
        supervisor.cancel(run_id)


def test_gate_expiry_aborts_on_decision() -> None:
    clock = FakeClock()
    supervisor = _supervisor(ScriptedSubagents(), clock=clock, gate_timeout_seconds=60)
    run_id = supervisor.start(three_stage_pipeline(), "x")
    clock.advance(61)

    state = supervisor.approve(run_id)

    assert state.status is RunStatus.ABORTED
    assert state.abort_error == "GateExpired"
    assert state.history[-1].note == GATE_EXPIRED_NOTE
    assert state.history[-1].artifact_ref == "design@v1"


def test_expire_gates_sweeps_only_overdue_runs() -> None:
    clock = FakeClock()
    supervisor = _supervisor(ScriptedSubagents(), clock=clock, gate_timeout_seconds=60)
    early = supervisor.start(three_stage_pipeline(), "x")
    clock.advance(30)
    late = supervisor.start(three_stage_pipeline(), "y")
    clock.advance(40)

    expired = supervisor.expire_gates()

    assert [state.run_id for state in expired] == [early]
    assert supervisor.get_state(early).status is RunStatus.ABORTED
    assert supervisor.get_state(late).status is RunStatus.AWAITING_APPROVAL


def test_expire_gates_reaches_every_stored_run(tmp_path: Path) -> None:
    clock = FakeClock()
    supervisor = RunSupervisor(
        ScriptedSubagents().invoker(THREE_STAGE_ROLES),
        SQLiteRunStore(StateDB(tmp_path / "runs.sqlite")),
        clock=clock,
        gate_timeout_seconds=60,
    )
    run_ids = [supervisor.start(three_stage_pipeline(), {"n": n}) for n in range(101)]
    clock.advance(3600)

    expired = supervisor.expire_gates()

    assert len(expired) == 101
    assert supervisor.get_state(run_ids[0]).status is RunStatus.ABORTED
    assert supervisor.list_runs(status=RunStatus.AWAITING_APPROVAL) == []
    assert len(supervisor.list_runs(limit=10)) == 10

def test_resume_continues_interrupted_run() -> None:
    clock = FakeClock()
    store = InMemoryRunStore()
    definition = three_stage_pipeline()
    ref = store.save_definition(definition)
    run_id = ids.generate_run_id()
    store.save(
        RunState(
            run_id=run_id,
            pipeline_ref=ref,
            pipeline_name=definition.name,
            status=RunStatus.RUNNING,
            current_stage_index=0,
            created_at=clock.now,
            updated_at=clock.now,
            context=(
                ContextEntry(
                    key="input",
                    version=1,
                    payload="resume me",
                    produced_by_stage="input",
                    created_at=clock.now,
                ),
            ),
        )
    )
    bus = EventBus()
    supervisor = _supervisor(ScriptedSubagents(), store=store, clock=clock, event_bus=bus)

    state = supervisor.resume(run_id)

    assert state.status is RunStatus.AWAITING_APPROVAL
    assert bus.replay(correlation_id=run_id)[0].event_type is EventType.RUN_RESUMED

    supervisor.approve(run_id)
    with pytest.raises(InvalidTransitionError, match="cannot be resumed"):
        supervisor.resume(run_id)


def test_unknown_run_raises_not_found() -> None:
    supervisor = _supervisor(ScriptedSubagents())

    with pytest.raises(RunNotFoundError):
        supervisor.get_state(ids.generate_run_id())


def test_run_locks_are_released_after_each_call() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    run_id = supervisor.start(three_stage_pipeline(), "x")

    for _ in range(3):
        with pytest.raises(RunNotFoundError):
            supervisor.approve(ids.generate_run_id())
        with pytest.raises(RunNotFoundError):
            supervisor.reject(ids.generate_run_id(), "redo")
        with pytest.raises(RunNotFoundError):
            supervisor.cancel(ids.generate_run_id())
    supervisor.approve(run_id)

    assert supervisor._run_locks == {}

def test_list_runs_filters_by_status() -> None:
    supervisor = _supervisor(ScriptedSubagents())
    waiting = supervisor.start(three_stage_pipeline(), "a")
    done = supervisor.start(three_stage_pipeline(), "b")
    supervisor.approve(done)

    assert [state.run_id for state in supervisor.list_runs(status="awaiting_approval")] == [waiting]
    assert [state.run_id for state in supervisor.list_runs(status=RunStatus.COMPLETED)] == [done]
    assert len(supervisor.list_runs()) == 2


def test_lifecycle_is_logged() -> None:
    logger = RecordingLogger()
    supervisor = _supervisor(ScriptedSubagents(), logger=logger)

    run_id = supervisor.start(three_stage_pipeline(), "x")
    supervisor.approve(run_id)

    names = logger.names()
    assert names[0] == "run_started"
    assert "gate_opened" in names
    assert "gate_approved" in names
    assert names[-1] == "run_completed"


def test_failing_event_subscriber_does_not_break_run() -> None:
    logger = RecordingLogger()
    bus = EventBus()

    def _explode(event: object) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(EventType.GATE_OPENED, _explode)
    supervisor = _supervisor(ScriptedSubagents(), event_bus=bus, logger=logger)

    run_id = supervisor.start(three_stage_pipeline(), "x")

    assert supervisor.get_state(run_id).status is RunStatus.AWAITING_APPROVAL
    assert "event_subscriber_failed" in logger.names()


def test_rejects_invalid_review_ceiling() -> None:
    with pytest.raises(ValueError, match=">= 1"):
        _supervisor(ScriptedSubagents(), max_review_attempts=0)
