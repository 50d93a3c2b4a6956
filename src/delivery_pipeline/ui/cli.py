"""``delivery-pipeline`` subcommands and the handlers behind them.

Every subcommand shares the same handful of options (config file, profile,
subagent module, output mode). Handlers return an ``ExitCode``; anything they
cannot handle is raised as ``CLIError`` carrying the code to exit with.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from types import TracebackType
from typing import Any, Final

from delivery_pipeline.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
)
from delivery_pipeline.control_plane import RunStore, RunSupervisor
from delivery_pipeline.domain.errors import (
    ConfigError,
    InvalidTransitionError,
    RunNotFoundError,
    SubagentTimeoutError,
    TransientInvocationError,
)
from delivery_pipeline.domain.models import (
    JSONValue,
    PipelineDefinition,
    RunState,
    RunStatus,
)
from delivery_pipeline.main import ExitCode
from delivery_pipeline.observability import (
    LoggingConfig,
    configure_logging,
    shutdown_logging,
)
from delivery_pipeline.persistence import SQLiteRunStore, StateDB
from delivery_pipeline.pipeline import (
    StageRegistry,
    default_pipeline,
    dump_pipeline_definition,
    load_pipeline_definition,
)
from delivery_pipeline.synthesis_plane import SubagentInvoker, SubagentRegistry
from delivery_pipeline.ui.render import CLIRenderer, create_renderer

PROG: Final[str] = "delivery-pipeline"
DEFAULT_LIST_LIMIT: Final[int] = 20
_SUBAGENT_ERROR_TYPES: Final[frozenset[str]] = frozenset(
    {TransientInvocationError.__name__, SubagentTimeoutError.__name__}
)

_USAGE_EXAMPLES: Final[str] = """\
examples:
  delivery-pipeline start --input 'Add CSV export'
  delivery-pipeline status
  delivery-pipeline approve RUN_ID --note 'ship it'
  delivery-pipeline reject RUN_ID --note 'split the parser out'
"""

_DEFINITION_HELP: Final[str] = (
    "Pipeline definition YAML; falls back to [pipeline].definition, then the built-in pipeline."
)

# (flags, add_argument keywords) shared by every subcommand.
_COMMON_OPTIONS: Final[tuple[tuple[tuple[str, ...], dict[str, Any]], ...]] = (
    (("--config",), {"dest": "config_path", "help": "TOML config file (default: ./delivery.toml)."}),
    (("--profile",), {"help": "Apply the named [profiles.*] overlay."}),
    (("--subagents",), {"help": "Module exposing a SUBAGENTS mapping; overrides [subagents].module."}),
    (("--json",), {"action": "store_true", "help": "Print JSON instead of text."}),
    (("--verbose", "-v"), {"action": "store_true", "help": "More detail; also log to stderr."}),
    (("--no-color",), {"action": "store_true", "help": "Plain output even on a terminal."}),
)

Handler = Callable[[argparse.Namespace], int]


class CLIError(Exception):
    """A command failed in a way the user can act on."""

    def __init__(self, message: str, *, exit_code: int = ExitCode.RUN_ABORTED) -> None:
        super().__init__(message)
        self.exit_code = int(exit_code)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Drive delivery runs through subagent stages and human approval gates.",
        epilog=_USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    shared = argparse.ArgumentParser(add_help=False)
    for flags, options in _COMMON_OPTIONS:
        shared.add_argument(*flags, **options)
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    def command(name: str, handler: Handler, summary: str, *, run_id: bool = False) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, parents=[shared], help=summary, description=summary)
        if run_id:
            sub.add_argument("run_id", help="Run id (run-<ulid>).")
        sub.set_defaults(handler=handler)
        return sub

    start = command("start", _cmd_start, "Start a run and drive it to its first approval gate.")
    source = start.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", dest="input_text", help="Initial input; JSON if it parses, else text.")
    source.add_argument("--input-file", help="Read the initial input from this file.")
    start.add_argument("--definition", dest="definition_path", help=_DEFINITION_HELP)
    start.add_argument(
        "--max-review-attempts", type=int, help="Override [pipeline].max_review_attempts."
    )

    approve = command("approve", _cmd_approve, "Approve the pending artifact and continue.", run_id=True)
    approve.add_argument("--note", help="Recorded with the approval.")

    reject = command("reject", _cmd_reject, "Send the pending artifact back for revision.", run_id=True)
    reject.add_argument("--note", required=True, help="Revision note for the re-run stage.")

    command("cancel", _cmd_cancel, "Abort a run that has not finished.", run_id=True)

    status = command("status", _cmd_status, "Show one run, or the most recent one.")
    status.add_argument("run_id", nargs="?", help="Run id (default: latest run).")
    status.add_argument("--show-artifact", action="store_true", help="Include the pending artifact.")

    listing = command("list", _cmd_list, "List runs, newest first.")
    listing.add_argument(
        "--status",
        dest="status_filter",
        choices=[member.value for member in RunStatus],
        help="Only runs in this status.",
    )
    listing.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT, help="Maximum rows.")

    command("resume", _cmd_resume, "Continue a run left in running or blocked_retry.", run_id=True)
    command("expire", _cmd_expire, "Abort runs whose approval deadline has passed.")

    validate = command("validate", _cmd_validate, "Check a pipeline definition against the subagents.")
    validate.add_argument("definition_path", nargs="?", help=_DEFINITION_HELP)
    validate.add_argument("--write", dest="write_path", help="Also write the normalized YAML here.")

    command("config", _cmd_config, "Print the effective configuration with secrets masked.")
    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(None if argv is None else list(argv))
    handler: Handler = args.handler
    try:
        return int(handler(args))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


main = run_cli


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_start(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    initial_input = _read_initial_input(args)
    definition = _resolve_definition(
        _optional_str(getattr(args, "definition_path", None)), config
    )
    with _PipelineSession(args, config, require_subagents=True) as supervisor:
        run_id = supervisor.start(definition, initial_input)
        state = supervisor.get_state(run_id)
        return _report_state(args, "start", state, supervisor.store)


def _cmd_approve(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    note = _optional_str(getattr(args, "note", None))
    with _PipelineSession(args, config, require_subagents=True) as supervisor:
        state = supervisor.approve(run_id, note=note)
        return _report_state(args, "approve", state, supervisor.store)


def _cmd_reject(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    note = _require_str(getattr(args, "note", None), "note")
    with _PipelineSession(args, config, require_subagents=True) as supervisor:
        state = supervisor.reject(run_id, note)
        return _report_state(args, "reject", state, supervisor.store)


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    with _PipelineSession(args, config, require_subagents=False) as supervisor:
        state = supervisor.cancel(run_id)
        _report_state(args, "cancel", state, supervisor.store)
    return int(ExitCode.SUCCESS)


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _optional_str(getattr(args, "run_id", None))
    with _PipelineSession(args, config, require_subagents=False) as supervisor:
        if run_id is not None:
            state: RunState | None = supervisor.get_state(run_id)
        else:
            latest = supervisor.list_runs(limit=1)
            state = latest[0] if latest else None

        if state is None:
            if _flag(args, "json"):
                _emit_json({"command": "status", "run": None})
                return int(ExitCode.SUCCESS)
            renderer = _get_renderer(args)
            renderer.text(f"No runs found in {_state_db_path(config)}")
            renderer.next_steps([f"{PROG} start --input '<feature request>'"])
            return int(ExitCode.SUCCESS)

        pending: JSONValue = None
        if state.pending_gate is not None:
            pending = supervisor.pending_artifact(state.run_id)
        _report_state(
            args,
            "status",
            state,
            supervisor.store,
            pending_artifact=pending,
            show_history=True,
        )
    return int(ExitCode.SUCCESS)


def _cmd_list(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    status_filter = _optional_str(getattr(args, "status_filter", None))
    limit = getattr(args, "limit", DEFAULT_LIST_LIMIT)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise CLIError("invalid limit: expected a positive integer", exit_code=2)

    with _PipelineSession(args, config, require_subagents=False) as supervisor:
        states = supervisor.list_runs(status=status_filter, limit=limit)
        summaries = [_summarize_run(state, supervisor.store) for state in states]

    if _flag(args, "json"):
        _emit_json({"command": "list", "status": status_filter, "runs": summaries})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not summaries:
        renderer.text("No runs found.")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ["RUN", "PIPELINE", "STATUS", "STAGE", "UPDATED"],
        [
            [
                str(summary["run_id"]),
                str(summary["pipeline"]),
                renderer.status(str(summary["status"])),
                str(summary["stage"] or "-"),
                str(summary["updated_at"]),
            ]
            for summary in summaries
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    with _PipelineSession(args, config, require_subagents=True) as supervisor:
        state = supervisor.resume(run_id)
        return _report_state(args, "resume", state, supervisor.store)


def _cmd_expire(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _PipelineSession(args, config, require_subagents=False) as supervisor:
        expired = supervisor.expire_gates()

    run_ids = [state.run_id for state in expired]
    if _flag(args, "json"):
        _emit_json({"command": "expire", "expired": run_ids})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not run_ids:
        renderer.text("No expired approval gates.")
        return int(ExitCode.SUCCESS)
    renderer.kv("Expired gates", len(run_ids))
    renderer.items(run_ids)
    return int(ExitCode.SUCCESS)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    definition = _resolve_definition(
        _optional_str(getattr(args, "definition_path", None)), config
    )
    try:
        registry = StageRegistry(definition)
    except ConfigError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc

    module = _subagent_module(config)
    missing: tuple[str, ...] = ()
    if module is not None:
        subagents = _subagent_registry(config, require=True)
        missing = subagents.missing(registry.required_roles())

    write_path = _optional_str(getattr(args, "write_path", None))
    if write_path is not None:
        try:
            dump_pipeline_definition(definition, write_path)
        except OSError as exc:
            raise CLIError(f"cannot write definition: {exc}", exit_code=2) from exc

    exit_code = ExitCode.CONFIG_ERROR if missing else ExitCode.SUCCESS
    payload: dict[str, object] = {
        "command": "validate",
        "pipeline": definition.name,
        "pipeline_ref": definition.ref,
        "stages": [
            {
                "name": stage.name,
                "kind": stage.kind.value,
                "role": stage.role,
                "produces": stage.produces,
                "reads": list(stage.reads),
            }
            for stage in registry
        ],
        "required_roles": list(registry.required_roles()),
        "subagents_module": module,
        "missing_roles": list(missing),
        "valid": not missing,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", f"{definition.name} ({definition.ref[:12]})")
    renderer.table(
        ["#", "STAGE", "KIND", "ROLE", "PRODUCES"],
        [
            [str(index), stage.name, stage.kind.value, stage.role or "-", stage.produces]
            for index, stage in enumerate(registry)
        ],
        title="Stages:",
    )
    renderer.section("Required roles:")
    renderer.items(list(registry.required_roles()))
    if module is None:
        renderer.warning("no subagent module configured; role wiring not checked")
    elif missing:
        renderer.section(f"Missing roles in {module}:")
        renderer.items(list(missing))
    else:
        renderer.text(f"\nAll roles provided by {module}.")
    if write_path is not None:
        renderer.kv("Written", write_path)
    return int(exit_code)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = redact_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_state(
    args: argparse.Namespace,
    command: str,
    state: RunState,
    store: RunStore,
    *,
    pending_artifact: JSONValue = None,
    show_history: bool = False,
) -> int:
    """Print ``state`` and return the exit code it implies."""

    exit_code = _exit_code_for(state)
    summary = _summarize_run(state, store)
    if _flag(args, "json"):
        payload: dict[str, object] = {
            "command": command,
            "run": summary,
            "history": [event.to_dict() for event in state.history],
            "abort": state.abort_report() if state.status is RunStatus.ABORTED else None,
        }
        if state.pending_gate is not None and command == "status":
            payload["pending_artifact"] = pending_artifact
        _emit_json(payload)
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("Run", state.run_id)
    renderer.kv("Pipeline", state.pipeline_name)
    renderer.kv("Status", renderer.status(state.status.value))
    renderer.kv("Stage", summary["stage"] or "-")

    gate = state.pending_gate
    if gate is not None:
        renderer.section("Awaiting approval:")
        renderer.kv("  Stage", gate.stage_name)
        renderer.kv("  Artifact", gate.artifact_ref)
        if gate.description:
            renderer.kv("  Review", gate.description)
        if gate.expires_at is not None:
            renderer.kv("  Expires", gate.expires_at.isoformat())
        if _flag(args, "show_artifact"):
            renderer.section("Pending artifact:")
            renderer.text(json.dumps(pending_artifact, indent=2, sort_keys=True))

    if state.status is RunStatus.ABORTED:
        renderer.section("Aborted:")
        renderer.kv("  Reason", state.abort_reason or "-")
        renderer.kv("  Error", state.abort_error or "-")
        if state.issues:
            renderer.items([issue.summary() for issue in state.issues])

    if show_history or renderer.verbose:
        renderer.table(
            ["#", "STAGE", "ATTEMPT", "OUTCOME", "ARTIFACT", "NOTE"],
            [
                [
                    str(event.sequence),
                    event.stage_name,
                    str(event.attempt_number),
                    event.outcome.value,
                    event.artifact_ref or "-",
                    event.note or "",
                ]
                for event in state.history
            ],
            title="History:",
        )

    if gate is not None:
        renderer.next_steps(
            [
                f"{PROG} approve {state.run_id}",
                f"{PROG} reject {state.run_id} --note '<what to change>'",
            ]
        )
    elif state.status in {RunStatus.RUNNING, RunStatus.BLOCKED_RETRY}:
        renderer.next_steps([f"{PROG} resume {state.run_id}"])
    return int(exit_code)


def _summarize_run(state: RunState, store: RunStore) -> dict[str, object]:
    return {
        "run_id": state.run_id,
        "pipeline": state.pipeline_name,
        "pipeline_ref": state.pipeline_ref,
        "status": state.status.value,
        "stage_index": state.current_stage_index,
        "stage": _stage_name(state, store),
        "created_at": state.created_at.isoformat(),
        "updated_at": state.updated_at.isoformat(),
        "pending_gate": state.pending_gate.to_dict() if state.pending_gate is not None else None,
        "artifacts": sorted({entry.ref for entry in state.context}),
    }


def _stage_name(state: RunState, store: RunStore) -> str | None:
    definition = store.load_definition(state.pipeline_ref)
    if definition is None or state.current_stage_index >= len(definition.stages):
        return None
    return definition.stages[state.current_stage_index].name


def _exit_code_for(state: RunState) -> ExitCode:
    if state.status is not RunStatus.ABORTED:
        return ExitCode.SUCCESS
    if state.abort_error in _SUBAGENT_ERROR_TYPES:
        return ExitCode.SUBAGENT_ERROR
    return ExitCode.RUN_ABORTED


# ---------------------------------------------------------------------------
# Helpers: config, wiring, inputs
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    overrides = {
        dotted: value
        for dotted, value in (
            ("subagents.module", _optional_str(getattr(args, "subagents", None))),
            ("pipeline.max_review_attempts", getattr(args, "max_review_attempts", None)),
        )
        if value is not None
    }
    try:
        return load_config(
            _optional_str(getattr(args, "config_path", None)),
            profile=_optional_str(getattr(args, "profile", None)),
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


_RUN_CONTROL_ERRORS: Final[tuple[type[Exception], ...]] = (
    ConfigError,
    InvalidTransitionError,
    RunNotFoundError,
    ValueError,
)


class _PipelineSession:
    """Configure logging, wire a supervisor, and translate run-control errors."""

    def __init__(
        self,
        args: argparse.Namespace,
        config: Mapping[str, object],
        *,
        require_subagents: bool,
    ) -> None:
        self._args = args
        self._config = config
        self._require_subagents = require_subagents

    def __enter__(self) -> RunSupervisor:
        _configure_logging(self._args, self._config)
        try:
            return _build_supervisor(self._config, require_subagents=self._require_subagents)
        except BaseException:
            shutdown_logging()
            raise

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        shutdown_logging()
        if isinstance(exc, _RUN_CONTROL_ERRORS):
            raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _configure_logging(args: argparse.Namespace, config: Mapping[str, object]) -> None:
    logging_config = replace(
        LoggingConfig.from_mapping(_section(config, "observability")),
        log_to_stderr=_flag(args, "verbose"),
    )
    try:
        configure_logging(logging_config)
    except (OSError, ValueError) as exc:
        raise CLIError(f"cannot configure logging: {exc}", exit_code=2) from exc


def _build_supervisor(
    config: Mapping[str, object], *, require_subagents: bool
) -> RunSupervisor:
    pipeline = _section(config, "pipeline")
    invoker = SubagentInvoker(
        _subagent_registry(config, require=require_subagents),
        timeout_seconds=_positive_float(pipeline.get("subagent_timeout_seconds"), 300.0),
    )
    gate_timeout = pipeline.get("gate_timeout_seconds")
    max_attempts = pipeline.get("max_review_attempts")
    return RunSupervisor(
        invoker,
        SQLiteRunStore(StateDB(_state_db_path(config))),
        max_review_attempts=max_attempts if isinstance(max_attempts, int) else 3,
        gate_timeout_seconds=float(gate_timeout)
        if isinstance(gate_timeout, (int, float))
        else None,
    )


def _subagent_module(config: Mapping[str, object]) -> str | None:
    return _optional_str(_section(config, "subagents").get("module"))


def _subagent_registry(config: Mapping[str, object], *, require: bool) -> SubagentRegistry:
    module = _subagent_module(config)
    if module is None:
        if require:
            raise CLIError(
                "no subagent module configured: set [subagents].module or pass --subagents",
                exit_code=int(ExitCode.CONFIG_ERROR),
            )
        return SubagentRegistry()
    try:
        return SubagentRegistry.from_module(module)
    except ConfigError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _resolve_definition(
    path_arg: str | None, config: Mapping[str, object]
) -> PipelineDefinition:
    source = path_arg or _optional_str(_section(config, "pipeline").get("definition"))
    if source is None:
        return default_pipeline()
    try:
        return load_pipeline_definition(Path(source).expanduser())
    except FileNotFoundError as exc:
        raise CLIError(f"pipeline definition not found: {source}", exit_code=2) from exc
    except (OSError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _read_initial_input(args: argparse.Namespace) -> JSONValue:
    raw = getattr(args, "input_text", None)
    input_file = _optional_str(getattr(args, "input_file", None))
    if input_file is not None:
        try:
            raw = Path(input_file).expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise CLIError(f"cannot read input file: {exc}", exit_code=2) from exc
    text = _require_str(raw, "input")
    try:
        parsed: JSONValue = json.loads(text)
    except json.JSONDecodeError:
        return text
    return parsed


def _state_db_path(config: Mapping[str, object]) -> Path:
    raw = _section(config, "paths").get("state_db")
    return Path(_require_str(raw, "paths.state_db"))


def _section(config: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = config.get(name)
    if not isinstance(section, Mapping):
        raise CLIError(f"config section [{name}] is missing", exit_code=2)
    return section


# ---------------------------------------------------------------------------
# Helpers: argument values
# ---------------------------------------------------------------------------


def _optional_str(value: object, name: str = "argument") -> str | None:
    """Stripped ``value``; blank strings count as absent."""

    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=ExitCode.CONFIG_ERROR)
    return value.strip() or None


def _require_str(value: object, name: str) -> str:
    text = _optional_str(value, name)
    if text is None:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=ExitCode.CONFIG_ERROR)
    return text


def _flag(args: argparse.Namespace, name: str) -> bool:
    return getattr(args, name, False) is True


def _positive_float(value: object, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
