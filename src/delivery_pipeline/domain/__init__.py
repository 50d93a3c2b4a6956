"""Domain types shared by every plane: stage table, run state, artifacts, verdicts."""

from delivery_pipeline.domain import ids
from delivery_pipeline.domain.errors import (
    ConfigError,
    DuplicateArtifactError,
    InvalidTransitionError,
    MissingArtifactError,
    PipelineError,
    QualityBlock,
    RoleUnavailableError,
    RunNotFoundError,
    SubagentTimeoutError,
    TransientInvocationError,
    UserRejection,
)
from delivery_pipeline.domain.events import EventType, PipelineEvent
from delivery_pipeline.domain.models import (
    CANCELLABLE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    ContextEntry,
    Issue,
    IssueSeverity,
    JSONValue,
    PendingGate,
    PipelineDefinition,
    ReviewVerdict,
    RunState,
    RunStatus,
    StageEvent,
    StageKind,
    StageOutcome,
    StageSpec,
    VerdictOutcome,
    format_artifact_ref,
    parse_artifact_ref,
)

__all__ = [
    "CANCELLABLE_RUN_STATUSES",
    "ConfigError",
    "ContextEntry",
    "DuplicateArtifactError",
    "EventType",
    "InvalidTransitionError",
    "Issue",
    "IssueSeverity",
    "JSONValue",
    "MissingArtifactError",
    "PendingGate",
    "PipelineDefinition",
    "PipelineError",
    "PipelineEvent",
    "QualityBlock",
    "ReviewVerdict",
    "RoleUnavailableError",
    "RunNotFoundError",
    "RunState",
    "RunStatus",
    "StageEvent",
    "StageKind",
    "StageOutcome",
    "StageSpec",
    "SubagentTimeoutError",
    "TERMINAL_RUN_STATUSES",
    "TransientInvocationError",
    "UserRejection",
    "VerdictOutcome",
    "format_artifact_ref",
    "ids",
    "parse_artifact_ref",
]
