"""Error taxonomy for pipeline configuration, invocation, review, and gate outcomes.

``ConfigError`` is fatal and raised before any stage runs. ``TransientInvocationError``
covers subagent failures and deadlines. ``QualityBlock`` and ``UserRejection`` are
expected outcomes that the supervisor turns into a bounded retry or an unbounded
revise loop respectively.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from delivery_pipeline.domain.models import Issue


class PipelineError(RuntimeError):
    """Base class for pipeline engine errors."""


class ConfigError(PipelineError):
    """Invalid pipeline definition or deployment wiring; never retried."""

    def __init__(self, message: str, *, issues: Sequence[str] = ()) -> None:
        self.issues = tuple(issues)
        if self.issues:
            rendered = "\n".join(f"- {item}" for item in self.issues)
            message = f"{message}:\n{rendered}"
        super().__init__(message)


class RoleUnavailableError(ConfigError):
    """No subagent implementation is registered for a role."""

    def __init__(self, role: str) -> None:
        self.role = role
        super().__init__(f"no subagent registered for role {role!r}")


class DuplicateArtifactError(PipelineError):
    """An artifact key was written twice in the same run."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"artifact {key!r} already exists")


class MissingArtifactError(PipelineError):
    """A stage read an artifact that has not been produced yet."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"artifact {key!r} has not been produced")


class TransientInvocationError(PipelineError):
    """A subagent call failed or missed its deadline."""

    def __init__(self, role: str, reason: str) -> None:
        self.role = role
        self.reason = reason
        super().__init__(f"subagent {role!r} failed: {reason}")


class SubagentTimeoutError(TransientInvocationError):
    """A subagent did not answer within its deadline."""

    def __init__(self, role: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(role, f"timed out after {timeout_seconds:g}s")


class QualityBlock(PipelineError):
    """The review loop hit its attempt ceiling with critical issues outstanding."""

    def __init__(self, stage_name: str, attempts: int, issues: Sequence[Issue]) -> None:
        self.stage_name = stage_name
        self.attempts = attempts
        self.issues = tuple(issues)
        critical = sum(1 for issue in self.issues if issue.is_critical)
        super().__init__(
            f"stage {stage_name!r} still blocked after {attempts} review attempt(s) "
            f"({critical} critical issue(s))"
        )


class UserRejection(PipelineError):
    """A gated artifact was rejected with a revision note."""

    def __init__(self, stage_name: str, artifact_ref: str, note: str) -> None:
        self.stage_name = stage_name
        self.artifact_ref = artifact_ref
        self.note = note
        super().__init__(f"{artifact_ref} rejected: {note}")


class RunNotFoundError(PipelineError):
    """No run exists for the requested id."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run not found: {run_id}")


class InvalidTransitionError(PipelineError):
    """A control operation is not allowed in the run's current status."""


__all__ = [
    "ConfigError",
    "DuplicateArtifactError",
    "InvalidTransitionError",
    "MissingArtifactError",
    "PipelineError",
    "QualityBlock",
    "RoleUnavailableError",
    "RunNotFoundError",
    "SubagentTimeoutError",
    "TransientInvocationError",
    "UserRejection",
]
