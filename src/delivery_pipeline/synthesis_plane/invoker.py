"""
Subagent call boundary.

``SubagentInvoker.invoke`` hands one ``SubagentTask`` to the implementation
registered for a role and returns a ``SubagentResult``:
- a missing role raises ``RoleUnavailableError`` (a deployment defect)
- a deadline miss or an exception inside the subagent becomes ``SubagentFailure``
- success carries the artifact exactly as the subagent returned it

Calls are synchronous for the caller. Plain callables run on a worker thread so
the deadline can be enforced; coroutine implementations are awaited under
``asyncio.wait_for`` with the same deadline. Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import time
from collections.abc import Awaitable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias, cast

import structlog

from delivery_pipeline.constants import DEFAULT_SUBAGENT_TIMEOUT_SECONDS
from delivery_pipeline.domain.errors import (
    ConfigError,
    RoleUnavailableError,
    SubagentTimeoutError,
    TransientInvocationError,
)
from delivery_pipeline.domain.models import JSONValue
from delivery_pipeline.synthesis_plane.roles import Subagent, SubagentRegistry


class FailureKind(StrEnum):
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class SubagentTask:
    """What a subagent is asked to do and the only context it may see."""

    role: str
    instructions: str
    context_slice: Mapping[str, JSONValue]
    stage_name: str
    attempt_number: int = 1
    revision_note: str | None = None
    run_id: str | None = None


@dataclass(frozen=True, slots=True)
class SubagentSuccess:
    artifact: JSONValue

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class SubagentFailure:
    reason: str
    kind: FailureKind = FailureKind.ERROR
    timeout_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return False

    def to_error(self, role: str) -> TransientInvocationError:
        if self.kind is FailureKind.TIMEOUT and self.timeout_seconds is not None:
            return SubagentTimeoutError(role, self.timeout_seconds)
        return TransientInvocationError(role, self.reason)


SubagentResult: TypeAlias = SubagentSuccess | SubagentFailure


class SubagentInvoker:
    """Stateless dispatcher from role name to registered implementation."""

    def __init__(
        self,
        registry: SubagentRegistry,
        *,
        timeout_seconds: float = DEFAULT_SUBAGENT_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(registry, SubagentRegistry):
            raise ValueError("registry must be a SubagentRegistry")
        self._registry = registry
        self._timeout_seconds = _validate_timeout(timeout_seconds)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def registry(self) -> SubagentRegistry:
        return self._registry

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def ensure_roles(self, roles: Iterable[str]) -> None:
        """Fail fast when any of ``roles`` has no implementation."""

        missing = self._registry.missing(roles)
        if len(missing) == 1:
            raise RoleUnavailableError(missing[0])
        if missing:
            raise ConfigError("no subagent registered for roles", issues=missing)

    def invoke(
        self,
        role: str,
        task: SubagentTask,
        *,
        timeout_seconds: float | None = None,
    ) -> SubagentResult:
        subagent = self._registry.require(role)
        deadline = (
            self._timeout_seconds if timeout_seconds is None else _validate_timeout(timeout_seconds)
        )

        started = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"subagent-{role}")
        try:
            future = executor.submit(_call_subagent, subagent.handler, task, deadline)
            artifact = future.result(timeout=deadline)
        except TimeoutError:
            self._logger.warning(
                "subagent_timed_out",
                role=role,
                stage=task.stage_name,
                attempt=task.attempt_number,
                timeout_seconds=deadline,
            )
            return SubagentFailure(
                reason=f"timed out after {deadline:g}s",
                kind=FailureKind.TIMEOUT,
                timeout_seconds=deadline,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "subagent_failed",
                role=role,
                stage=task.stage_name,
                attempt=task.attempt_number,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return SubagentFailure(reason=f"{exc.__class__.__name__}: {exc}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self._logger.debug(
            "subagent_succeeded",
            role=role,
            stage=task.stage_name,
            attempt=task.attempt_number,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return SubagentSuccess(artifact=cast("JSONValue", artifact))


def _call_subagent(handler: Subagent, task: SubagentTask, deadline: float) -> object:
    result = handler(task)
    if inspect.isawaitable(result):
        return asyncio.run(_await_with_deadline(result, deadline))
    return result


async def _await_with_deadline(awaitable: Awaitable[object], deadline: float) -> object:
    return await asyncio.wait_for(awaitable, timeout=deadline)


def _validate_timeout(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"timeout_seconds must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        raise ValueError("timeout_seconds must be a finite number > 0")
    return parsed


__all__ = [
    "FailureKind",
    "SubagentFailure",
    "SubagentInvoker",
    "SubagentResult",
    "SubagentSuccess",
    "SubagentTask",
]
