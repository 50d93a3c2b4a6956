"""Bounded review -> fix -> review cycle around the quality review stage.

The loop stops on the first PASS or once ``max_attempts`` reviews have been
spent. Intermediate BLOCK verdicts never leave this module except through the
optional ``on_blocked`` and ``on_progress`` callbacks; only the final outcome is
returned.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from delivery_pipeline.constants import DEFAULT_MAX_REVIEW_ATTEMPTS
from delivery_pipeline.domain.errors import QualityBlock
from delivery_pipeline.domain.models import Issue, JSONValue, ReviewProgress, ReviewVerdict
from delivery_pipeline.synthesis_plane.invoker import (
    FailureKind,
    SubagentFailure,
    SubagentInvoker,
    SubagentTask,
)

BlockedCallback = Callable[[int, ReviewVerdict], None]
ProgressCallback = Callable[[ReviewProgress], None]


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    """Final result of one review loop run."""

    passed: bool
    attempts: int
    artifact: JSONValue
    review_invocations: int
    fix_invocations: int
    verdict: ReviewVerdict | None = None
    failure: SubagentFailure | None = None

    @property
    def issues(self) -> tuple[Issue, ...]:
        return self.verdict.issues if self.verdict is not None else ()

    def raise_for_block(self, stage_name: str) -> None:
        """Raise ``QualityBlock`` when the ceiling was hit with critical issues open."""

        if not self.passed and self.failure is None:
            raise QualityBlock(stage_name, self.attempts, self.issues)


class ReviewLoopController:
    def __init__(
        self,
        invoker: SubagentInvoker,
        *,
        review_role: str,
        fix_role: str,
        max_attempts: int = DEFAULT_MAX_REVIEW_ATTEMPTS,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
            raise ValueError("max_attempts must be an integer")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._invoker = invoker
        self._review_role = review_role
        self._fix_role = fix_role
        self._max_attempts = max_attempts
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def run(
        self,
        artifact: JSONValue,
        *,
        stage_name: str,
        instructions: str = "",
        run_id: str | None = None,
        timeout_seconds: float | None = None,
        on_blocked: BlockedCallback | None = None,
        on_progress: ProgressCallback | None = None,
        resume: ReviewProgress | None = None,
    ) -> ReviewOutcome:
        """Review ``artifact`` until it passes or the attempt ceiling is reached.

        ``on_progress`` receives a ``ReviewProgress`` after every BLOCK and after
        every fix. Passing the last one back as ``resume`` continues the same
        loop: a pending fix is applied first, and attempts already spent count
        against the ceiling.
        """

        current = artifact
        attempt = 1
        owed: ReviewVerdict | None = None
        if resume is not None:
            current, attempt, owed = resume.artifact, resume.attempt, resume.verdict
        verdict: ReviewVerdict | None = None
        review_invocations = 0
        fix_invocations = 0

        def finish(
            passed: bool,
            *,
            last: ReviewVerdict | None = None,
            failure: SubagentFailure | None = None,
        ) -> ReviewOutcome:
            return ReviewOutcome(
                passed=passed,
                attempts=attempt,
                artifact=current,
                review_invocations=review_invocations,
                fix_invocations=fix_invocations,
                verdict=last,
                failure=failure,
            )

        while True:
            if owed is not None:
                verdict, owed = owed, None
                if attempt >= self._max_attempts:
                    return finish(False, last=verdict)
            else:
                review_invocations += 1
                result = self._invoker.invoke(
                    self._review_role,
                    SubagentTask(
                        role=self._review_role,
                        instructions=instructions,
                        context_slice={"artifact": current},
                        stage_name=stage_name,
                        attempt_number=attempt,
                        run_id=run_id,
                    ),
                    timeout_seconds=timeout_seconds,
                )

                if isinstance(result, SubagentFailure):
                    # A failed review still spends an attempt.
                    if attempt >= self._max_attempts:
                        return finish(False, last=verdict, failure=result)
                    attempt += 1
                    continue

                try:
                    verdict = _parse_verdict(result.artifact)
                except ValueError as exc:
                    self._logger.warning(
                        "review_verdict_malformed", stage=stage_name, attempt=attempt, error=str(exc)
                    )
                    return finish(
                        False,
                        failure=SubagentFailure(
                            reason=f"malformed review verdict: {exc}", kind=FailureKind.ERROR
                        ),
                    )

                if verdict.passed:
                    self._logger.info(
                        "review_passed",
                        stage=stage_name,
                        attempt=attempt,
                        minor_issues=len(verdict.issues),
                    )
                    return finish(True, last=verdict)

                self._logger.info(
                    "review_blocked",
                    stage=stage_name,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    critical_issues=len(verdict.critical_issues),
                )
                if attempt >= self._max_attempts:
                    return finish(False, last=verdict)
                if on_blocked is not None:
                    on_blocked(attempt, verdict)
                if on_progress is not None:
                    on_progress(ReviewProgress(stage_name, attempt, current, verdict))

            assert verdict is not None
            fix_invocations += 1
            fix_result = self._invoker.invoke(
                self._fix_role,
                SubagentTask(
                    role=self._fix_role,
                    instructions=instructions,
                    context_slice={
                        "artifact": current,
                        "issues": [issue.to_dict() for issue in verdict.issues],
                    },
                    stage_name=stage_name,
                    attempt_number=attempt,
                    run_id=run_id,
                ),
                timeout_seconds=timeout_seconds,
            )
            if isinstance(fix_result, SubagentFailure):
                return finish(False, last=verdict, failure=fix_result)
            current = fix_result.artifact
            attempt += 1
            if on_progress is not None:
                on_progress(ReviewProgress(stage_name, attempt, current))


def _parse_verdict(raw: JSONValue) -> ReviewVerdict:
    if not isinstance(raw, Mapping):
        raise ValueError(f"ReviewVerdict: expected object, got {type(raw).__name__}")
    return ReviewVerdict.from_dict(raw)


__all__ = ["BlockedCallback", "ProgressCallback", "ReviewLoopController", "ReviewOutcome"]
