"""
Synthesis plane: subagent roles and the invoker that calls them.

Every subagent is reached through ``SubagentInvoker.invoke``, which enforces the
per-call deadline and turns any failure into a ``SubagentFailure`` value.
"""

from delivery_pipeline.synthesis_plane.roles import (
    DEFAULT_ROLE_NAMES,
    SUBAGENTS_ATTRIBUTE,
    Subagent,
    SubagentRegistry,
    SubagentRole,
)
from delivery_pipeline.synthesis_plane.invoker import (
    FailureKind,
    SubagentFailure,
    SubagentInvoker,
    SubagentResult,
    SubagentSuccess,
    SubagentTask,
)

__all__ = [
    "DEFAULT_ROLE_NAMES",
    "FailureKind",
    "SUBAGENTS_ATTRIBUTE",
    "Subagent",
    "SubagentFailure",
    "SubagentInvoker",
    "SubagentRegistry",
    "SubagentResult",
    "SubagentRole",
    "SubagentSuccess",
    "SubagentTask",
]
