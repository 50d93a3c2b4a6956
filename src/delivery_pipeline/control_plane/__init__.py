"""Control-plane public API."""

from delivery_pipeline.control_plane.gate import GateController, GateDecision, GateState
from delivery_pipeline.control_plane.review_loop import ReviewLoopController, ReviewOutcome
from delivery_pipeline.control_plane.run_store import InMemoryRunStore, RunStore
from delivery_pipeline.control_plane.supervisor import RunSupervisor

__all__ = [
    "GateController",
    "GateDecision",
    "GateState",
    "InMemoryRunStore",
    "ReviewLoopController",
    "ReviewOutcome",
    "RunStore",
    "RunSupervisor",
]
