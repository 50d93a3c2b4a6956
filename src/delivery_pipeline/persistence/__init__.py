"""Persistence layer: the SQLite state DB, its repositories, and the durable run store."""

from delivery_pipeline.persistence.repositories import (
    ArtifactRepo,
    PipelineRepo,
    RunRepo,
    SQLiteRunStore,
    StageEventRepo,
)
from delivery_pipeline.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "ArtifactRepo",
    "PipelineRepo",
    "RunRepo",
    "SQLiteRunStore",
    "StageEventRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
