"""Stable constants shared across pipeline planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
PIPELINE_DEFINITION_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Review loop ceiling used when neither config nor the stage overrides it.
DEFAULT_MAX_REVIEW_ATTEMPTS: Final[int] = 3
DEFAULT_SUBAGENT_TIMEOUT_SECONDS: Final[float] = 300.0

# Artifact key holding the run's initial input; no stage may produce it.
INPUT_ARTIFACT_KEY: Final[str] = "input"
ARTIFACT_VERSION_SEPARATOR: Final[str] = "@v"

# Longest free text (notes, abort reasons) a run record accepts.
MAX_TEXT_LENGTH: Final[int] = 8192

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

__all__ = [
    "ARTIFACT_VERSION_SEPARATOR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_REVIEW_ATTEMPTS",
    "DEFAULT_SUBAGENT_TIMEOUT_SECONDS",
    "INPUT_ARTIFACT_KEY",
    "LOG_DIR",
    "MAX_TEXT_LENGTH",
    "PIPELINE_DEFINITION_SCHEMA_VERSION",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
