"""Stage table and run context: the registry, the context store, and definitions."""

from delivery_pipeline.pipeline.context_store import ContextStore
from delivery_pipeline.pipeline.definitions import (
    DEFAULT_PIPELINE_NAME,
    default_pipeline,
    dump_pipeline_definition,
    load_pipeline_definition,
)
from delivery_pipeline.pipeline.registry import StageRegistry

__all__ = [
    "ContextStore",
    "DEFAULT_PIPELINE_NAME",
    "StageRegistry",
    "default_pipeline",
    "dump_pipeline_definition",
    "load_pipeline_definition",
]
