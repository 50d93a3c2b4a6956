"""
delivery-pipeline: human-in-the-loop delivery pipeline orchestrator.

A run moves a feature request through an ordered table of stages. Automatic
stages invoke a subagent role, gated stages pause for a human decision, and
the review stage loops reviewer and fixer until the work passes or the attempt
ceiling is reached. The package root stays import-light: no config loading
and no logging setup happen at import time.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
