"""Module entrypoint for ``python -m delivery_pipeline``."""

from __future__ import annotations

from delivery_pipeline.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
