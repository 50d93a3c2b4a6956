"""Process entrypoint: runs the CLI and turns whatever escapes it into an exit code."""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator, Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    RUN_ABORTED = 1
    CONFIG_ERROR = 2
    SUBAGENT_ERROR = 3
    INTERNAL_ERROR = 4


_KNOWN_CODES = frozenset(int(code) for code in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Used by ``python -m delivery_pipeline`` and the ``delivery-pipeline`` script."""

    try:
        from delivery_pipeline.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(f"error: {str(exc).strip() or type(exc).__name__}", file=sys.stderr)
        return int(code)


def console_script() -> None:
    raise SystemExit(cli_entrypoint())


def classify_exception(exc: BaseException) -> ExitCode:
    """Exit code for ``exc``, looking through its ``__cause__``/``__context__`` chain."""

    from delivery_pipeline.config import ConfigLoadError, ConfigValidationError
    from delivery_pipeline.domain.errors import ConfigError, TransientInvocationError

    config_failures = (
        ConfigError,
        ConfigLoadError,
        ConfigValidationError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
        ValueError,
    )
    for link in _chain(exc):
        if isinstance(link, config_failures):
            return ExitCode.CONFIG_ERROR
        if isinstance(link, TransientInvocationError):
            return ExitCode.SUBAGENT_ERROR
    return ExitCode.INTERNAL_ERROR


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        link = link.__cause__ or (None if link.__suppress_context__ else link.__context__)


def _as_exit_code(value: object) -> int:
    if value is None:
        return ExitCode.SUCCESS
    if isinstance(value, int) and value in _KNOWN_CODES:
        return value
    if isinstance(value, str) and value.strip():
        print(value.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint", "console_script"]
