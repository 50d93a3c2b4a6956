"""Line-oriented text output for the ``delivery-pipeline`` CLI.

Run statuses get ANSI colour on a TTY unless ``NO_COLOR`` is set or
``--no-color`` was passed. Everything else is plain text.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from typing import Final, TextIO

_STATUS_SGR: Final[dict[str, int]] = {
    "running": 36,
    "blocked_retry": 33,
    "awaiting_approval": 35,
    "completed": 32,
    "aborted": 31,
}


class CLIRenderer:
    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream or sys.stdout
        isatty = getattr(self._stream, "isatty", None)
        self._color = (
            not no_color
            and not os.environ.get("NO_COLOR")
            and callable(isatty)
            and bool(isatty())
        )

    def _emit(self, *lines: str) -> None:
        for line in lines:
            self._stream.write(f"{line}\n")

    def text(self, line: str) -> None:
        self._emit(line)

    def kv(self, key: str, value: object) -> None:
        self._emit(f"{key}: {value}")

    def section(self, title: str) -> None:
        self._emit("", title)

    def warning(self, text: str) -> None:
        self._emit(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        self._emit(*(f"  {prefix}{entry}" for entry in entries))

    def status(self, value: str) -> str:
        code = _STATUS_SGR.get(value)
        if code is None or not self._color:
            return value
        return f"\x1b[{code}m{value}\x1b[0m"

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Aligned columns under ``title``; prints nothing when ``rows`` is empty."""

        if not rows:
            return
        columns = len(headers)
        cells = [list(headers), *([*row[:columns], *[""] * (columns - len(row))] for row in rows)]
        widths = [max(len(line[index]) for line in cells) for index in range(columns)]

        def render(line: Sequence[str]) -> str:
            return "  " + "  ".join(cell.ljust(width) for cell, width in zip(line, widths)).rstrip()

        if title:
            self.section(title)
        self._emit(render(cells[0]), render(["-" * width for width in widths]))
        self._emit(*(render(line) for line in cells[1:]))

    def next_steps(self, commands: Sequence[str]) -> None:
        if commands:
            self.section("Next steps:")
            self._emit(*(f"  $ {command}" for command in commands))


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
