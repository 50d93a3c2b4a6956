"""Structured logging: structlog events rendered by stdlib handlers.

Modules log with ``structlog.get_logger(__name__)``. ``configure_logging``
attaches handlers to the ``delivery_pipeline`` stdlib logger; each handler
renders through a ``structlog.stdlib.ProcessorFormatter`` chain that stamps the
record, redacts secrets and writes either a JSON line or a console line.
A JSON copy also goes to ``<log_dir>/pipeline.jsonl`` when a log dir is set.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
EventDict = MutableMapping[str, Any]

LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")
CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "stage", "attempt", "role")

_LOGGER_NAME: Final[str] = "delivery_pipeline"
_MASK: Final[str] = "***REDACTED***"
_SECRET_KEY_PARTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b(\s*[:=]\s*)[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_CONSOLE_FIXED_KEYS: Final[frozenset[str]] = frozenset({"timestamp", "level", "logger", "event"})

_active_lock = threading.Lock()
_active: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings mirrored from the ``[observability]`` config section."""

    level: int | str = "INFO"
    log_format: str = "json"
    log_dir: Path | str | None = None
    log_filename: str = "pipeline.jsonl"
    log_to_stderr: bool = True
    redact_secrets: bool = True

    @classmethod
    def from_mapping(cls, section: Mapping[str, object]) -> LoggingConfig:
        level = section.get("log_level", "INFO")
        log_format = section.get("log_format", "json")
        log_dir = section.get("log_dir")
        return cls(
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format=log_format if isinstance(log_format, str) else "json",
            log_dir=log_dir if isinstance(log_dir, (str, Path)) else None,
            redact_secrets=bool(section.get("redact_secrets", True)),
        )


class LoggingHandle:
    """Handlers installed by one ``configure_logging`` call."""

    def __init__(
        self, logger: logging.Logger, handlers: tuple[logging.Handler, ...], log_path: Path | None
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._handlers = handlers
        self._closed = threading.Event()

    @property
    def is_shutdown(self) -> bool:
        return self._closed.is_set()

    def flush(self) -> None:
        for handler in self._handlers:
            handler.flush()

    def shutdown(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.flush()
            handler.close()


def configure_logging(config: LoggingConfig | None = None) -> LoggingHandle:
    """Install handlers for ``config`` and point structlog at them.

    Any handle from an earlier call is shut down first.
    """

    settings = config or LoggingConfig()
    level = _level_number(settings.level)
    if settings.log_format not in LOG_FORMATS:
        raise ValueError(
            f"unsupported log format {settings.log_format!r}; expected one of {LOG_FORMATS}"
        )
    redactor = default_log_redactor if settings.redact_secrets else None

    handlers: list[logging.Handler] = []
    log_path: Path | None = None
    if settings.log_dir is not None:
        log_path = Path(settings.log_dir) / _plain_filename(settings.log_filename)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_handler(logging.FileHandler(log_path, encoding="utf-8"), "json", redactor))
    if settings.log_to_stderr:
        handlers.append(_handler(logging.StreamHandler(), settings.log_format, redactor))

    _replace_active(None)
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handle = LoggingHandle(logger, tuple(handlers), log_path)
    _replace_active(handle)
    return handle


def shutdown_logging() -> None:
    """Close the active handlers and restore structlog defaults."""

    _replace_active(None)
    structlog.reset_defaults()


def get_active_logging_handle() -> LoggingHandle | None:
    with _active_lock:
        return _active


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind ``run_id``/``stage``/... to every event logged inside the block; ``None`` is skipped."""

    bound: dict[str, str] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"correlation value for {key!r} must be a non-empty string")
        bound[key] = value.strip()
    tokens = structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def get_correlation_context() -> dict[str, str]:
    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if key in CORRELATION_KEYS and isinstance(value, str)
    }


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys, ``token=...`` pairs and bearer tokens."""

    if isinstance(value, str):
        return _BEARER.sub(f"Bearer {_MASK}", _INLINE_SECRET.sub(rf"\1\2{_MASK}", value))
    if isinstance(value, (list, tuple)):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _MASK
            if any(part in str(key).lower() for part in _SECRET_KEY_PARTS)
            else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


# ---------------------------------------------------------------------------
# Processor chain
# ---------------------------------------------------------------------------


def _handler(handler: logging.Handler, log_format: str, redactor: LogRedactor | None) -> logging.Handler:
    processors: list[Callable[[Any, str, EventDict], Any]] = [
        _stamp_record,
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.format_exc_info,
    ]
    if redactor is not None:
        processors.append(_redacting(redactor))
    if log_format == "json":
        processors.append(
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
            )
        )
    else:
        processors.append(_console_line)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=processors,
            foreign_pre_chain=[structlog.contextvars.merge_contextvars],
        )
    )
    return handler


def _stamp_record(_: Any, __: str, event_dict: EventDict) -> EventDict:
    record: logging.LogRecord | None = event_dict.get("_record")
    if record is not None:
        event_dict["timestamp"] = (
            datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )
        event_dict["level"] = record.levelname
        event_dict["logger"] = record.name
    event_dict["event"] = str(event_dict.get("event", ""))
    return event_dict


def _redacting(redactor: LogRedactor) -> Callable[[Any, str, EventDict], EventDict]:
    def _redact(_: Any, __: str, event_dict: EventDict) -> EventDict:
        masked = redactor(dict(event_dict))
        return masked if isinstance(masked, dict) else event_dict

    return _redact


def _console_line(_: Any, __: str, event_dict: EventDict) -> str:
    extras = " ".join(
        f"{key}={event_dict[key]}" for key in sorted(event_dict) if key not in _CONSOLE_FIXED_KEYS
    )
    line = (
        f"{event_dict.get('timestamp', '')} {str(event_dict.get('level', '')).lower():<7} "
        f"{event_dict['event']}"
    )
    return f"{line} {extras}" if extras else line


def _replace_active(handle: LoggingHandle | None) -> None:
    global _active
    with _active_lock:
        previous, _active = _active, handle
    if previous is not None and previous is not handle:
        previous.shutdown()


def _plain_filename(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("log_filename must be a non-empty string")
    name = name.strip()
    if Path(name).name != name:
        raise ValueError("log_filename must not include path separators")
    return name


def _level_number(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(str(value).strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


__all__ = [
    "CORRELATION_KEYS",
    "LOG_FORMATS",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "shutdown_logging",
]
