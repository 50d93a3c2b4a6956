"""SQLite file holding pipeline definitions, runs, artifacts and stage events.

Every call opens a short-lived connection in WAL mode with foreign keys on.
Lock contention is retried with exponential backoff. Integrity violations
(CHECK constraints, append-only triggers) propagate as ``sqlite3.IntegrityError``
so repositories can translate them. Anything else becomes a ``StateDBError``.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, TypeVar

from delivery_pipeline.constants import STATE_DB_SCHEMA_VERSION
from delivery_pipeline.domain.models import TERMINAL_RUN_STATUSES, RunStatus, StageOutcome

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = SQLValue

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_T = TypeVar("_T")


class StateDBError(RuntimeError):
    """Base class for state DB failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to the version this code expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged or foreign file."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def _quoted(values: Iterable[str]) -> str:
    return ", ".join(f"'{value}'" for value in sorted(values))


def _forbid(table: str, action: str, message: str, *, when: str = "") -> str:
    return (
        f"CREATE TRIGGER IF NOT EXISTS {table}_no_{action.lower()} "
        f"BEFORE {action} ON {table} {when}"
        f"BEGIN SELECT RAISE(ABORT, '{message}'); END"
    )


def _append_only(table: str) -> tuple[str, str]:
    return (
        _forbid(table, "UPDATE", f"{table} is append-only"),
        _forbid(table, "DELETE", f"{table} is append-only"),
    )


_SCHEMA_VERSIONS_DDL: Final[str] = (
    "CREATE TABLE IF NOT EXISTS schema_versions ("
    " version INTEGER PRIMARY KEY CHECK (version > 0),"
    " name TEXT NOT NULL,"
    " checksum TEXT NOT NULL CHECK (length(checksum) = 64),"
    " applied_at TEXT NOT NULL)"
)

_RUN_STATE_SCHEMA: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_DDL,
    # Definitions are content-addressed: ref is the sha256 of their canonical JSON.
    "CREATE TABLE IF NOT EXISTS pipelines ("
    " ref TEXT PRIMARY KEY CHECK (length(ref) = 64),"
    " name TEXT NOT NULL,"
    " definition_json TEXT NOT NULL,"
    " created_at TEXT NOT NULL)",
    *_append_only("pipelines"),
    "CREATE TABLE IF NOT EXISTS runs ("
    " id TEXT PRIMARY KEY,"
    " pipeline_ref TEXT NOT NULL REFERENCES pipelines(ref),"
    " pipeline_name TEXT NOT NULL,"
    f" status TEXT NOT NULL CHECK (status IN ({_quoted(s.value for s in RunStatus)})),"
    " current_stage_index INTEGER NOT NULL CHECK (current_stage_index >= 0),"
    " state_json TEXT NOT NULL,"
    " created_at TEXT NOT NULL,"
    " updated_at TEXT NOT NULL)",
    "CREATE INDEX IF NOT EXISTS idx_runs_status_updated ON runs(status, updated_at DESC)",
    _forbid(
        "runs",
        "UPDATE",
        "runs: terminal runs are immutable",
        when=f"WHEN OLD.status IN ({_quoted(s.value for s in TERMINAL_RUN_STATUSES)}) ",
    ),
    "CREATE TABLE IF NOT EXISTS artifacts ("
    " run_id TEXT NOT NULL REFERENCES runs(id),"
    " key TEXT NOT NULL,"
    " version INTEGER NOT NULL CHECK (version > 0),"
    " produced_by_stage TEXT NOT NULL,"
    " payload_json TEXT NOT NULL,"
    " created_at TEXT NOT NULL,"
    " PRIMARY KEY (run_id, key, version))",
    *_append_only("artifacts"),
    "CREATE TABLE IF NOT EXISTS stage_events ("
    " run_id TEXT NOT NULL REFERENCES runs(id),"
    " sequence INTEGER NOT NULL CHECK (sequence > 0),"
    " stage_name TEXT NOT NULL,"
    " attempt_number INTEGER NOT NULL CHECK (attempt_number > 0),"
    f" outcome TEXT NOT NULL CHECK (outcome IN ({_quoted(o.value for o in StageOutcome)})),"
    " artifact_ref TEXT,"
    " note TEXT,"
    " recorded_at TEXT NOT NULL,"
    " PRIMARY KEY (run_id, sequence))",
    *_append_only("stage_events"),
)


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}".encode())
        for statement in self.statements:
            digest.update(b"\x00")
            digest.update(" ".join(statement.split()).encode("utf-8"))
        return digest.hexdigest()


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(1, "initial_run_state_schema", _RUN_STATE_SCHEMA),
)

# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for name in ("SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_BUSY_SNAPSHOT", "SQLITE_LOCKED")
    if isinstance(code := getattr(sqlite3, name, None), int)
)
_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for name in ("SQLITE_CORRUPT", "SQLITE_NOTADB")
    if isinstance(code := getattr(sqlite3, name, None), int)
)
_BUSY_MESSAGES: Final[tuple[str, ...]] = ("database is locked", "table is locked", "schema is locked")
_CORRUPTION_MESSAGES: Final[tuple[str, ...]] = ("malformed", "file is not a database")


def _matches(exc: sqlite3.Error, codes: frozenset[int], fragments: tuple[str, ...]) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in codes:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in fragments)


def _is_busy(exc: sqlite3.Error) -> bool:
    return _matches(exc, _BUSY_CODES, _BUSY_MESSAGES)


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class StateDB:
    """Run-state database at ``path``."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retry_limit = busy_retry_limit
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    # -- connections and transactions ---------------------------------------

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            mode = self._run("enable WAL", lambda: conn.execute("PRAGMA journal_mode=WAL").fetchone())
            if mode is None or str(mode[0]).lower() != "wal":
                raise StateDBError(f"{self._path}: journal_mode must be WAL, got {mode!r}")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None, immediate: bool = True
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block; nested calls on the same connection use a savepoint."""

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit, rollback = (
                f"SAVEPOINT {name}",
                f"RELEASE SAVEPOINT {name}",
                f"ROLLBACK TO SAVEPOINT {name}; RELEASE SAVEPOINT {name}",
            )
        else:
            begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"
            commit, rollback = "COMMIT", "ROLLBACK"

        self._statement(conn, begin, ())
        try:
            yield conn
        except BaseException:
            for statement in rollback.split("; "):
                self._statement(conn, statement, ())
            raise
        self._statement(conn, commit, ())

    # -- statements ---------------------------------------------------------

    def execute(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run one statement and return the affected row count."""

        if conn is not None:
            return self._statement(conn, sql, params).rowcount
        with self.transaction() as tx:
            return self._statement(tx, sql, params).rowcount

    def executemany(
        self,
        sql: str,
        rows: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(row) for row in rows]
        if conn is not None:
            return self._run(sql, lambda: conn.executemany(sql, batch)).rowcount
        with self.transaction() as tx:
            return self._run(sql, lambda: tx.executemany(sql, batch)).rowcount

    def query_all(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            return [dict(row) for row in self._statement(conn, sql, params).fetchall()]
        with self.connection() as owned:
            return [dict(row) for row in self._statement(owned, sql, params).fetchall()]

    def query_one(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    # -- schema -------------------------------------------------------------

    def migrate(self) -> int:
        """Bring the file up to ``STATE_DB_SCHEMA_VERSION``; safe to call repeatedly."""

        known = {migration.version: migration for migration in MIGRATIONS}
        if sorted(known) != list(range(1, STATE_DB_SCHEMA_VERSION + 1)):
            raise StateDBMigrationError(
                f"migrations {sorted(known)} do not cover schema versions 1..{STATE_DB_SCHEMA_VERSION}"
            )

        with self.connection() as conn:
            self._statement(conn, _SCHEMA_VERSIONS_DDL, ())
            applied = self._applied(conn)
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"{self._path}: schema version {newest} is newer than supported "
                    f"({STATE_DB_SCHEMA_VERSION})"
                )
            for version, migration in sorted(known.items()):
                record = applied.get(version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"{self._path}: checksum mismatch for migration {version} "
                            f"({migration.name})"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._statement(tx, statement, ())
                    self._statement(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (version, migration.name, migration.checksum, _utc_now_iso()),
                    )
            row = self._statement(
                conn, "SELECT COALESCE(MAX(version), 0) FROM schema_versions", ()
            ).fetchone()
        return int(row[0])

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return [record for _, record in sorted(self._applied(conn).items())]

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Problems reported by ``PRAGMA integrity_check``; empty when healthy."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        messages = tuple(
            str(next(iter(row.values())))
            for row in self.query_all(f"PRAGMA integrity_check({max_errors})")
        )
        return () if messages == ("ok",) else messages

    # -- internals ----------------------------------------------------------

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self._statement(
            conn, "SELECT version, name, checksum, applied_at FROM schema_versions", ()
        ).fetchall()
        return {
            int(row["version"]): MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        }

    def _statement(self, conn: sqlite3.Connection, sql: str, params: SQLParams) -> sqlite3.Cursor:
        return self._run(sql, lambda: conn.execute(sql, tuple(params)))

    def _run(self, operation: str, call: Callable[[], _T]) -> _T:
        for attempt in itertools.count():
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _is_busy(exc) and attempt < self._retry_limit:
                    time.sleep(self._backoff_seconds * (2**attempt))
                    continue
                raise self._translate(exc, operation, attempts=attempt + 1) from exc
        raise AssertionError("unreachable")

    def _translate(self, exc: sqlite3.Error, operation: str, *, attempts: int) -> StateDBError:
        summary = " ".join(operation.split())[:80]
        if _matches(exc, _CORRUPTION_CODES, _CORRUPTION_MESSAGES):
            return StateDBCorruptionError(
                f"{self._path} looks damaged ({exc}); run integrity_check() or restore a copy"
            )
        if _is_busy(exc):
            return StateDBBusyError(f"{self._path} still locked after {attempts} attempt(s): {exc}")
        return StateDBError(f"{summary!r} failed on {self._path}: {exc}")


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for stored payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
