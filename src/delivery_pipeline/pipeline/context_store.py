"""Insertion-only artifact store for one run.

Every write is kept. A key written once can only grow new versions through
``put_revision``; reads by bare key resolve to the latest version, reads by
``key@vN`` resolve to that exact version.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from types import MappingProxyType

from delivery_pipeline.domain.errors import DuplicateArtifactError, MissingArtifactError
from delivery_pipeline.domain.models import ContextEntry, JSONValue, parse_artifact_ref

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ContextStore:
    """Append-only mapping of artifact key to versioned payloads."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock if clock is not None else _utc_now
        self._versions: dict[str, list[ContextEntry]] = {}
        self._order: list[ContextEntry] = []

    @classmethod
    def from_entries(
        cls, entries: Iterable[ContextEntry], *, clock: Clock | None = None
    ) -> ContextStore:
        """Rebuild a store from persisted entries, checking version continuity."""

        store = cls(clock=clock)
        for entry in entries:
            if not isinstance(entry, ContextEntry):
                raise ValueError(f"context entries must be ContextEntry, got {type(entry).__name__}")
            existing = store._versions.setdefault(entry.key, [])
            expected = len(existing) + 1
            if entry.version != expected:
                raise ValueError(
                    f"artifact {entry.key!r}: expected version {expected}, got {entry.version}"
                )
            existing.append(entry)
            store._order.append(entry)
        return store

    def put(self, key: str, artifact: JSONValue, *, produced_by_stage: str) -> ContextEntry:
        if key in self._versions:
            raise DuplicateArtifactError(key)
        return self._append(key, 1, artifact, produced_by_stage)

    def put_revision(
        self, key: str, artifact: JSONValue, *, produced_by_stage: str
    ) -> ContextEntry:
        """Store a new version of an existing key; earlier versions stay readable."""

        existing = self._versions.get(key)
        if not existing:
            raise MissingArtifactError(key)
        return self._append(key, len(existing) + 1, artifact, produced_by_stage)

    def get(self, key: str) -> JSONValue:
        return copy.deepcopy(self.entry(key).payload)

    def entry(self, key_or_ref: str) -> ContextEntry:
        try:
            key, version = parse_artifact_ref(key_or_ref)
        except ValueError as exc:
            raise MissingArtifactError(str(key_or_ref)) from exc
        versions = self._versions.get(key)
        if not versions:
            raise MissingArtifactError(key_or_ref)
        if version is None:
            return versions[-1]
        if version > len(versions):
            raise MissingArtifactError(key_or_ref)
        return versions[version - 1]

    def slice(self, keys: Iterable[str]) -> Mapping[str, JSONValue]:
        """Read-only view holding the latest payload of exactly ``keys``."""

        view: dict[str, JSONValue] = {}
        for key in keys:
            view[key] = self.get(key)
        return MappingProxyType(view)

    def versions(self, key: str) -> tuple[ContextEntry, ...]:
        return tuple(self._versions.get(key, ()))

    def keys(self) -> tuple[str, ...]:
        return tuple(self._versions)

    def snapshot(self) -> tuple[ContextEntry, ...]:
        return tuple(self._order)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in self._versions

    def __len__(self) -> int:
        return len(self._versions)

    def _append(
        self, key: str, version: int, artifact: JSONValue, produced_by_stage: str
    ) -> ContextEntry:
        entry = ContextEntry(
            key=key,
            version=version,
            payload=artifact,
            produced_by_stage=produced_by_stage,
            created_at=self._clock(),
        )
        self._versions.setdefault(key, []).append(entry)
        self._order.append(entry)
        return entry


__all__ = ["Clock", "ContextStore"]
