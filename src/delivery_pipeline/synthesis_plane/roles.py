"""Subagent roles and the immutable registry mapping role names to implementations.

A subagent is any callable taking a ``SubagentTask`` and returning a JSON value
(directly or via an awaitable). Deployments provide them either programmatically
or through a module exposing a ``SUBAGENTS`` mapping named in ``[subagents].module``.
"""

from __future__ import annotations

import importlib
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, TypeAlias

from delivery_pipeline.domain.errors import ConfigError, RoleUnavailableError

if TYPE_CHECKING:
    from delivery_pipeline.domain.models import JSONValue
    from delivery_pipeline.synthesis_plane.invoker import SubagentTask

ROLE_INTAKE_ANALYST = "intake_analyst"
ROLE_PLANNER = "planner"
ROLE_ARCHITECT = "architect"
ROLE_GIT_OPERATOR = "git_operator"
ROLE_TEST_WRITER = "test_writer"
ROLE_BUILDER = "builder"
ROLE_REVIEWER = "reviewer"
ROLE_DOCUMENTER = "documenter"

DEFAULT_ROLE_NAMES: tuple[str, ...] = (
    ROLE_INTAKE_ANALYST,
    ROLE_PLANNER,
    ROLE_ARCHITECT,
    ROLE_GIT_OPERATOR,
    ROLE_TEST_WRITER,
    ROLE_BUILDER,
    ROLE_REVIEWER,
    ROLE_DOCUMENTER,
)

SUBAGENTS_ATTRIBUTE = "SUBAGENTS"

Subagent: TypeAlias = Callable[["SubagentTask"], "JSONValue | Awaitable[JSONValue]"]


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    if "\x00" in parsed:
        raise ValueError(f"{field_name} must not contain NUL bytes")
    return parsed


@dataclass(frozen=True, slots=True)
class SubagentRole:
    """A role name bound to the callable that plays it."""

    name: str
    handler: Subagent
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "SubagentRole.name"))
        if not callable(self.handler):
            raise ValueError(f"SubagentRole[{self.name}].handler must be callable")


@dataclass(frozen=True, slots=True)
class SubagentRegistry:
    """Immutable role lookup; unknown roles fail with ``RoleUnavailableError``."""

    roles: tuple[SubagentRole, ...] = ()
    _roles_by_name: Mapping[str, SubagentRole] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        role_list = tuple(self.roles)
        lookup: dict[str, SubagentRole] = {}
        for role in role_list:
            if not isinstance(role, SubagentRole):
                raise ValueError("SubagentRegistry.roles entries must be SubagentRole")
            if role.name in lookup:
                raise ValueError(f"duplicate role name: {role.name}")
            lookup[role.name] = role
        object.__setattr__(self, "roles", role_list)
        object.__setattr__(self, "_roles_by_name", MappingProxyType(lookup))

    @classmethod
    def from_mapping(cls, handlers: Mapping[str, Subagent]) -> SubagentRegistry:
        if not isinstance(handlers, Mapping):
            raise ValueError("subagent handlers must be a mapping of role name to callable")
        return cls(
            roles=tuple(
                SubagentRole(name=name, handler=handler)
                for name, handler in sorted(handlers.items())
            )
        )

    @classmethod
    def from_module(cls, dotted_path: str) -> SubagentRegistry:
        """Import ``dotted_path`` and build a registry from its ``SUBAGENTS`` mapping."""

        module_name = _validate_non_empty_str(dotted_path, "subagents.module")
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise ConfigError(f"cannot import subagent module {module_name!r}: {exc}") from exc
        handlers = getattr(module, SUBAGENTS_ATTRIBUTE, None)
        if not isinstance(handlers, Mapping):
            raise ConfigError(
                f"subagent module {module_name!r} must define a {SUBAGENTS_ATTRIBUTE} mapping"
            )
        try:
            return cls.from_mapping(handlers)
        except ValueError as exc:
            raise ConfigError(f"invalid subagent module {module_name!r}: {exc}") from exc

    @classmethod
    def from_config(cls, section: Mapping[str, object] | None) -> SubagentRegistry:
        if section is None:
            return cls()
        module_name = section.get("module")
        if module_name is None:
            return cls()
        if not isinstance(module_name, str):
            raise ConfigError("subagents.module must be a string")
        return cls.from_module(module_name)

    def get(self, role_name: str) -> SubagentRole | None:
        return self._roles_by_name.get(role_name)

    def require(self, role_name: str) -> SubagentRole:
        role = self.get(role_name)
        if role is None:
            raise RoleUnavailableError(role_name)
        return role

    def missing(self, role_names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted({name for name in role_names if name not in self._roles_by_name}))

    def role_names(self) -> tuple[str, ...]:
        return tuple(role.name for role in self.roles)

    def __contains__(self, role_name: object) -> bool:
        return isinstance(role_name, str) and role_name in self._roles_by_name


__all__ = [
    "DEFAULT_ROLE_NAMES",
    "ROLE_ARCHITECT",
    "ROLE_BUILDER",
    "ROLE_DOCUMENTER",
    "ROLE_GIT_OPERATOR",
    "ROLE_INTAKE_ANALYST",
    "ROLE_PLANNER",
    "ROLE_REVIEWER",
    "ROLE_TEST_WRITER",
    "SUBAGENTS_ATTRIBUTE",
    "Subagent",
    "SubagentRegistry",
    "SubagentRole",
]
