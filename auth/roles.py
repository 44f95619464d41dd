"""
auth/roles.py -- Role/permission graph.

A role is a named permission bundle with an ordered list of parent roles. The
graph is an explicit DAG: a role's effective permissions are its own plus the
union over all ancestors, computed by traversal at check time. Nothing about
inheritance is stored redundantly.

Permissions are "resource:action" scope strings. Actions form a ladder,
admin > write > read, and a granted action covers every action below it on
the same resource. A granted resource of "*" covers every resource.

The graph is loaded once at startup (load_role_graph) and never mutated.
RoleGraph and Role are frozen; their collections are frozensets and a
read-only mapping, so request handlers can share one instance without locks.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

logger = logging.getLogger("gatekeeper.auth.roles")

# Ordered lowest to highest; a granted action covers every action at or
# below its rank.
ACTION_RANK: Mapping[str, int] = MappingProxyType({"read": 1, "write": 2, "admin": 3})

_SCOPE_RE = re.compile(r"(?P<resource>\*|[a-z][a-z0-9_.-]*):(?P<action>read|write|admin)")

# Built-in hierarchy: user < moderator < admin.
DEFAULT_ROLES: dict[str, dict] = {
    "user": {
        "parents": [],
        "permissions": ["users:read", "profile:write", "sessions:read"],
    },
    "moderator": {
        "parents": ["user"],
        "permissions": ["users:write", "content:admin"],
    },
    "admin": {
        "parents": ["moderator"],
        "permissions": ["users:admin", "roles:admin", "sessions:admin"],
    },
}


@dataclass(frozen=True)
class Permission:
    resource: str
    action: str

    @classmethod
    def parse(cls, scope: str) -> Permission:
        """Parse a "resource:action" string exactly as given. Raises ValueError if malformed."""
        match = _SCOPE_RE.fullmatch(scope) if isinstance(scope, str) else None
        if match is None:
            raise ValueError(f"Malformed scope: {scope!r}")
        return cls(resource=match.group("resource"), action=match.group("action"))

    def covers(self, required: Permission) -> bool:
        """True if holding self satisfies required (action ladder + wildcard)."""
        if self.resource != "*" and self.resource != required.resource:
            return False
        return ACTION_RANK[self.action] >= ACTION_RANK[required.action]

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass(frozen=True)
class Role:
    name: str
    parents: tuple[str, ...]
    permissions: frozenset[Permission]


@dataclass(frozen=True)
class RoleGraph:
    """Immutable role DAG. Build with from_mapping() or load_role_graph()."""

    roles: Mapping[str, Role]

    @classmethod
    def from_mapping(cls, definition: Mapping[str, Mapping]) -> RoleGraph:
        """Build and validate a graph from {name: {"parents": [...], "permissions": [...]}}.

        Raises ValueError on a role entry that is not an object, a malformed
        permission, an unknown parent, or a cycle. These are startup failures:
        a bad role file must stop the service rather than silently granting or
        denying.
        """
        roles: dict[str, Role] = {}
        for name, spec in definition.items():
            if not isinstance(spec, Mapping):
                raise ValueError(f"Role {name!r} must be an object, got {type(spec).__name__}")
            parents = spec.get("parents", ())
            grants = spec.get("permissions", ())
            if isinstance(parents, str) or isinstance(grants, str):
                raise ValueError(f"Role {name!r}: parents and permissions must be lists")
            permissions = frozenset(Permission.parse(p) for p in grants)
            roles[name] = Role(name=name, parents=tuple(parents), permissions=permissions)

        for role in roles.values():
            for parent in role.parents:
                if parent not in roles:
                    raise ValueError(f"Role {role.name!r} inherits from unknown role {parent!r}")

        graph = cls(roles=MappingProxyType(roles))
        graph._check_acyclic()
        return graph

    def _check_acyclic(self) -> None:
        # Iterative DFS with three colors; a grey node reached again is a back edge.
        white, grey, black = 0, 1, 2
        color = {name: white for name in self.roles}
        for start in self.roles:
            if color[start] != white:
                continue
            stack: list[tuple[str, int]] = [(start, 0)]
            color[start] = grey
            while stack:
                name, idx = stack[-1]
                parents = self.roles[name].parents
                if idx < len(parents):
                    stack[-1] = (name, idx + 1)
                    parent = parents[idx]
                    if color[parent] == grey:
                        raise ValueError(f"Role inheritance cycle through {parent!r}")
                    if color[parent] == white:
                        color[parent] = grey
                        stack.append((parent, 0))
                else:
                    color[name] = black
                    stack.pop()

    def __contains__(self, role: object) -> bool:
        return role in self.roles

    def ancestors(self, role: str) -> list[str]:
        """Return role followed by every ancestor, breadth-first, each once."""
        if role not in self.roles:
            return []
        seen: list[str] = []
        queue = [role]
        while queue:
            name = queue.pop(0)
            if name in seen:
                continue
            seen.append(name)
            queue.extend(self.roles[name].parents)
        return seen

    def effective_permissions(self, role: str) -> frozenset[Permission]:
        """Union of the role's own permissions and all ancestors'. Empty if unknown."""
        granted: set[Permission] = set()
        for name in self.ancestors(role):
            granted |= self.roles[name].permissions
        return frozenset(granted)

    def grants(self, role: str, required: Permission) -> bool:
        return any(p.covers(required) for p in self.effective_permissions(role))


def load_role_graph(path: str | None = None) -> RoleGraph:
    """Load the role graph from a JSON file, or the built-in default when path is empty.

    The file has the same shape as DEFAULT_ROLES.
    """
    if not path:
        graph = RoleGraph.from_mapping(DEFAULT_ROLES)
        logger.info("Loaded built-in role graph (%d roles)", len(graph.roles))
        return graph
    definition = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(definition, dict):
        raise ValueError(f"Role config {path!r} must be a JSON object of role definitions")
    graph = RoleGraph.from_mapping(definition)
    logger.info("Loaded role graph from %s (%d roles)", path, len(graph.roles))
    return graph
