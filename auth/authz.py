"""
auth/authz.py -- Authorization engine.

authorize() answers one question: do these verified claims grant this scope?
It is pure and deterministic (no I/O, no shared mutable state), so it runs on
every protected request without contention.

Fail-closed rules: an unknown role, a malformed scope string, or claims with
no role all produce DENIED. None of them raise.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from auth.errors import AuthorizationError
from auth.models import TokenClaims
from auth.roles import Permission, RoleGraph

logger = logging.getLogger("gatekeeper.auth.authz")


class Decision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"

    def __bool__(self) -> bool:
        return self is Decision.GRANTED


def _role_of(claims: TokenClaims | Mapping[str, Any] | None) -> str | None:
    if isinstance(claims, TokenClaims):
        return claims.role
    if isinstance(claims, Mapping):
        role = claims.get("role")
        return role if isinstance(role, str) else None
    return None


def authorize(claims: TokenClaims | Mapping[str, Any] | None, required_scope: str, graph: RoleGraph) -> Decision:
    """Decide whether claims grant required_scope under graph.

    The role in claims is expanded to its effective permission set (own plus
    all ancestors), then checked for a permission on the same resource whose
    action is at least the required one.
    """
    try:
        required = Permission.parse(required_scope)
    except ValueError:
        logger.warning("Denied malformed scope %r", required_scope)
        return Decision.DENIED

    role = _role_of(claims)
    if role is None or role not in graph:
        logger.info("Denied %s for unknown role %r", required, role)
        return Decision.DENIED

    if graph.grants(role, required):
        return Decision.GRANTED
    logger.debug("Denied %s for role %r", required, role)
    return Decision.DENIED


def require(claims: TokenClaims | Mapping[str, Any] | None, required_scope: str, graph: RoleGraph) -> None:
    """Raise AuthorizationError unless claims grant required_scope."""
    if authorize(claims, required_scope, graph) is not Decision.GRANTED:
        raise AuthorizationError(detail=f"Requires scope {required_scope}")
