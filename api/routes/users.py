"""
api/routes/users.py -- User directory and admin user management.

Routes:
  GET    /users            -- list active users          (users:admin)
  GET    /users/{id}       -- one user                   (users:read)
  PATCH  /users/{id}/role  -- change a user's role       (users:admin)
  DELETE /users/{id}       -- soft delete + revoke all   (users:admin)

Security:
  [M4] Admins cannot change their own role or delete themselves, so the last
       admin cannot lock everyone out by accident.
  A role change takes effect at the user's next refresh: access tokens already
  issued keep their role claim until they expire.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.models import RoleUpdate, UserResponse
from auth.dependencies import require_scope
from auth.errors import ConflictError, UserNotFound, ValidationError
from auth.models import TokenClaims, User

logger = logging.getLogger("gatekeeper.api.users")

router = APIRouter()


def _live_user(request: Request, user_id: int) -> User:
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None or user.deleted_at is not None:
        raise UserNotFound()
    return user


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, claims: TokenClaims = Depends(require_scope("users:admin"))) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in request.app.state.user_store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    claims: TokenClaims = Depends(require_scope("users:read")),
) -> UserResponse:
    return UserResponse.from_user(_live_user(request, user_id))


@router.patch("/users/{user_id}/role", response_model=UserResponse)
def update_role(
    request: Request,
    user_id: int,
    body: RoleUpdate,
    claims: TokenClaims = Depends(require_scope("users:admin")),
) -> UserResponse:
    """Assign a role defined in the role graph. Unknown roles are rejected (422)."""
    if body.role not in request.app.state.role_graph:
        raise ValidationError(f"Unknown role {body.role!r}.")
    if user_id == claims.user_id:
        raise ConflictError("You cannot change your own role.")  # [M4]
    user = _live_user(request, user_id)

    user_store = request.app.state.user_store
    user_store.update_user(user.id, role=body.role)
    logger.info("User %s changed role of user %s: %s -> %s", claims.user_id, user.id, user.role, body.role)
    return UserResponse.from_user(user_store.get_by_id(user.id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    claims: TokenClaims = Depends(require_scope("users:admin")),
) -> Response:
    """Soft-delete a user and revoke every refresh token they hold.

    Outstanding access tokens stay valid until their short expiry.
    """
    if user_id == claims.user_id:
        raise ConflictError("You cannot delete your own account.")  # [M4]
    if not request.app.state.user_store.soft_delete_user(user_id):
        raise UserNotFound()
    request.app.state.authority.revoke_all_for_user(user_id, "user_deleted")
    logger.info("User %s deleted user %s", claims.user_id, user_id)
    return Response(status_code=204)
