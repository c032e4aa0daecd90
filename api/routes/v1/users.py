"""
api/routes/v1/users.py -- Administrative account status endpoints.

Routes:
  POST /api/v1/users/{user_id}/ban         -- block account, end all sessions
  POST /api/v1/users/{user_id}/deactivate  -- soft-deactivate, end all sessions
  POST /api/v1/users/{user_id}/delete      -- terminal delete, end all sessions

All routes require admin (require_admin). Transitions the status table does
not allow (e.g. un-banning) answer 409 invalid_transition.

[M4] An admin cannot change their own status through these routes; losing
the last admin this way would leave no recovery path without DB access.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import UserStatusResponse
from auth.dependencies import require_admin
from auth.models import User

logger = logging.getLogger("sessiontrust.api.users")

router = APIRouter()


def _guard_self(user_id: str, admin: User) -> None:
    if user_id == admin.id:  # [M4]
        raise HTTPException(
            status_code=400,
            detail={"code": "self_status_change", "message": "You cannot change the status of your own account."},
        )


def _respond(user: User) -> UserStatusResponse:
    return UserStatusResponse(user_id=user.id, status=user.status.value)


@router.post("/users/{user_id}/ban", response_model=UserStatusResponse)
def ban_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> UserStatusResponse:
    """Block the account. Every access and refresh token it holds stops working."""
    _guard_self(user_id, current_user)
    user = request.app.state.auth_service.ban(user_id)
    logger.info("Admin %s banned user %s", current_user.id, user_id)
    return _respond(user)


@router.post("/users/{user_id}/deactivate", response_model=UserStatusResponse)
def deactivate_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> UserStatusResponse:
    _guard_self(user_id, current_user)
    user = request.app.state.auth_service.deactivate(user_id)
    logger.info("Admin %s deactivated user %s", current_user.id, user_id)
    return _respond(user)


@router.post("/users/{user_id}/delete", response_model=UserStatusResponse)
def delete_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> UserStatusResponse:
    """Terminal. The row is kept with status deleted; it can never sign in again."""
    _guard_self(user_id, current_user)
    user = request.app.state.auth_service.delete(user_id)
    logger.info("Admin %s deleted user %s", current_user.id, user_id)
    return _respond(user)
