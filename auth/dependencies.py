"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one method is accepted: Authorization: Bearer <access token>. The token
is resolved through AuthService.authenticate(), which checks the signature,
expiry and the live token_version, so a banned user's token stops working on
the very next request.

get_current_user() raises the domain error (TokenExpired,
InvalidCredentials, ...) and lets the api/ exception handler render it.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: no imports from core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidCredentials
from auth.models import User


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise InvalidCredentials("Authentication required.")
    return request.app.state.auth_service.authenticate(token)


def require_admin(request: Request) -> User:
    """Require admin role. Raises 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
