"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

One auth method: the "Authorization: Bearer <token>" header carrying an opaque
session token issued by POST /api/v1/users/login.

get_auth_service() returns the AuthenticationService the lifespan placed on
app.state -- routes receive it by injection, never through module state.
get_current_user() runs AuthenticationService.authenticate() on the header.
It lets AuthError propagate; the exception handler in api/main.py turns it
into a 401 envelope with a generic message, and logs the specific kind.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User
from auth.service import AuthenticationService


def get_auth_service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def get_current_user(request: Request) -> User:
    """Require a valid bearer token. Raises AuthError if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    service = get_auth_service(request)
    return service.authenticate(request.headers.get("Authorization"))
