"""
api/routes/v1/auth.py -- Session and user management REST endpoints.

Routes:
  POST   /api/v1/users/login              -- password login; returns token + user
  POST   /api/v1/users/logout             -- delete a token; idempotent
  POST   /api/v1/validate-token           -- {"token"} -> data: bool
  GET    /api/v1/users/me                 -- current user (requires auth)
  GET    /api/v1/users                    -- list users with session flag (requires auth)
  POST   /api/v1/users                    -- create user (requires auth)
  GET    /api/v1/users/{id}               -- one user (requires auth)
  PATCH  /api/v1/users/{id}               -- update email/names/active (requires auth)
  DELETE /api/v1/users/{id}               -- delete user and its tokens (requires auth)
  POST   /api/v1/users/{id}/password      -- reset password (requires auth)
  GET    /api/v1/users/{id}/tokens        -- list sessions, no bearer values (requires auth)
  DELETE /api/v1/users/{id}/tokens        -- revoke all sessions (requires auth)

Security:
  [H2] POST /users/login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthenticationService.login() runs bcrypt even for unknown emails.
  [M4] PATCH/DELETE block self-deactivation and self-deletion.
  [M5] Cache-Control: no-store on login responses.

Failures are raised, not returned: AuthError / StorageError propagate to the
exception handlers in api/main.py, which classify them and render the envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    Envelope,
    LoginData,
    LoginRequest,
    PasswordReset,
    SessionOut,
    TokenOut,
    TokenRequest,
    UserCreate,
    UserListRow,
    UserOut,
    UserPatch,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import InvalidInputError
from auth.models import NewUser, User
from auth.service import AuthenticationService
from auth.tokens import utcnow

# Auth policy:
# - POST   /api/v1/users/login:        public -- login endpoint must be unauthenticated
# - POST   /api/v1/users/logout:       public -- the token in the body is the credential
# - POST   /api/v1/validate-token:     public -- yes/no answer, no user data
# - everything else:                  requires a bearer token (get_current_user)
router = APIRouter()


def _envelope(status_code: int, message: str = "", data=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=Envelope(message=message, data=data).to_json())


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/users/login")
def login(
    request: Request,
    body: LoginRequest,
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password; return a fresh 26-character token.

    Wrong email, wrong password and inactive account all produce the same
    401 body. The specific reason is only logged.
    """
    result = service.login(body.email, body.password)
    payload = LoginData(token=TokenOut.from_token(result.token), user=UserOut.from_user(result.user))
    resp = _envelope(200, "logged in", payload.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/users/logout")
def logout(body: TokenRequest, service: AuthenticationService = Depends(get_auth_service)) -> JSONResponse:
    """Delete the given token. Succeeds even if it was already gone."""
    service.logout(body.token)
    return _envelope(200, "logged out")


@router.post("/validate-token")
def validate_token(body: TokenRequest, service: AuthenticationService = Depends(get_auth_service)) -> JSONResponse:
    """Return data=true if the token exists, is unexpired, and its owner is active."""
    return _envelope(200, data=service.validate_token(body.token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/users/me")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the user the bearer token belongs to."""
    return _envelope(200, data=UserOut.from_user(current_user).model_dump(mode="json"))


@router.get("/users")
def list_users(
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    rows = [UserListRow.from_summary(s).model_dump(mode="json") for s in service.list_users()]
    return _envelope(200, data=rows)


@router.post("/users", status_code=201)
def create_user(
    body: UserCreate,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    """Create an account. A taken email yields 409 (duplicate value)."""
    user = service.register_user(
        NewUser(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            active=body.active,
        )
    )
    return _envelope(201, "user created", UserOut.from_user(user).model_dump(mode="json"))


@router.get("/users/{user_id}")
def get_user(
    user_id: int,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    return _envelope(200, data=UserOut.from_user(service.get_user(user_id)).model_dump(mode="json"))


@router.patch("/users/{user_id}")
def update_user(
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    """Update email, names or active flag. Deactivation locks out all of the user's tokens."""
    updates = body.model_dump(exclude_none=True)
    # [M4] Block self-deactivation
    if updates.get("active") is False and user_id == current_user.id:
        raise InvalidInputError("You cannot deactivate your own account.")
    user = service.update_user(user_id, **updates)
    return _envelope(200, "user updated", UserOut.from_user(user).model_dump(mode="json"))


@router.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    # [M4] Block self-deletion
    if user_id == current_user.id:
        raise InvalidInputError("You cannot delete your own account.")
    service.delete_user(user_id)
    return _envelope(200, "user deleted")


@router.post("/users/{user_id}/password")
def reset_password(
    user_id: int,
    body: PasswordReset,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    service.reset_password(user_id, body.password)
    return _envelope(200, "password reset")


@router.delete("/users/{user_id}/tokens")
def revoke_sessions(
    user_id: int,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    """Log the user out everywhere. Returns how many tokens were deleted."""
    removed = service.revoke_all_sessions(user_id)
    return _envelope(200, "sessions revoked", {"revoked": removed})


@router.get("/users/{user_id}/tokens")
def list_sessions(
    user_id: int,
    current_user: User = Depends(get_current_user),
    service: AuthenticationService = Depends(get_auth_service),
) -> JSONResponse:
    """List the user's sessions, newest first. Bearer values are never returned here."""
    now = utcnow()
    rows = [SessionOut.from_token(t, now).model_dump(mode="json") for t in service.list_sessions(user_id)]
    return _envelope(200, data=rows)
