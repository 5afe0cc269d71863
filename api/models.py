"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response uses the same envelope:
    {"error": bool, "message": str, "data": <optional payload>}

Secrets that never leave the server: the user's password digest and the
token's SHA-256 digest have no field here.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Token, User, UserSummary
from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response wrapper. data is omitted from the JSON when None."""

    error: bool = False
    message: str = ""
    data: Optional[Any] = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Request models
#
# Passwords are never whitespace-stripped: " pw " must hash and verify as
# typed on every path (API login, API create/reset, CLI). Emails, names and
# tokens are stripped per field.
# ---------------------------------------------------------------------------


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes in UTF-8")
    return value


Password = Annotated[str, Field(min_length=1), AfterValidator(_check_password_bytes)]
LoginEmail = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
Email = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=255)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255)]


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: LoginEmail
    password: Password


class TokenRequest(BaseModel):
    """Body for POST /users/logout and POST /validate-token."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    token: str = Field(max_length=255)


class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Email
    password: Password
    first_name: Name = ""
    last_name: Name = ""
    active: bool = True


class UserPatch(BaseModel):
    """All fields optional; only the ones provided are updated."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    active: Optional[bool] = None


class PasswordReset(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: Password


# ---------------------------------------------------------------------------
# Response payloads
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        """Factory Method -- the mapping lives here, colocated with the output model."""
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            active=user.active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListRow(UserOut):
    has_active_token: bool

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserListRow":
        base = UserOut.from_user(summary.user).model_dump()
        return cls(**base, has_active_token=summary.has_active_token)


class TokenOut(BaseModel):
    """The issued token. token is the bearer value, returned only at login."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    email: str
    token: str
    created_at: datetime
    updated_at: datetime
    expiry: datetime

    @classmethod
    def from_token(cls, token: Token) -> "TokenOut":
        return cls(
            id=token.id,
            user_id=token.user_id,
            email=token.email,
            token=token.token,
            created_at=token.created_at,
            updated_at=token.updated_at,
            expiry=token.expiry,
        )


class SessionOut(BaseModel):
    """A stored session as seen by an administrator. The bearer value is not included."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    created_at: datetime
    expiry: datetime
    expired: bool

    @classmethod
    def from_token(cls, token: Token, now: datetime) -> "SessionOut":
        return cls(
            id=token.id,
            user_id=token.user_id,
            created_at=token.created_at,
            expiry=token.expiry,
            expired=now >= token.expiry,
        )


class LoginData(BaseModel):
    token: TokenOut
    user: UserOut


class HealthResponse(BaseModel):
    """Liveness payload. components reports each dependency as "ok" or "error"."""

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
