"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and the service do the work.

Credential typing:
  PasswordDigest is the only type a stored password may have. NewUser.password
  is plaintext input and is never handed to a store -- the service hashes it
  first. Keeping the two apart in the type system means a plaintext password
  cannot end up in the password_digest column by accident.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import NewType

PasswordDigest = NewType("PasswordDigest", str)


@dataclass
class User:
    """An account that can log in with email + password.

    email is the sole login key (UNIQUE in the users table). active=False blocks
    every authentication path regardless of password or token correctness.
    """

    email: str
    password_digest: PasswordDigest
    first_name: str = ""
    last_name: str = ""
    active: bool = True
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class NewUser:
    """Registration input. password is plaintext and is never persisted."""

    email: str
    password: str
    first_name: str = ""
    last_name: str = ""
    active: bool = True


@dataclass
class UserSummary:
    """A user row plus whether it currently holds an unexpired token."""

    user: User
    has_active_token: bool = False


@dataclass
class Token:
    """An opaque bearer token issued at login.

    Security design:
    - token is 26 base-32 characters (128 bits from the OS CSPRNG). It is
      returned to the client once, at issuance, and afterwards only used as a
      lookup key.
    - token_digest is SHA-256(token). The store looks rows up by digest.
    - email is denormalized from the owning user at insert time.
    """

    user_id: int
    token: str
    token_digest: bytes = field(repr=False)
    expiry: datetime
    email: str = ""
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class LoginResult:
    """What a successful login hands back: the fresh token and its owner."""

    token: Token
    user: User
