"""
auth/tokens.py -- Password hashing, opaque token generation, and bearer parsing.

Security design decisions:
  Passwords: bcrypt, cost factor 12 by default. Bcrypt is the right choice for
       low-entropy secrets (passwords) because its cost factor makes brute-force
       expensive. PasswordHasher.dummy_digest enables timing equalization in
       AuthenticationService.login() so response time does not reveal whether
       an email is registered [C1].

  Session tokens: secrets.token_bytes(16) gives 128 bits of entropy. Base-32
       without padding turns that into exactly 26 characters from A-Z2-7, which
       survives copy/paste and HTTP headers untouched. The store keeps
       SHA-256(token) and looks rows up by that digest. A fast hash is enough
       here: the input is uniformly random, so there is nothing for bcrypt's
       slowness to protect.

  Random source: a failure of the OS CSPRNG raises RandomSourceError. There is
       no fallback to the random module.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from functools import cached_property

import bcrypt

from auth.errors import (
    InvalidInputError,
    MalformedDigestError,
    MalformedHeaderError,
    MalformedTokenError,
    RandomSourceError,
)
from auth.models import PasswordDigest, Token

logger = logging.getLogger("authgate.auth")

TOKEN_BYTES = 16
TOKEN_LENGTH = 26
TOKEN_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")
DEFAULT_BCRYPT_ROUNDS = 12
# bcrypt only reads the first 72 bytes; bcrypt>=5 raises ValueError past that.
MAX_PASSWORD_BYTES = 72

_BEARER_PREFIX = "Bearer"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


class PasswordHasher:
    """Hash and verify passwords with bcrypt.

    bcrypt accepts at most MAX_PASSWORD_BYTES of UTF-8. hash() refuses longer
    input; verify() answers False for it, since no stored digest can match.
    The API layer enforces the same byte limit on every password field.
    """

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
        self.rounds = rounds

    def hash(self, plaintext: str) -> PasswordDigest:
        """Return a fresh salted bcrypt digest. Two calls never return the same digest.

        Raises InvalidInputError when plaintext exceeds MAX_PASSWORD_BYTES.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise InvalidInputError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        salt = bcrypt.gensalt(rounds=self.rounds)
        return PasswordDigest(bcrypt.hashpw(encoded, salt).decode("utf-8"))

    def verify(self, stored_digest: str, plaintext: str) -> bool:
        """Return True if plaintext matches stored_digest, False on a mismatch.

        Raises MalformedDigestError when stored_digest is not a bcrypt hash.
        That is a data problem, not a wrong password, so it must not read as
        a plain False.
        """
        encoded = plaintext.encode("utf-8")
        too_long = len(encoded) > MAX_PASSWORD_BYTES
        try:
            # Over-long input still costs one bcrypt run, so its length does not show in timing.
            matched = bcrypt.checkpw(encoded[:MAX_PASSWORD_BYTES], stored_digest.encode("utf-8"))
        except ValueError as exc:
            raise MalformedDigestError("stored password digest is malformed") from exc
        return matched and not too_long

    @cached_property
    def dummy_digest(self) -> PasswordDigest:
        """Timing equalization digest [C1], hashed at this hasher's own cost.

        Login verifies against it when the email is unknown, so the unknown-email
        path spends the same bcrypt work as the wrong-password path.
        """
        return self.hash("authgate_timing_dummy")


# ---------------------------------------------------------------------------
# Opaque session tokens
# ---------------------------------------------------------------------------


def token_digest(value: str) -> bytes:
    """Return SHA-256 of the encoded token string (32 raw bytes)."""
    return hashlib.sha256(value.encode("utf-8")).digest()


class TokenGenerator:
    """Issue opaque bearer tokens.

    Usage:
        generator = TokenGenerator()
        token = generator.generate(user_id=1, ttl=timedelta(hours=24))
        token.token        # 26-char value, shown to the client once
        token.token_digest # what the store indexes
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        self._clock = clock
        self._random_bytes = random_bytes

    def generate(self, user_id: int, ttl: timedelta) -> Token:
        try:
            raw = self._random_bytes(TOKEN_BYTES)
        except (OSError, NotImplementedError) as exc:
            logger.error("Random source unavailable; refusing to issue token")
            raise RandomSourceError("secure random source unavailable") from exc

        value = base64.b32encode(raw).decode("ascii").rstrip("=")
        now = self._clock()
        return Token(
            user_id=user_id,
            token=value,
            token_digest=token_digest(value),
            expiry=now + ttl,
            created_at=now,
            updated_at=now,
        )


def is_well_formed(value: str) -> bool:
    """True if value has the exact length and alphabet of an issued token."""
    return len(value) == TOKEN_LENGTH and set(value) <= TOKEN_ALPHABET


# ---------------------------------------------------------------------------
# Authorization header parsing
# ---------------------------------------------------------------------------


def parse_bearer_header(header: str | None) -> str:
    """Extract the token from an "Authorization: Bearer <token>" header value.

    Requires exactly two space-separated parts with the literal scheme "Bearer".
    Raises MalformedHeaderError for anything else, MalformedTokenError when the
    token part is not 26 characters long.
    """
    if not header:
        raise MalformedHeaderError("no authorization header received")
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != _BEARER_PREFIX:
        raise MalformedHeaderError("no valid authorization header received")
    value = parts[1]
    if len(value) != TOKEN_LENGTH:
        raise MalformedTokenError("token wrong size")
    return value
