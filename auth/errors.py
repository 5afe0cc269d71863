"""
auth/errors.py -- Error taxonomy and the storage-error classifier.

Two families of exceptions live here:

  AuthError subclasses -- domain outcomes raised by the service (bad password,
      expired token, malformed header, ...). Each class pins one ErrorKind.

  StorageError -- raised by auth/store.py when SQLAlchemy fails. The store
      assigns a structured StorageErrorCode from driver diagnostics (SQLSTATE,
      SQLite extended error names) and chains the original exception.

ErrorClassifier is the boundary translation layer. It turns any exception into
a Classification (kind, suggested HTTP status, client-safe message) and keeps a
reference to the original exception in .cause -- it annotates, it never
swallows.

Enumeration policy:
  Every credential and token kind maps to the same 401 + "authentication
  failed" message, so a client cannot tell an unknown email from a wrong
  password or a missing token from an expired one. The distinct kind stays on
  the Classification for logs and tests.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    USER_NOT_FOUND = "user_not_found"
    INACTIVE_ACCOUNT = "inactive_account"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    MALFORMED_HEADER = "malformed_header"
    MALFORMED_TOKEN = "malformed_token"
    DUPLICATE_VALUE = "duplicate_value"
    VALUE_TOO_LONG = "value_too_long"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


class StorageErrorCode(str, Enum):
    UNIQUE_VIOLATION = "unique_violation"
    VALUE_TOO_LONG = "value_too_long"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------


class AuthError(Exception):
    """Base class for domain-level authentication failures."""

    kind: ErrorKind = ErrorKind.INTERNAL


class InvalidInputError(AuthError):
    kind = ErrorKind.INVALID_INPUT


class InvalidCredentialsError(AuthError):
    kind = ErrorKind.INVALID_CREDENTIALS


class UserNotFoundError(AuthError):
    kind = ErrorKind.USER_NOT_FOUND


class InactiveAccountError(AuthError):
    kind = ErrorKind.INACTIVE_ACCOUNT


class TokenNotFoundError(AuthError):
    kind = ErrorKind.TOKEN_NOT_FOUND


class TokenExpiredError(AuthError):
    kind = ErrorKind.TOKEN_EXPIRED


class MalformedHeaderError(AuthError):
    kind = ErrorKind.MALFORMED_HEADER


class MalformedTokenError(AuthError):
    kind = ErrorKind.MALFORMED_TOKEN


class ResourceNotFoundError(AuthError):
    """A management operation addressed a user id that does not exist."""

    kind = ErrorKind.NOT_FOUND


class MalformedDigestError(AuthError):
    """The stored password digest is not a valid bcrypt hash."""

    kind = ErrorKind.INTERNAL


class RandomSourceError(AuthError):
    """The OS random source failed. Token issuance never falls back."""

    kind = ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Storage errors
# ---------------------------------------------------------------------------


class StorageError(Exception):
    """A backing-store failure annotated with a structured code.

    The SQLAlchemy exception is chained as __cause__ by the store
    (raise StorageError(...) from exc).
    """

    def __init__(self, code: StorageErrorCode, message: str = "") -> None:
        self.code = code
        super().__init__(message or code.value)


class RecordNotFoundError(StorageError):
    """No row matched a lookup that requires one."""

    def __init__(self, message: str = "no matching record") -> None:
        super().__init__(StorageErrorCode.NOT_FOUND, message)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

_GENERIC_AUTH_MESSAGE = "authentication failed"

_AUTH_KINDS = frozenset(
    {
        ErrorKind.INVALID_CREDENTIALS,
        ErrorKind.USER_NOT_FOUND,
        ErrorKind.INACTIVE_ACCOUNT,
        ErrorKind.TOKEN_NOT_FOUND,
        ErrorKind.TOKEN_EXPIRED,
        ErrorKind.MALFORMED_HEADER,
        ErrorKind.MALFORMED_TOKEN,
    }
)

# kind -> (status, client message)
_KIND_RESPONSES: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.INVALID_INPUT: (400, "invalid request"),
    ErrorKind.DUPLICATE_VALUE: (409, "duplicate value violates unique constraint"),
    ErrorKind.VALUE_TOO_LONG: (409, "the value you are trying to insert is too large"),
    ErrorKind.FOREIGN_KEY_VIOLATION: (409, "foreign key violation"),
    ErrorKind.NOT_FOUND: (404, "not found"),
    ErrorKind.INTERNAL: (500, "internal error"),
}
for _kind in _AUTH_KINDS:
    _KIND_RESPONSES[_kind] = (401, _GENERIC_AUTH_MESSAGE)

_ECHOED_KINDS = frozenset({ErrorKind.INVALID_INPUT, ErrorKind.NOT_FOUND})

_CODE_KINDS: dict[StorageErrorCode, ErrorKind] = {
    StorageErrorCode.UNIQUE_VIOLATION: ErrorKind.DUPLICATE_VALUE,
    StorageErrorCode.VALUE_TOO_LONG: ErrorKind.VALUE_TOO_LONG,
    StorageErrorCode.FOREIGN_KEY_VIOLATION: ErrorKind.FOREIGN_KEY_VIOLATION,
    StorageErrorCode.NOT_FOUND: ErrorKind.NOT_FOUND,
}

# Last-resort signatures, checked only when the store could not assign a code.
_TEXT_SIGNATURES: tuple[tuple[re.Pattern[str], ErrorKind], ...] = (
    (re.compile(r"SQLSTATE 23505|UNIQUE constraint failed|duplicate key value", re.I), ErrorKind.DUPLICATE_VALUE),
    (re.compile(r"SQLSTATE 22001|value too long|string or blob too big", re.I), ErrorKind.VALUE_TOO_LONG),
    (re.compile(r"SQLSTATE 23503|FOREIGN KEY constraint failed|violates foreign key", re.I), ErrorKind.FOREIGN_KEY_VIOLATION),
)


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    status: int
    message: str
    cause: BaseException

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


def _describe(exc: BaseException) -> str:
    parts = [str(exc)]
    if exc.__cause__ is not None:
        parts.append(str(exc.__cause__))
    return " | ".join(parts)


class ErrorClassifier:
    """Map exceptions to (kind, status, message) without discarding the cause.

    Usage:
        result = ErrorClassifier().classify(exc)
        logger.info("rejected: %s", result.kind.value)
        return envelope(result.status, result.message)
    """

    def classify(self, error: BaseException) -> Classification:
        kind = self._kind_for(error)
        status, message = _KIND_RESPONSES[kind]
        if kind in _ECHOED_KINDS and isinstance(error, AuthError) and str(error):
            # Raised by our own code about the caller's request; safe to repeat.
            message = str(error)
        return Classification(kind=kind, status=status, message=message, cause=error)

    def _kind_for(self, error: BaseException) -> ErrorKind:
        if isinstance(error, AuthError):
            return error.kind
        if isinstance(error, StorageError):
            kind = _CODE_KINDS.get(error.code)
            if kind is not None:
                return kind
            if error.code is StorageErrorCode.UNKNOWN:
                return self._match_text(_describe(error)) or ErrorKind.INTERNAL
            # TIMEOUT, CONNECTIVITY
            return ErrorKind.INTERNAL
        if isinstance(error, ValueError):
            # Request parsing and field validation raise ValueError subclasses
            # (pydantic.ValidationError included): the caller sent bad input.
            return ErrorKind.INVALID_INPUT
        return ErrorKind.INTERNAL

    @staticmethod
    def _match_text(text: str) -> ErrorKind | None:
        for pattern, kind in _TEXT_SIGNATURES:
            if pattern.search(text):
                return kind
        return None
