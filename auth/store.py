"""
auth/store.py -- SQLAlchemy Core persistence layer for users and session tokens.

Pattern: Repository + Data Mapper.
UserStore and TokenStore are the repositories; _row_to_user / _row_to_token
are the mappers. Service and route code never touches SQL directly.

Dependency injection:
  Both stores receive an Engine through the constructor. create_db_engine()
  builds one engine per process; the API lifespan and the CLI each call it
  once and hand the same engine to every store. There is no module-level
  connection handle.

Timeouts:
  Every call is bounded by the timeout passed to create_db_engine() (3 seconds
  by default). SQLite gets it as the busy timeout; PostgreSQL as
  connect_timeout plus a server-side statement_timeout; pooled engines also
  use it as pool_timeout. Exceeding it raises StorageError(TIMEOUT).

Error translation:
  _storage_errors() is the single seam where SQLAlchemy exceptions become
  StorageError with a StorageErrorCode read from driver diagnostics:
  SQLSTATE on PostgreSQL drivers, sqlite_errorname on sqlite3. The original
  exception is chained, never dropped.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Tokens are looked up by SHA-256 digest (UNIQUE index), not by plaintext.

Timestamps:
  Stored as ISO 8601 UTC text with microsecond precision, so lexicographic
  order equals chronological order and SQL comparisons on expiry work on
  every backend.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    exists,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import RecordNotFoundError, StorageError, StorageErrorCode
from auth.models import PasswordDigest, Token, User, UserSummary
from auth.tokens import token_digest, utcnow

logger = logging.getLogger("authgate.store")

_DEFAULT_DB_URL = "sqlite:///authgate.db"
DEFAULT_TIMEOUT_SECONDS = 3.0

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(255), nullable=False, server_default=""),
    Column("last_name", String(255), nullable=False, server_default=""),
    Column("password_digest", String(255), nullable=False),  # bcrypt, never plaintext
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("email", String(255), nullable=False),  # denormalized owner email
    Column("token", String(255), nullable=False),
    Column("token_digest", LargeBinary(32), nullable=False, unique=True),  # SHA-256
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("expiry", String(32), nullable=False),
    Index("ix_tokens_user_id", "user_id"),
)

_USER_MUTABLE_FIELDS = frozenset({"email", "first_name", "last_name", "active"})

# ---------------------------------------------------------------------------
# Driver diagnostics -> StorageErrorCode
# ---------------------------------------------------------------------------

_SQLSTATE_CODES: dict[str, StorageErrorCode] = {
    "23505": StorageErrorCode.UNIQUE_VIOLATION,
    "22001": StorageErrorCode.VALUE_TOO_LONG,
    "23503": StorageErrorCode.FOREIGN_KEY_VIOLATION,
    "57014": StorageErrorCode.TIMEOUT,  # query_canceled (statement_timeout)
    "55P03": StorageErrorCode.TIMEOUT,  # lock_not_available
}

_SQLITE_CODES: dict[str, StorageErrorCode] = {
    "SQLITE_CONSTRAINT_UNIQUE": StorageErrorCode.UNIQUE_VIOLATION,
    "SQLITE_CONSTRAINT_PRIMARYKEY": StorageErrorCode.UNIQUE_VIOLATION,
    "SQLITE_CONSTRAINT_FOREIGNKEY": StorageErrorCode.FOREIGN_KEY_VIOLATION,
    "SQLITE_TOOBIG": StorageErrorCode.VALUE_TOO_LONG,
    "SQLITE_BUSY": StorageErrorCode.TIMEOUT,
    "SQLITE_BUSY_TIMEOUT": StorageErrorCode.TIMEOUT,
    "SQLITE_LOCKED": StorageErrorCode.TIMEOUT,
    "SQLITE_LOCKED_SHAREDCACHE": StorageErrorCode.TIMEOUT,
    "SQLITE_CANTOPEN": StorageErrorCode.CONNECTIVITY,
    "SQLITE_IOERR": StorageErrorCode.CONNECTIVITY,
}


def storage_error_code(exc: DBAPIError) -> StorageErrorCode:
    """Read a structured code off a DBAPIError's driver exception.

    psycopg exposes .sqlstate, psycopg2 .pgcode, sqlite3 (3.11+)
    .sqlite_errorname. OperationalError without either is treated as a
    connectivity problem unless the driver says it timed out.
    """
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        if sqlstate in _SQLSTATE_CODES:
            return _SQLSTATE_CODES[sqlstate]
        if sqlstate.startswith("08"):
            return StorageErrorCode.CONNECTIVITY
        return StorageErrorCode.UNKNOWN

    errname = getattr(orig, "sqlite_errorname", None)
    if errname:
        if errname in _SQLITE_CODES:
            return _SQLITE_CODES[errname]
        # Extended names share a prefix with their primary code (SQLITE_IOERR_READ).
        for prefix, code in _SQLITE_CODES.items():
            if errname.startswith(prefix + "_"):
                return code

    if exc.connection_invalidated:
        return StorageErrorCode.CONNECTIVITY
    if isinstance(exc, OperationalError):
        message = str(orig).lower()
        if "timeout" in message or "timed out" in message or "locked" in message:
            return StorageErrorCode.TIMEOUT
        return StorageErrorCode.CONNECTIVITY
    return StorageErrorCode.UNKNOWN


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures inside the block into StorageError."""
    try:
        yield
    except StorageError:
        raise
    except PoolTimeoutError as exc:
        logger.warning("%s: timed out waiting for a pooled connection", operation)
        raise StorageError(StorageErrorCode.TIMEOUT, f"{operation}: connection pool timeout") from exc
    except DBAPIError as exc:
        code = storage_error_code(exc)
        logger.warning("%s failed: %s (%s)", operation, code.value, type(exc.orig).__name__)
        raise StorageError(code, f"{operation}: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        logger.warning("%s failed: %s", operation, type(exc).__name__)
        raise StorageError(StorageErrorCode.UNKNOWN, f"{operation}: {exc}") from exc


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys is OFF by default in SQLite, which
    would let tokens reference deleted users.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str = _DEFAULT_DB_URL, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Engine:
    """Build the process-wide engine with the per-call timeout wired in.

    Usage:
        engine = create_db_engine("postgresql+psycopg://...", timeout=3.0)
        users = UserStore(engine)
        tokens = TokenStore(engine)
        ...
        engine.dispose()
    """
    connect_args: dict = {}
    engine_kwargs: dict = {"pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        engine_kwargs["pool_timeout"] = timeout
        if db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, math.ceil(timeout))
            connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def check_connection(engine: Engine) -> bool:
    """Return True if a trivial query succeeds. Used by the health endpoint."""
    try:
        with _storage_errors("health check"), engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except StorageError:
        return False
    return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        user_id = store.create_user(User(email="a@b.com", password_digest=hasher.hash("secret")))
        user = store.get_by_email("a@b.com")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock
        with _storage_errors("create schema"):
            _metadata.create_all(self.engine)

    def has_users(self) -> bool:
        with _storage_errors("count users"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises StorageError(UNIQUE_VIOLATION) if the email already exists.
        """
        now = _to_iso(self._clock())
        with _storage_errors("create user"), self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    password_digest=user.password_digest,
                    active=user.active,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with _storage_errors("get user by email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with _storage_errors("get user by id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[UserSummary]:
        """Return all users ordered by last name, flagged if they hold an unexpired token."""
        now = _to_iso(self._clock())
        has_token = (
            exists()
            .where(_tokens.c.user_id == _users.c.id)
            .where(_tokens.c.expiry > now)
            .label("has_active_token")
        )
        with _storage_errors("list users"), self.engine.connect() as conn:
            rows = conn.execute(select(_users, has_token).order_by(_users.c.last_name, _users.c.id)).fetchall()
        return [UserSummary(user=_row_to_user(r), has_active_token=bool(r.has_active_token)) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields: email, first_name, last_name, active. Unknown keys raise
        ValueError rather than being silently ignored. The password digest has
        its own method so it cannot be overwritten through this path.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values = dict(fields, updated_at=_to_iso(self._clock()))
        with _storage_errors("update user"), self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def set_password_digest(self, user_id: int, digest: PasswordDigest) -> bool:
        """Replace the stored password digest. Returns False if user_id was not found."""
        with _storage_errors("reset password"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_digest=digest, updated_at=_to_iso(self._clock()))
            )
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and every token it owns in one transaction.

        Returns True if the user was deleted, False if not found.
        """
        with _storage_errors("delete user"), self.engine.begin() as conn:
            conn.execute(_tokens.delete().where(_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0


class TokenStore:
    """Repository for session Token entities.

    Expiry is enforced at read time by valid_token() and by the service.
    Nothing here deletes expired rows on its own.

    Usage:
        store = TokenStore(engine)
        stored = store.insert(generator.generate(user.id, ttl), user.email)
        token = store.get_by_token(stored.token)
        store.delete_by_token(stored.token)
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock
        with _storage_errors("create schema"):
            _metadata.create_all(self.engine)

    def insert(self, token: Token, owner_email: str, *, replace_existing: bool = False) -> Token:
        """Persist a freshly generated token and return it with id and email set.

        replace_existing=True deletes the user's prior tokens first, inside the
        same transaction, so a single-session policy never leaves a window with
        zero or two valid tokens.

        Raises StorageError(FOREIGN_KEY_VIOLATION) if token.user_id does not exist.
        """
        created_at = token.created_at or self._clock()
        updated_at = token.updated_at or created_at
        with _storage_errors("insert token"), self.engine.begin() as conn:
            if replace_existing:
                removed = conn.execute(_tokens.delete().where(_tokens.c.user_id == token.user_id)).rowcount
                if removed:
                    logger.info("Replaced %d prior token(s) for user_id=%s", removed, token.user_id)
            result = conn.execute(
                _tokens.insert().values(
                    user_id=token.user_id,
                    email=owner_email,
                    token=token.token,
                    token_digest=token.token_digest,
                    created_at=_to_iso(created_at),
                    updated_at=_to_iso(updated_at),
                    expiry=_to_iso(token.expiry),
                )
            )
            token_id = result.inserted_primary_key[0]
        return replace(token, id=token_id, email=owner_email, created_at=created_at, updated_at=updated_at)

    def get_by_token(self, value: str) -> Token:
        """Return the token row for a plaintext value.

        Raises RecordNotFoundError when no row matches. Expired rows are
        returned as-is; expiry is the caller's decision.
        """
        with _storage_errors("get token"), self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_digest == token_digest(value))).fetchone()
        if row is None:
            raise RecordNotFoundError("no matching token found")
        return _row_to_token(row)

    def list_for_user(self, user_id: int) -> list[Token]:
        """Return every token owned by user_id, newest first, expired ones included."""
        with _storage_errors("list tokens"), self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.user_id == user_id).order_by(_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def delete_by_token(self, value: str) -> bool:
        """Delete one token. Idempotent: an absent token returns False, never raises."""
        with _storage_errors("delete token"), self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.token_digest == token_digest(value)))
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: int) -> int:
        """Delete every token owned by user_id. Returns the number removed."""
        with _storage_errors("delete user tokens"), self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.user_id == user_id))
        return result.rowcount

    def valid_token(self, value: str) -> bool:
        """True only if the token exists, is unexpired, and its owner exists and is active.

        Absent, orphaned, expired and inactive-owner tokens all return False.
        Storage failures still raise StorageError.
        """
        query = (
            select(_tokens.c.expiry, _users.c.id.label("owner_id"), _users.c.active)
            .select_from(_tokens.outerjoin(_users, _tokens.c.user_id == _users.c.id))
            .where(_tokens.c.token_digest == token_digest(value))
        )
        with _storage_errors("validate token"), self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None or row.owner_id is None:
            return False
        if self._clock() >= _from_iso(row.expiry):
            return False
        return bool(row.active)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        password_digest=PasswordDigest(row.password_digest),
        active=bool(row.active),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        token=row.token,
        token_digest=bytes(row.token_digest),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        expiry=_from_iso(row.expiry),
    )
