"""
auth/service.py -- AuthenticationService: login, logout, bearer authentication.

Session lifecycle:
  Anonymous -> Authenticating (login) -> Authenticated (token issued)
  -> LoggedOut (logout deletes the row) | Expired (now >= expiry; the row
  stays until logout or revoke_all_sessions).

Session policy:
  single_session=False (default): every login adds a token; earlier sessions
      stay valid until they expire or are revoked. Concurrent logins for one
      user both succeed.
  single_session=True: login deletes the user's earlier tokens in the same
      transaction as the insert (TokenStore.insert(replace_existing=True)).

Errors:
  Every failure is a typed AuthError or StorageError. The service logs the
  specific kind; the API layer collapses credential and token kinds into one
  client message (see auth/errors.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import (
    InactiveAccountError,
    InvalidCredentialsError,
    InvalidInputError,
    RecordNotFoundError,
    ResourceNotFoundError,
    TokenExpiredError,
    TokenNotFoundError,
    UserNotFoundError,
)
from auth.models import LoginResult, NewUser, Token, User, UserSummary
from auth.store import TokenStore, UserStore
from auth.tokens import PasswordHasher, TokenGenerator, is_well_formed, parse_bearer_header, utcnow

logger = logging.getLogger("authgate.auth")

LOGIN_TTL = timedelta(hours=24)


class AuthenticationService:
    """Orchestrates the stores, the hasher and the generator.

    Usage:
        service = AuthenticationService(UserStore(engine), TokenStore(engine))
        result = service.login("a@b.com", "secret")
        user = service.authenticate(f"Bearer {result.token.token}")
        service.logout(result.token.token)
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenStore,
        hasher: PasswordHasher | None = None,
        generator: TokenGenerator | None = None,
        *,
        token_ttl: timedelta = LOGIN_TTL,
        single_session: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.hasher = hasher or PasswordHasher()
        self.generator = generator or TokenGenerator(clock=clock)
        self.token_ttl = token_ttl
        self.single_session = single_session
        self._clock = clock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> LoginResult:
        """Verify email + password and issue a new token.

        Always runs bcrypt, including for unknown emails [C1], so response time
        does not reveal which emails are registered.
        """
        user = self.users.get_by_email(email)
        if user is None:
            self.hasher.verify(self.hasher.dummy_digest, password)
            logger.info("Login rejected: %s", UserNotFoundError.kind.value)
            raise UserNotFoundError("no user with that email")

        if not self.hasher.verify(user.password_digest, password):
            logger.info("Login rejected for user_id=%s: %s", user.id, InvalidCredentialsError.kind.value)
            raise InvalidCredentialsError("password does not match")

        if not user.active:
            logger.info("Login rejected for user_id=%s: %s", user.id, InactiveAccountError.kind.value)
            raise InactiveAccountError("user is not active")

        token = self.generator.generate(user.id, self.token_ttl)
        stored = self.tokens.insert(token, user.email, replace_existing=self.single_session)
        logger.info("Login succeeded for user_id=%s (token_id=%s)", user.id, stored.id)
        return LoginResult(token=stored, user=user)

    def logout(self, token_value: str) -> None:
        """Delete the token row. Logging out an unknown or already-deleted token is not an error."""
        if self.tokens.delete_by_token(token_value):
            logger.info("Token revoked by logout")

    def authenticate(self, authorization_header: str | None) -> User:
        """Resolve an Authorization header to the active user it authorizes.

        Raises, in check order: MalformedHeaderError, MalformedTokenError,
        TokenNotFoundError, TokenExpiredError, TokenNotFoundError (owner
        missing), InactiveAccountError.
        """
        value = parse_bearer_header(authorization_header)
        try:
            token = self.tokens.get_by_token(value)
        except RecordNotFoundError as exc:
            raise TokenNotFoundError("no matching token found") from exc

        if self._clock() >= token.expiry:
            raise TokenExpiredError("token has expired")

        user = self.users.get_by_id(token.user_id)
        if user is None:
            raise TokenNotFoundError("no matching user found")
        if not user.active:
            raise InactiveAccountError("user is not active")
        return user

    def validate_token(self, token_value: str) -> bool:
        """Yes/no validity check with no side effects.

        A value that could never have been issued is answered without a store round trip.
        """
        if not is_well_formed(token_value):
            return False
        return self.tokens.valid_token(token_value)

    def list_sessions(self, user_id: int) -> list[Token]:
        """Return every token user_id holds, newest first, expired ones included."""
        self.get_user(user_id)
        return self.tokens.list_for_user(user_id)

    def revoke_all_sessions(self, user_id: int) -> int:
        """Delete every token owned by user_id. Returns how many were removed."""
        self.get_user(user_id)
        removed = self.tokens.delete_all_for_user(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", removed, user_id)
        return removed

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def register_user(self, new_user: NewUser) -> User:
        """Hash the plaintext password and create the account.

        Raises StorageError(UNIQUE_VIOLATION) if the email is taken.
        """
        if not new_user.email or not new_user.password:
            raise InvalidInputError("email and password are required")
        user = User(
            email=new_user.email,
            first_name=new_user.first_name,
            last_name=new_user.last_name,
            password_digest=self.hasher.hash(new_user.password),
            active=new_user.active,
        )
        user_id = self.users.create_user(user)
        logger.info("Created user_id=%s", user_id)
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError(f"user {user_id} not found")
        return user

    def list_users(self) -> list[UserSummary]:
        return self.users.list_users()

    def update_user(self, user_id: int, **fields) -> User:
        """Apply email/name/active changes. Deactivation takes effect on the next request."""
        if not fields:
            raise InvalidInputError("no fields to update")
        if not self.users.update_user(user_id, **fields):
            raise ResourceNotFoundError(f"user {user_id} not found")
        return self.get_user(user_id)

    def reset_password(self, user_id: int, new_password: str) -> None:
        """Store a fresh digest for new_password. Existing sessions are left alone."""
        if not new_password:
            raise InvalidInputError("password is required")
        if not self.users.set_password_digest(user_id, self.hasher.hash(new_password)):
            raise ResourceNotFoundError(f"user {user_id} not found")
        logger.info("Password reset for user_id=%s", user_id)

    def delete_user(self, user_id: int) -> None:
        if not self.users.delete_user(user_id):
            raise ResourceNotFoundError(f"user {user_id} not found")
        logger.info("Deleted user_id=%s and its tokens", user_id)
