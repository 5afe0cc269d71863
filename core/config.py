"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to gate the bcrypt work factor on
      DEBUG: dev mode may lower it with a warning, production mode refuses.

Security notes:
  [S1] BCRYPT_ROUNDS below 12 is rejected outside DEBUG. The cost factor is
       what makes offline brute force of a leaked users table expensive.

  [S2] DB_TIMEOUT_SECONDS bounds every store call. A hung database surfaces
       as an internal error instead of pinning request threads forever.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_MIN_PRODUCTION_ROUNDS = 12


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # DSN is accepted for compatibility with existing deployment manifests.
    database_url: str = Field(
        default="sqlite:///authgate.db",
        validation_alias=AliasChoices("DATABASE_URL", "DSN"),
    )
    db_timeout_seconds: float = Field(default=3.0, gt=0)  # [S2]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # 24 hours for interactive login.
    token_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    # "multi": every login issues an additional token, prior sessions stay valid.
    # "single": login deletes the user's prior tokens in the same transaction.
    session_policy: Literal["multi", "single"] = "multi"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:8080", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_bcrypt_rounds(self) -> "Settings":
        """Enforce the bcrypt work factor policy [S1].

        Dev mode (DEBUG=true): a reduced cost is allowed so test suites and
            local logins stay fast, with a warning.

        Production mode (DEBUG=false or not set): refuse to start with a cost
            below 12.
        """
        if self.bcrypt_rounds < _MIN_PRODUCTION_ROUNDS:
            if not self.debug:
                raise ValueError(
                    f"BCRYPT_ROUNDS must be at least {_MIN_PRODUCTION_ROUNDS} in production mode. "
                    "To run with a reduced cost, set DEBUG=true."
                )
            logger.warning("WARNING: Using reduced BCRYPT_ROUNDS=%d. Do not use in production.", self.bcrypt_rounds)
        return self

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(seconds=self.token_ttl_seconds)

    @property
    def single_session(self) -> bool:
        return self.session_policy == "single"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
