"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_signing_key -> ACCESS_SIGNING_KEY).

  @model_validator(mode="after"): Cross-field validation of the two signing
      keys. Dev mode (DEBUG=true) generates throwaway keys with a warning;
      production mode refuses to start without them.

Security notes:
  Signing keys shorter than 32 chars are rejected outright. Access and
  refresh tokens must be signed with different keys so that leaking one key
  cannot be used to forge the other class of token.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or otp/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("storefront.config")

_ROOT = Path(__file__).resolve().parent.parent

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields except the signing keys have defaults. The signing keys fall
    back to "" which the model_validator turns into either generated dev keys
    or a startup failure.
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

    # ------------------------------------------------------------------
    # Credential signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    access_signing_key: str = ""
    refresh_signing_key: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 7
    # Rotation is off by default: refresh only mints a new access token.
    rotate_refresh_tokens: bool = False
    # Upper bound on concurrently active refresh tokens per identity.
    max_refresh_tokens: int = 10

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    code_ttl_seconds: int = 5 * 60
    code_digits: int = 6
    phone_pattern: str = r"^[0-9]{10}$"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    auth_db_url: str = f"sqlite:///{_ROOT / 'auth' / 'storefront_auth.db'}"
    code_db_path: str = str(_ROOT / "otp" / "storefront_codes.db")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy.

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Issued tokens will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if either
            key is missing. There is no guessable fallback.

        Both modes: reject short keys and reject reusing one key for both
            token classes.
        """
        for field in ("access_signing_key", "refresh_signing_key"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("WARNING: Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
        if len(self.access_signing_key) < _MIN_KEY_LENGTH or len(self.refresh_signing_key) < _MIN_KEY_LENGTH:
            raise ValueError(f"Signing keys must be at least {_MIN_KEY_LENGTH} characters.")
        if self.access_signing_key == self.refresh_signing_key:
            raise ValueError("ACCESS_SIGNING_KEY and REFRESH_SIGNING_KEY must differ.")
        if not 4 <= self.code_digits <= 10:
            raise ValueError("CODE_DIGITS must be between 4 and 10.")
        if self.max_refresh_tokens < 1:
            raise ValueError("MAX_REFRESH_TOKENS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
