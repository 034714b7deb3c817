"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the service happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode (DEBUG=true) generates a signing
      key with a warning when none is configured.

Security notes:
  A missing SECRET_KEY in production is NOT a startup failure. The token
  issuer receives the key at construction and raises ConfigError the first
  time it is asked to sign or verify without one.

  DEBUG doubles as the non-production flag. Only when it is true do send-code
  responses echo the plaintext one-time code back to the caller.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("adminauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'adminauth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens and password hashing
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Email one-time codes
    # ------------------------------------------------------------------

    code_ttl_minutes: int = 10
    code_resend_cooldown_seconds: int = 60
    code_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Mail transport
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 465
    smtp_secure: bool = True  # implicit TLS; False means STARTTLS
    smtp_user: str = ""
    # SMTP_PASS is the name older deployment env files use.
    smtp_password: str = Field(default="", validation_alias=AliasChoices("smtp_password", "smtp_pass"))
    smtp_from: str = ""
    smtp_mock: bool = False
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def fill_dev_secret_key(self) -> "Settings":
        """Generate a throwaway signing key in dev mode.

        Tokens will not survive a restart -- acceptable for local dev.
        Production mode leaves the key empty so the token issuer can report
        the misconfiguration when it is first used.
        """
        if not self.secret_key and self.debug:
            self.secret_key = secrets.token_hex(32)
            logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
        return self

    @property
    def has_smtp(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
