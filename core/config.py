"""
core/config.py -- Identity service settings, read once from the environment.

get_settings() is the only reader of environment variables and .env. The API
lifespan and the CLI each call it once and hand the values to the hasher, the
token service and the code services, so the signing secret cannot change
while the process runs.

SECRET_KEY must be at least 32 characters. Without DEBUG=true a missing key
stops startup; with it, a throwaway key is generated and every token dies on
restart.

Layer rule: no imports from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identity.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'identity.db'}"


class Settings(BaseSettings):
    """Environment-backed settings. Every field has a default except the secret."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials and tokens
    # ------------------------------------------------------------------

    # Every issued token carries an exp claim; there are no unbounded tokens.
    token_expire_seconds: int = Field(default=3600, gt=0)
    bcrypt_rounds: int = Field(default=14, ge=4, le=31)
    default_role: str = "user"

    # ------------------------------------------------------------------
    # Single-use codes
    # ------------------------------------------------------------------

    code_ttl_seconds: int = Field(default=900, gt=0)  # 15 minutes
    code_purge_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Account details
    # ------------------------------------------------------------------

    # Calling code substituted for a leading local "0" in phone numbers.
    phone_country_code: str = "62"

    # ------------------------------------------------------------------
    # External identity (Google ID tokens). Empty client ID disables it.
    # ------------------------------------------------------------------

    google_client_id: str = ""
    external_verify_timeout: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Require a 32+ character SECRET_KEY; DEBUG may stand in a random one."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated one for this DEBUG run, tokens end on restart")
            else:
                raise ValueError(
                    "SECRET_KEY is not set. Provide it via the environment or .env, "
                    "or set DEBUG=true for a throwaway key."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
