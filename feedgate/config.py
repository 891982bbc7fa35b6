# feedgate/config.py
#
# Environment-driven settings. Everything here is read once at startup and
# treated as read-only afterwards; nothing in the request path mutates it.
import logging
from pathlib import Path
from typing import List
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEVELOPMENT_SECRET_KEY = "development-default-key-not-for-production"
PLACEHOLDER_SECRET_KEY = "your-generated-secret-key-here"
MIN_SECRET_KEY_LENGTH = 32
MIN_CREDENTIAL_LENGTH = 16
DEFAULT_TOKEN_TTL_SECONDS = 315_360_000  # 10 years

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Startup configuration is unusable; the process must not serve requests."""


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    # HMAC key for feed tokens. Rotating it invalidates every issued token.
    SECRET_KEY: str = ""

    ACCOUNTS_PATH: Path = Path("config/accounts.json")

    # used to build shareable feed URLs
    PUBLIC_ORIGIN: str = "http://127.0.0.1:3000"

    # None = environment default (on in development, off elsewhere)
    AUTO_SOURCE_ENABLED: bool | None = None

    DEFAULT_STRATEGY: str = "ssrf_filter"
    STRATEGIES: str = "ssrf_filter,faraday,browserless"

    FEED_TOKEN_TTL_SECONDS: int = DEFAULT_TOKEN_TTL_SECONDS

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path("audit")

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    class Config:
        env_file = ".env"

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        v = (v or "").strip().lower() or "development"
        if v not in ("development", "test", "production"):
            raise ValueError("ENVIRONMENT must be one of development, test, production")
        return v

    @field_validator("SECRET_KEY")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("PUBLIC_ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        PUBLIC_ORIGIN must be an absolute http(s) origin.

        Lowercases the hostname, keeps an explicit port, drops any path,
        query or trailing slash.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("PUBLIC_ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("PUBLIC_ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("FEED_TOKEN_TTL_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("FEED_TOKEN_TTL_SECONDS must be positive")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        v = (v or "").strip().lower()
        return v if v in ("json", "console") else "json"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def auto_source_enabled(self) -> bool:
        if self.AUTO_SOURCE_ENABLED is None:
            return self.is_development
        return self.AUTO_SOURCE_ENABLED

    @property
    def strategy_names(self) -> List[str]:
        names = [s.strip() for s in self.STRATEGIES.split(",") if s.strip()]
        if self.DEFAULT_STRATEGY not in names:
            names.insert(0, self.DEFAULT_STRATEGY)
        return names


def ensure_secret_key(settings: Settings) -> Settings:
    """
    Return settings with a usable SECRET_KEY.

    Development and test fall back to a fixed, publicly known key. Production
    without a key is a startup failure.
    """
    if settings.SECRET_KEY:
        return settings

    if settings.is_production:
        raise ConfigError(
            "SECRET_KEY is not set. Generate one with `openssl rand -hex 32` "
            "and export it before starting the service."
        )

    logger.warning("Using the default development SECRET_KEY; set SECRET_KEY for real deployments")
    return settings.model_copy(update={"SECRET_KEY": DEVELOPMENT_SECRET_KEY})


def weak_secret_key(secret: str) -> bool:
    return secret == PLACEHOLDER_SECRET_KEY or len(secret) < MIN_SECRET_KEY_LENGTH


def validate_production_security(settings: Settings, accounts, audit) -> None:
    """
    Startup policy check, production only.

    Rejects a weak or placeholder SECRET_KEY and any account credential shorter
    than MIN_CREDENTIAL_LENGTH. Each violation is recorded on the audit sink
    before ConfigError is raised.
    """
    if not settings.is_production:
        return

    if weak_secret_key(settings.SECRET_KEY):
        audit.config_validation_failure("secret_key", "Invalid or weak secret key")
        raise ConfigError(
            f"SECRET_KEY must be at least {MIN_SECRET_KEY_LENGTH} characters "
            "and not the documented placeholder."
        )

    weak = [a.username for a in accounts if len(a.credential) < MIN_CREDENTIAL_LENGTH]
    if weak:
        names = ", ".join(weak)
        audit.config_validation_failure("account_tokens", f"Weak tokens for users: {names}")
        raise ConfigError(
            f"Account tokens must be at least {MIN_CREDENTIAL_LENGTH} characters. "
            f"Weak tokens found for users: {names}"
        )
