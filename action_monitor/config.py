import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from action_monitor.errors import ConfigurationError

load_dotenv()

DISPATCH_MODES = ("sync", "scheduled")


def _env_bool(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class with common settings."""
    # Webhook targets
    BUILD_WEBHOOK_URL = os.environ.get("BUILD_WEBHOOK_URL")
    PREVIEW_WEBHOOK_URL = os.environ.get("PREVIEW_WEBHOOK_URL")

    # Dispatch behavior
    DISPATCH_MODE = os.environ.get("DISPATCH_MODE", "scheduled")
    DEBOUNCE_SECONDS = float(os.environ.get("DEBOUNCE_SECONDS", "5"))
    DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "100"))
    DISPATCH_INTERVAL_SECONDS = float(os.environ.get("DISPATCH_INTERVAL_SECONDS", "10"))

    # Delivery
    MAX_ATTEMPTS = int(os.environ.get("MAX_ATTEMPTS", "5"))
    BACKOFF_BASE_SECONDS = float(os.environ.get("BACKOFF_BASE_SECONDS", "2"))
    DELIVERY_TIMEOUT_SECONDS = float(os.environ.get("DELIVERY_TIMEOUT_SECONDS", "10"))

    # Preview
    PREVIEW_TTL_SECONDS = float(os.environ.get("PREVIEW_TTL_SECONDS", "300"))
    # "token:user_id,token2:user_id2" for the bundled static token gate
    PREVIEW_AUTH_TOKENS = os.environ.get("PREVIEW_AUTH_TOKENS", "")

    # Retention for delivered/failed actions
    ACTION_RETENTION_DAYS = int(os.environ.get("ACTION_RETENTION_DAYS", "30"))

    # CORS for the external preview UI
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    ACTION_MONITOR_DEBUG = _env_bool("ACTION_MONITOR_DEBUG")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    DISPATCH_MODE = "scheduled"
    DEBOUNCE_SECONDS = 0.0
    LOG_FILE = None


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig


def is_valid_webhook_url(url: Optional[str]) -> bool:
    """True when url is an absolute http(s) URL with a host."""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass(frozen=True)
class MonitorSettings:
    """Validated runtime options for the action monitor components."""
    build_webhook_url: Optional[str] = None
    preview_webhook_url: Optional[str] = None
    dispatch_mode: str = "scheduled"
    debounce_seconds: float = 5.0
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    delivery_timeout_seconds: float = 10.0
    preview_ttl_seconds: float = 300.0
    dispatch_batch_size: int = 100
    dispatch_interval_seconds: float = 10.0
    action_retention_days: int = 30
    debug: bool = False

    def __post_init__(self):
        if self.dispatch_mode not in DISPATCH_MODES:
            raise ConfigurationError(
                f"dispatch_mode must be one of {', '.join(DISPATCH_MODES)}, got {self.dispatch_mode!r}"
            )
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.dispatch_batch_size < 1:
            raise ConfigurationError("dispatch_batch_size must be at least 1")
        for name in ("debounce_seconds", "backoff_base_seconds", "preview_ttl_seconds"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        for name in ("delivery_timeout_seconds", "dispatch_interval_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

    @classmethod
    def from_config(cls, config: Mapping) -> "MonitorSettings":
        """Build settings from a Flask config (or any mapping of upper-case keys)."""
        try:
            return cls(
                build_webhook_url=config.get("BUILD_WEBHOOK_URL") or None,
                preview_webhook_url=config.get("PREVIEW_WEBHOOK_URL") or None,
                dispatch_mode=str(config.get("DISPATCH_MODE", "scheduled")).strip().lower(),
                debounce_seconds=float(config.get("DEBOUNCE_SECONDS", 5)),
                max_attempts=int(config.get("MAX_ATTEMPTS", 5)),
                backoff_base_seconds=float(config.get("BACKOFF_BASE_SECONDS", 2)),
                delivery_timeout_seconds=float(config.get("DELIVERY_TIMEOUT_SECONDS", 10)),
                preview_ttl_seconds=float(config.get("PREVIEW_TTL_SECONDS", 300)),
                dispatch_batch_size=int(config.get("DISPATCH_BATCH_SIZE", 100)),
                dispatch_interval_seconds=float(config.get("DISPATCH_INTERVAL_SECONDS", 10)),
                action_retention_days=int(config.get("ACTION_RETENTION_DAYS", 30)),
                debug=bool(config.get("ACTION_MONITOR_DEBUG", False)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid action monitor configuration: {e}") from e

    def webhook_url_for(self, stream_type) -> Optional[str]:
        """Target URL for a stream type (StreamType member or its name)."""
        name = getattr(stream_type, "value", stream_type)
        if name == "PREVIEW":
            return self.preview_webhook_url
        return self.build_webhook_url
