"""
Configuration module for the reconciliation core.

Loads configuration from environment variables. Retry, backoff and
stabilization parameters are per-resource tuning knobs: the global values
can be overridden for a single resource kind through RESOURCE_TUNING.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Bounded exponential backoff for transient remote failures."""

    max_attempts: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    jitter_factor: float = 0.1  # ±10% jitter
    time_budget: float = 120.0  # total seconds across all attempts

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "5")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "30.0")),
            jitter_factor=float(os.getenv("RETRY_JITTER_FACTOR", "0.1")),
            time_budget=float(os.getenv("RETRY_TIME_BUDGET", "120.0")),
        )


@dataclass
class StabilizeConfig:
    """Polling of newly created objects until they become readable."""

    timeout: float = 300.0  # seconds
    poll_interval: float = 2.0  # initial delay between reads
    max_poll_interval: float = 10.0  # poll interval doubles up to this

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            timeout=float(os.getenv("STABILIZE_TIMEOUT", "300.0")),
            poll_interval=float(os.getenv("STABILIZE_POLL_INTERVAL", "2.0")),
            max_poll_interval=float(os.getenv("STABILIZE_MAX_POLL_INTERVAL", "10.0")),
        )


@dataclass
class RemoteConfig:
    """Remote control-plane endpoint configuration."""

    endpoint: str = "http://localhost:4566"
    region: str = "us-east-1"
    access_token: str = field(default="", repr=False)  # Never log credentials
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            endpoint=os.getenv("REMOTE_ENDPOINT", "http://localhost:4566"),
            region=os.getenv("REMOTE_REGION", "us-east-1"),
            access_token=os.getenv("REMOTE_ACCESS_TOKEN", ""),
            request_timeout=float(os.getenv("REMOTE_REQUEST_TIMEOUT", "30.0")),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL state store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "driftwarden"
    user: str = "driftwarden"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "driftwarden"),
            user=os.getenv("DB_USER", "driftwarden"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ControllerConfig:
    """Refresh controller configuration."""

    max_concurrent_reconciles: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
        )


def _parse_tuning(raw: Optional[str]) -> Dict[str, Dict[str, Any]]:
    if not raw:
        return {}
    try:
        tuning = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed RESOURCE_TUNING: {e}")
        return {}
    if not isinstance(tuning, dict):
        logger.warning("Ignoring RESOURCE_TUNING: expected a JSON object")
        return {}
    return tuning


def _override(base: Any, overrides: Dict[str, Any]) -> Any:
    """Return a copy of a config dataclass with the known keys replaced."""
    names = {f.name for f in fields(base)}
    known = {k: v for k, v in overrides.items() if k in names}
    return replace(base, **known) if known else base


@dataclass
class Config:
    """Main configuration object."""

    retry: RetryConfig
    stabilize: StabilizeConfig
    remote: RemoteConfig
    controller: ControllerConfig
    database: Optional[DatabaseConfig] = None

    # Per resource kind overrides of retry/stabilize fields
    resource_tuning: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            retry=RetryConfig.from_env(),
            stabilize=StabilizeConfig.from_env(),
            remote=RemoteConfig.from_env(),
            controller=ControllerConfig.from_env(),
            database=DatabaseConfig.from_env() if os.getenv("DB_PASSWORD") else None,
            resource_tuning=_parse_tuning(os.getenv("RESOURCE_TUNING")),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            retry=RetryConfig(),
            stabilize=StabilizeConfig(),
            remote=RemoteConfig(),
            controller=ControllerConfig(),
        )

    def retry_for(self, resource_type: str) -> RetryConfig:
        """Retry configuration for a resource kind, with overrides applied."""
        return _override(self.retry, self.resource_tuning.get(resource_type, {}))

    def stabilize_for(self, resource_type: str) -> StabilizeConfig:
        """Stabilization configuration for a resource kind, with overrides applied."""
        return _override(self.stabilize, self.resource_tuning.get(resource_type, {}))


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
