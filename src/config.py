"""
Configuration module for the pcluster operator.

Every setting comes from an environment variable; unset variables fall back
to the dataclass defaults. Values are checked when the dataclasses are
built, so a bad deployment fails at startup rather than mid-reconcile.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a variable, treating an empty value as unset."""
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _require_positive(**values) -> None:
    for name, value in values.items():
        if value is not None and value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings (DB_*)."""

    host: str = "localhost"
    port: int = 5432
    database: str = "pcluster_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)
    min_pool_size: int = 5
    max_pool_size: int = 20

    def __post_init__(self):
        _require_positive(min_pool_size=self.min_pool_size)
        if self.max_pool_size < self.min_pool_size:
            raise ValueError(
                f"max_pool_size ({self.max_pool_size}) is smaller than "
                f"min_pool_size ({self.min_pool_size})"
            )

    @classmethod
    def from_env(cls):
        """Load from environment variables. DB_PASSWORD is mandatory."""
        password = _env_str("DB_PASSWORD")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=_env_str("DB_HOST", "localhost"),
            port=_env_int("DB_PORT", 5432),
            database=_env_str("DB_NAME", "pcluster_operator"),
            user=_env_str("DB_USER", "operator"),
            password=password,
            min_pool_size=_env_int("DB_MIN_POOL_SIZE", 5),
            max_pool_size=_env_int("DB_MAX_POOL_SIZE", 20),
        )


@dataclass
class ControllerConfig:
    """Reconciliation loop timing and concurrency."""

    reconcile_interval: int = 60  # seconds between store polls
    max_concurrent_reconciles: int = 5
    poll_interval: int = 300  # seconds before a ready cluster is re-observed

    # Exponential backoff for failed clusters
    backoff_base_delay: int = 60
    backoff_max_delay: int = 3600
    backoff_jitter_factor: float = 0.1  # +/- fraction of the delay

    def __post_init__(self):
        _require_positive(
            reconcile_interval=self.reconcile_interval,
            max_concurrent_reconciles=self.max_concurrent_reconciles,
            poll_interval=self.poll_interval,
            backoff_base_delay=self.backoff_base_delay,
        )
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError("backoff_max_delay must not be below backoff_base_delay")
        if not 0 <= self.backoff_jitter_factor < 1:
            raise ValueError("backoff_jitter_factor must be in [0, 1)")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=_env_int("RECONCILE_INTERVAL", 60),
            max_concurrent_reconciles=_env_int("MAX_CONCURRENT_RECONCILES", 5),
            poll_interval=_env_int("POLL_INTERVAL", 300),
            backoff_base_delay=_env_int("BACKOFF_BASE_DELAY", 60),
            backoff_max_delay=_env_int("BACKOFF_MAX_DELAY", 3600),
            backoff_jitter_factor=_env_float("BACKOFF_JITTER_FACTOR", 0.1),
        )


@dataclass
class APIConfig:
    """HTTP API server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        origins = [o.strip() for o in (_env_str("CORS_ORIGINS") or "").split(",")]
        return cls(
            host=_env_str("API_HOST", "0.0.0.0"),
            port=_env_int("API_PORT", 8000),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            cors_enabled=_env_bool("CORS_ENABLED"),
            cors_origins=[o for o in origins if o] or ["*"],
        )


@dataclass
class PClusterConfig:
    """How the pcluster CLI is located and run."""

    venv_path: Optional[str] = None  # virtualenv containing bin/pcluster
    command_timeout: Optional[float] = None  # seconds; None waits forever
    credentials_file: Optional[str] = None

    def __post_init__(self):
        _require_positive(command_timeout=self.command_timeout)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            venv_path=_env_str("PYTHON_VENV_PATH"),
            command_timeout=_env_float("PCLUSTER_COMMAND_TIMEOUT", None),
            credentials_file=_env_str("PCLUSTER_CREDENTIALS_FILE"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    pcluster: PClusterConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            pcluster=PClusterConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            pcluster=PClusterConfig(),
        )


# Loaded on first use
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration once and cache it."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration, loading it if needed."""
    return config if config is not None else load_config()


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global config
    config = None
