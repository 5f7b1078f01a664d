"""Configuration loading for pbsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class RemoteConfig:
    url: str = "http://127.0.0.1:8090"
    timeout: float = 30.0
    max_retries: int = 3
    token: str | None = None


@dataclass
class SubscriptionConfig:
    """Timing and retry budget for realtime subscriptions (seconds)."""

    max_reconnect_attempts: int = 5
    base_reconnect_delay: float = 1.0
    wait_timeout: float = 5.0
    cleanup_delay: float = 5.0


@dataclass
class StoreConfig:
    db_path: str = "~/.pbsync/cache.db"


@dataclass
class Config:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with PBSYNC_ prefix."""
    return os.environ.get(f"PBSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout = float(timeout)
    if max_retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(max_retries)
    if token := _get_env("REMOTE_TOKEN"):
        config.remote.token = token

    # Subscription overrides
    if attempts := _get_env("MAX_RECONNECT_ATTEMPTS"):
        config.subscriptions.max_reconnect_attempts = int(attempts)
    if base_delay := _get_env("BASE_RECONNECT_DELAY"):
        config.subscriptions.base_reconnect_delay = float(base_delay)
    if wait_timeout := _get_env("WAIT_TIMEOUT"):
        config.subscriptions.wait_timeout = float(wait_timeout)
    if cleanup_delay := _get_env("CLEANUP_DELAY"):
        config.subscriptions.cleanup_delay = float(cleanup_delay)

    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    timeout=remote_data.get("timeout", config.remote.timeout),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    token=remote_data.get("token"),
                )

            # Parse subscription config
            if "subscriptions" in data:
                sub_data = data["subscriptions"]
                config.subscriptions = SubscriptionConfig(
                    max_reconnect_attempts=sub_data.get(
                        "max_reconnect_attempts",
                        config.subscriptions.max_reconnect_attempts,
                    ),
                    base_reconnect_delay=sub_data.get(
                        "base_reconnect_delay",
                        config.subscriptions.base_reconnect_delay,
                    ),
                    wait_timeout=sub_data.get(
                        "wait_timeout", config.subscriptions.wait_timeout
                    ),
                    cleanup_delay=sub_data.get(
                        "cleanup_delay", config.subscriptions.cleanup_delay
                    ),
                )

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
