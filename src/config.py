"""
Configuration module for the addon controllers.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class KubeConfig:
    """How to reach the local cluster."""

    kubeconfig: Optional[str] = None  # None = in-cluster, then default kubeconfig
    master: Optional[str] = None

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            master=os.getenv("KUBE_MASTER") or None,
        )


@dataclass
class ControllerConfig:
    """Work queue and informer configuration shared by both controllers."""

    workers: int = 2
    max_retries: int = 15

    # Exponential backoff configuration
    backoff_base_delay: float = 0.005  # base delay in seconds
    backoff_max_delay: float = 1000.0  # max delay in seconds

    resync_period: float = 30  # seconds between informer resyncs
    discovery_refresh_interval: float = 60  # seconds between mapper resets

    # Pause before restarting a crashed worker
    worker_restart_delay: float = 1.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        config = cls(
            workers=int(os.getenv("WORKERS", "2")),
            max_retries=int(os.getenv("MAX_RETRIES", "15")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "0.005")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            resync_period=float(os.getenv("RESYNC_PERIOD", "30")),
            discovery_refresh_interval=float(
                os.getenv("DISCOVERY_REFRESH_INTERVAL", "60")
            ),
            worker_restart_delay=float(os.getenv("WORKER_RESTART_DELAY", "1")),
        )
        if config.workers < 1:
            raise ValueError("WORKERS must be at least 1")
        if config.max_retries < 1:
            raise ValueError("MAX_RETRIES must be at least 1")
        return config


@dataclass
class Config:
    """Main configuration object."""

    kube: KubeConfig
    controller: ControllerConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kube=KubeConfig.from_env(),
            controller=ControllerConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(kube=KubeConfig(), controller=ControllerConfig())


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
