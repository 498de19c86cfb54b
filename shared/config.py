"""
Shared configuration management for order cache nodes.
"""

import socket
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_node_id() -> str:
    return f"node-{socket.gethostname()}"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ORDER_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    node_id: str = Field(default_factory=_default_node_id)

    # Bus
    bus_backend: str = Field(default="redis")
    bus_url: str = Field(default="redis://localhost:6379/0")

    # Local store
    storage_root: str = Field(default="/tmp/cache")
    cache_ttl_seconds: Optional[float] = Field(default=None)

    # Origin
    origin_backend: str = Field(default="stub")
    origin_url: str = Field(default="http://localhost:8090")
    origin_timeout_seconds: float = Field(default=5.0)

    # Coordination
    single_flight_enabled: bool = Field(default=True)
    publish_retry_attempts: int = Field(default=3)
    publish_retry_base_delay: float = Field(default=0.2)

    # TLS
    tls_enabled: bool = Field(default=False)
    tls_certfile: str = Field(default="/certs/fullchain.pem")
    tls_keyfile: str = Field(default="/certs/privkey.pem")


class ServiceConfig(BaseConfig):
    """Service-specific configuration.

    ``port`` and ``host`` follow the environment (``ORDER_CACHE_PORT``,
    ``ORDER_CACHE_HOST``); the port given to :func:`get_config` is only the
    service default.
    """

    service_name: str
    port: Optional[int] = None
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    config = ServiceConfig(service_name=service_name, **overrides)
    if config.port is None:
        config.port = port
    return config
