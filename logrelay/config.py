# logrelay/config.py
"""Settings for the relay server and the stream consumer.

Both read environment variables prefixed with ``LOGRELAY_``; construct them
once at process start and pass the instance down.
"""
from __future__ import annotations
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOGRELAY_", extra="ignore")

    host: str = "localhost"
    port: int = Field(default=22345, ge=1, le=65535)

    max_log_entries: int = Field(default=500, ge=1, description="Capacity of each topic bucket.")
    max_query_lines: int = Field(default=100, ge=1)
    default_query_lines: int = Field(default=20, ge=1)

    dedup_ttl_seconds: float = Field(default=5.0, gt=0)
    dedup_max_entries: int = Field(default=1000, ge=1,
                                   description="Fingerprint table size that triggers a sweep.")

    # loopback clients are dev tabs hammering on reload; remote ones get a longer window
    loopback_rate_limit: int = Field(default=200, ge=1)
    loopback_window_seconds: float = Field(default=10.0, gt=0)
    remote_rate_limit: int = Field(default=1000, ge=1)
    remote_window_seconds: float = Field(default=60.0, gt=0)

    keepalive_interval_seconds: float = Field(default=30.0, gt=0)
    subscriber_queue_size: int = Field(default=500, ge=1)

    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_format: Literal["console", "json"] = "console"


class ConsumerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOGRELAY_", extra="ignore")

    backend_url: str = "http://localhost:22345"
    default_app: Optional[str] = Field(
        default=None, description="Tenant used when get_logs is called without one."
    )
    cache_capacity: int = Field(default=1000, ge=1)
    reconnect_interval_seconds: float = Field(default=5.0, ge=0)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    keepalive_interval_seconds: float = Field(default=30.0, gt=0)

    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_format: Literal["console", "json"] = "console"
