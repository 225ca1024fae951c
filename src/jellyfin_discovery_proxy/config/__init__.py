"""Configuration loading, schema validation, and logging setup."""

from .config_parser import (
    FamilyConfig,
    LoggingConfig,
    ProxyConfig,
    WebServerConfig,
    load_config,
)
from .logging_config import RingBuffer, init_logging

__all__ = [
    "FamilyConfig",
    "LoggingConfig",
    "ProxyConfig",
    "RingBuffer",
    "WebServerConfig",
    "init_logging",
    "load_config",
]
