"""JSON Schema validation for the optional YAML configuration file.

The file is entirely optional; every key can also come from the environment.
Validation happens on the raw parsed document before environment overrides
are applied, so typos in the file are reported with their YAML path.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from ..errors import ConfigError

logger = logging.getLogger(__name__)

_URL = {"type": ["string", "null"]}
_FAMILY_URLS = {
    "type": "object",
    "additionalProperties": False,
    "properties": {"url": _URL, "url_ipv4": _URL, "url_ipv6": _URL},
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "jellyfin-discovery-proxy configuration",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "server": _FAMILY_URLS,
        "proxy": _FAMILY_URLS,
        "cache": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"duration_hours": {"type": "integer", "minimum": 0}},
        },
        "blacklist": {
            "oneOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string"}},
                {"type": "null"},
            ]
        },
        "listen": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "interface": {"type": ["string", "null"]},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "ipv6": {"type": ["boolean", "null"]},
                "max_concurrent": {"type": "integer", "minimum": 0},
                "shutdown_grace_seconds": {"type": "number", "minimum": 0},
            },
        },
        "upstream": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"timeout_seconds": {"type": "number", "exclusiveMinimum": 0}},
        },
        "webserver": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "status_cache_ttl_seconds": {"type": "number", "minimum": 0},
            },
        },
        "logging": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "level": {
                    "type": "string",
                    "enum": ["debug", "info", "warn", "warning", "error", "crit", "critical"],
                },
                "stderr": {"type": "boolean"},
                "file": {"type": ["string", "null"]},
                "buffer_size": {"type": "integer", "minimum": 1},
            },
        },
    },
}


def _format_path(parts) -> str:
    out = ""
    for p in parts:
        out += f"[{p}]" if isinstance(p, int) else (f".{p}" if out else str(p))
    return out or "<root>"


def validate_config(cfg: Dict[str, Any], config_path: Optional[str] = None) -> None:
    """Brief: Validate a parsed YAML document against CONFIG_SCHEMA.

    Inputs:
      - cfg: Parsed YAML mapping.
      - config_path: Optional file path, only used in the error message.

    Outputs:
      - None.

    Raises:
      - ConfigError: listing every violation as "<path>: <message>".
    """

    if not isinstance(cfg, dict):
        raise ConfigError(
            f"Invalid configuration in {config_path or 'config'}: top level must be a mapping"
        )

    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.absolute_path])
    if not errors:
        return

    lines: List[str] = [
        f"{_format_path(err.absolute_path)}: {err.message}" for err in errors
    ]
    where = config_path or "config"
    logger.debug("Config validation failed with %d error(s)", len(lines))
    raise ConfigError(f"Invalid configuration in {where}:\n  " + "\n  ".join(lines))
