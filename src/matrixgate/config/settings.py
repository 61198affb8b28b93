"""Configuration management for matrixgate.

Loads settings from a YAML configuration file with environment variable
overrides for the device address. Supports .env files.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/matrixgate.yaml")


class MatrixConfig(BaseModel):
    host: str = Field(default="192.168.2.142", description="Matrix device IP or hostname")
    port: int = Field(default=23, ge=1, le=65535)
    connect_timeout: float = Field(default=2.0, gt=0)
    send_timeout: float = Field(default=1.0, gt=0)
    query_timeout: float = Field(default=1.5, gt=0)
    response_idle: float = Field(default=0.2, gt=0, description="Quiet period that ends a response")
    max_retries: int = Field(default=3, gt=0)
    retry_delay: float = Field(default=1.0, ge=0)
    reconnect_cooldown: float = Field(default=5.0, ge=0)
    inputs: int = Field(default=8, gt=0, le=99)
    outputs: int = Field(default=8, gt=0, le=99)


class SecurityConfig(BaseModel):
    enable_auth: bool = Field(default=True)
    max_login_attempts: int = Field(default=5, gt=0)
    lockout_time: float = Field(default=900.0, gt=0, description="Lockout duration in seconds")
    session_timeout: float = Field(default=3600.0, ge=0, description="0 disables expiry")
    status_cache_ttl: float = Field(default=5.0, ge=0)
    allowed_ips: list[str] = Field(default_factory=list)
    rate_limit_window: float = Field(default=900.0, gt=0, description="Request window in seconds")
    rate_limit_max: int = Field(default=100, ge=0, description="Requests per window, 0 disables")

    @field_validator("allowed_ips")
    @classmethod
    def _check_networks(cls, value: list[str]) -> list[str]:
        for entry in value:
            ipaddress.ip_network(entry, strict=False)
        return value


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)


class UserConfig(BaseModel):
    password_hash: str = Field(description="bcrypt hash ($2a$/$2b$)")
    role: Literal["admin", "operator"] = Field(default="operator")
    permissions: list[Literal["switch", "query", "config"]] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the matrixgate service.

    Usually built by :func:`load_settings`. Constructed directly it reads
    only ``MATRIXGATE_*`` variables (nested with ``__``) and ``.env``.
    """

    model_config = {
        "env_prefix": "MATRIXGATE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Configuration sections
    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    users: dict[str, UserConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Build the settings snapshot used for the life of the process.

    Sources, highest priority first: ``MATRIX_HOST`` / ``MATRIX_PORT``,
    the YAML file, ``MATRIXGATE_*`` variables, field defaults. Variables
    from ``./.env`` are loaded before any of them are read. A missing
    YAML file is not an error.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    _load_dotenv(Path(".env"))

    data = _read_yaml(path)
    _apply_device_overrides(data)

    settings = Settings(**data)
    if settings.security.enable_auth and not settings.users:
        logger.warning("No users configured; every login will be rejected")
    return settings


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    logger.info("Loaded configuration from %s", path)
    return data


def _load_dotenv(env_path: Path) -> None:
    """Copy ``KEY=VALUE`` lines from *env_path* into ``os.environ``.

    Variables that already hold a non-empty value are left alone. An
    ``export`` prefix and matching quotes around the value are stripped.
    """
    if not env_path.exists():
        return
    for raw in env_path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.removeprefix("export ").partition("=")
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        if key and not os.environ.get(key):
            os.environ[key] = value


def _apply_device_overrides(data: dict) -> None:
    matrix = data.get("matrix") or {}
    for env_name, field in (("MATRIX_HOST", "host"), ("MATRIX_PORT", "port")):
        value = os.environ.get(env_name)
        if value:
            matrix[field] = value
    data["matrix"] = matrix
