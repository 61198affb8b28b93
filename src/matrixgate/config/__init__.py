"""Configuration management for matrixgate.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides for the device address and
any prefixed setting.
"""

from matrixgate.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
