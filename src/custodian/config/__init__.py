"""Configuration module."""

from custodian.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
