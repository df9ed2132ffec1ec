"""Configuration for factorial-de."""

from factorial_de.config.settings import Settings, get_settings, settings

__all__ = ["Settings", "get_settings", "settings"]
