"""
Utilities for factorial-de.

- Logging configuration
"""

from .logger import get_logger, route_to_root, set_package_level

__all__ = ["get_logger", "route_to_root", "set_package_level"]
