"""Version information for factorial-de."""

__version__ = "0.3.0"
