"""
Application settings and configuration.

This module centralizes the analysis defaults (significance threshold,
expression filter, p-value adjustment) with environment variable and
``.env`` overrides.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

from dotenv import load_dotenv

SUPPORTED_ADJUST_METHODS = ("BH", "BY", "bonferroni", "holm")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings:
    """
    Application settings with environment variable support.

    Every value falls back to a workshop default when the matching
    ``FACTORIAL_DE_*`` variable is unset.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        self._parse_errors: List[str] = []

        # Logging settings
        self.LOG_LEVEL = os.environ.get("FACTORIAL_DE_LOG_LEVEL", "WARNING").upper()

        # Analysis defaults
        self.FDR_THRESHOLD = self._env_number("FACTORIAL_DE_FDR_THRESHOLD", 0.05, float)
        self.MIN_CPM = self._env_number("FACTORIAL_DE_MIN_CPM", 1.0, float)
        self.MIN_SAMPLES = self._env_number("FACTORIAL_DE_MIN_SAMPLES", 3, int)
        self.ADJUST_METHOD = os.environ.get("FACTORIAL_DE_ADJUST_METHOD", "BH")
        self.N_CPUS = self._env_number("FACTORIAL_DE_N_CPUS", 1, int)

        # Count table layout (featureCounts: Geneid Chr Start End Strand Length)
        self.DESCRIPTOR_COLUMNS = self._env_number(
            "FACTORIAL_DE_DESCRIPTOR_COLUMNS", 6, int
        )

        # Relative --output and --snapshot paths are resolved against this
        self.WORKSPACE = Path(
            os.environ.get("FACTORIAL_DE_WORKSPACE", str(Path.cwd()))
        ).expanduser()

        is_valid, error_msg = self.validate_configuration()
        # Reported by the CLI rather than raised at import time
        self._config_error = None if is_valid else error_msg

    def _env_number(self, name: str, default: Any, cast: Callable[[str], Any]) -> Any:
        """Parse a numeric variable, recording unparsable values as errors."""
        raw = os.environ.get(name)
        if raw is None:
            return default
        try:
            return cast(raw)
        except ValueError:
            self._parse_errors.append(f"{name} is not a valid {cast.__name__}: '{raw}'")
            return default

    def validate_configuration(self) -> Tuple[bool, str]:
        """
        Validate the configured values.

        Returns:
            tuple: (is_valid, error_message)
        """
        if self._parse_errors:
            return False, "; ".join(self._parse_errors)
        if self.LOG_LEVEL not in SUPPORTED_LOG_LEVELS:
            return False, f"Unsupported log level: {self.LOG_LEVEL}"
        if not 0 < self.FDR_THRESHOLD <= 1:
            return False, (
                f"FDR threshold must lie in (0, 1], got {self.FDR_THRESHOLD}"
            )
        if self.MIN_CPM < 0:
            return False, f"Minimum CPM must be non-negative, got {self.MIN_CPM}"
        if self.MIN_SAMPLES < 1:
            return False, f"Minimum samples must be >= 1, got {self.MIN_SAMPLES}"
        if self.ADJUST_METHOD not in SUPPORTED_ADJUST_METHODS:
            return False, (
                f"Unsupported adjustment method '{self.ADJUST_METHOD}'. "
                f"Choose one of {list(SUPPORTED_ADJUST_METHODS)}"
            )
        if self.N_CPUS < 1:
            return False, f"N_CPUS must be >= 1, got {self.N_CPUS}"
        if self.DESCRIPTOR_COLUMNS < 1:
            return False, (
                f"Descriptor column count must be >= 1, got {self.DESCRIPTOR_COLUMNS}"
            )
        return True, ""

    @property
    def config_error(self):
        return self._config_error

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if attr.isupper():
                settings_dict[attr] = getattr(self, attr)
        return settings_dict

    def get_setting(self, name: str, default: Any = None) -> Any:
        """
        Get a specific setting.

        Args:
            name: Setting name
            default: Value returned when the setting does not exist

        Returns:
            The setting value or ``default``
        """
        return getattr(self, name, default)


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
