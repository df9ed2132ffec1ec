"""
factorial-de core module with the exception hierarchy and data model.
"""

from factorial_de.core.exceptions import (
    AmbiguousContrastError,
    AnalysisError,
    CountTableError,
    DataError,
    DesignError,
    FactorialDEError,
    InvalidGroupingError,
    InvalidThresholdError,
    RankDeficientDesignError,
    ResultFilterError,
)
from factorial_de.core.models import (
    Contrast,
    DesignMatrix,
    DesignMode,
    Factor,
    Location,
    ResultRow,
    Sample,
    Treatment,
)

__all__ = [
    # Exceptions
    "FactorialDEError",
    "DesignError",
    "InvalidGroupingError",
    "RankDeficientDesignError",
    "AmbiguousContrastError",
    "DataError",
    "CountTableError",
    "AnalysisError",
    "ResultFilterError",
    "InvalidThresholdError",
    # Data model
    "Treatment",
    "Location",
    "Sample",
    "Factor",
    "DesignMode",
    "DesignMatrix",
    "Contrast",
    "ResultRow",
]
