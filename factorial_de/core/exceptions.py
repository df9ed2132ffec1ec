"""
Core exceptions for the factorial-de workflow.

This module provides the exception hierarchy used by every stage of the
pipeline, from count import through design construction to result filtering.
All input-validation errors are raised before the statistics backend is
called; numerical errors from the backend libraries propagate unchanged.
"""

from typing import Any, Dict, Optional


class FactorialDEError(Exception):
    """Base exception for all factorial-de errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DesignError(FactorialDEError):
    """Base exception for factor, design matrix and contrast construction."""

    pass


class InvalidGroupingError(DesignError):
    """
    Raised when a run-length grouping does not fit the samples it labels.

    Attributes:
        message: Human-readable error message
        details: Contains, depending on the failure:
            - factor: Name of the factor being encoded
            - n_samples: Number of sample identifiers supplied
            - n_labels: Number of labels produced by the runs
            - unknown_levels: Levels used by runs but absent from the enumeration

    Example:
        try:
            service.encode_factor("treatment", ids, [("Control", 3), ("Treated", 2)])
        except InvalidGroupingError as e:
            print(f"{e.details['n_labels']} labels for {e.details['n_samples']} samples")
    """

    pass


class RankDeficientDesignError(DesignError):
    """
    Raised when a design matrix has aliased or empty columns.

    Attributes:
        message: Human-readable error message
        details: Contains:
            - rank: Numerical rank of the matrix
            - n_columns: Number of coefficient columns
            - empty_columns: Columns with no non-zero entry
            - duplicate_columns: Pairs of identical columns
    """

    pass


class AmbiguousContrastError(DesignError):
    """
    Raised when a group comparison does not resolve to one or two columns.

    Only pairwise group-mean differences are supported; a request that maps
    to zero columns, or to more than two, cannot be expressed.
    """

    pass


class DataError(FactorialDEError):
    """Base exception for count data handling."""

    pass


class CountTableError(DataError):
    """Raised when a count table cannot be read or fails validation."""

    pass


class AnalysisError(FactorialDEError):
    """Raised when the statistics backend is driven with inconsistent inputs."""

    pass


class ResultFilterError(FactorialDEError):
    """Base exception for result table filtering."""

    pass


class InvalidThresholdError(ResultFilterError):
    """Raised when a significance threshold lies outside (0, 1]."""

    pass
