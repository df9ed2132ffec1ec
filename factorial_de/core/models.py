"""
Data model for factorial differential expression designs.

Samples, factors, design matrices, contrasts and result rows are immutable
value objects: every pipeline stage builds new instances rather than
mutating the ones it received.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

INTERCEPT = "(Intercept)"
GROUP_SEPARATOR = "."


class Treatment(str, Enum):
    """Treatment arm of a sample."""

    CONTROL = "Control"
    TREATED = "Treated"


class Location(str, Enum):
    """Collection site (genotype) of a sample."""

    INLAND = "Inland"
    BEACH = "Beach"


class DesignMode(str, Enum):
    """Parametrisation used when turning factors into a design matrix."""

    WITH_INTERCEPT = "with-intercept"
    NO_INTERCEPT_COMBINED_GROUP = "no-intercept-combined-group"


@dataclass(frozen=True)
class Sample:
    """One sequenced biological replicate."""

    sample_id: str
    treatment: Treatment
    location: Location

    @property
    def group(self) -> str:
        """Combined treatment/location label, e.g. ``Treated.Beach``."""
        return f"{self.treatment.value}{GROUP_SEPARATOR}{self.location.value}"


@dataclass(frozen=True)
class Factor:
    """
    Named categorical variable over an ordered set of samples.

    Attributes:
        name: Factor name, used to derive design column names
        values: One level per sample, in sample order
        levels: Ordered levels; the first one is the reference level
        sample_ids: Sample identifiers the values are aligned with
    """

    name: str
    values: Tuple[str, ...]
    levels: Tuple[str, ...]
    sample_ids: Tuple[str, ...]

    def __post_init__(self):
        if len(self.values) != len(self.sample_ids):
            raise ValueError(
                f"Factor '{self.name}' has {len(self.values)} values for "
                f"{len(self.sample_ids)} samples"
            )
        if len(set(self.levels)) != len(self.levels):
            raise ValueError(
                f"Factor '{self.name}' declares duplicated levels: {list(self.levels)}"
            )
        unknown = sorted(set(self.values) - set(self.levels))
        if unknown:
            raise ValueError(f"Factor '{self.name}' uses undeclared levels: {unknown}")

    @property
    def reference(self) -> str:
        return self.levels[0]

    @property
    def n_samples(self) -> int:
        return len(self.values)

    def indicator(self, level: str) -> np.ndarray:
        """0/1 vector marking the samples at ``level``."""
        return np.array([value == level for value in self.values], dtype=np.float64)

    def level_counts(self) -> Dict[str, int]:
        """Number of samples per level, in level order (zero counts included)."""
        return {level: self.values.count(level) for level in self.levels}

    def to_series(self) -> pd.Series:
        """Ordered categorical Series indexed by sample id."""
        return pd.Series(
            pd.Categorical(self.values, categories=list(self.levels), ordered=False),
            index=list(self.sample_ids),
            name=self.name,
        )


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """
    Design matrix with one row per sample and one column per coefficient.

    The underlying frame is never handed out directly; accessors return
    copies so a built design cannot be altered after validation.
    """

    frame: pd.DataFrame
    mode: DesignMode
    factors: Tuple[Factor, ...] = field(default_factory=tuple)

    @property
    def columns(self) -> List[str]:
        return list(self.frame.columns)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.frame.index)

    @property
    def values(self) -> np.ndarray:
        return self.frame.to_numpy(dtype=np.float64, copy=True)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.frame.shape

    @property
    def n_coefficients(self) -> int:
        return self.frame.shape[1]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.values))

    @property
    def has_intercept(self) -> bool:
        return INTERCEPT in self.frame.columns

    def column_index(self, name: str) -> int:
        """Position of coefficient ``name``; raises KeyError if absent."""
        try:
            return self.columns.index(name)
        except ValueError:
            raise KeyError(name) from None

    def factor(self, name: str) -> Factor:
        for factor in self.factors:
            if factor.name == name:
                return factor
        raise KeyError(name)

    def to_frame(self) -> pd.DataFrame:
        return self.frame.copy()


@dataclass(frozen=True, eq=False)
class Contrast:
    """
    Comparison handed to the statistics backend.

    Exactly one of ``coefficient`` (index into ``columns``) or ``vector``
    (weights over ``columns``) is set.
    """

    name: str
    columns: Tuple[str, ...]
    coefficient: Optional[int] = None
    vector: Optional[np.ndarray] = None

    def __post_init__(self):
        if (self.coefficient is None) == (self.vector is None):
            raise ValueError("Contrast needs exactly one of coefficient or vector")
        if self.coefficient is not None and not 0 <= self.coefficient < len(
            self.columns
        ):
            raise ValueError(
                f"Coefficient index {self.coefficient} out of range for "
                f"{len(self.columns)} columns"
            )
        if self.vector is not None:
            vector = np.array(self.vector, dtype=np.float64)
            if vector.shape != (len(self.columns),):
                raise ValueError(
                    f"Contrast vector has shape {vector.shape}, expected ({len(self.columns)},)"
                )
            vector.setflags(write=False)
            object.__setattr__(self, "vector", vector)

    @property
    def is_coefficient(self) -> bool:
        return self.coefficient is not None

    def as_vector(self) -> np.ndarray:
        """Contrast as a weight vector (unit vector for a coefficient)."""
        if self.is_coefficient:
            vector = np.zeros(len(self.columns))
            vector[self.coefficient] = 1.0
            return vector
        return np.array(self.vector, dtype=np.float64)

    @property
    def nonzero_columns(self) -> List[str]:
        vector = self.as_vector()
        return [col for col, weight in zip(self.columns, vector) if weight != 0]

    def describe(self) -> str:
        if self.is_coefficient:
            return f"{self.name}: coefficient {self.columns[self.coefficient]}"
        terms = [
            f"{'+' if weight > 0 else '-'}{abs(weight):g}*{col}"
            for col, weight in zip(self.columns, self.vector)
            if weight != 0
        ]
        return f"{self.name}: {' '.join(terms)}"


@dataclass(frozen=True)
class ResultRow:
    """Feature-level test statistics."""

    feature_id: str
    effect_size: float
    p_value: float
    adjusted_p_value: float
