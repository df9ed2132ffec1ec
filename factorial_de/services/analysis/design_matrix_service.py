"""
Design matrix service for factorial differential expression designs.

This module provides the DesignMatrixService that turns categorical factors
into design matrices under two explicit parametrisations: treatment coding
with an intercept (main effects plus pairwise interactions), or one indicator
column per combined group with no intercept.
"""

from itertools import combinations, product
from typing import Any, Dict, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from factorial_de.core import (
    DesignMatrix,
    DesignMode,
    Factor,
    InvalidGroupingError,
    RankDeficientDesignError,
)
from factorial_de.core.models import GROUP_SEPARATOR, INTERCEPT
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)


def main_effect_column(factor: str, level: str) -> str:
    """Column name of the indicator for a non-reference level."""
    return f"{factor}[T.{level}]"


def interaction_column(factor_a: str, level_a: str, factor_b: str, level_b: str) -> str:
    """Column name of the product of two main-effect indicators."""
    return f"{main_effect_column(factor_a, level_a)}:{main_effect_column(factor_b, level_b)}"


def combined_label(levels: Sequence[str]) -> str:
    """Combined-group label for one level per factor, in factor order."""
    return GROUP_SEPARATOR.join(levels)


class DesignMatrixService:
    """
    Service for building and validating design matrices.

    Column names are derived from factor names and levels only, never from
    row data, so contrast lookups by name are stable across runs.
    """

    def __init__(self):
        """Initialize the design matrix service."""
        self.logger = logger

    def build_design_matrix(
        self,
        factors: Sequence[Factor],
        mode: Union[DesignMode, str] = DesignMode.NO_INTERCEPT_COMBINED_GROUP,
    ) -> DesignMatrix:
        """
        Construct a design matrix from one or more factors.

        Args:
            factors: Factors over the same ordered samples
            mode: ``with-intercept`` or ``no-intercept-combined-group``

        Returns:
            DesignMatrix: Validated, full-rank design

        Raises:
            InvalidGroupingError: If no factor is given or the factors cover
                different samples
            RankDeficientDesignError: If any columns are empty or aliased
        """
        mode = DesignMode(mode)
        factors = tuple(factors)
        sample_ids = self._check_factors(factors)

        self.logger.info(
            f"Constructing {mode.value} design from factors "
            f"{[f.name for f in factors]} over {len(sample_ids)} samples..."
        )

        design_df = pd.DataFrame(index=pd.Index(sample_ids, name="sample"))

        if mode is DesignMode.WITH_INTERCEPT:
            design_df[INTERCEPT] = 1.0
            for factor in factors:
                design_df = self._add_main_effect(design_df, factor)
            for factor_a, factor_b in combinations(factors, 2):
                design_df = self._add_interaction(design_df, factor_a, factor_b)
        else:
            group = self.combine_factors(factors)
            for level in group.levels:
                design_df[level] = group.indicator(level)

        design_df = design_df.astype(np.float64)
        self._validate_design_matrix(design_df)

        design = DesignMatrix(frame=design_df, mode=mode, factors=factors)
        self.logger.info(
            f"Design matrix constructed: {design.shape[0]} samples × "
            f"{design.shape[1]} coefficients {design.columns}"
        )
        return design

    def combine_factors(self, factors: Sequence[Factor], name: str = "group") -> Factor:
        """
        Combine factors into a single Group factor.

        Labels join each sample's levels in factor order (``Control.Inland``).
        Levels cover the full cartesian product with the first factor varying
        fastest and the last factor slowest.
        """
        factors = tuple(factors)
        sample_ids = self._check_factors(factors)

        values = tuple(
            combined_label(levels) for levels in zip(*(f.values for f in factors))
        )
        # product() varies its last argument fastest, so feed factors reversed
        levels = tuple(
            combined_label(tuple(reversed(combo)))
            for combo in product(*(f.levels for f in reversed(factors)))
        )
        if len(set(levels)) != len(levels):
            collided = sorted({label for label in levels if levels.count(label) > 1})
            raise InvalidGroupingError(
                f"Combined group labels are ambiguous: {collided}. Levels joined "
                f"with '{GROUP_SEPARATOR}' must identify a single combination",
                details={"factors": [f.name for f in factors], "collisions": collided},
            )
        return Factor(name=name, values=values, levels=levels, sample_ids=sample_ids)

    def _check_factors(self, factors: Tuple[Factor, ...]) -> Tuple[str, ...]:
        if not factors:
            raise InvalidGroupingError("At least one factor is required")

        names = [f.name for f in factors]
        if len(set(names)) != len(names):
            raise InvalidGroupingError(
                f"Factor names must be unique: {names}", details={"factors": names}
            )

        sample_ids = factors[0].sample_ids
        for factor in factors[1:]:
            if factor.sample_ids != sample_ids:
                raise InvalidGroupingError(
                    f"Factor '{factor.name}' covers different samples than "
                    f"'{factors[0].name}'",
                    details={
                        "factor": factor.name,
                        "n_samples": len(sample_ids),
                        "n_labels": factor.n_samples,
                    },
                )
        return sample_ids

    def _add_main_effect(self, design_df: pd.DataFrame, factor: Factor) -> pd.DataFrame:
        """Add one indicator per non-reference level."""
        for level in factor.levels[1:]:
            design_df[main_effect_column(factor.name, level)] = factor.indicator(level)
        return design_df

    def _add_interaction(
        self, design_df: pd.DataFrame, factor_a: Factor, factor_b: Factor
    ) -> pd.DataFrame:
        """Add products of every pair of non-reference levels of two factors."""
        for level_a in factor_a.levels[1:]:
            for level_b in factor_b.levels[1:]:
                name = interaction_column(factor_a.name, level_a, factor_b.name, level_b)
                design_df[name] = factor_a.indicator(level_a) * factor_b.indicator(
                    level_b
                )
        return design_df

    def _validate_design_matrix(self, design_df: pd.DataFrame) -> None:
        """Fail fast on designs the model fit cannot estimate."""
        design_matrix = design_df.to_numpy(dtype=np.float64)
        column_names = list(design_df.columns)

        if design_matrix.shape[1] == 0:
            raise RankDeficientDesignError("Design matrix has no columns")

        empty_columns = [
            name
            for name, col in zip(column_names, design_matrix.T)
            if not np.any(col)
        ]
        duplicate_columns = [
            (column_names[i], column_names[j])
            for i, j in combinations(range(len(column_names)), 2)
            if np.array_equal(design_matrix[:, i], design_matrix[:, j])
        ]

        rank = int(np.linalg.matrix_rank(design_matrix))
        n_cols = design_matrix.shape[1]

        if rank < n_cols or empty_columns or duplicate_columns:
            reasons = []
            if empty_columns:
                reasons.append(f"empty columns {empty_columns}")
            if duplicate_columns:
                reasons.append(f"identical columns {duplicate_columns}")
            if design_matrix.shape[0] < n_cols:
                reasons.append(
                    f"{design_matrix.shape[0]} samples for {n_cols} coefficients"
                )
            if not reasons:
                reasons.append("linearly dependent columns")
            raise RankDeficientDesignError(
                f"Design matrix is rank deficient: rank {rank} < {n_cols} columns "
                f"({'; '.join(reasons)})",
                details={
                    "rank": rank,
                    "n_columns": n_cols,
                    "empty_columns": empty_columns,
                    "duplicate_columns": duplicate_columns,
                },
            )

    def validate_experimental_design(
        self, factors: Sequence[Factor], min_replicates: int = 2
    ) -> Dict[str, Any]:
        """
        Validate replication across the full factor cross.

        Args:
            factors: Factors over the same samples
            min_replicates: Minimum samples per combination of levels

        Returns:
            Dict[str, Any]: Validation results
        """
        try:
            group = self.combine_factors(factors)

            validation_results = {
                "valid": True,
                "warnings": [],
                "errors": [],
                "design_summary": {},
            }

            counts = group.level_counts()
            validation_results["design_summary"] = counts

            empty = [label for label, n in counts.items() if n == 0]
            if empty:
                validation_results["valid"] = False
                validation_results["errors"].append(
                    f"Combinations without samples: {empty}"
                )

            thin = {label: n for label, n in counts.items() if 0 < n < min_replicates}
            if thin:
                validation_results["warnings"].append(
                    f"Combinations with <{min_replicates} replicates: {thin}"
                )

            if len(set(n for n in counts.values() if n)) > 1:
                validation_results["warnings"].append(f"Unbalanced design: {counts}")

            return validation_results

        except Exception as e:
            return {
                "valid": False,
                "errors": [str(e)],
                "warnings": [],
                "design_summary": {},
            }

    def preview_design_matrix(self, design: DesignMatrix, max_rows: int = 5) -> str:
        """
        Generate human-readable preview of a design matrix.

        Args:
            design: Design built by build_design_matrix()
            max_rows: Maximum rows to show in preview

        Returns:
            str: Formatted design matrix preview
        """
        design_df = design.to_frame()

        preview = f"Design Matrix Preview ({design_df.shape[0]} × {design_df.shape[1]}, {design.mode.value}):\n\n"
        preview += design_df.head(max_rows).to_string(
            float_format=lambda x: f"{x:.0f}"
        )
        if len(design_df) > max_rows:
            preview += f"\n... and {len(design_df) - max_rows} more rows"

        preview += "\n\nColumn Explanations:\n"
        for col in design_df.columns:
            preview += f"• {col}: {self.explain_column(design, col)}\n"

        preview += "\nDesign Properties:\n"
        preview += f"• Matrix rank: {design.rank}/{design.n_coefficients}\n"
        preview += f"• Residual degrees of freedom: {design.shape[0] - design.n_coefficients}\n"
        return preview

    def explain_column(self, design: DesignMatrix, column: str) -> str:
        if column == INTERCEPT:
            references = ", ".join(f"{f.name}={f.reference}" for f in design.factors)
            return f"Baseline mean ({references})"
        if ":" in column:
            return f"Interaction between {' and '.join(column.split(':'))}"
        if "[T." in column:
            var_name, level_name = column.split("[T.", 1)
            return f"Effect of {var_name}={level_name.rstrip(']')} vs reference"
        return "Mean of combined group"
