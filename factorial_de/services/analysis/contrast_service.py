"""
Contrast service for pairwise group comparisons.

This module provides the ContrastService that resolves symbolic requests
("Treated vs Control of treatment, within location=Beach") against a
DesignMatrix column layout. Requests are resolved by level name, never by
column position, so reordering factor levels cannot silently change which
coefficients are tested.
"""

from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from factorial_de.core import (
    AmbiguousContrastError,
    Contrast,
    DesignMatrix,
    DesignMode,
)
from factorial_de.core.models import INTERCEPT
from factorial_de.services.analysis.design_matrix_service import (
    combined_label,
    interaction_column,
    main_effect_column,
)
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)

MAX_NONZERO_COLUMNS = 2


class ContrastService:
    """
    Service for turning group comparisons into contrasts.

    Only differences of two group means are supported. A comparison whose
    contrast touches zero columns, or more than two, is rejected.
    """

    def __init__(self):
        """Initialize the contrast service."""
        self.logger = logger

    def resolve_group_comparison(
        self,
        design: DesignMatrix,
        factor: str,
        level_a: str,
        level_b: str,
        within: Optional[Mapping[str, str]] = None,
    ) -> Contrast:
        """
        Resolve "level A vs level B of ``factor``" into a contrast.

        Args:
            design: Design the contrast indexes into
            factor: Factor whose levels are compared
            level_a: Tested level (positive sign)
            level_b: Baseline level (negative sign)
            within: Level of every other factor in the design

        Returns:
            Contrast: Coefficient index when the difference is exactly one
            column with weight +1, otherwise a +1/-1 contrast vector

        Raises:
            AmbiguousContrastError: If the request names unknown factors or
                levels, leaves another factor unpinned, or resolves to zero or
                more than two columns
        """
        within = dict(within or {})
        cell_a, cell_b = self._comparison_cells(design, factor, level_a, level_b, within)

        vector = self._design_row(design, cell_a) - self._design_row(design, cell_b)
        nonzero = np.flatnonzero(vector)
        name = self._contrast_name(factor, level_a, level_b, within)

        if len(nonzero) == 0 or len(nonzero) > MAX_NONZERO_COLUMNS:
            touched = [design.columns[i] for i in nonzero]
            raise AmbiguousContrastError(
                f"Comparison '{name}' resolves to {len(nonzero)} columns {touched}; "
                f"only differences of two group means are supported",
                details={"contrast": name, "columns": touched},
            )

        columns = tuple(design.columns)
        if len(nonzero) == 1 and vector[nonzero[0]] == 1.0:
            contrast = Contrast(name=name, columns=columns, coefficient=int(nonzero[0]))
        else:
            contrast = Contrast(name=name, columns=columns, vector=vector)

        self.logger.info(f"Resolved contrast {contrast.describe()}")
        return contrast

    def resolve_coefficient(self, design: DesignMatrix, name: str) -> Contrast:
        """
        Resolve a single coefficient by column name.

        Raises:
            AmbiguousContrastError: If the design has no such column
        """
        try:
            index = design.column_index(name)
        except KeyError:
            raise AmbiguousContrastError(
                f"Coefficient '{name}' not found. Available: {design.columns}",
                details={"coefficient": name, "columns": design.columns},
            ) from None
        return Contrast(name=name, columns=tuple(design.columns), coefficient=index)

    def resolve_interaction(
        self,
        design: DesignMatrix,
        factor_a: str,
        level_a: str,
        factor_b: str,
        level_b: str,
    ) -> Contrast:
        """
        Resolve the interaction coefficient of two non-reference levels.

        Tests whether the ``factor_a`` effect of ``level_a`` differs between
        the reference level of ``factor_b`` and ``level_b``.

        Raises:
            AmbiguousContrastError: If the design has no intercept or no such
                interaction column
        """
        if design.mode is not DesignMode.WITH_INTERCEPT:
            raise AmbiguousContrastError(
                "Interaction coefficients exist only in with-intercept designs",
                details={"mode": design.mode.value},
            )

        candidates = (
            interaction_column(factor_a, level_a, factor_b, level_b),
            interaction_column(factor_b, level_b, factor_a, level_a),
        )
        for column in candidates:
            if column in design.columns:
                contrast = Contrast(
                    name=f"{factor_a}_{level_a}_x_{factor_b}_{level_b}",
                    columns=tuple(design.columns),
                    coefficient=design.column_index(column),
                )
                self.logger.info(f"Resolved contrast {contrast.describe()}")
                return contrast

        raise AmbiguousContrastError(
            f"No interaction column for {factor_a}={level_a} and {factor_b}={level_b}",
            details={"candidates": list(candidates), "columns": design.columns},
        )

    def _comparison_cells(
        self,
        design: DesignMatrix,
        factor: str,
        level_a: str,
        level_b: str,
        within: Dict[str, str],
    ) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Full level assignments for the two compared groups."""
        factor_names = [f.name for f in design.factors]

        if factor not in factor_names:
            raise AmbiguousContrastError(
                f"Factor '{factor}' is not part of the design. Available: {factor_names}",
                details={"factor": factor, "factors": factor_names},
            )
        levels = design.factor(factor).levels
        for level in (level_a, level_b):
            if level not in levels:
                raise AmbiguousContrastError(
                    f"Level '{level}' not found in factor '{factor}'. Available: {list(levels)}",
                    details={"factor": factor, "level": level},
                )
        if level_a == level_b:
            raise AmbiguousContrastError(
                f"Cannot compare level '{level_a}' of '{factor}' with itself",
                details={"factor": factor, "level": level_a},
            )

        if factor in within:
            raise AmbiguousContrastError(
                f"Compared factor '{factor}' cannot also be held fixed",
                details={"factor": factor},
            )
        unknown = sorted(set(within) - set(factor_names))
        if unknown:
            raise AmbiguousContrastError(
                f"Factors {unknown} are not part of the design",
                details={"factors": unknown},
            )

        others = [name for name in factor_names if name != factor]
        missing = [name for name in others if name not in within]
        if missing:
            raise AmbiguousContrastError(
                f"Comparison of '{factor}' must fix the level of {missing}",
                details={"missing": missing},
            )
        for name in others:
            if within[name] not in design.factor(name).levels:
                raise AmbiguousContrastError(
                    f"Level '{within[name]}' not found in factor '{name}'",
                    details={"factor": name, "level": within[name]},
                )

        cell_a = dict(within, **{factor: level_a})
        cell_b = dict(within, **{factor: level_b})
        return cell_a, cell_b

    def _design_row(self, design: DesignMatrix, cell: Mapping[str, str]) -> np.ndarray:
        """Design row of a sample in ``cell``, derived from column names only."""
        row = np.zeros(design.n_coefficients)

        if design.mode is DesignMode.NO_INTERCEPT_COMBINED_GROUP:
            label = combined_label([cell[f.name] for f in design.factors])
            row[design.column_index(label)] = 1.0
            return row

        active = {INTERCEPT}
        for factor in design.factors:
            level = cell[factor.name]
            if level != factor.reference:
                active.add(main_effect_column(factor.name, level))
        for i, factor_a in enumerate(design.factors):
            for factor_b in design.factors[i + 1 :]:
                level_a, level_b = cell[factor_a.name], cell[factor_b.name]
                if level_a != factor_a.reference and level_b != factor_b.reference:
                    active.add(
                        interaction_column(factor_a.name, level_a, factor_b.name, level_b)
                    )

        for column in active:
            row[design.column_index(column)] = 1.0
        return row

    @staticmethod
    def _contrast_name(
        factor: str, level_a: str, level_b: str, within: Mapping[str, str]
    ) -> str:
        name = f"{factor}_{level_a}_vs_{level_b}"
        if within:
            name += "_in_" + "_".join(f"{k}_{v}" for k, v in within.items())
        return name
