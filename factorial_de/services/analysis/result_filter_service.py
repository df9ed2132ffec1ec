"""
Result filtering for ranked differential expression tables.

Result tables are pandas DataFrames indexed by feature id with at least the
columns ``logFC``, ``PValue`` and ``FDR``. Filtering never re-sorts: rows
keep the order the statistics backend ranked them in.
"""

from typing import Dict, Iterable, List

import pandas as pd

from factorial_de.core import InvalidThresholdError, ResultFilterError, ResultRow
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)

EFFECT_COLUMN = "logFC"
PVALUE_COLUMN = "PValue"
ADJUSTED_COLUMN = "FDR"


class ResultFilterService:
    """Stable filtering, counting and intersection of result tables."""

    def __init__(self):
        """Initialize the result filter service."""
        self.logger = logger

    def filter_results(
        self,
        results: pd.DataFrame,
        threshold: float = 0.05,
        column: str = ADJUSTED_COLUMN,
    ) -> pd.DataFrame:
        """
        Keep rows whose adjusted p-value is at most ``threshold``.

        Args:
            results: Ranked result table
            threshold: Significance threshold in (0, 1]
            column: Adjusted p-value column

        Returns:
            pd.DataFrame: Passing rows in their original relative order

        Raises:
            InvalidThresholdError: If ``threshold`` lies outside (0, 1]
            ResultFilterError: If ``column`` is missing
        """
        self._check_threshold(threshold)
        self._check_columns(results, [column])

        # NaN compares False, so untestable features never pass
        mask = results[column].to_numpy() <= threshold
        filtered = results.loc[mask].copy()

        self.logger.info(
            f"{len(filtered)}/{len(results)} features with {column} <= {threshold}"
        )
        return filtered

    def count_significant(
        self,
        results: pd.DataFrame,
        threshold: float = 0.05,
        column: str = ADJUSTED_COLUMN,
    ) -> int:
        """Number of rows passing ``filter_results`` at ``threshold``."""
        self._check_threshold(threshold)
        self._check_columns(results, [column])
        return int((results[column].to_numpy() <= threshold).sum())

    def intersect_results(self, first: pd.DataFrame, second: pd.DataFrame) -> pd.DataFrame:
        """
        Rows of ``first`` whose feature id also appears in ``second``.

        Identifiers are matched by exact equality; the order of ``first``
        is kept.
        """
        shared = first.index.isin(second.index)
        intersection = first.loc[shared].copy()
        self.logger.info(
            f"{len(intersection)} features shared between tables of "
            f"{len(first)} and {len(second)} rows"
        )
        return intersection

    def summarize_directions(
        self,
        results: pd.DataFrame,
        threshold: float = 0.05,
        effect_column: str = EFFECT_COLUMN,
        column: str = ADJUSTED_COLUMN,
    ) -> Dict[str, int]:
        """
        Count significant features by direction of change.

        Returns:
            Dict[str, int]: ``up``, ``down`` and ``not_significant`` counts
        """
        self._check_threshold(threshold)
        self._check_columns(results, [effect_column, column])

        significant = results[column].to_numpy() <= threshold
        effect = results[effect_column].to_numpy()
        up = int((significant & (effect > 0)).sum())
        down = int((significant & (effect < 0)).sum())
        return {
            "up": up,
            "down": down,
            "not_significant": len(results) - up - down,
        }

    def results_to_rows(self, results: pd.DataFrame) -> List[ResultRow]:
        """Row view of a result table."""
        self._check_columns(results, [EFFECT_COLUMN, PVALUE_COLUMN, ADJUSTED_COLUMN])
        return [
            ResultRow(
                feature_id=str(feature_id),
                effect_size=float(row[EFFECT_COLUMN]),
                p_value=float(row[PVALUE_COLUMN]),
                adjusted_p_value=float(row[ADJUSTED_COLUMN]),
            )
            for feature_id, row in results.iterrows()
        ]

    def rows_to_results(self, rows: Iterable[ResultRow]) -> pd.DataFrame:
        """Result table from ResultRow objects, keeping their order."""
        rows = list(rows)
        return pd.DataFrame(
            {
                EFFECT_COLUMN: [row.effect_size for row in rows],
                PVALUE_COLUMN: [row.p_value for row in rows],
                ADJUSTED_COLUMN: [row.adjusted_p_value for row in rows],
            },
            index=pd.Index([row.feature_id for row in rows], name="feature_id"),
        )

    @staticmethod
    def _check_threshold(threshold: float) -> None:
        if not 0 < threshold <= 1:
            raise InvalidThresholdError(
                f"Threshold must lie in (0, 1], got {threshold}",
                details={"threshold": threshold},
            )

    @staticmethod
    def _check_columns(results: pd.DataFrame, columns: List[str]) -> None:
        missing = [col for col in columns if col not in results.columns]
        if missing:
            raise ResultFilterError(
                f"Result table is missing columns {missing}. "
                f"Available: {list(results.columns)}",
                details={"missing": missing},
            )
