"""
Differential expression workflow for factorial RNA-Seq designs.

This module provides the DifferentialExpressionService that runs the linear
pipeline for one research question:

    factors → design matrix → contrast
    counts → CPM filter → dispersion → GLM fit → LRT → adjusted, ranked table

Each stage returns new objects; nothing is mutated between stages.
"""

from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import anndata
import pandas as pd

from factorial_de.core import (
    AnalysisError,
    Contrast,
    DesignMatrix,
    DesignMode,
    Factor,
    FactorialDEError,
)
from factorial_de.services.analysis.contrast_service import ContrastService
from factorial_de.services.analysis.design_matrix_service import DesignMatrixService
from factorial_de.services.analysis.result_filter_service import ResultFilterService
from factorial_de.services.analysis.statistics_backend import (
    DispersionModel,
    FittedModel,
    StatisticsBackend,
)
from factorial_de.services.data_management.count_table_service import (
    CountTableService,
)
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)


class DifferentialExpressionService:
    """
    Service running the complete comparison workflow.

    Collaborators can be injected, which is how tests replace the statistics
    backend with a stub.
    """

    def __init__(
        self,
        backend: Optional[StatisticsBackend] = None,
        count_service: Optional[CountTableService] = None,
        design_service: Optional[DesignMatrixService] = None,
        contrast_service: Optional[ContrastService] = None,
        filter_service: Optional[ResultFilterService] = None,
    ):
        """Initialize the service with optional collaborators."""
        self.backend = backend or StatisticsBackend()
        self.count_service = count_service or CountTableService()
        self.design_service = design_service or DesignMatrixService()
        self.contrast_service = contrast_service or ContrastService()
        self.filter_service = filter_service or ResultFilterService()

    def prepare(
        self,
        adata: anndata.AnnData,
        factors: Sequence[Factor],
        mode: Union[DesignMode, str] = DesignMode.NO_INTERCEPT_COMBINED_GROUP,
        min_cpm: float = 1.0,
        min_samples: int = 3,
    ) -> Tuple[anndata.AnnData, DesignMatrix, Dict[str, Any]]:
        """
        Attach factors, filter features and build the design.

        The design is built before any filtering so that design errors
        surface before the count data is touched.

        Returns:
            Tuple[anndata.AnnData, DesignMatrix, Dict[str, Any]]: Filtered
            data, validated design and preparation stats
        """
        design = self.design_service.build_design_matrix(factors, mode)

        validation = self.design_service.validate_experimental_design(factors)
        for warning in validation["warnings"]:
            logger.warning(warning)

        annotated = self.count_service.attach_factors(adata, factors)
        filtered, filter_stats = self.count_service.filter_by_cpm(
            annotated, min_cpm=min_cpm, min_samples=min_samples
        )

        prep_stats = {
            "design_mode": design.mode.value,
            "design_columns": design.columns,
            "design_summary": validation["design_summary"],
            **filter_stats,
        }
        return filtered, design, prep_stats

    def fit(self, adata: anndata.AnnData, design: DesignMatrix) -> FittedModel:
        """Estimate dispersions and fit the full model once per design."""
        dispersion: DispersionModel = self.backend.estimate_dispersion(adata, design)
        return self.backend.fit_model(adata, dispersion, design)

    def resolve_contrast(
        self,
        design: DesignMatrix,
        factor: str,
        level_a: str,
        level_b: str,
        within: Optional[Mapping[str, str]] = None,
    ) -> Contrast:
        return self.contrast_service.resolve_group_comparison(
            design, factor, level_a, level_b, within
        )

    def test_contrast(
        self,
        fitted: FittedModel,
        contrast: Contrast,
        threshold: float = 0.05,
        method: str = "BH",
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run the LRT for ``contrast`` and rank the adjusted results.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: Ranked results (all features)
            and comparison stats
        """
        try:
            raw = self.backend.likelihood_ratio_test(fitted, contrast)
            adjusted = self.backend.adjust_p_values(raw, method=method)
            ranked = self.backend.top_tags(adjusted)

            directions = self.filter_service.summarize_directions(ranked, threshold)
            significant = self.filter_service.filter_results(ranked, threshold)

            de_stats = {
                "analysis_type": "likelihood_ratio_test",
                "contrast": contrast.name,
                "contrast_columns": contrast.nonzero_columns,
                "adjust_method": method,
                "threshold": threshold,
                "n_features_tested": int(ranked["PValue"].notna().sum()),
                "n_significant": len(significant),
                "n_up": directions["up"],
                "n_down": directions["down"],
                "top_features": significant.index[:10].tolist(),
            }
            logger.info(
                f"Contrast {contrast.name}: {de_stats['n_significant']} features "
                f"at FDR <= {threshold} ({directions['up']} up, {directions['down']} down)"
            )
            return ranked, de_stats

        except FactorialDEError:
            raise
        except Exception as e:
            logger.exception(f"Error testing contrast {contrast.name}: {e}")
            raise AnalysisError(f"Testing contrast '{contrast.name}' failed: {e}") from e

    def run_comparison(
        self,
        adata: anndata.AnnData,
        factors: Sequence[Factor],
        factor: str,
        level_a: str,
        level_b: str,
        within: Optional[Mapping[str, str]] = None,
        mode: Union[DesignMode, str] = DesignMode.NO_INTERCEPT_COMBINED_GROUP,
        threshold: float = 0.05,
        method: str = "BH",
        min_cpm: float = 1.0,
        min_samples: int = 3,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run the whole workflow for a single group comparison.

        Design and contrast are validated before any model is fitted; an
        invalid request therefore fails without touching the backend.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: Ranked results and stats
        """
        logger.info(
            f"Comparing {factor}={level_a} vs {level_b}"
            + (f" within {dict(within)}" if within else "")
        )
        filtered, design, prep_stats = self.prepare(
            adata, factors, mode, min_cpm=min_cpm, min_samples=min_samples
        )
        contrast = self.resolve_contrast(design, factor, level_a, level_b, within)

        fitted = self.fit(filtered, design)
        ranked, de_stats = self.test_contrast(
            fitted, contrast, threshold=threshold, method=method
        )
        return ranked, {**prep_stats, **de_stats}
