"""
Unit tests for the differential expression workflow service.

The statistics backend is replaced by a mock so these tests cover the
orchestration only: stage order, fail-fast validation, error wrapping and
the stats dictionaries returned to callers.
"""

from unittest.mock import Mock

import numpy as np
import pandas as pd
import pytest

from factorial_de.core import (
    AmbiguousContrastError,
    AnalysisError,
    CountTableError,
    DesignMode,
    RankDeficientDesignError,
)
from factorial_de.services.analysis.differential_expression_service import (
    DifferentialExpressionService,
)
from factorial_de.services.analysis.statistics_backend import StatisticsBackend


@pytest.fixture
def lrt_results():
    """Raw LRT output for four features."""
    return pd.DataFrame(
        {
            "logFC": [0.1, 2.0, -1.5, 0.3],
            "logCPM": [5.0, 6.0, 7.0, 4.0],
            "LR": [0.5, 40.0, 25.0, 2.0],
            "PValue": [0.48, 2e-10, 6e-7, 0.16],
        },
        index=pd.Index(["g1", "g2", "g3", "g4"], name="feature_id"),
    )


@pytest.fixture
def mock_backend(lrt_results):
    """Backend mock whose adjust/rank steps run the real implementations."""
    real = StatisticsBackend()
    backend = Mock(spec=StatisticsBackend)
    backend.estimate_dispersion.return_value = Mock(name="dispersion")
    backend.fit_model.return_value = Mock(name="fitted")
    backend.likelihood_ratio_test.return_value = lrt_results
    backend.adjust_p_values.side_effect = real.adjust_p_values
    backend.top_tags.side_effect = real.top_tags
    return backend


@pytest.fixture
def de_service(mock_backend):
    return DifferentialExpressionService(backend=mock_backend)


@pytest.mark.unit
class TestPrepare:
    """Test design construction and count filtering."""

    def test_prepare(self, de_service, count_adata, workshop_factors):
        """Test that prepare annotates, filters and builds the design."""
        filtered, design, prep_stats = de_service.prepare(count_adata, workshop_factors)

        assert design.columns == [
            "Control.Inland",
            "Treated.Inland",
            "Control.Beach",
            "Treated.Beach",
        ]
        assert list(filtered.obs_names) == design.sample_ids
        assert "treatment" in filtered.obs.columns
        assert prep_stats["design_mode"] == "no-intercept-combined-group"
        assert prep_stats["n_features_after"] == 38
        assert prep_stats["design_summary"]["Treated.Beach"] == 3

    def test_design_error_before_filtering(self, de_service, count_adata, encoder, sample_ids):
        """Test that an invalid design fails before the counts are touched."""
        treatment = encoder.encode_factor("treatment", sample_ids, [("Control", 6), ("Treated", 6)])
        location = encoder.encode_factor("location", sample_ids, [("Inland", 6), ("Beach", 6)])
        de_service.count_service = Mock(wraps=de_service.count_service)

        with pytest.raises(RankDeficientDesignError):
            de_service.prepare(count_adata, [treatment, location])

        de_service.count_service.filter_by_cpm.assert_not_called()

    def test_sample_mismatch(self, de_service, count_adata, encoder):
        """Test that factors must label the count table's samples."""
        factor = encoder.encode_factor(
            "treatment", [f"X{i}" for i in range(12)], [("Control", 6), ("Treated", 6)]
        )

        with pytest.raises(CountTableError):
            de_service.prepare(count_adata, [factor])

    def test_empty_filter_skips_fitting(
        self, de_service, mock_backend, count_adata, workshop_factors
    ):
        """Test that a comparison with no expressed features stops before fitting."""
        with pytest.raises(CountTableError, match="No feature"):
            de_service.run_comparison(
                count_adata,
                workshop_factors,
                "treatment",
                "Treated",
                "Control",
                within={"location": "Inland"},
                min_cpm=1e9,
            )

        mock_backend.estimate_dispersion.assert_not_called()


@pytest.mark.unit
class TestTestContrast:
    """Test the LRT, adjustment and ranking stage."""

    def test_ranked_results_and_stats(self, de_service, mock_backend, group_design):
        """Test ranking, adjustment and the returned stats."""
        contrast = de_service.resolve_contrast(
            group_design, "treatment", "Treated", "Control", {"location": "Inland"}
        )
        fitted = mock_backend.fit_model.return_value

        ranked, de_stats = de_service.test_contrast(fitted, contrast, threshold=0.05)

        mock_backend.likelihood_ratio_test.assert_called_once_with(fitted, contrast)
        assert ranked.index.tolist() == ["g2", "g3", "g4", "g1"]
        assert "FDR" in ranked.columns
        assert de_stats["analysis_type"] == "likelihood_ratio_test"
        assert de_stats["contrast"] == "treatment_Treated_vs_Control_in_location_Inland"
        assert de_stats["contrast_columns"] == ["Control.Inland", "Treated.Inland"]
        assert de_stats["n_features_tested"] == 4
        assert de_stats["n_significant"] == 2
        assert de_stats["n_up"] == 1
        assert de_stats["n_down"] == 1
        assert de_stats["top_features"] == ["g2", "g3"]

    def test_unexpected_errors_are_wrapped(self, de_service, mock_backend, group_design):
        """Test that library failures surface as AnalysisError."""
        mock_backend.likelihood_ratio_test.side_effect = np.linalg.LinAlgError("singular")
        contrast = de_service.resolve_contrast(
            group_design, "treatment", "Treated", "Control", {"location": "Inland"}
        )

        with pytest.raises(AnalysisError, match="singular"):
            de_service.test_contrast(Mock(), contrast)

    def test_own_errors_pass_through(self, de_service, mock_backend, group_design):
        """Test that package errors are not re-wrapped."""
        mock_backend.adjust_p_values.side_effect = AnalysisError("Unknown adjustment method 'x'")
        contrast = de_service.resolve_contrast(
            group_design, "treatment", "Treated", "Control", {"location": "Inland"}
        )

        with pytest.raises(AnalysisError, match="^Unknown adjustment method"):
            de_service.test_contrast(Mock(), contrast, method="x")


@pytest.mark.unit
class TestRunComparison:
    """Test the complete workflow."""

    def test_run_comparison(self, de_service, mock_backend, count_adata, workshop_factors):
        """Test that stages run in order and stats are merged."""
        ranked, stats = de_service.run_comparison(
            count_adata,
            workshop_factors,
            "treatment",
            "Treated",
            "Control",
            within={"location": "Beach"},
        )

        mock_backend.estimate_dispersion.assert_called_once()
        filtered, design = mock_backend.estimate_dispersion.call_args[0]
        assert filtered.n_vars == 38
        assert design.mode is DesignMode.NO_INTERCEPT_COMBINED_GROUP
        mock_backend.fit_model.assert_called_once_with(
            filtered, mock_backend.estimate_dispersion.return_value, design
        )

        contrast = mock_backend.likelihood_ratio_test.call_args[0][1]
        np.testing.assert_array_equal(contrast.as_vector(), [0, 0, -1, 1])
        assert stats["n_features_after"] == 38
        assert stats["n_significant"] == 2
        assert len(ranked) == 4

    def test_with_intercept_mode(self, de_service, mock_backend, count_adata, workshop_factors):
        """Test that the reference-stratum comparison becomes a coefficient."""
        de_service.run_comparison(
            count_adata,
            workshop_factors,
            "treatment",
            "Treated",
            "Control",
            within={"location": "Inland"},
            mode=DesignMode.WITH_INTERCEPT,
        )

        contrast = mock_backend.likelihood_ratio_test.call_args[0][1]
        assert contrast.is_coefficient
        assert contrast.columns[contrast.coefficient] == "treatment[T.Treated]"

    def test_invalid_contrast_skips_fitting(
        self, de_service, mock_backend, count_adata, workshop_factors
    ):
        """Test that an unresolvable comparison fails before any model is fitted."""
        with pytest.raises(AmbiguousContrastError):
            de_service.run_comparison(
                count_adata, workshop_factors, "treatment", "Treated", "Control"
            )

        mock_backend.estimate_dispersion.assert_not_called()
        mock_backend.fit_model.assert_not_called()
