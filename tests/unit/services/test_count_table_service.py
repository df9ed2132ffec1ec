"""
Unit tests for the count table service.

Tests reading featureCounts-style tables into AnnData, attaching factors,
CPM computation and filtering, and h5ad snapshots.
"""

import numpy as np
import pandas as pd
import pytest

from factorial_de.core import CountTableError
from factorial_de.services.data_management.count_table_service import (
    FACTOR_LEVELS_KEY,
    CountTableService,
)


@pytest.fixture
def count_service():
    return CountTableService()


def write_table(path, frame, comment=None):
    with open(path, "w") as handle:
        if comment:
            handle.write(comment + "\n")
        frame.to_csv(handle, sep="\t", index=False)
    return path


@pytest.mark.unit
class TestLoadCountTable:
    """Test reading tab-separated count tables."""

    def test_featurecounts_table(self, count_service, count_table_path, count_matrix):
        """Test that descriptors go to var and counts to X (samples × features)."""
        adata = count_service.load_count_table(count_table_path)

        assert adata.shape == (12, 40)
        assert list(adata.obs_names) == list(count_matrix.columns)
        assert list(adata.var_names) == list(count_matrix.index)
        assert list(adata.var.columns) == ["Chr", "Start", "End", "Strand", "Length"]
        assert adata.X.dtype == np.float64
        np.testing.assert_array_equal(adata.X, count_matrix.T.to_numpy())

    def test_feature_column(self, count_service, count_table_path):
        """Test choosing another descriptor column as feature id."""
        adata = count_service.load_count_table(count_table_path, feature_column="Start")

        assert adata.var_names[0] == "1"
        assert "Geneid" in adata.var.columns

    def test_sample_names(self, count_service, count_table_path):
        """Test replacing the sample headers."""
        names = [f"lib{i}" for i in range(12)]

        adata = count_service.load_count_table(count_table_path, sample_names=names)

        assert list(adata.obs_names) == names

    def test_sample_names_length(self, count_service, count_table_path):
        """Test that replacement names must match the sample columns."""
        with pytest.raises(CountTableError, match="sample names"):
            count_service.load_count_table(count_table_path, sample_names=["a", "b"])

    def test_missing_file(self, count_service, tmp_path):
        """Test that a missing table is reported."""
        with pytest.raises(CountTableError, match="not found"):
            count_service.load_count_table(tmp_path / "absent.tsv")

    def test_too_few_columns(self, count_service, tmp_path):
        """Test that at least one sample column must follow the descriptors."""
        path = write_table(
            tmp_path / "short.tsv", pd.DataFrame({"Geneid": ["g1"], "Length": [100]})
        )

        with pytest.raises(CountTableError, match="descriptor columns"):
            count_service.load_count_table(path, n_descriptor_columns=2)

    def test_duplicated_features(self, count_service, tmp_path):
        """Test that feature ids must be unique."""
        path = write_table(
            tmp_path / "dup.tsv",
            pd.DataFrame({"Geneid": ["g1", "g1"], "S1": [1, 2], "S2": [3, 4]}),
        )

        with pytest.raises(CountTableError) as exc_info:
            count_service.load_count_table(path, n_descriptor_columns=1)

        assert exc_info.value.details["duplicated"] == ["g1"]

    def test_non_numeric_counts(self, count_service, tmp_path):
        """Test that sample columns must be numeric."""
        path = write_table(
            tmp_path / "text.tsv",
            pd.DataFrame({"Geneid": ["g1", "g2"], "S1": [1, 2], "S2": ["x", "4"]}),
        )

        with pytest.raises(CountTableError, match="non-numeric"):
            count_service.load_count_table(path, n_descriptor_columns=1)

    def test_negative_counts(self, count_service, tmp_path):
        """Test that counts cannot be negative."""
        path = write_table(
            tmp_path / "neg.tsv",
            pd.DataFrame({"Geneid": ["g1", "g2"], "S1": [1, -2], "S2": [3, 4]}),
        )

        with pytest.raises(CountTableError, match="negative"):
            count_service.load_count_table(path, n_descriptor_columns=1)


@pytest.mark.unit
class TestAttachFactors:
    """Test annotating samples with factors."""

    def test_attach_factors(self, count_service, count_adata, workshop_factors):
        """Test categorical obs columns and stored level order."""
        annotated = count_service.attach_factors(count_adata, workshop_factors)

        assert list(annotated.obs["treatment"].cat.categories) == ["Control", "Treated"]
        assert annotated.obs.loc["S04", "treatment"] == "Treated"
        assert annotated.uns[FACTOR_LEVELS_KEY]["location"] == ["Inland", "Beach"]
        assert "treatment" not in count_adata.obs.columns

    def test_sample_mismatch(self, count_service, count_adata, encoder):
        """Test that factor samples must match the table in order."""
        reversed_ids = list(count_adata.obs_names)[::-1]
        factor = encoder.encode_factor("treatment", reversed_ids, [("Control", 12)])

        with pytest.raises(CountTableError, match="do not match"):
            count_service.attach_factors(count_adata, [factor])

    def test_factors_from_obs(self, count_service, count_adata, workshop_factors):
        """Test rebuilding factors from annotated observations."""
        annotated = count_service.attach_factors(count_adata, workshop_factors)

        factors = count_service.factors_from_obs(annotated, ["treatment", "location"])

        assert tuple(factors) == tuple(workshop_factors)

    def test_factors_from_obs_unknown(self, count_service, count_adata):
        """Test that missing obs columns are reported."""
        with pytest.raises(CountTableError, match="not found"):
            count_service.factors_from_obs(count_adata, ["treatment"])


@pytest.mark.unit
class TestCpm:
    """Test counts-per-million normalisation and filtering."""

    def test_cpm_columns_sum_to_a_million(self, count_service, count_adata):
        """Test that CPM columns sum to 1e6 per sample."""
        cpm = count_service.cpm(count_adata)

        assert cpm.shape == (40, 12)
        np.testing.assert_allclose(cpm.sum(axis=0), 1e6)

    def test_log_cpm_is_finite(self, count_service, count_adata):
        """Test that the prior count keeps zero counts finite."""
        log_cpm = count_service.cpm(count_adata, log=True)

        assert np.isfinite(log_cpm.to_numpy()).all()

    def test_zero_library(self, count_service, count_adata):
        """Test that empty libraries are rejected."""
        adata = count_adata.copy()
        adata.X[0, :] = 0

        with pytest.raises(CountTableError, match="zero library size"):
            count_service.cpm(adata)

    def test_filter_by_cpm(self, count_service, count_adata):
        """Test that the unexpressed features are removed."""
        filtered, stats = count_service.filter_by_cpm(count_adata, min_cpm=1.0, min_samples=3)

        assert filtered.n_vars == 38
        assert "GENE_039" not in filtered.var_names
        assert stats == {
            "min_cpm": 1.0,
            "min_samples": 3,
            "n_features_before": 40,
            "n_features_after": 38,
            "n_features_removed": 2,
        }
        assert count_adata.n_vars == 40

    def test_filter_keeps_annotations(self, count_service, count_adata, workshop_factors):
        """Test that obs, var and uns survive filtering."""
        annotated = count_service.attach_factors(count_adata, workshop_factors)

        filtered, _ = count_service.filter_by_cpm(annotated)

        assert "treatment" in filtered.obs.columns
        assert "Length" in filtered.var.columns
        assert FACTOR_LEVELS_KEY in filtered.uns

    @pytest.mark.parametrize("min_samples", [0, 13])
    def test_invalid_min_samples(self, count_service, count_adata, min_samples):
        """Test that min_samples must lie between 1 and the sample count."""
        with pytest.raises(CountTableError, match="min_samples"):
            count_service.filter_by_cpm(count_adata, min_samples=min_samples)

    def test_nothing_passes(self, count_service, count_adata):
        """Test that a filter removing every feature is reported."""
        with pytest.raises(CountTableError, match="No feature") as exc_info:
            count_service.filter_by_cpm(count_adata, min_cpm=1e9)

        assert exc_info.value.details["n_features_before"] == 40
        assert exc_info.value.details["min_cpm"] == 1e9


@pytest.mark.unit
class TestSnapshots:
    """Test h5ad snapshots of prepared data."""

    def test_round_trip(self, count_service, count_adata, workshop_factors, tmp_path):
        """Test that counts and factors survive a snapshot."""
        annotated = count_service.attach_factors(count_adata, workshop_factors)
        path = count_service.save_snapshot(annotated, tmp_path / "nested" / "prep.h5ad")

        restored = count_service.load_snapshot(path)

        assert path.exists()
        np.testing.assert_array_equal(restored.X, annotated.X)
        assert list(restored.obs_names) == list(annotated.obs_names)
        assert tuple(
            count_service.factors_from_obs(restored, ["treatment", "location"])
        ) == tuple(workshop_factors)

    def test_missing_snapshot(self, count_service, tmp_path):
        """Test that a missing snapshot is reported."""
        with pytest.raises(CountTableError, match="Snapshot not found"):
            count_service.load_snapshot(tmp_path / "absent.h5ad")
