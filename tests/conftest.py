"""
Pytest configuration and shared fixtures for factorial-de tests.

Provides the workshop sample layout (12 samples: Control/Treated × Inland/Beach,
three replicates each), simulated negative-binomial counts, and helpers for
writing count tables and result tables to disk.
"""

import logging
from pathlib import Path
from typing import List

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from factorial_de.core import DesignMode
from factorial_de.services.analysis.design_matrix_service import DesignMatrixService
from factorial_de.services.analysis.factor_encoding_service import (
    FactorEncodingService,
)

logging.getLogger("anndata").setLevel(logging.ERROR)

N_GENES = 40
SEED = 42


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (real backend libraries)"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Sample layout fixtures
# ==============================================================================


@pytest.fixture
def sample_ids() -> List[str]:
    return [f"S{i:02d}" for i in range(1, 13)]


@pytest.fixture
def encoder() -> FactorEncodingService:
    return FactorEncodingService()


@pytest.fixture
def workshop_factors(encoder, sample_ids):
    """(treatment, location) for the 12-sample workshop layout."""
    return encoder.workshop_factors(sample_ids)


@pytest.fixture
def design_service() -> DesignMatrixService:
    return DesignMatrixService()


@pytest.fixture
def group_design(design_service, workshop_factors):
    """No-intercept design with columns Control.Inland, Treated.Inland, ..."""
    return design_service.build_design_matrix(
        workshop_factors, DesignMode.NO_INTERCEPT_COMBINED_GROUP
    )


@pytest.fixture
def interaction_design(design_service, workshop_factors):
    """Intercept + treatment + location + interaction design."""
    return design_service.build_design_matrix(
        workshop_factors, DesignMode.WITH_INTERCEPT
    )


# ==============================================================================
# Count data fixtures
# ==============================================================================


def simulate_counts(sample_ids: List[str], n_genes: int = N_GENES, seed: int = SEED) -> pd.DataFrame:
    """
    Negative-binomial counts (genes × samples) for the workshop layout.

    GENE_000-004 are 4x up in Treated.Inland only, GENE_005-009 are 4x up in
    every Treated sample, and the last two genes are (almost) never expressed.
    """
    rng = np.random.default_rng(seed)
    base = rng.uniform(100, 400, size=n_genes)
    treated = np.array([i in (4, 5, 6, 10, 11, 12) for i in range(1, 13)])
    inland = np.array([i <= 6 for i in range(1, 13)])

    means = np.tile(base[:, None], (1, len(sample_ids)))
    means[0:5, treated & inland] *= 4
    means[5:10, treated] *= 4

    dispersion = 0.05
    p = 1.0 / (1.0 + dispersion * means)
    counts = rng.negative_binomial(1.0 / dispersion, p)
    counts[-2:, :] = 0
    counts[-1, 0] = 1

    return pd.DataFrame(
        counts,
        index=[f"GENE_{i:03d}" for i in range(n_genes)],
        columns=sample_ids,
    )


@pytest.fixture
def count_matrix(sample_ids) -> pd.DataFrame:
    return simulate_counts(sample_ids)


@pytest.fixture
def count_adata(count_matrix) -> ad.AnnData:
    """AnnData (samples × genes) with a Length descriptor in var."""
    return ad.AnnData(
        X=count_matrix.T.to_numpy(dtype=np.float64),
        obs=pd.DataFrame(index=pd.Index(count_matrix.columns, name="sample")),
        var=pd.DataFrame(
            {"Length": np.arange(1000, 1000 + len(count_matrix))},
            index=pd.Index(count_matrix.index, name="feature_id"),
        ),
    )


@pytest.fixture
def count_table_path(tmp_path, count_matrix) -> Path:
    """featureCounts-style TSV with a comment header and six descriptor columns."""
    descriptors = pd.DataFrame(
        {
            "Geneid": count_matrix.index,
            "Chr": "chr1",
            "Start": np.arange(len(count_matrix)) * 1000 + 1,
            "End": np.arange(len(count_matrix)) * 1000 + 900,
            "Strand": "+",
            "Length": 900,
        }
    )
    table = pd.concat([descriptors, count_matrix.reset_index(drop=True)], axis=1)
    path = tmp_path / "counts.tsv"
    with open(path, "w") as handle:
        handle.write("# Program:featureCounts v2.0.3\n")
        table.to_csv(handle, sep="\t", index=False)
    return path


@pytest.fixture
def sample_sheet_path(tmp_path, workshop_factors) -> Path:
    treatment, location = workshop_factors
    sheet = pd.DataFrame(
        {
            "sample": list(treatment.sample_ids),
            "treatment": list(treatment.values),
            "location": list(location.values),
        }
    )
    path = tmp_path / "samples.csv"
    sheet.to_csv(path, index=False)
    return path


# ==============================================================================
# Result table fixtures
# ==============================================================================


@pytest.fixture
def ranked_results() -> pd.DataFrame:
    """Result table already ranked by PValue, as top_tags returns it."""
    return pd.DataFrame(
        {
            "logFC": [2.1, -1.8, 0.9, -0.4, 0.2, 0.05],
            "logCPM": [5.0, 6.1, 4.2, 7.3, 3.3, 2.0],
            "LR": [40.0, 30.0, 9.0, 4.0, 1.0, 0.1],
            "PValue": [1e-10, 1e-8, 0.003, 0.04, 0.3, 0.75],
            "FDR": [6e-10, 3e-8, 0.006, 0.06, 0.36, 0.75],
        },
        index=pd.Index(["gA", "gB", "gC", "gD", "gE", "gF"], name="feature_id"),
    )
