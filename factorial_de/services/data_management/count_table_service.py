"""
Count table service for bulk RNA-Seq count matrices.

This module provides the CountTableService that reads featureCounts-style
tab-separated count tables into AnnData objects (samples × features),
attaches experimental factors, filters lowly expressed features by CPM,
and writes/reads the preprocessed object as an h5ad snapshot.

Every method returns a new AnnData; inputs are never modified in place.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import anndata
import numpy as np
import pandas as pd

from factorial_de.core import CountTableError, Factor
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)

FACTOR_LEVELS_KEY = "factor_levels"


class CountTableService:
    """Service for loading, filtering and snapshotting count data."""

    def __init__(self):
        """Initialize the count table service."""
        self.logger = logger

    def load_count_table(
        self,
        path: Union[str, Path],
        n_descriptor_columns: int = 6,
        feature_column: Optional[str] = None,
        sample_names: Optional[Sequence[str]] = None,
    ) -> anndata.AnnData:
        """
        Read a tab-separated count table.

        Args:
            path: Table with leading feature-descriptor columns followed by one
                count column per sample; ``#`` lines are skipped
            n_descriptor_columns: Number of leading descriptor columns
            feature_column: Descriptor column holding feature ids (default:
                the first column)
            sample_names: Optional names replacing the sample column headers

        Returns:
            anndata.AnnData: Counts with samples as observations and the
            descriptor columns in ``var``

        Raises:
            CountTableError: If the file is missing or fails validation
        """
        path = Path(path)
        if not path.exists():
            raise CountTableError(f"Count table not found: {path}", details={"path": str(path)})

        self.logger.info(f"Loading count table from {path}")
        df = pd.read_csv(path, sep="\t", comment="#")

        if n_descriptor_columns < 1:
            raise CountTableError(
                f"At least one descriptor column is required, got {n_descriptor_columns}"
            )
        if df.shape[1] <= n_descriptor_columns:
            raise CountTableError(
                f"Count table has {df.shape[1]} columns; expected {n_descriptor_columns} "
                f"descriptor columns followed by at least one sample",
                details={"columns": list(df.columns)},
            )

        descriptors = df.iloc[:, :n_descriptor_columns]
        counts = df.iloc[:, n_descriptor_columns:]

        feature_column = feature_column or descriptors.columns[0]
        if feature_column not in descriptors.columns:
            raise CountTableError(
                f"Feature column '{feature_column}' not among descriptor columns "
                f"{list(descriptors.columns)}"
            )

        feature_ids = descriptors[feature_column].astype(str)
        duplicated = feature_ids[feature_ids.duplicated()].unique().tolist()
        if duplicated:
            raise CountTableError(
                f"Duplicated feature ids: {duplicated[:10]}",
                details={"duplicated": duplicated},
            )

        non_numeric = [
            col for col in counts.columns if not pd.api.types.is_numeric_dtype(counts[col])
        ]
        if non_numeric:
            raise CountTableError(
                f"Sample columns contain non-numeric data: {non_numeric}",
                details={"columns": non_numeric},
            )
        if counts.isna().any().any():
            raise CountTableError("Count table contains missing values")
        if (counts < 0).any().any():
            raise CountTableError("Count table contains negative values")

        if sample_names is not None:
            if len(sample_names) != counts.shape[1]:
                raise CountTableError(
                    f"{len(sample_names)} sample names for {counts.shape[1]} sample columns"
                )
            counts.columns = [str(name) for name in sample_names]

        var = descriptors.drop(columns=[feature_column]).copy()
        var.index = pd.Index(feature_ids.to_numpy(), name="feature_id")
        # h5ad needs homogeneous column types
        for col in var.columns:
            if var[col].dtype == object:
                var[col] = var[col].astype(str)

        adata = anndata.AnnData(
            X=counts.to_numpy(dtype=np.float64).T,
            obs=pd.DataFrame(index=pd.Index([str(c) for c in counts.columns], name="sample")),
            var=var,
        )
        self.logger.info(
            f"Loaded count table: {adata.n_obs} samples × {adata.n_vars} features"
        )
        return adata

    def attach_factors(
        self, adata: anndata.AnnData, factors: Sequence[Factor]
    ) -> anndata.AnnData:
        """
        Return a copy of ``adata`` with one categorical ``obs`` column per factor.

        Raises:
            CountTableError: If a factor's samples differ from ``adata.obs_names``
                (same ids in the same order)
        """
        adata = adata.copy()
        levels = dict(adata.uns.get(FACTOR_LEVELS_KEY, {}))
        for factor in factors:
            if list(factor.sample_ids) != list(adata.obs_names):
                raise CountTableError(
                    f"Factor '{factor.name}' samples do not match the count table",
                    details={
                        "factor_samples": list(factor.sample_ids),
                        "table_samples": list(adata.obs_names),
                    },
                )
            adata.obs[factor.name] = factor.to_series()
            levels[factor.name] = list(factor.levels)
        adata.uns[FACTOR_LEVELS_KEY] = levels
        return adata

    def factors_from_obs(
        self, adata: anndata.AnnData, names: Sequence[str]
    ) -> List[Factor]:
        """Rebuild Factor objects stored by ``attach_factors`` (e.g. after a reload)."""
        stored = adata.uns.get(FACTOR_LEVELS_KEY, {})
        factors = []
        for name in names:
            if name not in adata.obs.columns:
                raise CountTableError(
                    f"Factor '{name}' not found in observations. "
                    f"Available: {list(adata.obs.columns)}"
                )
            column = adata.obs[name]
            if name in stored:
                levels = [str(level) for level in stored[name]]
            elif isinstance(column.dtype, pd.CategoricalDtype):
                levels = [str(level) for level in column.cat.categories]
            else:
                levels = list(dict.fromkeys(column.astype(str)))
            factors.append(
                Factor(
                    name=name,
                    values=tuple(column.astype(str)),
                    levels=tuple(levels),
                    sample_ids=tuple(str(s) for s in adata.obs_names),
                )
            )
        return factors

    def cpm(
        self, adata: anndata.AnnData, log: bool = False, prior_count: float = 2.0
    ) -> pd.DataFrame:
        """
        Counts per million.

        Args:
            adata: Count data (samples × features)
            log: Return log2-CPM with ``prior_count`` added, scaled by library size
            prior_count: Average count added before taking logs

        Returns:
            pd.DataFrame: Features × samples
        """
        counts = np.asarray(adata.X, dtype=np.float64)
        lib_sizes = counts.sum(axis=1)
        if np.any(lib_sizes <= 0):
            empty = list(adata.obs_names[lib_sizes <= 0])
            raise CountTableError(f"Samples with zero library size: {empty}")

        if log:
            prior = prior_count * lib_sizes / lib_sizes.mean()
            values = np.log2(
                (counts + prior[:, None]) / (lib_sizes + 2 * prior)[:, None] * 1e6
            )
        else:
            values = counts / lib_sizes[:, None] * 1e6

        return pd.DataFrame(values.T, index=adata.var_names, columns=adata.obs_names)

    def filter_by_cpm(
        self,
        adata: anndata.AnnData,
        min_cpm: float = 1.0,
        min_samples: int = 3,
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Keep features with CPM above ``min_cpm`` in at least ``min_samples`` samples.

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Filtered copy and filter stats
        """
        if min_samples < 1 or min_samples > adata.n_obs:
            raise CountTableError(
                f"min_samples must be between 1 and {adata.n_obs}, got {min_samples}"
            )

        cpm = self.cpm(adata)
        keep = ((cpm > min_cpm).sum(axis=1) >= min_samples).to_numpy()

        if not keep.any():
            raise CountTableError(
                f"No feature has CPM > {min_cpm} in >= {min_samples} samples; "
                f"nothing is left to test",
                details={
                    "min_cpm": min_cpm,
                    "min_samples": min_samples,
                    "n_features_before": adata.n_vars,
                },
            )

        filtered = adata[:, keep].copy()
        stats = {
            "min_cpm": min_cpm,
            "min_samples": min_samples,
            "n_features_before": adata.n_vars,
            "n_features_after": filtered.n_vars,
            "n_features_removed": adata.n_vars - filtered.n_vars,
        }
        self.logger.info(
            f"CPM filter kept {filtered.n_vars}/{adata.n_vars} features "
            f"(CPM > {min_cpm} in >= {min_samples} samples)"
        )
        return filtered, stats

    def save_snapshot(self, adata: anndata.AnnData, path: Union[str, Path]) -> Path:
        """Write ``adata`` to an h5ad snapshot and return its path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        adata.write_h5ad(path)
        self.logger.info(f"Snapshot written to {path}")
        return path

    def load_snapshot(self, path: Union[str, Path]) -> anndata.AnnData:
        """Read an h5ad snapshot written by ``save_snapshot``."""
        path = Path(path)
        if not path.exists():
            raise CountTableError(f"Snapshot not found: {path}", details={"path": str(path)})
        adata = anndata.read_h5ad(path)
        self.logger.info(
            f"Snapshot loaded from {path}: {adata.n_obs} samples × {adata.n_vars} features"
        )
        return adata
