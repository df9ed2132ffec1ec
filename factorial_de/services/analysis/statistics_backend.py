"""
Statistics backend for negative-binomial differential expression.

This module wires the external statistics libraries behind the four
operations the pipeline needs:

- estimate_dispersion: pyDESeq2 size factors and MAP dispersions for an
  explicit design matrix
- fit_model: per-feature negative-binomial GLMs (statsmodels) with the
  dispersion fixed and log size factors as offset
- likelihood_ratio_test: full vs reduced model for a coefficient or a
  contrast vector, chi-squared with one degree of freedom
- adjust_p_values: multiple testing correction (statsmodels)

Numerical failures raised by these libraries are not caught here.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import anndata
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.multitest import multipletests

from factorial_de.core import AnalysisError, Contrast, DesignMatrix
from factorial_de.services.data_management.count_table_service import (
    CountTableService,
)
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)

ADJUST_METHODS = {
    "BH": "fdr_bh",
    "BY": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
}


@dataclass(frozen=True, eq=False)
class DispersionModel:
    """Size factors and per-feature dispersions for one design."""

    size_factors: pd.Series
    dispersions: pd.Series
    design: DesignMatrix
    dataset: Any = None


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Full-model fit: coefficients (natural log scale) and log-likelihoods."""

    coefficients: pd.DataFrame
    log_likelihood: pd.Series
    log_cpm: pd.Series
    counts: np.ndarray
    dispersion: DispersionModel

    @property
    def design(self) -> DesignMatrix:
        return self.dispersion.design


class StatisticsBackend:
    """
    Negative-binomial GLM backend built on pyDESeq2 and statsmodels.

    The backend only consumes validated inputs (a full-rank DesignMatrix and
    a resolved Contrast); it does not build designs or contrasts itself.
    """

    def __init__(self, n_cpus: int = 1):
        """
        Initialize the backend.

        Args:
            n_cpus: Worker count passed to pyDESeq2's inference object
        """
        self.n_cpus = n_cpus
        self.count_service = CountTableService()

    def estimate_dispersion(
        self, adata: anndata.AnnData, design: DesignMatrix
    ) -> DispersionModel:
        """
        Estimate size factors and MAP dispersions with pyDESeq2.

        Args:
            adata: Counts (samples × features), samples in design order
            design: Validated design matrix

        Returns:
            DispersionModel: Size factors, dispersions and the fitted dataset
        """
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference

        self._check_alignment(adata, design)

        counts_df = pd.DataFrame(
            np.rint(np.asarray(adata.X)).astype(int),
            index=list(adata.obs_names),
            columns=list(adata.var_names),
        )
        metadata = pd.DataFrame(index=counts_df.index)
        for col in adata.obs.columns:
            metadata[col] = adata.obs[col].astype(str).to_numpy()

        logger.info(
            f"Estimating dispersions: {counts_df.shape[1]} features, "
            f"design {design.columns}"
        )
        dds = DeseqDataSet(
            counts=counts_df,
            metadata=metadata,
            design=design.to_frame(),
            refit_cooks=False,
            inference=DefaultInference(n_cpus=self.n_cpus),
            quiet=True,
        )
        dds.fit_size_factors()
        dds.fit_genewise_dispersions()
        dds.fit_dispersion_trend()
        dds.fit_dispersion_prior()
        dds.fit_MAP_dispersions()

        size_factors = pd.Series(
            np.asarray(dds.obs["size_factors"], dtype=np.float64),
            index=counts_df.index,
            name="size_factors",
        )
        dispersions = pd.Series(
            np.asarray(dds.var["dispersions"], dtype=np.float64),
            index=counts_df.columns,
            name="dispersions",
        )
        logger.info(
            f"Dispersions estimated: median {np.nanmedian(dispersions):.4f}, "
            f"size factors {size_factors.round(3).tolist()}"
        )
        return DispersionModel(
            size_factors=size_factors,
            dispersions=dispersions,
            design=design,
            dataset=dds,
        )

    def fit_model(
        self,
        adata: anndata.AnnData,
        dispersion: DispersionModel,
        design: Optional[DesignMatrix] = None,
    ) -> FittedModel:
        """
        Fit one negative-binomial GLM per feature.

        Args:
            adata: Counts the dispersions were estimated from
            dispersion: Output of estimate_dispersion()
            design: Design to fit; must be the one the dispersions belong to

        Returns:
            FittedModel: Coefficients and log-likelihoods per feature
        """
        design = design or dispersion.design
        if design.columns != dispersion.design.columns:
            raise AnalysisError(
                "Dispersions were estimated for a different design",
                details={
                    "design": design.columns,
                    "dispersion_design": dispersion.design.columns,
                },
            )
        self._check_alignment(adata, design)
        if list(adata.var_names) != list(dispersion.dispersions.index):
            raise AnalysisError("Dispersions do not match the features of the count data")

        counts = np.rint(np.asarray(adata.X, dtype=np.float64))
        X = design.values
        offset = np.log(dispersion.size_factors.to_numpy())

        logger.info(f"Fitting {counts.shape[1]} negative-binomial GLMs...")
        coefficients = np.full((counts.shape[1], X.shape[1]), np.nan)
        log_likelihood = np.full(counts.shape[1], np.nan)
        for j, alpha in enumerate(dispersion.dispersions.to_numpy()):
            if not np.isfinite(alpha):
                continue
            result = self._fit_glm(counts[:, j], X, alpha, offset)
            coefficients[j] = result.params
            log_likelihood[j] = result.llf

        n_skipped = int(np.isnan(log_likelihood).sum())
        if n_skipped:
            logger.warning(f"{n_skipped} features without a finite dispersion were not fitted")

        log_cpm = self.count_service.cpm(adata, log=True).mean(axis=1)
        return FittedModel(
            coefficients=pd.DataFrame(
                coefficients, index=adata.var_names, columns=design.columns
            ),
            log_likelihood=pd.Series(log_likelihood, index=adata.var_names, name="llf"),
            log_cpm=log_cpm.rename("logCPM"),
            counts=counts,
            dispersion=dispersion,
        )

    def likelihood_ratio_test(self, fitted: FittedModel, contrast: Contrast) -> pd.DataFrame:
        """
        Likelihood ratio test of one coefficient or one contrast.

        A coefficient is tested by dropping its column. A contrast vector c
        is tested by rotating the design with the complete QR decomposition
        of c, which makes c·beta the first coefficient, and dropping it.

        Returns:
            pd.DataFrame: ``logFC`` (log2), ``logCPM``, ``LR`` and ``PValue``
            indexed by feature id, in feature order
        """
        design = fitted.design
        if list(contrast.columns) != design.columns:
            raise AnalysisError(
                f"Contrast '{contrast.name}' was resolved against a different design",
                details={"contrast": list(contrast.columns), "design": design.columns},
            )

        X = design.values
        beta = fitted.coefficients.to_numpy()
        if contrast.is_coefficient:
            reduced = np.delete(X, contrast.coefficient, axis=1)
            effect = beta[:, contrast.coefficient]
        else:
            c = contrast.as_vector()
            q, _ = np.linalg.qr(c.reshape(-1, 1), mode="complete")
            reduced = (X @ q)[:, 1:]
            effect = beta @ c

        offset = np.log(fitted.dispersion.size_factors.to_numpy())
        dispersions = fitted.dispersion.dispersions.to_numpy()
        full_llf = fitted.log_likelihood.to_numpy()

        logger.info(f"Likelihood ratio test for {contrast.describe()}")
        reduced_llf = np.full(len(full_llf), np.nan)
        for j, alpha in enumerate(dispersions):
            if not np.isfinite(full_llf[j]):
                continue
            reduced_llf[j] = self._fit_glm(
                fitted.counts[:, j], reduced, alpha, offset
            ).llf

        lr = np.clip(2.0 * (full_llf - reduced_llf), 0.0, None)
        p_values = stats.chi2.sf(lr, df=1)

        results = pd.DataFrame(
            {
                "logFC": effect / np.log(2),
                "logCPM": fitted.log_cpm.to_numpy(),
                "LR": lr,
                "PValue": p_values,
            },
            index=pd.Index(fitted.coefficients.index, name="feature_id"),
        )
        results.attrs["contrast"] = contrast.name
        return results

    def adjust_p_values(self, results: pd.DataFrame, method: str = "BH") -> pd.DataFrame:
        """
        Add an ``FDR`` column of adjusted p-values.

        Args:
            results: Table with a ``PValue`` column
            method: ``BH``, ``BY``, ``bonferroni`` or ``holm``

        Returns:
            pd.DataFrame: Copy of ``results`` with ``FDR``; untested features
            keep NaN
        """
        if method not in ADJUST_METHODS:
            raise AnalysisError(
                f"Unknown adjustment method '{method}'. Available: {list(ADJUST_METHODS)}"
            )
        if "PValue" not in results.columns:
            raise AnalysisError("Result table has no 'PValue' column")

        adjusted = results.copy()
        p_values = adjusted["PValue"].to_numpy(dtype=np.float64)
        tested = ~np.isnan(p_values)
        fdr = np.full(len(p_values), np.nan)
        if tested.any():
            _, fdr[tested], _, _ = multipletests(
                p_values[tested], method=ADJUST_METHODS[method]
            )
        adjusted["FDR"] = fdr
        return adjusted

    def top_tags(
        self, results: pd.DataFrame, n: Optional[int] = None, sort_by: str = "PValue"
    ) -> pd.DataFrame:
        """Rank features by ``sort_by`` (stable, NaN last) and keep the top ``n``."""
        ranked = results.sort_values(sort_by, kind="mergesort", na_position="last")
        return ranked if n is None else ranked.head(n)

    def wald_test(
        self, dispersion: DispersionModel, contrast: Contrast, alpha: float = 0.05
    ) -> pd.DataFrame:
        """
        pyDESeq2 Wald test of the same contrast, for comparison with the LRT.

        Returns:
            pd.DataFrame: ``logFC``, ``PValue`` and ``FDR`` (BH, no
            independent filtering) indexed by feature id
        """
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        dds = dispersion.dataset
        if dds is None:
            raise AnalysisError("Wald test needs the pyDESeq2 dataset from estimate_dispersion()")
        if list(contrast.columns) != dispersion.design.columns:
            raise AnalysisError(
                f"Contrast '{contrast.name}' was resolved against a different design"
            )

        if "LFC" not in dds.varm:
            dds.fit_LFC()

        ds = DeseqStats(
            dds,
            contrast=contrast.as_vector(),
            alpha=alpha,
            cooks_filter=False,
            independent_filter=False,
            inference=DefaultInference(n_cpus=self.n_cpus),
            quiet=True,
        )
        ds.summary()

        results = ds.results_df.rename(
            columns={"log2FoldChange": "logFC", "pvalue": "PValue", "padj": "FDR"}
        )
        results.index.name = "feature_id"
        return results[["baseMean", "logFC", "lfcSE", "stat", "PValue", "FDR"]]

    @staticmethod
    def _fit_glm(y: np.ndarray, X: np.ndarray, alpha: float, offset: np.ndarray):
        model = sm.GLM(
            y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset
        )
        return model.fit()

    @staticmethod
    def _check_alignment(adata: anndata.AnnData, design: DesignMatrix) -> None:
        if list(adata.obs_names) != design.sample_ids:
            raise AnalysisError(
                "Count data samples do not match the design rows",
                details={
                    "count_samples": list(adata.obs_names),
                    "design_samples": design.sample_ids,
                },
            )

    def describe(self) -> Dict[str, Any]:
        return {"dispersion": "pydeseq2", "glm": "statsmodels", "n_cpus": self.n_cpus}
