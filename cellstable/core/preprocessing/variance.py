"""Variance normalization and overdispersed-gene selection.

Fits the expected (technical) log-variance of each gene as a smooth
function of its log-mean, then turns each gene's excess over that trend
into a scaling factor (gsf). Genes lying on the trend end up with unit
variance after scaling; overdispersed genes keep a proportionally larger
variance. Which genes count as overdispersed (ods) is decided by a
pluggable policy.

The gsf column of the returned gene table is the artifact that must be
reused, verbatim, when projecting new datasets.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union
import logging

import numpy as np
import pandas as pd
from scipy.stats import chi2, f as f_dist
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...errors import InputShapeError
from ...utils.stats import bh_adjust
from ..matrix import validate_expression_matrix
from .config import VarianceConfig
from .normalization import TRANSFORMS, apply_transform


GENE_STATS_COLUMNS = [
    "mean",
    "var",
    "fitted_var",
    "residual",
    "p_value",
    "p_adj",
    "scaled_var",
    "gsf",
    "ods",
]


class OdsPolicy(ABC):
    """Rule deciding which genes are overdispersed."""

    @abstractmethod
    def select(self, gene_stats: pd.DataFrame) -> pd.Index:
        """Return the ids of overdispersed genes."""


class AdjustedPValuePolicy(OdsPolicy):
    """Genes above the trend whose BH-adjusted p-value is below ``alpha``."""

    def __init__(self, alpha: float = 0.05):
        if not 0 < alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha

    def select(self, gene_stats: pd.DataFrame) -> pd.Index:
        mask = (gene_stats["p_adj"] < self.alpha) & (gene_stats["residual"] > 0)
        return gene_stats.index[mask.fillna(False).to_numpy(dtype=bool)]


class TopResidualPolicy(OdsPolicy):
    """The ``n_genes`` genes with the largest positive residual."""

    def __init__(self, n_genes: int = 500):
        if n_genes < 1:
            raise ValueError(f"n_genes must be >= 1, got {n_genes}")
        self.n_genes = n_genes

    def select(self, gene_stats: pd.DataFrame) -> pd.Index:
        residual = gene_stats["residual"]
        candidates = residual[residual > 0].sort_values(ascending=False, kind="mergesort")
        return candidates.index[: self.n_genes]


OdsPolicyLike = Union[OdsPolicy, Callable[[pd.DataFrame], pd.Index]]


def make_ods_policy(config: VarianceConfig) -> OdsPolicy:
    """Build the ods policy named in the configuration."""
    if config.ods_policy == "adjusted_pvalue":
        return AdjustedPValuePolicy(config.alpha)
    if config.ods_policy == "top_residual":
        return TopResidualPolicy(config.n_top_genes)
    raise ValueError(
        f"Unknown ods_policy '{config.ods_policy}' "
        "(expected 'adjusted_pvalue' or 'top_residual')"
    )


@dataclass
class VarianceResult:
    """Result from variance normalization.

    Attributes
    ----------
    scaled : pd.DataFrame
        Transformed matrix multiplied gene-wise by gsf (all genes)
    ods_genes : List[str]
        Overdispersed gene ids, in matrix order
    gene_stats : pd.DataFrame
        Per-gene statistics (see GENE_STATS_COLUMNS)
    transform : str
        Name of the transform applied before fitting
    """

    scaled: Optional[pd.DataFrame] = None
    ods_genes: List[str] = field(default_factory=list)
    gene_stats: Optional[pd.DataFrame] = None
    transform: str = "log1p"

    @property
    def gsf(self) -> pd.Series:
        """Gene scaling factors keyed by gene id."""
        return self.gene_stats["gsf"].copy()

    def ods_matrix(self) -> pd.DataFrame:
        """Scaled matrix restricted to the overdispersed genes."""
        return self.scaled.loc[self.ods_genes]


class VarianceNormalizer:
    """Mean-variance trend fitter producing gene scaling factors.

    Parameters
    ----------
    config : VarianceConfig, optional
        Variance configuration. If None, uses defaults.
    ods_policy : OdsPolicy or callable, optional
        Overdispersed-gene rule. If None, built from the configuration.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.preprocessing import VarianceNormalizer
    >>> vn = VarianceNormalizer()
    >>> result = vn.fit(normalized)
    >>> result.ods_matrix().shape
    """

    def __init__(
        self,
        config: Optional[VarianceConfig] = None,
        ods_policy: Optional[OdsPolicyLike] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or VarianceConfig()
        self.ods_policy = ods_policy or make_ods_policy(self.config)
        self.logger = logger or logging.getLogger(__name__)

    def _select(self, gene_stats: pd.DataFrame) -> pd.Index:
        if isinstance(self.ods_policy, OdsPolicy):
            return pd.Index(self.ods_policy.select(gene_stats))
        return pd.Index(self.ods_policy(gene_stats))

    def compute_gene_stats(self, logged: pd.DataFrame) -> pd.DataFrame:
        """Fit the variance trend and derive per-gene scaling factors.

        Parameters
        ----------
        logged : pd.DataFrame
            Transformed (e.g. log1p) normalized genes x cells matrix

        Returns
        -------
        pd.DataFrame
            Gene statistics indexed by gene id; ``ods`` is all False
            until a policy is applied
        """
        cfg = self.config
        values = logged.to_numpy(dtype=float)
        n_cells = values.shape[1]
        if n_cells < 3:
            raise InputShapeError(f"Variance fitting needs at least 3 cells, got {n_cells}")

        means = values.mean(axis=1)
        variances = values.var(axis=1, ddof=1)

        fit_mask = (means > 0) & (variances > 0)
        if fit_mask.sum() < 3:
            raise InputShapeError(
                f"Variance fitting needs at least 3 genes with nonzero variance, "
                f"got {int(fit_mask.sum())}"
            )

        log_m = np.log(means[fit_mask])
        log_v = np.log(variances[fit_mask])
        fitted_log_v = lowess(
            log_v,
            log_m,
            frac=cfg.lowess_frac,
            it=cfg.lowess_iterations,
            return_sorted=False,
        )
        # LOWESS can produce NaN for ties at the extremes; fall back to the
        # nearest finite fitted value along the mean axis.
        if not np.all(np.isfinite(fitted_log_v)):
            order = np.argsort(log_m)
            series = pd.Series(fitted_log_v[order]).ffill().bfill()
            fitted_log_v[order] = series.to_numpy()

        residual = np.full(values.shape[0], np.nan)
        fitted_var = np.full(values.shape[0], np.nan)
        p_value = np.full(values.shape[0], np.nan)
        scaled_var = np.zeros(values.shape[0])
        gsf = np.zeros(values.shape[0])

        residual[fit_mask] = log_v - fitted_log_v
        fitted_var[fit_mask] = np.exp(fitted_log_v)

        dof = n_cells - 1
        ratio = np.exp(residual[fit_mask])
        log_p = f_dist.logsf(ratio, dof, dof)
        p_value[fit_mask] = np.exp(log_p)

        target = chi2.isf(np.exp(log_p), dof) / n_cells
        target = np.clip(target, cfg.min_adjusted_variance, cfg.max_adjusted_variance)
        scaled_var[fit_mask] = target
        gsf[fit_mask] = np.sqrt(target / variances[fit_mask])

        stats = pd.DataFrame(
            {
                "mean": means,
                "var": variances,
                "fitted_var": fitted_var,
                "residual": residual,
                "p_value": p_value,
                "p_adj": bh_adjust(p_value),
                "scaled_var": scaled_var,
                "gsf": gsf,
                "ods": False,
            },
            index=logged.index,
        )
        return stats[GENE_STATS_COLUMNS]

    def fit(
        self,
        normalized: pd.DataFrame,
        transform: Optional[str] = None,
    ) -> VarianceResult:
        """Transform, fit the trend, select ods and scale the matrix.

        Parameters
        ----------
        normalized : pd.DataFrame
            Library-size normalized genes x cells matrix
        transform : str, optional
            Variance stabilization transform name (default 'log1p')

        Returns
        -------
        VarianceResult
            Scaled matrix, ods genes and gene statistics

        Raises
        ------
        InputShapeError
            If the policy selects fewer than ``min_ods_genes`` genes
        """
        transform = transform or "log1p"
        if transform not in TRANSFORMS:
            raise ValueError(f"Unknown transform: {transform}")

        matrix = validate_expression_matrix(normalized, name="normalized")
        logged = pd.DataFrame(
            apply_transform(matrix.to_numpy(), transform),
            index=matrix.index,
            columns=matrix.columns,
        )

        stats = self.compute_gene_stats(logged)
        selected = self._select(stats)
        unknown = selected.difference(stats.index)
        if len(unknown) > 0:
            raise InputShapeError(
                f"ods policy returned {len(unknown)} unknown genes (e.g. {unknown[:5].tolist()})"
            )
        stats.loc[selected, "ods"] = True
        ods_genes = stats.index[stats["ods"].to_numpy(dtype=bool)].tolist()

        if len(ods_genes) < self.config.min_ods_genes:
            raise InputShapeError(
                f"ods policy selected {len(ods_genes)} genes, fewer than "
                f"min_ods_genes={self.config.min_ods_genes}"
            )

        scaled = logged.mul(stats["gsf"], axis=0)

        self.logger.info(
            "Variance normalization: %d genes fitted, %d overdispersed (%s)",
            int(np.isfinite(stats["residual"]).sum()),
            len(ods_genes),
            type(self.ods_policy).__name__,
        )
        return VarianceResult(
            scaled=scaled,
            ods_genes=ods_genes,
            gene_stats=stats,
            transform=transform,
        )
