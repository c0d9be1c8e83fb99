"""Differential expression testing between cell groups.

For every (gene, group) pair a z-score of the group against all other
cells is computed with scanpy's ``rank_genes_groups``, together with a
flag telling whether the group has the highest mean for that gene. The
flag separates group-specific markers from genes that are merely
differential. Used standalone and by the stability analyzer for
pairwise merge decisions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

import numpy as np
import pandas as pd

from ...errors import InputShapeError
from ..matrix import align_labels, validate_expression_matrix
from .config import DEConfig


DE_METHODS = ("ttest", "wilcoxon")

# scanpy method names
_SCANPY_METHODS = {"ttest": "t-test", "wilcoxon": "wilcoxon"}


@dataclass
class DEResult:
    """Result from differential expression testing.

    Attributes
    ----------
    z_scores : pd.DataFrame
        Genes x groups z-scores (group vs rest); 0 for constant genes
    highest : pd.DataFrame
        Genes x groups flag, True where the group has the maximal mean
    means : pd.DataFrame
        Genes x groups mean expression
    group_sizes : Dict[str, int]
        Cells per group
    zero_variance_genes : List[str]
        Genes excluded from significance counts
    method : str
        DE method used
    elapsed_seconds : float
        Time taken for DE computation
    """

    z_scores: Optional[pd.DataFrame] = None
    highest: Optional[pd.DataFrame] = None
    means: Optional[pd.DataFrame] = None
    group_sizes: Dict[str, int] = field(default_factory=dict)
    zero_variance_genes: List[Any] = field(default_factory=list)
    method: str = "ttest"
    elapsed_seconds: float = 0.0

    @property
    def groups(self) -> List[str]:
        return list(self.z_scores.columns)

    def _tested(self, group: str) -> pd.Series:
        if group not in self.z_scores.columns:
            raise KeyError(f"Group '{group}' not in DE result (groups: {self.groups})")
        z = self.z_scores[group]
        if self.zero_variance_genes:
            z = z.drop(index=self.zero_variance_genes, errors="ignore")
        return z

    def count_significant(self, group: str, z_threshold: float = 1.96) -> int:
        """Number of genes with |z| above the threshold for ``group``."""
        z = self._tested(group)
        return int((z.abs() > z_threshold).sum())

    def significant_genes(
        self,
        group: str,
        z_threshold: float = 1.96,
        highest_only: bool = False,
        upregulated_only: bool = True,
    ) -> List[Any]:
        """Genes significant for ``group``, strongest first.

        Parameters
        ----------
        group : str
            Group label
        z_threshold : float
            Minimum |z| (or z when ``upregulated_only``)
        highest_only : bool
            Keep only genes where the group has the maximal mean
        upregulated_only : bool
            Keep only genes with positive z

        Returns
        -------
        List
            Gene ids sorted by decreasing z (|z| if not upregulated_only)
        """
        z = self._tested(group)
        if upregulated_only:
            mask = z > z_threshold
            score = z
        else:
            mask = z.abs() > z_threshold
            score = z.abs()
        if highest_only:
            mask &= self.highest.loc[z.index, group]
        return score[mask].sort_values(ascending=False, kind="mergesort").index.tolist()

    def to_long(self) -> pd.DataFrame:
        """Tidy table with one row per (gene, group)."""
        z = self.z_scores.rename_axis(index="gene", columns="group").stack().rename("z")
        mean = self.means.rename_axis(index="gene", columns="group").stack().rename("mean")
        top = self.highest.rename_axis(index="gene", columns="group").stack().rename("highest")
        table = pd.concat([z, mean, top], axis=1).reset_index()
        table["zero_variance"] = table["gene"].isin(set(self.zero_variance_genes))
        return table


class DifferentialExpressionEngine:
    """Group-vs-rest differential expression.

    Parameters
    ----------
    config : DEConfig, optional
        DE configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.clustering import DifferentialExpressionEngine
    >>> engine = DifferentialExpressionEngine()
    >>> result = engine.run(logged, stability.assignment)
    >>> result.significant_genes("3", z_threshold=3.0, highest_only=True)
    """

    def __init__(
        self,
        config: Optional[DEConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DEConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _rank_scores(
        self,
        matrix: pd.DataFrame,
        labels: pd.Series,
        group_names: Sequence[Any],
        method: str,
        reference: str = "rest",
    ) -> pd.DataFrame:
        """Genes x groups scores from ``sc.tl.rank_genes_groups``."""
        import anndata as ad
        import scanpy as sc

        keys = [str(g) for g in group_names]
        adata = ad.AnnData(
            X=matrix.to_numpy(dtype=np.float64).T,
            obs=pd.DataFrame(
                {"group": pd.Categorical(labels.astype(str).to_numpy())},
                index=pd.Index(matrix.columns.astype(str), name="cell"),
            ),
            var=pd.DataFrame(index=pd.Index(matrix.index.astype(str), name="gene")),
        )
        key_added = "rank_genes_groups"
        sc.tl.rank_genes_groups(
            adata,
            groupby="group",
            groups=keys if reference != "rest" else "all",
            reference=reference,
            method=_SCANPY_METHODS[method],
            n_genes=adata.n_vars,
            use_raw=False,
            tie_correct=method == "wilcoxon",
            key_added=key_added,
        )

        scores = {}
        for name, key in zip(group_names, keys):
            df = sc.get.rank_genes_groups_df(adata, group=key, key=key_added)
            scores[name] = (
                df.set_index("names")["scores"]
                .reindex(adata.var_names)
                .to_numpy(dtype=np.float64)
            )
        # Constant genes come back as NaN
        return pd.DataFrame(scores, index=matrix.index).fillna(0.0)

    @staticmethod
    def _check_group_sizes(sizes: Dict[Any, int]) -> None:
        small = {g: n for g, n in sizes.items() if n < 2}
        if small:
            raise InputShapeError(
                f"Differential expression needs at least 2 cells per group, got {small}"
            )

    def run(
        self,
        expression: pd.DataFrame,
        groups: pd.Series,
        method: Optional[str] = None,
    ) -> DEResult:
        """Compute z-scores of every group against the remaining cells.

        Parameters
        ----------
        expression : pd.DataFrame
            Genes x cells expression (normalized / log scale)
        groups : pd.Series
            Cell id -> group label; must cover exactly the matrix cells
        method : str, optional
            'ttest' or 'wilcoxon'. Uses config default if None.

        Returns
        -------
        DEResult
            z-scores, highest flags and group means
        """
        method = method if method is not None else self.config.method
        if method not in DE_METHODS:
            raise ValueError(f"Unknown DE method '{method}' (expected one of {DE_METHODS})")

        matrix = validate_expression_matrix(
            expression, name="expression", require_nonnegative=False
        )
        labels = align_labels(groups, matrix.columns, name="group labels")
        group_names = sorted(labels.unique())
        if len(group_names) < 2:
            raise InputShapeError(
                f"Differential expression needs at least 2 groups, got {len(group_names)}"
            )

        start = time.time()
        values = matrix.to_numpy()
        label_array = labels.to_numpy()
        masks = {g: label_array == g for g in group_names}
        sizes = {g: int(masks[g].sum()) for g in group_names}
        self._check_group_sizes(sizes)

        zero_var = values.var(axis=1) == 0
        z = self._rank_scores(matrix, labels, group_names, method)
        z.loc[zero_var, :] = 0.0

        means = np.column_stack([values[:, masks[g]].mean(axis=1) for g in group_names])
        highest = means == means.max(axis=1, keepdims=True)

        elapsed = time.time() - start
        result = DEResult(
            z_scores=z,
            highest=pd.DataFrame(highest, index=matrix.index, columns=group_names),
            means=pd.DataFrame(means, index=matrix.index, columns=group_names),
            group_sizes=sizes,
            zero_variance_genes=matrix.index[zero_var].tolist(),
            method=method,
            elapsed_seconds=elapsed,
        )
        self.logger.debug(
            "%s DE over %d genes, %d groups in %.2fs (%d zero-variance genes)",
            method,
            matrix.shape[0],
            len(group_names),
            elapsed,
            int(zero_var.sum()),
        )
        return result

    def compare(
        self,
        expression: pd.DataFrame,
        groups: pd.Series,
        group_a: Any,
        group_b: Any,
        z_threshold: float,
        method: Optional[str] = None,
    ) -> int:
        """Count genes separating two groups at ``z_threshold``.

        Only the cells of the two groups are used and ``group_b`` is the
        reference, so the test is independent of every other cluster.
        """
        method = method if method is not None else self.config.method
        if method not in DE_METHODS:
            raise ValueError(f"Unknown DE method '{method}' (expected one of {DE_METHODS})")

        keep = groups.index[groups.isin([group_a, group_b])]
        sub_groups = groups.loc[keep]
        sizes = {name: int((sub_groups == name).sum()) for name in (group_a, group_b)}
        for name, size in sizes.items():
            if size == 0:
                raise InputShapeError(f"Group '{name}' has no cells")
        self._check_group_sizes(sizes)

        matrix = expression.loc[:, keep]
        z = self._rank_scores(
            matrix, sub_groups, [group_a], method, reference=str(group_b)
        )[group_a]
        z[matrix.to_numpy().var(axis=1) == 0] = 0.0
        return int((z.abs() > z_threshold).sum())
