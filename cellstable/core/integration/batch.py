"""Cluster-conditioned batch correction.

Batches are aligned within each cluster separately, so a batch that is
rich in one cell type is not shifted toward another. A batch transform
maps a cells x dimensions table plus a batch vector to per-batch shifts;
the corrector subtracts them from the cluster's cells only and leaves
every other cell untouched.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..classification.confidence import UNASSIGNED
from ..matrix import align_labels, validate_embedding
from .config import BatchCorrectionConfig


class BatchTransform(ABC):
    """Cells x dims values + batch vector -> corrected values."""

    @abstractmethod
    def compute_shifts(self, values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
        """Batches x dims table of amounts to subtract from each batch."""

    def apply(
        self, values: pd.DataFrame, batches: pd.Series
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Corrected values and the shifts that produced them."""
        shifts = self.compute_shifts(values, batches)
        offsets = shifts.reindex(batches.to_numpy()).to_numpy()
        corrected = pd.DataFrame(
            values.to_numpy() - offsets, index=values.index, columns=values.columns
        )
        return corrected, shifts

    def __call__(self, values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
        return self.apply(values, batches)[0]


def _batch_means(values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
    return values.groupby(batches.to_numpy()).mean()


class MeanAlignTransform(BatchTransform):
    """Moves each batch mean onto the pooled mean or a reference batch.

    Parameters
    ----------
    reference : str, optional
        Reference batch. If None or absent from the values, batches are
        aligned to the pooled mean of all cells.
    """

    def __init__(self, reference: Optional[str] = None):
        self.reference = reference

    def compute_shifts(self, values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
        means = _batch_means(values, batches)
        if self.reference is not None and self.reference in means.index:
            target = means.loc[self.reference]
        else:
            target = values.mean(axis=0)
        return means - target


class LinearModelTransform(BatchTransform):
    """Per-dimension linear model ``value ~ C(batch)`` via statsmodels.

    The fitted batch effects are subtracted. With a reference batch the
    reference keeps its values; otherwise effects are centred on their
    cell-weighted mean so the pooled mean is preserved.

    Parameters
    ----------
    reference : str, optional
        Reference batch (the model's baseline level)
    robust : bool
        Fit a robust linear model (Huber) instead of OLS
    """

    def __init__(self, reference: Optional[str] = None, robust: bool = False):
        self.reference = reference
        self.robust = robust

    def compute_shifts(self, values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
        import statsmodels.formula.api as smf

        levels = sorted(set(batches.astype(str)))
        if self.reference is not None and self.reference in levels:
            levels.remove(self.reference)
            levels.insert(0, self.reference)
        batch = pd.Categorical(batches.astype(str).to_numpy(), categories=levels)
        counts = pd.Series(batch).value_counts().reindex(levels).to_numpy(dtype=float)

        shifts = pd.DataFrame(0.0, index=pd.Index(levels), columns=values.columns)
        for dim in values.columns:
            model_df = pd.DataFrame({"value": values[dim].to_numpy(), "batch": batch})
            if self.robust:
                fit = smf.rlm("value ~ C(batch)", data=model_df).fit()
            else:
                fit = smf.ols("value ~ C(batch)", data=model_df).fit()
            effects = np.array(
                [0.0] + [float(fit.params.get(f"C(batch)[T.{level}]", 0.0)) for level in levels[1:]]
            )
            if self.reference is None or self.reference not in levels:
                effects = effects - np.average(effects, weights=counts)
            shifts[dim] = effects
        return shifts


class CallableBatchTransform(BatchTransform):
    """Adapter for a plain ``(values, batches) -> corrected`` function."""

    def __init__(self, func: Callable[[pd.DataFrame, pd.Series], pd.DataFrame]):
        self.func = func

    def apply(
        self, values: pd.DataFrame, batches: pd.Series
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        # The function runs once; shifts are read off its output
        corrected = pd.DataFrame(
            self.func(values, batches), index=values.index, columns=values.columns
        )
        return corrected, _batch_means(values - corrected, batches)

    def compute_shifts(self, values: pd.DataFrame, batches: pd.Series) -> pd.DataFrame:
        return self.apply(values, batches)[1]


TransformLike = Union[BatchTransform, Callable[[pd.DataFrame, pd.Series], pd.DataFrame], str]


def make_batch_transform(
    method: TransformLike,
    reference: Optional[str] = None,
    robust: bool = False,
) -> BatchTransform:
    """Turn a name, callable or transform into a BatchTransform."""
    if isinstance(method, BatchTransform):
        return method
    if isinstance(method, str):
        if method == "mean_align":
            return MeanAlignTransform(reference=reference)
        if method == "linear_model":
            return LinearModelTransform(reference=reference, robust=robust)
        raise ValueError(
            f"Unknown batch correction method '{method}' "
            "(expected 'mean_align' or 'linear_model')"
        )
    if callable(method):
        return CallableBatchTransform(method)
    raise TypeError(f"Cannot use {type(method).__name__} as a batch transform")


@dataclass
class BatchCorrectionResult:
    """Result from batch correction.

    Attributes
    ----------
    corrected : pd.DataFrame
        Cells x dims corrected embedding (input row order)
    shifts : Dict[str, pd.DataFrame]
        Cluster -> batches x dims shifts that were subtracted
    corrected_clusters : List[str]
        Clusters with at least two batches that were corrected
    skipped_clusters : Dict[str, str]
        Cluster -> reason it was left unchanged
    """

    corrected: Optional[pd.DataFrame] = None
    shifts: Dict[str, pd.DataFrame] = field(default_factory=dict)
    corrected_clusters: List[str] = field(default_factory=list)
    skipped_clusters: Dict[str, str] = field(default_factory=dict)

    def shift_table(self) -> pd.DataFrame:
        """Long table with one row per (cluster, batch)."""
        if not self.shifts:
            return pd.DataFrame()
        return pd.concat(self.shifts, names=["cluster", "batch"])


class ClusterBasedBatchCorrector:
    """Applies a batch transform to each multi-batch cluster separately.

    Parameters
    ----------
    config : BatchCorrectionConfig, optional
        Batch correction configuration. If None, uses defaults.
    transform : BatchTransform, callable or str, optional
        Batch transform. If None, uses ``config.method``.
    unassigned_label : str
        Sentinel left untouched unless ``config.correct_unassigned``; must
        match the sentinel used for the calls
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.integration import ClusterBasedBatchCorrector
    >>> corrector = ClusterBasedBatchCorrector()
    >>> result = corrector.correct(joint_ld, batch_labels, calls)
    >>> result.skipped_clusters
    """

    def __init__(
        self,
        config: Optional[BatchCorrectionConfig] = None,
        transform: Optional[TransformLike] = None,
        unassigned_label: str = UNASSIGNED,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or BatchCorrectionConfig()
        self.unassigned_label = unassigned_label
        self.logger = logger or logging.getLogger(__name__)
        self.transform = make_batch_transform(
            transform if transform is not None else self.config.method,
            reference=self.config.reference,
            robust=self.config.robust,
        )

    def _correct_cluster(
        self, values: pd.DataFrame, batches: pd.Series
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        return self.transform.apply(values, batches)

    def correct(
        self,
        embedding: pd.DataFrame,
        batches: pd.Series,
        clusters: pd.Series,
        n_workers: Optional[int] = None,
    ) -> BatchCorrectionResult:
        """Remove batch offsets within each cluster.

        Parameters
        ----------
        embedding : pd.DataFrame
            Cells x dims coordinates (LD space)
        batches : pd.Series
            Cell id -> batch id
        clusters : pd.Series
            Cell id -> cluster label (typically confident calls)
        n_workers : int, optional
            Parallel jobs across clusters. Uses config default if None.

        Returns
        -------
        BatchCorrectionResult
            Corrected embedding, shifts and skipped clusters

        Raises
        ------
        InputShapeError
            If any cell lacks a batch or cluster label
        """
        cfg = self.config
        n_workers = n_workers if n_workers is not None else cfg.n_workers

        embedding = validate_embedding(embedding, name="embedding")
        batch_labels = align_labels(batches, embedding.index, name="batch labels")
        cluster_labels = align_labels(clusters, embedding.index, name="cluster labels")

        result = BatchCorrectionResult(corrected=embedding.copy())
        todo: List[str] = []
        for cluster in sorted(cluster_labels.unique()):
            members = cluster_labels == cluster
            if cluster == self.unassigned_label and not cfg.correct_unassigned:
                result.skipped_clusters[cluster] = "unassigned"
            elif batch_labels[members].nunique() < 2:
                result.skipped_clusters[cluster] = "single_batch"
            else:
                todo.append(cluster)

        def run(cluster: str) -> Tuple[pd.DataFrame, pd.DataFrame]:
            members = cluster_labels == cluster
            return self._correct_cluster(embedding.loc[members], batch_labels[members])

        if n_workers > 1 and len(todo) > 1:
            outputs = Parallel(n_jobs=n_workers, prefer="threads")(
                delayed(run)(cluster) for cluster in todo
            )
        else:
            outputs = [run(cluster) for cluster in todo]

        for cluster, (corrected, shifts) in zip(todo, outputs):
            result.corrected.loc[corrected.index, :] = corrected.to_numpy()
            result.shifts[cluster] = shifts
            result.corrected_clusters.append(cluster)

        self.logger.info(
            "Batch correction (%s): corrected %d clusters, skipped %d %s",
            type(self.transform).__name__,
            len(result.corrected_clusters),
            len(result.skipped_clusters),
            sorted(result.skipped_clusters),
        )
        return result


def batch_mean_offsets(
    embedding: pd.DataFrame,
    batches: pd.Series,
    clusters: pd.Series,
) -> pd.DataFrame:
    """Per (cluster, batch) offset of the batch mean from the cluster mean.

    Parameters
    ----------
    embedding : pd.DataFrame
        Cells x dims coordinates
    batches : pd.Series
        Cell id -> batch id
    clusters : pd.Series
        Cell id -> cluster label

    Returns
    -------
    pd.DataFrame
        MultiIndex (cluster, batch) x dims offsets, plus 'n_cells' and
        'max_abs_offset' columns
    """
    embedding = validate_embedding(embedding, name="embedding")
    batch_labels = align_labels(batches, embedding.index, name="batch labels")
    cluster_labels = align_labels(clusters, embedding.index, name="cluster labels")

    frames = []
    for cluster in sorted(cluster_labels.unique()):
        members = cluster_labels == cluster
        values = embedding.loc[members]
        offsets = _batch_means(values, batch_labels[members]) - values.mean(axis=0)
        offsets["n_cells"] = batch_labels[members].value_counts().reindex(offsets.index)
        offsets["max_abs_offset"] = offsets[list(embedding.columns)].abs().max(axis=1)
        offsets.index = pd.MultiIndex.from_product(
            [[cluster], offsets.index], names=["cluster", "batch"]
        )
        frames.append(offsets)
    return pd.concat(frames)
