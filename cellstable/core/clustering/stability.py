"""Significance-gated cluster merging (stability analysis).

Graph clustering over-segments on purpose. This module walks a
hierarchical tree built over the per-cluster mean profiles and merges
neighbouring clusters that a differential expression test cannot tell
apart, so every surviving cluster is backed by at least
``min_diff_genes`` genes significant at ``z_threshold`` against every
other surviving cluster.

Procedure per pass
------------------
1. Build an average-linkage tree over the current cluster profiles.
2. Visit the linkage rows bottom-up (the rows are the worklist; no
   recursion). A node holding a single group is compared with its
   sibling: with the sibling group directly, or with each group of a
   sibling that already holds several distinct groups. When both
   siblings hold several groups, every group of one is tested against
   the groups of the other, so any two leaves meet in a test at their
   lowest common node.
3. Undersized groups (below ``min_group_size``, or single cells) are
   merged without testing. Otherwise the least-separated partner is
   merged if it has fewer than ``min_diff_genes`` significant genes, and
   the merged node is re-tested one level up.

Passes repeat over a rebuilt tree until one makes no merge.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist

from ...errors import DegenerateClusterError
from ..matrix import (
    align_labels,
    group_sizes,
    require_same_cells,
    validate_expression_matrix,
)
from .config import StabilityConfig
from .de import DifferentialExpressionEngine

DistanceLike = Union[str, Callable[[np.ndarray, np.ndarray], float]]


@dataclass
class MergeRecord:
    """One tested (or force-merged) pair of clusters.

    Attributes
    ----------
    pass_index : int
        Merge pass the decision was made in (1-based)
    left : str
        Group being placed in the tree
    right : str
        Partner it was compared with
    left_size : int
        Cells in ``left`` at decision time
    right_size : int
        Cells in ``right`` at decision time
    n_diff_genes : int, optional
        Significant genes between the two; None for forced merges
    merged : bool
        Whether the pair was merged
    reason : str
        'undersized', 'insufficient_de' or 'distinct'
    survivor : str, optional
        Label kept after a merge
    """

    pass_index: int
    left: str
    right: str
    left_size: int
    right_size: int
    n_diff_genes: Optional[int]
    merged: bool
    reason: str
    survivor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return asdict(self)


@dataclass
class StabilityResult:
    """Result from stability analysis.

    Attributes
    ----------
    assignment : pd.Series
        Cell id -> stable cluster label
    summary : pd.DataFrame
        Genes x clusters mean expression (largest cluster first)
    dendrogram : np.ndarray, optional
        scipy linkage matrix over the final clusters (None if < 2)
    dendrogram_labels : List[str]
        Leaf labels for ``dendrogram``, in linkage order
    significant_genes : Dict[str, List]
        Cluster -> significant marker genes, strongest first
    merge_log : List[MergeRecord]
        Every pair decision, in order
    n_initial : int
        Number of preliminary clusters
    n_passes : int
        Number of merge passes run
    """

    assignment: Optional[pd.Series] = None
    summary: Optional[pd.DataFrame] = None
    dendrogram: Optional[np.ndarray] = None
    dendrogram_labels: List[str] = field(default_factory=list)
    significant_genes: Dict[str, List[Any]] = field(default_factory=dict)
    merge_log: List[MergeRecord] = field(default_factory=list)
    n_initial: int = 0
    n_passes: int = 0

    @property
    def n_clusters(self) -> int:
        return int(self.assignment.nunique()) if self.assignment is not None else 0

    @property
    def cluster_sizes(self) -> Dict[str, int]:
        return group_sizes(self.assignment).to_dict()

    def merge_table(self) -> pd.DataFrame:
        """Merge log as a DataFrame."""
        columns = list(MergeRecord.__dataclass_fields__)
        return pd.DataFrame([r.to_dict() for r in self.merge_log], columns=columns)


class ClusterStabilityAnalyzer:
    """Merges clusters that differential expression cannot separate.

    Parameters
    ----------
    config : StabilityConfig, optional
        Stability configuration. If None, uses defaults.
    de_engine : DifferentialExpressionEngine, optional
        Engine used for pair tests and final markers
    distance : str or callable, optional
        Profile distance for the merge tree. Overrides ``config.distance``.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.clustering import ClusterStabilityAnalyzer, StabilityConfig
    >>> analyzer = ClusterStabilityAnalyzer(StabilityConfig(min_group_size=5))
    >>> result = analyzer.analyze(logged, clustering.assignment)
    >>> result.n_clusters, result.cluster_sizes
    """

    def __init__(
        self,
        config: Optional[StabilityConfig] = None,
        de_engine: Optional[DifferentialExpressionEngine] = None,
        distance: Optional[DistanceLike] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or StabilityConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.de_engine = de_engine or DifferentialExpressionEngine(logger=self.logger)
        self.distance = distance if distance is not None else self.config.distance

    # ------------------------------------------------------------------
    # Tree helpers
    # ------------------------------------------------------------------

    def _pairwise_distances(self, profiles: np.ndarray) -> np.ndarray:
        dist = pdist(profiles, metric=self.distance)
        finite = np.isfinite(dist)
        # Constant profiles make correlation undefined; treat them as far apart
        fill = float(dist[finite].max()) if finite.any() else 1.0
        dist = np.where(finite, dist, fill)
        return np.clip(dist, 0.0, None)

    def merge_tree(self, profiles: pd.DataFrame) -> np.ndarray:
        """Linkage matrix over the columns (clusters) of a profile table."""
        dist = self._pairwise_distances(profiles.to_numpy(dtype=float).T)
        return linkage(dist, method=self.config.linkage_method)

    def _profile_distance(self, a: np.ndarray, b: np.ndarray) -> float:
        d = self._pairwise_distances(np.vstack([a, b]))
        return float(d[0])

    # ------------------------------------------------------------------
    # Merge pass
    # ------------------------------------------------------------------

    def _run_pass(
        self,
        matrix: pd.DataFrame,
        labels: np.ndarray,
        pass_index: int,
        min_group_size: int,
        min_diff_genes: int,
        z_threshold: float,
        n_workers: int,
    ) -> Tuple[np.ndarray, List[MergeRecord]]:
        labels = labels.copy()
        values = matrix.to_numpy()
        groups = sorted(set(labels.tolist()))
        if len(groups) < 2:
            return labels, []

        sizes = {g: int((labels == g).sum()) for g in groups}
        profiles = {g: values[:, labels == g].mean(axis=1) for g in groups}
        tree = self.merge_tree(
            pd.DataFrame({g: profiles[g] for g in groups}, index=matrix.index)
        )

        records: List[MergeRecord] = []
        # Single cells cannot be tested
        floor = max(min_group_size, 2)

        def merge(x: str, y: str) -> str:
            survivor, loser = sorted((x, y), key=lambda g: (-sizes[g], g))
            total = sizes[survivor] + sizes[loser]
            profiles[survivor] = (
                profiles[survivor] * sizes[survivor] + profiles[loser] * sizes[loser]
            ) / total
            sizes[survivor] = total
            labels[labels == loser] = survivor
            del sizes[loser], profiles[loser]
            return survivor

        def place(single: str, partners: List[str]) -> List[str]:
            """Compare ``single`` with its sibling groups; return the node's groups."""
            undersized = sizes[single] < floor or (
                len(partners) == 1 and sizes[partners[0]] < floor
            )
            nearest = min(
                partners,
                key=lambda g: (self._profile_distance(profiles[single], profiles[g]), g),
            )
            if undersized:
                record = MergeRecord(
                    pass_index, single, nearest, sizes[single], sizes[nearest],
                    None, True, "undersized",
                )
                record.survivor = merge(single, nearest)
                records.append(record)
                return [record.survivor if g == nearest else g for g in partners]

            label_series = pd.Series(labels, index=matrix.columns)
            if n_workers > 1 and len(partners) > 1:
                counts = Parallel(n_jobs=n_workers, prefer="threads")(
                    delayed(self.de_engine.compare)(
                        matrix, label_series, single, g, z_threshold
                    )
                    for g in partners
                )
            else:
                counts = [
                    self.de_engine.compare(matrix, label_series, single, g, z_threshold)
                    for g in partners
                ]

            ranked = sorted(
                zip(partners, counts),
                key=lambda item: (
                    item[1],
                    self._profile_distance(profiles[single], profiles[item[0]]),
                    item[0],
                ),
            )
            best, best_count = ranked[0]
            for partner, count in zip(partners, counts):
                if partner != best:
                    records.append(MergeRecord(
                        pass_index, single, partner, sizes[single], sizes[partner],
                        int(count), False, "distinct",
                    ))

            if best_count < min_diff_genes:
                record = MergeRecord(
                    pass_index, single, best, sizes[single], sizes[best],
                    int(best_count), True, "insufficient_de",
                )
                record.survivor = merge(single, best)
                records.append(record)
                return [record.survivor if g == best else g for g in partners]

            records.append(MergeRecord(
                pass_index, single, best, sizes[single], sizes[best],
                int(best_count), False, "distinct",
            ))
            return partners + [single]

        def join(left: List[str], right: List[str]) -> List[str]:
            """Test every group of ``left`` against the groups of ``right``."""
            targets = list(right)
            kept: List[str] = []
            for group in left:
                placed = place(group, targets)
                if len(placed) > len(targets):
                    kept.append(group)
                else:
                    targets = placed
            return targets + kept

        # Linkage rows are already in bottom-up merge order
        n_leaves = len(groups)
        nodes: Dict[int, List[str]] = {i: [g] for i, g in enumerate(groups)}
        for row, (a, b, _height, _count) in enumerate(tree):
            left = nodes.pop(int(a))
            right = nodes.pop(int(b))
            if len(left) == 1:
                nodes[n_leaves + row] = place(left[0], right)
            elif len(right) == 1:
                nodes[n_leaves + row] = place(right[0], left)
            else:
                nodes[n_leaves + row] = join(left, right)

        return labels, records

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(
        self,
        expression: pd.DataFrame,
        assignment: pd.Series,
        counts: Optional[pd.DataFrame] = None,
        min_group_size: Optional[int] = None,
        min_diff_genes: Optional[int] = None,
        z_threshold: Optional[float] = None,
    ) -> StabilityResult:
        """Merge statistically indistinguishable clusters.

        Parameters
        ----------
        expression : pd.DataFrame
            Normalized (log-scale) genes x cells matrix used for tests
        assignment : pd.Series
            Preliminary cell id -> cluster label
        counts : pd.DataFrame, optional
            Raw count matrix; when given its cell ids must match
        min_group_size : int, optional
            Uses config default if None
        min_diff_genes : int, optional
            Uses config default if None
        z_threshold : float, optional
            Uses config default if None

        Returns
        -------
        StabilityResult
            Stable assignment, profiles, dendrogram, markers and merge log

        Raises
        ------
        DegenerateClusterError
            If the whole population is smaller than ``min_group_size``,
            or everything collapsed into one cluster while
            ``allow_single_cluster`` is False
        """
        cfg = self.config
        min_group_size = min_group_size if min_group_size is not None else cfg.min_group_size
        min_diff_genes = min_diff_genes if min_diff_genes is not None else cfg.min_diff_genes
        z_threshold = z_threshold if z_threshold is not None else cfg.z_threshold
        if min_group_size < 1:
            raise ValueError(f"min_group_size must be >= 1, got {min_group_size}")
        if min_diff_genes < 0:
            raise ValueError(f"min_diff_genes must be >= 0, got {min_diff_genes}")
        if z_threshold <= 0:
            raise ValueError(f"z_threshold must be > 0, got {z_threshold}")

        matrix = validate_expression_matrix(
            expression, name="expression", require_nonnegative=False
        )
        if counts is not None:
            counts = validate_expression_matrix(counts, name="counts")
            require_same_cells(matrix, counts, "expression", "counts")

        labels = align_labels(assignment, matrix.columns, name="cluster assignment")
        n_cells = matrix.shape[1]
        if n_cells < min_group_size:
            raise DegenerateClusterError(
                f"All {n_cells} cells together are below min_group_size={min_group_size}"
            )

        current = labels.to_numpy(dtype=object)
        n_initial = len(set(current.tolist()))
        self.logger.info(
            "Stability analysis: %d preliminary clusters, %d cells "
            "(min_group_size=%d, min_diff_genes=%d, z_threshold=%.2f)",
            n_initial,
            n_cells,
            min_group_size,
            min_diff_genes,
            z_threshold,
        )

        merge_log: List[MergeRecord] = []
        n_passes = 0
        while True:
            n_passes += 1
            before = len(set(current.tolist()))
            current, records = self._run_pass(
                matrix,
                current,
                n_passes,
                min_group_size,
                min_diff_genes,
                z_threshold,
                cfg.n_workers,
            )
            merge_log.extend(records)
            after = len(set(current.tolist()))
            self.logger.info("Stability pass %d: %d -> %d clusters", n_passes, before, after)
            if not any(r.merged for r in records):
                break

        final = pd.Series(current, index=matrix.columns, name="cluster").astype(str)
        sizes = group_sizes(final)
        small = sizes[sizes < min_group_size]
        if len(small) > 0:
            raise DegenerateClusterError(
                f"Clusters below min_group_size={min_group_size}: {small.to_dict()}"
            )
        if len(sizes) == 1 and not cfg.allow_single_cluster:
            raise DegenerateClusterError(
                f"All {n_initial} preliminary clusters collapsed into one "
                "(allow_single_cluster=False)"
            )

        order = sizes.index.tolist()
        values = matrix.to_numpy()
        label_array = final.to_numpy()
        summary = pd.DataFrame(
            {g: values[:, label_array == g].mean(axis=1) for g in order},
            index=matrix.index,
        )

        result = StabilityResult(
            assignment=final,
            summary=summary,
            merge_log=merge_log,
            n_initial=n_initial,
            n_passes=n_passes,
        )

        if len(order) >= 2:
            result.dendrogram = self.merge_tree(summary)
            result.dendrogram_labels = order
            markers = self.de_engine.run(matrix, final)
            result.significant_genes = {
                g: markers.significant_genes(
                    g, z_threshold=z_threshold, highest_only=cfg.markers_highest_only
                )
                for g in order
            }
        else:
            result.dendrogram_labels = order
            result.significant_genes = {order[0]: []}

        self.logger.info(
            "Stability analysis kept %d of %d clusters after %d passes (%d merges)",
            result.n_clusters,
            n_initial,
            n_passes,
            sum(1 for r in merge_log if r.merged),
        )
        return result
