"""Embedding and graph clustering engines.

Provides the PCA reducer (scanpy ARPACK PCA over the scaled
overdispersed-gene matrix) and the community clusterer (scanpy k-NN graph
in embedding space handed to a pluggable community detection capability).
The clusterer deliberately over-segments; the stability analyzer
decides which of the resulting clusters are real.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import InputShapeError
from ..matrix import validate_embedding, validate_expression_matrix
from .algorithms import AlgorithmLike, resolve_algorithm
from .config import ClusteringConfig, PCAConfig


@dataclass
class PCAResult:
    """Result from PCA reduction.

    Attributes
    ----------
    embedding : pd.DataFrame
        Cells x components coordinates (PC1..PCk)
    loadings : pd.DataFrame
        Genes x components loadings
    variance_ratio : np.ndarray
        Explained variance ratio per component
    n_components : int
        Number of components actually computed
    random_seed : int
        Seed used by the solver
    svd_solver : str
        Solver used
    """

    embedding: Optional[pd.DataFrame] = None
    loadings: Optional[pd.DataFrame] = None
    variance_ratio: np.ndarray = field(default_factory=lambda: np.zeros(0))
    n_components: int = 0
    random_seed: Optional[int] = None
    svd_solver: str = "arpack"


@dataclass
class ClusteringResult:
    """Result from graph clustering.

    Attributes
    ----------
    assignment : pd.Series
        Cell id -> cluster label (string)
    adjacency : sparse.csr_matrix
        Symmetric k-NN adjacency in embedding row order
    n_clusters : int
        Number of clusters found
    cluster_sizes : Dict[str, int]
        Map of cluster ID to cell count
    """

    assignment: Optional[pd.Series] = None
    adjacency: Optional[sparse.csr_matrix] = None
    n_clusters: int = 0
    cluster_sizes: Dict[str, int] = field(default_factory=dict)


class PCAReducer:
    """Linear embedding of the scaled overdispersed-gene matrix.

    Parameters
    ----------
    config : PCAConfig, optional
        PCA configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.clustering import PCAReducer
    >>> reducer = PCAReducer()
    >>> result = reducer.reduce(variance_result.ods_matrix(), n_pcs=20)
    >>> result.embedding.shape
    """

    def __init__(
        self,
        config: Optional[PCAConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PCAConfig()
        self.logger = logger or logging.getLogger(__name__)

    def reduce(
        self,
        matrix: pd.DataFrame,
        n_pcs: Optional[int] = None,
        random_seed: Optional[int] = None,
    ) -> PCAResult:
        """Project cells onto the leading principal components.

        Parameters
        ----------
        matrix : pd.DataFrame
            Scaled genes x cells matrix (typically ods genes only)
        n_pcs : int, optional
            Requested components. Uses config default if None.
        random_seed : int, optional
            Solver seed. Uses config default if None.

        Returns
        -------
        PCAResult
            Embedding, loadings and explained variance
        """
        import anndata as ad
        import scanpy as sc

        cfg = self.config
        n_pcs = n_pcs if n_pcs is not None else cfg.n_pcs
        random_seed = random_seed if random_seed is not None else cfg.random_seed
        if n_pcs < 1:
            raise ValueError(f"n_pcs must be >= 1, got {n_pcs}")

        matrix = validate_expression_matrix(matrix, name="pca input", require_nonnegative=False)
        n_genes, n_cells = matrix.shape
        if n_cells < 2:
            raise InputShapeError(f"PCA needs at least 2 cells, got {n_cells}")

        # Adjust n_pcs if needed
        use_pcs = min(n_pcs, n_genes, n_cells - 1)
        solver = cfg.svd_solver
        if solver == "arpack" and use_pcs >= min(n_genes, n_cells):
            solver = "full"
        if use_pcs < n_pcs:
            self.logger.info("Reducing n_pcs from %d to %d for a %d x %d matrix",
                             n_pcs, use_pcs, n_genes, n_cells)

        adata = ad.AnnData(
            X=matrix.to_numpy(dtype=np.float64).T,
            obs=pd.DataFrame(index=pd.Index(matrix.columns.astype(str), name="cell")),
            var=pd.DataFrame(index=pd.Index(matrix.index.astype(str), name="gene")),
        )
        sc.tl.pca(adata, n_comps=use_pcs, svd_solver=solver, random_state=random_seed)

        names = [f"PC{i + 1}" for i in range(use_pcs)]
        result = PCAResult(
            embedding=pd.DataFrame(
                np.asarray(adata.obsm["X_pca"])[:, :use_pcs],
                index=matrix.columns,
                columns=names,
            ),
            loadings=pd.DataFrame(
                np.asarray(adata.varm["PCs"])[:, :use_pcs],
                index=matrix.index,
                columns=names,
            ),
            variance_ratio=np.asarray(adata.uns["pca"]["variance_ratio"])[:use_pcs],
            n_components=use_pcs,
            random_seed=random_seed,
            svd_solver=solver,
        )

        self.logger.info(
            "Computed %d principal components (%s, seed=%s); first explains %.1f%%",
            use_pcs,
            solver,
            random_seed,
            100.0 * float(result.variance_ratio[0]) if result.variance_ratio.size else 0.0,
        )
        return result


class CommunityClusterer:
    """k-NN graph builder delegating labeling to a clustering capability.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    algorithm : ClusteringAlgorithm, callable or str, optional
        Community detection capability. If None, uses ``config.algorithm``.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.clustering import CommunityClusterer
    >>> clusterer = CommunityClusterer()
    >>> result = clusterer.cluster(pca_result.embedding)
    >>> result.assignment.value_counts()
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        algorithm: Optional[AlgorithmLike] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.algorithm = resolve_algorithm(
            algorithm if algorithm is not None else self.config.algorithm,
            resolution=self.config.resolution,
            n_iterations=self.config.n_iterations,
            random_seed=self.config.random_seed,
        )

    def build_graph(
        self,
        embedding: pd.DataFrame,
        neighbors_k: Optional[int] = None,
    ) -> sparse.csr_matrix:
        """Symmetric k-NN connectivity graph over cells.

        Uses ``sc.pp.neighbors`` on the embedding; the fuzzy connectivity
        weights are binarized so every edge counts once.

        Parameters
        ----------
        embedding : pd.DataFrame
            Cells x dimensions coordinates
        neighbors_k : int, optional
            Neighbors per cell. Uses config default if None.

        Returns
        -------
        sparse.csr_matrix
            Cells x cells adjacency (1 where either cell lists the other)
        """
        import anndata as ad
        import scanpy as sc

        cfg = self.config
        neighbors_k = neighbors_k if neighbors_k is not None else cfg.neighbors_k
        if neighbors_k < 1:
            raise ValueError(f"neighbors_k must be >= 1, got {neighbors_k}")

        embedding = validate_embedding(embedding)
        n_cells = embedding.shape[0]
        if n_cells < 2:
            raise InputShapeError(f"Neighbor graph needs at least 2 cells, got {n_cells}")

        k = min(neighbors_k, n_cells - 1)
        adata = ad.AnnData(
            obs=pd.DataFrame(index=pd.Index(embedding.index.astype(str), name="cell")),
            obsm={"X_emb": embedding.to_numpy(dtype=np.float64)},
        )
        # scanpy counts each cell as its own first neighbor
        sc.pp.neighbors(
            adata,
            n_neighbors=k + 1,
            use_rep="X_emb",
            metric=cfg.metric,
            random_state=cfg.random_seed,
        )
        connectivities = sparse.csr_matrix(adata.obsp["connectivities"])
        adjacency = (connectivities > 0).astype(np.float64)
        adjacency = adjacency.maximum(adjacency.T).tocsr()
        adjacency = (adjacency - sparse.diags(adjacency.diagonal())).tocsr()
        adjacency.eliminate_zeros()

        self.logger.info(
            "Built %d-NN graph over %d cells (%d edges)",
            k,
            n_cells,
            int(sparse.triu(adjacency, k=1).nnz),
        )
        return adjacency

    def cluster(
        self,
        embedding: pd.DataFrame,
        neighbors_k: Optional[int] = None,
    ) -> ClusteringResult:
        """Build the graph and label its communities.

        Parameters
        ----------
        embedding : pd.DataFrame
            Cells x dimensions coordinates
        neighbors_k : int, optional
            Neighbors per cell. Uses config default if None.

        Returns
        -------
        ClusteringResult
            Cluster assignment (string labels) and adjacency
        """
        adjacency = self.build_graph(embedding, neighbors_k=neighbors_k)
        labels = np.asarray(self.algorithm(adjacency))

        if labels.shape != (embedding.shape[0],):
            raise InputShapeError(
                f"{type(self.algorithm).__name__} returned {labels.shape[0] if labels.ndim else 0} "
                f"labels for {embedding.shape[0]} cells"
            )

        assignment = pd.Series(
            [str(label) for label in labels],
            index=embedding.index,
            name="cluster",
        )
        result = ClusteringResult(
            assignment=assignment,
            adjacency=adjacency,
            n_clusters=int(assignment.nunique()),
            cluster_sizes=assignment.value_counts().to_dict(),
        )
        self.logger.info(
            "Community detection (%s) found %d clusters",
            type(self.algorithm).__name__,
            result.n_clusters,
        )
        return result
