"""Community detection capabilities for the k-NN graph clusterer.

A clustering capability takes a symmetric sparse adjacency matrix over
cells and returns one integer community label per cell. Implementations
are swappable; any callable with that signature is accepted as well.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import connected_components


class ClusteringAlgorithm(ABC):
    """Adjacency in, integer labels out."""

    @abstractmethod
    def fit_predict(self, adjacency: sparse.spmatrix) -> np.ndarray:
        """Return one integer community label per graph node."""

    def __call__(self, adjacency: sparse.spmatrix) -> np.ndarray:
        return self.fit_predict(adjacency)


class LeidenClustering(ClusteringAlgorithm):
    """Leiden modularity optimisation via ``sc.tl.leiden`` (igraph flavor).

    Parameters
    ----------
    resolution : float
        Modularity resolution; larger values give more communities
    n_iterations : int
        Leiden iterations (negative runs until convergence)
    random_seed : int, optional
        Seed for the Leiden run
    """

    def __init__(
        self,
        resolution: float = 1.0,
        n_iterations: int = 2,
        random_seed: Optional[int] = 1337,
    ):
        self.resolution = resolution
        self.n_iterations = n_iterations
        self.random_seed = random_seed

    def fit_predict(self, adjacency: sparse.spmatrix) -> np.ndarray:
        import anndata as ad
        import scanpy as sc

        adjacency = sparse.csr_matrix(adjacency, dtype=np.float64)
        adata = ad.AnnData(
            obs=pd.DataFrame(index=[str(i) for i in range(adjacency.shape[0])])
        )
        sc.tl.leiden(
            adata,
            resolution=self.resolution,
            random_state=self.random_seed,
            key_added="leiden",
            adjacency=adjacency,
            flavor="igraph",
            n_iterations=self.n_iterations,
            directed=False,
        )
        return adata.obs["leiden"].astype(int).to_numpy()


class ConnectedComponentsClustering(ClusteringAlgorithm):
    """Connected components of the graph; deterministic and parameter free."""

    def fit_predict(self, adjacency: sparse.spmatrix) -> np.ndarray:
        _, labels = connected_components(sparse.csr_matrix(adjacency), directed=False)
        return np.asarray(labels, dtype=int)


class CallableClustering(ClusteringAlgorithm):
    """Adapter for a plain ``adjacency -> labels`` function."""

    def __init__(self, func: Callable[[sparse.spmatrix], np.ndarray]):
        self.func = func

    def fit_predict(self, adjacency: sparse.spmatrix) -> np.ndarray:
        return np.asarray(self.func(adjacency))


AlgorithmLike = Union[ClusteringAlgorithm, Callable[[sparse.spmatrix], np.ndarray], str]


def resolve_algorithm(
    algorithm: AlgorithmLike,
    resolution: float = 1.0,
    n_iterations: int = 2,
    random_seed: Optional[int] = 1337,
) -> ClusteringAlgorithm:
    """Turn a name, callable or capability into a ClusteringAlgorithm."""
    if isinstance(algorithm, ClusteringAlgorithm):
        return algorithm
    if isinstance(algorithm, str):
        if algorithm == "leiden":
            return LeidenClustering(
                resolution=resolution,
                n_iterations=n_iterations,
                random_seed=random_seed,
            )
        if algorithm == "components":
            return ConnectedComponentsClustering()
        raise ValueError(
            f"Unknown clustering algorithm '{algorithm}' (expected 'leiden' or 'components')"
        )
    if callable(algorithm):
        return CallableClustering(algorithm)
    raise TypeError(f"Cannot use {type(algorithm).__name__} as a clustering algorithm")
