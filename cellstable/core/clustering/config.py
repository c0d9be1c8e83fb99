"""Configuration classes for embedding, clustering and stability analysis.

All parameters are configurable so that the over-segmentation and the
statistical merge criteria can be tuned per dataset.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class PCAConfig:
    """Configuration for the PCA reducer.

    Attributes
    ----------
    n_pcs : int
        Requested number of principal components
    random_seed : int
        Seed for the ARPACK starting vector
    svd_solver : str
        Solver passed to scanpy ('arpack', 'randomized', 'full')
    """

    n_pcs: int = 30
    random_seed: int = 1337
    svd_solver: str = "arpack"


@dataclass
class ClusteringConfig:
    """Configuration for k-NN graph community clustering.

    Attributes
    ----------
    neighbors_k : int
        k for the neighborhood graph; kept small to over-segment
    metric : str
        Distance metric in embedding space
    algorithm : str
        Community detection capability ('leiden' or 'components')
    resolution : float
        Leiden resolution
    n_iterations : int
        Leiden iterations (negative runs until convergence)
    random_seed : int
        Random seed for reproducibility
    """

    neighbors_k: int = 10
    metric: str = "euclidean"
    algorithm: str = "leiden"
    resolution: float = 1.0
    n_iterations: int = 2
    random_seed: int = 1337


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    Attributes
    ----------
    method : str
        'ttest' (scanpy Welch t-test vs rest) or 'wilcoxon' (rank-sum z)
    """

    method: str = "ttest"


@dataclass
class StabilityConfig:
    """Configuration for significance-gated cluster merging.

    Attributes
    ----------
    min_group_size : int
        Clusters smaller than this are always merged
    min_diff_genes : int
        Pairs with fewer significant genes than this are merged
    z_threshold : float
        |z| above which a gene counts as significant
    distance : str
        Profile distance for the merge tree ('correlation', 'euclidean', 'cosine')
    linkage_method : str
        Hierarchical linkage ('average', 'complete', 'single', 'weighted')
    allow_single_cluster : bool
        If False, collapsing everything into one cluster is an error
    markers_highest_only : bool
        Restrict per-cluster significant genes to those where the cluster
        has the highest mean
    n_workers : int
        Parallel jobs for pair tests
    """

    min_group_size: int = 10
    min_diff_genes: int = 5
    z_threshold: float = 1.96
    distance: str = "correlation"
    linkage_method: str = "average"
    allow_single_cluster: bool = True
    markers_highest_only: bool = True
    n_workers: int = 1


@dataclass
class ClusteringStageConfig:
    """Master configuration for embedding, clustering and stability.

    Attributes
    ----------
    pca : PCAConfig
        PCA configuration
    clustering : ClusteringConfig
        Graph clustering configuration
    de : DEConfig
        Differential expression configuration
    stability : StabilityConfig
        Stability analysis configuration
    """

    pca: PCAConfig = field(default_factory=PCAConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    de: DEConfig = field(default_factory=DEConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringStageConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            pca=PCAConfig(**data.get("pca", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            de=DEConfig(**data.get("de", {})),
            stability=StabilityConfig(**data.get("stability", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ClusteringStageConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested clustering_stage section
        if "clustering_stage" in data:
            data = data["clustering_stage"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "ClusteringStageConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pca": {
                "n_pcs": self.pca.n_pcs,
                "random_seed": self.pca.random_seed,
                "svd_solver": self.pca.svd_solver,
            },
            "clustering": {
                "neighbors_k": self.clustering.neighbors_k,
                "metric": self.clustering.metric,
                "algorithm": self.clustering.algorithm,
                "resolution": self.clustering.resolution,
                "n_iterations": self.clustering.n_iterations,
                "random_seed": self.clustering.random_seed,
            },
            "de": {
                "method": self.de.method,
            },
            "stability": {
                "min_group_size": self.stability.min_group_size,
                "min_diff_genes": self.stability.min_diff_genes,
                "z_threshold": self.stability.z_threshold,
                "distance": self.stability.distance,
                "linkage_method": self.stability.linkage_method,
                "allow_single_cluster": self.stability.allow_single_cluster,
                "markers_highest_only": self.stability.markers_highest_only,
                "n_workers": self.stability.n_workers,
            },
        }
