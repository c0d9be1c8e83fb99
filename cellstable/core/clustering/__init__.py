"""Clustering module for subpopulation discovery and validation.

Provides the PCA embedding, over-segmenting k-NN graph clustering,
differential expression testing and the stability analyzer that merges
clusters without enough differentially expressed genes.

Pipeline Stages
---------------
- Embedding: scanpy PCA over the scaled overdispersed genes
- Clustering: k-NN graph + community detection capability (Leiden default)
- Stability: DE-gated hierarchical merging into stable clusters

Example Usage
-------------
>>> from cellstable.core.clustering import (
...     PCAReducer, CommunityClusterer, ClusterStabilityAnalyzer,
... )
>>> embedding = PCAReducer().reduce(variance.ods_matrix()).embedding
>>> preliminary = CommunityClusterer().cluster(embedding).assignment
>>> stable = ClusterStabilityAnalyzer().analyze(logged, preliminary)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    PCAConfig,
    ClusteringConfig,
    DEConfig,
    StabilityConfig,
    ClusteringStageConfig,
)

# Community detection capabilities
from .algorithms import (
    ClusteringAlgorithm,
    LeidenClustering,
    ConnectedComponentsClustering,
    CallableClustering,
    resolve_algorithm,
)

# Embedding and graph clustering
from .engine import (
    PCAReducer,
    PCAResult,
    CommunityClusterer,
    ClusteringResult,
)

# Differential expression
from .de import (
    DifferentialExpressionEngine,
    DEResult,
    DE_METHODS,
)

# Stability analysis
from .stability import (
    ClusterStabilityAnalyzer,
    StabilityResult,
    MergeRecord,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "PCAConfig",
    "ClusteringConfig",
    "DEConfig",
    "StabilityConfig",
    "ClusteringStageConfig",
    # Algorithms
    "ClusteringAlgorithm",
    "LeidenClustering",
    "ConnectedComponentsClustering",
    "CallableClustering",
    "resolve_algorithm",
    # Engine
    "PCAReducer",
    "PCAResult",
    "CommunityClusterer",
    "ClusteringResult",
    # DE
    "DifferentialExpressionEngine",
    "DEResult",
    "DE_METHODS",
    # Stability
    "ClusterStabilityAnalyzer",
    "StabilityResult",
    "MergeRecord",
]
