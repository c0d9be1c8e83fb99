"""Preprocessing module for count cleaning and normalization.

Provides the stages that turn a raw gene x cell count matrix into the
scaled, overdispersed-gene matrix used for embedding and clustering.

Pipeline Stages
---------------
- Cleaning: drop low-count genes and low-complexity cells
- Normalization: per-cell library-size scaling and log transform
- Variance: mean-variance trend, gene scaling factors (gsf), ods genes

Example Usage
-------------
>>> from cellstable.core.preprocessing import (
...     CountMatrixCleaner, CountNormalizer, VarianceNormalizer,
... )
>>> cleaned = CountMatrixCleaner().clean(counts).matrix
>>> normalized = CountNormalizer().normalize(cleaned)
>>> variance = VarianceNormalizer().fit(normalized)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    CleaningConfig,
    NormalizationConfig,
    VarianceConfig,
    PreprocessingConfig,
)

# Cleaning
from .cleaning import (
    CountMatrixCleaner,
    CleaningResult,
)

# Normalization
from .normalization import (
    CountNormalizer,
    TransformSpec,
    TRANSFORMS,
    apply_transform,
)

# Variance normalization
from .variance import (
    VarianceNormalizer,
    VarianceResult,
    OdsPolicy,
    AdjustedPValuePolicy,
    TopResidualPolicy,
    make_ods_policy,
    GENE_STATS_COLUMNS,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "CleaningConfig",
    "NormalizationConfig",
    "VarianceConfig",
    "PreprocessingConfig",
    # Cleaning
    "CountMatrixCleaner",
    "CleaningResult",
    # Normalization
    "CountNormalizer",
    "TransformSpec",
    "TRANSFORMS",
    "apply_transform",
    # Variance
    "VarianceNormalizer",
    "VarianceResult",
    "OdsPolicy",
    "AdjustedPValuePolicy",
    "TopResidualPolicy",
    "make_ods_policy",
    "GENE_STATS_COLUMNS",
]
