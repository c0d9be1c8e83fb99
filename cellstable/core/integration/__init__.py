"""Integration module: cluster-conditioned batch correction in LD space.

Example Usage
-------------
>>> from cellstable.core.integration import (
...     ClusterBasedBatchCorrector, BatchCorrectionConfig,
... )
>>> corrector = ClusterBasedBatchCorrector(BatchCorrectionConfig(method="linear_model"))
>>> result = corrector.correct(joint_ld, batch_labels, calls)
"""

__version__ = "1.0.0"

from .config import BatchCorrectionConfig

from .batch import (
    BatchTransform,
    MeanAlignTransform,
    LinearModelTransform,
    CallableBatchTransform,
    make_batch_transform,
    ClusterBasedBatchCorrector,
    BatchCorrectionResult,
    batch_mean_offsets,
)

__all__ = [
    "__version__",
    "BatchCorrectionConfig",
    "BatchTransform",
    "MeanAlignTransform",
    "LinearModelTransform",
    "CallableBatchTransform",
    "make_batch_transform",
    "ClusterBasedBatchCorrector",
    "BatchCorrectionResult",
    "batch_mean_offsets",
]
