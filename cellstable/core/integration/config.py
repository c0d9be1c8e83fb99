"""Configuration for cluster-conditioned batch correction."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class BatchCorrectionConfig:
    """Configuration for batch correction in LD space.

    Attributes
    ----------
    method : str
        Batch transform: 'mean_align' (default) or 'linear_model'
    reference : str, optional
        Batch every other batch is aligned to. If None, batches are
        aligned to the pooled cluster mean.
    correct_unassigned : bool
        Also correct cells carrying the unassigned sentinel
    robust : bool
        Use a robust linear model (statsmodels RLM) for 'linear_model'
    n_workers : int
        Parallel jobs across clusters
    """

    method: str = "mean_align"
    reference: Optional[str] = None
    correct_unassigned: bool = False
    robust: bool = False
    n_workers: int = 1
