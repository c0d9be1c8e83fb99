"""Utility functions for CellStable.

Provides statistical helpers shared by the variance and classification
modules.
"""

from .stats import (
    bh_adjust,
    softmax,
)

__all__ = [
    "bh_adjust",
    "softmax",
]
