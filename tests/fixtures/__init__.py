"""Test fixtures for CellStable.

Provides synthetic data generators and test utilities.
"""

from .synthetic import (
    create_batched_embedding,
    create_count_matrix,
    create_near_duplicate_clusters,
    create_separable_expression,
    create_split_clusters,
)

__all__ = [
    "create_batched_embedding",
    "create_count_matrix",
    "create_near_duplicate_clusters",
    "create_separable_expression",
    "create_split_clusters",
]
