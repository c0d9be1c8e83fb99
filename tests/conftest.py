"""Pytest configuration and shared fixtures for CellStable tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_batched_embedding,
    create_count_matrix,
    create_near_duplicate_clusters,
    create_separable_expression,
    create_split_clusters,
)


# ============================================================================
# Count Matrix Fixtures
# ============================================================================


@pytest.fixture
def counts_with_truth():
    """Three cell types x 40 cells, 100 genes with 5 markers per type."""
    return create_count_matrix(n_types=3, cells_per_type=40, n_genes=100, seed=0)


@pytest.fixture
def reference_counts(counts_with_truth) -> pd.DataFrame:
    """Raw counts of the reference dataset."""
    return counts_with_truth[0]


@pytest.fixture
def small_counts() -> pd.DataFrame:
    """Tiny hand-made count matrix for cleaning tests."""
    return pd.DataFrame(
        {
            "c1": [5, 0, 3, 12],
            "c2": [7, 1, 0, 9],
            "c3": [4, 0, 2, 15],
        },
        index=["g1", "g2", "g3", "g4"],
        dtype=float,
    )


# ============================================================================
# Expression Fixtures
# ============================================================================


@pytest.fixture
def split_clusters():
    """Two populations over-segmented into four preliminary clusters."""
    return create_split_clusters()


@pytest.fixture
def near_duplicate_clusters():
    """Two clusters separated by only two genes."""
    return create_near_duplicate_clusters()


@pytest.fixture
def separable_expression():
    """Three well separated Gaussian classes."""
    return create_separable_expression()


@pytest.fixture
def batched_embedding():
    """Embedding with one two-batch cluster and one single-batch cluster."""
    return create_batched_embedding()


# ============================================================================
# Output Fixtures
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def small_run_settings() -> dict:
    """Run settings sized for the synthetic reference counts."""
    return {
        "preprocessing": {
            "cleaning": {"min_reads": 10, "min_detected": 10},
            "variance": {"ods_policy": "top_residual", "n_top_genes": 40},
        },
        "clustering_stage": {
            "pca": {"n_pcs": 10},
            "clustering": {"neighbors_k": 8, "algorithm": "components"},
            "stability": {"min_group_size": 5, "min_diff_genes": 5, "z_threshold": 3.0},
        },
    }


@pytest.fixture
def sample_run_config(tmp_path, small_run_settings) -> Path:
    """Write the small run settings as a nested YAML file."""
    import yaml

    path = tmp_path / "run.yaml"
    with open(path, "w") as f:
        yaml.dump({"cellstable": small_run_settings}, f)

    return path
