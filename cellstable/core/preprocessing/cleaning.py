"""Count-matrix cleaning.

Removes genes with too few total reads and cells with too few detected
genes. Because removing genes can push cells under their threshold (and
vice versa), filtering repeats until neither axis changes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from ...errors import InputShapeError
from ..matrix import validate_expression_matrix
from .config import CleaningConfig


@dataclass
class CleaningResult:
    """Result from cleaning a count matrix.

    Attributes
    ----------
    matrix : pd.DataFrame
        Cleaned genes x cells count matrix
    removed_genes : List[str]
        Gene ids dropped for low total counts
    removed_cells : List[str]
        Cell ids dropped for too few detected genes
    n_passes : int
        Filtering passes needed to reach a fixed point
    """

    matrix: Optional[pd.DataFrame] = None
    removed_genes: List[Any] = field(default_factory=list)
    removed_cells: List[Any] = field(default_factory=list)
    n_passes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_genes": int(self.matrix.shape[0]) if self.matrix is not None else 0,
            "n_cells": int(self.matrix.shape[1]) if self.matrix is not None else 0,
            "genes_removed": len(self.removed_genes),
            "cells_removed": len(self.removed_cells),
            "n_passes": self.n_passes,
        }


class CountMatrixCleaner:
    """Gene/cell filter for raw count matrices.

    Parameters
    ----------
    config : CleaningConfig, optional
        Cleaning configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.preprocessing import CountMatrixCleaner, CleaningConfig
    >>> cleaner = CountMatrixCleaner(CleaningConfig(min_reads=10, min_detected=200))
    >>> result = cleaner.clean(counts)
    >>> result.matrix.shape
    """

    def __init__(
        self,
        config: Optional[CleaningConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or CleaningConfig()
        self.logger = logger or logging.getLogger(__name__)

    def clean(
        self,
        counts: pd.DataFrame,
        min_reads: Optional[float] = None,
        min_detected: Optional[int] = None,
    ) -> CleaningResult:
        """Filter genes and cells until both thresholds hold everywhere.

        Parameters
        ----------
        counts : pd.DataFrame
            Raw genes x cells count matrix
        min_reads : float, optional
            Minimum total counts per gene. Uses config default if None.
        min_detected : int, optional
            Minimum nonzero genes per cell. Uses config default if None.

        Returns
        -------
        CleaningResult
            Cleaned matrix and the removed ids

        Raises
        ------
        InputShapeError
            If no gene or no cell survives
        ValueError
            If a threshold is negative
        """
        cfg = self.config
        min_reads = min_reads if min_reads is not None else cfg.min_reads
        min_detected = min_detected if min_detected is not None else cfg.min_detected

        if min_reads < 0:
            raise ValueError(f"min_reads must be >= 0, got {min_reads}")
        if min_detected < 0:
            raise ValueError(f"min_detected must be >= 0, got {min_detected}")

        matrix = validate_expression_matrix(counts, name="counts")
        n_genes_in, n_cells_in = matrix.shape
        values = matrix.to_numpy()
        gene_keep = np.ones(n_genes_in, dtype=bool)
        cell_keep = np.ones(n_cells_in, dtype=bool)

        result = CleaningResult()
        for n_pass in range(1, cfg.max_passes + 1):
            sub = values[np.ix_(gene_keep, cell_keep)]
            new_gene_keep = gene_keep.copy()
            new_gene_keep[gene_keep] = sub.sum(axis=1) >= min_reads

            sub = values[np.ix_(new_gene_keep, cell_keep)]
            new_cell_keep = cell_keep.copy()
            new_cell_keep[cell_keep] = (sub > 0).sum(axis=0) >= min_detected

            result.n_passes = n_pass
            changed = (
                not np.array_equal(new_gene_keep, gene_keep)
                or not np.array_equal(new_cell_keep, cell_keep)
            )
            gene_keep, cell_keep = new_gene_keep, new_cell_keep
            if not changed or not gene_keep.any() or not cell_keep.any():
                break
        else:
            raise InputShapeError(
                f"Cleaning did not converge within max_passes={cfg.max_passes}"
            )

        if not gene_keep.any():
            raise InputShapeError(
                f"No genes left after cleaning (min_reads={min_reads}, "
                f"input {n_genes_in} genes)"
            )
        if not cell_keep.any():
            raise InputShapeError(
                f"No cells left after cleaning (min_detected={min_detected}, "
                f"input {n_cells_in} cells)"
            )

        result.matrix = matrix.loc[gene_keep, cell_keep]
        result.removed_genes = matrix.index[~gene_keep].tolist()
        result.removed_cells = matrix.columns[~cell_keep].tolist()

        self.logger.info(
            "Cleaned counts: %d -> %d genes, %d -> %d cells (%d passes)",
            n_genes_in,
            result.matrix.shape[0],
            n_cells_in,
            result.matrix.shape[1],
            result.n_passes,
        )
        return result
