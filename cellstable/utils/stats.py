"""Statistical utilities for CellStable.

Provides multiple-testing adjustment and a numerically stable softmax.
"""

from __future__ import annotations

from typing import Iterable, Union

import numpy as np
from scipy import special
from statsmodels.stats.multitest import multipletests

ArrayLike = Union[Iterable[float], np.ndarray]


def bh_adjust(p_values: ArrayLike) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values (statsmodels ``fdr_bh``).

    Parameters
    ----------
    p_values : ArrayLike
        Raw p-values. Non-finite entries are passed through as NaN.

    Returns
    -------
    np.ndarray
        Adjusted p-values in the input order, capped at 1.
    """
    p = np.asarray(list(p_values), dtype=float)
    result = np.full_like(p, np.nan, dtype=float)
    mask = np.isfinite(p)
    clean = p[mask]
    if clean.size == 0:
        return result

    result[mask] = multipletests(clean, method="fdr_bh")[1]
    return result


def softmax(scores: np.ndarray) -> np.ndarray:
    """Row-wise softmax of a samples x classes score table."""
    return special.softmax(np.asarray(scores, dtype=float), axis=1)
