"""Library-size normalization and variance-stabilizing transforms.

Every cell is rescaled to the same total count. The log transform that
follows is looked up by name so a trained model can record which one it
was fit on and the predictor can apply exactly the same function.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
import pandas as pd

from ...errors import InputShapeError
from ..matrix import validate_expression_matrix
from .config import NormalizationConfig


@dataclass
class TransformSpec:
    """Specification for a variance stabilization transform.

    Attributes
    ----------
    name : str
        Transform name (log1p, log2p, log10p, raw)
    label : str
        Human-readable label
    """

    name: str
    label: str


# Standard transforms
TRANSFORMS = {
    "raw": TransformSpec("raw", "raw"),
    "log1p": TransformSpec("log1p", "ln(x+1)"),
    "log2p": TransformSpec("log2p", "log2(x+1)"),
    "log10p": TransformSpec("log10p", "log10(x+1)"),
}


def apply_transform(values: np.ndarray, transform: str) -> np.ndarray:
    """Apply a named variance stabilization transform.

    Parameters
    ----------
    values : np.ndarray
        Non-negative normalized values
    transform : str
        Transform name: 'raw', 'log1p', 'log2p', 'log10p'

    Returns
    -------
    np.ndarray
        Transformed values
    """
    values = np.asarray(values, dtype=float)

    if transform == "raw":
        return values
    elif transform == "log1p":
        return np.log1p(values)
    elif transform == "log2p":
        return np.log2(values + 1.0)
    elif transform == "log10p":
        return np.log10(values + 1.0)
    else:
        raise ValueError(f"Unknown transform: {transform}")


class CountNormalizer:
    """Per-cell library-size normalizer.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.preprocessing import CountNormalizer
    >>> normalizer = CountNormalizer()
    >>> normalized = normalizer.normalize(cleaned)
    >>> logged = normalizer.log_transform(normalized)
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def normalize(
        self,
        counts: pd.DataFrame,
        target_total: Optional[float] = None,
    ) -> pd.DataFrame:
        """Scale each cell so its counts sum to ``target_total``.

        Parameters
        ----------
        counts : pd.DataFrame
            Genes x cells count matrix
        target_total : float, optional
            Per-cell total after scaling. Uses config default if None.

        Returns
        -------
        pd.DataFrame
            Normalized matrix with the same ids

        Raises
        ------
        InputShapeError
            If any cell has zero total counts
        """
        target_total = target_total if target_total is not None else self.config.target_total
        if not target_total > 0:
            raise ValueError(f"target_total must be > 0, got {target_total}")

        matrix = validate_expression_matrix(counts, name="counts")
        totals = matrix.sum(axis=0)
        empty = totals.index[totals <= 0]
        if len(empty) > 0:
            raise InputShapeError(
                f"{len(empty)} cells have zero total counts (e.g. {empty[:5].tolist()}); "
                "remove them with CountMatrixCleaner first"
            )

        normalized = matrix * (target_total / totals)
        self.logger.info(
            "Normalized %d cells to total %.1f (median library size %.1f)",
            matrix.shape[1],
            target_total,
            float(totals.median()),
        )
        return normalized

    def log_transform(
        self,
        normalized: pd.DataFrame,
        transform: Optional[str] = None,
    ) -> pd.DataFrame:
        """Apply the configured variance stabilization transform.

        Parameters
        ----------
        normalized : pd.DataFrame
            Library-size normalized matrix
        transform : str, optional
            Transform name. Uses config default if None.

        Returns
        -------
        pd.DataFrame
            Transformed matrix with the same ids
        """
        transform = transform or self.config.transform
        if transform not in TRANSFORMS:
            raise ValueError(
                f"Unknown transform '{transform}' (available: {sorted(TRANSFORMS)})"
            )
        matrix = validate_expression_matrix(normalized, name="normalized")
        values = apply_transform(matrix.to_numpy(), transform)
        return pd.DataFrame(values, index=matrix.index, columns=matrix.columns)
