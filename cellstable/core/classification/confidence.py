"""Hard calls from posterior probabilities."""

import numpy as np
import pandas as pd

UNASSIGNED = "unassigned"


def filter_confident(
    posteriors: pd.DataFrame,
    threshold: float = 0.9,
    unassigned: str = UNASSIGNED,
) -> pd.Series:
    """Call each cell's most probable class if it is probable enough.

    Parameters
    ----------
    posteriors : pd.DataFrame
        Cells x classes posterior probabilities
    threshold : float
        Minimum posterior for a call, in (0, 1]
    unassigned : str
        Label for cells below the threshold

    Returns
    -------
    pd.Series
        Cell id -> class label or ``unassigned``
    """
    if not 0.0 < threshold <= 1.0:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    if posteriors.shape[1] == 0:
        raise ValueError("posteriors has no classes")

    values = posteriors.to_numpy(dtype=float)
    best = values.argmax(axis=1)
    best_p = values[np.arange(values.shape[0]), best]
    classes = np.asarray([str(c) for c in posteriors.columns], dtype=object)
    calls = np.where(best_p >= threshold, classes[best], unassigned)
    return pd.Series(calls, index=posteriors.index, name="call", dtype=object)
