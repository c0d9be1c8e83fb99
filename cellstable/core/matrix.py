"""Validation and id-keyed alignment for expression matrices and label tables.

All stages exchange pandas objects keyed by gene and cell ids. Combining two
of them always goes through the helpers here so a mismatch fails loudly
instead of silently pairing values by position.
"""

from typing import Optional

import numpy as np
import pandas as pd

from ..errors import InputShapeError


def validate_expression_matrix(
    matrix: pd.DataFrame,
    name: str = "matrix",
    require_nonnegative: bool = True,
) -> pd.DataFrame:
    """Check a genes x cells matrix and return it as float64.

    Parameters
    ----------
    matrix : pd.DataFrame
        Genes as index, cells as columns
    name : str
        Name used in error messages
    require_nonnegative : bool
        Reject negative entries (counts and normalized counts)

    Returns
    -------
    pd.DataFrame
        The same matrix with float64 values

    Raises
    ------
    InputShapeError
        If the matrix is empty, has duplicate ids, non-numeric or
        non-finite values, or negative values when disallowed
    """
    if not isinstance(matrix, pd.DataFrame):
        raise InputShapeError(
            f"{name} must be a pandas DataFrame (genes x cells), got {type(matrix).__name__}"
        )
    if matrix.shape[0] == 0:
        raise InputShapeError(f"{name} has zero genes (rows)")
    if matrix.shape[1] == 0:
        raise InputShapeError(f"{name} has zero cells (columns)")

    if not matrix.index.is_unique:
        dupes = matrix.index[matrix.index.duplicated()].unique().tolist()
        raise InputShapeError(f"{name} has duplicate gene ids: {dupes[:5]}")
    if not matrix.columns.is_unique:
        dupes = matrix.columns[matrix.columns.duplicated()].unique().tolist()
        raise InputShapeError(f"{name} has duplicate cell ids: {dupes[:5]}")

    try:
        values = matrix.to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InputShapeError(f"{name} contains non-numeric values: {exc}") from exc

    if not np.all(np.isfinite(values)):
        bad_genes = matrix.index[~np.isfinite(values).all(axis=1)].tolist()
        raise InputShapeError(f"{name} contains non-finite values in genes {bad_genes[:5]}")
    if require_nonnegative and (values < 0).any():
        bad_genes = matrix.index[(values < 0).any(axis=1)].tolist()
        raise InputShapeError(f"{name} contains negative values in genes {bad_genes[:5]}")

    return pd.DataFrame(values, index=matrix.index, columns=matrix.columns)


def validate_embedding(embedding: pd.DataFrame, name: str = "embedding") -> pd.DataFrame:
    """Check a cells x dimensions table and return it as float64."""
    if not isinstance(embedding, pd.DataFrame):
        raise InputShapeError(f"{name} must be a pandas DataFrame (cells x dims)")
    if embedding.shape[0] == 0 or embedding.shape[1] == 0:
        raise InputShapeError(f"{name} is empty (shape={embedding.shape})")
    if not embedding.index.is_unique:
        raise InputShapeError(f"{name} has duplicate cell ids")
    values = embedding.to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise InputShapeError(f"{name} contains non-finite coordinates")
    return pd.DataFrame(values, index=embedding.index, columns=embedding.columns)


def align_labels(
    labels: pd.Series,
    cells: pd.Index,
    name: str = "labels",
    allow_extra: bool = False,
) -> pd.Series:
    """Reindex a cell-keyed label Series onto ``cells``.

    Parameters
    ----------
    labels : pd.Series
        Cell id -> label
    cells : pd.Index
        Cell ids the labels must cover, in the desired order
    name : str
        Name used in error messages
    allow_extra : bool
        Tolerate labels for cells not present in ``cells``

    Returns
    -------
    pd.Series
        String labels ordered like ``cells``

    Raises
    ------
    InputShapeError
        If any cell lacks a label, labels are duplicated, or (unless
        ``allow_extra``) labels name unknown cells
    """
    if not isinstance(labels, pd.Series):
        labels = pd.Series(labels)
    if not labels.index.is_unique:
        raise InputShapeError(f"{name} has duplicate cell ids")

    missing = cells.difference(labels.index)
    if len(missing) > 0:
        raise InputShapeError(
            f"{name} missing for {len(missing)} cells (e.g. {missing[:5].tolist()})"
        )
    if not allow_extra:
        extra = labels.index.difference(cells)
        if len(extra) > 0:
            raise InputShapeError(
                f"{name} reference {len(extra)} unknown cells (e.g. {extra[:5].tolist()})"
            )

    aligned = labels.reindex(cells)
    if aligned.isna().any():
        empty = aligned.index[aligned.isna()].tolist()
        raise InputShapeError(f"{name} has missing values for cells {empty[:5]}")
    return aligned.astype(str)


def require_same_cells(
    left: pd.DataFrame,
    right: pd.DataFrame,
    left_name: str = "left",
    right_name: str = "right",
) -> None:
    """Raise InputShapeError unless both matrices hold the same cell ids."""
    left_cells = pd.Index(left.columns)
    right_cells = pd.Index(right.columns)
    if left_cells.equals(right_cells):
        return
    only_left = left_cells.difference(right_cells)
    only_right = right_cells.difference(left_cells)
    if len(only_left) or len(only_right):
        raise InputShapeError(
            f"cell ids differ between {left_name} and {right_name}: "
            f"{len(only_left)} only in {left_name}, {len(only_right)} only in {right_name}"
        )


def group_sizes(assignment: pd.Series) -> pd.Series:
    """Cells per label, largest first with ties broken by label."""
    counts = assignment.value_counts()
    order = sorted(counts.index, key=lambda label: (-counts[label], str(label)))
    return counts.reindex(order)


def describe_shape(matrix: Optional[pd.DataFrame]) -> str:
    """Short 'genes x cells' description for log lines."""
    if matrix is None:
        return "none"
    return f"{matrix.shape[0]} genes x {matrix.shape[1]} cells"
