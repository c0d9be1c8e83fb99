"""CSV/TSV I/O for expression matrices and label tables.

Matrices are stored genes x cells with gene ids in the first column and
cell ids in the header. Label tables have a cell id column and a value
column. The separator is inferred from the file suffix.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from ..core.matrix import validate_expression_matrix
from ..errors import InputShapeError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _separator(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if ".tsv" in suffixes or ".txt" in suffixes or ".tab" in suffixes:
        return "\t"
    return ","


def read_expression_matrix(path: PathLike, require_nonnegative: bool = True) -> pd.DataFrame:
    """Load a genes x cells matrix and validate it.

    Parameters
    ----------
    path : PathLike
        CSV/TSV file (optionally gzip compressed) with gene ids in the
        first column and cell ids in the header
    require_nonnegative : bool
        Reject negative entries

    Returns
    -------
    pd.DataFrame
        Validated float64 matrix

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    InputShapeError
        If the table is empty, has duplicate ids or non-numeric values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {path}")
    df = pd.read_csv(path, sep=_separator(path), index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    matrix = validate_expression_matrix(
        df, name=path.name, require_nonnegative=require_nonnegative
    )
    logger.info("Loaded %s: %d genes x %d cells", path.name, matrix.shape[0], matrix.shape[1])
    return matrix


def read_labels(
    path: PathLike,
    value_column: Optional[str] = None,
    id_column: Optional[str] = None,
) -> pd.Series:
    """Load a cell id -> label table (cluster assignment or batch labels).

    Parameters
    ----------
    path : PathLike
        CSV/TSV file with a header
    value_column : str, optional
        Label column. Defaults to the second column.
    id_column : str, optional
        Cell id column. Defaults to the first column.

    Returns
    -------
    pd.Series
        String labels indexed by string cell id
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Label table not found: {path}")
    df = pd.read_csv(path, sep=_separator(path), dtype=str)
    if df.shape[1] < 2:
        raise InputShapeError(f"Label table {path.name} needs an id and a value column")

    id_column = id_column or df.columns[0]
    value_column = value_column or df.columns[1]
    for column in (id_column, value_column):
        if column not in df.columns:
            raise InputShapeError(f"Label table {path.name} has no column '{column}'")
    if df[value_column].isna().any():
        raise InputShapeError(f"Label table {path.name} has empty labels")
    if df[id_column].duplicated().any():
        raise InputShapeError(f"Label table {path.name} has duplicate cell ids")

    return pd.Series(
        df[value_column].to_numpy(),
        index=pd.Index(df[id_column], name="cell"),
        name=value_column,
    )


def write_table(table: Union[pd.DataFrame, pd.Series], path: PathLike) -> Path:
    """Write a DataFrame or Series with its index, separator from the suffix."""
    path = Path(path)
    ensure_output_dir(path.parent)
    table.to_csv(path, sep=_separator(path))
    return path
