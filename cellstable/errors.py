"""Exception taxonomy for CellStable.

Every stage fails with one of these (or a plain ``ValueError`` for invalid
parameters) and names the offending dimension or parameter in the message.
"""


class CellStableError(Exception):
    """Base class for all pipeline errors."""


class InputShapeError(CellStableError, ValueError):
    """Matrix is empty, misaligned, or its ids do not match another input."""


class DegenerateClusterError(CellStableError):
    """No cluster can satisfy the minimum group size, or labels collapsed."""


class ModelMismatchError(CellStableError):
    """New data shares too few genes with a trained discriminant model."""


class NormalizationDriftError(CellStableError):
    """Stored gene scaling factors lack entries the model requires."""
