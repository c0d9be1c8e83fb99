"""Immutable discriminant model and its persisted bundle.

A trained model is a plain value: the affine projection into LD space,
the linear decision function, the ordered gene and class ids and the
normalization parameters the training data went through. Nothing here
refers back to the sklearn estimator it was extracted from, so a model
loaded from JSON behaves exactly like a freshly trained one.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ...errors import InputShapeError
from ...utils.stats import softmax


def _as_matrix(values: Any, name: str, ndim: int) -> np.ndarray:
    array = np.array(values, dtype=np.float64)
    if array.ndim != ndim:
        raise InputShapeError(f"{name} must be {ndim}-dimensional, got shape {array.shape}")
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class DiscriminantModel:
    """Trained linear discriminant classifier.

    Attributes
    ----------
    genes : Tuple[str, ...]
        Trained gene ids, in the column order of the weights
    classes : Tuple[str, ...]
        Class labels, in the order of the decision function rows
    projection : np.ndarray
        Genes x components projection weights
    projection_offset : np.ndarray
        Per-component offset added after projection
    coef : np.ndarray
        Classes x genes decision weights
    intercept : np.ndarray
        Per-class decision intercept
    priors : np.ndarray
        Class priors seen at training time
    reliability : Tuple[bool, ...]
        Per-class flag; False if the retest could not recover the class
    absorbed_by : Tuple[Optional[str], ...]
        For unreliable classes, the class most held-out cells went to
    transform : str
        Name of the log transform applied before training
    target_total : float
        Library size the training counts were scaled to
    retested : bool
        Whether the held-out retest was run
    """

    genes: Tuple[str, ...]
    classes: Tuple[str, ...]
    projection: np.ndarray
    projection_offset: np.ndarray
    coef: np.ndarray
    intercept: np.ndarray
    priors: np.ndarray
    reliability: Tuple[bool, ...] = field(default=())
    absorbed_by: Tuple[Optional[str], ...] = field(default=())
    transform: str = "log1p"
    target_total: float = 1e4
    retested: bool = False

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "genes", tuple(str(g) for g in self.genes))
        set_(self, "classes", tuple(str(c) for c in self.classes))
        set_(self, "projection", _as_matrix(self.projection, "projection", 2))
        set_(self, "projection_offset", _as_matrix(self.projection_offset, "projection_offset", 1))
        set_(self, "coef", _as_matrix(self.coef, "coef", 2))
        set_(self, "intercept", _as_matrix(self.intercept, "intercept", 1))
        set_(self, "priors", _as_matrix(self.priors, "priors", 1))
        if not self.reliability:
            set_(self, "reliability", (True,) * len(self.classes))
        if not self.absorbed_by:
            set_(self, "absorbed_by", (None,) * len(self.classes))
        set_(self, "reliability", tuple(bool(r) for r in self.reliability))
        set_(self, "absorbed_by", tuple(None if a is None else str(a) for a in self.absorbed_by))

        n_genes, n_classes = len(self.genes), len(self.classes)
        if len(set(self.genes)) != n_genes:
            raise InputShapeError("model genes must be unique")
        if n_classes < 2 or len(set(self.classes)) != n_classes:
            raise InputShapeError(f"model needs at least 2 unique classes, got {self.classes}")
        if self.projection.shape[0] != n_genes:
            raise InputShapeError(
                f"projection has {self.projection.shape[0]} rows for {n_genes} genes"
            )
        if self.projection_offset.shape[0] != self.projection.shape[1]:
            raise InputShapeError("projection_offset does not match projection components")
        if self.coef.shape != (n_classes, n_genes):
            raise InputShapeError(
                f"coef has shape {self.coef.shape}, expected {(n_classes, n_genes)}"
            )
        for name in ("intercept", "priors"):
            if getattr(self, name).shape[0] != n_classes:
                raise InputShapeError(f"{name} has wrong length for {n_classes} classes")
        for name in ("reliability", "absorbed_by"):
            if len(getattr(self, name)) != n_classes:
                raise InputShapeError(f"{name} has wrong length for {n_classes} classes")

    @property
    def n_components(self) -> int:
        return int(self.projection.shape[1])

    @property
    def component_names(self) -> List[str]:
        return [f"LD{i + 1}" for i in range(self.n_components)]

    @property
    def unreliable_classes(self) -> List[str]:
        return [c for c, ok in zip(self.classes, self.reliability) if not ok]

    def project(self, values: np.ndarray) -> np.ndarray:
        """Cells x genes (trained order) -> cells x LD components."""
        return np.asarray(values, dtype=float) @ self.projection + self.projection_offset

    def decision(self, values: np.ndarray) -> np.ndarray:
        """Cells x genes (trained order) -> cells x classes decision scores."""
        return np.asarray(values, dtype=float) @ self.coef.T + self.intercept

    def posteriors(self, values: np.ndarray) -> np.ndarray:
        """Class posterior probabilities (softmax of the decision scores)."""
        return softmax(self.decision(values))

    def reliability_table(self) -> pd.DataFrame:
        """One row per class with prior, reliability flag and absorber."""
        return pd.DataFrame(
            {
                "prior": self.priors,
                "reliable": list(self.reliability),
                "absorbed_by": list(self.absorbed_by),
            },
            index=pd.Index(self.classes, name="class"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return {
            "genes": list(self.genes),
            "classes": list(self.classes),
            "projection": self.projection.tolist(),
            "projection_offset": self.projection_offset.tolist(),
            "coef": self.coef.tolist(),
            "intercept": self.intercept.tolist(),
            "priors": self.priors.tolist(),
            "reliability": list(self.reliability),
            "absorbed_by": list(self.absorbed_by),
            "transform": self.transform,
            "target_total": float(self.target_total),
            "retested": self.retested,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscriminantModel":
        """Rebuild a model from ``to_dict`` output."""
        try:
            return cls(
                genes=tuple(data["genes"]),
                classes=tuple(data["classes"]),
                projection=data["projection"],
                projection_offset=data["projection_offset"],
                coef=data["coef"],
                intercept=data["intercept"],
                priors=data["priors"],
                reliability=tuple(data.get("reliability", ())),
                absorbed_by=tuple(data.get("absorbed_by", ())),
                transform=data.get("transform", "log1p"),
                target_total=float(data.get("target_total", 1e4)),
                retested=bool(data.get("retested", False)),
            )
        except KeyError as exc:
            raise InputShapeError(f"model document is missing field {exc}") from exc


@dataclass(frozen=True, eq=False)
class ModelBundle:
    """A discriminant model together with the gene scaling factors it needs.

    Attributes
    ----------
    model : DiscriminantModel
        Trained classifier
    gsf : pd.Series
        Gene id -> scaling factor, exactly as computed on the training data
    """

    model: DiscriminantModel
    gsf: pd.Series

    def __post_init__(self):
        gsf = pd.Series(self.gsf, dtype=np.float64).copy()
        gsf.index = gsf.index.astype(str)
        gsf.name = "gsf"
        if not gsf.index.is_unique:
            raise InputShapeError("gsf table has duplicate gene ids")
        object.__setattr__(self, "gsf", gsf)

    def trained_gsf(self) -> pd.Series:
        """Scaling factors of the trained genes, in trained order."""
        return self.gsf.reindex(list(self.model.genes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model.to_dict(),
            "gsf": {gene: float(value) for gene, value in self.gsf.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelBundle":
        try:
            model = DiscriminantModel.from_dict(data["model"])
            gsf = pd.Series(data["gsf"], dtype=np.float64)
        except KeyError as exc:
            raise InputShapeError(f"bundle document is missing field {exc}") from exc
        return cls(model=model, gsf=gsf)
