"""Configuration classes for the discriminant classifier.

Covers training (LDA solver, per-class held-out retest), prediction on
new datasets (gene overlap guard) and the confidence filter.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class LDAConfig:
    """Configuration for LDA model training.

    Attributes
    ----------
    solver : str
        sklearn LDA solver ('svd' or 'eigen')
    shrinkage : float or str, optional
        Covariance shrinkage ('auto' or 0..1); not valid with 'svd'
    retest : bool
        Hold out half of each class in turn and check that a model
        trained on the remaining cells calls them back correctly
    retest_confidence : float
        Posterior a held-out cell needs to count as recovered
    min_recall : float
        Fraction of held-out cells that must be recovered for the
        class to stay reliable
    min_class_size : int
        Minimum cells per class
    n_workers : int
        Parallel jobs for the retest models
    """

    solver: str = "svd"
    shrinkage: Optional[Any] = None
    retest: bool = False
    retest_confidence: float = 0.9
    min_recall: float = 0.5
    min_class_size: int = 2
    n_workers: int = 1


@dataclass
class PredictionConfig:
    """Configuration for applying a trained model to new data.

    Attributes
    ----------
    min_gene_overlap : float
        Minimum fraction of trained genes present in the new data
    confidence_threshold : float
        Posterior required for a hard call
    unassigned_label : str
        Sentinel for cells below the threshold
    """

    min_gene_overlap: float = 0.5
    confidence_threshold: float = 0.9
    unassigned_label: str = "unassigned"


@dataclass
class ClassificationConfig:
    """Master configuration for training and prediction.

    Attributes
    ----------
    lda : LDAConfig
        Training configuration
    prediction : PredictionConfig
        Prediction configuration
    """

    lda: LDAConfig = field(default_factory=LDAConfig)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            lda=LDAConfig(**data.get("lda", {})),
            prediction=PredictionConfig(**data.get("prediction", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ClassificationConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "classification" in data:
            data = data["classification"]

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "lda": {
                "solver": self.lda.solver,
                "shrinkage": self.lda.shrinkage,
                "retest": self.lda.retest,
                "retest_confidence": self.lda.retest_confidence,
                "min_recall": self.lda.min_recall,
                "min_class_size": self.lda.min_class_size,
                "n_workers": self.lda.n_workers,
            },
            "prediction": {
                "min_gene_overlap": self.prediction.min_gene_overlap,
                "confidence_threshold": self.prediction.confidence_threshold,
                "unassigned_label": self.prediction.unassigned_label,
            },
        }
