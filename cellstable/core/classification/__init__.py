"""Classification module: reusable discriminant model over stable clusters.

Pipeline Stages
---------------
- Training: LDA on stable clusters, optional per-class held-out retest
- Prediction: project new normalized data with the stored gsf table
- Confidence: hard calls only above a posterior threshold

Example Usage
-------------
>>> from cellstable.core.classification import (
...     LDAModelTrainer, LDAPredictor, ModelBundle,
... )
>>> model = LDAModelTrainer().train(variance.ods_matrix(), stable.assignment)
>>> bundle = ModelBundle(model=model, gsf=variance.gsf)
>>> result = LDAPredictor().predict_bundle(normalized_new, bundle)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    LDAConfig,
    PredictionConfig,
    ClassificationConfig,
)

# Model artifacts
from .model import (
    DiscriminantModel,
    ModelBundle,
)

# Training
from .trainer import (
    LDAModelTrainer,
    TrainingResult,
    LDA_SOLVERS,
)

# Prediction
from .predictor import (
    LDAPredictor,
    PredictionResult,
)

# Confidence filter
from .confidence import (
    filter_confident,
    UNASSIGNED,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "LDAConfig",
    "PredictionConfig",
    "ClassificationConfig",
    # Model
    "DiscriminantModel",
    "ModelBundle",
    # Training
    "LDAModelTrainer",
    "TrainingResult",
    "LDA_SOLVERS",
    # Prediction
    "LDAPredictor",
    "PredictionResult",
    # Confidence
    "filter_confident",
    "UNASSIGNED",
]
