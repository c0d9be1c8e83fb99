"""Apply a trained discriminant model to a new dataset.

New data re-enters the chain after library-size normalization. It is
never re-fitted: the predictor applies the model's recorded transform
and the gene scaling factors stored alongside the model, so the
features the model sees are computed exactly as at training time.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging

import numpy as np
import pandas as pd

from ...errors import ModelMismatchError, NormalizationDriftError
from ..matrix import validate_expression_matrix
from ..preprocessing.normalization import apply_transform
from .config import PredictionConfig
from .confidence import filter_confident
from .model import DiscriminantModel, ModelBundle


@dataclass
class PredictionResult:
    """Result from applying a model to new cells.

    Attributes
    ----------
    embedding : pd.DataFrame
        Cells x LD components coordinates
    posteriors : pd.DataFrame
        Cells x classes posterior probabilities
    calls : pd.Series
        Cell id -> confident class or the unassigned sentinel
    gene_overlap : float
        Fraction of trained genes present in the new data
    missing_genes : List[str]
        Trained genes absent from the new data (zero-filled)
    unassigned_label : str
        Sentinel used in ``calls``
    """

    embedding: Optional[pd.DataFrame] = None
    posteriors: Optional[pd.DataFrame] = None
    calls: Optional[pd.Series] = None
    gene_overlap: float = 1.0
    missing_genes: List[str] = field(default_factory=list)
    unassigned_label: str = "unassigned"

    @property
    def n_unassigned(self) -> int:
        return int((self.calls == self.unassigned_label).sum()) if self.calls is not None else 0


class LDAPredictor:
    """Projects and classifies new cells with a frozen model.

    Parameters
    ----------
    config : PredictionConfig, optional
        Prediction configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.classification import LDAPredictor
    >>> predictor = LDAPredictor()
    >>> result = predictor.predict(normalized_new, bundle.model, bundle.gsf)
    >>> result.calls.value_counts()
    """

    def __init__(
        self,
        config: Optional[PredictionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PredictionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def features(
        self,
        normalized: pd.DataFrame,
        model: DiscriminantModel,
        gsf: pd.Series,
        min_gene_overlap: Optional[float] = None,
    ) -> pd.DataFrame:
        """Cells x trained-genes feature table for ``model``.

        Raises
        ------
        NormalizationDriftError
            If ``gsf`` lacks a finite value for any trained gene
        ModelMismatchError
            If fewer than ``min_gene_overlap`` of the trained genes are present
        """
        min_gene_overlap = (
            min_gene_overlap if min_gene_overlap is not None else self.config.min_gene_overlap
        )
        if not 0.0 <= min_gene_overlap <= 1.0:
            raise ValueError(f"min_gene_overlap must be in [0, 1], got {min_gene_overlap}")

        genes = list(model.genes)
        scaling = pd.Series(gsf, dtype=np.float64)
        scaling.index = scaling.index.astype(str)
        # NaN or infinite factors count as missing
        known = scaling[np.isfinite(scaling.to_numpy())]
        absent = [g for g in genes if g not in known.index]
        if absent:
            raise NormalizationDriftError(
                f"gsf table lacks finite values for {len(absent)} trained genes "
                f"(e.g. {absent[:5]})"
            )

        matrix = validate_expression_matrix(normalized, name="new expression")
        matrix.index = matrix.index.astype(str)
        present = matrix.index.intersection(pd.Index(genes))
        overlap = len(present) / len(genes)
        if overlap < min_gene_overlap:
            raise ModelMismatchError(
                f"only {len(present)}/{len(genes)} trained genes ({overlap:.0%}) "
                f"present, need {min_gene_overlap:.0%}"
            )

        restricted = matrix.reindex(genes, fill_value=0.0)
        logged = apply_transform(restricted.to_numpy(), model.transform)
        scaled = logged * scaling.reindex(genes).to_numpy()[:, None]
        return pd.DataFrame(scaled.T, index=matrix.columns, columns=genes)

    def predict(
        self,
        normalized: pd.DataFrame,
        model: DiscriminantModel,
        gsf: pd.Series,
        threshold: Optional[float] = None,
        min_gene_overlap: Optional[float] = None,
    ) -> PredictionResult:
        """Project new cells into LD space and call their classes.

        Parameters
        ----------
        normalized : pd.DataFrame
            Library-size normalized genes x cells matrix (not log transformed)
        model : DiscriminantModel
            Trained model
        gsf : pd.Series
            Gene scaling factors stored with the model
        threshold : float, optional
            Posterior required for a call. Uses config default if None.
        min_gene_overlap : float, optional
            Uses config default if None

        Returns
        -------
        PredictionResult
            LD coordinates, posteriors and confident calls
        """
        cfg = self.config
        threshold = threshold if threshold is not None else cfg.confidence_threshold

        features = self.features(normalized, model, gsf, min_gene_overlap=min_gene_overlap)
        values = features.to_numpy()
        available = set(normalized.index.astype(str))
        missing = [g for g in model.genes if g not in available]

        embedding = pd.DataFrame(
            model.project(values),
            index=features.index,
            columns=model.component_names,
        )
        posteriors = pd.DataFrame(
            model.posteriors(values),
            index=features.index,
            columns=list(model.classes),
        )
        calls = filter_confident(posteriors, threshold=threshold, unassigned=cfg.unassigned_label)

        result = PredictionResult(
            embedding=embedding,
            posteriors=posteriors,
            calls=calls,
            gene_overlap=1.0 - len(missing) / len(model.genes),
            missing_genes=missing,
            unassigned_label=cfg.unassigned_label,
        )
        if missing:
            self.logger.warning(
                "%d of %d trained genes missing from new data; zero-filled",
                len(missing),
                len(model.genes),
            )
        self.logger.info(
            "Predicted %d cells: %d confident, %d unassigned (threshold=%.2f)",
            len(calls),
            len(calls) - result.n_unassigned,
            result.n_unassigned,
            threshold,
        )
        return result

    def predict_bundle(
        self,
        normalized: pd.DataFrame,
        bundle: ModelBundle,
        threshold: Optional[float] = None,
    ) -> PredictionResult:
        """``predict`` with the model and gsf taken from a bundle."""
        return self.predict(normalized, bundle.model, bundle.gsf, threshold=threshold)
