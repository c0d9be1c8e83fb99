"""LDA training on stable clusters.

Fits sklearn's LinearDiscriminantAnalysis and extracts everything a
prediction needs into a frozen DiscriminantModel:

- the affine LD projection, read off the fitted estimator by projecting
  the origin and the unit vectors, so it is independent of the solver's
  internal parametrisation
- the linear decision function (``coef_``/``intercept_``), expanded to
  one row per class for binary problems so posteriors are always a
  softmax over classes

With ``retest`` every other cell of each class is held out in turn, a
model is trained on all remaining cells and the held-out cells are
classified. A class whose held-out cells are not confidently called
back (recall below ``min_recall``) is flagged unreliable, together with
the class they were mostly confused with. This catches noisy or
inseparable reference labels.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis

from ...errors import DegenerateClusterError, InputShapeError
from ..matrix import align_labels, group_sizes, validate_expression_matrix
from .config import LDAConfig
from .model import DiscriminantModel

LDA_SOLVERS = ("svd", "eigen")


@dataclass
class TrainingResult:
    """Result from LDA training.

    Attributes
    ----------
    model : DiscriminantModel
        Frozen trained model
    training_accuracy : float
        Fraction of training cells whose argmax class is their label
    retest : pd.DataFrame, optional
        Per-class retest outcome (recall, confused_with, reliable,
        absorbed_by); None when no retest was run
    """

    model: DiscriminantModel
    training_accuracy: float = 0.0
    retest: Optional[pd.DataFrame] = None


class LDAModelTrainer:
    """Trains a discriminant model on labelled cells.

    Parameters
    ----------
    config : LDAConfig, optional
        Training configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellstable.core.classification import LDAModelTrainer
    >>> trainer = LDAModelTrainer()
    >>> model = trainer.train(logged.loc[variance.ods_genes], stable.assignment)
    >>> model.classes, model.n_components
    """

    def __init__(
        self,
        config: Optional[LDAConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LDAConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.solver not in LDA_SOLVERS:
            raise ValueError(
                f"solver must be one of {LDA_SOLVERS} (a projection is required), "
                f"got '{self.config.solver}'"
            )
        if self.config.solver == "svd" and self.config.shrinkage is not None:
            raise ValueError("shrinkage requires solver='eigen'")
        if not 0.0 <= self.config.min_recall <= 1.0:
            raise ValueError(f"min_recall must be in [0, 1], got {self.config.min_recall}")

    def _estimator(self) -> LinearDiscriminantAnalysis:
        return LinearDiscriminantAnalysis(
            solver=self.config.solver,
            shrinkage=self.config.shrinkage,
        )

    @staticmethod
    def _extract(
        lda: LinearDiscriminantAnalysis, n_genes: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        offset = lda.transform(np.zeros((1, n_genes)))[0]
        projection = lda.transform(np.eye(n_genes)) - offset

        coef = np.asarray(lda.coef_, dtype=float)
        intercept = np.asarray(lda.intercept_, dtype=float)
        if len(lda.classes_) == 2 and coef.shape[0] == 1:
            # sklearn scores the positive class only; the negative class sits at 0
            coef = np.vstack([np.zeros_like(coef[0]), coef[0]])
            intercept = np.array([0.0, intercept[0]])
        return projection, offset, coef, intercept

    def _retest_class(
        self, X: np.ndarray, y: np.ndarray, target: str
    ) -> Tuple[float, Optional[str]]:
        members = np.flatnonzero(y == target)
        held = members[1::2]
        train = np.ones(len(y), dtype=bool)
        train[held] = False

        lda = self._estimator().fit(X[train], y[train])
        proba = lda.predict_proba(X[held])
        calls = lda.classes_[proba.argmax(axis=1)].astype(str)
        confident = proba.max(axis=1) >= self.config.retest_confidence
        recovered = confident & (calls == target)
        recall = float(recovered.mean())

        others = pd.Series(calls[calls != target]).value_counts()
        if others.empty:
            return recall, None
        top = sorted(others.index, key=lambda label: (-others[label], str(label)))[0]
        return recall, str(top)

    def _run_retest(self, X: np.ndarray, y: np.ndarray, classes: List[str]) -> pd.DataFrame:
        if self.config.n_workers > 1:
            outcomes = Parallel(n_jobs=self.config.n_workers, prefer="threads")(
                delayed(self._retest_class)(X, y, c) for c in classes
            )
        else:
            outcomes = [self._retest_class(X, y, c) for c in classes]

        table = pd.DataFrame(
            {
                "recall": [r for r, _ in outcomes],
                "confused_with": [c for _, c in outcomes],
            },
            index=pd.Index(classes, name="class"),
        )
        table["reliable"] = table["recall"] >= self.config.min_recall
        table["absorbed_by"] = table["confused_with"].where(~table["reliable"], None)
        return table

    def fit(
        self,
        expression: pd.DataFrame,
        labels: pd.Series,
        retest: Optional[bool] = None,
        transform: str = "log1p",
        target_total: float = 1e4,
    ) -> TrainingResult:
        """Train a model and report training accuracy and retest outcome.

        Parameters
        ----------
        expression : pd.DataFrame
            Log-transformed genes x cells matrix restricted to the
            training genes (typically ods genes)
        labels : pd.Series
            Cell id -> class label (typically stable clusters)
        retest : bool, optional
            Run the held-out retest. Uses config default if None.
        transform : str
            Transform the expression went through; stored on the model
        target_total : float
            Library size used by the normalizer; stored on the model

        Returns
        -------
        TrainingResult
            Frozen model, training accuracy and retest table

        Raises
        ------
        InputShapeError
            If there are fewer than 2 classes or the inputs do not align
        DegenerateClusterError
            If a class has fewer than ``min_class_size`` cells
        """
        cfg = self.config
        retest = retest if retest is not None else cfg.retest

        matrix = validate_expression_matrix(
            expression, name="training expression", require_nonnegative=False
        )
        aligned = align_labels(labels, matrix.columns, name="training labels")
        sizes = group_sizes(aligned)
        if len(sizes) < 2:
            raise InputShapeError(f"LDA training needs at least 2 classes, got {len(sizes)}")
        small = sizes[sizes < cfg.min_class_size]
        if len(small) > 0:
            raise DegenerateClusterError(
                f"Classes below min_class_size={cfg.min_class_size}: {small.to_dict()}"
            )

        X = matrix.to_numpy().T
        y = aligned.to_numpy()
        n_genes = X.shape[1]

        self.logger.info(
            "Training LDA (%s) on %d cells x %d genes, %d classes",
            cfg.solver,
            X.shape[0],
            n_genes,
            len(sizes),
        )
        lda = self._estimator().fit(X, y)
        projection, offset, coef, intercept = self._extract(lda, n_genes)
        classes = [str(c) for c in lda.classes_]

        retest_table = None
        reliability = [True] * len(classes)
        absorbed_by: List[Optional[str]] = [None] * len(classes)
        if retest and int(sizes.min()) < 2:
            self.logger.warning(
                "Skipping retest: every class needs at least 2 cells, smallest has %d",
                int(sizes.min()),
            )
        elif retest:
            retest_table = self._run_retest(X, y, classes)
            reliability = retest_table["reliable"].tolist()
            absorbed_by = [
                None if pd.isna(a) else str(a) for a in retest_table["absorbed_by"]
            ]
            for cls_name, row in retest_table.iterrows():
                if not row["reliable"]:
                    self.logger.warning(
                        "Class %s is unreliable: %.0f%% of held-out cells recovered "
                        "(mostly called %s)",
                        cls_name,
                        100.0 * row["recall"],
                        row["absorbed_by"],
                    )

        model = DiscriminantModel(
            genes=tuple(matrix.index),
            classes=tuple(classes),
            projection=projection,
            projection_offset=offset,
            coef=coef,
            intercept=intercept,
            priors=np.asarray(lda.priors_, dtype=float),
            reliability=tuple(reliability),
            absorbed_by=tuple(absorbed_by),
            transform=transform,
            target_total=target_total,
            retested=retest_table is not None,
        )

        calls = np.asarray(model.classes)[model.decision(X).argmax(axis=1)]
        accuracy = float((calls == y).mean())
        self.logger.info(
            "LDA model: %d components, training accuracy %.1f%%",
            model.n_components,
            100.0 * accuracy,
        )
        return TrainingResult(model=model, training_accuracy=accuracy, retest=retest_table)

    def train(
        self,
        expression: pd.DataFrame,
        labels: pd.Series,
        retest: Optional[bool] = None,
        transform: str = "log1p",
        target_total: float = 1e4,
    ) -> DiscriminantModel:
        """Train and return only the frozen model (see ``fit``)."""
        return self.fit(
            expression,
            labels,
            retest=retest,
            transform=transform,
            target_total=target_total,
        ).model
