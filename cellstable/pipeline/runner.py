"""End-to-end driver wiring the analysis stages.

``train`` runs the reference chain (clean, normalize, variance scaling,
PCA, graph clustering, stability analysis, LDA) and returns a model
bundle. ``integrate`` takes new datasets through normalization,
prediction with the stored bundle, confidence filtering and per-cluster
batch correction into one joint LD embedding.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import pandas as pd

from ..core.classification import (
    LDAModelTrainer,
    LDAPredictor,
    ModelBundle,
    PredictionResult,
    TrainingResult,
)
from ..core.clustering import (
    ClusterStabilityAnalyzer,
    ClusteringResult,
    CommunityClusterer,
    DifferentialExpressionEngine,
    PCAReducer,
    PCAResult,
    StabilityResult,
)
from ..core.clustering.algorithms import AlgorithmLike
from ..core.integration import BatchCorrectionResult, ClusterBasedBatchCorrector
from ..core.integration.batch import TransformLike
from ..core.matrix import align_labels, describe_shape
from ..core.preprocessing import (
    CleaningResult,
    CountMatrixCleaner,
    CountNormalizer,
    OdsPolicy,
    VarianceNormalizer,
    VarianceResult,
)
from ..errors import InputShapeError
from .config import PipelineSettings
from .executor import InMemoryExecutor
from .logger import PipelineLogger


@dataclass
class TrainingRun:
    """Everything produced by ``AnalysisPipeline.train``.

    Attributes
    ----------
    cleaning : CleaningResult
        Cleaned counts and removed ids
    normalized : pd.DataFrame
        Library-size normalized counts
    variance : VarianceResult
        Gene statistics, gsf and ods genes
    pca : PCAResult
        PCA embedding of the ods genes
    clustering : ClusteringResult
        Preliminary (over-segmented) clusters
    stability : StabilityResult
        Stable clusters and merge log
    training : TrainingResult
        Trained model, accuracy and retest outcome
    bundle : ModelBundle
        Model + gsf table for reuse on new data
    prediction : PredictionResult
        The model applied back to the training cells
    """

    cleaning: CleaningResult
    normalized: pd.DataFrame
    variance: VarianceResult
    pca: PCAResult
    clustering: ClusteringResult
    stability: StabilityResult
    training: TrainingResult
    bundle: ModelBundle
    prediction: PredictionResult

    @property
    def model(self):
        return self.bundle.model

    def summary(self) -> Dict[str, Any]:
        """Small JSON-compatible overview of the run."""
        return {
            "cleaned": describe_shape(self.cleaning.matrix),
            "n_ods_genes": len(self.variance.ods_genes),
            "n_pcs": self.pca.n_components,
            "n_preliminary_clusters": self.clustering.n_clusters,
            "n_stable_clusters": self.stability.n_clusters,
            "stable_cluster_sizes": self.stability.cluster_sizes,
            "classes": list(self.model.classes),
            "unreliable_classes": self.model.unreliable_classes,
            "training_accuracy": self.training.training_accuracy,
            "n_unassigned": self.prediction.n_unassigned,
        }


@dataclass
class IntegrationRun:
    """Everything produced by ``AnalysisPipeline.integrate``.

    Attributes
    ----------
    predictions : Dict[str, PredictionResult]
        Per-dataset prediction
    batches : pd.Series
        Cell id -> dataset name
    calls : pd.Series
        Cell id -> confident class or unassigned, over all datasets
    correction : BatchCorrectionResult
        Joint corrected embedding and per-cluster shifts
    """

    predictions: Dict[str, PredictionResult] = field(default_factory=dict)
    batches: Optional[pd.Series] = None
    calls: Optional[pd.Series] = None
    correction: Optional[BatchCorrectionResult] = None

    @property
    def embedding(self) -> pd.DataFrame:
        return self.correction.corrected


class AnalysisPipeline:
    """Train / integrate driver.

    Parameters
    ----------
    settings : PipelineSettings, optional
        Run settings. If None, uses defaults.
    logger : PipelineLogger, optional
        Stage logger. If None, stages run without start/complete lines.
    clustering_algorithm : ClusteringAlgorithm, callable or str, optional
        Overrides the configured community detection capability
    ods_policy : OdsPolicy, optional
        Overrides the configured ods selection policy
    batch_transform : BatchTransform, callable or str, optional
        Overrides the configured batch transform

    Example
    -------
    >>> pipeline = AnalysisPipeline(PipelineSettings.from_yaml("run.yaml"))
    >>> training = pipeline.train(reference_counts)
    >>> joint = pipeline.integrate({"a": counts_a, "b": counts_b}, training.bundle)
    >>> joint.embedding.head()
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        logger: Optional[PipelineLogger] = None,
        clustering_algorithm: Optional[AlgorithmLike] = None,
        ods_policy: Optional[OdsPolicy] = None,
        batch_transform: Optional[TransformLike] = None,
    ):
        self.settings = settings or PipelineSettings()
        self.logger = logger
        s = self.settings
        cs = s.clustering_stage

        self.cleaner = CountMatrixCleaner(s.preprocessing.cleaning)
        self.normalizer = CountNormalizer(s.preprocessing.normalization)
        self.variance = VarianceNormalizer(s.preprocessing.variance, ods_policy=ods_policy)
        self.reducer = PCAReducer(cs.pca)
        self.clusterer = CommunityClusterer(cs.clustering, algorithm=clustering_algorithm)
        self.stability = ClusterStabilityAnalyzer(
            cs.stability, de_engine=DifferentialExpressionEngine(cs.de)
        )
        self.trainer = LDAModelTrainer(s.classification.lda)
        self.predictor = LDAPredictor(s.classification.prediction)
        self.corrector = ClusterBasedBatchCorrector(
            s.batch_correction,
            transform=batch_transform,
            unassigned_label=s.classification.prediction.unassigned_label,
        )

    def _executor(self) -> InMemoryExecutor:
        return InMemoryExecutor(logger=self.logger)

    def train(
        self,
        counts: pd.DataFrame,
        labels: Optional[pd.Series] = None,
        retest: Optional[bool] = None,
    ) -> TrainingRun:
        """Run the reference chain on a raw count matrix.

        Parameters
        ----------
        counts : pd.DataFrame
            Raw genes x cells counts
        labels : pd.Series, optional
            Reference cell labels to train on instead of the stable
            clusters (cells removed by cleaning are dropped)
        retest : bool, optional
            LDA retest. Defaults to True with reference labels, otherwise
            to ``run.retest``.

        Returns
        -------
        TrainingRun
            All stage results plus the reusable model bundle
        """
        transform = self.settings.preprocessing.normalization.transform
        target_total = self.settings.preprocessing.normalization.target_total
        if retest is None:
            retest = True if labels is not None else self.settings.run.retest

        executor = self._executor()

        def clean(counts, stage_results):
            return self.cleaner.clean(counts)

        def normalize(counts, stage_results):
            return self.normalizer.normalize(stage_results["clean"].matrix)

        def scale(counts, stage_results):
            return self.variance.fit(stage_results["normalize"], transform=transform)

        def reduce(counts, stage_results):
            return self.reducer.reduce(stage_results["variance"].ods_matrix())

        def cluster(counts, stage_results):
            return self.clusterer.cluster(stage_results["pca"].embedding)

        def stabilize(counts, stage_results):
            logged = self.normalizer.log_transform(stage_results["normalize"], transform)
            return self.stability.analyze(
                logged,
                stage_results["cluster"].assignment,
                counts=stage_results["clean"].matrix,
            )

        def train_model(counts, stage_results):
            features = stage_results["variance"].ods_matrix()
            if labels is not None:
                targets = align_labels(
                    labels, features.columns, name="reference labels", allow_extra=True
                )
            else:
                targets = stage_results["stability"].assignment
            return self.trainer.fit(
                features, targets, retest=retest, transform=transform, target_total=target_total
            )

        def self_predict(counts, stage_results):
            bundle = ModelBundle(
                model=stage_results["train"].model, gsf=stage_results["variance"].gsf
            )
            prediction = self.predictor.predict_bundle(stage_results["normalize"], bundle)
            return bundle, prediction

        executor.register_stage("clean", clean, name="Count matrix cleaning")
        executor.register_stage("normalize", normalize, ["clean"], "Library-size normalization")
        executor.register_stage("variance", scale, ["normalize"], "Variance normalization")
        executor.register_stage("pca", reduce, ["variance"], "PCA embedding")
        executor.register_stage("cluster", cluster, ["pca"], "Graph clustering")
        executor.register_stage("stability", stabilize, ["cluster"], "Stability analysis")
        executor.register_stage("train", train_model, ["stability"], "LDA training")
        executor.register_stage("predict", self_predict, ["train"], "Training-set prediction")

        results = executor.run(counts=counts)
        bundle, prediction = results["predict"]
        return TrainingRun(
            cleaning=results["clean"],
            normalized=results["normalize"],
            variance=results["variance"],
            pca=results["pca"],
            clustering=results["cluster"],
            stability=results["stability"],
            training=results["train"],
            bundle=bundle,
            prediction=prediction,
        )

    def integrate(
        self,
        datasets: Mapping[str, pd.DataFrame],
        bundle: ModelBundle,
        threshold: Optional[float] = None,
    ) -> IntegrationRun:
        """Project new datasets with a stored bundle and remove batch offsets.

        Parameters
        ----------
        datasets : Mapping[str, pd.DataFrame]
            Batch name -> raw genes x cells counts; cell ids must be
            unique across all datasets
        bundle : ModelBundle
            Trained model and its gsf table
        threshold : float, optional
            Confidence threshold for calls. Uses config default if None.

        Returns
        -------
        IntegrationRun
            Per-dataset predictions and the corrected joint embedding
        """
        if not datasets:
            raise InputShapeError("integrate needs at least one dataset")

        seen: Dict[str, str] = {}
        for name, counts in datasets.items():
            for cell in counts.columns:
                if cell in seen:
                    raise InputShapeError(
                        f"cell id '{cell}' appears in datasets '{seen[cell]}' and '{name}'"
                    )
                seen[cell] = name

        executor = self._executor()

        def predict(datasets, stage_results):
            predictions = {}
            for name, counts in datasets.items():
                normalized = self.normalizer.normalize(
                    counts, target_total=bundle.model.target_total
                )
                predictions[name] = self.predictor.predict_bundle(
                    normalized, bundle, threshold=threshold
                )
            return predictions

        def correct(datasets, stage_results):
            predictions = stage_results["predict"]
            embedding = pd.concat([p.embedding for p in predictions.values()])
            calls = pd.concat([p.calls for p in predictions.values()])
            batches = pd.Series(
                [name for name, p in predictions.items() for _ in range(len(p.calls))],
                index=embedding.index,
                name="batch",
            )
            return batches, calls, self.corrector.correct(embedding, batches, calls)

        executor.register_stage("predict", predict, name="Normalize and predict")
        executor.register_stage("correct", correct, ["predict"], "Batch correction")

        results = executor.run(datasets=dict(datasets))
        batches, calls, correction = results["correct"]
        return IntegrationRun(
            predictions=results["predict"],
            batches=batches,
            calls=calls,
            correction=correction,
        )
