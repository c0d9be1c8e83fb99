"""Unit tests for classification module."""

import dataclasses

import pytest
import numpy as np
import pandas as pd
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis

from cellstable.core.classification import (
    ClassificationConfig,
    LDAConfig,
    PredictionConfig,
    DiscriminantModel,
    ModelBundle,
    LDAModelTrainer,
    LDAPredictor,
    filter_confident,
    UNASSIGNED,
)
from cellstable.errors import (
    DegenerateClusterError,
    InputShapeError,
    ModelMismatchError,
    NormalizationDriftError,
)
from tests.fixtures import create_separable_expression


def _unit_gsf(genes) -> pd.Series:
    return pd.Series(1.0, index=list(genes))


class TestClassificationConfig:
    """Tests for classification configuration dataclasses."""

    def test_default_values(self):
        config = ClassificationConfig()
        assert config.lda.solver == "svd"
        assert config.lda.retest is False
        assert config.lda.min_recall == 0.5
        assert config.prediction.min_gene_overlap == 0.5
        assert config.prediction.confidence_threshold == 0.9
        assert config.prediction.unassigned_label == UNASSIGNED

    def test_from_yaml(self, tmp_path):
        yaml_content = """
classification:
  lda:
    retest: true
    retest_confidence: 0.8
  prediction:
    confidence_threshold: 0.75
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = ClassificationConfig.from_yaml(yaml_file)
        assert config.lda.retest is True
        assert config.lda.retest_confidence == 0.8
        assert config.prediction.confidence_threshold == 0.75

    def test_to_dict_round_trip(self):
        config = ClassificationConfig(lda=LDAConfig(solver="eigen", shrinkage="auto"))
        assert ClassificationConfig.from_dict(config.to_dict()) == config


class TestLDAModelTrainer:
    """Tests for LDAModelTrainer class."""

    def test_training_round_trip(self, separable_expression):
        """Projecting training cells through their own model recovers the labels."""
        expression, labels = separable_expression
        model = LDAModelTrainer().train(expression, labels, transform="raw")

        posteriors = model.posteriors(expression.T.to_numpy())
        calls = np.asarray(model.classes)[posteriors.argmax(axis=1)]
        assert (calls == labels.to_numpy()).mean() >= 0.95

    def test_model_contents(self, separable_expression):
        """Model records genes, classes and normalization parameters."""
        expression, labels = separable_expression
        result = LDAModelTrainer().fit(
            expression, labels, transform="log2p", target_total=5e3
        )
        model = result.model

        assert model.genes == tuple(expression.index)
        assert model.classes == ("c0", "c1", "c2")
        assert model.n_components == 2
        assert model.component_names == ["LD1", "LD2"]
        assert model.transform == "log2p"
        assert model.target_total == 5e3
        assert model.retested is False
        assert model.reliability == (True, True, True)
        assert result.training_accuracy >= 0.95
        assert result.retest is None

    def test_projection_matches_sklearn(self, separable_expression):
        """The extracted affine projection reproduces sklearn's transform."""
        expression, labels = separable_expression
        model = LDAModelTrainer().train(expression, labels)

        X = expression.T.to_numpy()
        lda = LinearDiscriminantAnalysis(solver="svd").fit(X, labels.to_numpy())
        np.testing.assert_allclose(model.project(X), lda.transform(X), atol=1e-8)
        np.testing.assert_allclose(model.posteriors(X), lda.predict_proba(X), atol=1e-8)

    def test_binary_expansion(self):
        """Two-class models carry one decision row per class."""
        expression, labels = create_separable_expression(n_classes=2, seed=5)
        model = LDAModelTrainer().train(expression, labels)

        assert model.coef.shape == (2, expression.shape[0])
        assert model.intercept.shape == (2,)
        assert model.n_components == 1

        X = expression.T.to_numpy()
        lda = LinearDiscriminantAnalysis().fit(X, labels.to_numpy())
        np.testing.assert_allclose(model.posteriors(X), lda.predict_proba(X), atol=1e-8)

    def test_eigen_solver_with_shrinkage(self, separable_expression):
        """The eigen solver with shrinkage also yields a projection."""
        expression, labels = separable_expression
        trainer = LDAModelTrainer(LDAConfig(solver="eigen", shrinkage="auto"))
        result = trainer.fit(expression, labels)
        assert result.model.projection.shape == (expression.shape[0], 2)
        assert result.training_accuracy >= 0.95

    def test_retest_flags_inseparable_pair(self):
        """Classes drawn from the same distribution fail the held-out retest."""
        expression, labels = create_separable_expression(
            n_classes=3, cells_per_class=30, n_genes=10, duplicate_first=True, seed=7
        )
        result = LDAModelTrainer().fit(expression, labels, retest=True)
        model = result.model

        assert model.retested is True
        assert set(model.unreliable_classes) == {"c0", "c1"}
        assert model.reliability[model.classes.index("c2")]
        assert dict(zip(model.classes, model.absorbed_by))["c2"] is None
        assert result.retest.loc["c2", "recall"] >= 0.8
        assert result.retest.loc["c0", "recall"] < 0.5

    def test_retest_keeps_separable_classes(self, separable_expression):
        """Well separated classes are all reliable."""
        expression, labels = separable_expression
        result = LDAModelTrainer(LDAConfig(n_workers=2)).fit(expression, labels, retest=True)

        assert result.model.unreliable_classes == []
        assert list(result.retest.index) == ["c0", "c1", "c2"]
        assert result.retest["reliable"].all()
        assert result.retest["absorbed_by"].isna().all()

    def test_single_class_raises(self, separable_expression):
        expression, _ = separable_expression
        labels = pd.Series("c0", index=expression.columns)
        with pytest.raises(InputShapeError, match="at least 2 classes"):
            LDAModelTrainer().fit(expression, labels)

    def test_small_class_raises(self, separable_expression):
        expression, labels = separable_expression
        labels = labels.copy()
        labels.iloc[0] = "lonely"
        with pytest.raises(DegenerateClusterError, match="min_class_size"):
            LDAModelTrainer().fit(expression, labels)

    def test_invalid_solver(self):
        with pytest.raises(ValueError, match="solver"):
            LDAModelTrainer(LDAConfig(solver="lsqr"))
        with pytest.raises(ValueError, match="shrinkage"):
            LDAModelTrainer(LDAConfig(solver="svd", shrinkage=0.1))


class TestDiscriminantModel:
    """Tests for the frozen model value."""

    @pytest.fixture
    def model(self, separable_expression):
        expression, labels = separable_expression
        return LDAModelTrainer().train(expression, labels)

    def test_immutable(self, model):
        """Fields cannot be reassigned and arrays are read-only."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            model.classes = ("x", "y")
        with pytest.raises(ValueError):
            model.coef[0, 0] = 1.0

    def test_dict_round_trip(self, model):
        """to_dict / from_dict preserve every array exactly."""
        rebuilt = DiscriminantModel.from_dict(model.to_dict())
        assert rebuilt.genes == model.genes
        assert rebuilt.classes == model.classes
        for name in ("projection", "projection_offset", "coef", "intercept", "priors"):
            np.testing.assert_array_equal(getattr(rebuilt, name), getattr(model, name))

    def test_shape_validation(self, model):
        """Inconsistent shapes are rejected."""
        data = model.to_dict()
        data["coef"] = data["coef"][:1]
        with pytest.raises(InputShapeError, match="coef"):
            DiscriminantModel.from_dict(data)

    def test_missing_field(self, model):
        data = model.to_dict()
        del data["projection"]
        with pytest.raises(InputShapeError, match="projection"):
            DiscriminantModel.from_dict(data)

    def test_reliability_table(self, model):
        table = model.reliability_table()
        assert list(table.index) == list(model.classes)
        assert list(table.columns) == ["prior", "reliable", "absorbed_by"]
        np.testing.assert_allclose(table["prior"].sum(), 1.0)

    def test_bundle_gsf(self, model):
        """The bundle keeps gsf as a float Series and exposes trained genes."""
        gsf = {gene: 0.5 for gene in model.genes}
        gsf["extra_gene"] = 2.0
        bundle = ModelBundle(model=model, gsf=gsf)

        assert bundle.gsf.name == "gsf"
        assert bundle.gsf.dtype == np.float64
        assert list(bundle.trained_gsf().index) == list(model.genes)
        rebuilt = ModelBundle.from_dict(bundle.to_dict())
        pd.testing.assert_series_equal(rebuilt.gsf, bundle.gsf)


class TestLDAPredictor:
    """Tests for LDAPredictor class."""

    @pytest.fixture
    def trained(self, separable_expression):
        expression, labels = separable_expression
        model = LDAModelTrainer().train(expression, labels, transform="raw")
        return expression, labels, model

    def test_predict_training_cells(self, trained):
        """Training cells are called back confidently."""
        expression, labels, model = trained
        result = LDAPredictor().predict(expression, model, _unit_gsf(model.genes))

        assert result.embedding.shape == (expression.shape[1], model.n_components)
        assert list(result.posteriors.columns) == list(model.classes)
        np.testing.assert_allclose(result.posteriors.sum(axis=1), 1.0)
        recovered = result.posteriors.idxmax(axis=1) == labels
        assert recovered.mean() >= 0.95
        assert result.gene_overlap == 1.0
        assert result.missing_genes == []
        assert set(result.calls.unique()) <= set(model.classes) | {UNASSIGNED}

    def test_gene_order_independent(self, trained):
        """Rows of the new matrix are matched by gene id, not position."""
        expression, _, model = trained
        predictor = LDAPredictor()
        gsf = _unit_gsf(model.genes)
        straight = predictor.predict(expression, model, gsf)
        shuffled = predictor.predict(expression.iloc[::-1], model, gsf)
        pd.testing.assert_frame_equal(straight.embedding, shuffled.embedding)

    def test_missing_gene_zero_filled(self, trained):
        """Absent trained genes are zero-filled and reported."""
        expression, _, model = trained
        predictor = LDAPredictor()
        partial = expression.drop(index="Gene_11")
        features = predictor.features(partial, model, _unit_gsf(model.genes))
        assert (features["Gene_11"] == 0.0).all()

        result = predictor.predict(partial, model, _unit_gsf(model.genes))
        assert result.missing_genes == ["Gene_11"]
        assert result.gene_overlap == pytest.approx(11 / 12)

    def test_gsf_and_transform_applied(self, separable_expression):
        """Features are transform(values) * gsf, in trained gene order."""
        expression, labels = separable_expression
        model = LDAModelTrainer().train(expression, labels, transform="log1p")
        gsf = pd.Series(np.linspace(0.5, 2.0, len(model.genes)), index=list(model.genes))

        features = LDAPredictor().features(expression, model, gsf)
        expected = np.log1p(expression).mul(gsf, axis=0).T
        np.testing.assert_allclose(features.to_numpy(), expected.to_numpy())

    def test_low_overlap_raises(self, trained):
        """Too few shared genes is a model mismatch."""
        expression, _, model = trained
        with pytest.raises(ModelMismatchError, match="trained genes"):
            LDAPredictor().predict(expression.iloc[:3], model, _unit_gsf(model.genes))

    def test_overlap_threshold_configurable(self, trained):
        expression, _, model = trained
        predictor = LDAPredictor(PredictionConfig(min_gene_overlap=0.2))
        result = predictor.predict(expression.iloc[:3], model, _unit_gsf(model.genes))
        assert len(result.missing_genes) == 9

    def test_gsf_drift_raises(self, trained):
        """A gsf table without some trained gene is normalization drift."""
        expression, _, model = trained
        gsf = _unit_gsf(model.genes).drop(index="Gene_0")
        with pytest.raises(NormalizationDriftError, match="gsf"):
            LDAPredictor().predict(expression, model, gsf)

    @pytest.mark.parametrize("bad_value", [np.nan, np.inf])
    def test_non_finite_gsf_raises(self, trained, bad_value):
        """A trained gene with a NaN or infinite factor counts as missing."""
        expression, _, model = trained
        gsf = _unit_gsf(model.genes)
        gsf["Gene_0"] = bad_value
        with pytest.raises(NormalizationDriftError, match="Gene_0"):
            LDAPredictor().predict(expression, model, gsf)

    def test_drift_checked_before_overlap(self, trained):
        """Drift is reported even when the overlap is also too low."""
        expression, _, model = trained
        gsf = _unit_gsf(model.genes).drop(index="Gene_0")
        with pytest.raises(NormalizationDriftError):
            LDAPredictor().predict(expression.iloc[:2], model, gsf)

    def test_predict_bundle(self, trained):
        expression, _, model = trained
        bundle = ModelBundle(model=model, gsf=_unit_gsf(model.genes))
        result = LDAPredictor().predict_bundle(expression, bundle, threshold=0.5)
        assert result.n_unassigned <= 5


class TestFilterConfident:
    """Tests for the confidence filter."""

    @pytest.fixture
    def posteriors(self):
        return pd.DataFrame(
            [[0.95, 0.05], [0.5, 0.5], [0.2, 0.8]],
            index=["cell_a", "cell_b", "cell_c"],
            columns=["x", "y"],
        )

    def test_calls(self, posteriors):
        calls = filter_confident(posteriors, threshold=0.9)
        assert calls.tolist() == ["x", UNASSIGNED, UNASSIGNED]
        assert calls.name == "call"
        assert calls.index.equals(posteriors.index)

    def test_lower_threshold(self, posteriors):
        calls = filter_confident(posteriors, threshold=0.75, unassigned="none")
        assert calls.tolist() == ["x", "none", "y"]

    def test_threshold_is_inclusive(self, posteriors):
        calls = filter_confident(posteriors, threshold=0.5)
        assert calls.loc["cell_b"] == "x"

    @pytest.mark.parametrize("threshold", [0.0, -0.1, 1.5])
    def test_invalid_threshold(self, posteriors, threshold):
        with pytest.raises(ValueError, match="threshold"):
            filter_confident(posteriors, threshold=threshold)

    def test_no_classes(self):
        with pytest.raises(ValueError):
            filter_confident(pd.DataFrame(index=["a"]), threshold=0.9)
