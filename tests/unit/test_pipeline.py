"""Unit tests for pipeline orchestration module."""

import logging

import pytest
import numpy as np
import pandas as pd

from cellstable.core.integration import batch_mean_offsets
from cellstable.errors import InputShapeError
from cellstable.pipeline import (
    AnalysisPipeline,
    InMemoryExecutor,
    PipelineLogger,
    PipelineSettings,
    RunConfig,
)
from tests.fixtures import create_count_matrix


class TestPipelineSettings:
    """Tests for PipelineSettings."""

    def test_defaults(self):
        settings = PipelineSettings()
        assert settings.preprocessing.cleaning.min_reads == 10
        assert settings.clustering_stage.stability.min_diff_genes == 5
        assert settings.batch_correction.method == "mean_align"
        assert settings.run == RunConfig()

    def test_load(self, sample_run_config):
        """Nested 'cellstable' section is read and partial sections keep defaults."""
        settings = PipelineSettings.from_yaml(sample_run_config)
        assert settings.preprocessing.variance.ods_policy == "top_residual"
        assert settings.preprocessing.variance.n_top_genes == 40
        assert settings.clustering_stage.clustering.algorithm == "components"
        assert settings.clustering_stage.stability.z_threshold == 3.0
        assert settings.clustering_stage.de.method == "ttest"
        assert settings.classification.lda.solver == "svd"

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown configuration sections"):
            PipelineSettings.from_dict({"plotting": {}})

    def test_unknown_key(self):
        with pytest.raises(TypeError):
            PipelineSettings.from_dict({"run": {"colour": "red"}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PipelineSettings.from_yaml(tmp_path / "absent.yaml")

    def test_yaml_round_trip(self, tmp_path, small_run_settings):
        """to_yaml output loads back into equal settings."""
        settings = PipelineSettings.from_dict(small_run_settings)
        path = tmp_path / "dumped.yaml"
        path.write_text(settings.to_yaml())
        assert PipelineSettings.from_yaml(path) == settings


class TestPipelineLogger:
    """Tests for PipelineLogger class."""

    def test_init(self, tmp_path):
        """Test logger initialization."""
        logger = PipelineLogger(tmp_path)
        assert logger.log_dir == tmp_path
        assert logger.log_file.name.startswith("pipeline_")

    def test_setup_writes_file(self, tmp_path):
        """Package loggers end up in the run log."""
        logger = PipelineLogger(tmp_path, console=False).setup()
        logging.getLogger("cellstable.core.test").info("stage message")
        logger.log_stage_complete("clean", 3.0)
        logger.close()

        text = logger.log_file.read_text()
        assert "stage message" in text
        assert "Stage clean completed successfully in 3.0s" in text

    def test_console_only(self):
        logger = PipelineLogger(console=False).setup()
        assert logger.log_file is None
        assert logger.logger.handlers == []

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="log level"):
            PipelineLogger(log_level="LOUD")

    def test_format_duration_seconds(self):
        """Test formatting seconds."""
        assert PipelineLogger.format_duration(45.2) == "45.2s"

    def test_format_duration_minutes(self):
        """Test formatting minutes."""
        assert PipelineLogger.format_duration(83) == "1m 23s"

    def test_format_duration_hours(self):
        """Test formatting hours."""
        assert PipelineLogger.format_duration(8100) == "2h 15m"


class TestInMemoryExecutor:
    """Tests for InMemoryExecutor class."""

    def test_register_stage(self):
        """Test registering stages."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: "result_a")
        assert "A" in executor.stages

    def test_register_twice(self):
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None)
        with pytest.raises(ValueError, match="already registered"):
            executor.register_stage("A", lambda **k: None)

    def test_run_passes_results(self):
        """Later stages see earlier results and the run kwargs."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda value, **k: value * 2)
        executor.register_stage(
            "B", lambda value, stage_results: stage_results["A"] + value, depends_on=["A"]
        )

        results = executor.run(value=3)
        assert results == {"A": 6, "B": 9}
        assert executor.completed_stages == ["A", "B"]
        assert set(executor.durations) == {"A", "B"}

    def test_execution_order(self):
        """Test execution order with dependencies."""
        executor = InMemoryExecutor()
        order = []

        executor.register_stage("C", lambda **k: order.append("C"), depends_on=["B"])
        executor.register_stage("B", lambda **k: order.append("B"), depends_on=["A"])
        executor.register_stage("A", lambda **k: order.append("A"))

        executor.run()
        assert order == ["A", "B", "C"]

    def test_circular_dependency(self):
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None, depends_on=["B"])
        executor.register_stage("B", lambda **k: None, depends_on=["A"])
        with pytest.raises(ValueError, match="Circular dependency"):
            executor.run()

    def test_unknown_dependency(self):
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None, depends_on=["missing"])
        with pytest.raises(ValueError, match="unknown stages"):
            executor.run()

    def test_error_reraised(self, tmp_path):
        """A failing stage stops the run and is logged."""
        logger = PipelineLogger(tmp_path, console=False).setup()
        executor = InMemoryExecutor(logger=logger)
        ran = []

        def fail(**kwargs):
            raise InputShapeError("bad matrix")

        executor.register_stage("A", fail)
        executor.register_stage("B", lambda **k: ran.append("B"), depends_on=["A"])
        with pytest.raises(InputShapeError, match="bad matrix"):
            executor.run()
        logger.close()

        assert ran == []
        assert executor.completed_stages == []
        assert "Stage A failed: InputShapeError: bad matrix" in logger.log_file.read_text()


class TestAnalysisPipeline:
    """End-to-end train and integrate runs on synthetic counts."""

    @pytest.fixture
    def pipeline(self, small_run_settings):
        return AnalysisPipeline(PipelineSettings.from_dict(small_run_settings))

    @pytest.fixture
    def training(self, pipeline, reference_counts):
        return pipeline.train(reference_counts)

    def test_stable_clusters_recover_types(self, training, counts_with_truth):
        """Each stable cluster holds cells of one true type only."""
        _, truth = counts_with_truth
        assignment = training.stability.assignment
        crosstab = pd.crosstab(assignment, truth.reindex(assignment.index))

        assert training.stability.n_clusters >= 3
        assert ((crosstab > 0).sum(axis=1) == 1).all()
        assert training.stability.n_clusters <= training.clustering.n_clusters

    def test_bundle_matches_variance_stage(self, training):
        """The model is trained on the ods genes and carries their gsf."""
        model = training.model
        assert list(model.genes) == training.variance.ods_genes
        assert set(model.classes) == set(training.stability.assignment.unique())
        assert model.transform == "log1p"
        pd.testing.assert_series_equal(
            training.bundle.gsf, training.variance.gsf.astype(float), check_names=False
        )

    def test_training_self_prediction(self, training):
        """The model calls its own training cells back."""
        prediction = training.prediction
        agreement = prediction.calls == training.stability.assignment.reindex(prediction.calls.index)
        assert agreement.mean() >= 0.9
        assert training.training.training_accuracy >= 0.95

    def test_summary(self, training):
        summary = training.summary()
        assert summary["n_stable_clusters"] == training.stability.n_clusters
        assert summary["classes"] == list(training.model.classes)
        assert 0 < summary["n_ods_genes"] <= 40

    def test_train_on_reference_labels(self, pipeline, counts_with_truth):
        """Reference labels replace stable clusters and enable the retest."""
        counts, truth = counts_with_truth
        run = pipeline.train(counts, labels=truth)

        assert run.model.classes == ("type_0", "type_1", "type_2")
        assert run.model.retested is True
        assert run.model.unreliable_classes == []

    def test_integrate(self, pipeline, training):
        """New batches are projected and aligned within each called cluster."""
        batch_a, _ = create_count_matrix(seed=10, cells_per_type=20, cell_prefix="a")
        batch_b, _ = create_count_matrix(seed=11, cells_per_type=20, cell_prefix="b")
        run = pipeline.integrate({"a": batch_a, "b": batch_b}, training.bundle)

        assert run.embedding.shape == (120, training.model.n_components)
        assert run.batches.value_counts().to_dict() == {"a": 60, "b": 60}
        assert set(run.predictions) == {"a", "b"}
        assert run.calls.index.equals(run.embedding.index)

        corrected = run.correction.corrected_clusters
        assert corrected
        offsets = batch_mean_offsets(run.embedding, run.batches, run.calls)
        for cluster in corrected:
            assert (offsets.loc[cluster, "max_abs_offset"] < 1e-8).all()

    def test_integrate_custom_sentinel(self, small_run_settings, training):
        """Cells without a confident call keep their coordinates under any sentinel."""
        small_run_settings["classification"] = {
            "prediction": {"unassigned_label": "no_call", "confidence_threshold": 1.0}
        }
        pipeline = AnalysisPipeline(PipelineSettings.from_dict(small_run_settings))
        assert pipeline.corrector.unassigned_label == "no_call"

        batch_a, _ = create_count_matrix(seed=10, cells_per_type=20, cell_prefix="a")
        batch_b, _ = create_count_matrix(seed=11, cells_per_type=20, cell_prefix="b")
        run = pipeline.integrate({"a": batch_a, "b": batch_b}, training.bundle)

        assert "unassigned" not in set(run.calls)
        uncalled = run.calls == "no_call"
        if uncalled.any():
            assert run.correction.skipped_clusters["no_call"] == "unassigned"
            raw = pd.concat([p.embedding for p in run.predictions.values()])
            pd.testing.assert_frame_equal(
                run.embedding[uncalled], raw.reindex(run.embedding.index)[uncalled]
            )

    def test_integrate_duplicate_cells(self, pipeline, training):
        """Cell ids must be unique across datasets."""
        batch, _ = create_count_matrix(seed=10, cells_per_type=10)
        with pytest.raises(InputShapeError, match="appears in datasets"):
            pipeline.integrate({"a": batch, "b": batch.copy()}, training.bundle)

    def test_integrate_needs_data(self, pipeline, training):
        with pytest.raises(InputShapeError):
            pipeline.integrate({}, training.bundle)

    def test_custom_clustering_algorithm(self, small_run_settings, reference_counts):
        """A plugged-in clustering callable drives the preliminary clusters."""
        settings = PipelineSettings.from_dict(small_run_settings)

        def single_cluster(adjacency):
            return np.zeros(adjacency.shape[0], dtype=int)

        pipeline = AnalysisPipeline(settings, clustering_algorithm=single_cluster)
        with pytest.raises(InputShapeError, match="at least 2 classes"):
            pipeline.train(reference_counts)
