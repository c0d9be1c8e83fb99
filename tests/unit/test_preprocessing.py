"""Unit tests for preprocessing module."""

import pytest
import numpy as np
import pandas as pd

from cellstable.core.preprocessing import (
    CleaningConfig,
    PreprocessingConfig,
    VarianceConfig,
    CountMatrixCleaner,
    CountNormalizer,
    VarianceNormalizer,
    AdjustedPValuePolicy,
    TopResidualPolicy,
    make_ods_policy,
    apply_transform,
    GENE_STATS_COLUMNS,
)
from cellstable.errors import InputShapeError
from cellstable.utils import bh_adjust


class TestPreprocessingConfig:
    """Tests for preprocessing configuration dataclasses."""

    def test_default_values(self):
        """Test default configuration values."""
        config = PreprocessingConfig()
        assert config.cleaning.min_reads == 10
        assert config.cleaning.min_detected == 10
        assert config.normalization.target_total == 1e4
        assert config.normalization.transform == "log1p"
        assert config.variance.ods_policy == "adjusted_pvalue"

    def test_from_yaml(self, tmp_path):
        """Test loading config from a nested YAML section."""
        yaml_content = """
preprocessing:
  cleaning:
    min_reads: 3
  variance:
    ods_policy: top_residual
    n_top_genes: 25
"""
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text(yaml_content)

        config = PreprocessingConfig.from_yaml(yaml_file)
        assert config.cleaning.min_reads == 3
        assert config.cleaning.min_detected == 10
        assert config.variance.ods_policy == "top_residual"
        assert config.variance.n_top_genes == 25

    def test_to_dict(self):
        """Test converting config to dictionary."""
        d = PreprocessingConfig().to_dict()
        assert set(d) == {"cleaning", "normalization", "variance"}
        assert d["variance"]["alpha"] == 0.05


class TestCountMatrixCleaner:
    """Tests for CountMatrixCleaner class."""

    def test_removes_low_genes_and_cells(self, small_counts):
        """Genes below min_reads and cells below min_detected are dropped."""
        result = CountMatrixCleaner().clean(small_counts, min_reads=5, min_detected=2)

        assert result.removed_genes == ["g2"]
        assert result.removed_cells == []
        assert list(result.matrix.index) == ["g1", "g3", "g4"]

    def test_thresholds_hold_after_cleaning(self, reference_counts):
        """Every surviving gene and cell satisfies both thresholds."""
        counts = reference_counts.copy()
        counts.iloc[:, :3] = 0.0
        counts.iloc[:3, :] = 0.0

        result = CountMatrixCleaner().clean(counts, min_reads=10, min_detected=10)

        assert (result.matrix.sum(axis=1) >= 10).all()
        assert ((result.matrix > 0).sum(axis=0) >= 10).all()
        assert set(result.removed_cells) == set(counts.columns[:3])
        assert set(result.removed_genes) == set(counts.index[:3])

    def test_clean_matrix_is_unchanged(self, reference_counts):
        """Cleaning a matrix that already passes is a no-op."""
        result = CountMatrixCleaner().clean(reference_counts, min_reads=1, min_detected=1)

        pd.testing.assert_frame_equal(result.matrix, reference_counts)
        assert result.removed_genes == []
        assert result.removed_cells == []
        assert result.n_passes == 1

    def test_cascading_removal(self):
        """A gene only supported by a removed cell is dropped in a later pass."""
        counts = pd.DataFrame(
            {
                "good1": [20, 20, 20, 0],
                "good2": [20, 20, 20, 0],
                "bad": [0, 0, 0, 30],
            },
            index=["a", "b", "c", "rare"],
            dtype=float,
        )
        result = CountMatrixCleaner().clean(counts, min_reads=10, min_detected=2)

        assert result.removed_cells == ["bad"]
        assert result.removed_genes == ["rare"]
        assert result.n_passes >= 2

    def test_nothing_left_raises(self, small_counts):
        """Removing every gene raises InputShapeError."""
        with pytest.raises(InputShapeError, match="No genes left"):
            CountMatrixCleaner().clean(small_counts, min_reads=1000, min_detected=1)

    def test_negative_threshold_raises(self, small_counts):
        """Negative thresholds are rejected."""
        with pytest.raises(ValueError, match="min_reads"):
            CountMatrixCleaner().clean(small_counts, min_reads=-1)

    def test_rejects_negative_counts(self, small_counts):
        """Negative counts are invalid input."""
        counts = small_counts.copy()
        counts.iloc[0, 0] = -1.0
        with pytest.raises(InputShapeError, match="negative"):
            CountMatrixCleaner().clean(counts)

    def test_max_passes_from_config(self, small_counts):
        """Config defaults are used when no thresholds are passed."""
        cleaner = CountMatrixCleaner(CleaningConfig(min_reads=0, min_detected=0))
        result = cleaner.clean(small_counts)
        assert result.matrix.shape == small_counts.shape


class TestCountNormalizer:
    """Tests for CountNormalizer class."""

    def test_column_sums(self, reference_counts):
        """Every cell sums to the target total after normalization."""
        normalized = CountNormalizer().normalize(reference_counts, target_total=1e4)
        np.testing.assert_allclose(normalized.sum(axis=0).to_numpy(), 1e4)
        assert normalized.index.equals(reference_counts.index)
        assert normalized.columns.equals(reference_counts.columns)

    def test_idempotent(self, reference_counts):
        """Normalizing normalized data changes nothing."""
        normalizer = CountNormalizer()
        once = normalizer.normalize(reference_counts)
        twice = normalizer.normalize(once)
        np.testing.assert_allclose(twice.to_numpy(), once.to_numpy())

    def test_zero_total_cell_raises(self, small_counts):
        """Cells without counts cannot be scaled."""
        counts = small_counts.copy()
        counts["empty"] = 0.0
        with pytest.raises(InputShapeError, match="zero total counts"):
            CountNormalizer().normalize(counts)

    def test_invalid_target_total(self, small_counts):
        """Non-positive target totals are rejected."""
        with pytest.raises(ValueError):
            CountNormalizer().normalize(small_counts, target_total=0)

    def test_log_transform(self, small_counts):
        """log_transform applies the named transform."""
        normalizer = CountNormalizer()
        logged = normalizer.log_transform(small_counts, "log2p")
        np.testing.assert_allclose(logged.to_numpy(), np.log2(small_counts.to_numpy() + 1))

    def test_unknown_transform(self, small_counts):
        """Unknown transform names are rejected."""
        with pytest.raises(ValueError, match="Unknown transform"):
            CountNormalizer().log_transform(small_counts, "sqrt")

    def test_apply_transform_raw(self):
        """'raw' leaves values unchanged."""
        values = np.array([[0.0, 1.5], [2.0, 3.0]])
        np.testing.assert_array_equal(apply_transform(values, "raw"), values)


class TestVarianceNormalizer:
    """Tests for VarianceNormalizer class."""

    @pytest.fixture
    def normalized(self, reference_counts):
        return CountNormalizer().normalize(reference_counts)

    def test_gene_stats_columns(self, normalized):
        """Gene statistics carry the documented columns for every gene."""
        result = VarianceNormalizer(VarianceConfig(ods_policy="top_residual", n_top_genes=20)).fit(
            normalized
        )
        assert list(result.gene_stats.columns) == GENE_STATS_COLUMNS
        assert result.gene_stats.index.equals(normalized.index)
        assert result.scaled.shape == normalized.shape

    def test_scaled_matrix(self, normalized):
        """Scaled values are the transformed values times gsf."""
        result = VarianceNormalizer(VarianceConfig(ods_policy="top_residual", n_top_genes=20)).fit(
            normalized
        )
        expected = np.log1p(normalized).mul(result.gsf, axis=0)
        np.testing.assert_allclose(result.scaled.to_numpy(), expected.to_numpy())
        assert result.ods_matrix().index.tolist() == result.ods_genes

    def test_zero_variance_gene(self, normalized):
        """A gene without expression gets gsf 0 and is never overdispersed."""
        normalized = normalized.copy()
        normalized.loc["Gene_silent"] = 0.0
        result = VarianceNormalizer(VarianceConfig(ods_policy="top_residual", n_top_genes=100)).fit(
            normalized
        )
        stats = result.gene_stats.loc["Gene_silent"]
        assert stats["gsf"] == 0.0
        assert not stats["ods"]
        assert (result.scaled.loc["Gene_silent"] == 0.0).all()

    def test_gsf_nonnegative(self, normalized):
        """Scaling factors are finite and non-negative."""
        result = VarianceNormalizer().fit(normalized)
        assert np.isfinite(result.gsf).all()
        assert (result.gsf >= 0).all()

    def test_markers_are_overdispersed(self, normalized):
        """Marker genes dominate the top residual selection."""
        result = VarianceNormalizer(VarianceConfig(ods_policy="top_residual", n_top_genes=15)).fit(
            normalized
        )
        markers = {f"Gene_{i}" for i in range(15)}
        assert len(markers & set(result.ods_genes)) >= 12

    def test_top_residual_policy(self):
        """TopResidualPolicy keeps the largest positive residuals only."""
        stats = pd.DataFrame(
            {"residual": [0.5, -1.0, 2.0, 0.1]}, index=["a", "b", "c", "d"]
        )
        assert TopResidualPolicy(2).select(stats).tolist() == ["c", "a"]
        assert TopResidualPolicy(10).select(stats).tolist() == ["c", "a", "d"]

    def test_adjusted_pvalue_policy(self):
        """AdjustedPValuePolicy requires a positive residual and small p_adj."""
        stats = pd.DataFrame(
            {"residual": [1.0, -1.0, 1.0], "p_adj": [0.01, 0.01, 0.5]},
            index=["a", "b", "c"],
        )
        assert AdjustedPValuePolicy(0.05).select(stats).tolist() == ["a"]

    def test_make_ods_policy(self):
        """Policies are built from their configuration name."""
        assert isinstance(make_ods_policy(VarianceConfig()), AdjustedPValuePolicy)
        policy = make_ods_policy(VarianceConfig(ods_policy="top_residual", n_top_genes=7))
        assert isinstance(policy, TopResidualPolicy)
        assert policy.n_genes == 7
        with pytest.raises(ValueError):
            make_ods_policy(VarianceConfig(ods_policy="bogus"))

    def test_callable_policy(self, normalized):
        """A plain function can decide which genes are overdispersed."""
        vn = VarianceNormalizer(ods_policy=lambda stats: stats.index[:3])
        result = vn.fit(normalized)
        assert result.ods_genes == list(normalized.index[:3])

    def test_too_few_ods_genes(self, normalized):
        """Selecting fewer than min_ods_genes raises."""
        vn = VarianceNormalizer(
            VarianceConfig(min_ods_genes=5), ods_policy=lambda stats: stats.index[:1]
        )
        with pytest.raises(InputShapeError, match="min_ods_genes"):
            vn.fit(normalized)

    def test_too_few_cells(self, normalized):
        """Fewer than three cells cannot support a variance fit."""
        with pytest.raises(InputShapeError, match="at least 3 cells"):
            VarianceNormalizer().fit(normalized.iloc[:, :2])


class TestBHAdjust:
    """Tests for Benjamini-Hochberg adjustment."""

    def test_known_values(self):
        """Adjusted values match the textbook computation."""
        adjusted = bh_adjust([0.01, 0.04, 0.03, 0.2])
        np.testing.assert_allclose(adjusted, [0.04, 0.16 / 3, 0.16 / 3, 0.2])

    def test_nan_passthrough(self):
        """Non-finite p-values stay NaN and are not counted."""
        adjusted = bh_adjust([0.01, np.nan, 0.02])
        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.02])
