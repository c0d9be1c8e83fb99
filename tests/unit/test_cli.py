"""Unit tests for the command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from cellstable.cli import cli
from cellstable.cli.main import _parse_dataset
from tests.fixtures import create_count_matrix


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def trained_dir(runner, tmp_path, reference_counts, sample_run_config):
    """Run 'train' once and return its output directory."""
    counts_path = tmp_path / "reference.csv"
    reference_counts.to_csv(counts_path)
    out_dir = tmp_path / "model"

    result = runner.invoke(
        cli,
        ["train", "--counts", str(counts_path), "--out", str(out_dir),
         "--config", str(sample_run_config)],
        obj={},
    )
    assert result.exit_code == 0, result.output
    return out_dir


class TestShowConfig:
    """Tests for the show-config command."""

    def test_defaults(self, runner):
        result = runner.invoke(cli, ["show-config"], obj={})
        assert result.exit_code == 0
        settings = yaml.safe_load(result.output)["cellstable"]
        assert settings["preprocessing"]["cleaning"]["min_reads"] == 10
        assert settings["batch_correction"]["method"] == "mean_align"

    def test_from_file(self, runner, sample_run_config):
        result = runner.invoke(cli, ["show-config", "--config", str(sample_run_config)], obj={})
        assert result.exit_code == 0
        settings = yaml.safe_load(result.output)["cellstable"]
        assert settings["clustering_stage"]["clustering"]["algorithm"] == "components"

    def test_invalid_file(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("cellstable:\n  plotting: {}\n")
        result = runner.invoke(cli, ["show-config", "--config", str(path)], obj={})
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestTrainCommand:
    """Tests for the train command."""

    def test_outputs_written(self, trained_dir):
        for name in (
            "bundle.json",
            "stable_clusters.csv",
            "cluster_summary.csv",
            "gene_stats.csv",
            "training_ld.csv",
            "training_calls.csv",
            "merge_log.jsonl",
            "run_config.yaml",
        ):
            assert (trained_dir / name).exists(), name

        document = json.loads((trained_dir / "bundle.json").read_text())
        assert document["format"] == "cellstable.model_bundle"

    def test_missing_counts(self, runner, tmp_path):
        result = runner.invoke(
            cli, ["train", "--counts", str(tmp_path / "absent.csv"), "--out", str(tmp_path)],
            obj={},
        )
        assert result.exit_code != 0

    def test_pipeline_error_reported(self, runner, tmp_path):
        """Pipeline errors become a one-line message and exit code 1."""
        path = tmp_path / "tiny.csv"
        path.write_text(",c1,c2\ng1,1,2\ng2,3,4\n")
        result = runner.invoke(
            cli, ["train", "--counts", str(path), "--out", str(tmp_path / "out")], obj={}
        )
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestPredictCommand:
    """Tests for the predict command."""

    def test_predict(self, runner, trained_dir, tmp_path):
        paths = []
        for name, seed in (("a", 10), ("b", 11)):
            counts, _ = create_count_matrix(seed=seed, cells_per_type=10, cell_prefix=name)
            path = tmp_path / f"{name}.csv"
            counts.to_csv(path)
            paths.append(f"{name}={path}")

        out_dir = tmp_path / "joint"
        result = runner.invoke(
            cli,
            ["predict", "--bundle", str(trained_dir / "bundle.json"),
             "-d", paths[0], "-d", paths[1], "--out", str(out_dir)],
            obj={},
        )
        assert result.exit_code == 0, result.output
        assert "Projected 60 cells from 2 datasets" in result.output
        for name in ("joint_ld.csv", "calls.csv", "batches.csv", "posteriors_a.csv",
                     "posteriors_b.csv"):
            assert (out_dir / name).exists(), name

    def test_duplicate_dataset_name(self, runner, trained_dir, tmp_path):
        counts, _ = create_count_matrix(seed=10, cells_per_type=10)
        path = tmp_path / "a.csv"
        counts.to_csv(path)
        result = runner.invoke(
            cli,
            ["predict", "--bundle", str(trained_dir / "bundle.json"),
             "-d", f"x={path}", "-d", f"x={path}", "--out", str(tmp_path / "joint")],
            obj={},
        )
        assert result.exit_code != 0
        assert "given twice" in result.output


class TestParseDataset:
    """Tests for NAME=PATH parsing."""

    def test_named(self, tmp_path):
        name, path = _parse_dataset(f"batch1={tmp_path / 'x.csv'}")
        assert name == "batch1"
        assert path == tmp_path / "x.csv"

    def test_stem(self):
        name, _ = _parse_dataset("data/sample_7.csv.gz")
        assert name == "sample_7"
