"""Run settings aggregating every stage configuration.

A single YAML file configures a whole run::

    cellstable:
      preprocessing:
        cleaning: {min_reads: 10, min_detected: 10}
      clustering_stage:
        stability: {min_group_size: 10, min_diff_genes: 5}
      classification:
        lda: {retest: true}
      batch_correction:
        method: mean_align
      run:
        log_level: INFO

Every section and key is optional; missing values keep their defaults.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..core.classification.config import ClassificationConfig
from ..core.clustering.config import ClusteringStageConfig
from ..core.integration.config import BatchCorrectionConfig
from ..core.preprocessing.config import PreprocessingConfig

SECTIONS = ("preprocessing", "clustering_stage", "classification", "batch_correction", "run")


@dataclass
class RunConfig:
    """Run-level options.

    Attributes
    ----------
    log_dir : str, optional
        Directory for run logs; console only if None
    log_level : str
        Logging level name
    retest : bool
        Run the LDA retest when training from stable clusters
    """

    log_dir: Optional[str] = None
    log_level: str = "INFO"
    retest: bool = False


@dataclass
class PipelineSettings:
    """All configuration for a train / integrate run."""

    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    clustering_stage: ClusteringStageConfig = field(default_factory=ClusteringStageConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    batch_correction: BatchCorrectionConfig = field(default_factory=BatchCorrectionConfig)
    run: RunConfig = field(default_factory=RunConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineSettings":
        """Build settings from a (possibly partial) dictionary."""
        data = data or {}
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ValueError(f"Unknown configuration sections {unknown} (expected {SECTIONS})")
        return cls(
            preprocessing=PreprocessingConfig.from_dict(data.get("preprocessing", {})),
            clustering_stage=ClusteringStageConfig.from_dict(data.get("clustering_stage", {})),
            classification=ClassificationConfig.from_dict(data.get("classification", {})),
            batch_correction=BatchCorrectionConfig(**data.get("batch_correction", {})),
            run=RunConfig(**data.get("run", {})),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineSettings":
        """Load settings from YAML file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested cellstable section
        if "cellstable" in data:
            data = data["cellstable"] or {}

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "preprocessing": self.preprocessing.to_dict(),
            "clustering_stage": self.clustering_stage.to_dict(),
            "classification": self.classification.to_dict(),
            "batch_correction": asdict(self.batch_correction),
            "run": asdict(self.run),
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump({"cellstable": self.to_dict()}, sort_keys=False)
