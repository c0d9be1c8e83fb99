"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML so the same
pipeline can be tuned per dataset without code changes.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class CleaningConfig:
    """Configuration for count-matrix cleaning.

    Attributes
    ----------
    min_reads : float
        Minimum total counts for a gene to be kept
    min_detected : int
        Minimum number of nonzero genes for a cell to be kept
    max_passes : int
        Upper bound on gene/cell filtering passes before giving up
        on reaching a fixed point
    """

    min_reads: float = 10
    min_detected: int = 10
    max_passes: int = 50


@dataclass
class NormalizationConfig:
    """Configuration for library-size normalization.

    Attributes
    ----------
    target_total : float
        Total every cell is scaled to
    transform : str
        Variance-stabilizing transform applied before variance fitting
        and again, identically, at prediction time
    """

    target_total: float = 1e4
    transform: str = "log1p"


@dataclass
class VarianceConfig:
    """Configuration for mean-variance trend fitting.

    Attributes
    ----------
    lowess_frac : float
        Fraction of genes used for each local LOWESS fit
    lowess_iterations : int
        Robustifying iterations for the LOWESS fit
    ods_policy : str
        Overdispersed-gene selection rule: 'adjusted_pvalue' or 'top_residual'
    alpha : float
        Adjusted p-value cutoff for the 'adjusted_pvalue' policy
    n_top_genes : int
        Number of genes kept by the 'top_residual' policy
    min_adjusted_variance : float
        Lower clip for the target (scaled) gene variance
    max_adjusted_variance : float
        Upper clip for the target (scaled) gene variance
    min_ods_genes : int
        Fewer selected genes than this raises an error
    """

    lowess_frac: float = 0.3
    lowess_iterations: int = 3
    ods_policy: str = "adjusted_pvalue"
    alpha: float = 0.05
    n_top_genes: int = 500
    min_adjusted_variance: float = 1e-3
    max_adjusted_variance: float = 1e3
    min_ods_genes: int = 2


@dataclass
class PreprocessingConfig:
    """Master configuration for the preprocessing stages.

    Attributes
    ----------
    cleaning : CleaningConfig
        Count-matrix cleaning configuration
    normalization : NormalizationConfig
        Library-size normalization configuration
    variance : VarianceConfig
        Variance normalization configuration
    """

    cleaning: CleaningConfig = field(default_factory=CleaningConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    variance: VarianceConfig = field(default_factory=VarianceConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            cleaning=CleaningConfig(**data.get("cleaning", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
            variance=VarianceConfig(**data.get("variance", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested preprocessing section
        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "cleaning": {
                "min_reads": self.cleaning.min_reads,
                "min_detected": self.cleaning.min_detected,
                "max_passes": self.cleaning.max_passes,
            },
            "normalization": {
                "target_total": self.normalization.target_total,
                "transform": self.normalization.transform,
            },
            "variance": {
                "lowess_frac": self.variance.lowess_frac,
                "lowess_iterations": self.variance.lowess_iterations,
                "ods_policy": self.variance.ods_policy,
                "alpha": self.variance.alpha,
                "n_top_genes": self.variance.n_top_genes,
                "min_adjusted_variance": self.variance.min_adjusted_variance,
                "max_adjusted_variance": self.variance.max_adjusted_variance,
                "min_ods_genes": self.variance.min_ods_genes,
            },
        }
