"""CellStable: stable subpopulation discovery for single-cell expression data.

This package provides tools for:
- Count-matrix cleaning and library-size normalization
- Mean-variance trend fitting with overdispersed-gene selection
- PCA embedding and k-NN graph community clustering
- Significance-gated cluster merging (stability analysis)
- Reusable linear discriminant models with stored normalization parameters
- Confidence-filtered class calls and per-cluster batch correction

Fitted parameters (gene scaling factors, discriminant models) travel as
explicit artifacts so new datasets can be projected without the training
matrix.

Example usage:
    >>> from cellstable.pipeline import AnalysisPipeline
    >>>
    >>> pipeline = AnalysisPipeline()
    >>> training = pipeline.train(counts)
    >>> integration = pipeline.integrate({"batch_a": new_counts}, training.bundle)
"""

__version__ = "0.1.0"
