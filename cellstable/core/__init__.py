"""Core computational modules for CellStable.

This package contains the main analysis engines:
- preprocessing: count cleaning, library-size normalization, variance scaling
- clustering: PCA, k-NN graph clustering, differential expression, stability
- classification: LDA model training, prediction, confidence filtering
- integration: cluster-conditioned batch correction
"""
