"""Synthetic histogram generation for demos."""
from typing import Optional, Tuple

import numpy as np


class DataGenerator:
    """Generate synthetic histogram features."""

    @staticmethod
    def generate_histograms(
        n_per_class: int = 20,
        n_dims: int = 10,
        n_classes: int = 2,
        seed: Optional[int] = None,
        sparsity: float = 0.0,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """L1-normalised histograms with one class-dependent peak per class.

        Class c concentrates mass around bin ``c * n_dims // n_classes``;
        ``sparsity`` zeroes that fraction of the non-peak bins.

        Returns:
            (X, y): features (n_per_class * n_classes, n_dims) and
            integer labels 0..n_classes-1.
        """
        rng = np.random.default_rng(seed)
        bins = np.arange(n_dims)
        features, labels = [], []
        for c in range(n_classes):
            center = c * n_dims // n_classes
            profile = np.exp(-0.5 * ((bins - center) / max(n_dims / (2.0 * n_classes), 1.0)) ** 2)
            X = rng.gamma(shape=2.0, scale=1.0, size=(n_per_class, n_dims)) * (0.2 + profile)
            if sparsity > 0:
                mask = rng.random((n_per_class, n_dims)) < sparsity
                mask[:, center] = False
                X[mask] = 0.0
            X /= X.sum(axis=1, keepdims=True)
            features.append(X)
            labels.append(np.full(n_per_class, c))
        return np.vstack(features), np.concatenate(labels)
