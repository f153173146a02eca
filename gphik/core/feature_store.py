"""
Sorted Feature Store for Fast Histogram Intersection Kernels
============================================================

Stores the training features together with their per-dimension sorted
order, which turns every histogram intersection kernel operation into
cumulative sums over sorted values:

    (K v)_{π(k)} = Σ_d [ Σ_{l ≤ k} s_l v_{π(l)}  +  s_k Σ_{l > k} v_{π(l)} ]

where s is the sorted (transformed) column of dimension d and π its
argsort.  Matrix-vector products therefore cost O(n·d) instead of
O(n²·d), and the kernel matrix is never formed outside verification code.

Key Classes:
    FeatureStore: Sorted per-dimension feature access, HIK products,
        partial-sum tables (A/B) and example insertion.

Usage:
    >>> store = FeatureStore(X)
    >>> store.apply_function(AbsPowerFunction(2.0))
    >>> Kv = store.hik_multiply(v)
    >>> A, B = store.compute_ab(alpha)
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from gphik.core.parameterized_functions import IdentityFunction, ParameterizedFunction
from gphik.exceptions import DataError

logger = logging.getLogger(__name__)


def _as_feature_matrix(features) -> np.ndarray:
    """Convert dense/sparse input to a validated float matrix (n, d)."""
    if sparse.issparse(features):
        features = features.toarray()
    features = np.asarray(features, dtype=float)
    if features.ndim == 1:
        features = features[None, :]
    if features.ndim != 2:
        raise DataError(f"Features must be 2-D, got shape {features.shape}")
    if not np.all(np.isfinite(features)):
        raise DataError("Features contain NaN or infinite values")
    if np.any(features < 0):
        raise DataError("Histogram intersection kernel requires non-negative features")
    return features


class FeatureStore:
    """Per-dimension sorted training features with fast HIK operations.

    Args:
        features: Training features, shape (n, d), dense or scipy sparse.
            Must be non-negative.
        function: Initial transform; identity when None.
    """

    def __init__(self, features, function: Optional[ParameterizedFunction] = None):
        raw = _as_feature_matrix(features)
        if raw.shape[0] == 0:
            raise DataError("FeatureStore needs at least one example")

        self._raw = raw
        self._order = np.argsort(raw, axis=0, kind='mergesort').T.copy()  # (d, n)
        self._sorted_raw = np.take_along_axis(raw.T, self._order, axis=1)  # (d, n)

        self.function: ParameterizedFunction = function or IdentityFunction()
        self._transformed: np.ndarray = raw
        self._sorted_transformed: np.ndarray = self._sorted_raw
        self.apply_function(self.function)

        logger.debug(
            f"FeatureStore: {self.n_examples} examples, {self.n_dims} dimensions, "
            f"{np.count_nonzero(raw)} non-zero entries"
        )

    # ------------------------------------------------------------------
    # Basic accessors
    # ------------------------------------------------------------------

    @property
    def n_examples(self) -> int:
        return self._raw.shape[0]

    @property
    def n_dims(self) -> int:
        return self._raw.shape[1]

    @property
    def raw_features(self) -> np.ndarray:
        return self._raw

    @property
    def transformed_features(self) -> np.ndarray:
        return self._transformed

    @property
    def sorted_transformed(self) -> np.ndarray:
        """Transformed values sorted per dimension, shape (d, n)."""
        return self._sorted_transformed

    @property
    def order(self) -> np.ndarray:
        """Per-dimension argsort of the training examples, shape (d, n)."""
        return self._order

    def _dim_column(self) -> np.ndarray:
        return np.arange(self.n_dims)[:, None]

    # ------------------------------------------------------------------
    # Transform handling
    # ------------------------------------------------------------------

    def apply_function(self, function: ParameterizedFunction) -> None:
        """Refresh the cached transformed values in place."""
        self.function = function
        self._transformed = function(self._raw)
        self._sorted_transformed = function(self._sorted_raw, self._dim_column())

    def transform_query(self, dims: np.ndarray, values: np.ndarray) -> np.ndarray:
        """Apply the current transform to sparse query entries."""
        return self.function(values, dims)

    # ------------------------------------------------------------------
    # Kernel products
    # ------------------------------------------------------------------

    def _sorted_sum_multiply(self, sorted_values: np.ndarray, v: np.ndarray) -> np.ndarray:
        v_sorted = v[self._order]  # (d, n)
        prefix_sv = np.cumsum(sorted_values * v_sorted, axis=1)
        prefix_v = np.cumsum(v_sorted, axis=1)
        suffix_v = prefix_v[:, -1:] - prefix_v
        result_sorted = prefix_sv + sorted_values * suffix_v

        result = np.empty_like(result_sorted)
        np.put_along_axis(result, self._order, result_sorted, axis=1)
        return result.sum(axis=0)

    def hik_multiply(self, v: np.ndarray) -> np.ndarray:
        """Compute K v for the histogram intersection kernel (no noise)."""
        v = np.asarray(v, dtype=float).ravel()
        return self._sorted_sum_multiply(self._sorted_transformed, v)

    def hik_derivative_multiply(self, index: int, v: np.ndarray) -> np.ndarray:
        """Compute (∂K/∂θ_index) v for the current transform."""
        v = np.asarray(v, dtype=float).ravel()
        d_sorted = self.function.derivative(self._sorted_raw, index, self._dim_column())
        return self._sorted_sum_multiply(d_sorted, v)

    def kernel_diagonal(self) -> np.ndarray:
        """K_ii = Σ_d f(x_id)."""
        return self._transformed.sum(axis=1)

    def trace(self) -> float:
        return float(self._transformed.sum())

    def derivative_trace(self, index: int) -> float:
        return float(self.function.derivative(self._raw, index).sum())

    def kernel_matrix(self) -> np.ndarray:
        """Dense kernel matrix. O(n²·d) - verification and tests only."""
        K = np.zeros((self.n_examples, self.n_examples))
        for d in range(self.n_dims):
            column = self._transformed[:, d]
            K += np.minimum.outer(column, column)
        return K

    def kernel_vector(self, query: np.ndarray) -> np.ndarray:
        """k*_j = Σ_d min(f(q_d), f(x_jd)) for a dense raw query (d,)."""
        q = self.function(np.asarray(query, dtype=float)[None, :])
        return np.minimum(self._transformed, q).sum(axis=1)

    def self_similarity(self, dims: np.ndarray, values: np.ndarray) -> float:
        """k** = Σ_d f(q_d) for a sparse raw query."""
        return float(np.sum(self.transform_query(dims, values)))

    # ------------------------------------------------------------------
    # Partial-sum tables
    # ------------------------------------------------------------------

    def compute_ab(self, alpha: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Partial sums enabling O(log n) per-dimension kernel sums.

        Returns:
            (A, B) with shape (d, n+1):
            ``A[d, k] = Σ_{l<k} α_{π(l)} s_l`` and ``B[d, k] = Σ_{l≥k} α_{π(l)}``,
            so that ``Σ_i α_i min(q, x_id) = A[d, k] + q·B[d, k]`` with
            ``k = #{l : s_l ≤ q}``.
        """
        alpha = np.asarray(alpha, dtype=float).ravel()
        if len(alpha) != self.n_examples:
            raise DataError(
                f"Weight vector has {len(alpha)} entries, expected {self.n_examples}"
            )
        alpha_sorted = alpha[self._order]
        d = self.n_dims

        A = np.zeros((d, self.n_examples + 1))
        A[:, 1:] = np.cumsum(alpha_sorted * self._sorted_transformed, axis=1)

        B = np.zeros((d, self.n_examples + 1))
        B[:, :-1] = np.cumsum(alpha_sorted[:, ::-1], axis=1)[:, ::-1]
        return A, B

    def compute_a_squared(self) -> np.ndarray:
        """``A2[d, k] = Σ_{l<k} s_l²`` for the rough variance bound.

        Together with the implicit count ``n − k`` it gives
        ``Σ_i min(q, x_id)² = A2[d, k] + q²·(n − k)``.
        """
        A2 = np.zeros((self.n_dims, self.n_examples + 1))
        A2[:, 1:] = np.cumsum(self._sorted_transformed ** 2, axis=1)
        return A2

    def sorted_positions(self, dims: np.ndarray, transformed_values: np.ndarray) -> np.ndarray:
        """k = #{l : s_l ≤ q} for each (dim, value) query entry."""
        positions = np.empty(len(dims), dtype=int)
        for i, (dim, value) in enumerate(zip(dims, transformed_values)):
            positions[i] = np.searchsorted(
                self._sorted_transformed[dim], value, side='right'
            )
        return positions

    # ------------------------------------------------------------------
    # Incremental insertion
    # ------------------------------------------------------------------

    def validate_new_examples(self, features) -> np.ndarray:
        """Check new rows without modifying the store."""
        new = _as_feature_matrix(features)
        if new.shape[1] != self.n_dims:
            raise DataError(
                f"New examples have {new.shape[1]} dimensions, expected {self.n_dims}"
            )
        return new

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Cheap reference snapshot; insertion never mutates arrays in place."""
        return self._raw, self._order, self._sorted_raw

    def restore(self, snapshot: Tuple[np.ndarray, np.ndarray, np.ndarray]) -> None:
        self._raw, self._order, self._sorted_raw = snapshot
        self.apply_function(self.function)

    def add_examples(self, features) -> None:
        """Insert examples, keeping every dimension sorted."""
        new = self.validate_new_examples(features)

        order = [row for row in self._order]
        sorted_raw = [row for row in self._sorted_raw]
        for offset, example in enumerate(new):
            index = self.n_examples + offset
            for d in range(self.n_dims):
                pos = np.searchsorted(sorted_raw[d], example[d], side='right')
                sorted_raw[d] = np.insert(sorted_raw[d], pos, example[d])
                order[d] = np.insert(order[d], pos, index)

        self._raw = np.vstack([self._raw, new])
        self._order = np.array(order)
        self._sorted_raw = np.array(sorted_raw)
        self.apply_function(self.function)

        logger.debug(f"FeatureStore: inserted {len(new)} examples (n={self.n_examples})")
