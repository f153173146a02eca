"""
Precomputed Classification Tables (A/B and LUTs)
================================================

Compiles a solved weight vector α_c into structures that evaluate

    f_c(q) = Σ_i α_i k(q, x_i) = Σ_d Σ_i α_i min(f(q_d), f(x_id))

without touching the training examples:

- **A/B** (always): per dimension, prefix sums ``A[d, k] = Σ_{l<k} α s_l``
  and suffix sums ``B[d, k] = Σ_{l≥k} α`` over the sorted order, so that
  each non-zero query dimension costs one binary search.
- **T** (with a quantizer): per dimension and bin, the A/B evaluation at
  the bin prototype.  Classification becomes one table lookup per
  non-zero query dimension.

Key Classes:
    ClassTables: Tables of one class.
    ClassificationTableBuilder: Builds and evaluates tables.

Key Functions:
    sparse_query: Normalise dense/sparse/dict queries to (dims, values).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy import sparse

from gphik.core.feature_store import FeatureStore
from gphik.core.quantization import Quantizer
from gphik.exceptions import DataError

logger = logging.getLogger(__name__)


def sparse_query(query, n_dims: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return the non-zero (dims, values) of a query.

    Accepts a 1-D array-like (dense), a ``{dim: value}`` dict, or a scipy
    sparse matrix with a single row.

    Raises:
        DataError: If a dimension lies outside the trained feature space
            or a value is negative / non-finite.
    """
    if isinstance(query, Mapping):
        dims = np.fromiter((int(k) for k in query.keys()), dtype=int, count=len(query))
        values = np.fromiter((float(v) for v in query.values()), dtype=float, count=len(query))
    elif sparse.issparse(query):
        row = sparse.csr_matrix(query)
        if row.shape[0] != 1:
            raise DataError(f"Expected a single sparse row, got shape {row.shape}")
        if row.shape[1] > n_dims:
            raise DataError(
                f"Query has {row.shape[1]} dimensions, model was trained with {n_dims}"
            )
        row.sum_duplicates()
        dims = row.indices.astype(int)
        values = row.data.astype(float)
    else:
        dense = np.asarray(query, dtype=float).ravel()
        if len(dense) > n_dims:
            raise DataError(
                f"Query has {len(dense)} dimensions, model was trained with {n_dims}"
            )
        dims = np.flatnonzero(dense)
        values = dense[dims]

    if len(dims) and (dims.min() < 0 or dims.max() >= n_dims):
        raise DataError(
            f"Query dimension out of range [0, {n_dims}): {dims.min()}..{dims.max()}"
        )
    if not np.all(np.isfinite(values)) or np.any(values < 0):
        raise DataError("Query values must be finite and non-negative")

    nz = values != 0
    return dims[nz], values[nz]


def dense_query(dims: np.ndarray, values: np.ndarray, n_dims: int) -> np.ndarray:
    out = np.zeros(n_dims)
    out[dims] = values
    return out


@dataclass
class ClassTables:
    """Precomputed tables of one class (or one weight vector)."""
    alpha: np.ndarray
    A: np.ndarray
    B: np.ndarray
    T: Optional[np.ndarray] = None


class ClassificationTableBuilder:
    """Builds A/B/T tables from solved weight vectors.

    Args:
        feature_store: Store holding the finalised transformed features.
        quantizer: Optional quantizer; LUTs are built only when set.
        n_jobs: joblib (thread) workers for per-class builds.
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        quantizer: Optional[Quantizer] = None,
        n_jobs: int = 1,
    ):
        self.feature_store = feature_store
        self.quantizer = quantizer
        self.n_jobs = n_jobs

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build_for_weights(self, alpha: np.ndarray) -> ClassTables:
        """Tables for a single weight vector."""
        A, B = self.feature_store.compute_ab(alpha)
        T = self.build_lut(A, B) if self.quantizer is not None else None
        return ClassTables(alpha=np.asarray(alpha, dtype=float).copy(), A=A, B=B, T=T)

    def build(
        self,
        alphas: Mapping[int, np.ndarray],
        class_ids: Optional[Iterable[int]] = None,
    ) -> Dict[int, ClassTables]:
        """Build tables for ``class_ids`` (all classes in ``alphas`` if None).

        Returns fresh tables; the caller commits them, so a failure never
        leaves a partially rebuilt set behind.
        """
        class_ids = sorted(alphas) if class_ids is None else sorted(class_ids)
        if self.n_jobs == 1 or len(class_ids) < 2:
            built = [self.build_for_weights(alphas[c]) for c in class_ids]
        else:
            built = Parallel(n_jobs=self.n_jobs, prefer='threads')(
                delayed(self.build_for_weights)(alphas[c]) for c in class_ids
            )
        logger.debug(
            f"Built tables for classes {class_ids} "
            f"(LUT: {'yes' if self.quantizer is not None else 'no'})"
        )
        return dict(zip(class_ids, built))

    def _transformed_prototypes(self, dim: int) -> np.ndarray:
        prototypes = self.quantizer.bin_prototypes(dim)
        return self.feature_store.function(prototypes, np.full(len(prototypes), dim))

    def build_lut(self, A: np.ndarray, B: np.ndarray) -> np.ndarray:
        """T[d · n_bins + b] = Σ_i α_i min(f(prototype_b), f(x_id))."""
        n_bins = self.quantizer.number_of_bins()
        n_dims = self.feature_store.n_dims
        sorted_values = self.feature_store.sorted_transformed
        T = np.empty(n_dims * n_bins)
        for d in range(n_dims):
            tp = self._transformed_prototypes(d)
            pos = np.searchsorted(sorted_values[d], tp, side='right')
            T[d * n_bins:(d + 1) * n_bins] = A[d, pos] + tp * B[d, pos]
        return T

    def build_squared_lut(self, A2: np.ndarray) -> np.ndarray:
        """LUT of Σ_i min(f(prototype_b), f(x_id))² for the rough variance."""
        n_bins = self.quantizer.number_of_bins()
        n_dims = self.feature_store.n_dims
        n = self.feature_store.n_examples
        sorted_values = self.feature_store.sorted_transformed
        T = np.empty(n_dims * n_bins)
        for d in range(n_dims):
            tp = self._transformed_prototypes(d)
            pos = np.searchsorted(sorted_values[d], tp, side='right')
            T[d * n_bins:(d + 1) * n_bins] = A2[d, pos] + tp ** 2 * (n - pos)
        return T

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_ab(self, A: np.ndarray, B: np.ndarray, dims: np.ndarray, values: np.ndarray) -> float:
        """Σ_d A/B evaluation for raw sparse query entries."""
        if len(dims) == 0:
            return 0.0
        tv = self.feature_store.transform_query(dims, values)
        pos = self.feature_store.sorted_positions(dims, tv)
        return float(np.sum(A[dims, pos] + tv * B[dims, pos]))

    def evaluate_lut(self, T: np.ndarray, dims: np.ndarray, values: np.ndarray) -> float:
        """Σ_d T lookup for raw sparse query entries."""
        if len(dims) == 0:
            return 0.0
        bins = self.quantizer.values_to_bins(values, dims)
        return float(np.sum(T[dims * self.quantizer.number_of_bins() + bins]))

    def score(self, tables: ClassTables, dims: np.ndarray, values: np.ndarray) -> float:
        """Class score, through the LUT when one is available."""
        if tables.T is not None and self.quantizer is not None:
            return self.evaluate_lut(tables.T, dims, values)
        return self.evaluate_ab(tables.A, tables.B, dims, values)
