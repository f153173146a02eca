"""
GP Predictive Variance Estimators
=================================

Three estimators of the latent predictive variance

    σ²(q) = k** − k*ᵀ (K + σI)⁻¹ k*

sharing one signature (query -> float) and selected by name:

- ``'rough'``: k** − |k*|² / λ_max, with |k*|² approximated by dropping
  the cross terms between query dimensions,
  |k*|² ≈ Σ_d Σ_i min(q_d, x_id)².  O(d) per query via one squared
  partial-sum table (or LUT).
- ``'fine'``: k** − Σ_{j≤k} (u_jᵀ k*)² / λ_j over the top-k eigenpairs.
  Each projection u_jᵀ k* is an A/B (or LUT) evaluation with weights
  u_j, so a query costs O(d·k).  Adding eigenpairs only removes
  non-negative terms, so the estimate approaches the exact value from
  above as k grows.
- ``'exact'``: one conjugate-gradient solve per query.  Debugging and
  validation only.

Dense and sparse queries are accepted everywhere (see
:func:`gphik.core.tables.sparse_query`).
"""

import logging
from typing import List, Optional

import numpy as np

from gphik.core.feature_store import FeatureStore
from gphik.core.kernels import KernelSum
from gphik.core.solvers import IterativeLinearSolver
from gphik.core.tables import (
    ClassificationTableBuilder,
    ClassTables,
    dense_query,
    sparse_query,
)
from gphik.exceptions import ConfigurationError, StateError

logger = logging.getLogger(__name__)

VARIANCE_METHODS = ('rough', 'fine', 'exact')


class VarianceEstimator:
    """Predictive variance for a trained HIK-GP.

    Args:
        feature_store: Store with finalised transformed features.
        kernel_sum: Kernel at the final hyperparameters.
        solver: Solver for the exact estimator.
        builder: Table builder (shares the quantizer of the classifier).
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        kernel_sum: KernelSum,
        solver: IterativeLinearSolver,
        builder: ClassificationTableBuilder,
    ):
        self.feature_store = feature_store
        self.kernel_sum = kernel_sum
        self.solver = solver
        self.builder = builder

        # rough
        self.max_eigenvalue: Optional[float] = None
        self.a_squared: Optional[np.ndarray] = None
        self.t_squared: Optional[np.ndarray] = None
        # fine
        self.eigenvalues: Optional[np.ndarray] = None
        self.eigenvector_tables: List[ClassTables] = []

    @property
    def rough_prepared(self) -> bool:
        return self.a_squared is not None

    @property
    def fine_prepared(self) -> bool:
        return self.eigenvalues is not None

    def prepare_rough(self, max_eigenvalue: float) -> None:
        """Precompute the squared partial-sum table (and LUT)."""
        self.max_eigenvalue = float(max_eigenvalue)
        self.a_squared = self.feature_store.compute_a_squared()
        self.t_squared = (
            self.builder.build_squared_lut(self.a_squared)
            if self.builder.quantizer is not None else None
        )

    def prepare_fine(self, eigenvalues: np.ndarray, eigenvectors: np.ndarray, k: int) -> None:
        """Precompute one A/B (and LUT) set per eigenvector."""
        if k > len(eigenvalues):
            logger.warning(
                f"Only {len(eigenvalues)} eigenpairs available for a rank-{k} variance approximation"
            )
        k = min(k, len(eigenvalues))
        self.eigenvalues = np.asarray(eigenvalues[:k], dtype=float).copy()
        self.eigenvector_tables = [
            self.builder.build_for_weights(eigenvectors[:, j]) for j in range(k)
        ]

    def reset(self) -> None:
        self.max_eigenvalue = None
        self.a_squared = None
        self.t_squared = None
        self.eigenvalues = None
        self.eigenvector_tables = []

    # ------------------------------------------------------------------
    # Estimators
    # ------------------------------------------------------------------

    def _parse(self, query):
        return sparse_query(query, self.feature_store.n_dims)

    def rough(self, query) -> float:
        if not self.rough_prepared:
            raise StateError(
                "Rough variance approximation is not prepared; "
                "call prepare_variance_approximation_rough() first"
            )
        dims, values = self._parse(query)
        k_ss = self.feature_store.self_similarity(dims, values)
        if len(dims) == 0:
            return max(k_ss, 0.0)

        if self.t_squared is not None:
            norm_sq = self.builder.evaluate_lut(self.t_squared, dims, values)
        else:
            tv = self.feature_store.transform_query(dims, values)
            pos = self.feature_store.sorted_positions(dims, tv)
            n = self.feature_store.n_examples
            norm_sq = float(np.sum(self.a_squared[dims, pos] + tv ** 2 * (n - pos)))

        return max(k_ss - norm_sq / self.max_eigenvalue, 0.0)

    def fine(self, query) -> float:
        if not self.fine_prepared:
            raise StateError(
                "Fine variance approximation is not prepared; "
                "call prepare_variance_approximation_fine() first"
            )
        dims, values = self._parse(query)
        k_ss = self.feature_store.self_similarity(dims, values)
        projections = np.array([
            self.builder.score(tables, dims, values) for tables in self.eigenvector_tables
        ])
        correction = float(np.sum(projections ** 2 / self.eigenvalues))
        return max(k_ss - correction, 0.0)

    def exact(self, query) -> float:
        dims, values = self._parse(query)
        k_ss = self.feature_store.self_similarity(dims, values)
        k_star = self.feature_store.kernel_vector(
            dense_query(dims, values, self.feature_store.n_dims)
        )
        z = self.solver.solve(self.kernel_sum, k_star)
        return max(k_ss - float(k_star @ z), 0.0)

    def estimate(self, query, method: str = 'rough') -> float:
        """Dispatch to the estimator named ``method``."""
        if method not in VARIANCE_METHODS:
            raise ConfigurationError(
                f"Unknown variance method: {method!r}. Expected one of {VARIANCE_METHODS}."
            )
        return getattr(self, method)(query)
