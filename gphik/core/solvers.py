"""
Iterative Linear Solver and Eigenvalue Estimator
================================================

Matrix-free numerical oracles used by the likelihood approximation,
table construction and variance estimation.

Key Classes:
    IterativeLinearSolver: Conjugate gradients for (K + σI) x = b.
    EigenEstimator: k largest eigenpairs of K + σI (Lanczos / ARPACK).

Design Decisions
----------------
- Neither oracle raises on non-convergence.  A best-effort result is
  returned, a ``ConvergenceWarning`` is emitted and the event is logged.
  Hitting the iteration cap is an accepted accuracy/speed trade-off.
- Small systems (and requests for almost all eigenpairs) use a dense
  ``numpy.linalg.eigh``; ARPACK cannot return k >= n - 1 eigenpairs and
  is slower than LAPACK at that size anyway.
"""

import logging
import warnings
from typing import Optional, Tuple

import numpy as np
from scipy.sparse.linalg import ArpackNoConvergence, cg, eigsh
from sklearn.exceptions import ConvergenceWarning

from gphik.core.kernels import KernelSum

logger = logging.getLogger(__name__)

# Systems up to this size are decomposed densely
DENSE_EIGEN_LIMIT = 64


class IterativeLinearSolver:
    """Conjugate-gradient solver for the symmetric positive-definite K + σI.

    Args:
        max_iterations: Hard iteration cap (no cancellation mid-solve).
        tolerance: Relative residual tolerance.
    """

    def __init__(self, max_iterations: int = 1000, tolerance: float = 1e-8):
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.n_failures = 0

    def solve(
        self,
        kernel_sum: KernelSum,
        rhs: np.ndarray,
        x0: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        rhs = np.asarray(rhs, dtype=float).ravel()
        if not np.any(rhs):
            return np.zeros_like(rhs)
        if x0 is not None and len(x0) != len(rhs):
            logger.debug("Ignoring warm start of mismatching length")
            x0 = None

        x, info = cg(
            kernel_sum.as_linear_operator(),
            rhs,
            x0=x0,
            rtol=self.tolerance,
            atol=0.0,
            maxiter=self.max_iterations,
        )
        if info > 0:
            self.n_failures += 1
            residual = np.linalg.norm(kernel_sum.multiply(x) - rhs) / np.linalg.norm(rhs)
            message = (
                f"Conjugate gradients did not converge within {self.max_iterations} "
                f"iterations (relative residual {residual:.2e}); using partial solution"
            )
            logger.warning(message)
            warnings.warn(message, ConvergenceWarning)
        elif info < 0:
            logger.warning(f"Conjugate gradients reported breakdown (info={info})")
        return x


class EigenEstimator:
    """Largest eigenpairs of K + σI.

    Args:
        max_iterations: ARPACK iteration cap (None = scipy default).
    """

    def __init__(self, max_iterations: Optional[int] = None):
        self.max_iterations = max_iterations

    def estimate(self, kernel_sum: KernelSum, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (eigenvalues, eigenvectors) sorted by decreasing eigenvalue.

        Returns:
            eigenvalues: shape (k,)
            eigenvectors: shape (n, k)
        """
        n = kernel_sum.n
        if k > n:
            logger.debug(f"Requested {k} eigenpairs of a {n}x{n} system, using {n}")
            k = n

        if n <= DENSE_EIGEN_LIMIT or k >= n - 1:
            values, vectors = np.linalg.eigh(kernel_sum.dense_matrix())
            return values[::-1][:k].copy(), vectors[:, ::-1][:, :k].copy()

        v0 = np.full(n, 1.0 / np.sqrt(n))
        try:
            values, vectors = eigsh(
                kernel_sum.as_linear_operator(),
                k=k,
                which='LA',
                maxiter=self.max_iterations,
                v0=v0,
            )
        except ArpackNoConvergence as e:
            message = (
                f"Eigenvalue estimation did not converge; "
                f"{len(e.eigenvalues)} of {k} eigenpairs available"
            )
            logger.warning(message)
            warnings.warn(message, ConvergenceWarning)
            values, vectors = e.eigenvalues, e.eigenvectors
            if len(values) == 0:
                # Fall back to the noise floor, a valid lower bound for every eigenvalue
                values = np.full(k, kernel_sum.noise)
                vectors = np.zeros((n, k))

        idx = np.argsort(values)[::-1]
        return np.asarray(values)[idx], np.asarray(vectors)[:, idx]
