"""
Hyperparameter Search over the Approximate Likelihood
=====================================================

Minimises :class:`GPLikelihoodApprox` over the bounded transform
parameters (and optionally the noise) with one of three strategies:

- ``'greedy'``: exhaustive grid.  All transform parameters share one
  value stepped from the upper to the lower bound; with noise
  optimisation the grid is the product with a log-spaced noise grid.
  Grid points are independent and may be evaluated in parallel.
- ``'downhillsimplex'``: Nelder-Mead via ``scipy.optimize.minimize``,
  terminated by an iteration cap, a wall-clock limit or the parameter
  tolerance, whichever comes first.
- ``'none'``: keep the current parameters (one evaluation so that the
  alphas and eigenpairs for the final model are available).

Key Classes:
    OptimizationConfig: Configuration dataclass.
    OptimizationResult: Outcome of one search.
    HyperparameterOptimizer: Strategy dispatcher.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy.optimize import minimize
from tqdm import tqdm

from gphik.core.likelihood import GPLikelihoodApprox
from gphik.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

OPTIMIZATION_METHODS = ('greedy', 'downhillsimplex', 'none')


@dataclass
class OptimizationConfig:
    """Configuration for the hyperparameter search.

    Attributes:
        method: ``'greedy'``, ``'downhillsimplex'`` or ``'none'``.
        parameter_lower_bound: Lower bound for every transform parameter.
        parameter_upper_bound: Upper bound for every transform parameter.
        parameter_step_size: Grid step of the greedy search.
        optimize_noise: Also search the noise σ.
        noise_lower_bound: Lower bound of σ when optimised.
        noise_upper_bound: Upper bound of σ when optimised.
        n_noise_grid_points: Log-spaced σ values in the greedy grid.
        downhill_simplex_max_iterations: Nelder-Mead iteration cap.
        downhill_simplex_time_limit: Nelder-Mead wall-clock limit (seconds).
        downhill_simplex_param_tol: Nelder-Mead parameter tolerance.
        n_jobs: joblib workers for greedy grid evaluation.
        verbose: Show a tqdm progress bar for the grid.
    """
    method: str = 'greedy'
    parameter_lower_bound: float = 1.0
    parameter_upper_bound: float = 5.0
    parameter_step_size: float = 0.1
    optimize_noise: bool = False
    noise_lower_bound: float = 1e-4
    noise_upper_bound: float = 1.0
    n_noise_grid_points: int = 5
    downhill_simplex_max_iterations: int = 20
    downhill_simplex_time_limit: float = 10.0
    downhill_simplex_param_tol: float = 1e-3
    n_jobs: int = 1
    verbose: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError for inconsistent settings."""
        if self.method not in OPTIMIZATION_METHODS:
            raise ConfigurationError(
                f"Unknown optimization method: {self.method!r}. "
                f"Expected one of {OPTIMIZATION_METHODS}."
            )
        if self.parameter_lower_bound >= self.parameter_upper_bound:
            raise ConfigurationError(
                f"parameter_lower_bound ({self.parameter_lower_bound}) must be "
                f"smaller than parameter_upper_bound ({self.parameter_upper_bound})"
            )
        if self.parameter_step_size <= 0:
            raise ConfigurationError(
                f"parameter_step_size must be positive, got {self.parameter_step_size}"
            )
        if self.optimize_noise and not 0 < self.noise_lower_bound < self.noise_upper_bound:
            raise ConfigurationError(
                f"Noise bounds must satisfy 0 < lower < upper, got "
                f"({self.noise_lower_bound}, {self.noise_upper_bound})"
            )
        if self.n_noise_grid_points < 1:
            raise ConfigurationError("n_noise_grid_points must be >= 1")


@dataclass
class OptimizationResult:
    """Outcome of a hyperparameter search.

    Attributes:
        parameters: Winning parameter vector (transform params, then noise).
        value: Approximate negative log-likelihood at ``parameters``.
        n_evaluations: Likelihood evaluations spent.
        termination: Why the search stopped (``'grid_exhausted'``,
            ``'max_iterations'``, ``'time_limit'``, ``'parameter_tolerance'``,
            ``'not_optimized'``, ``'no_free_parameters'``).
        elapsed: Wall-clock seconds.
    """
    parameters: np.ndarray
    value: float
    n_evaluations: int
    termination: str
    elapsed: float


def _evaluate_point(likelihood: GPLikelihoodApprox, params: np.ndarray) -> float:
    return likelihood.evaluate(params)


class HyperparameterOptimizer:
    """Minimise the approximate negative log-likelihood.

    Args:
        config: Search configuration (validated on construction).
    """

    def __init__(self, config: Optional[OptimizationConfig] = None):
        self.config = config or OptimizationConfig()
        self.config.validate()

    def _bounds(self, likelihood: GPLikelihoodApprox) -> Tuple[np.ndarray, np.ndarray]:
        n_data = likelihood.kernel_sum.data_term.n_parameters
        lower = [self.config.parameter_lower_bound] * n_data
        upper = [self.config.parameter_upper_bound] * n_data
        if likelihood.kernel_sum.noise_term.n_parameters:
            lower.append(self.config.noise_lower_bound)
            upper.append(self.config.noise_upper_bound)
        return np.array(lower, dtype=float), np.array(upper, dtype=float)

    def optimize(self, likelihood: GPLikelihoodApprox) -> OptimizationResult:
        """Run the configured strategy.

        On return the likelihood's kernel sum holds the winning parameters
        and ``likelihood.last_evaluation`` describes them.
        """
        start = time.perf_counter()
        evaluations_before = likelihood.n_evaluations
        likelihood.best_evaluation = None

        if self.config.method == 'none':
            value = likelihood.evaluate()
            params, termination = likelihood.kernel_sum.get_parameters(), 'not_optimized'
        elif likelihood.n_parameters == 0:
            value = likelihood.evaluate()
            params, termination = likelihood.kernel_sum.get_parameters(), 'no_free_parameters'
        elif self.config.method == 'greedy':
            params, value, termination = self._optimize_greedy(likelihood)
        else:
            params, value, termination = self._optimize_downhill_simplex(likelihood)

        self._finalize(likelihood, params)
        result = OptimizationResult(
            parameters=np.asarray(params, dtype=float).copy(),
            value=float(value),
            n_evaluations=likelihood.n_evaluations - evaluations_before,
            termination=termination,
            elapsed=time.perf_counter() - start,
        )
        logger.info(
            f"Hyperparameter optimization ({self.config.method}): "
            f"params={result.parameters}, nll={result.value:.4f}, "
            f"{result.n_evaluations} evaluations, stopped by {result.termination} "
            f"after {result.elapsed:.2f}s"
        )
        return result

    def _finalize(self, likelihood: GPLikelihoodApprox, params: np.ndarray) -> None:
        """Leave the kernel at ``params`` with a matching last evaluation."""
        best = likelihood.best_evaluation
        if best is not None and np.array_equal(best.parameters, params):
            likelihood.kernel_sum.set_parameters(params)
            likelihood.last_evaluation = best
            likelihood.alphas = best.alphas
            return
        last = likelihood.last_evaluation
        if last is not None and np.array_equal(last.parameters, params):
            likelihood.kernel_sum.set_parameters(params)
            return
        likelihood.evaluate(params)

    # ------------------------------------------------------------------
    # Greedy grid
    # ------------------------------------------------------------------

    def build_grid(self, likelihood: GPLikelihoodApprox) -> List[np.ndarray]:
        """Grid points ordered from the upper to the lower parameter bound."""
        cfg = self.config
        n_data = likelihood.kernel_sum.data_term.n_parameters
        if n_data:
            n_steps = int(np.floor(
                (cfg.parameter_upper_bound - cfg.parameter_lower_bound)
                / cfg.parameter_step_size + 1e-9
            ))
            shared_values = cfg.parameter_upper_bound - cfg.parameter_step_size * np.arange(n_steps + 1)
        else:
            shared_values = np.array([np.nan])

        if likelihood.kernel_sum.noise_term.n_parameters:
            noise_values = np.geomspace(
                cfg.noise_upper_bound, cfg.noise_lower_bound, cfg.n_noise_grid_points
            )
        else:
            noise_values = np.array([np.nan])

        grid = []
        for value in shared_values:
            for noise in noise_values:
                point = [value] * n_data
                if not np.isnan(noise):
                    point.append(noise)
                grid.append(np.array(point, dtype=float))
        return grid

    def _optimize_greedy(self, likelihood: GPLikelihoodApprox):
        grid = self.build_grid(likelihood)
        logger.debug(f"Greedy search over {len(grid)} grid points")

        if self.config.n_jobs == 1:
            values = [
                likelihood.evaluate(point)
                for point in tqdm(grid, desc="Greedy grid search", disable=not self.config.verbose)
            ]
        else:
            values = Parallel(n_jobs=self.config.n_jobs)(
                delayed(_evaluate_point)(likelihood, point)
                for point in tqdm(grid, desc="Greedy grid search", disable=not self.config.verbose)
            )
            likelihood.n_evaluations += len(grid)

        values = np.asarray(values, dtype=float)
        finite = np.isfinite(values)
        if not np.any(finite):
            logger.warning("Greedy search produced no finite likelihood value, keeping first grid point")
            return grid[0], np.inf, 'grid_exhausted'

        best_idx = int(np.argmin(np.where(finite, values, np.inf)))
        return grid[best_idx], values[best_idx], 'grid_exhausted'

    # ------------------------------------------------------------------
    # Downhill simplex
    # ------------------------------------------------------------------

    def _optimize_downhill_simplex(self, likelihood: GPLikelihoodApprox):
        cfg = self.config
        lower, upper = self._bounds(likelihood)
        x0 = np.clip(likelihood.kernel_sum.get_parameters(), lower, upper)

        deadline = time.perf_counter() + cfg.downhill_simplex_time_limit
        timed_out = {'flag': False}

        def _objective(params):
            return likelihood.evaluate(np.clip(params, lower, upper))

        def _callback(intermediate_result):
            if time.perf_counter() > deadline:
                timed_out['flag'] = True
                raise StopIteration

        result = minimize(
            _objective,
            x0=x0,
            method='Nelder-Mead',
            bounds=list(zip(lower, upper)),
            callback=_callback,
            options={
                'maxiter': cfg.downhill_simplex_max_iterations,
                'xatol': cfg.downhill_simplex_param_tol,
                'fatol': np.inf,
            },
        )

        if timed_out['flag']:
            termination = 'time_limit'
        elif result.nit >= cfg.downhill_simplex_max_iterations:
            termination = 'max_iterations'
        elif result.success:
            termination = 'parameter_tolerance'
        else:
            termination = str(result.message)

        params = np.clip(result.x, lower, upper)
        best = likelihood.best_evaluation
        if best is not None and best.value < result.fun:
            params, value = best.parameters, best.value
        else:
            value = result.fun
        return params, value, termination
