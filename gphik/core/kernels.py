"""
Additive Kernel Combination (Data Term + Noise Term)
====================================================

Implicit kernel matrices that expose products instead of entries:

    K_sum = K_HIK(θ) + σ I

Key Classes:
    KernelTerm: Abstract implicit kernel term.
    HIKDataTerm: Histogram intersection kernel over a FeatureStore,
        parameterized by the feature transform θ.
    NoiseTerm: σ I with a (optionally frozen) noise parameter.
    KernelSum: Ordered combination of one data term and one noise term.

Design Decisions
----------------
- Parameter ordering is always *transform parameters first, noise last*;
  the noise parameter is only part of the vector when it is free.
- Setting data-term parameters re-applies the transform to the
  FeatureStore, so the store always reflects the active parameters.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict

import numpy as np
from scipy.sparse.linalg import LinearOperator

from gphik.core.feature_store import FeatureStore
from gphik.core.parameterized_functions import ParameterizedFunction
from gphik.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class KernelTerm(ABC):
    """Implicit (matrix-free) kernel term."""

    @property
    @abstractmethod
    def n_parameters(self) -> int:
        ...

    @abstractmethod
    def get_parameters(self) -> np.ndarray:
        ...

    @abstractmethod
    def set_parameters(self, params: np.ndarray) -> None:
        ...

    @abstractmethod
    def multiply(self, v: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def multiply_derivative(self, index: int, v: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def trace(self) -> float:
        ...

    @abstractmethod
    def derivative_trace(self, index: int) -> float:
        ...


class HIKDataTerm(KernelTerm):
    """Histogram intersection kernel over transformed features."""

    def __init__(self, feature_store: FeatureStore, function: ParameterizedFunction):
        self.feature_store = feature_store
        self.function = function
        self.feature_store.apply_function(function)

    @property
    def n_parameters(self) -> int:
        return self.function.n_parameters

    def get_parameters(self) -> np.ndarray:
        return self.function.get_parameters()

    def set_parameters(self, params: np.ndarray) -> None:
        if self.n_parameters == 0:
            return
        if np.array_equal(params, self.function.get_parameters()):
            return
        self.function.set_parameters(params)
        self.feature_store.apply_function(self.function)

    def multiply(self, v):
        return self.feature_store.hik_multiply(v)

    def multiply_derivative(self, index, v):
        return self.feature_store.hik_derivative_multiply(index, v)

    def trace(self):
        return self.feature_store.trace()

    def derivative_trace(self, index):
        return self.feature_store.derivative_trace(index)


class NoiseTerm(KernelTerm):
    """σ I.  ``optimize=False`` freezes σ out of the parameter vector."""

    def __init__(self, n: int, noise: float, optimize: bool = False):
        if noise <= 0:
            raise ConfigurationError(f"Noise must be positive, got {noise}")
        self.n = n
        self.noise = float(noise)
        self.optimize = optimize

    @property
    def n_parameters(self) -> int:
        return 1 if self.optimize else 0

    def get_parameters(self) -> np.ndarray:
        return np.array([self.noise]) if self.optimize else np.zeros(0)

    def set_parameters(self, params: np.ndarray) -> None:
        if self.optimize:
            self.noise = float(params[0])

    def multiply(self, v):
        return self.noise * np.asarray(v, dtype=float)

    def multiply_derivative(self, index, v):
        if index != 0:
            raise IndexError(f"NoiseTerm has 1 parameter, got index {index}")
        return np.asarray(v, dtype=float).copy()

    def trace(self):
        return self.noise * self.n

    def derivative_trace(self, index):
        return float(self.n)


class KernelSum:
    """K_HIK(θ) + σ I with a flat parameter vector [θ..., σ]."""

    def __init__(self, data_term: HIKDataTerm, noise_term: NoiseTerm):
        self.data_term = data_term
        self.noise_term = noise_term

    @property
    def n(self) -> int:
        return self.data_term.feature_store.n_examples

    @property
    def noise(self) -> float:
        return self.noise_term.noise

    @property
    def n_parameters(self) -> int:
        return self.data_term.n_parameters + self.noise_term.n_parameters

    def get_parameters(self) -> np.ndarray:
        return np.concatenate([
            self.data_term.get_parameters(),
            self.noise_term.get_parameters(),
        ])

    def set_parameters(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=float).ravel()
        if len(params) != self.n_parameters:
            raise ValueError(
                f"Expected {self.n_parameters} parameters, got {len(params)}"
            )
        n_data = self.data_term.n_parameters
        self.data_term.set_parameters(params[:n_data])
        self.noise_term.set_parameters(params[n_data:])

    def _split_index(self, index: int):
        n_data = self.data_term.n_parameters
        if index < n_data:
            return self.data_term, index
        if index < self.n_parameters:
            return self.noise_term, index - n_data
        raise IndexError(f"Parameter index {index} out of range ({self.n_parameters})")

    def multiply(self, v: np.ndarray) -> np.ndarray:
        return self.data_term.multiply(v) + self.noise_term.multiply(v)

    def multiply_derivative(self, index: int, v: np.ndarray) -> np.ndarray:
        term, local = self._split_index(index)
        return term.multiply_derivative(local, v)

    def trace(self) -> float:
        return self.data_term.trace() + self.noise_term.trace()

    def derivative_trace(self, index: int) -> float:
        term, local = self._split_index(index)
        return term.derivative_trace(local)

    def as_linear_operator(self) -> LinearOperator:
        n = self.n
        return LinearOperator(
            (n, n),
            matvec=lambda v: self.multiply(np.ravel(v)),
            rmatvec=lambda v: self.multiply(np.ravel(v)),
            dtype=float,
        )

    def dense_matrix(self) -> np.ndarray:
        """Dense K + σI. Verification only."""
        return self.data_term.feature_store.kernel_matrix() + self.noise * np.eye(self.n)

    def get_all_params(self) -> Dict[str, object]:
        params = self.data_term.function.get_all_params()
        params['noise'] = self.noise
        params['optimize_noise'] = self.noise_term.optimize
        return params
