"""
Feature Quantization for Lookup-Table Classification
=====================================================

Maps continuous feature values to a fixed number of discrete bins so that
per-class lookup tables (LUTs) can replace the A/B binary searches at
classification time.

Key Classes:
    QuantizationConfig: Configuration dataclass.
    Quantizer: Abstract base (``number_of_bins``, ``value_to_bin``,
        ``bin_prototype``).
    EquidistantQuantizer: Equidistant bins on [0, 1] for every dimension.
    PerDimensionQuantizer: Equidistant bins between each dimension's
        observed min and max.

Key Functions:
    build_quantizer: Factory that constructs the right quantizer from config.

Design Decisions
----------------
- Quantization is applied to **raw** feature values.  The LUT stores the
  kernel contribution of the *transformed* bin prototype, so the same
  quantizer works for any parameterized transform.
- Bin ranges are frozen once fitted.  Values outside the range are
  clipped to the boundary bins; the quantizer must stay stable for a
  whole training/inference session.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from gphik.exceptions import ConfigurationError, StateError

logger = logging.getLogger(__name__)


@dataclass
class QuantizationConfig:
    """Configuration for feature quantization.

    Attributes
    ----------
    use_quantization : bool
        If False, no quantizer is built and classification uses A/B only.
    number_of_bins : int
        Number of bins per dimension (>= 2).
    quantization_type : str
        ``'1d_equidistant'`` (bins on [0, 1], suitable for L1-normalised
        histograms) or ``'nd_equidistant'`` (per-dimension data range).
    """
    use_quantization: bool = False
    number_of_bins: int = 100
    quantization_type: str = '1d_equidistant'


class Quantizer(ABC):
    """Abstract quantizer: value -> bin index, bin index -> prototype value."""

    def __init__(self, number_of_bins: int):
        if number_of_bins < 2:
            raise ConfigurationError(
                f"number_of_bins must be >= 2, got {number_of_bins}"
            )
        self._number_of_bins = int(number_of_bins)

    def number_of_bins(self) -> int:
        return self._number_of_bins

    @abstractmethod
    def _range(self, dim: int):
        """Return (lower, upper) of the quantized interval for ``dim``."""
        ...

    def fit(self, features: np.ndarray) -> 'Quantizer':
        """Fix bin ranges from training data (no-op for data-independent quantizers)."""
        return self

    def bin_prototype(self, bin_index: int, dim: int = 0) -> float:
        """Representative value of ``bin_index`` in dimension ``dim``."""
        lower, upper = self._range(dim)
        step = (upper - lower) / (self._number_of_bins - 1)
        return lower + bin_index * step

    def bin_prototypes(self, dim: int = 0) -> np.ndarray:
        """All bin prototypes of ``dim``, shape (number_of_bins,)."""
        lower, upper = self._range(dim)
        return np.linspace(lower, upper, self._number_of_bins)

    def value_to_bin(self, value: float, dim: int = 0) -> int:
        """Index of the bin whose prototype is nearest to ``value``."""
        return int(self.values_to_bins(np.array([value]), np.array([dim]))[0])

    def values_to_bins(self, values: np.ndarray, dims: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`value_to_bin` for aligned ``values`` and ``dims``."""
        values = np.asarray(values, dtype=float)
        dims = np.asarray(dims, dtype=int)
        lower, upper = self._ranges_for(dims)
        width = np.where(upper > lower, upper - lower, 1.0)
        relative = (values - lower) / width
        bins = np.rint(relative * (self._number_of_bins - 1)).astype(int)
        return np.clip(bins, 0, self._number_of_bins - 1)

    def _ranges_for(self, dims: np.ndarray):
        lower = np.empty(len(dims))
        upper = np.empty(len(dims))
        for i, d in enumerate(dims):
            lower[i], upper[i] = self._range(int(d))
        return lower, upper

    def get_state(self) -> Dict[str, Any]:
        return {'number_of_bins': self._number_of_bins}


class EquidistantQuantizer(Quantizer):
    """Equidistant bins on [0, 1], identical for every dimension."""

    def _range(self, dim: int):
        return 0.0, 1.0

    def _ranges_for(self, dims: np.ndarray):
        n = len(dims)
        return np.zeros(n), np.ones(n)

    def get_state(self) -> Dict[str, Any]:
        state = super().get_state()
        state['quantization_type'] = '1d_equidistant'
        return state


class PerDimensionQuantizer(Quantizer):
    """Equidistant bins between each dimension's min and max training value."""

    def __init__(self, number_of_bins: int):
        super().__init__(number_of_bins)
        self.lower_: Optional[np.ndarray] = None
        self.upper_: Optional[np.ndarray] = None

    def fit(self, features: np.ndarray) -> 'PerDimensionQuantizer':
        features = np.asarray(features, dtype=float)
        self.lower_ = features.min(axis=0)
        self.upper_ = features.max(axis=0)
        degenerate = int(np.sum(self.upper_ <= self.lower_))
        if degenerate:
            logger.debug(f"{degenerate} dimensions have a constant value range")
        return self

    def _check_fitted(self):
        if self.lower_ is None:
            raise StateError("PerDimensionQuantizer must be fitted before use")

    def _range(self, dim: int):
        self._check_fitted()
        return float(self.lower_[dim]), float(self.upper_[dim])

    def _ranges_for(self, dims: np.ndarray):
        self._check_fitted()
        return self.lower_[dims], self.upper_[dims]

    def bin_prototypes(self, dim: int = 0) -> np.ndarray:
        lower, upper = self._range(dim)
        if upper <= lower:
            return np.full(self._number_of_bins, lower)
        return np.linspace(lower, upper, self._number_of_bins)

    def get_state(self) -> Dict[str, Any]:
        state = super().get_state()
        state['quantization_type'] = 'nd_equidistant'
        state['lower'] = None if self.lower_ is None else self.lower_.copy()
        state['upper'] = None if self.upper_ is None else self.upper_.copy()
        return state


def build_quantizer(config: Optional[QuantizationConfig] = None) -> Optional[Quantizer]:
    """Factory: construct the configured quantizer, or None if disabled.

    Raises
    ------
    ConfigurationError
        If ``quantization_type`` is unknown or the bin count is invalid.
    """
    if config is None or not config.use_quantization:
        return None

    if config.quantization_type == '1d_equidistant':
        return EquidistantQuantizer(config.number_of_bins)
    if config.quantization_type == 'nd_equidistant':
        return PerDimensionQuantizer(config.number_of_bins)

    raise ConfigurationError(
        f"Unknown quantization_type: {config.quantization_type!r}. "
        f"Expected '1d_equidistant' or 'nd_equidistant'."
    )


def quantizer_from_state(state: Optional[Dict[str, Any]]) -> Optional[Quantizer]:
    """Rebuild a quantizer from :meth:`Quantizer.get_state` output."""
    if state is None:
        return None
    quantizer = build_quantizer(QuantizationConfig(
        use_quantization=True,
        number_of_bins=state['number_of_bins'],
        quantization_type=state['quantization_type'],
    ))
    if isinstance(quantizer, PerDimensionQuantizer) and state.get('lower') is not None:
        quantizer.lower_ = np.asarray(state['lower'], dtype=float)
        quantizer.upper_ = np.asarray(state['upper'], dtype=float)
    return quantizer
