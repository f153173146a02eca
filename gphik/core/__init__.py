"""
Core Module
===========

Fast Gaussian-process inference with the histogram intersection kernel.

Key Components:
    FeatureStore: Per-dimension sorted features, O(n·d) kernel products
    KernelSum: HIK data term plus noise term
    GPLikelihoodApprox: Approximate marginal likelihood
    HyperparameterOptimizer: Greedy grid / downhill simplex search
    ClassificationTableBuilder: A/B partial sums and quantized LUTs
    VarianceEstimator: Rough, fine and exact predictive variance
    HIKGPModel: Orchestrates training, classification and increments
"""

from gphik.core.feature_store import FeatureStore
from gphik.core.kernels import HIKDataTerm, KernelSum, NoiseTerm
from gphik.core.likelihood import GPLikelihoodApprox, LikelihoodConfig
from gphik.core.optimization import (
    HyperparameterOptimizer,
    OptimizationConfig,
    OptimizationResult,
)
from gphik.core.parameterized_functions import (
    AbsPowerFunction,
    IdentityFunction,
    ParameterizedFunction,
    WeightedDimFunction,
    build_parameterized_function,
)
from gphik.core.quantization import (
    EquidistantQuantizer,
    PerDimensionQuantizer,
    QuantizationConfig,
    build_quantizer,
)
from gphik.core.solvers import EigenEstimator, IterativeLinearSolver
from gphik.core.tables import ClassificationTableBuilder, ClassTables, sparse_query
from gphik.core.variance import VarianceEstimator


def __getattr__(name):
    """Lazy import for the model (pulls in pandas)."""
    if name == "HIKGPModel":
        from gphik.core.model import HIKGPModel
        return HIKGPModel
    if name == "HIKGPConfig":
        from gphik.core.model import HIKGPConfig
        return HIKGPConfig
    if name == "prepare_binary_labels":
        from gphik.core.model import prepare_binary_labels
        return prepare_binary_labels
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "FeatureStore",
    "HIKDataTerm",
    "KernelSum",
    "NoiseTerm",
    "GPLikelihoodApprox",
    "LikelihoodConfig",
    "HyperparameterOptimizer",
    "OptimizationConfig",
    "OptimizationResult",
    "AbsPowerFunction",
    "IdentityFunction",
    "ParameterizedFunction",
    "WeightedDimFunction",
    "build_parameterized_function",
    "EquidistantQuantizer",
    "PerDimensionQuantizer",
    "QuantizationConfig",
    "build_quantizer",
    "EigenEstimator",
    "IterativeLinearSolver",
    "ClassificationTableBuilder",
    "ClassTables",
    "sparse_query",
    "VarianceEstimator",
    # Model
    "HIKGPModel",
    "HIKGPConfig",
    "prepare_binary_labels",
]
