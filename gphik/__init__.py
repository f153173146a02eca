"""
gp-hik: Gaussian-Process Classification with the Histogram Intersection Kernel
==============================================================================

Large-scale GP classification and regression for non-negative histogram
features.  Kernel products, likelihood approximation, classification
scores and predictive variances all run on per-dimension sorted features
without ever forming the n × n kernel matrix.

Modules:
    core: Feature store, kernels, likelihood, optimiser, tables, variance, model
    raw_classifier: scikit-learn estimator without hyperparameter search
    utils: Synthetic histogram data
    exceptions: Typed errors

License: MIT
"""

__version__ = "1.0.0"

from gphik import core, utils
from gphik.exceptions import ConfigurationError, DataError, GPHIKError, StateError


def __getattr__(name):
    """Lazy import for the model (pandas) and the scikit-learn estimator."""
    if name == "HIKGPModel":
        from gphik.core.model import HIKGPModel
        return HIKGPModel
    if name == "HIKGPConfig":
        from gphik.core.model import HIKGPConfig
        return HIKGPConfig
    if name == "GPHIKRawClassifier":
        from gphik.raw_classifier import GPHIKRawClassifier
        return GPHIKRawClassifier
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "core",
    "utils",
    "HIKGPConfig",
    "HIKGPModel",
    "GPHIKRawClassifier",
    "GPHIKError",
    "ConfigurationError",
    "DataError",
    "StateError",
]
