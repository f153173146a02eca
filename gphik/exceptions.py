"""
Exception Types
===============

All errors raised by gp-hik derive from :class:`GPHIKError`, and each one
also subclasses the matching builtin so callers can catch either form.

Numeric degradation (solver or eigen-estimator non-convergence) is never
raised.  It is reported through ``sklearn.exceptions.ConvergenceWarning``
and the module loggers instead.
"""


class GPHIKError(Exception):
    """Base class for all gp-hik errors."""


class ConfigurationError(GPHIKError, ValueError):
    """Invalid settings, detected before any numeric work starts.

    Examples: ``lower >= upper`` parameter bounds, an unknown optimisation
    method or quantizer selector, or calling ``optimize()`` without a
    feature store.
    """


class StateError(GPHIKError, RuntimeError):
    """Operation not allowed in the model's current state.

    Raised when structural settings are changed after training, when an
    untrained model is queried, or when an increment would turn a strict
    binary model into a multi-class one.
    """


class DataError(GPHIKError, ValueError):
    """Invalid input data. The operation is aborted and the model is unchanged."""
