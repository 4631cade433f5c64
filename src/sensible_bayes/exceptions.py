"""Exceptions and warnings raised by sensible_bayes."""


class SensibleBayesError(Exception):
    """Base class for all sensible_bayes errors."""


class ConfigurationError(SensibleBayesError, ValueError):
    """Raised when a model or sampler configuration is malformed.

    Always raised while building the model or validating the sampling request,
    never once a chain has started.
    """


class SamplingError(SensibleBayesError, RuntimeError):
    """Raised when a chain cannot be started (no finite initial point)."""


class DivergenceWarning(UserWarning):
    """Divergent transitions were recorded during sampling."""


class ConvergenceWarning(UserWarning):
    """One or more parameters failed the convergence diagnostics."""
