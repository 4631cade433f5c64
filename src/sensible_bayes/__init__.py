"""sensible_bayes public API."""
from .config import SamplerConfig
from .densities import (
    DecayCurve,
    MissingCellPrediction,
    NormalHierarchy,
    PoissonLogLinear,
    Prior,
    Term,
)
from .exceptions import (
    ConfigurationError,
    ConvergenceWarning,
    DivergenceWarning,
    SamplingError,
    SensibleBayesError,
)
from .model import Model
from .run import Chain, Draw, Run
from .sampler import sample
from .summary import Posterior, summarize
from . import models

__all__ = [
    "Model",
    "SamplerConfig",
    "sample",
    "summarize",
    "Posterior",
    "Run",
    "Chain",
    "Draw",
    "Term",
    "Prior",
    "NormalHierarchy",
    "DecayCurve",
    "PoissonLogLinear",
    "MissingCellPrediction",
    "SensibleBayesError",
    "ConfigurationError",
    "SamplingError",
    "DivergenceWarning",
    "ConvergenceWarning",
    "models",
]
