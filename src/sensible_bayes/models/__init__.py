"""Built-in model families.

Each factory returns a plain Model; nothing here is special to the sampler.
"""

from .exponential import UNIT_NORMAL_PRIORS, decay_func, single_exponential, two_exponentials
from .poisson import poisson_glmm, standardized_trend

__all__ = [
    "single_exponential",
    "two_exponentials",
    "poisson_glmm",
    "decay_func",
    "standardized_trend",
    "UNIT_NORMAL_PRIORS",
]
