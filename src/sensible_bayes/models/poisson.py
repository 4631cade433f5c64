from __future__ import annotations

from typing import Any, Optional, Tuple

import numpy as np

from ..densities import MissingCellPrediction, NormalHierarchy, PoissonLogLinear
from ..exceptions import ConfigurationError
from ..model import Model

DEFAULT_SD_BOUNDS = {
    "sd_site": (0.0, 5.0),
    "sd_year": (0.0, 3.0),
    "sd_observer": (0.0, 1.0),
}


def _index(values: Any, name: str) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim != 1 or not np.issubdtype(arr.dtype, np.integer):
        raise ConfigurationError(f"{name} must be a 1-D integer index array.")
    if arr.size and arr.min() < 0:
        raise ConfigurationError(f"{name} indices must be >= 0.")
    return arr


def _n_levels(idx: np.ndarray, given: Optional[int], name: str) -> int:
    n = int(idx.max()) + 1 if idx.size else 0
    if given is None:
        return max(n, 1)
    if given < n:
        raise ConfigurationError(f"{name}={given} but indices go up to {n - 1}.")
    return int(given)


def standardized_trend(year: Any, n_years: int) -> np.ndarray:
    """Year index rescaled to [-1, 1] (0 in the middle year)."""
    mid = 0.5 * (n_years - 1)
    return (np.asarray(year, dtype=float) - mid) / max(mid, 1.0)


def poisson_glmm(
    counts: Any,
    site: Any,
    year: Any,
    observer: Any,
    *,
    first_year: Any = None,
    n_sites: Optional[int] = None,
    n_years: Optional[int] = None,
    n_observers: Optional[int] = None,
    sd_bounds: Optional[dict] = None,
    fixed_prior: Tuple[str, float, float] = ("normal", 0.0, 10.0),
    name: str = "poisson glmm",
) -> Model:
    """Return a hierarchical Poisson log-linear model for site x year counts.

    log(rate) = mu + beta * trend + gamma * first_year
                + alpha[site] + eps[year] + delta[observer]

    ``counts`` is one entry per cell, NaN where the cell was not surveyed.
    Missing cells are left out of the likelihood; their posterior-predictive
    counts are generated as ``"predicted"`` (in the order of the NaN cells).

    Parameters in the model
    -----------------------
    mu          : intercept
    beta        : linear trend over standardized years
    gamma       : first-year observer effect (only with ``first_year``)
    alpha       : site effects ~ Normal(0, sd_site)
    eps         : year effects ~ Normal(0, sd_year)
    delta       : observer effects ~ Normal(0, sd_observer)
    sd_site, sd_year, sd_observer : interval-bounded effect scales
    """
    counts = np.asarray(counts, dtype=float)
    site = _index(site, "site")
    year = _index(year, "year")
    observer = _index(observer, "observer")
    n_sites = _n_levels(site, n_sites, "n_sites")
    n_years = _n_levels(year, n_years, "n_years")
    n_observers = _n_levels(observer, n_observers, "n_observers")
    bounds = dict(DEFAULT_SD_BOUNDS)
    bounds.update(sd_bounds or {})
    unknown = set(bounds) - set(DEFAULT_SD_BOUNDS)
    if unknown:
        raise ConfigurationError(f"Unknown sd_bounds keys: {sorted(unknown)}")

    data = {
        "counts": counts,
        "site": site,
        "year": year,
        "observer": observer,
        "trend": standardized_trend(year, n_years),
    }
    slopes = [("beta", "trend")]
    if first_year is not None:
        data["first_year"] = np.asarray(first_year, dtype=float)
        slopes.append(("gamma", "first_year"))

    m = (
        Model(name=name, data=data)
        .param("mu")
        .param("beta")
    )
    if first_year is not None:
        m = m.param("gamma")
    m = (
        m.param("alpha", shape=(n_sites,))
        .param("eps", shape=(n_years,))
        .param("delta", shape=(n_observers,))
        .param("sd_site", constraint=("interval",) + tuple(bounds["sd_site"]))
        .param("sd_year", constraint=("interval",) + tuple(bounds["sd_year"]))
        .param("sd_observer", constraint=("interval",) + tuple(bounds["sd_observer"]))
    )

    likelihood = PoissonLogLinear(
        counts="counts",
        intercept="mu",
        slopes=tuple(slopes),
        effects=(("alpha", "site"), ("eps", "year"), ("delta", "observer")),
    )
    fixed = ["mu"] + [p for p, _ in slopes]
    m = m.prior(**{p: fixed_prior for p in fixed}).add(
        NormalHierarchy("alpha", "sd_site"),
        NormalHierarchy("eps", "sd_year"),
        NormalHierarchy("delta", "sd_observer"),
        likelihood,
    )
    if np.any(likelihood.missing(m.data)):
        m = m.generate(
            "predicted",
            MissingCellPrediction(likelihood),
            doc="Poisson draws for the cells with missing counts.",
        )
    return m
