from __future__ import annotations

from typing import Any, Mapping, Optional

import numpy as np

from ..densities import DecayCurve
from ..model import Model

# independent unit-scale normal priors; on positive parameters these are
# half-normal because the constraint already removes the negative half
UNIT_NORMAL_PRIORS = {
    "a": ("normal", 0.0, 1.0),
    "b": ("normal", 0.0, 1.0),
    "sigma": ("normal", 0.0, 1.0),
}


def decay_func(x, a, b):
    """Sum of declining exponentials: y = sum_k a[k] * exp(-b[k] * x)."""
    x_arr = np.asarray(x, dtype=float)
    a = np.atleast_1d(np.asarray(a, dtype=float))
    b = np.atleast_1d(np.asarray(b, dtype=float))
    return np.exp(-np.outer(x_arr, b)) @ a


def single_exponential(
    x: Any,
    y: Any,
    *,
    noise: str = "normal",
    positive: bool = True,
    priors: Optional[Mapping[str, Any]] = None,
    name: str = "single exponential",
) -> Model:
    """Return y = a * exp(-b * x) observed with additive or multiplicative error.

    Parameters in the model
    -----------------------
    a     : scale (> 0 when ``positive``)
    b     : rate (> 0 when ``positive``)
    sigma : noise scale (> 0); sd of y for noise="normal", of log(y) for "lognormal"
    """
    constraint = "positive" if positive else None
    m = (
        Model(name=name, data={"x": x, "y": y})
        .param("a", constraint=constraint)
        .param("b", constraint=constraint)
        .param("sigma", constraint="positive")
        .add(DecayCurve(x="x", y="y", amplitude="a", rate="b", sigma="sigma", noise=noise))
    )
    if priors:
        m = m.prior(**priors)
    return m


def two_exponentials(
    x: Any,
    y: Any,
    *,
    priors: bool = False,
    name: str = "two exponentials",
) -> Model:
    """Return y = a[0] exp(-b[0] x) + a[1] exp(-b[1] x) with lognormal error.

    The rates are declared ordered (0 < b[0] < b[1]) so the two components
    cannot swap labels. Without ``priors`` the only information on a and b is
    the likelihood, and for poorly separated rates the posterior is improper.

    Parameters in the model
    -----------------------
    a     : amplitudes, shape (2,), > 0
    b     : rates, shape (2,), ordered and > 0
    sigma : sd of log(y) (> 0)
    """
    m = (
        Model(name=name, data={"x": x, "y": y})
        .param("a", shape=(2,), constraint="positive")
        .param("b", shape=(2,), constraint="ordered_positive")
        .param("sigma", constraint="positive")
        .add(DecayCurve(x="x", y="y", amplitude="a", rate="b", sigma="sigma", noise="lognormal"))
    )
    if priors:
        m = m.prior(**UNIT_NORMAL_PRIORS)
    return m
