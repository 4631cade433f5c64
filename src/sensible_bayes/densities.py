from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Dict, Mapping, Tuple

import numpy as np
from scipy.special import gammaln

from .data import missing_mask
from .exceptions import ConfigurationError
from .params import ParameterSpec

__all__ = [
    "Term",
    "Prior",
    "NormalHierarchy",
    "DecayCurve",
    "PoissonLogLinear",
    "MissingCellPrediction",
    "GeneratedSpec",
    "PRIOR_KINDS",
]

_LOG_2PI = math.log(2.0 * math.pi)

Values = Mapping[str, np.ndarray]
Data = Mapping[str, np.ndarray]
Grads = Dict[str, np.ndarray]


class Term:
    """A composable log-density contribution evaluated on constrained values.

    Subclasses implement ``value_and_grad`` returning the log-density and its
    gradient with respect to each referenced parameter's constrained value.
    """

    def param_names(self) -> Tuple[str, ...]:
        raise NotImplementedError

    def validate(self, params: Mapping[str, ParameterSpec], data: Data) -> None:
        for name in self.param_names():
            if name not in params:
                raise ConfigurationError(
                    f"{type(self).__name__} references undeclared parameter {name!r}."
                )

    def value_and_grad(self, values: Values, data: Data) -> Tuple[float, Grads]:
        raise NotImplementedError

    def log_density(self, values: Values, data: Data) -> float:
        return self.value_and_grad(values, data)[0]


def _require_data(data: Data, key: str, owner: str) -> np.ndarray:
    if key not in data:
        raise ConfigurationError(f"{owner} needs data {key!r}, which is not bound.")
    return np.asarray(data[key])


def _require_scalar(params: Mapping[str, ParameterSpec], name: str, owner: str) -> None:
    if params[name].shape != ():
        raise ConfigurationError(f"{owner}: parameter {name!r} must be a scalar.")


def _positive_support(spec: ParameterSpec) -> bool:
    if spec.kind in ("positive", "ordered_positive"):
        return True
    return spec.kind == "interval" and float(spec.constraint[1]) >= 0.0


# ----------------- Priors -----------------
PRIOR_KINDS = ("normal", "cauchy", "exponential", "lognormal", "uniform", "flat")


@dataclass(frozen=True)
class Prior(Term):
    """Independent prior on every element of one parameter.

    ``uniform``/``flat`` contribute exactly zero: the constrained range is
    already the support, so these priors add no information.
    """

    param: str
    kind: str
    args: Tuple[float, ...] = ()

    @staticmethod
    def from_spec(param: str, spec: Any) -> "Prior":
        if isinstance(spec, str):
            spec = (spec,)
        if not isinstance(spec, tuple) or len(spec) < 1:
            raise ConfigurationError("prior must be like ('normal', 0, 1) etc.")
        kind = str(spec[0]).lower()
        try:
            args = tuple(float(a) for a in spec[1:])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"prior arguments for {param!r} must be numbers.") from e
        return Prior(param=param, kind=kind, args=args)

    def param_names(self):
        return (self.param,)

    def validate(self, params, data):
        super().validate(params, data)
        spec = params[self.param]
        kind, args = self.kind, self.args
        if kind not in PRIOR_KINDS:
            raise ConfigurationError(
                f"Unsupported prior kind {kind!r} for {self.param!r}. Available: {PRIOR_KINDS}"
            )
        if kind in ("normal", "cauchy", "lognormal"):
            if len(args) != 2 or not args[1] > 0:
                raise ConfigurationError(
                    f"{kind} prior for {self.param!r} expects ({kind!r}, location, scale>0)."
                )
        elif kind == "exponential":
            if len(args) != 1 or not args[0] > 0:
                raise ConfigurationError(
                    f"exponential prior for {self.param!r} expects ('exponential', rate>0)."
                )
        elif kind == "uniform" and args:
            if len(args) != 2 or spec.constraint != ("interval", args[0], args[1]):
                raise ConfigurationError(
                    f"uniform prior for {self.param!r} must match its interval constraint; "
                    f"declare constraint=('interval', lo, hi) instead."
                )
        if kind in ("exponential", "lognormal") and not _positive_support(spec):
            raise ConfigurationError(
                f"{kind} prior for {self.param!r} needs a positive constraint."
            )

    def value_and_grad(self, values, data):
        v = np.asarray(values[self.param], dtype=float)
        kind, args = self.kind, self.args
        if kind in ("uniform", "flat"):
            return 0.0, {self.param: np.zeros_like(v)}
        if kind == "normal":
            mu, sigma = args
            z = (v - mu) / sigma
            lp = np.sum(-0.5 * z * z) - v.size * (math.log(sigma) + 0.5 * _LOG_2PI)
            return float(lp), {self.param: -z / sigma}
        if kind == "cauchy":
            loc, scale = args
            z = (v - loc) / scale
            lp = -np.sum(np.log1p(z * z)) - v.size * math.log(math.pi * scale)
            return float(lp), {self.param: -2.0 * z / (scale * (1.0 + z * z))}
        if kind == "exponential":
            (rate,) = args
            lp = v.size * math.log(rate) - rate * np.sum(v)
            return float(lp), {self.param: np.full_like(v, -rate)}
        # lognormal
        mu, sigma = args
        logv = np.log(v)
        z = (logv - mu) / sigma
        lp = np.sum(-0.5 * z * z - logv) - v.size * (math.log(sigma) + 0.5 * _LOG_2PI)
        return float(lp), {self.param: -(1.0 + z / sigma) / v}


# ----------------- Hierarchical terms -----------------
@dataclass(frozen=True)
class NormalHierarchy(Term):
    """Random effects: every element of ``param`` ~ Normal(loc, scale)."""

    param: str
    scale: str
    loc: float = 0.0

    def param_names(self):
        return (self.param, self.scale)

    def validate(self, params, data):
        super().validate(params, data)
        _require_scalar(params, self.scale, "NormalHierarchy")
        if not _positive_support(params[self.scale]):
            raise ConfigurationError(
                f"NormalHierarchy scale {self.scale!r} needs a positive constraint."
            )

    def value_and_grad(self, values, data):
        e = np.asarray(values[self.param], dtype=float)
        s = np.float64(values[self.scale])
        d = e - self.loc
        ss = float(np.sum(d * d))
        n = e.size
        lp = -0.5 * ss / (s * s) - n * np.log(s) - 0.5 * n * _LOG_2PI
        return lp, {
            self.param: -d / (s * s),
            self.scale: np.asarray(ss / s ** 3 - n / s),
        }


# ----------------- Likelihoods -----------------
@dataclass(frozen=True)
class DecayCurve(Term):
    """Sum of declining exponentials observed with noise.

    mean(x) = sum_k amplitude[k] * exp(-rate[k] * x)

    noise="normal":    y ~ Normal(mean, sigma)
    noise="lognormal": log(y) ~ Normal(log(mean), sigma)   (multiplicative error)
    """

    x: str
    y: str
    amplitude: str
    rate: str
    sigma: str
    noise: str = "lognormal"

    def param_names(self):
        return (self.amplitude, self.rate, self.sigma)

    def validate(self, params, data):
        super().validate(params, data)
        owner = "DecayCurve"
        if self.noise not in ("normal", "lognormal"):
            raise ConfigurationError(
                f"{owner}: noise must be 'normal' or 'lognormal'; got {self.noise!r}."
            )
        x = _require_data(data, self.x, owner)
        y = _require_data(data, self.y, owner)
        if x.ndim != 1 or y.ndim != 1:
            raise ConfigurationError(f"{owner}: {self.x!r} and {self.y!r} must be 1-D.")
        if x.shape != y.shape:
            raise ConfigurationError(
                f"{owner}: {self.x!r} has length {x.shape[0]} but {self.y!r} has length {y.shape[0]}."
            )
        if x.size == 0:
            raise ConfigurationError(f"{owner}: no observations.")
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            raise ConfigurationError(f"{owner}: data must be finite.")
        if self.noise == "lognormal" and np.any(y <= 0.0):
            raise ConfigurationError(f"{owner}: lognormal noise requires {self.y!r} > 0.")
        a_shape = params[self.amplitude].shape
        b_shape = params[self.rate].shape
        if a_shape != b_shape or len(a_shape) > 1:
            raise ConfigurationError(
                f"{owner}: amplitude and rate must both be scalars or equal-length vectors; "
                f"got shapes {a_shape} and {b_shape}."
            )
        _require_scalar(params, self.sigma, owner)

    def mean(self, values: Values, data: Data) -> np.ndarray:
        x = np.asarray(data[self.x], dtype=float)
        a = np.atleast_1d(np.asarray(values[self.amplitude], dtype=float))
        b = np.atleast_1d(np.asarray(values[self.rate], dtype=float))
        return np.exp(-np.outer(x, b)) @ a

    def value_and_grad(self, values, data):
        x = np.asarray(data[self.x], dtype=float)
        y = np.asarray(data[self.y], dtype=float)
        a_raw = np.asarray(values[self.amplitude], dtype=float)
        a = np.atleast_1d(a_raw)
        b = np.atleast_1d(np.asarray(values[self.rate], dtype=float))
        sigma = np.float64(values[self.sigma])
        n = y.size

        E = np.exp(-np.outer(x, b))  # (n, k)
        mu = E @ a
        if self.noise == "normal":
            r = (y - mu) / sigma
            dmu = r / sigma
            lp = -0.5 * float(np.sum(r * r)) - n * (np.log(sigma) + 0.5 * _LOG_2PI)
        else:
            if np.any(~(mu > 0.0)):
                zero = {name: np.zeros(np.shape(values[name])) for name in self.param_names()}
                return -np.inf, zero
            logy = np.log(y)
            r = (logy - np.log(mu)) / sigma
            dmu = r / (sigma * mu)
            lp = (
                -0.5 * float(np.sum(r * r))
                - n * (np.log(sigma) + 0.5 * _LOG_2PI)
                - float(np.sum(logy))
            )

        grad_a = E.T @ dmu
        grad_b = -a * ((x[:, None] * E).T @ dmu)
        grad_sigma = float(np.sum(r * r)) / sigma - n / sigma
        return lp, {
            self.amplitude: grad_a.reshape(a_raw.shape),
            self.rate: grad_b.reshape(a_raw.shape),
            self.sigma: np.asarray(grad_sigma),
        }


@dataclass(frozen=True)
class PoissonLogLinear(Term):
    """Poisson counts with a log-linear rate.

    log_rate[i] = intercept + sum_j slope_j * covariate_j[i] + sum_g effect_g[index_g[i]]

    Cells whose count is NaN are missing: they do not enter the likelihood and
    are available for posterior-predictive imputation.
    """

    counts: str
    intercept: str
    slopes: Tuple[Tuple[str, str], ...] = ()  # (parameter, covariate data key)
    effects: Tuple[Tuple[str, str], ...] = ()  # (parameter, index data key)

    def param_names(self):
        return (
            (self.intercept,)
            + tuple(p for p, _ in self.slopes)
            + tuple(p for p, _ in self.effects)
        )

    def validate(self, params, data):
        super().validate(params, data)
        owner = "PoissonLogLinear"
        counts = np.asarray(_require_data(data, self.counts, owner), dtype=float)
        if counts.ndim != 1 or counts.size == 0:
            raise ConfigurationError(f"{owner}: {self.counts!r} must be a non-empty 1-D array.")
        observed = counts[~np.isnan(counts)]
        if np.any(observed < 0) or np.any(observed != np.round(observed)) or np.any(
            np.isinf(observed)
        ):
            raise ConfigurationError(
                f"{owner}: observed counts must be nonnegative integers (NaN marks missing)."
            )
        _require_scalar(params, self.intercept, owner)
        for p, key in self.slopes:
            _require_scalar(params, p, owner)
            cov = np.asarray(_require_data(data, key, owner), dtype=float)
            if cov.shape != counts.shape:
                raise ConfigurationError(
                    f"{owner}: covariate {key!r} has shape {cov.shape}, expected {counts.shape}."
                )
            if not np.all(np.isfinite(cov)):
                raise ConfigurationError(f"{owner}: covariate {key!r} must be finite.")
        for p, key in self.effects:
            shape = params[p].shape
            if len(shape) != 1:
                raise ConfigurationError(f"{owner}: effect {p!r} must be a vector.")
            idx = _require_data(data, key, owner)
            if idx.shape != counts.shape:
                raise ConfigurationError(
                    f"{owner}: index {key!r} has shape {idx.shape}, expected {counts.shape}."
                )
            if not np.issubdtype(idx.dtype, np.integer):
                raise ConfigurationError(f"{owner}: index {key!r} must be integer.")
            if np.any(idx < 0) or np.any(idx >= shape[0]):
                raise ConfigurationError(
                    f"{owner}: index {key!r} must lie in [0, {shape[0]})."
                )

    def log_rate(self, values: Values, data: Data) -> np.ndarray:
        """Linear predictor for every cell, observed or missing."""
        counts = np.asarray(data[self.counts])
        eta = np.full(counts.shape, float(values[self.intercept]))
        for p, key in self.slopes:
            eta = eta + float(values[p]) * np.asarray(data[key], dtype=float)
        for p, key in self.effects:
            eta = eta + np.asarray(values[p], dtype=float)[np.asarray(data[key])]
        return eta

    def missing(self, data: Data) -> np.ndarray:
        return missing_mask(data[self.counts])

    def value_and_grad(self, values, data):
        counts = np.asarray(data[self.counts], dtype=float)
        obs = ~missing_mask(counts)
        c = counts[obs]
        eta = self.log_rate(values, data)[obs]
        lam = np.exp(eta)
        lp = float(np.sum(c * eta - lam - gammaln(c + 1.0)))
        resid = c - lam

        grads: Grads = {self.intercept: np.asarray(float(np.sum(resid)))}
        for p, key in self.slopes:
            cov = np.asarray(data[key], dtype=float)[obs]
            grads[p] = np.asarray(float(np.sum(resid * cov)))
        for p, key in self.effects:
            idx = np.asarray(data[key])[obs]
            size = np.shape(values[p])[0]
            g = np.bincount(idx, weights=resid, minlength=size)
            # the same vector may index several groupings
            grads[p] = grads[p] + g if p in grads else g
        return lp, grads


# ----------------- Generated quantities -----------------
@dataclass(frozen=True)
class GeneratedSpec:
    """Quantity computed per retained draw: func(values, data, rng) -> array."""

    name: str
    func: Any
    doc: str = ""


@dataclass(frozen=True)
class MissingCellPrediction:
    """Posterior-predictive Poisson draws for every missing cell of a count term.

    Counts come back as an integer array. A rate too large to draw from
    (overflowed, or beyond 1e15) gives NaN for that cell instead of aborting
    the chain, and the whole draw is then a float array.
    """

    term: PoissonLogLinear

    def __call__(self, values: Values, data: Data, rng: np.random.Generator) -> np.ndarray:
        miss = self.term.missing(data)
        eta = self.term.log_rate(values, data)[miss]
        with np.errstate(over="ignore", invalid="ignore"):
            lam = np.exp(eta)
        ok = np.isfinite(lam) & (lam < 1e15)
        if np.all(ok):
            return rng.poisson(lam)
        out = np.full(lam.shape, np.nan)
        out[ok] = rng.poisson(lam[ok])
        return out
