from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Dict, Tuple

import numpy as np
from scipy.special import expit, log_expit, logit

from .exceptions import ConfigurationError

__all__ = [
    "Transform",
    "Identity",
    "Positive",
    "OrderedPositive",
    "Interval",
    "normalize_constraint",
    "get_transform",
    "AVAILABLE_CONSTRAINTS",
]


# ----------------- Coordinate mappings -----------------
# The sampler works on an unconstrained real vector ``u``. Each declared
# parameter owns a contiguous segment of ``u`` and maps it to its constrained
# value ``v`` through one of the transforms below. ``forward`` also returns the
# log absolute Jacobian determinant of u -> v so that the density sampled in u
# reproduces the intended density in v.


class Transform:
    """Base transform: identity map."""

    kind = "unconstrained"

    def forward(self, u: np.ndarray) -> Tuple[np.ndarray, float]:
        return u, 0.0

    def inverse(self, v: np.ndarray) -> np.ndarray:
        return np.asarray(v, dtype=float)

    def grad(self, u: np.ndarray, v: np.ndarray, grad_v: np.ndarray) -> np.ndarray:
        """Map d(lp)/dv to d(lp)/du, including the log-Jacobian gradient."""
        return grad_v

    def check_shape(self, name: str, shape: Tuple[int, ...]) -> None:
        return None

    def spec(self) -> Tuple[Any, ...]:
        return (self.kind,)


@dataclass(frozen=True)
class Identity(Transform):
    kind = "unconstrained"


@dataclass(frozen=True)
class Positive(Transform):
    """v = exp(u); log|J| = u."""

    kind = "positive"

    def forward(self, u):
        return np.exp(u), float(np.sum(u))

    def inverse(self, v):
        v = np.asarray(v, dtype=float)
        if np.any(~(v > 0.0)):
            raise ValueError("positive parameter requires values > 0.")
        return np.log(v)

    def grad(self, u, v, grad_v):
        return grad_v * v + 1.0


@dataclass(frozen=True)
class OrderedPositive(Transform):
    """Strictly ascending positive vector.

    v[0] = exp(u[0]); v[i] = v[i-1] + exp(u[i]); log|J| = sum(u).
    """

    kind = "ordered_positive"

    def forward(self, u):
        return np.cumsum(np.exp(u)), float(np.sum(u))

    def inverse(self, v):
        v = np.asarray(v, dtype=float)
        if v.ndim != 1:
            raise ValueError("ordered_positive parameter requires a 1-D value.")
        steps = np.diff(v, prepend=0.0)
        if np.any(~(steps > 0.0)):
            raise ValueError(
                "ordered_positive parameter requires 0 < v[0] < v[1] < ... ."
            )
        return np.log(steps)

    def grad(self, u, v, grad_v):
        # dv_i/du_j = exp(u_j) for j <= i, so the chain rule needs the reverse
        # cumulative sum of grad_v.
        tail = np.cumsum(grad_v[::-1])[::-1]
        return np.exp(u) * tail + 1.0

    def check_shape(self, name, shape):
        if len(shape) != 1 or shape[0] < 1:
            raise ConfigurationError(
                f"ordered_positive parameter {name!r} must be a vector; got shape {shape}."
            )


@dataclass(frozen=True)
class Interval(Transform):
    """v = lo + (hi - lo) * logistic(u)."""

    lo: float
    hi: float
    kind = "interval"

    def forward(self, u):
        width = self.hi - self.lo
        v = self.lo + width * expit(u)
        log_jac = np.sum(math.log(width) + log_expit(u) + log_expit(-u))
        return v, float(log_jac)

    def inverse(self, v):
        v = np.asarray(v, dtype=float)
        if np.any(~((v > self.lo) & (v < self.hi))):
            raise ValueError(
                f"interval parameter requires {self.lo} < value < {self.hi}."
            )
        return logit((v - self.lo) / (self.hi - self.lo))

    def grad(self, u, v, grad_v):
        s = expit(u)
        return grad_v * (self.hi - self.lo) * s * (1.0 - s) + (1.0 - 2.0 * s)

    def spec(self):
        return (self.kind, self.lo, self.hi)


_SIMPLE: Dict[str, Transform] = {
    "unconstrained": Identity(),
    "positive": Positive(),
    "ordered_positive": OrderedPositive(),
}

_ALIASES = {
    "real": "unconstrained",
    "identity": "unconstrained",
    "none": "unconstrained",
    "ordered": "ordered_positive",
    "positive_ordered": "ordered_positive",
    "bounded": "interval",
}

AVAILABLE_CONSTRAINTS = ("unconstrained", "positive", "ordered_positive", "interval")


def normalize_constraint(constraint: Any) -> Tuple[Any, ...]:
    """Normalize a constraint spec to a tuple like ``("interval", 0.0, 5.0)``.

    Accepted forms: ``None``, ``"positive"``, ``("positive",)``,
    ``("interval", lo, hi)``.
    """
    if constraint is None:
        return ("unconstrained",)
    if isinstance(constraint, str):
        constraint = (constraint,)
    if not isinstance(constraint, tuple) or not constraint:
        raise ConfigurationError(
            f"constraint must be a string or a tuple like ('interval', lo, hi); got {constraint!r}."
        )
    kind = str(constraint[0]).lower()
    kind = _ALIASES.get(kind, kind)
    args = tuple(constraint[1:])

    if kind in _SIMPLE:
        if args:
            raise ConfigurationError(f"constraint {kind!r} takes no arguments; got {args!r}.")
        return (kind,)
    if kind == "interval":
        if len(args) != 2:
            raise ConfigurationError("interval constraint expects ('interval', lo, hi).")
        try:
            lo, hi = float(args[0]), float(args[1])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"interval bounds must be numbers; got {args!r}.") from e
        if not (math.isfinite(lo) and math.isfinite(hi) and lo < hi):
            raise ConfigurationError(
                f"interval constraint requires finite lo < hi; got ({lo}, {hi})."
            )
        return ("interval", lo, hi)
    raise ConfigurationError(
        f"Unknown constraint kind {constraint[0]!r}. Available: {AVAILABLE_CONSTRAINTS}"
    )


def get_transform(constraint: Any) -> Transform:
    """Return the transform implementing a constraint spec."""
    spec = normalize_constraint(constraint)
    if spec[0] == "interval":
        return Interval(lo=spec[1], hi=spec[2])
    return _SIMPLE[spec[0]]
