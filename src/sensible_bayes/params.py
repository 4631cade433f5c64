from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import uncertainties
from uncertainties import unumpy as unp

from .exceptions import ConfigurationError
from .transforms import Transform, get_transform, normalize_constraint
from .util import prod

__all__ = [
    "ParameterSpec",
    "ParamView",
    "ParamsView",
]


@dataclass(frozen=True)
class ParameterSpec:
    """A declared model parameter.

    The constraint is resolved to a transform once, at declaration, and is
    never changed afterwards.
    """

    name: str
    shape: Tuple[int, ...]
    constraint: Tuple[Any, ...]
    transform: Transform

    @staticmethod
    def declare(name: str, *, shape: Any = (), constraint: Any = None) -> "ParameterSpec":
        if not isinstance(name, str) or not name.isidentifier():
            raise ConfigurationError(f"Parameter name must be an identifier; got {name!r}.")
        if isinstance(shape, (int, np.integer)):
            shape = (int(shape),)
        try:
            shape = tuple(int(s) for s in shape)
        except TypeError as e:
            raise ConfigurationError(f"shape for {name!r} must be an int or tuple.") from e
        if any(s < 1 for s in shape):
            raise ConfigurationError(f"shape for {name!r} must be positive; got {shape}.")
        spec = normalize_constraint(constraint)
        transform = get_transform(spec)
        transform.check_shape(name, shape)
        return ParameterSpec(name=name, shape=shape, constraint=spec, transform=transform)

    @property
    def size(self) -> int:
        return prod(self.shape)

    @property
    def kind(self) -> str:
        return str(self.constraint[0])


@dataclass(frozen=True)
class ParamView:
    """Posterior summary of one parameter (or generated quantity).

    Every statistic has the parameter's shape; scalars are python floats.
    """

    name: str
    value: Any  # posterior mean
    stderr: Any = None  # posterior sd
    low: Any = None
    high: Any = None
    rhat: Any = None
    ess: Any = None
    drift: Any = None
    nonfinite: Any = False
    level: float = 0.95
    derived: bool = False
    rhat_threshold: float = 1.05
    drift_threshold: float = 2.0

    @property
    def interval(self) -> Tuple[Any, Any]:
        return (self.low, self.high)

    @property
    def sd(self) -> Any:
        return self.stderr

    @property
    def flags(self) -> Tuple[str, ...]:
        """Names of the diagnostics this parameter fails."""
        if self.derived:
            return ()
        out = []
        r = np.asarray(self.rhat, dtype=float)
        # nan R-hat means the chains disagree so badly it cannot be computed
        if np.any(~(r <= self.rhat_threshold)):
            out.append("rhat")
        if self.drift is not None:
            d = np.asarray(self.drift, dtype=float)
            if np.any(~(d <= self.drift_threshold)):
                out.append("drift")
        if np.any(np.asarray(self.nonfinite, dtype=bool)):
            out.append("nonfinite")
        return tuple(out)

    @property
    def flagged(self) -> bool:
        return bool(self.flags)

    @property
    def u(self):
        """Return an uncertainties ufloat/uarray of mean ± sd."""
        if self.stderr is None:
            raise ValueError(f"No sd available for parameter {self.name!r}.")
        e = np.asarray(self.stderr, dtype=float)
        if not np.all(np.isfinite(e)):
            raise ValueError(f"sd for {self.name!r} contains non-finite entries.")
        if e.shape == ():
            return uncertainties.ufloat(float(self.value), float(e))
        return unp.uarray(self.value, e)

    def contains(self, truth: Any) -> Any:
        """True where ``truth`` lies inside the credible interval."""
        t = np.asarray(truth, dtype=float)
        inside = (np.asarray(self.low) <= t) & (t <= np.asarray(self.high))
        if inside.shape == ():
            return bool(inside)
        return inside

    def __getitem__(self, key: str) -> Any:
        if key in ("value", "mean"):
            return self.value
        if key in ("stderr", "sd"):
            return self.stderr
        if key in ("low", "high", "rhat", "ess", "drift", "derived", "flags"):
            return getattr(self, key)
        raise KeyError(key)


class ParamsView(Mapping[str, ParamView]):
    """Mapping name -> ParamView, with index and multi-name access."""

    def __init__(self, items: Mapping[str, ParamView]):
        self._items = dict(items)
        self._names = tuple(self._items.keys())

    def __getitem__(self, key):  # type: ignore[override]
        if isinstance(key, str):
            return self._items[key]

        if isinstance(key, int):
            return self._items[self._names[key]]

        if isinstance(key, slice):
            return ParamsView({n: self._items[n] for n in self._names[key]})

        if (
            isinstance(key, (tuple, list))
            and key
            and all(isinstance(k, str) for k in key)
        ):
            return ParamsView({n: self._items[n] for n in key})

        raise KeyError(key)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def items(self):
        return self._items.items()

    def as_dict(self) -> Dict[str, Any]:
        """Return name->posterior mean."""
        return {k: v.value for k, v in self._items.items()}

    def names(self, *, derived: Optional[bool] = None) -> Sequence[str]:
        if derived is None:
            return self._names
        return tuple(n for n in self._names if self._items[n].derived == derived)
