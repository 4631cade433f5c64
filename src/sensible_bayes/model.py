from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
)

import numpy as np

from .data import FrozenData, bind_data
from .densities import GeneratedSpec, Prior, Term
from .exceptions import ConfigurationError
from .params import ParameterSpec

Generator = Callable[[Mapping[str, Any], Mapping[str, np.ndarray], np.random.Generator], Any]


@dataclass
class Model:
    """A model: ordered parameter declarations, bound data and log-density terms.

    Builders are pure and return a new Model, so one base model can be shared
    between analyses (e.g. with and without priors).
    """

    name: str
    params: Tuple[ParameterSpec, ...] = ()
    data: Any = field(default_factory=FrozenData)
    terms: Tuple[Term, ...] = ()
    generated: Tuple[GeneratedSpec, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.data, FrozenData):
            self.data = bind_data(self.data)

    # ---- builders (pure; return new model) ----
    def param(self, name: str, *, shape: Any = (), constraint: Any = None) -> "Model":
        """Declare a parameter; ``constraint`` is fixed from here on."""
        if name in self.param_names or name in self.generated_names:
            raise ConfigurationError(f"Duplicate parameter name {name!r}.")
        spec = ParameterSpec.declare(name, shape=shape, constraint=constraint)
        return replace(self, params=self.params + (spec,))

    def bind(self, **data: Any) -> "Model":
        """Return a new Model with data (re)bound; all terms are re-validated."""
        new = replace(self, data=bind_data(data, base=self.data))
        for term in new.terms:
            term.validate(new.param_map, new.data)
        return new

    def add(self, *terms: Term) -> "Model":
        """Append log-density terms (priors, hierarchy, likelihoods)."""
        for term in terms:
            if not isinstance(term, Term):
                raise ConfigurationError(f"Expected a Term; got {type(term).__name__}.")
            term.validate(self.param_map, self.data)
        return replace(self, terms=self.terms + tuple(terms))

    def prior(self, **priors: Any) -> "Model":
        """Return a new Model with priors set, e.g. ``.prior(a=("normal", 0, 1))``.

        A prior replaces any earlier prior on the same parameter.
        """
        new_terms = []
        for k, p in priors.items():
            if k not in self.param_map:
                raise ConfigurationError(f"Prior given for undeclared parameter {k!r}.")
            term = Prior.from_spec(k, p)
            term.validate(self.param_map, self.data)
            new_terms.append(term)
        keep = tuple(
            t for t in self.terms if not (isinstance(t, Prior) and t.param in priors)
        )
        return replace(self, terms=keep + tuple(new_terms))

    def priors(self) -> Dict[str, Tuple[Any, ...]]:
        """name -> (kind, *args) for every explicit prior."""
        return {
            t.param: (t.kind,) + tuple(t.args) for t in self.terms if isinstance(t, Prior)
        }

    def generate(self, name: str, func: Generator, *, doc: str = "") -> "Model":
        """Return a new Model computing ``func(values, data, rng)`` for every retained draw."""
        if name in self.param_names or name in self.generated_names:
            raise ConfigurationError(
                f"Generated quantity {name!r} conflicts with an existing name."
            )
        if not callable(func):
            raise ConfigurationError(f"Generated quantity {name!r} needs a callable.")
        return replace(
            self, generated=self.generated + (GeneratedSpec(name=name, func=func, doc=doc),)
        )

    # ---- layout ----
    @property
    def param_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.params)

    @property
    def generated_names(self) -> Tuple[str, ...]:
        return tuple(g.name for g in self.generated)

    @property
    def param_map(self) -> Dict[str, ParameterSpec]:
        return {p.name: p for p in self.params}

    @property
    def dim(self) -> int:
        """Length of the unconstrained vector."""
        return sum(p.size for p in self.params)

    def layout(self) -> List[Tuple[ParameterSpec, slice]]:
        """(parameter, slice of the unconstrained vector) in declaration order."""
        out = []
        start = 0
        for p in self.params:
            out.append((p, slice(start, start + p.size)))
            start += p.size
        return out

    def check(self) -> "Model":
        """Validate the whole model; raises ConfigurationError before sampling."""
        if not self.params:
            raise ConfigurationError(f"Model {self.name!r} declares no parameters.")
        if not self.terms:
            raise ConfigurationError(f"Model {self.name!r} has no log-density terms.")
        for term in self.terms:
            term.validate(self.param_map, self.data)
        return self

    # ---- transforms ----
    def _as_position(self, u: Any) -> np.ndarray:
        u = np.asarray(u, dtype=float)
        if u.shape != (self.dim,):
            raise ValueError(f"Expected an unconstrained vector of shape ({self.dim},); got {u.shape}.")
        return u

    def _constrain(self, u: np.ndarray) -> Tuple[Dict[str, np.ndarray], float]:
        values: Dict[str, np.ndarray] = {}
        log_jac = 0.0
        for spec, seg in self.layout():
            v, lj = spec.transform.forward(u[seg].reshape(spec.shape))
            values[spec.name] = v
            log_jac += lj
        return values, log_jac

    def constrain(self, u: Any) -> Dict[str, Any]:
        """Map an unconstrained vector to name -> constrained value."""
        values, _ = self._constrain(self._as_position(u))
        return {k: (v.item() if np.ndim(v) == 0 else np.asarray(v)) for k, v in values.items()}

    def unconstrain(self, values: Mapping[str, Any], *, fill: Optional[np.ndarray] = None) -> np.ndarray:
        """Inverse of ``constrain``; raises ValueError for values outside a constraint.

        With ``fill`` (an unconstrained vector), parameters absent from
        ``values`` keep their segment of ``fill``.
        """
        unknown = [k for k in values if k not in self.param_map]
        if unknown:
            raise ValueError(f"Unknown parameter(s): {unknown}")
        if fill is None:
            missing = [n for n in self.param_names if n not in values]
            if missing:
                raise ValueError(f"Missing parameter values for: {missing}")
            u = np.empty((self.dim,), dtype=float)
        else:
            u = self._as_position(fill).copy()
        for spec, seg in self.layout():
            if spec.name not in values:
                continue
            v = np.asarray(values[spec.name], dtype=float)
            if v.shape != spec.shape:
                raise ValueError(
                    f"Value for {spec.name!r} has shape {v.shape}; expected {spec.shape}."
                )
            try:
                u[seg] = np.reshape(spec.transform.inverse(v), (-1,))
            except ValueError as e:
                raise ValueError(f"{spec.name}: {e}") from e
        return u

    # ---- evaluation ----
    def log_density(self, u: Any, *, jacobian: bool = True) -> float:
        """Unnormalized log posterior density at an unconstrained position."""
        values, log_jac = self._constrain(self._as_position(u))
        lp = log_jac if jacobian else 0.0
        for term in self.terms:
            lp += term.log_density(values, self.data)
        return float(lp)

    def log_density_gradient(self, u: Any, *, jacobian: bool = True) -> Tuple[float, np.ndarray]:
        """Log density and its exact gradient with respect to ``u``.

        Terms supply d(lp)/d(value); each parameter's transform maps that back
        to its unconstrained segment and adds the log-Jacobian gradient.
        """
        u = self._as_position(u)
        values, log_jac = self._constrain(u)
        lp = log_jac if jacobian else 0.0
        grad_values: Dict[str, np.ndarray] = {
            p.name: np.zeros(p.shape, dtype=float) for p in self.params
        }
        for term in self.terms:
            term_lp, term_grads = term.value_and_grad(values, self.data)
            lp += term_lp
            for name, g in term_grads.items():
                grad_values[name] = grad_values[name] + g

        grad = np.empty_like(u)
        for spec, seg in self.layout():
            u_seg = u[seg].reshape(spec.shape)
            g = spec.transform.grad(u_seg, values[spec.name], grad_values[spec.name])
            if not jacobian:
                g = g - (spec.transform.grad(u_seg, values[spec.name], np.zeros(spec.shape)))
            grad[seg] = np.reshape(g, (-1,))
        return float(lp), grad

    def generate_quantities(
        self, values: Mapping[str, Any], rng: np.random.Generator
    ) -> Dict[str, Any]:
        """Evaluate every generated quantity for one set of constrained values."""
        out: Dict[str, Any] = {}
        for g in self.generated:
            value = np.asarray(g.func(values, self.data, rng))
            # integer quantities (counts) keep their dtype
            out[g.name] = value if value.dtype.kind in "iu" else value.astype(float)
        return out

    # ---- sampling ----
    def sample(self, *, config: Optional[Any] = None, cancel: Optional[Any] = None, **kwargs: Any):
        """Draw posterior samples and return a Run.

        Keyword arguments are SamplerConfig fields (chains, warmup, samples,
        target_accept, max_tree_depth, algorithm, init, seed, parallel, ...).
        """
        from .sampler import sample

        return sample(self, config=config, cancel=cancel, **kwargs)

    def __repr__(self) -> str:
        params = ", ".join(f"{p.name}{list(p.shape) if p.shape else ''}:{p.kind}" for p in self.params)
        return f"Model(name={self.name!r}, params=[{params}], terms={len(self.terms)})"
