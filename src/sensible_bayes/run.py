from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

__all__ = ["Draw", "Chain", "Run"]

SAMPLER_STATS = ("log_density", "accept_stat", "step_size", "tree_depth", "n_leapfrog", "divergent", "energy")


@dataclass(frozen=True)
class Draw:
    """One iteration of one chain."""

    values: Dict[str, Any]  # constrained, by parameter name
    position: np.ndarray  # unconstrained vector
    generated: Dict[str, Any]
    log_density: float
    accept_stat: float
    step_size: float
    tree_depth: int
    n_leapfrog: int
    divergent: bool
    energy: float
    warmup: bool = False

    def __getitem__(self, name: str) -> Any:
        if name in self.values:
            return self.values[name]
        return self.generated[name]


@dataclass(frozen=True)
class Chain:
    chain_id: int
    draws: Tuple[Draw, ...]
    warmup_draws: Tuple[Draw, ...] = ()
    step_size: float = float("nan")
    inv_metric: Optional[np.ndarray] = None
    seed: Tuple[int, ...] = ()
    completed: bool = True
    stats: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.draws)

    @property
    def divergences(self) -> int:
        return int(sum(d.divergent for d in self.draws))

    def array(self, name: str, *, warmup: bool = False) -> np.ndarray:
        """Stack one quantity over this chain's draws: shape (n, *shape)."""
        draws = self.warmup_draws if warmup else self.draws
        if name in SAMPLER_STATS:
            return np.asarray([getattr(d, name) for d in draws])
        return np.asarray([np.asarray(d[name]) for d in draws])

    def positions(self) -> np.ndarray:
        if not self.draws:
            return np.empty((0, 0))
        return np.stack([d.position for d in self.draws])


@dataclass(frozen=True)
class Run:
    """Outcome of one sampling request.

    Chains cut short by cancellation may be shorter than ``config.samples``;
    array accessors stack the non-empty chains truncated to the shortest one.
    """

    model: Any
    config: Any
    chains: Tuple[Chain, ...]
    cancelled: bool = False

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self.model.param_names) + tuple(self.model.generated_names)

    def _usable(self) -> Tuple[Tuple[Chain, ...], int]:
        chains = tuple(c for c in self.chains if len(c) > 0)
        if not chains:
            return (), 0
        return chains, min(len(c) for c in chains)

    @property
    def n_samples(self) -> int:
        return self._usable()[1]

    def draws(self, name: str) -> np.ndarray:
        """Array of shape (chains, samples, *shape) for a parameter or generated quantity."""
        if name not in self.names and name not in SAMPLER_STATS:
            raise KeyError(name)
        chains, n = self._usable()
        if not chains:
            if name in self.model.param_map:
                shape = self.model.param_map[name].shape
                return np.empty((0, 0) + shape)
            return np.empty((0, 0))
        return np.stack([c.array(name)[:n] for c in chains])

    def positions(self) -> np.ndarray:
        """Unconstrained draws, shape (chains, samples, dim)."""
        chains, n = self._usable()
        if not chains:
            return np.empty((0, 0, self.model.dim))
        return np.stack([c.positions()[:n] for c in chains])

    @property
    def divergences(self) -> int:
        return int(sum(c.divergences for c in self.chains))

    @property
    def step_sizes(self) -> Tuple[float, ...]:
        return tuple(c.step_size for c in self.chains)

    def summary(self, **kwargs: Any):
        """Summarise across chains; keyword arguments go to ``summarize``."""
        from .summary import summarize

        return summarize(self, **kwargs)

    def __repr__(self) -> str:
        lens = [len(c) for c in self.chains]
        return (
            f"Run(model={self.model.name!r}, chains={len(self.chains)}, draws={lens}, "
            f"divergences={self.divergences}, cancelled={self.cancelled})"
        )
