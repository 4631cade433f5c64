from __future__ import annotations

from dataclasses import dataclass, fields, replace
import os
from typing import Any, Mapping, Optional, Sequence, Union

from .exceptions import ConfigurationError

__all__ = ["SamplerConfig", "resolve_config"]


@dataclass(frozen=True)
class SamplerConfig:
    """Sampling request.

    ``init`` is either one mapping name -> constrained value used by every
    chain, or a sequence with one mapping per chain. Parameters it leaves out
    are drawn uniformly from (-init_radius, init_radius) in unconstrained space.

    ``parallel``: "auto" (the default) runs chains in one worker process per
    CPU, capped at ``chains``; an int sets the worker count. None or 1 runs
    them in this process one after another.
    """

    chains: int = 4
    warmup: int = 1000
    samples: int = 1000
    target_accept: float = 0.8
    max_tree_depth: int = 10
    algorithm: str = "nuts"
    init: Optional[Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]] = None
    init_radius: float = 2.0
    seed: Optional[int] = None
    parallel: Optional[Union[int, str]] = "auto"
    max_energy_error: float = 1000.0
    save_warmup: bool = False
    integration_time: float = 1.0
    step_size: Optional[float] = None

    def __post_init__(self) -> None:
        def _int(name: str, minimum: int) -> None:
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int) or v < minimum:
                raise ConfigurationError(f"{name} must be an integer >= {minimum}; got {v!r}.")

        _int("chains", 1)
        _int("warmup", 0)
        _int("samples", 1)
        _int("max_tree_depth", 1)

        if not (0.0 < float(self.target_accept) < 1.0):
            raise ConfigurationError(
                f"target_accept must lie in (0, 1); got {self.target_accept!r}."
            )
        if not float(self.init_radius) > 0.0:
            raise ConfigurationError(f"init_radius must be > 0; got {self.init_radius!r}.")
        if not float(self.max_energy_error) > 0.0:
            raise ConfigurationError(
                f"max_energy_error must be > 0; got {self.max_energy_error!r}."
            )
        if not float(self.integration_time) > 0.0:
            raise ConfigurationError(
                f"integration_time must be > 0; got {self.integration_time!r}."
            )
        if self.step_size is not None and not float(self.step_size) > 0.0:
            raise ConfigurationError(f"step_size must be > 0; got {self.step_size!r}.")
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ConfigurationError(f"seed must be an int or None; got {self.seed!r}.")

        from .kernels import AVAILABLE_KERNELS

        if self.algorithm not in AVAILABLE_KERNELS:
            raise ConfigurationError(
                f"Unknown algorithm {self.algorithm!r}. Available: {AVAILABLE_KERNELS}"
            )

        p = self.parallel
        if p is not None and p != "auto":
            if isinstance(p, bool) or not isinstance(p, int) or p < 1:
                raise ConfigurationError(
                    f"parallel must be None, 'auto' or a positive int; got {p!r}."
                )

        init = self.init
        if init is not None and not isinstance(init, Mapping):
            if not isinstance(init, (list, tuple)) or not all(
                isinstance(i, Mapping) for i in init
            ):
                raise ConfigurationError(
                    "init must be a mapping or a sequence of mappings (one per chain)."
                )
            if len(init) != self.chains:
                raise ConfigurationError(
                    f"init has {len(init)} entries but chains={self.chains}."
                )

    def init_for_chain(self, chain: int) -> Mapping[str, Any]:
        if self.init is None:
            return {}
        if isinstance(self.init, Mapping):
            return self.init
        return self.init[chain]

    def n_workers(self) -> int:
        """Number of worker processes; 0 means run in this process."""
        if self.parallel is None:
            return 0
        if self.parallel == "auto":
            n = os.cpu_count() or 1
        else:
            n = int(self.parallel)
        n = min(n, self.chains)
        return n if n > 1 else 0

    @property
    def total_iterations(self) -> int:
        return self.warmup + self.samples


_FIELDS = frozenset(f.name for f in fields(SamplerConfig))


def resolve_config(config: Optional[SamplerConfig] = None, **kwargs: Any) -> SamplerConfig:
    """Merge keyword overrides into ``config`` (or the defaults)."""
    unknown = sorted(set(kwargs) - _FIELDS)
    if unknown:
        raise ConfigurationError(
            f"Unknown sampler option(s) {unknown}. Available: {sorted(_FIELDS)}"
        )
    if config is None:
        return SamplerConfig(**kwargs)
    if not isinstance(config, SamplerConfig):
        raise ConfigurationError(f"config must be a SamplerConfig; got {type(config).__name__}.")
    return replace(config, **kwargs) if kwargs else config
