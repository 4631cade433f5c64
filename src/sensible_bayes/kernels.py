"""Gradient-based transition kernels and warm-up adaptation.

All kernels work on the unconstrained vector with a diagonal metric: momenta
are drawn as p ~ Normal(0, diag(1 / inv_metric)) and the Hamiltonian is
H(q, p) = -log_density(q) + 0.5 * sum(inv_metric * p**2).
"""

from __future__ import annotations

from dataclasses import dataclass
import functools
import logging
import math
from typing import Any, Callable, Dict, Optional, Tuple, Type

import numpy as np

from .exceptions import ConfigurationError

__all__ = [
    "PhasePoint",
    "Transition",
    "NutsKernel",
    "StaticHmcKernel",
    "StepSizeAdapter",
    "WindowedMetricAdapter",
    "find_reasonable_step_size",
    "get_kernel",
    "AVAILABLE_KERNELS",
]

logger = logging.getLogger(__name__)

LogDensityFn = Callable[[np.ndarray], Tuple[float, np.ndarray]]


@dataclass(frozen=True)
class PhasePoint:
    q: np.ndarray
    p: np.ndarray
    lp: float
    grad: np.ndarray


@dataclass(frozen=True)
class Transition:
    """Outcome of one kernel transition."""

    q: np.ndarray
    lp: float
    grad: np.ndarray
    accept_stat: float
    n_leapfrog: int
    tree_depth: int
    divergent: bool
    energy: float


def _ignore_overflow(func):
    """Run ``func`` with numpy overflow and invalid-value warnings off.

    Runaway trajectories overflow to inf or nan; the energy check turns those
    into divergences.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with np.errstate(over="ignore", invalid="ignore"):
            return func(*args, **kwargs)

    return wrapper


def kinetic(p: np.ndarray, inv_metric: np.ndarray) -> float:
    return 0.5 * float(np.dot(p, inv_metric * p))


def hamiltonian(z: PhasePoint, inv_metric: np.ndarray) -> float:
    h = -z.lp + kinetic(z.p, inv_metric)
    return math.inf if math.isnan(h) else h


def sample_momentum(rng: np.random.Generator, inv_metric: np.ndarray) -> np.ndarray:
    return rng.standard_normal(inv_metric.shape[0]) / np.sqrt(inv_metric)


def leapfrog(
    log_density: LogDensityFn, z: PhasePoint, eps: float, inv_metric: np.ndarray
) -> PhasePoint:
    p_half = z.p + 0.5 * eps * z.grad
    q = z.q + eps * inv_metric * p_half
    lp, grad = log_density(q)
    p = p_half + 0.5 * eps * grad
    return PhasePoint(q=q, p=p, lp=lp, grad=grad)


def _no_u_turn(p_sharp_minus: np.ndarray, p_sharp_plus: np.ndarray, rho: np.ndarray) -> bool:
    return float(np.dot(p_sharp_plus, rho)) > 0.0 and float(np.dot(p_sharp_minus, rho)) > 0.0


# ----------------- NUTS -----------------
@dataclass(frozen=True)
class _Subtree:
    valid: bool
    z_end: PhasePoint  # last integrated point
    z_propose: PhasePoint
    p_beg: np.ndarray
    p_sharp_beg: np.ndarray
    p_end: np.ndarray
    p_sharp_end: np.ndarray
    rho: np.ndarray
    log_w: float


class _TreeStats:
    def __init__(self) -> None:
        self.n_leapfrog = 0
        self.sum_metro_prob = 0.0
        self.divergent = False


class NutsKernel:
    """Multinomial No-U-Turn sampler.

    The trajectory doubles in a random direction until the no-U-turn
    criterion fails (checked on the summed momenta of every subtree and across
    neighbouring subtrees), ``max_tree_depth`` is reached, or the energy error
    exceeds ``max_energy_error``. In the last case the transition is divergent
    and the new subtree is discarded.
    """

    name = "nuts"

    def __init__(self, log_density: LogDensityFn, *, max_tree_depth: int = 10, max_energy_error: float = 1000.0):
        self.log_density = log_density
        self.max_tree_depth = int(max_tree_depth)
        self.max_energy_error = float(max_energy_error)

    @classmethod
    def from_config(cls, log_density: LogDensityFn, config: Any) -> "NutsKernel":
        return cls(
            log_density,
            max_tree_depth=config.max_tree_depth,
            max_energy_error=config.max_energy_error,
        )

    @_ignore_overflow
    def transition(
        self,
        q: np.ndarray,
        lp: float,
        grad: np.ndarray,
        step_size: float,
        inv_metric: np.ndarray,
        rng: np.random.Generator,
    ) -> Transition:
        p0 = sample_momentum(rng, inv_metric)
        z0 = PhasePoint(q=q, p=p0, lp=lp, grad=grad)
        H0 = hamiltonian(z0, inv_metric)

        z_fwd = z_bck = z_sample = z0
        p_sharp0 = inv_metric * p0
        p_fwd_bck = p_fwd_fwd = p_bck_fwd = p_bck_bck = p0
        p_sharp_fwd_bck = p_sharp_fwd_fwd = p_sharp_bck_fwd = p_sharp_bck_bck = p_sharp0
        rho = p0.copy()
        log_w = 0.0
        depth = 0
        stats = _TreeStats()

        while depth < self.max_tree_depth:
            if rng.uniform() > 0.5:
                # the existing trajectory becomes the backward half
                rho_bck = rho
                p_bck_fwd, p_sharp_bck_fwd = p_fwd_fwd, p_sharp_fwd_fwd
                tree = self._build_tree(depth, z_fwd, 1.0, step_size, inv_metric, H0, stats, rng)
                if not tree.valid:
                    break
                z_fwd = tree.z_end
                rho_fwd = tree.rho
                p_fwd_bck, p_sharp_fwd_bck = tree.p_beg, tree.p_sharp_beg
                p_fwd_fwd, p_sharp_fwd_fwd = tree.p_end, tree.p_sharp_end
            else:
                rho_fwd = rho
                p_fwd_bck, p_sharp_fwd_bck = p_bck_bck, p_sharp_bck_bck
                tree = self._build_tree(depth, z_bck, -1.0, step_size, inv_metric, H0, stats, rng)
                if not tree.valid:
                    break
                z_bck = tree.z_end
                rho_bck = tree.rho
                p_bck_fwd, p_sharp_bck_fwd = tree.p_beg, tree.p_sharp_beg
                p_bck_bck, p_sharp_bck_bck = tree.p_end, tree.p_sharp_end

            depth += 1

            # biased progressive sampling favours the new subtree
            if tree.log_w > log_w:
                z_sample = tree.z_propose
            elif rng.uniform() < math.exp(tree.log_w - log_w):
                z_sample = tree.z_propose
            log_w = float(np.logaddexp(log_w, tree.log_w))

            rho = rho_bck + rho_fwd
            persist = _no_u_turn(p_sharp_bck_bck, p_sharp_fwd_fwd, rho)
            persist = persist and _no_u_turn(p_sharp_bck_bck, p_sharp_fwd_bck, rho_bck + p_fwd_bck)
            persist = persist and _no_u_turn(p_sharp_bck_fwd, p_sharp_fwd_fwd, rho_fwd + p_bck_fwd)
            if not persist:
                break

        n = max(stats.n_leapfrog, 1)
        return Transition(
            q=z_sample.q,
            lp=z_sample.lp,
            grad=z_sample.grad,
            accept_stat=stats.sum_metro_prob / n,
            n_leapfrog=stats.n_leapfrog,
            tree_depth=depth,
            divergent=stats.divergent,
            energy=hamiltonian(z_sample, inv_metric),
        )

    def _build_tree(
        self,
        depth: int,
        z: PhasePoint,
        direction: float,
        step_size: float,
        inv_metric: np.ndarray,
        H0: float,
        stats: _TreeStats,
        rng: np.random.Generator,
    ) -> _Subtree:
        if depth == 0:
            z_new = leapfrog(self.log_density, z, direction * step_size, inv_metric)
            stats.n_leapfrog += 1
            h = hamiltonian(z_new, inv_metric)
            divergent = (h - H0) > self.max_energy_error
            if divergent:
                stats.divergent = True
            log_w = H0 - h
            stats.sum_metro_prob += 1.0 if log_w > 0.0 else math.exp(log_w)
            p_sharp = inv_metric * z_new.p
            return _Subtree(
                valid=not divergent,
                z_end=z_new,
                z_propose=z_new,
                p_beg=z_new.p,
                p_sharp_beg=p_sharp,
                p_end=z_new.p,
                p_sharp_end=p_sharp,
                rho=z_new.p.copy(),
                log_w=log_w,
            )

        init = self._build_tree(depth - 1, z, direction, step_size, inv_metric, H0, stats, rng)
        if not init.valid:
            return init
        final = self._build_tree(depth - 1, init.z_end, direction, step_size, inv_metric, H0, stats, rng)
        if not final.valid:
            return final

        log_w = float(np.logaddexp(init.log_w, final.log_w))
        z_propose = init.z_propose
        if final.log_w > log_w or rng.uniform() < math.exp(final.log_w - log_w):
            z_propose = final.z_propose

        rho = init.rho + final.rho
        persist = _no_u_turn(init.p_sharp_beg, final.p_sharp_end, rho)
        persist = persist and _no_u_turn(init.p_sharp_beg, final.p_sharp_beg, init.rho + final.p_beg)
        persist = persist and _no_u_turn(init.p_sharp_end, final.p_sharp_end, final.rho + init.p_end)
        return _Subtree(
            valid=persist,
            z_end=final.z_end,
            z_propose=z_propose,
            p_beg=init.p_beg,
            p_sharp_beg=init.p_sharp_beg,
            p_end=final.p_end,
            p_sharp_end=final.p_sharp_end,
            rho=rho,
            log_w=log_w,
        )


# ----------------- Static HMC -----------------
class StaticHmcKernel:
    """Fixed integration time HMC with a Metropolis accept step on the end point."""

    name = "hmc"

    def __init__(
        self,
        log_density: LogDensityFn,
        *,
        integration_time: float = 1.0,
        max_steps: int = 1024,
        max_energy_error: float = 1000.0,
    ):
        self.log_density = log_density
        self.integration_time = float(integration_time)
        self.max_steps = int(max_steps)
        self.max_energy_error = float(max_energy_error)

    @classmethod
    def from_config(cls, log_density: LogDensityFn, config: Any) -> "StaticHmcKernel":
        return cls(
            log_density,
            integration_time=config.integration_time,
            max_steps=2 ** config.max_tree_depth,
            max_energy_error=config.max_energy_error,
        )

    def n_steps(self, step_size: float) -> int:
        return int(min(max(1, round(self.integration_time / step_size)), self.max_steps))

    @_ignore_overflow
    def transition(self, q, lp, grad, step_size, inv_metric, rng) -> Transition:
        p0 = sample_momentum(rng, inv_metric)
        z = z0 = PhasePoint(q=q, p=p0, lp=lp, grad=grad)
        H0 = hamiltonian(z0, inv_metric)

        n_steps = self.n_steps(step_size)
        divergent = False
        taken = 0
        for _ in range(n_steps):
            z = leapfrog(self.log_density, z, step_size, inv_metric)
            taken += 1
            if hamiltonian(z, inv_metric) - H0 > self.max_energy_error:
                divergent = True
                break

        if divergent:
            accept_stat = 0.0
        else:
            accept_stat = math.exp(min(0.0, H0 - hamiltonian(z, inv_metric)))
        if divergent or rng.uniform() >= accept_stat:
            z = z0
        return Transition(
            q=z.q,
            lp=z.lp,
            grad=z.grad,
            accept_stat=accept_stat,
            n_leapfrog=taken,
            tree_depth=0,
            divergent=divergent,
            energy=hamiltonian(z, inv_metric),
        )


# ----------------- Adaptation -----------------
@_ignore_overflow
def find_reasonable_step_size(
    log_density: LogDensityFn,
    q: np.ndarray,
    lp: float,
    grad: np.ndarray,
    step_size: float,
    inv_metric: np.ndarray,
    rng: np.random.Generator,
    *,
    max_iter: int = 100,
) -> float:
    """Double or halve the step size until one leapfrog step crosses acceptance 0.8.

    Gives up after ``max_iter`` changes and returns the last value, so an
    improper posterior does not stop the chain.
    """
    log_target = math.log(0.8)

    def delta_h(eps: float) -> float:
        z0 = PhasePoint(q=q, p=sample_momentum(rng, inv_metric), lp=lp, grad=grad)
        z1 = leapfrog(log_density, z0, eps, inv_metric)
        return hamiltonian(z0, inv_metric) - hamiltonian(z1, inv_metric)

    eps = float(step_size)
    direction = 1 if delta_h(eps) > log_target else -1
    for _ in range(max_iter):
        dh = delta_h(eps)
        if direction == 1 and not dh > log_target:
            break
        if direction == -1 and not dh < log_target:
            break
        new = eps * 2.0 if direction == 1 else eps * 0.5
        if not (1e-10 < new < 1e7):
            break
        eps = new
    return eps


class StepSizeAdapter:
    """Dual-averaging step-size adaptation toward a target acceptance statistic."""

    def __init__(self, target_accept: float = 0.8, *, gamma: float = 0.05, t0: float = 10.0, kappa: float = 0.75):
        self.delta = float(target_accept)
        self.gamma = gamma
        self.t0 = t0
        self.kappa = kappa
        self.restart(1.0)

    def restart(self, step_size: float) -> None:
        self.mu = math.log(10.0 * step_size)
        self.counter = 0
        self.s_bar = 0.0
        self.x_bar = 0.0

    def learn(self, accept_stat: float) -> float:
        """Update with one transition's statistic; return the next step size."""
        self.counter += 1
        accept_stat = min(1.0, float(accept_stat))
        eta = 1.0 / (self.counter + self.t0)
        self.s_bar = (1.0 - eta) * self.s_bar + eta * (self.delta - accept_stat)
        x = self.mu - self.s_bar * math.sqrt(self.counter) / self.gamma
        x_eta = self.counter ** (-self.kappa)
        self.x_bar = (1.0 - x_eta) * self.x_bar + x_eta * x
        return math.exp(x)

    def final(self) -> float:
        return math.exp(self.x_bar)


class WindowedMetricAdapter:
    """Diagonal inverse metric estimated over doubling slow windows.

    Warm-up is split into a fast initial buffer, slow windows (25, 50, 100,
    ... iterations; the last one stretched to the terminal buffer) and a fast
    terminal buffer. Positions drawn inside a slow window feed a running
    variance that becomes the new inverse metric when the window closes.
    """

    def __init__(self, dim: int, num_warmup: int, *, init_buffer: int = 75, term_buffer: int = 50, base_window: int = 25):
        self.dim = int(dim)
        self.num_warmup = int(num_warmup)
        self.enabled = self.num_warmup >= 20
        if self.enabled and init_buffer + base_window + term_buffer > self.num_warmup:
            init_buffer = int(0.15 * self.num_warmup)
            term_buffer = int(0.1 * self.num_warmup)
            base_window = self.num_warmup - (init_buffer + term_buffer)
            logger.debug(
                "short warm-up: buffers rescaled to init=%d, window=%d, term=%d",
                init_buffer,
                base_window,
                term_buffer,
            )
        self.init_buffer = init_buffer
        self.term_buffer = term_buffer
        self.window_size = base_window
        self.next_window = init_buffer + base_window - 1
        self.counter = 0
        self.inv_metric = np.ones(self.dim)
        self._reset_estimator()

    def _reset_estimator(self) -> None:
        self._n = 0
        self._mean = np.zeros(self.dim)
        self._m2 = np.zeros(self.dim)

    def _in_window(self) -> bool:
        return (
            self.counter >= self.init_buffer
            and self.counter < self.num_warmup - self.term_buffer
            and self.counter != self.num_warmup
        )

    def _end_of_window(self) -> bool:
        return self.counter == self.next_window and self.counter != self.num_warmup

    def _compute_next_window(self) -> None:
        last = self.num_warmup - self.term_buffer - 1
        if self.next_window == last:
            return
        self.window_size *= 2
        self.next_window = self.counter + self.window_size
        if self.next_window != last and self.next_window + 2 * self.window_size >= self.num_warmup - self.term_buffer:
            self.next_window = last

    def learn(self, q: np.ndarray) -> bool:
        """Record a warm-up position; True when the inverse metric was updated."""
        if not self.enabled:
            self.counter += 1
            return False
        if self._in_window():
            # Welford
            self._n += 1
            delta = q - self._mean
            self._mean = self._mean + delta / self._n
            self._m2 = self._m2 + delta * (q - self._mean)
        if self._end_of_window():
            self._compute_next_window()
            n = self._n
            if n > 1:
                var = self._m2 / (n - 1)
                var = (n / (n + 5.0)) * var + 1e-3 * (5.0 / (n + 5.0))
                if np.all(np.isfinite(var)) and np.all(var > 0.0):
                    self.inv_metric = var
            self._reset_estimator()
            self.counter += 1
            return True
        self.counter += 1
        return False


# ----------------- Registry -----------------
_KERNELS: Dict[str, Type[Any]] = {
    "nuts": NutsKernel,
    "hmc": StaticHmcKernel,
}

AVAILABLE_KERNELS = tuple(_KERNELS.keys())


def get_kernel(name: str) -> Type[Any]:
    """Return a kernel class by name."""
    try:
        return _KERNELS[name]
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown algorithm {name!r}. Available: {AVAILABLE_KERNELS}"
        ) from e


def make_kernel(config: Any, log_density: LogDensityFn, *, name: Optional[str] = None):
    return get_kernel(name or config.algorithm).from_config(log_density, config)
