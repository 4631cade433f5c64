"""Chain driver: initialisation, warm-up adaptation, sampling and parallel runs."""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
import logging
import multiprocessing as mp
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
import warnings

import numpy as np

from .config import SamplerConfig, resolve_config
from .evaluator import LogDensity
from .exceptions import ConfigurationError, DivergenceWarning, SamplingError
from .kernels import (
    StepSizeAdapter,
    Transition,
    WindowedMetricAdapter,
    find_reasonable_step_size,
    make_kernel,
)
from .run import Chain, Draw, Run

__all__ = ["sample", "run_chain", "initial_point", "MAX_INIT_ATTEMPTS"]

logger = logging.getLogger(__name__)

MAX_INIT_ATTEMPTS = 100


class _Cancellation:
    """is_set() is True once the caller's event is set or the deadline passes."""

    def __init__(self, event: Any = None, deadline: Optional[float] = None):
        self.event = event
        self.deadline = deadline

    def is_set(self) -> bool:
        if self.event is not None and self.event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline


def initial_point(
    model: Any,
    log_density: LogDensity,
    config: SamplerConfig,
    chain_id: int,
    rng: np.random.Generator,
) -> Tuple[np.ndarray, float, np.ndarray]:
    """Starting position with a finite log-density.

    User-supplied values are kept on every attempt; the remaining
    coordinates are redrawn uniformly from (-init_radius, init_radius).
    """
    user = config.init_for_chain(chain_id)
    r = float(config.init_radius)
    for attempt in range(1, MAX_INIT_ATTEMPTS + 1):
        fill = rng.uniform(-r, r, size=model.dim)
        q = model.unconstrain(user, fill=fill)
        lp, grad = log_density(q)
        if np.isfinite(lp):
            if attempt > 1:
                logger.debug("chain %d: finite initial point after %d attempts", chain_id, attempt)
            return q, lp, grad
    raise SamplingError(
        f"Chain {chain_id}: no initial point with a finite log density after "
        f"{MAX_INIT_ATTEMPTS} attempts. Check the data, the priors or the init values."
    )


def _check_init(model: Any, config: SamplerConfig) -> None:
    for chain_id in range(config.chains):
        init = config.init_for_chain(chain_id)
        if not init:
            continue
        try:
            model.unconstrain(init, fill=np.zeros(model.dim))
        except ValueError as e:
            raise ConfigurationError(f"Invalid init for chain {chain_id}: {e}") from e


def _make_draw(
    model: Any, t: Transition, step_size: float, warmup: bool, rng: np.random.Generator
) -> Draw:
    values = model.constrain(t.q)
    generated = {} if warmup else model.generate_quantities(values, rng)
    return Draw(
        values=values,
        position=np.array(t.q, copy=True),
        generated=generated,
        log_density=float(t.lp),
        accept_stat=float(t.accept_stat),
        step_size=float(step_size),
        tree_depth=int(t.tree_depth),
        n_leapfrog=int(t.n_leapfrog),
        divergent=bool(t.divergent),
        energy=float(t.energy),
        warmup=warmup,
    )


def run_chain(
    model: Any,
    config: SamplerConfig,
    chain_id: int,
    seed: np.random.SeedSequence,
    *,
    cancel: Any = None,
    return_partial: bool = False,
) -> Chain:
    """Run one chain to completion (or until ``cancel.is_set()``)."""
    rng = np.random.default_rng(seed)
    log_density = LogDensity(model)
    q, lp, grad = initial_point(model, log_density, config, chain_id, rng)
    kernel = make_kernel(config, log_density)

    inv_metric = np.ones(model.dim)
    step_size = config.step_size
    if step_size is None:
        step_size = find_reasonable_step_size(log_density, q, lp, grad, 1.0, inv_metric, rng)
    step_adapter = StepSizeAdapter(config.target_accept)
    step_adapter.restart(step_size)
    metric_adapter = WindowedMetricAdapter(model.dim, config.warmup)
    logger.debug(
        "chain %d: start (algorithm=%s, initial step size %.3g)",
        chain_id,
        config.algorithm,
        step_size,
    )

    draws: List[Draw] = []
    warmup_draws: List[Draw] = []
    completed = True
    for it in range(config.total_iterations):
        if cancel is not None and cancel.is_set():
            completed = False
            logger.info("chain %d: cancelled at iteration %d", chain_id, it)
            break
        warm = it < config.warmup
        used = step_size
        t = kernel.transition(q, lp, grad, step_size, inv_metric, rng)
        q, lp, grad = t.q, t.lp, t.grad

        if warm:
            step_size = step_adapter.learn(t.accept_stat)
            if metric_adapter.learn(q):
                inv_metric = metric_adapter.inv_metric
                step_size = find_reasonable_step_size(
                    log_density, q, lp, grad, step_size, inv_metric, rng
                )
                step_adapter.restart(step_size)
            if it == config.warmup - 1:
                step_size = step_adapter.final()
                logger.debug("chain %d: warm-up done, step size %.3g", chain_id, step_size)
            if not config.save_warmup:
                continue
            warmup_draws.append(_make_draw(model, t, used, True, rng))
        else:
            draws.append(_make_draw(model, t, used, False, rng))

    if not completed and not return_partial:
        draws, warmup_draws = [], []

    chain = Chain(
        chain_id=chain_id,
        draws=tuple(draws),
        warmup_draws=tuple(warmup_draws),
        step_size=float(step_size),
        inv_metric=np.array(inv_metric, copy=True),
        seed=tuple(seed.spawn_key),
        completed=completed,
        stats=log_density.stats(),
    )
    logger.info(
        "chain %d: %d draws, step size %.3g, %d divergences",
        chain_id,
        len(chain),
        chain.step_size,
        chain.divergences,
    )
    return chain


# ----------------- process workers -----------------
_WORKER: Dict[str, Any] = {}


def _init_worker(model: Any, config: SamplerConfig) -> None:
    _WORKER["model"] = model
    _WORKER["config"] = config


def _worker_run_chain(chain_id: int, seed: np.random.SeedSequence, cancel: Any, return_partial: bool) -> Chain:
    return run_chain(
        _WORKER["model"],
        _WORKER["config"],
        chain_id,
        seed,
        cancel=cancel,
        return_partial=return_partial,
    )


def _relay(source: _Cancellation, target: Any, done: threading.Event) -> None:
    while True:
        if source.is_set():
            target.set()
            return
        if done.wait(0.05):
            return


def _mp_context():
    # fork lets workers inherit the model without pickling it (closures in
    # generated quantities); other start methods pickle it once per worker.
    if "fork" in mp.get_all_start_methods():
        return mp.get_context("fork")
    return mp.get_context()


def _run_parallel(
    model: Any,
    config: SamplerConfig,
    seeds: Sequence[np.random.SeedSequence],
    n_workers: int,
    stop: Optional[_Cancellation],
    return_partial: bool,
) -> List[Chain]:
    ctx = _mp_context()
    logger.debug("running %d chains on %d worker processes", config.chains, n_workers)
    with ctx.Manager() as manager:
        event = manager.Event()
        if stop is not None and stop.is_set():
            event.set()
        done = threading.Event()
        with ProcessPoolExecutor(
            max_workers=n_workers,
            mp_context=ctx,
            initializer=_init_worker,
            initargs=(model, config),
        ) as pool:
            futures = [
                pool.submit(_worker_run_chain, i, seeds[i], event, return_partial)
                for i in range(config.chains)
            ]
            relay = None
            if stop is not None:
                relay = threading.Thread(target=_relay, args=(stop, event, done), daemon=True)
                relay.start()
            try:
                return [f.result() for f in futures]
            finally:
                done.set()
                if relay is not None:
                    relay.join()


def sample(
    model: Any,
    config: Optional[SamplerConfig] = None,
    *,
    cancel: Any = None,
    return_partial: bool = False,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Run:
    """Draw posterior samples from ``model``.

    Parameters
    ----------
    config:
        A SamplerConfig; keyword arguments override its fields.
    cancel:
        Any object with ``is_set()`` (e.g. ``threading.Event``), checked
        between iterations. Cancelled chains are emptied unless
        ``return_partial`` is True.
    timeout:
        Wall-clock limit in seconds, treated like cancellation.
    """
    config = resolve_config(config, **kwargs)
    if timeout is not None and not float(timeout) > 0.0:
        raise ConfigurationError(f"timeout must be > 0 seconds; got {timeout!r}.")
    model.check()
    _check_init(model, config)

    deadline = None if timeout is None else time.monotonic() + float(timeout)
    stop = None
    if cancel is not None or deadline is not None:
        stop = _Cancellation(cancel, deadline)

    seeds = np.random.SeedSequence(config.seed).spawn(config.chains)
    n_workers = config.n_workers()
    if n_workers == 0:
        chains = [
            run_chain(model, config, i, seeds[i], cancel=stop, return_partial=return_partial)
            for i in range(config.chains)
        ]
    else:
        chains = _run_parallel(model, config, seeds, n_workers, stop, return_partial)

    run = Run(
        model=model,
        config=config,
        chains=tuple(chains),
        cancelled=any(not c.completed for c in chains),
    )
    if run.cancelled:
        logger.info("sampling cancelled; %d chain(s) incomplete", sum(not c.completed for c in chains))

    n_div = run.divergences
    if n_div:
        total = sum(len(c) for c in chains)
        warnings.warn(
            f"{n_div} of {total} post-warmup transitions ended with a divergence. "
            "Increase target_accept or reparameterize the model.",
            DivergenceWarning,
            stacklevel=2,
        )
    return run
