import os
import threading

import numpy as np
import pytest

from sensible_bayes import (
    ConfigurationError,
    DivergenceWarning,
    Model,
    SamplerConfig,
    SamplingError,
    sample,
)
from sensible_bayes.densities import Term


def _std_normal(dim=3) -> Model:
    return Model(name="std normal").param("x", shape=(dim,)).prior(x=("normal", 0.0, 1.0))


def _half_normal() -> Model:
    return (
        Model(name="half normal")
        .param("s", constraint="positive")
        .prior(s=("normal", 0.0, 1.0))
    )


class _CancelAfter:
    """Becomes set after ``n`` polls."""

    def __init__(self, n):
        self.n = n
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.n


class _Impossible(Term):
    def param_names(self):
        return ("x",)

    def value_and_grad(self, values, data):
        return -np.inf, {"x": np.zeros(())}


def test_recovers_standard_normal():
    run = _std_normal().sample(chains=2, warmup=500, samples=500, seed=11)
    x = run.draws("x")
    assert x.shape == (2, 500, 3)
    np.testing.assert_allclose(x.mean(axis=(0, 1)), 0.0, atol=0.2)
    np.testing.assert_allclose(x.std(axis=(0, 1)), 1.0, atol=0.15)
    accept = np.concatenate([c.array("accept_stat") for c in run.chains])
    assert 0.6 < accept.mean() < 0.97
    assert run.divergences == 0
    assert run.summary().converged


def test_constrained_draws_respect_support():
    run = _half_normal().sample(chains=2, warmup=300, samples=300, seed=5)
    s = run.draws("s")
    assert np.all(s > 0.0)
    # half-normal mean is sqrt(2 / pi)
    assert s.mean() == pytest.approx(np.sqrt(2.0 / np.pi), abs=0.1)
    np.testing.assert_allclose(np.log(s), run.positions()[:, :, 0])


def test_same_seed_same_draws_and_different_seed_differs():
    m = _std_normal(2)
    a = m.sample(chains=2, warmup=50, samples=50, seed=7).draws("x")
    b = m.sample(chains=2, warmup=50, samples=50, seed=7).draws("x")
    c = m.sample(chains=2, warmup=50, samples=50, seed=8).draws("x")
    np.testing.assert_array_equal(a, b)
    assert not np.array_equal(a, c)


def test_chains_are_independent_streams():
    x = _std_normal(2).sample(chains=2, warmup=50, samples=50, seed=7).draws("x")
    assert not np.array_equal(x[0], x[1])


def test_parallel_matches_sequential():
    m = _std_normal(2)
    seq = m.sample(chains=2, warmup=50, samples=50, seed=3, parallel=None)
    par = m.sample(chains=2, warmup=50, samples=50, seed=3, parallel=2)
    np.testing.assert_array_equal(seq.draws("x"), par.draws("x"))
    assert par.step_sizes == seq.step_sizes


def test_chains_run_in_workers_by_default():
    cfg = SamplerConfig(chains=4)
    assert cfg.parallel == "auto"
    expected = min(os.cpu_count() or 1, 4)
    assert cfg.n_workers() == (expected if expected > 1 else 0)
    assert SamplerConfig(chains=3, parallel=8).n_workers() == 3
    assert SamplerConfig(parallel=None).n_workers() == 0
    assert SamplerConfig(parallel=1).n_workers() == 0
    assert SamplerConfig(chains=1).n_workers() == 0


def test_cancel_before_start_stops_worker_chains():
    ev = threading.Event()
    ev.set()
    run = _std_normal().sample(chains=2, warmup=10, samples=10, seed=1, cancel=ev, parallel=2)
    assert run.cancelled
    assert all(len(c) == 0 and not c.completed for c in run.chains)


def test_config_object_and_overrides():
    cfg = SamplerConfig(chains=1, warmup=20, samples=30, seed=1)
    run = sample(_std_normal(), cfg, samples=10)
    assert run.config.samples == 10
    assert run.n_samples == 10
    assert cfg.samples == 30


def test_save_warmup_keeps_warmup_draws():
    run = _std_normal().sample(chains=1, warmup=30, samples=10, seed=2, save_warmup=True)
    chain = run.chains[0]
    assert len(chain.warmup_draws) == 30
    assert all(d.warmup for d in chain.warmup_draws)
    assert chain.array("x", warmup=True).shape == (30, 3)
    assert len(chain) == 10


def test_run_accessors():
    run = _std_normal().sample(chains=2, warmup=20, samples=15, seed=4)
    assert run.names == ("x",)
    assert run.positions().shape == (2, 15, 3)
    assert run.draws("tree_depth").shape == (2, 15)
    assert len(run.step_sizes) == 2
    assert "cancelled=False" in repr(run)
    with pytest.raises(KeyError):
        run.draws("nope")
    d = run.chains[0].draws[0]
    assert d["x"].shape == (3,)
    assert run.chains[0].stats["n_evals"] > 0


def test_cancel_before_start_returns_empty_run():
    ev = threading.Event()
    ev.set()
    run = _std_normal().sample(chains=2, warmup=10, samples=10, seed=1, cancel=ev)
    assert run.cancelled
    assert run.n_samples == 0
    assert all(not c.completed for c in run.chains)


def test_cancel_midway_keeps_partial_chain_on_request():
    m = _std_normal()
    run = sample(m, chains=1, warmup=10, samples=50, seed=1, cancel=_CancelAfter(30), return_partial=True)
    assert run.cancelled
    assert len(run.chains[0]) == 20
    assert run.draws("x").shape == (1, 20, 3)

    run = sample(m, chains=1, warmup=10, samples=50, seed=1, cancel=_CancelAfter(30))
    assert run.cancelled
    assert len(run.chains[0]) == 0


def test_timeout_cancels():
    run = _std_normal().sample(chains=1, warmup=100, samples=100, seed=1, timeout=1e-9)
    assert run.cancelled
    with pytest.raises(ConfigurationError):
        _std_normal().sample(chains=1, timeout=0)


def test_summary_of_empty_run_raises():
    ev = threading.Event()
    ev.set()
    run = _std_normal().sample(chains=1, warmup=5, samples=5, cancel=ev)
    with pytest.raises(SamplingError):
        run.summary()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"init": {"s": -1.0}},
        {"init": {"t": 1.0}},
        {"init": [{"s": 1.0}], "chains": 2},
        {"chains": 0},
        {"target_accept": 1.0},
        {"algorithm": "gibbs"},
        {"parallel": 0},
        {"thinning": 2},
    ],
)
def test_bad_requests_raise(kwargs):
    with pytest.raises(ConfigurationError):
        _half_normal().sample(**kwargs)


def test_user_init_is_used():
    run = _half_normal().sample(
        chains=1, warmup=0, samples=1, seed=1, init={"s": 3.0}, step_size=1e-6, algorithm="hmc",
        integration_time=1e-6,
    )
    assert run.draws("s")[0, 0] == pytest.approx(3.0, rel=1e-3)


def test_no_finite_initial_point_raises():
    m = Model(name="impossible").param("x").add(_Impossible())
    with pytest.raises(SamplingError, match="finite"):
        m.sample(chains=1, warmup=5, samples=5, seed=0)


def test_static_hmc_recovers_standard_normal():
    run = _std_normal(2).sample(chains=2, warmup=300, samples=400, seed=9, algorithm="hmc")
    x = run.draws("x")
    np.testing.assert_allclose(x.mean(axis=(0, 1)), 0.0, atol=0.25)
    np.testing.assert_allclose(x.std(axis=(0, 1)), 1.0, atol=0.2)
    assert np.all(run.draws("tree_depth") == 0)


def test_huge_step_size_diverges_with_warning():
    with pytest.warns(DivergenceWarning, match="divergence"):
        run = _std_normal().sample(chains=1, warmup=0, samples=10, seed=1, step_size=10.0)
    assert run.divergences == 10


def test_model_without_terms_is_rejected():
    with pytest.raises(ConfigurationError):
        Model(name="m").param("x").sample(chains=1, warmup=1, samples=1)
