import math

import numpy as np
import pytest

from sensible_bayes import ConfigurationError, Model
from sensible_bayes.densities import DecayCurve, NormalHierarchy, PoissonLogLinear
from sensible_bayes.models import poisson_glmm, single_exponential, two_exponentials

from conftest import (
    finite_difference_gradient,
    simulate_counts,
    simulate_single_exponential,
    simulate_two_exponentials,
)


def _half_normal_model() -> Model:
    return Model(name="half normal").param("s", constraint="positive").prior(s=("normal", 0.0, 1.0))


def test_log_density_adds_prior_and_log_jacobian():
    m = _half_normal_model()
    u = 0.3
    s = math.exp(u)
    expected = -0.5 * s * s - 0.5 * math.log(2.0 * math.pi) + u
    assert m.log_density([u]) == pytest.approx(expected)
    assert m.log_density([u], jacobian=False) == pytest.approx(expected - u)


def test_log_density_is_deterministic(rng):
    x, y = simulate_single_exponential(rng)
    m = single_exponential(x, y)
    u = rng.normal(size=m.dim)
    assert m.log_density(u) == m.log_density(u)
    lp1, g1 = m.log_density_gradient(u)
    lp2, g2 = m.log_density_gradient(u)
    assert lp1 == lp2
    np.testing.assert_array_equal(g1, g2)


def test_flat_prior_contributes_zero():
    base = Model(name="m").param("x", constraint=("interval", 0.0, 2.0)).prior(x="flat")
    with_uniform = base.prior(x=("uniform", 0.0, 2.0))
    for u in (-1.0, 0.0, 2.5):
        assert base.log_density([u]) == with_uniform.log_density([u])
        assert base.log_density([u], jacobian=False) == 0.0


def test_prior_replaces_earlier_prior():
    m = _half_normal_model().prior(s=("exponential", 2.0))
    assert m.priors() == {"s": ("exponential", 2.0)}
    assert len(m.terms) == 1


def test_builders_do_not_mutate(rng):
    x, y = simulate_single_exponential(rng)
    base = single_exponential(x, y)
    with_priors = base.prior(a=("normal", 0.0, 1.0))
    assert base.priors() == {}
    assert "a" in with_priors.priors()


def test_constrain_unconstrain_round_trip(rng):
    x, y = simulate_two_exponentials(rng, n=50)
    m = two_exponentials(x, y)
    u = rng.normal(size=m.dim)
    values = m.constrain(u)
    assert values["b"][0] < values["b"][1]
    assert isinstance(values["sigma"], float)
    np.testing.assert_allclose(m.unconstrain(values), u, rtol=1e-9, atol=1e-9)


def test_unconstrain_with_fill_keeps_missing_segments():
    m = Model(name="m").param("a").param("b", constraint="positive").prior(a=("normal", 0, 1))
    u = m.unconstrain({"b": 1.0}, fill=np.array([0.7, 5.0]))
    np.testing.assert_allclose(u, [0.7, 0.0])
    with pytest.raises(ValueError):
        m.unconstrain({"b": 1.0})
    with pytest.raises(ValueError):
        m.unconstrain({"a": 0.0, "b": -1.0})


def test_data_is_read_only(rng):
    x, y = simulate_single_exponential(rng)
    m = single_exponential(x, y)
    assert not m.data["x"].flags.writeable
    with pytest.raises(ValueError):
        m.data["x"][0] = 1.0
    x[0] = -100.0  # caller's array is copied
    assert m.data["x"][0] != -100.0


def test_gradient_single_exponential(rng):
    for noise in ("normal", "lognormal"):
        x, y = simulate_single_exponential(rng, noise=noise)
        m = single_exponential(x, y, noise=noise, priors={"a": ("normal", 0, 5)})
        u = rng.uniform(-1.0, 1.0, size=m.dim)
        lp, grad = m.log_density_gradient(u)
        assert lp == pytest.approx(m.log_density(u))
        np.testing.assert_allclose(
            grad, finite_difference_gradient(m.log_density, u), rtol=1e-4, atol=1e-4
        )


def test_gradient_unconstrained_single_exponential(rng):
    x, y = simulate_single_exponential(rng)
    m = single_exponential(x, y, positive=False)
    u = np.array([2.0, 0.5, -1.0])
    _, grad = m.log_density_gradient(u)
    np.testing.assert_allclose(grad, finite_difference_gradient(m.log_density, u), rtol=1e-4, atol=1e-4)


@pytest.mark.parametrize("priors", [False, True])
def test_gradient_two_exponentials(rng, priors):
    x, y = simulate_two_exponentials(rng, n=200)
    m = two_exponentials(x, y, priors=priors)
    u = rng.uniform(-1.0, 1.0, size=m.dim)
    _, grad = m.log_density_gradient(u)
    np.testing.assert_allclose(grad, finite_difference_gradient(m.log_density, u), rtol=1e-4, atol=1e-4)


def test_gradient_poisson_glmm(rng):
    m = poisson_glmm(**simulate_counts(rng))
    u = rng.uniform(-0.5, 0.5, size=m.dim)
    lp, grad = m.log_density_gradient(u)
    assert np.isfinite(lp)
    np.testing.assert_allclose(grad, finite_difference_gradient(m.log_density, u), rtol=1e-4, atol=1e-3)


def test_gradient_without_jacobian(rng):
    m = poisson_glmm(**simulate_counts(rng))
    u = rng.uniform(-0.5, 0.5, size=m.dim)
    _, grad = m.log_density_gradient(u, jacobian=False)

    def f(uu):
        return m.log_density(uu, jacobian=False)

    np.testing.assert_allclose(grad, finite_difference_gradient(f, u), rtol=1e-4, atol=1e-3)


def test_lognormal_nonpositive_mean_is_minus_inf():
    x = np.array([0.0, 1.0, 2.0])
    y = np.array([1.0, 0.5, 0.25])
    m = single_exponential(x, y, noise="lognormal", positive=False)
    assert m.log_density(np.array([-1.0, 0.5, 0.0])) == -np.inf


# ---- configuration errors ----
def test_duplicate_parameter_raises():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        Model(name="m").param("a").param("a")


def test_unknown_parameter_in_prior_or_term_raises():
    m = Model(name="m").param("a")
    with pytest.raises(ConfigurationError):
        m.prior(b=("normal", 0, 1))
    with pytest.raises(ConfigurationError, match="undeclared"):
        m.add(NormalHierarchy("a", "scale"))


@pytest.mark.parametrize(
    "prior",
    [("gamma", 1, 1), ("normal", 0.0), ("normal", 0.0, -1.0), ("exponential", 0.0), ("normal", "zero", 1)],
)
def test_bad_priors_raise(prior):
    with pytest.raises(ConfigurationError):
        Model(name="m").param("a", constraint="positive").prior(a=prior)


def test_exponential_prior_needs_positive_support():
    with pytest.raises(ConfigurationError, match="positive"):
        Model(name="m").param("a").prior(a=("exponential", 1.0))


def test_uniform_prior_must_match_interval():
    m = Model(name="m").param("a", constraint=("interval", 0.0, 1.0))
    with pytest.raises(ConfigurationError, match="interval"):
        m.prior(a=("uniform", 0.0, 2.0))


def test_missing_data_key_raises():
    m = Model(name="m", data={"x": [0.0, 1.0]}).param("a").param("b").param("s", constraint="positive")
    with pytest.raises(ConfigurationError, match="'y'"):
        m.add(DecayCurve(x="x", y="y", amplitude="a", rate="b", sigma="s", noise="normal"))


def test_mismatched_lengths_raise():
    with pytest.raises(ConfigurationError, match="length"):
        single_exponential([0.0, 1.0, 2.0], [1.0, 0.5])


def test_nonpositive_observations_with_lognormal_error_raise():
    with pytest.raises(ConfigurationError, match="lognormal"):
        single_exponential([0.0, 1.0], [1.0, 0.0], noise="lognormal")


def test_unknown_noise_raises():
    with pytest.raises(ConfigurationError, match="noise"):
        single_exponential([0.0, 1.0], [1.0, 0.5], noise="student")


def test_bind_revalidates_terms(rng):
    x, y = simulate_single_exponential(rng)
    m = single_exponential(x, y)
    rebound = m.bind(y=y * 2.0)
    assert np.allclose(rebound.data["y"], 2.0 * y)
    with pytest.raises(ConfigurationError):
        m.bind(y=y[:-1])


def test_non_numeric_data_raises():
    with pytest.raises(ConfigurationError, match="numeric"):
        Model(name="m", data={"x": ["a", "b"]})


def test_out_of_range_index_raises():
    counts = np.array([1.0, 2.0, np.nan])
    m = (
        Model(name="m", data={"counts": counts, "g": np.array([0, 1, 2])})
        .param("mu")
        .param("e", shape=(2,))
    )
    with pytest.raises(ConfigurationError, match="index"):
        m.add(PoissonLogLinear(counts="counts", intercept="mu", effects=(("e", "g"),)))


def test_float_index_raises():
    counts = np.array([1.0, 2.0])
    m = (
        Model(name="m", data={"counts": counts, "g": np.array([0.0, 1.0])})
        .param("mu")
        .param("e", shape=(2,))
    )
    with pytest.raises(ConfigurationError, match="integer"):
        m.add(PoissonLogLinear(counts="counts", intercept="mu", effects=(("e", "g"),)))


def test_negative_counts_raise():
    m = Model(name="m", data={"counts": np.array([1.0, -2.0])}).param("mu")
    with pytest.raises(ConfigurationError, match="nonnegative"):
        m.add(PoissonLogLinear(counts="counts", intercept="mu"))


def test_generated_name_conflict_raises(rng):
    x, y = simulate_single_exponential(rng)
    m = single_exponential(x, y)
    with pytest.raises(ConfigurationError):
        m.generate("a", lambda values, data, rng: 0.0)


def test_check_requires_terms():
    with pytest.raises(ConfigurationError, match="no log-density terms"):
        Model(name="m").param("a").check()


def test_poisson_glmm_layout(rng):
    data = simulate_counts(rng, n_sites=5, n_years=4)
    m = poisson_glmm(**data)
    assert m.param_names == (
        "mu", "beta", "gamma", "alpha", "eps", "delta", "sd_site", "sd_year", "sd_observer",
    )
    assert m.param_map["alpha"].shape == (5,)
    assert m.param_map["eps"].shape == (4,)
    assert m.param_map["sd_year"].constraint == ("interval", 0.0, 3.0)
    assert m.generated_names == ("predicted",)
    assert m.dim == 3 + 5 + 4 + 5 + 3


def test_poisson_glmm_without_missing_cells_has_no_predictions(rng):
    data = simulate_counts(rng)
    data["counts"] = np.nan_to_num(data["counts"], nan=3.0)
    data.pop("first_year")
    m = poisson_glmm(**data)
    assert m.generated_names == ()
    assert "gamma" not in m.param_names


def test_missing_cell_predictions_are_integer_counts(rng):
    m = poisson_glmm(**simulate_counts(rng, n_sites=5, n_years=4))
    values = m.constrain(np.zeros(m.dim))
    pred = m.generate_quantities(values, rng)["predicted"]
    assert pred.dtype.kind == "i"
    assert np.all(pred >= 0)

    # a rate that overflows cannot be drawn; those cells read as NaN
    values["mu"] = 1000.0
    pred = m.generate_quantities(values, rng)["predicted"]
    assert pred.dtype.kind == "f"
    assert np.all(np.isnan(pred))
