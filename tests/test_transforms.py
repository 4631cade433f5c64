import numpy as np
import pytest

from sensible_bayes.exceptions import ConfigurationError
from sensible_bayes.params import ParameterSpec
from sensible_bayes.transforms import (
    Interval,
    OrderedPositive,
    Positive,
    get_transform,
    normalize_constraint,
)

from conftest import finite_difference_gradient


def _numerical_log_jacobian(transform, u, h=1e-6):
    n = u.size
    J = np.zeros((n, n))
    for j in range(n):
        step = np.zeros(n)
        step[j] = h
        vp, _ = transform.forward(u + step)
        vm, _ = transform.forward(u - step)
        J[:, j] = (np.atleast_1d(vp) - np.atleast_1d(vm)) / (2.0 * h)
    return np.linalg.slogdet(J)[1]


TRANSFORMS = [
    ("positive", Positive()),
    ("ordered_positive", OrderedPositive()),
    ("interval", Interval(lo=-1.0, hi=3.0)),
]


@pytest.mark.parametrize("name, transform", TRANSFORMS, ids=[t[0] for t in TRANSFORMS])
def test_round_trip(name, transform, rng):
    u = rng.normal(0.0, 1.5, size=4)
    v, _ = transform.forward(u)
    np.testing.assert_allclose(transform.inverse(v), u, rtol=1e-9, atol=1e-9)


@pytest.mark.parametrize("name, transform", TRANSFORMS, ids=[t[0] for t in TRANSFORMS])
def test_log_jacobian_matches_numerical(name, transform, rng):
    u = rng.normal(0.0, 1.0, size=3)
    _, log_jac = transform.forward(u)
    assert log_jac == pytest.approx(_numerical_log_jacobian(transform, u), rel=1e-5, abs=1e-6)


@pytest.mark.parametrize("name, transform", TRANSFORMS, ids=[t[0] for t in TRANSFORMS])
def test_gradient_chain_rule(name, transform, rng):
    u = rng.normal(0.0, 1.0, size=3)
    w = rng.normal(size=3)

    def f(uu):
        v, log_jac = transform.forward(uu)
        return float(np.sum(w * v)) + log_jac

    v, _ = transform.forward(u)
    np.testing.assert_allclose(
        transform.grad(u, v, w), finite_difference_gradient(f, u), rtol=1e-5, atol=1e-6
    )


def test_ordered_positive_is_strictly_ascending(rng):
    for _ in range(20):
        v, _ = OrderedPositive().forward(rng.normal(0.0, 3.0, size=5))
        assert np.all(v > 0.0)
        assert np.all(np.diff(v) > 0.0)


def test_interval_stays_inside_bounds():
    v, log_jac = Interval(lo=0.0, hi=5.0).forward(np.array([-30.0, 0.0, 30.0]))
    assert np.all(v >= 0.0) and np.all(v <= 5.0)
    assert v[1] == pytest.approx(2.5)
    assert np.isfinite(log_jac)


def test_inverse_rejects_invalid_values():
    with pytest.raises(ValueError):
        Positive().inverse(np.array([1.0, -1.0]))
    with pytest.raises(ValueError):
        OrderedPositive().inverse(np.array([0.2, 0.1]))
    with pytest.raises(ValueError):
        Interval(lo=0.0, hi=1.0).inverse(np.array(1.0))


def test_normalize_constraint_forms():
    assert normalize_constraint(None) == ("unconstrained",)
    assert normalize_constraint("real") == ("unconstrained",)
    assert normalize_constraint(("positive",)) == ("positive",)
    assert normalize_constraint("ordered") == ("ordered_positive",)
    assert normalize_constraint(("interval", 0, 5)) == ("interval", 0.0, 5.0)
    assert isinstance(get_transform(("interval", 0, 5)), Interval)


@pytest.mark.parametrize(
    "constraint",
    ["simplex", ("interval", 1.0, 1.0), ("interval", 0.0, np.inf), ("interval", 0.0), ("positive", 1.0), 3],
)
def test_bad_constraints_raise(constraint):
    with pytest.raises(ConfigurationError):
        normalize_constraint(constraint)


def test_ordered_requires_vector_shape():
    with pytest.raises(ConfigurationError, match="must be a vector"):
        ParameterSpec.declare("b", shape=(), constraint="ordered_positive")
    spec = ParameterSpec.declare("b", shape=2, constraint="ordered_positive")
    assert spec.shape == (2,)
    assert spec.size == 2
    assert spec.kind == "ordered_positive"


def test_declare_rejects_bad_names_and_shapes():
    with pytest.raises(ConfigurationError):
        ParameterSpec.declare("not a name")
    with pytest.raises(ConfigurationError):
        ParameterSpec.declare("x", shape=(0,))
