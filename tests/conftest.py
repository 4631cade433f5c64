import numpy as np
import pytest

from sensible_bayes.models.exponential import decay_func


def simulate_single_exponential(rng, *, a=2.0, b=0.5, sigma=0.1, n=100, noise="normal"):
    x = np.sort(rng.uniform(0.0, 10.0, size=n))
    mu = decay_func(x, a, b)
    if noise == "normal":
        y = mu + rng.normal(0.0, sigma, size=n)
    else:
        y = mu * np.exp(rng.normal(0.0, sigma, size=n))
    return x, y


def simulate_two_exponentials(rng, *, a=(1.0, 0.8), b=(0.1, 2.0), sigma=0.2, n=1000):
    x = np.linspace(0.0, 10.0, n)
    y = decay_func(x, a, b) * np.exp(rng.normal(0.0, sigma, size=n))
    return x, y


def simulate_counts(rng, *, n_sites=8, n_years=6, missing_frac=0.15):
    """Site x year counts with one observer per site and some unsurveyed cells."""
    site, year = np.meshgrid(np.arange(n_sites), np.arange(n_years), indexing="ij")
    site = site.ravel()
    year = year.ravel()
    observer = site.copy()
    first_year = (year == 0).astype(float)

    alpha = rng.normal(0.0, 0.5, size=n_sites)
    eps = rng.normal(0.0, 0.2, size=n_years)
    delta = rng.normal(0.0, 0.1, size=n_sites)
    trend = (year - 0.5 * (n_years - 1)) / (0.5 * (n_years - 1))
    log_rate = 1.5 - 0.2 * trend + 0.1 * first_year + alpha[site] + eps[year] + delta[observer]
    counts = rng.poisson(np.exp(log_rate)).astype(float)

    n_missing = max(1, int(missing_frac * counts.size))
    counts[rng.choice(counts.size, size=n_missing, replace=False)] = np.nan
    return {
        "counts": counts,
        "site": site,
        "year": year,
        "observer": observer,
        "first_year": first_year,
    }


def finite_difference_gradient(f, u, h=1e-6):
    u = np.asarray(u, dtype=float)
    g = np.zeros_like(u)
    for i in range(u.size):
        step = np.zeros_like(u)
        step[i] = h
        g[i] = (f(u + step) - f(u - step)) / (2.0 * h)
    return g


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
