import logging
import threading

import numpy as np
from sensible_bayes import models

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

rng = np.random.default_rng(4)
n_sites, n_years = 10, 8
site, year = np.meshgrid(np.arange(n_sites), np.arange(n_years), indexing="ij")
site, year = site.ravel(), year.ravel()
observer = site % 6  # six observers share the sites
first_year = (year == 0).astype(float)

alpha = rng.normal(0, 0.6, n_sites)
eps = rng.normal(0, 0.2, n_years)
delta = rng.normal(0, 0.1, 6)
trend = models.standardized_trend(year, n_years)
log_rate = 1.0 - 0.3 * trend + 0.2 * first_year + alpha[site] + eps[year] + delta[observer]
counts = rng.poisson(np.exp(log_rate)).astype(float)
counts[rng.choice(counts.size, size=10, replace=False)] = np.nan  # unsurveyed

model = models.poisson_glmm(counts, site, year, observer, first_year=first_year)

# chains run in worker processes; the event can stop them early
stop = threading.Event()
run = model.sample(
    chains=4, warmup=500, samples=500, seed=5, parallel="auto", cancel=stop, timeout=600
)
post = run.summary()
print(post["mu", "beta", "gamma", "sd_site", "sd_year", "sd_observer"].as_dict())
print(post.summary(digits=3))

pred = run.draws("predicted")
print("predicted counts for missing cells (posterior mean):")
print(np.round(pred.mean(axis=(0, 1)), 2))
