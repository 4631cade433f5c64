import warnings

import numpy as np
from sensible_bayes import models

rng = np.random.default_rng(1)
x = np.linspace(0, 10, 1000)


def simulate(b):
    return models.decay_func(x, [1.0, 0.8], b) * np.exp(rng.normal(0, 0.2, size=x.size))


# well separated rates: the likelihood pins down both components
good = models.two_exponentials(x, simulate([0.1, 2.0]))
post = good.sample(chains=2, warmup=500, samples=500, seed=2).summary()
print(post.summary(style="compact"))

# poorly separated rates and no priors: b[1] is free to run off to infinity
bad = models.two_exponentials(x, simulate([0.1, 0.2]))
with warnings.catch_warnings(record=True) as caught:
    warnings.simplefilter("always")
    run = bad.sample(chains=2, warmup=200, samples=200, max_tree_depth=6, seed=3)
    post = run.summary()

print(post.summary(digits=3))
print("divergences:", run.divergences)
print("flagged:", post.flagged)
for w in caught:
    print(f"{w.category.__name__}: {w.message}")
