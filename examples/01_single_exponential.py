import numpy as np
from sensible_bayes import models

rng = np.random.default_rng(0)
x = np.sort(rng.uniform(0, 10, 100))
y_true = models.decay_func(x, 2.0, 0.5)
y = y_true + rng.normal(0, 0.1, size=x.size)

# a, b > 0 by declaration; no priors beyond the constraints
model = models.single_exponential(x, y)
run = model.sample(chains=4, warmup=500, samples=500, seed=1)
post = run.summary()

print(post.summary(digits=4))
print("a =", post["a"].u, "b =", post["b"].u)
print("true values inside 95% interval:", post["a"].contains(2.0), post["b"].contains(0.5))
