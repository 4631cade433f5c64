import numpy as np
from sensible_bayes import models

rng = np.random.default_rng(1)
x = np.linspace(0, 10, 1000)
y = models.decay_func(x, [1.0, 0.8], [0.1, 0.2]) * np.exp(rng.normal(0, 0.2, size=x.size))

# same poorly separated data as 02, now with unit normal priors on a, b, sigma
base = models.two_exponentials(x, y)
model = base.prior(**models.UNIT_NORMAL_PRIORS)
print(model)
print("priors:", model.priors())

# a[1] and b[1] still trade off along a narrow ridge: take smaller steps and
# warm up for longer so every chain crosses it
run = model.sample(chains=4, warmup=2000, samples=2000, target_accept=0.95, seed=3)
post = run.summary()
print(post.summary(digits=3))
print("divergences:", run.divergences, "converged:", post.converged)

for row in post.to_rows():
    print(f"{row['name']:>8s}  ess={row['ess']:.0f}  rhat={row['rhat']:.3f}")
