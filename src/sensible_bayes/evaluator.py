from __future__ import annotations

from typing import Any, Tuple

import numpy as np

__all__ = ["LogDensity"]


class LogDensity:
    """Log-density and gradient of a model on the unconstrained space.

    Never raises on numerical trouble: any floating-point error, non-finite
    log-density or non-finite gradient is reported as ``(-inf, zeros)`` so
    the sampler can treat it as a rejected point.
    """

    def __init__(self, model: Any):
        self.model = model
        self.dim = int(model.dim)
        self.n_evals = 0
        self.n_rejected = 0

    def evaluate(self, position: np.ndarray) -> Tuple[float, np.ndarray]:
        self.n_evals += 1
        try:
            with np.errstate(all="ignore"):
                lp, grad = self.model.log_density_gradient(position)
        except (FloatingPointError, ZeroDivisionError, OverflowError):
            return self._reject()
        if not np.isfinite(lp) or not np.all(np.isfinite(grad)):
            return self._reject()
        return float(lp), grad

    __call__ = evaluate

    def _reject(self) -> Tuple[float, np.ndarray]:
        self.n_rejected += 1
        return -np.inf, np.zeros(self.dim)

    def stats(self) -> dict:
        return {"n_evals": self.n_evals, "n_rejected": self.n_rejected}
