"""Posterior summaries and convergence diagnostics."""

from __future__ import annotations

import math
import warnings
from typing import Any, Dict, List, Mapping, Tuple

import arviz as az
import numpy as np

from .exceptions import ConvergenceWarning, SamplingError
from .params import ParamView, ParamsView
from .util import element_names, format_uncertainty, level_to_quantiles, prod, squeeze_scalar

__all__ = [
    "split_rhat",
    "effective_sample_size",
    "drift_statistic",
    "summarize",
    "Posterior",
    "DEFAULT_RHAT_THRESHOLD",
    "DEFAULT_DRIFT_THRESHOLD",
]

DEFAULT_RHAT_THRESHOLD = 1.05
DEFAULT_DRIFT_THRESHOLD = 2.0


def _as_chains(x: Any) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[None, :]
    if x.ndim != 2:
        raise ValueError(f"expected draws of shape (chains, samples); got {x.shape}.")
    return x


def _split_chains(x: np.ndarray) -> np.ndarray:
    """Split every chain into its first and second half (middle draw dropped)."""
    half = x.shape[1] // 2
    return np.concatenate([x[:, :half], x[:, x.shape[1] - half :]], axis=0)


def _arviz_scalar(diagnostic, x: np.ndarray, **kwargs) -> float:
    """Run an ArviZ diagnostic on one (chains, samples) array."""
    result = diagnostic(az.convert_to_dataset(x), **kwargs)
    return float(result["x"].values)


def split_rhat(x: Any) -> float:
    """Rank-normalized split R-hat for draws of shape (chains, samples).

    A single chain is compared against itself as two halves. Returns 1.0 for
    constant draws and nan for non-finite draws or fewer than four samples.
    """
    x = _as_chains(x)
    if x.shape[1] < 4 or not np.all(np.isfinite(x)):
        return math.nan
    if np.ptp(x) == 0.0:
        return 1.0
    if x.shape[0] == 1:
        x = _split_chains(x)
    return _arviz_scalar(az.rhat, x, method="rank")


def effective_sample_size(x: Any) -> float:
    """Bulk effective sample size for draws of shape (chains, samples).

    Constant or non-finite draws give nan.
    """
    x = _as_chains(x)
    if x.shape[1] < 4 or not np.all(np.isfinite(x)) or np.ptp(x) == 0.0:
        return math.nan
    return _arviz_scalar(az.ess, x, method="bulk")


def drift_statistic(x: Any) -> float:
    """Largest per-chain shift between half-chain means, in pooled half-chain sds.

    Stationary chains stay well below 1; a chain running off to infinity moves
    roughly linearly and scores about sqrt(12).
    """
    x = _as_chains(x)
    half = x.shape[1] // 2
    if half < 2:
        return math.nan
    if not np.all(np.isfinite(x)):
        return math.nan
    first = x[:, :half]
    second = x[:, x.shape[1] - half :]
    shift = np.abs(np.mean(second, axis=1) - np.mean(first, axis=1))
    scale = np.sqrt(0.5 * (np.var(first, axis=1, ddof=1) + np.var(second, axis=1, ddof=1)))
    stat = np.where(shift > 0.0, np.inf, 0.0)
    ok = scale > 0.0
    stat[ok] = shift[ok] / scale[ok]
    return float(np.max(stat))


class Posterior(ParamsView):
    """Posterior summary: mapping name -> ParamView plus run-level diagnostics."""

    def __init__(
        self,
        items: Mapping[str, ParamView],
        *,
        level: float,
        n_chains: int,
        n_samples: int,
        divergences: int = 0,
        cancelled: bool = False,
        model_name: str = "",
    ):
        super().__init__(items)
        self.level = level
        self.n_chains = n_chains
        self.n_samples = n_samples
        self.divergences = divergences
        self.cancelled = cancelled
        self.model_name = model_name

    @property
    def flagged(self) -> Tuple[str, ...]:
        """Names of parameters failing at least one diagnostic."""
        return tuple(n for n, pv in self.items() if pv.flagged)

    @property
    def converged(self) -> bool:
        return not self.flagged

    def to_rows(self) -> List[Dict[str, Any]]:
        """One plain dict per scalar element, for tables and reports."""
        rows = []
        for name, pv in self.items():
            shape = np.shape(pv.value)
            labels = element_names(name, shape)
            cols = {
                k: np.reshape(np.asarray(pv[k], dtype=float), (-1,))
                for k in ("mean", "sd", "low", "high", "rhat", "ess")
            }
            drift = None if pv.drift is None else np.reshape(np.asarray(pv.drift, dtype=float), (-1,))
            for i, label in enumerate(labels):
                row = {k: float(v[i]) for k, v in cols.items()}
                row["name"] = label
                row["drift"] = None if drift is None else float(drift[i])
                row["derived"] = pv.derived
                row["flags"] = ",".join(pv.flags)
                rows.append(row)
        return rows

    def summary(self, digits: int = 4, style: str = "plain") -> str:
        """Human-readable table. ``style`` is "plain" or "compact" (value(err) notation)."""
        if style not in ("plain", "compact"):
            raise ValueError(f"style must be 'plain' or 'compact'; got {style!r}.")
        lo_q, hi_q = level_to_quantiles(self.level)
        lines = [
            f"Posterior(model={self.model_name!r}, chains={self.n_chains}, "
            f"samples={self.n_samples}, divergences={self.divergences})"
        ]
        if self.cancelled:
            lines.append("  (run was cancelled; summary uses partial chains)")

        rows = self.to_rows()
        width = max([12] + [len(r["name"]) for r in rows])
        if style == "plain":
            cols = ["mean", "sd", f"{100 * lo_q:g}%", f"{100 * hi_q:g}%", "rhat", "ess"]
            header = f"  {'':>{width}s} " + " ".join(f"{c:>10s}" for c in cols) + "  flags"
            lines.append(header)
            for r in rows:
                vals = [r["mean"], r["sd"], r["low"], r["high"], r["rhat"], r["ess"]]
                cells = [f"{v:>10.{digits}g}" for v in vals[:5]] + [f"{vals[5]:>10.0f}"]
                tag = " (derived)" if r["derived"] else ""
                lines.append(f"  {r['name']:>{width}s} " + " ".join(cells) + f"  {r['flags']}{tag}")
        else:
            for r in rows:
                tag = " (derived)" if r["derived"] else ""
                flags = f" !{r['flags']}" if r["flags"] else ""
                lines.append(
                    f"  {r['name']:>{width}s}: {format_uncertainty(r['mean'], r['sd'])}"
                    f" [{r['low']:.{digits}g}, {r['high']:.{digits}g}]"
                    f" rhat={r['rhat']:.3f} ess={r['ess']:.0f}{flags}{tag}"
                )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


def _elementwise(func, draws: np.ndarray, shape: Tuple[int, ...]) -> Any:
    """Apply a (chains, samples) -> float diagnostic to every element."""
    flat = draws.reshape(draws.shape[:2] + (prod(shape),))
    out = np.array([func(flat[:, :, j]) for j in range(flat.shape[2])], dtype=float)
    return squeeze_scalar(out.reshape(shape))


def _describe(draws: np.ndarray, shape: Tuple[int, ...], quantiles: Tuple[float, float]) -> Dict[str, Any]:
    pooled = draws.reshape((draws.shape[0] * draws.shape[1],) + shape)
    with np.errstate(all="ignore"), warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        mean = np.mean(pooled, axis=0)
        sd = np.std(pooled, axis=0, ddof=1) if pooled.shape[0] > 1 else np.full(shape, np.nan)
        low, high = np.quantile(pooled, quantiles, axis=0)
        # draws of a runaway parameter can square to inf; that reads as nan R-hat
        rhat = _elementwise(split_rhat, draws, shape)
        ess = _elementwise(effective_sample_size, draws, shape)
    return {
        "value": squeeze_scalar(mean),
        "stderr": squeeze_scalar(sd),
        "low": squeeze_scalar(low),
        "high": squeeze_scalar(high),
        "rhat": rhat,
        "ess": ess,
        "nonfinite": squeeze_scalar(~np.all(np.isfinite(pooled), axis=0)),
    }


def summarize(
    run: Any,
    *,
    level: float = 0.95,
    rhat_threshold: float = DEFAULT_RHAT_THRESHOLD,
    drift_threshold: float = DEFAULT_DRIFT_THRESHOLD,
    warn: bool = True,
) -> Posterior:
    """Summarise a Run across chains.

    Parameters get mean, sd, an equal-tailed ``level`` interval, split R-hat,
    bulk ESS, the drift statistic of their unconstrained coordinates and a
    non-finite marker. Generated quantities are summarised as derived rows
    and never flagged.
    """
    quantiles = level_to_quantiles(level)
    model = run.model
    if run.n_samples == 0:
        raise SamplingError("Run has no retained draws to summarise.")

    positions = run.positions()
    items: Dict[str, ParamView] = {}
    for spec, seg in model.layout():
        stats = _describe(run.draws(spec.name), spec.shape, quantiles)
        unconstrained = positions[:, :, seg].reshape(positions.shape[:2] + spec.shape)
        drift = _elementwise(drift_statistic, unconstrained, spec.shape)
        items[spec.name] = ParamView(
            name=spec.name,
            drift=drift,
            level=level,
            rhat_threshold=rhat_threshold,
            drift_threshold=drift_threshold,
            **stats,
        )

    for name in model.generated_names:
        draws = run.draws(name)
        shape = draws.shape[2:]
        items[name] = ParamView(name=name, level=level, derived=True, **_describe(draws, shape, quantiles))

    post = Posterior(
        items,
        level=level,
        n_chains=positions.shape[0],
        n_samples=positions.shape[1],
        divergences=run.divergences,
        cancelled=run.cancelled,
        model_name=model.name,
    )
    if warn and post.flagged:
        details = ", ".join(f"{n} ({'/'.join(post[n].flags)})" for n in post.flagged)
        warnings.warn(
            f"Parameters failed convergence diagnostics: {details}. "
            "Results may not be reliable.",
            ConvergenceWarning,
            stacklevel=2,
        )
    return post
