from __future__ import annotations

import math
from typing import Any, Tuple

import numpy as np


def level_to_quantiles(level: float) -> Tuple[float, float]:
    """Equal-tailed quantiles for a central credible level, e.g. 0.95 -> (0.025, 0.975)."""
    level = float(level)
    if not 0.0 < level < 1.0:
        raise ValueError(f"level must be in (0, 1); got {level}.")
    tail = 0.5 * (1.0 - level)
    return (tail, 1.0 - tail)


def prod(shape: Tuple[int, ...]) -> int:
    n = 1
    for s in shape:
        n *= int(s)
    return int(n)


def element_names(name: str, shape: Tuple[int, ...]) -> Tuple[str, ...]:
    """Flat element labels, e.g. ("b[0]", "b[1]") for a length-2 vector."""
    if shape == ():
        return (name,)
    return tuple(
        f"{name}[{','.join(str(i) for i in idx)}]" for idx in np.ndindex(shape)
    )


def squeeze_scalar(a: np.ndarray) -> Any:
    """Return python floats for 0-d arrays and arrays otherwise."""
    a = np.asarray(a)
    if a.shape == ():
        return a.item()
    return a


def format_uncertainty(x: float, err: float) -> str:
    """Write ``x`` with its uncertainty in brackets, e.g. 12.3457(12) or 1.235(8)e5.

    The uncertainty keeps two significant digits when its leading digit is 1
    and one otherwise, and the value is rounded to the same decimal place.
    Scientific notation is used when it gives the shorter string.
    """
    x = float(x)
    err = abs(float(err))
    if math.isnan(x) or math.isnan(err):
        return "nan"
    if math.isinf(x) or math.isinf(err):
        return "inf"
    if err == 0.0:
        return f"{x:g}(0)"

    err_exp = math.floor(math.log10(err))
    digits = 2 if f"{err:e}".startswith("1") else 1
    last = err_exp - digits + 1  # decimal place of the last digit kept
    err_digits = round(err / 10.0**last)
    n = round(x / 10.0**last)

    fixed = f"{n * 10.0**last:.{max(0, -last)}f}({err_digits * 10 ** max(0, last)})"

    x_exp = err_exp if abs(x) < err else math.floor(math.log10(abs(x)))
    mantissa = n * 10.0 ** (last - x_exp)
    scientific = f"{mantissa:.{x_exp - last}f}({err_digits})e{x_exp}"

    return fixed if len(fixed) <= len(scientific) else scientific
