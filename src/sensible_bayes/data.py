from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional

import numpy as np

from .exceptions import ConfigurationError


def freeze_array(value: Any, name: str) -> np.ndarray:
    """Copy ``value`` into a read-only numeric numpy array."""
    arr = np.array(value)
    if arr.dtype == object or arr.dtype.kind not in "biuf":
        raise ConfigurationError(
            f"data {name!r} must be numeric (bool/int/float); got dtype {arr.dtype}."
        )
    if arr.dtype.kind == "b":
        arr = arr.astype(np.int64)
    arr.setflags(write=False)
    return arr


class FrozenData(Mapping[str, np.ndarray]):
    """Immutable name -> read-only array mapping bound to a model."""

    def __init__(self, items: Optional[Mapping[str, np.ndarray]] = None):
        self._items: Dict[str, np.ndarray] = dict(items or {})

    def __getitem__(self, key: str) -> np.ndarray:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        shapes = ", ".join(f"{k}: {v.shape}" for k, v in self._items.items())
        return f"FrozenData({{{shapes}}})"

    def __setstate__(self, state):
        # Pickling drops the write flag; restore it.
        self.__dict__.update(state)
        for arr in self._items.values():
            arr.setflags(write=False)


def bind_data(
    data: Optional[Mapping[str, Any]] = None, *, base: Optional[Mapping[str, Any]] = None
) -> FrozenData:
    """Normalize data bindings into an immutable mapping.

    ``base`` holds already-bound data; keys in ``data`` replace it.
    """
    out = dict(base or {})
    for key, value in dict(data or {}).items():
        if not isinstance(key, str) or not key:
            raise ConfigurationError(f"data names must be non-empty strings; got {key!r}.")
        out[key] = freeze_array(value, key)
    return FrozenData(out)


def missing_mask(counts: Any) -> np.ndarray:
    """Boolean mask of missing (NaN) entries in a count array."""
    return np.isnan(np.asarray(counts, dtype=float))
