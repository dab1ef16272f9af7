# -*- coding: utf-8 -*-
"""
Proposal generation for MCMCP chains.

  - init_uniform   : starting states, one uniform draw per dimension
  - gaussian_step  : multivariate-normal random walk around the current state
  - clamp_wrap     : out-of-range coordinates re-enter from the opposite bound
  - slice_grid     : the GSP slice along a single dimension

Every draw takes an explicit np.random.Generator so chains are reproducible
from a seed.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np

from .errors import DimensionMismatchError

T = TypeVar("T")

Range = Tuple[float, float]


# -----------------------------
# Starting states
# -----------------------------
def _expand_ranges(dim: int, ranges: Union[Range, Sequence[Range]]) -> np.ndarray:
    arr = np.asarray(ranges, dtype=float)
    if arr.ndim == 1:
        if arr.shape[0] != 2:
            raise ValueError("a single range must be a (min, max) pair")
        arr = np.tile(arr, (dim, 1))
    if arr.shape != (dim, 2):
        raise DimensionMismatchError(arr.shape[0], dim, what="ranges")
    if np.any(arr[:, 1] < arr[:, 0]):
        raise ValueError("every range must satisfy min <= max")
    return arr


def init_uniform(dim: int, ranges: Union[Range, Sequence[Range]], rng: np.random.Generator) -> np.ndarray:
    """Draw dim independent uniforms, coordinate i within ranges[i]."""
    bounds = _expand_ranges(int(dim), ranges)
    return rng.uniform(bounds[:, 0], bounds[:, 1])


# -----------------------------
# Random-walk proposals
# -----------------------------
def isotropic_cov(dim: int, variance: float) -> np.ndarray:
    return np.eye(int(dim), dtype=float) * float(variance)


def gaussian_step(
    current: Sequence[float],
    cov: Union[float, np.ndarray],
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Multivariate-normal perturbation centred on `current`.
    A scalar `cov` is read as an isotropic variance.
    """
    mean = np.asarray(current, dtype=float)
    if np.ndim(cov) == 0:
        cov = isotropic_cov(mean.shape[0], float(cov))
    cov = np.asarray(cov, dtype=float)
    if cov.shape != (mean.shape[0], mean.shape[0]):
        raise DimensionMismatchError(cov.shape[0], mean.shape[0], what="covariance")
    return rng.multivariate_normal(mean, cov)


def clamp_wrap(vector, lo, hi):
    """
    Wrap out-of-range coordinates back into [lo, hi]:
      v < lo  ->  hi - ((lo - v) mod (hi - lo))
      v > hi  ->  lo + ((v - hi) mod (hi - lo))
    lo/hi may be scalars or per-coordinate arrays. Scalars in, scalar out.
    """
    lo = np.asarray(lo, dtype=float)
    hi = np.asarray(hi, dtype=float)
    span = hi - lo
    if np.any(span <= 0):
        raise ValueError("clamp_wrap needs hi > lo")

    v = np.asarray(vector, dtype=float)
    out = np.where(
        v < lo,
        hi - np.mod(lo - v, span),
        np.where(v > hi, lo + np.mod(v - hi, span), v),
    )
    if out.ndim == 0:
        return float(out)
    return out


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise DimensionMismatchError(len(b), len(a))
    return float(np.sqrt(np.sum((a - b) ** 2)))


# -----------------------------
# GSP slice
# -----------------------------
def slice_grid(
    current: Sequence[float],
    dim_index: int,
    bounds: Range,
    resolution: int,
) -> Tuple[np.ndarray, List[float]]:
    """
    Points that differ from `current` only along `dim_index`, evenly spaced
    from bounds[0] to bounds[1] inclusive. Returns (points, proposed_values).
    """
    base = np.asarray(current, dtype=float)
    if not 0 <= dim_index < base.shape[0]:
        raise IndexError(f"dim_index {dim_index} outside 0..{base.shape[0] - 1}")
    if resolution < 2:
        raise ValueError("resolution must be at least 2")
    values = np.linspace(float(bounds[0]), float(bounds[1]), int(resolution))
    points = np.tile(base, (int(resolution), 1))
    points[:, dim_index] = values
    return points, values.tolist()


# -----------------------------
# Orderings and discrete draws
# -----------------------------
def shifted_order(n: int, start: int) -> List[int]:
    return [(i + start) % n for i in range(n)]


def shuffled(items: Sequence[T], rng: np.random.Generator) -> List[T]:
    idx = rng.permutation(len(items))
    return [items[int(i)] for i in idx]


def random_choice(items: Sequence[T], rng: np.random.Generator) -> T:
    return items[int(rng.integers(0, len(items)))]


def random_other(items: Sequence[T], exclude: Optional[T], rng: np.random.Generator) -> T:
    pool = [it for it in items if it != exclude]
    if not pool:
        raise ValueError("no alternative to choose from")
    return random_choice(pool, rng)
