# -*- coding: utf-8 -*-
"""
Gatekeeper density model: a per-category Gaussian KDE over pre-fit exemplars.

Model file (one per category, `<category>.json`):
  {"tree_data": [[...], ...], "bandwidth": h, "dimensionality": d, "n_samples": n}

Log-density at x:
  log p(x) = logsumexp_i [ -0.5 ||x - k_i||^2 / h^2 - d log h - (d/2) log 2π ] - log n

Acceptance (Boltzmann / Barker form at temperature T):
  a = exp(p'/T) / (exp(p/T) + exp(p'/T))
evaluated as a logistic of (p' - p)/T so that -inf densities and large
magnitudes never produce NaN.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from .errors import DimensionMismatchError, GatekeeperLoadError

logger = logging.getLogger(__name__)

_LOG_2PI = math.log(2.0 * math.pi)


def logsumexp(values: Iterable[float]) -> float:
    arr = np.asarray(list(values) if not isinstance(values, np.ndarray) else values, dtype=float)
    if arr.size == 0:
        return float("-inf")
    m = float(np.max(arr))
    if m == float("-inf"):
        return m
    return m + float(np.log(np.sum(np.exp(arr - m))))


def _boltzmann(log_current: float, log_proposal: float, temperature: float) -> float:
    if temperature <= 0:
        raise ValueError("temperature must be positive")
    if log_current == log_proposal:
        return 0.5
    if log_proposal == float("-inf"):
        return 0.0
    if log_current == float("-inf"):
        return 1.0
    z = (log_proposal - log_current) / temperature
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


class GaussianKDE:
    """Immutable after construction; safe to share across request threads."""

    def __init__(self, tree_data, bandwidth: float, dimensionality: int, n_samples: Optional[int] = None):
        centers = np.array(tree_data, dtype=float)
        if centers.ndim != 2 or centers.shape[0] == 0:
            raise ValueError("tree_data must be a non-empty 2-D array")
        if centers.shape[1] != int(dimensionality):
            raise DimensionMismatchError(centers.shape[1], int(dimensionality), what="kernel centre")
        if not bandwidth or not math.isfinite(float(bandwidth)) or float(bandwidth) <= 0:
            raise ValueError("bandwidth must be positive and finite")
        if not np.all(np.isfinite(centers)):
            raise ValueError("tree_data must hold finite values only")

        centers.setflags(write=False)
        self._centers = centers
        self._bandwidth = float(bandwidth)
        self._dim = int(dimensionality)
        self._n_samples = int(n_samples) if n_samples else centers.shape[0]
        self._log_norm = -self._dim * math.log(self._bandwidth) - 0.5 * self._dim * _LOG_2PI

    # read-only views
    @property
    def centers(self) -> np.ndarray:
        return self._centers

    @property
    def bandwidth(self) -> float:
        return self._bandwidth

    @property
    def dimensionality(self) -> int:
        return self._dim

    @property
    def n_samples(self) -> int:
        return self._n_samples

    @property
    def mean(self) -> np.ndarray:
        return self._centers.mean(axis=0)

    @classmethod
    def from_json(cls, path, bandwidth: Optional[float] = None) -> "GaussianKDE":
        """Load a model file; an explicit bandwidth overrides the stored one."""
        path = Path(path)
        try:
            params = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise GatekeeperLoadError(f"gatekeeper model not found: {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise GatekeeperLoadError(f"gatekeeper model unreadable: {path}: {exc}") from exc

        if not isinstance(params, dict):
            raise GatekeeperLoadError(f"gatekeeper model must be a JSON object: {path}")
        missing = [k for k in ("tree_data", "bandwidth", "dimensionality", "n_samples") if k not in params]
        if missing:
            raise GatekeeperLoadError(f"gatekeeper model {path} is missing {', '.join(missing)}")
        try:
            return cls(
                tree_data=params["tree_data"],
                bandwidth=bandwidth or params["bandwidth"],
                dimensionality=params["dimensionality"],
                n_samples=params["n_samples"],
            )
        except (TypeError, ValueError) as exc:
            raise GatekeeperLoadError(f"gatekeeper model {path} is malformed: {exc}") from exc

    def _check(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim != 1 or x.shape[0] != self._dim:
            got = x.shape[0] if x.ndim == 1 else x.size
            raise DimensionMismatchError(got, self._dim, what="input point")
        return x

    def density(self, x: Sequence[float]) -> float:
        """Log-density of the KDE at x."""
        x = self._check(x)
        sq = np.sum((self._centers - x) ** 2, axis=1)
        terms = -0.5 * sq / (self._bandwidth * self._bandwidth) + self._log_norm
        total = logsumexp(terms)
        if total == float("-inf"):
            return total
        return total - math.log(self._n_samples)

    def acceptance(self, current: Sequence[float], proposal: Sequence[float], temperature: float = 1.0) -> float:
        return _boltzmann(self.density(current), self.density(proposal), float(temperature))

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        """Pick a kernel centre uniformly, add N(0, h^2) noise per dimension."""
        idx = int(rng.integers(0, self._centers.shape[0]))
        return self._centers[idx] + rng.normal(0.0, self._bandwidth, size=self._dim)


# -----------------------------
# Multi-category helpers
# -----------------------------
def load_gatekeepers(
    directory,
    classes: Sequence[str],
    bandwidth: Optional[float] = None,
) -> Dict[str, GaussianKDE]:
    directory = Path(directory)
    models: Dict[str, GaussianKDE] = {}
    for cate in classes:
        models[cate] = GaussianKDE.from_json(directory / f"{cate}.json", bandwidth=bandwidth)
        logger.info("gatekeeper %s loaded from %s (%d kernels)", cate, directory, models[cate].centers.shape[0])
    return models


def category_acceptance(
    models: Mapping[str, GaussianKDE],
    current_class: str,
    proposed_class: str,
    x: Sequence[float],
    temperature: float = 1.0,
) -> float:
    """Acceptance of relabelling state x from current_class to proposed_class."""
    return _boltzmann(
        models[current_class].density(x),
        models[proposed_class].density(x),
        float(temperature),
    )


def category_weights(models: Mapping[str, GaussianKDE], x: Sequence[float], temperature: float = 1.0) -> Dict[str, float]:
    """Softmax over categories of log p_c(x) / T."""
    names = list(models)
    logits = np.array([models[c].density(x) / float(temperature) for c in names], dtype=float)
    norm = logsumexp(logits)
    if norm == float("-inf"):
        return {c: 1.0 / len(names) for c in names}
    probs = np.exp(logits - norm)
    return dict(zip(names, probs.tolist()))
