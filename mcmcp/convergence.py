# -*- coding: utf-8 -*-
"""
Convergence diagnostics for MCMCP chains (offline, over exported samples).

  1) Gelman-Rubin R-hat for two chains of equal length n:
       W      = (s1^2 + s2^2) / 2
       B/n    = (mean1 - mean2)^2 / 2
       Var^   = (n-1)/n * W + B/n
       R_hat  = sqrt(Var^ / W)
     Identical constant chains give R_hat = 1. The between-chain term is the
     two-chain special case and is not valid for more chains.

  2) Geweke Z-score per dimension, early window vs late window:
       Z = (mean_A - mean_B) / sqrt(Var(mean_A) + Var(mean_B))
     with Var(mean) estimated by batch means, so autocorrelated chains are
     not judged as if their samples were independent.

  3) ESS via FFT autocorrelation, truncated at the first negative lag.

Usage examples:
  # R-hat between two exported chains, plus per-chain Geweke and ESS
  mcmcp-diagnose chain_no1.json chain_no2.json

  # Stricter threshold, trace plots into ./diagnostics
  mcmcp-diagnose chain_no1.json chain_no2.json --threshold 1.64 --plot --outdir diagnostics
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Dict, List

import numpy as np

try:
    import matplotlib.pyplot as plt  # type: ignore
except Exception:  # pragma: no cover
    plt = None

try:
    from tqdm import tqdm  # type: ignore
except Exception:  # pragma: no cover
    tqdm = None

logger = logging.getLogger(__name__)


# -----------------------------
# Gelman-Rubin
# -----------------------------
def gelman_rubin(chain1, chain2) -> np.ndarray:
    """
    R-hat per parameter for two chains shaped (n, ...). The result has the
    trailing shape of a single sample.
    """
    a = np.asarray(chain1, dtype=float)
    b = np.asarray(chain2, dtype=float)
    if a.ndim == 0 or a.shape[0] == 0:
        raise ValueError("chains must be non-empty sequences of samples")
    if a.shape != b.shape:
        raise ValueError(f"chain shapes differ: {a.shape} vs {b.shape}")
    n = a.shape[0]
    if n <= 1:
        raise ValueError("need more than one sample per chain")
    if a.ndim > 1 and 0 in a.shape[1:]:
        raise ValueError("samples must have at least one parameter")

    num_chains = 2
    mean1, mean2 = a.mean(axis=0), b.mean(axis=0)
    var1, var2 = a.var(axis=0, ddof=1), b.var(axis=0, ddof=1)

    W = (var1 + var2) / num_chains
    B_over_n = (mean1 - mean2) ** 2 / num_chains
    var_hat = (n - 1) / n * W + B_over_n

    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.sqrt(var_hat / W)
    return np.where(W > 0, ratio, np.where(var_hat == 0, 1.0, np.nan))


# -----------------------------
# Geweke
# -----------------------------
def batch_means_variance(series, n_batches: int = 30) -> float:
    """
    Variance of the sample mean of an autocorrelated series.
    With fewer than 2*n_batches points it falls back to var/n (iid estimate).
    The last batch absorbs the remainder.
    """
    x = np.asarray(series, dtype=float)
    n = len(x)
    if n < 2 * n_batches or n_batches < 2:
        if n < 2:
            return float("nan")
        logger.debug("batch means: %d samples are too few for %d batches, using iid variance", n, n_batches)
        return float(x.var(ddof=1) / n)

    size = n // n_batches
    means = [x[i * size:(n if i == n_batches - 1 else (i + 1) * size)].mean() for i in range(n_batches)]
    means = np.asarray(means)
    return float(means.var(ddof=1) / len(means))


def geweke(chain, frac1: float = 0.1, frac2: float = 0.5, n_batches: int = 30) -> np.ndarray:
    """Z-score per dimension of an (n, dim) chain. NaN where the variance is unusable."""
    x = np.asarray(chain, dtype=float)
    if x.ndim == 1:
        x = x[:, None]
    if x.ndim != 2 or x.shape[0] == 0 or x.shape[1] < 1:
        raise ValueError("chain must be a non-empty (n, dim) array")
    if not (0 < frac1 < 1 and 0 < frac2 < 1 and frac1 + frac2 <= 1):
        raise ValueError("need 0 < frac1 < 1, 0 < frac2 < 1 and frac1 + frac2 <= 1")

    n = x.shape[0]
    n1 = int(np.floor(n * frac1))
    start2 = int(np.floor(n * (1 - frac2)))
    n2 = n - start2
    if n1 < 2 or n2 < 2 or n1 + n2 > n:
        raise ValueError(f"not enough samples for the windows (n={n}, n1={n1}, n2={n2})")

    z = np.full(x.shape[1], np.nan)
    for d in range(x.shape[1]):
        first, last = x[:n1, d], x[start2:, d]
        mean_a, mean_b = first.mean(), last.mean()
        var_a = batch_means_variance(first, n_batches)
        var_b = batch_means_variance(last, n_batches)
        if np.isfinite(var_a) and np.isfinite(var_b) and var_a + var_b > 0:
            z[d] = (mean_a - mean_b) / np.sqrt(var_a + var_b)
        elif mean_a == mean_b:
            z[d] = 0.0
        else:
            logger.warning("geweke: no usable variance for dimension %d", d)
    return z


def is_converged(chain, threshold: float = 1.96) -> Dict:
    z = geweke(chain, frac1=0.2, frac2=0.5, n_batches=20)
    results = []
    for i, score in enumerate(z):
        ok = bool(np.isfinite(score) and abs(score) < threshold)
        results.append({
            "dimension": i,
            "z_score": None if not np.isfinite(score) else round(float(score), 4),
            "converged": ok,
        })
    return {"converged": all(r["converged"] for r in results), "results": results}


# -----------------------------
# ESS (effective sample size) estimation for 1D series
# -----------------------------
def _autocorr_fft(x: np.ndarray) -> np.ndarray:
    """Autocorrelation via FFT, normalized so acf[0] = 1."""
    x = np.asarray(x, dtype=float)
    n = len(x)
    if n < 2:
        return np.ones(n)
    x = x - x.mean()
    m = 1 << (2 * n - 1).bit_length()
    fx = np.fft.rfft(x, n=m)
    ac = np.fft.irfft(fx * np.conjugate(fx), n=m)[:n]
    ac /= ac[0] if ac[0] != 0 else 1.0
    return ac


def ess_1d(x: np.ndarray) -> float:
    """
    ESS = n / tau_int, tau_int = 1 + 2*sum_{t>=1} rho_t,
    summed up to the first non-positive rho (the conservative truncation used by
    the coordinate-MCMC diagnostics this module grew from).
    """
    x = np.asarray(x, dtype=float)
    n = len(x)
    if n < 3:
        return float(n)
    rho = _autocorr_fft(x)
    s = 0.0
    for t in range(1, n):
        if rho[t] <= 0.0:
            break
        s += rho[t]
    tau = 1.0 + 2.0 * s
    if tau <= 1e-12:
        return float(n)
    return float(n / tau)


# -----------------------------
# Chain exports
# -----------------------------
def load_chain(path) -> np.ndarray:
    """
    Read a chain export: either a list of state vectors, or the row dicts
    written by the controller. For row dicts, unpicked proposals are dropped
    and only rows with a state are kept.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list) or not data:
        raise ValueError(f"{path}: expected a non-empty JSON list")
    if isinstance(data[0], dict):
        data = [
            row["state"] for row in data
            if row.get("state") is not None and (not row.get("proposal") or row.get("picked"))
        ]
    return np.asarray(data, dtype=float)


def make_plots(outdir: str, chains: Dict[str, np.ndarray]) -> str:
    if plt is None:
        raise RuntimeError("Plotting requires matplotlib. Install it or run without --plot.")
    os.makedirs(outdir, exist_ok=True)
    outpng = os.path.join(outdir, "chain_traces.png")

    dim = next(iter(chains.values())).shape[1]
    fig, axes = plt.subplots(dim, 1, figsize=(12, 2.2 * dim), squeeze=False)
    for d in range(dim):
        ax = axes[d, 0]
        for name, x in chains.items():
            ax.plot(x[:, d], linewidth=1.0, label=name)
        ax.set_ylabel(f"dim {d}")
        ax.grid(True, alpha=0.3)
    axes[0, 0].legend(fontsize=8)
    axes[-1, 0].set_xlabel("sample")

    plt.tight_layout()
    plt.savefig(outpng, dpi=150)
    plt.close(fig)
    return outpng


# -----------------------------
# Main
# -----------------------------
def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(description="Convergence diagnostics for exported MCMCP chains")
    ap.add_argument("chains", nargs="+", help="Chain export JSON files")
    ap.add_argument("--threshold", type=float, default=1.96, help="Geweke |Z| threshold")
    ap.add_argument("--frac1", type=float, default=0.1, help="Geweke early window fraction")
    ap.add_argument("--frac2", type=float, default=0.5, help="Geweke late window fraction")
    ap.add_argument("--batches", type=int, default=30, help="Batches for the batch-means variance")
    ap.add_argument("--plot", action="store_true", help="Save trace plots (needs matplotlib)")
    ap.add_argument("--outdir", type=str, default="diagnostics_out", help="Output directory for plots")
    ap.add_argument("--progress", action="store_true", help="Show a progress bar over chains")
    args = ap.parse_args(argv)

    chains = {Path(p).stem: load_chain(p) for p in args.chains}

    print("\n--- MCMCP convergence diagnostics ---")
    for name, x in chains.items():
        print(f"{name}: n={x.shape[0]} dim={x.shape[1] if x.ndim > 1 else 1}")

    names = list(chains)
    if len(names) >= 2:
        a, b = chains[names[0]], chains[names[1]]
        n = min(len(a), len(b))
        r_hat = gelman_rubin(a[-n:], b[-n:])
        print(f"\nR-hat ({names[0]} vs {names[1]}, last {n} samples):")
        print("  " + " ".join(f"{r:.3f}" for r in np.atleast_1d(r_hat)))
        if len(names) > 2:
            print("NOTE: R-hat uses the two-chain formula; only the first two files are compared.")

    it = names
    if args.progress and tqdm is not None:
        it = tqdm(names, desc="Chains", leave=False)

    print("\nGeweke Z / ESS per dimension:")
    for name in it:
        x = chains[name]
        if x.ndim == 1:
            x = x[:, None]
        try:
            z = geweke(x, args.frac1, args.frac2, args.batches)
        except ValueError as exc:
            print(f"{name}: Geweke skipped ({exc})")
            z = np.full(x.shape[1], np.nan)
        ess = [ess_1d(x[:, d]) for d in range(x.shape[1])]
        flags = ["ok" if np.isfinite(s) and abs(s) < args.threshold else "!!" for s in z]
        print(f"{name}:")
        for d in range(x.shape[1]):
            print(f"  dim {d:2d} | Z={z[d]: .3f} {flags[d]} | ESS≈{ess[d]:.1f}")

    if args.plot:
        outpng = make_plots(args.outdir, {k: (v if v.ndim > 1 else v[:, None]) for k, v in chains.items()})
        print(f"\nSaved figure: {outpng}")


if __name__ == "__main__":
    main()
