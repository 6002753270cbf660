"""
Kernel bandwidth selection from gene expression profiles.

Each gene contributes a one-dimensional bandwidth estimate computed from
its expression values across spots; the global bandwidth is the median of
the per-gene estimates. The per-gene rule depends on the number of spots:
Sheather-Jones for moderate datasets, Silverman's rule of thumb above
``SJ_MAX_SPOTS`` where the plug-in root search gets expensive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import brentq

from .errors import ConfigurationError, DegenerateBandwidthError

logger = logging.getLogger(__name__)

SJ_MAX_SPOTS = 5000
"""Largest spot count for which Sheather-Jones is used under ``method='auto'``."""

_SJ_BINS = 1000
_DELTA_MAX = 1000.0
_SQRT_2PI = np.sqrt(2.0 * np.pi)


@dataclass
class BandwidthResult:
    """Result of bandwidth selection."""

    bandwidth: float
    """Median of the finite per-gene estimates."""

    rule: Literal["sj", "silverman"]
    """Per-gene rule that produced the estimates."""

    per_gene: NDArray[np.floating]
    """Per-gene estimates (NaN where the gene was degenerate)."""

    n_degenerate: int
    """Number of genes without a usable estimate."""


def select_rule(n_spots: int) -> Literal["sj", "silverman"]:
    """Rule used by ``method='auto'``: ``'sj'`` for n <= 5000, else ``'silverman'``."""
    return "sj" if n_spots <= SJ_MAX_SPOTS else "silverman"


def _robust_scale(x: NDArray[np.float64]) -> tuple[float, float]:
    sd = float(np.std(x, ddof=1))
    q75, q25 = np.percentile(x, [75, 25])
    return sd, float(q75 - q25)


def bandwidth_silverman(x: NDArray[np.floating]) -> float:
    """
    Silverman's rule of thumb, ``0.9 * min(sd, IQR/1.34) * n^(-1/5)``.

    Falls back to the standard deviation when the IQR is zero (typical for
    sparse count vectors). Returns NaN for vectors without spread.
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.shape[0]
    if n < 2 or not np.all(np.isfinite(x)):
        return np.nan
    sd, iqr = _robust_scale(x)
    if not sd > 0:
        return np.nan
    lo = min(sd, iqr / 1.34)
    if not lo > 0:
        lo = sd
    return float(0.9 * lo * n ** (-0.2))


def _pair_counts(x: NDArray[np.float64], n_bins: int) -> tuple[float, NDArray[np.float64]]:
    """Binned counts of unordered point pairs by bin distance."""
    xmin = x.min()
    width = (x.max() - xmin) * 1.01 / n_bins
    idx = np.minimum(((x - xmin) / width).astype(np.intp), n_bins - 1)
    counts = np.bincount(idx, minlength=n_bins).astype(np.float64)
    lagged = np.correlate(counts, counts, mode="full")[n_bins - 1:]
    lagged[0] = 0.5 * np.sum(counts * (counts - 1.0))
    return width, lagged


def _phi4(n: int, width: float, cnt: NDArray[np.float64], h: float) -> float:
    delta = (np.arange(cnt.shape[0]) * width / h) ** 2
    keep = delta < _DELTA_MAX
    d = delta[keep]
    term = np.exp(-d / 2) * (d * d - 6 * d + 3)
    total = 2 * np.sum(term * cnt[keep]) + 3 * n
    return float(total / (n * (n - 1) * h ** 5 * _SQRT_2PI))


def _phi6(n: int, width: float, cnt: NDArray[np.float64], h: float) -> float:
    delta = (np.arange(cnt.shape[0]) * width / h) ** 2
    keep = delta < _DELTA_MAX
    d = delta[keep]
    term = np.exp(-d / 2) * (d ** 3 - 15 * d ** 2 + 45 * d - 15)
    total = 2 * np.sum(term * cnt[keep]) - 15 * n
    return float(total / (n * (n - 1) * h ** 7 * _SQRT_2PI))


def bandwidth_sj(x: NDArray[np.floating], n_bins: int = _SJ_BINS) -> float:
    """
    Sheather-Jones "solve-the-equation" plug-in bandwidth.

    Uses binned pair counts for the density-derivative functionals and a
    Brent root search on the SJ fixed-point equation, widening the initial
    bracket ``[0.1 * hmax, hmax]`` when it does not contain a root.

    Returns NaN when the sample is too sparse for the functionals or the
    equation has no root in the widened bracket.
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.shape[0]
    if n < 2 or not np.all(np.isfinite(x)):
        return np.nan
    sd, iqr = _robust_scale(x)
    scale = min(sd, iqr / 1.349)
    if not scale > 0:
        return np.nan

    width, cnt = _pair_counts(x, n_bins)
    a = 1.24 * scale * n ** (-1 / 7)
    b = 1.23 * scale * n ** (-1 / 9)
    c1 = 1.0 / (2.0 * np.sqrt(np.pi) * n)

    td = -_phi6(n, width, cnt, b)
    if not np.isfinite(td) or td <= 0:
        return np.nan
    with np.errstate(invalid="ignore", divide="ignore"):
        alpha2 = 1.357 * (_phi4(n, width, cnt, a) / td) ** (1 / 7)
    if not np.isfinite(alpha2):
        return np.nan

    def fixed_point(h: float) -> float:
        with np.errstate(invalid="ignore", divide="ignore"):
            return (c1 / _phi4(n, width, cnt, alpha2 * h ** (5 / 7))) ** 0.2 - h

    hmax = 1.144 * scale * n ** (-0.2)
    lower, upper = 0.1 * hmax, hmax
    tol = 0.1 * lower
    f_lo, f_hi = fixed_point(lower), fixed_point(upper)
    n_try = 1
    while not f_lo * f_hi <= 0:
        if n_try > 99 or not (np.isfinite(f_lo) and np.isfinite(f_hi)):
            return np.nan
        if n_try % 2:
            upper *= 1.2
            f_hi = fixed_point(upper)
        else:
            lower /= 1.2
            f_lo = fixed_point(lower)
        n_try += 1

    try:
        return float(brentq(fixed_point, lower, upper, xtol=tol))
    except (ValueError, RuntimeError):
        return np.nan


def select_bandwidth(
    expression: NDArray[np.floating],
    method: Literal["auto", "sj", "silverman"] = "auto",
) -> BandwidthResult:
    """
    Select a single kernel bandwidth from a genes x spots expression matrix.

    Parameters
    ----------
    expression : ndarray of shape (n_genes, n_spots)
        Expression values (normalized, as supplied to the tests).
    method : {'auto', 'sj', 'silverman'}, default='auto'
        Per-gene rule. ``'auto'`` picks via :func:`select_rule`.

    Returns
    -------
    result : BandwidthResult

    Raises
    ------
    DegenerateBandwidthError
        If no gene yields a finite positive estimate.
    """
    expression = np.atleast_2d(np.asarray(expression, dtype=np.float64))
    n_genes, n_spots = expression.shape

    if method == "auto":
        rule = select_rule(n_spots)
    elif method in ("sj", "silverman"):
        rule = method
    else:
        raise ConfigurationError(
            f"Unknown method '{method}', expected one of: 'auto', 'sj', 'silverman'"
        )

    estimator = bandwidth_sj if rule == "sj" else bandwidth_silverman
    per_gene = np.array([estimator(row) for row in expression], dtype=np.float64)
    per_gene[~(per_gene > 0)] = np.nan

    valid = np.isfinite(per_gene)
    n_degenerate = int(n_genes - valid.sum())
    if not valid.any():
        raise DegenerateBandwidthError(
            f"All {n_genes} genes gave degenerate '{rule}' bandwidth estimates "
            "(zero-variance or too sparse expression); pass an explicit bandwidth"
        )

    bandwidth = float(np.median(per_gene[valid]))
    logger.info(
        "Selected bandwidth %.4g with rule '%s' (%d spots, %d/%d genes degenerate)",
        bandwidth, rule, n_spots, n_degenerate, n_genes,
    )
    return BandwidthResult(
        bandwidth=bandwidth,
        rule=rule,
        per_gene=per_gene,
        n_degenerate=n_degenerate,
    )
