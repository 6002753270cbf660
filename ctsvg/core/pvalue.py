"""
P-value computation and multiple testing correction.

Provides:
- Tail probabilities of weighted sums of chi-square variables,
  Q = sum_j w_j chi2(h_j), via Imhof inversion with saddlepoint and
  Liu moment-matching fallbacks
- Multiple testing adjustment (BH, BY, Bonferroni, Holm, Storey)
"""

from __future__ import annotations

import logging
from typing import Literal

import numpy as np
from numpy.typing import NDArray
from scipy import integrate, optimize, stats

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

AdjustMethod = Literal["bh", "by", "bonferroni", "holm", "storey", "none"]

_METHOD_ALIASES = {
    "bh": "bh",
    "fdr_bh": "bh",
    "benjamini-hochberg": "bh",
    "by": "by",
    "fdr_by": "by",
    "benjamini-yekutieli": "by",
    "bonferroni": "bonferroni",
    "holm": "holm",
    "storey": "storey",
    "none": "none",
}

IMHOF_RELIABLE_MIN = 1e-8
"""Imhof results below this are re-evaluated with the saddlepoint approximation."""


def normalize_adjust_method(method: str) -> str:
    """Map user spellings ('BH', 'BY', 'Bonferroni', ...) to canonical names."""
    key = str(method).strip().lower()
    if key not in _METHOD_ALIASES:
        raise ConfigurationError(
            f"Unknown method: {method!r}, expected one of "
            "'BH', 'BY', 'Bonferroni', 'holm', 'storey', 'none'"
        )
    return _METHOD_ALIASES[key]


def _prepare_weights(
    weights: NDArray[np.floating],
    dof: NDArray[np.floating] | None,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    w = np.asarray(weights, dtype=np.float64).ravel()
    h = np.ones_like(w) if dof is None else np.asarray(dof, dtype=np.float64).ravel()
    if h.shape != w.shape:
        raise ValueError(f"dof shape {h.shape} does not match weights shape {w.shape}")
    keep = (w != 0) & (h > 0)
    return w[keep], h[keep]


def imhof_sf(
    x: float,
    weights: NDArray[np.floating],
    dof: NDArray[np.floating] | None = None,
    limit: int = 400,
    epsabs: float = 1e-12,
) -> tuple[float, float, bool]:
    """
    P(Q > x) by numerical inversion of the characteristic function (Imhof 1961).

        P(Q > x) = 1/2 + (1/pi) int_0^inf sin(theta(u)) / (u rho(u)) du
        theta(u) = 1/2 sum h_j atan(w_j u) - x u / 2
        rho(u)   = prod (1 + w_j^2 u^2)^(h_j / 4)

    Weights may have either sign.

    Returns
    -------
    pvalue : float
    abserr : float
        Absolute error estimate of the quadrature.
    ok : bool
        False when the quadrature reported a problem.
    """
    w, h = _prepare_weights(weights, dof)
    if w.size == 0:
        return (1.0 if x < 0 else 0.0), 0.0, True

    # Rescale to unit max weight for conditioning
    scale = float(np.max(np.abs(w)))
    w = w / scale
    x = x / scale
    half_h = 0.5 * h
    quarter_h = 0.25 * h

    def integrand(u: float) -> float:
        wu = w * u
        theta = np.dot(half_h, np.arctan(wu)) - 0.5 * x * u
        log_rho = np.dot(quarter_h, np.log1p(wu * wu))
        return np.sin(theta) / (u * np.exp(log_rho))

    out = integrate.quad(
        integrand, 0.0, np.inf, limit=limit, epsabs=epsabs, epsrel=1e-10, full_output=1,
    )
    value, abserr = out[0], out[1]
    # A quadrature warning adds a 4th element; accept it if the error is still small
    ok = bool(np.isfinite(value)) and (len(out) == 3 or abserr < 1e-8)
    return float(0.5 + value / np.pi), float(abserr / np.pi), ok


def _cgf(s: float, w: NDArray[np.float64], h: NDArray[np.float64]) -> tuple[float, float, float]:
    """Cumulant generating function of Q and its first two derivatives at s."""
    one_minus = 1.0 - 2.0 * s * w
    k0 = -0.5 * np.sum(h * np.log(one_minus))
    k1 = np.sum(h * w / one_minus)
    k2 = np.sum(2.0 * h * w * w / one_minus ** 2)
    return float(k0), float(k1), float(k2)


def saddlepoint_sf(
    x: float,
    weights: NDArray[np.floating],
    dof: NDArray[np.floating] | None = None,
) -> float:
    """
    P(Q > x) by the Lugannani-Rice saddlepoint approximation (Kuonen 1999).

    Accurate far in the tail, where the Imhof quadrature loses relative
    precision. Returns NaN when the saddlepoint is too close to zero for
    the formula to be stable (x near the mean of Q).
    """
    w, h = _prepare_weights(weights, dof)
    if w.size == 0:
        return 1.0 if x < 0 else 0.0
    w_max, w_min = float(w.max()), float(w.min())
    if w_max <= 0 and x >= 0:
        return 0.0
    if w_min >= 0 and x <= 0:
        return 1.0

    def score(s: float) -> float:
        return _cgf(s, w, h)[1] - x

    # Domain of the CGF: 1 - 2 s w_j > 0 for all j, i.e.
    # 1/(2 w_min) < s < 1/(2 w_max); pull both ends slightly inside.
    margin = 1.0 - 1e-10
    if w_max > 0:
        hi = margin * 0.5 / w_max
    else:
        hi = 1.0
        while score(hi) < 0:
            hi *= 2.0
            if hi > 1e12:
                return np.nan
    if w_min < 0:
        lo = margin * 0.5 / w_min
    else:
        lo = -1.0
        while score(lo) > 0:
            lo *= 2.0
            if lo < -1e12:
                return np.nan

    f_lo, f_hi = score(lo), score(hi)
    if not (np.isfinite(f_lo) and np.isfinite(f_hi)) or f_lo * f_hi > 0:
        return np.nan
    s_hat = optimize.brentq(score, lo, hi, xtol=1e-14, maxiter=500)
    if abs(s_hat) < 1e-8:
        return np.nan

    k0, _, k2 = _cgf(s_hat, w, h)
    r2 = 2.0 * (s_hat * x - k0)
    if r2 <= 0 or k2 <= 0:
        return np.nan
    r = np.sign(s_hat) * np.sqrt(r2)
    v = s_hat * np.sqrt(k2)
    p = stats.norm.sf(r) + stats.norm.pdf(r) * (1.0 / v - 1.0 / r)
    return float(p) if 0.0 <= p <= 1.0 else np.nan


def liu_sf(
    x: float,
    weights: NDArray[np.floating],
    dof: NDArray[np.floating] | None = None,
) -> float:
    """
    P(Q > x) by Liu, Tang & Zhang (2009) four-cumulant matching.

    Matches Q to a (noncentral) chi-square. Requires non-negative weights.
    """
    w, h = _prepare_weights(weights, dof)
    if w.size == 0:
        return 1.0 if x < 0 else 0.0
    if np.any(w < 0):
        raise ValueError("liu_sf requires non-negative weights")

    c1 = np.sum(h * w)
    c2 = np.sum(h * w ** 2)
    c3 = np.sum(h * w ** 3)
    c4 = np.sum(h * w ** 4)
    s1 = c3 / c2 ** 1.5
    s2 = c4 / c2 ** 2

    if s1 ** 2 > s2:
        a = 1.0 / (s1 - np.sqrt(s1 ** 2 - s2))
        delta = s1 * a ** 3 - a ** 2
        df = a ** 2 - 2.0 * delta
    else:
        a = 1.0 / s1
        delta = 0.0
        df = 1.0 / s1 ** 2

    t_star = (x - c1) / np.sqrt(2.0 * c2)
    q = t_star * np.sqrt(2.0) * a + df + delta
    if delta > 0:
        return float(stats.ncx2.sf(q, df, delta))
    return float(stats.chi2.sf(q, df))


def mixture_chi2_sf(
    x: float,
    weights: NDArray[np.floating],
    dof: NDArray[np.floating] | None = None,
) -> tuple[float, str]:
    """
    P(sum_j w_j chi2(h_j) > x) with a three-tier method chain.

    1. Imhof inversion.
    2. Saddlepoint approximation, when Imhof fails or its value is below
       ``IMHOF_RELIABLE_MIN`` (where its absolute error dominates).
    3. Liu moment matching, when both fail and the weights are non-negative.

    Returns
    -------
    pvalue : float
        Tail probability clipped to [0, 1].
    method : {'imhof', 'saddlepoint', 'liu', 'exact'}
        Method that produced the value.
    """
    w, h = _prepare_weights(weights, dof)
    if w.size == 0:
        return (1.0 if x < 0 else 0.0), "exact"
    if np.all(w > 0) and x <= 0:
        return 1.0, "exact"
    if np.all(w < 0) and x >= 0:
        return 0.0, "exact"

    p, abserr, ok = imhof_sf(x, w, h)
    if ok and IMHOF_RELIABLE_MIN <= p <= 1.0 and abserr < 0.1 * p:
        return float(p), "imhof"

    p_sp = saddlepoint_sf(x, w, h)
    if np.isfinite(p_sp):
        return float(np.clip(p_sp, 0.0, 1.0)), "saddlepoint"

    if ok and 0.0 <= p <= 1.0:
        return float(p), "imhof"
    if np.all(w >= 0):
        return float(np.clip(liu_sf(x, w, h), 0.0, 1.0)), "liu"

    logger.debug("All tail methods failed for x=%.6g; clipping Imhof value %.3g", x, p)
    return float(np.clip(p, 0.0, 1.0)), "imhof"


def adjust_pvalues(
    pvalues: NDArray[np.floating],
    method: str = "BY",
) -> NDArray[np.floating]:
    """
    Adjust P-values for multiple testing.

    Parameters
    ----------
    pvalues : ndarray
        Raw P-values. NaN entries are left as NaN and excluded from the
        number of tests.
    method : str, default='BY'
        Correction method (case-insensitive):
        - 'BY': Benjamini-Yekutieli (FDR under arbitrary dependence)
        - 'BH': Benjamini-Hochberg (FDR control)
        - 'Bonferroni': Bonferroni (FWER control)
        - 'holm': Holm-Bonferroni (FWER control, less conservative)
        - 'storey': Storey's q-value (estimates the null proportion)
        - 'none': No correction

    Returns
    -------
    adjusted : ndarray
        Adjusted P-values, aligned with the input.
    """
    method = normalize_adjust_method(method)
    pvalues = np.asarray(pvalues, dtype=float)
    n = len(pvalues)

    if n == 0:
        return pvalues

    nan_mask = np.isnan(pvalues)
    valid_pvalues = pvalues[~nan_mask]
    n_valid = len(valid_pvalues)

    if n_valid == 0:
        return pvalues.copy()

    pmin, pmax = valid_pvalues.min(), valid_pvalues.max()
    if pmin < 0.0 or pmax > 1.0:
        raise ValueError(
            f"P-values must be in [0, 1], got range [{pmin:.6g}, {pmax:.6g}]"
        )

    order = np.argsort(valid_pvalues, kind="mergesort")
    p_sorted = valid_pvalues[order]
    ranks = np.arange(1, n_valid + 1)

    if method == "none":
        adjusted_sorted = p_sorted.copy()

    elif method == "bonferroni":
        adjusted_sorted = np.minimum(p_sorted * n_valid, 1.0)

    elif method == "holm":
        # Step-down: enforce monotonicity from smallest to largest
        adjusted_sorted = np.maximum.accumulate(p_sorted * (n_valid - ranks + 1))
        adjusted_sorted = np.minimum(adjusted_sorted, 1.0)

    elif method in ("bh", "by", "storey"):
        factor = float(n_valid)
        if method == "by":
            # c(m) = sum_{i<=m} 1/i
            factor *= np.sum(1.0 / ranks)
        elif method == "storey":
            lambdas = np.arange(0.05, 0.95, 0.05)
            pi0_estimates = np.array([
                np.mean(valid_pvalues > lam) / (1 - lam) for lam in lambdas
            ])
            factor *= min(1.0, float(np.mean(pi0_estimates[-5:])))

        adjusted_sorted = p_sorted * factor / ranks
        # Step-up: enforce monotonicity from largest to smallest
        adjusted_sorted = np.minimum.accumulate(adjusted_sorted[::-1])[::-1]
        adjusted_sorted = np.minimum(adjusted_sorted, 1.0)

    adjusted_valid = np.empty(n_valid)
    adjusted_valid[order] = adjusted_sorted

    adjusted = np.full(n, np.nan)
    adjusted[~nan_mask] = adjusted_valid
    return adjusted
