"""
Variance-component score tests under the null model y = X beta + eps.

With Q0 an orthonormal basis of the complement of col(X), the residual
vector is r = Q0' y (length n' = N - rank X) and, for a test kernel S
(either sum_k Sigma_k or a single Sigma_k),

    T = r' B r / (2 s^2),   B = Q0' S Q0,   s^2 = r'r / n'.

Under H0 with known error variance T ~ sum_j (lambda_j / 2) chi2(1),
lambda_j the eigenvalues of B. Because s^2 is estimated, the exact
finite-sample null is instead

    P(T > t) = P( sum_j (lambda_j / 2 - t / n') chi2(1) > 0 ).

The eigenvalues depend only on the kernel bundle, so they are computed
once per test kernel and shared by all genes.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.linalg
from numpy.typing import NDArray

from .kernel import KernelBundle
from .pvalue import mixture_chi2_sf

DEGENERATE_RTOL = 1e-12
"""Residual sum of squares below this fraction of y'y marks a gene degenerate."""

EIGEN_RTOL = 1e-5
"""Eigenvalues below ``EIGEN_RTOL * mean(positive eigenvalues)`` count as zero."""


@dataclass(frozen=True, eq=False)
class NullSpectrum:
    """Eigenvalues of Q0' S Q0 for one test kernel S."""

    eigenvalues: NDArray[np.float64]
    """Non-negligible eigenvalues, descending."""

    n_null: int
    """Number of eigenvalues treated as zero (including numerical noise)."""

    @property
    def df_resid(self) -> int:
        return self.eigenvalues.shape[0] + self.n_null

    def weights(self, statistic: float, correction: bool) -> tuple[
        float, NDArray[np.float64], NDArray[np.float64]
    ]:
        """
        Threshold, weights and degrees of freedom of the null mixture.

        Returns ``(x, w, h)`` such that ``p = P(sum_j w_j chi2(h_j) > x)``.
        """
        half = 0.5 * self.eigenvalues
        if not correction:
            return statistic, half, np.ones_like(half)
        shift = statistic / self.df_resid
        w = np.append(half - shift, -shift)
        h = np.append(np.ones_like(half), float(self.n_null))
        return 0.0, w, h


def null_spectrum(bundle: KernelBundle, test_kernel: NDArray[np.float64]) -> NullSpectrum:
    """Eigen-decompose the projected test kernel Q0' S Q0."""
    q0 = bundle.residual_basis
    projected = q0.T @ test_kernel @ q0
    projected = 0.5 * (projected + projected.T)
    eig = scipy.linalg.eigvalsh(projected)[::-1]
    positive = eig[eig > 0]
    if positive.size == 0:
        return NullSpectrum(eigenvalues=np.empty(0), n_null=eig.shape[0])
    threshold = EIGEN_RTOL * float(positive.mean())
    kept = eig[eig > threshold]
    return NullSpectrum(eigenvalues=kept.copy(), n_null=int(eig.shape[0] - kept.shape[0]))


@dataclass(frozen=True, eq=False)
class Residuals:
    """Null-model residuals of a gene batch, in spot coordinates."""

    values: NDArray[np.float64]
    """Residual vectors e = Q0 Q0' y, shape (n_genes, n_spots)."""

    rss: NDArray[np.float64]
    """Residual sums of squares r'r, shape (n_genes,)."""

    degenerate: NDArray[np.bool_]
    """Genes with (numerically) zero residual variance or non-finite values."""

    df_resid: int


def residualize(expression: NDArray[np.float64], bundle: KernelBundle) -> Residuals:
    """Project a genes x spots matrix onto the residual space of the design."""
    expression = np.atleast_2d(np.asarray(expression, dtype=np.float64))
    finite = np.all(np.isfinite(expression), axis=1)
    safe = np.where(finite[:, None], expression, 0.0)

    q0 = bundle.residual_basis
    r = safe @ q0
    rss = np.einsum("ij,ij->i", r, r)
    total = np.einsum("ij,ij->i", safe, safe)
    degenerate = ~finite | (rss <= DEGENERATE_RTOL * np.maximum(total, 1.0))
    return Residuals(
        values=r @ q0.T,
        rss=rss,
        degenerate=degenerate,
        df_resid=bundle.df_resid,
    )


@dataclass
class ScoreOutcome:
    """Score test result for one (gene, kernel) unit."""

    statistic: float
    pvalue: float
    status: str
    method: str | None = None


def score_statistic(
    residual: NDArray[np.float64],
    rss: float,
    df_resid: int,
    test_kernel: NDArray[np.float64],
) -> float:
    """T = e' S e / (2 s^2) with s^2 = rss / df_resid."""
    sigma2 = rss / df_resid
    return float(residual @ test_kernel @ residual) / (2.0 * sigma2)


def score_test(
    residuals: Residuals,
    gene: int,
    test_kernel: NDArray[np.float64],
    spectrum: NullSpectrum,
    correction: bool = True,
) -> ScoreOutcome:
    """
    Score test of one gene against one test kernel.

    Degenerate genes yield NaN statistic and p-value with
    ``status='degenerate'`` instead of raising.
    """
    if residuals.degenerate[gene]:
        return ScoreOutcome(np.nan, np.nan, "degenerate")
    statistic = score_statistic(
        residuals.values[gene], residuals.rss[gene], residuals.df_resid, test_kernel,
    )
    if not np.isfinite(statistic):
        return ScoreOutcome(np.nan, np.nan, "degenerate")
    if spectrum.eigenvalues.size == 0:
        return ScoreOutcome(statistic, 1.0, "ok", "exact")
    x, w, h = spectrum.weights(statistic, correction)
    pvalue, method = mixture_chi2_sf(x, w, h)
    return ScoreOutcome(statistic, pvalue, "ok", method)
