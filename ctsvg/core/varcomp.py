"""
Variance-component estimation for the spatial mixed model.

The model covariance is V = sum_k tau_k Sigma_k + tau_e I. Estimation is
carried out on the REML-transformed data r = Q0' y, whose covariance is

    W = sum_k tau_k B_k + tau_e I,   B_k = Q0' Sigma_k Q0,

so fixed effects (and the rank deficiency of X) drop out exactly. Two
estimators are provided:

- ``moment``: MINQUE(0) / Haseman-Elston normal equations
  tr(M_i M_j) tau = r' M_i r solved by non-negative least squares.
- ``reml``: average-information REML started from the moment estimate,
  with components clipped at the zero boundary after every update and
  step halving whenever the restricted log-likelihood decreases.

All returned components are >= 0.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Literal

import numpy as np
import scipy.linalg
from numpy.typing import NDArray
from scipy.optimize import nnls

from .errors import ConfigurationError
from .kernel import KernelBundle


@dataclass(frozen=True)
class VarCompConfig:
    """Settings for :func:`estimate_gene`."""

    method: Literal["reml", "moment"] = "reml"
    max_iter: int = 100
    tol: float = 1e-5
    min_residual: float = 1e-6
    """Floor for tau_e, relative to the residual variance r'r / n'."""
    max_halvings: int = 10

    def __post_init__(self):
        if self.method not in ("reml", "moment"):
            raise ConfigurationError(
                f"Unknown method '{self.method}', expected 'reml' or 'moment'"
            )
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be >= 1, got {self.max_iter}")
        if not self.tol > 0:
            raise ConfigurationError(f"tol must be > 0, got {self.tol}")
        if not 0 < self.min_residual < 1:
            raise ConfigurationError(
                f"min_residual must be in (0, 1), got {self.min_residual}"
            )


@dataclass(frozen=True, eq=False)
class ComponentStructure:
    """Gene-independent matrices for variance-component estimation."""

    projected: NDArray[np.float64]
    """B_k = Q0' Sigma_k Q0, shape (n_cell_types, n', n')."""

    gram: NDArray[np.float64]
    """tr(M_i M_j) over {B_1..B_K, I}, shape (K + 1, K + 1)."""

    scale: NDArray[np.float64]
    """tr(Sigma_k) / N per cell type, followed by 1 for the residual."""

    @property
    def n_components(self) -> int:
        return self.projected.shape[0] + 1


def prepare_components(bundle: KernelBundle) -> ComponentStructure:
    """Project every Sigma_k onto the residual space and form the trace Gram matrix."""
    q0 = bundle.residual_basis
    n_types = bundle.n_cell_types
    df = bundle.df_resid
    projected = np.empty((n_types, df, df), dtype=np.float64)
    for k in range(n_types):
        b = q0.T @ bundle.sigmas[k] @ q0
        projected[k] = 0.5 * (b + b.T)

    gram = np.empty((n_types + 1, n_types + 1), dtype=np.float64)
    flat = projected.reshape(n_types, -1)
    gram[:n_types, :n_types] = flat @ flat.T
    traces = np.trace(projected, axis1=1, axis2=2)
    gram[:n_types, n_types] = traces
    gram[n_types, :n_types] = traces
    gram[n_types, n_types] = float(df)

    scale = np.append(np.trace(bundle.sigmas, axis1=1, axis2=2) / bundle.n_spots, 1.0)
    return ComponentStructure(projected=projected, gram=gram, scale=scale)


@dataclass
class VarCompOutcome:
    """Estimate for one gene."""

    components: NDArray[np.float64]
    """tau_1..tau_K followed by tau_e."""

    n_iter: int
    status: str
    loglik: float = np.nan


def _moment_rhs(r: NDArray[np.float64], structure: ComponentStructure) -> NDArray[np.float64]:
    rhs = np.empty(structure.n_components)
    for k in range(structure.n_components - 1):
        rhs[k] = r @ structure.projected[k] @ r
    rhs[-1] = r @ r
    return rhs


def moment_estimate(r: NDArray[np.float64], structure: ComponentStructure) -> NDArray[np.float64]:
    """Non-negative MINQUE(0) estimate from residuals r (length n')."""
    tau, _ = nnls(structure.gram, _moment_rhs(r, structure))
    return tau


def _moment_lstsq(r: NDArray[np.float64], structure: ComponentStructure) -> NDArray[np.float64]:
    return np.linalg.lstsq(structure.gram, _moment_rhs(r, structure), rcond=None)[0]


def _reml_terms(
    tau: NDArray[np.float64],
    r: NDArray[np.float64],
    structure: ComponentStructure,
) -> tuple[float, NDArray[np.float64], NDArray[np.float64]]:
    """Restricted log-likelihood, score vector and average information at tau."""
    n_types = structure.n_components - 1
    df = r.shape[0]
    w = np.tensordot(tau[:-1], structure.projected, axes=1)
    w[np.diag_indices(df)] += tau[-1]

    factor = scipy.linalg.cho_factor(w, lower=True)
    w_inv = scipy.linalg.cho_solve(factor, np.eye(df))
    a = w_inv @ r
    logdet = 2.0 * np.sum(np.log(np.diag(factor[0])))
    loglik = -0.5 * (logdet + float(r @ a))

    u = np.empty((n_types + 1, df))
    traces = np.empty(n_types + 1)
    for k in range(n_types):
        u[k] = structure.projected[k] @ a
        traces[k] = np.sum(w_inv * structure.projected[k])
    u[-1] = a
    traces[-1] = np.trace(w_inv)

    score = 0.5 * (u @ a - traces)
    info = 0.5 * (u @ w_inv @ u.T)
    return loglik, score, info


def _clip(tau: NDArray[np.float64], floor: float) -> NDArray[np.float64]:
    out = np.clip(tau, 0.0, None)
    out[-1] = max(out[-1], floor)
    return out


def estimate_gene(
    r: NDArray[np.float64],
    structure: ComponentStructure,
    config: VarCompConfig = VarCompConfig(),
    deadline: float | None = None,
) -> VarCompOutcome:
    """
    Estimate variance components for one gene from its residuals r = Q0' y.

    Parameters
    ----------
    r : ndarray of shape (n',)
        REML-transformed expression of the gene.
    structure : ComponentStructure
        Output of :func:`prepare_components`.
    config : VarCompConfig
        Estimator settings.
    deadline : float, optional
        ``time.monotonic()`` value after which iteration stops with
        ``status='timeout'`` and the current estimate.

    Returns
    -------
    outcome : VarCompOutcome
        ``status`` is 'ok', 'not_converged' or 'timeout'.

    Notes
    -----
    When the moment start cannot be computed, or W is not positive
    definite there, the clipped starting estimate is returned with
    ``status='not_converged'``.
    """
    df = r.shape[0]
    resid_var = float(r @ r) / df
    floor = config.min_residual * resid_var

    start_status = "ok"
    try:
        tau = _clip(moment_estimate(r, structure), floor)
    except RuntimeError:
        # nnls iteration limit; fall back to the clipped unconstrained solution
        tau = _clip(_moment_lstsq(r, structure), floor)
        start_status = "not_converged"
    if config.method == "moment":
        return VarCompOutcome(components=tau, n_iter=0, status=start_status)

    try:
        loglik, score, info = _reml_terms(tau, r, structure)
    except np.linalg.LinAlgError:
        return VarCompOutcome(tau, 0, "not_converged")
    for it in range(1, config.max_iter + 1):
        if deadline is not None and time.monotonic() > deadline:
            return VarCompOutcome(tau, it - 1, "timeout", loglik)

        # Components pinned at zero with a negative score stay on the boundary
        free = ~((tau <= 0) & (score <= 0))
        free[-1] = True
        step = np.zeros_like(tau)
        idx = np.flatnonzero(free)
        step[idx] = np.linalg.lstsq(info[np.ix_(idx, idx)], score[idx], rcond=None)[0]

        for _ in range(config.max_halvings + 1):
            candidate = _clip(tau + step, floor)
            try:
                cand_ll, cand_score, cand_info = _reml_terms(candidate, r, structure)
            except np.linalg.LinAlgError:
                cand_ll = -np.inf
            if cand_ll >= loglik - 1e-10 * abs(loglik):
                break
            step *= 0.5
        else:
            return VarCompOutcome(tau, it, "not_converged", loglik)

        change = np.max(np.abs(candidate - tau))
        tau, loglik, score, info = candidate, cand_ll, cand_score, cand_info
        if change <= config.tol * max(float(np.sum(tau)), resid_var * 1e-12):
            return VarCompOutcome(tau, it, "ok", loglik)

    return VarCompOutcome(tau, config.max_iter, "not_converged", loglik)
