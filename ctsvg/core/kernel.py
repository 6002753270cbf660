"""
Spatial kernel and structural matrices shared by every test.

For spots s_1..s_N with bandwidth h the Gaussian kernel is

    K_ij = exp(-||s_i - s_j||^2 / (2 h^2))

and cell type k contributes the covariance Sigma_k = Pi_k K Pi_k with
Pi_k = diag(pi_k), the per-spot proportions of k. The design matrix is
[1, covariates, proportions]; since proportions sum to one it is rank
deficient, so downstream code uses an orthonormal basis Q0 of the
orthogonal complement of its column space instead of inverting X'X.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd
import scipy.linalg
from numba import njit, prange
from numpy.typing import NDArray

from .bandwidth import BandwidthResult, select_bandwidth
from .errors import (
    ConfigurationError,
    InputValidationError,
    SingularKernelError,
    UnknownCellTypeError,
)
from .inputs import align_to_spots, expression_array, spots_frame

logger = logging.getLogger(__name__)

PSD_TOLERANCE = 1e-8
"""Relative tolerance on negative kernel eigenvalues."""

SIMPLEX_TOLERANCE = 1e-6


@njit(cache=True, parallel=True)
def _gaussian_gram(coords: NDArray[np.float64], bandwidth: float) -> NDArray[np.float64]:
    """
    Dense Gaussian Gram matrix, filled symmetrically.

    Each (i, j) pair is evaluated once and mirrored, so the result is
    exactly symmetric with a unit diagonal.
    """
    n_spots = coords.shape[0]
    n_dims = coords.shape[1]
    inv = 1.0 / (2.0 * bandwidth * bandwidth)
    out = np.empty((n_spots, n_spots), dtype=np.float64)

    for i in prange(n_spots):
        out[i, i] = 1.0
        for j in range(i + 1, n_spots):
            acc = 0.0
            for k in range(n_dims):
                diff = coords[i, k] - coords[j, k]
                acc += diff * diff
            value = np.exp(-acc * inv)
            out[i, j] = value
            out[j, i] = value

    return out


def gaussian_kernel(coords: NDArray[np.floating], bandwidth: float) -> NDArray[np.float64]:
    """Gaussian kernel matrix of ``coords`` (n_spots, n_dims) at ``bandwidth``."""
    if not bandwidth > 0:
        raise ConfigurationError(f"bandwidth must be > 0, got {bandwidth}")
    coords = np.ascontiguousarray(coords, dtype=np.float64)
    if coords.ndim == 1:
        coords = coords.reshape(-1, 1)
    return _gaussian_gram(coords, float(bandwidth))


def check_kernel(
    kernel: NDArray[np.float64],
    regularization: Literal["jitter", "clip"] | None = None,
    jitter: float = 1e-6,
) -> tuple[NDArray[np.float64], float]:
    """
    Verify that ``kernel`` is usable as a covariance, optionally repairing it.

    Parameters
    ----------
    kernel : ndarray of shape (n, n)
        Symmetric kernel matrix.
    regularization : {'jitter', 'clip'}, optional
        Repair applied when the kernel is numerically indefinite:
        - 'jitter': add ``jitter * lambda_max`` to the diagonal
        - 'clip': rebuild from the eigendecomposition with negative
          eigenvalues set to zero
        With ``None`` (default) an indefinite kernel raises.
    jitter : float, default=1e-6
        Relative diagonal loading for ``'jitter'``.

    Returns
    -------
    kernel : ndarray
        The (possibly repaired) kernel.
    min_eigenvalue : float
        Smallest eigenvalue of the returned kernel.

    Raises
    ------
    SingularKernelError
        Non-finite entries, or ``lambda_min < -1e-8 * lambda_max`` without a
        regularization policy.
    """
    if regularization not in (None, "jitter", "clip"):
        raise ConfigurationError(
            f"Unknown regularization '{regularization}', expected None, 'jitter' or 'clip'"
        )
    if not np.all(np.isfinite(kernel)):
        raise SingularKernelError("Kernel matrix contains non-finite entries")

    eigvals, eigvecs = scipy.linalg.eigh(kernel)
    lam_max = float(eigvals[-1])
    lam_min = float(eigvals[0])
    if lam_max <= 0:
        raise SingularKernelError(f"Kernel has no positive eigenvalue (max {lam_max:.3g})")
    if lam_min >= -PSD_TOLERANCE * lam_max:
        return kernel, lam_min

    if regularization is None:
        raise SingularKernelError(
            f"Kernel is numerically indefinite: min eigenvalue {lam_min:.3g}, "
            f"max {lam_max:.3g}; set regularization='jitter' or 'clip'"
        )

    logger.warning(
        "Kernel min eigenvalue %.3g below tolerance; applying '%s' regularization",
        lam_min, regularization,
    )
    if regularization == "jitter":
        load = max(jitter * lam_max, -lam_min)
        repaired = kernel + load * np.eye(kernel.shape[0])
        return repaired, lam_min + load

    clipped = np.clip(eigvals, 0.0, None)
    repaired = (eigvecs * clipped) @ eigvecs.T
    repaired = 0.5 * (repaired + repaired.T)
    return repaired, 0.0


def residual_basis(design: NDArray[np.float64]) -> tuple[NDArray[np.float64], int]:
    """
    Orthonormal basis of the orthogonal complement of ``col(design)``.

    Returns ``(Q0, rank)`` with ``Q0`` of shape (n, n - rank).
    """
    u, s, _ = scipy.linalg.svd(design, full_matrices=True)
    tol = max(design.shape) * np.finfo(np.float64).eps * (s[0] if s.size else 0.0)
    rank = int(np.sum(s > tol))
    return np.ascontiguousarray(u[:, rank:]), rank


@dataclass(frozen=True, eq=False)
class KernelBundle:
    """
    Immutable kernel structure shared across all gene-level computations.

    Built once by :func:`build_kernel`; engines and workers only read it.
    """

    spot_ids: list[str]
    """Spot ids, defining the row/column order of every matrix."""

    cell_types: list[str]
    """Cell-type labels, aligned with ``proportions`` columns and ``sigmas``."""

    bandwidth: float
    """Gaussian kernel bandwidth h."""

    coords: NDArray[np.float64]
    """Spatial coordinates (n_spots, n_dims)."""

    proportions: NDArray[np.float64]
    """Cell-type proportions (n_spots, n_cell_types); rows sum to one."""

    kernel: NDArray[np.float64]
    """Gaussian kernel K (n_spots, n_spots)."""

    design: NDArray[np.float64]
    """Design matrix X = [1, covariates, proportions]."""

    design_columns: list[str]
    """Column names of ``design``."""

    sigmas: NDArray[np.float64]
    """Per-cell-type covariances Sigma_k, shape (n_cell_types, n_spots, n_spots)."""

    residual_basis: NDArray[np.float64]
    """Orthonormal basis Q0 of the complement of col(X), shape (n_spots, df_resid)."""

    design_rank: int
    """Rank of the design matrix."""

    min_eigenvalue: float
    """Smallest eigenvalue of ``kernel`` after any regularization."""

    bandwidth_result: BandwidthResult | None = field(default=None, compare=False)
    """Bandwidth selection details when the bandwidth was chosen automatically."""

    @property
    def n_spots(self) -> int:
        return len(self.spot_ids)

    @property
    def n_cell_types(self) -> int:
        return len(self.cell_types)

    @property
    def df_resid(self) -> int:
        """Residual degrees of freedom N - rank(X)."""
        return self.n_spots - self.design_rank

    def cell_type_indices(self, cell_types: list[str] | None) -> list[int]:
        """
        Indices of ``cell_types`` (all when None).

        Raises UnknownCellTypeError listing every unknown label.
        """
        if cell_types is None:
            return list(range(self.n_cell_types))
        if isinstance(cell_types, str):
            cell_types = [cell_types]
        lookup = {ct: i for i, ct in enumerate(self.cell_types)}
        unknown = [ct for ct in cell_types if ct not in lookup]
        if unknown:
            raise UnknownCellTypeError(unknown, self.cell_types)
        return list(dict.fromkeys(lookup[ct] for ct in cell_types))

    def sigma(self, cell_type: str) -> NDArray[np.float64]:
        """Covariance Sigma_k of one cell type."""
        return self.sigmas[self.cell_type_indices([cell_type])[0]]

    def kernel_sum(self) -> NDArray[np.float64]:
        """Pooled spatial covariance sum_k Sigma_k."""
        return self.sigmas.sum(axis=0)


def _validate_proportions(proportions: pd.DataFrame) -> None:
    values = proportions.to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise InputValidationError("proportions contain non-finite values")
    if np.any(values < -SIMPLEX_TOLERANCE):
        raise InputValidationError("proportions contain negative values")
    row_sums = values.sum(axis=1)
    bad = np.abs(row_sums - 1.0) > SIMPLEX_TOLERANCE
    if np.any(bad):
        first = proportions.index[np.argmax(bad)]
        raise InputValidationError(
            f"proportions must sum to 1 per spot; {int(bad.sum())} spot(s) violate this "
            f"(e.g. spot '{first}' sums to {row_sums[bad][0]:.6g})"
        )


def build_kernel(
    coords,
    proportions,
    bandwidth: float | Literal["auto"] = "auto",
    expression=None,
    covariates=None,
    bandwidth_method: Literal["auto", "sj", "silverman"] = "auto",
    regularization: Literal["jitter", "clip"] | None = None,
    check_psd: bool = True,
) -> KernelBundle:
    """
    Build the kernel bundle shared by all tests.

    Parameters
    ----------
    coords : DataFrame or ndarray of shape (n_spots, n_dims)
        Spatial coordinates. Defines the spot order.
    proportions : DataFrame or ndarray of shape (n_spots, n_cell_types)
        Cell-type proportions; columns name the cell types.
    bandwidth : float or 'auto', default='auto'
        Kernel bandwidth. ``'auto'`` selects it from ``expression``.
    expression : DataFrame or ndarray of shape (n_genes, n_spots), optional
        Needed only when ``bandwidth='auto'``.
    covariates : DataFrame or ndarray of shape (n_spots, n_covariates), optional
        Extra fixed-effect columns appended to the design.
    bandwidth_method : {'auto', 'sj', 'silverman'}, default='auto'
        Per-gene bandwidth rule for ``bandwidth='auto'``.
    regularization : {'jitter', 'clip'}, optional
        Repair policy for an indefinite kernel (see :func:`check_kernel`).
    check_psd : bool, default=True
        Verify positive semi-definiteness from the kernel spectrum.

    Returns
    -------
    bundle : KernelBundle

    Raises
    ------
    DimensionMismatchError
        Spot keys disagree across inputs.
    SingularKernelError
        The kernel is indefinite and no regularization is configured.
    """
    coords_df = spots_frame(coords, "coords", "dim_")
    spot_ids = list(coords_df.index)
    prop_df = align_to_spots(spots_frame(proportions, "proportions", "celltype_"),
                             spot_ids, "proportions")
    _validate_proportions(prop_df)

    cov_df = None
    if covariates is not None:
        cov_df = align_to_spots(spots_frame(covariates, "covariates", "covariate_"),
                                spot_ids, "covariates")
        if not np.all(np.isfinite(cov_df.to_numpy(dtype=np.float64))):
            raise InputValidationError("covariates contain non-finite values")

    coords_arr = coords_df.to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(coords_arr)):
        raise InputValidationError("coords contain non-finite values")

    bw_result = None
    if isinstance(bandwidth, str):
        if bandwidth != "auto":
            raise ConfigurationError(f"bandwidth must be a positive float or 'auto', got {bandwidth!r}")
        if expression is None:
            raise ConfigurationError("bandwidth='auto' requires the expression matrix")
        expr, _ = expression_array(expression, spot_ids)
        bw_result = select_bandwidth(expr, method=bandwidth_method)
        bandwidth = bw_result.bandwidth
    else:
        bandwidth = float(bandwidth)
        if not bandwidth > 0:
            raise ConfigurationError(f"bandwidth must be > 0, got {bandwidth}")

    kernel = gaussian_kernel(coords_arr, bandwidth)
    if check_psd:
        kernel, min_eig = check_kernel(kernel, regularization=regularization)
    else:
        min_eig = float("nan")

    props = prop_df.to_numpy(dtype=np.float64)
    n_spots = len(spot_ids)
    sigmas = np.empty((props.shape[1], n_spots, n_spots), dtype=np.float64)
    for k in range(props.shape[1]):
        pi_k = props[:, k]
        sigmas[k] = pi_k[:, None] * kernel * pi_k[None, :]

    blocks = [np.ones((n_spots, 1))]
    design_columns = ["intercept"]
    if cov_df is not None:
        blocks.append(cov_df.to_numpy(dtype=np.float64))
        design_columns.extend(cov_df.columns)
    blocks.append(props)
    design_columns.extend(prop_df.columns)
    design = np.hstack(blocks)
    q0, rank = residual_basis(design)
    if rank >= n_spots:
        raise InputValidationError(
            f"Design matrix has rank {rank} with {n_spots} spots; "
            "no residual degrees of freedom remain"
        )

    logger.info(
        "Built kernel: %d spots, %d cell types, bandwidth %.4g, design rank %d",
        n_spots, props.shape[1], bandwidth, rank,
    )
    return KernelBundle(
        spot_ids=spot_ids,
        cell_types=list(prop_df.columns),
        bandwidth=bandwidth,
        coords=coords_arr,
        proportions=props,
        kernel=kernel,
        design=design,
        design_columns=design_columns,
        sigmas=sigmas,
        residual_basis=q0,
        design_rank=rank,
        min_eigenvalue=min_eig,
        bandwidth_result=bw_result,
    )
