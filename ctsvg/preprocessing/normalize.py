"""
Expression and coordinate preprocessing.

Expression matrices here are genes x spots (one column per spot), the
orientation used throughout ctsvg. Sparse inputs keep their sparsity where
possible.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import sparse

from ..core.errors import ConfigurationError, InputValidationError

ArrayLike = Union[NDArray[np.floating], sparse.spmatrix, pd.DataFrame]


def normalize_total(
    X: ArrayLike,
    target_sum: float | None = None,
) -> ArrayLike:
    """
    Normalize each spot to have the same total counts.

    Parameters
    ----------
    X : array-like of shape (n_genes, n_spots)
        Expression matrix (dense, sparse or DataFrame).
    target_sum : float, optional
        Target sum for each spot. If None, uses median of non-zero spot totals.

    Returns
    -------
    X_norm : array-like
        Normalized matrix of the same kind as ``X``.
    """
    if isinstance(X, pd.DataFrame):
        values = normalize_total(X.to_numpy(dtype=np.float64), target_sum)
        return pd.DataFrame(values, index=X.index, columns=X.columns)

    is_sparse = sparse.issparse(X)
    if is_sparse:
        totals = np.asarray(X.sum(axis=0)).ravel()
    else:
        X = np.asarray(X, dtype=np.float64)
        totals = X.sum(axis=0)

    if target_sum is None:
        nonzero_totals = totals[totals > 0]
        if len(nonzero_totals) == 0:
            return X.copy()
        target_sum = float(np.median(nonzero_totals))

    totals = np.maximum(totals, 1e-10)
    scale_factors = target_sum / totals

    if is_sparse:
        return sparse.csr_matrix(X.multiply(scale_factors[np.newaxis, :]))
    return X * scale_factors[np.newaxis, :]


def log1p_transform(
    X: ArrayLike,
    base: float | None = None,
) -> ArrayLike:
    """
    Apply log(1 + x) transformation.

    Parameters
    ----------
    X : array-like
        Expression matrix.
    base : float, optional
        Logarithm base. If None, uses natural log.
    """
    if isinstance(X, pd.DataFrame):
        return pd.DataFrame(
            log1p_transform(X.to_numpy(dtype=np.float64), base),
            index=X.index, columns=X.columns,
        )
    if sparse.issparse(X):
        X_log = X.copy().astype(np.float64)
        X_log.data = np.log1p(X_log.data)
        if base is not None:
            X_log.data /= np.log(base)
        return X_log
    X_log = np.log1p(np.asarray(X, dtype=np.float64))
    if base is not None:
        X_log /= np.log(base)
    return X_log


def filter_genes(
    expression: pd.DataFrame,
    min_spots: int = 0,
    min_counts: float = 0.0,
) -> pd.DataFrame:
    """
    Keep genes expressed in at least ``min_spots`` spots with at least
    ``min_counts`` total counts.

    Genes with zero variance across spots are always removed, since they
    carry no spatial signal and would only be flagged as degenerate.
    """
    if min_spots < 0:
        raise ConfigurationError(f"min_spots must be >= 0, got {min_spots}")
    if min_counts < 0:
        raise ConfigurationError(f"min_counts must be >= 0, got {min_counts}")

    values = expression.to_numpy(dtype=np.float64)
    n_expressed = np.sum(values > 0, axis=1)
    totals = values.sum(axis=1)
    varying = np.ptp(values, axis=1) > 0 if values.shape[1] else np.zeros(len(values), bool)
    keep = (n_expressed >= min_spots) & (totals >= min_counts) & varying
    return expression.loc[keep]


def scale_coordinates(
    coords: NDArray[np.floating] | pd.DataFrame,
    method: str = "minmax",
) -> NDArray[np.float64] | pd.DataFrame:
    """
    Rescale spot coordinates.

    Parameters
    ----------
    coords : array-like of shape (n_spots, n_dims)
        Spot coordinates.
    method : {'minmax', 'zscore'}, default='minmax'
        ``'minmax'`` maps every axis onto [0, 1]; ``'zscore'`` centres and
        divides by the standard deviation. Constant axes map to 0.
    """
    if isinstance(coords, pd.DataFrame):
        return pd.DataFrame(
            scale_coordinates(coords.to_numpy(dtype=np.float64), method),
            index=coords.index, columns=coords.columns,
        )

    coords = np.asarray(coords, dtype=np.float64)
    if coords.ndim != 2:
        raise InputValidationError(f"coords must be 2D, got shape {coords.shape}")
    if not np.all(np.isfinite(coords)):
        raise InputValidationError("coords contain NaN or infinite values")

    if method == "minmax":
        shift = coords.min(axis=0)
        spread = coords.max(axis=0) - shift
    elif method == "zscore":
        shift = coords.mean(axis=0)
        spread = coords.std(axis=0)
    else:
        raise ConfigurationError(
            f"Unknown method '{method}', expected 'minmax' or 'zscore'"
        )
    spread = np.where(spread > 0, spread, 1.0)
    return (coords - shift) / spread
