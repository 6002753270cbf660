"""
Coercion and spot-key alignment of user inputs.

Matrices may arrive as ``pandas.DataFrame`` (labelled) or plain arrays
(keyed positionally). Labelled inputs are re-ordered to the reference spot
order; any disagreement in keys or lengths raises DimensionMismatchError.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from .errors import DimensionMismatchError, InputValidationError


def spots_frame(
    data,
    name: str,
    prefix: str,
) -> pd.DataFrame:
    """Coerce a spots x features input into a DataFrame with string spot ids."""
    if isinstance(data, pd.DataFrame):
        frame = data.copy()
        frame.index = frame.index.astype(str)
        frame.columns = [str(c) for c in frame.columns]
    else:
        arr = np.asarray(data, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise InputValidationError(f"{name} must be 2-D, got shape {arr.shape}")
        frame = pd.DataFrame(
            arr,
            index=[str(i) for i in range(arr.shape[0])],
            columns=[f"{prefix}{j}" for j in range(arr.shape[1])],
        )
    if not frame.index.is_unique:
        raise InputValidationError(f"{name} has duplicated spot ids")
    return frame


def align_to_spots(frame: pd.DataFrame, spot_ids: list[str], name: str) -> pd.DataFrame:
    """Re-order ``frame`` rows to ``spot_ids``; the key sets must be identical."""
    if len(frame.index) != len(spot_ids):
        raise DimensionMismatchError(
            f"{name} has {len(frame.index)} spots, expected {len(spot_ids)}"
        )
    missing = set(spot_ids).difference(frame.index)
    if missing:
        head = sorted(missing)[:5]
        raise DimensionMismatchError(
            f"{name} spot ids do not match the coordinates; "
            f"{len(missing)} missing, e.g. {head}"
        )
    return frame.loc[spot_ids]


def expression_array(
    expression,
    spot_ids: list[str],
) -> tuple[NDArray[np.float64], list[str]]:
    """
    Validate a genes x spots expression input against ``spot_ids``.

    Returns the dense float matrix (columns in ``spot_ids`` order) and the
    gene names.
    """
    if isinstance(expression, pd.DataFrame):
        frame = expression.copy()
        frame.columns = frame.columns.astype(str)
        frame.index = frame.index.astype(str)
        if not frame.index.is_unique:
            raise InputValidationError("expression has duplicated gene names")
        frame = align_to_spots(frame.T, spot_ids, "expression").T
        return frame.to_numpy(dtype=np.float64), list(frame.index)

    arr = np.atleast_2d(np.asarray(expression, dtype=np.float64))
    if arr.ndim != 2:
        raise InputValidationError(f"expression must be 2-D, got shape {arr.shape}")
    if arr.shape[1] != len(spot_ids):
        raise DimensionMismatchError(
            f"expression has {arr.shape[1]} spots (columns), expected {len(spot_ids)}"
        )
    return arr, [f"Gene_{i}" for i in range(arr.shape[0])]


def select_genes(
    gene_names: list[str],
    genes: list[str] | None,
) -> list[int]:
    """Indices of ``genes`` in ``gene_names``, keeping request order, dropping repeats."""
    if genes is None:
        return list(range(len(gene_names)))
    name_to_idx = {name: i for i, name in enumerate(gene_names)}
    seen: set[str] = set()
    indices: list[int] = []
    unknown: list[str] = []
    for gene in genes:
        if gene in seen:
            continue
        seen.add(gene)
        idx = name_to_idx.get(gene)
        if idx is None:
            unknown.append(gene)
        else:
            indices.append(idx)
    if unknown:
        raise InputValidationError(
            f"{len(unknown)} requested gene(s) not in expression, e.g. {unknown[:5]}"
        )
    return indices
