"""
AnnData integration for ctsvg.

AnnData stores spots as observations (rows) and genes as variables, so the
expression matrix is transposed into the genes x spots orientation used by
the model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from scipy import sparse

from ..core.result import IndividualTestResult, OverallTestResult

if TYPE_CHECKING:
    import anndata as ad


@dataclass
class AnnDataInputs:
    """Model inputs extracted from an AnnData object."""

    expression: pd.DataFrame
    """Genes x spots expression."""

    coords: pd.DataFrame
    proportions: pd.DataFrame
    covariates: pd.DataFrame | None = None


def extract_inputs(
    adata: "ad.AnnData",
    proportion_key: str = "proportions",
    spatial_key: str = "spatial",
    layer: str | None = None,
    covariate_keys: list[str] | None = None,
    genes: list[str] | None = None,
) -> AnnDataInputs:
    """
    Extract expression, coordinates, proportions and covariates.

    Parameters
    ----------
    adata : AnnData
        Spots x genes data.
    proportion_key : str, default='proportions'
        Key in ``adata.obsm`` holding cell-type proportions. A DataFrame keeps
        its column names as cell types.
    spatial_key : str, default='spatial'
        Key in ``adata.obsm`` containing spatial coordinates.
    layer : str, optional
        Layer to use for expression. If None, uses ``adata.X``.
    covariate_keys : list of str, optional
        Numeric columns of ``adata.obs`` used as covariates.
    genes : list of str, optional
        Subset of genes. If None, uses all genes.
    """
    spot_ids = [str(s) for s in adata.obs_names]

    if spatial_key not in adata.obsm:
        raise KeyError(
            f"Spatial coordinates not found at adata.obsm['{spatial_key}']. "
            f"Available keys: {list(adata.obsm.keys())}"
        )
    coords_arr = np.asarray(adata.obsm[spatial_key], dtype=np.float64)
    coords = pd.DataFrame(
        coords_arr, index=spot_ids,
        columns=[f"dim_{j}" for j in range(coords_arr.shape[1])],
    )

    if proportion_key not in adata.obsm:
        raise KeyError(
            f"Cell-type proportions not found at adata.obsm['{proportion_key}']. "
            f"Available keys: {list(adata.obsm.keys())}"
        )
    props = adata.obsm[proportion_key]
    if isinstance(props, pd.DataFrame):
        proportions = props.copy()
        proportions.index = spot_ids
    else:
        props = np.asarray(props, dtype=np.float64)
        proportions = pd.DataFrame(
            props, index=spot_ids,
            columns=[f"celltype_{j}" for j in range(props.shape[1])],
        )

    covariates = None
    if covariate_keys:
        missing = [k for k in covariate_keys if k not in adata.obs.columns]
        if missing:
            raise KeyError(f"Covariates {missing} not found in adata.obs")
        covariates = adata.obs[covariate_keys].astype(np.float64)
        covariates.index = spot_ids

    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found in adata.layers")
        X = adata.layers[layer]
    else:
        X = adata.X

    gene_names = [str(g) for g in adata.var_names]
    if genes is not None:
        if not adata.var_names.is_unique:
            raise ValueError(
                "adata.var_names must be unique when selecting genes by name; "
                "call adata.var_names_make_unique() first"
            )
        name_to_idx = {name: i for i, name in enumerate(gene_names)}
        selected = [g for g in dict.fromkeys(genes) if g in name_to_idx]
        if not selected:
            raise ValueError("None of the specified genes found in adata")
        X = X[:, [name_to_idx[g] for g in selected]]
        gene_names = selected

    dense = X.toarray() if sparse.issparse(X) else np.asarray(X)
    expression = pd.DataFrame(
        np.asarray(dense, dtype=np.float64).T, index=gene_names, columns=spot_ids,
    )
    return AnnDataInputs(
        expression=expression, coords=coords,
        proportions=proportions, covariates=covariates,
    )


def _store_result(
    adata: "ad.AnnData",
    overall: OverallTestResult,
    individual: IndividualTestResult | None,
    key_added: str,
    metadata: dict | None = None,
) -> None:
    """
    Store test results in ``adata.var`` and metadata in ``adata.uns``.

    Genes that were not tested keep NaN (and an empty status).
    """
    columns = {
        "statistic": overall.statistics,
        "pvalue": overall.pvalues,
        "pvalue_adj": overall.pvalues_adj,
    }
    for suffix in columns:
        adata.var[f"{key_added}_{suffix}"] = np.nan
    adata.var[f"{key_added}_status"] = ""

    gene_mask = np.isin(overall.gene_names, adata.var_names)
    valid_genes = [g for g, m in zip(overall.gene_names, gene_mask) if m]
    valid_indices = np.where(gene_mask)[0]
    if valid_genes:
        for suffix, values in columns.items():
            adata.var.loc[valid_genes, f"{key_added}_{suffix}"] = values[valid_indices]
        adata.var.loc[valid_genes, f"{key_added}_status"] = overall.status[valid_indices]

    cell_types: list[str] = []
    if individual is not None:
        for cell_type in individual.cell_types:
            res = individual[cell_type]
            col = f"{key_added}_pvalue_{cell_type}"
            adata.var[col] = np.nan
            adata.var.loc[res.gene_names, col] = res.pvalues
            adata.var[f"{col}_adj"] = np.nan
            adata.var.loc[res.gene_names, f"{col}_adj"] = res.pvalues_adj
            cell_types.append(cell_type)

    adata.uns[key_added] = {
        "n_tested": overall.n_tested,
        "n_failed": overall.n_failed,
        "n_significant": len(overall.significant_genes()),
        "adjust_method": overall.adjust_method,
        "correction": overall.correction,
        "cell_types": cell_types,
        "individual": individual.settings() if individual is not None else {},
        **(metadata or {}),
    }
