"""Cell-type-specific SVG detection (scanpy-style API)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    import anndata as ad

from ..core.errors import UnknownCellTypeError
from ..io.anndata import _store_result, extract_inputs
from ..model.state import CTSVGModel


def _run_and_store(
    adata: "ad.AnnData",
    proportion_key: str,
    spatial_key: str,
    layer: str | None,
    covariate_keys: list[str] | None,
    genes: list[str] | None,
    cell_types: list[str] | None,
    bandwidth: float | Literal["auto"],
    normalize: bool | str,
    log_transform: bool,
    adjust_method: str,
    overall_threshold: float,
    n_workers: int,
    key_added: str,
) -> CTSVGModel:
    """Run the overall and individual tests on *adata* and store the results."""
    inputs = extract_inputs(adata, proportion_key, spatial_key, layer, covariate_keys, genes)
    if cell_types is not None:
        available = [str(c) for c in inputs.proportions.columns]
        unknown = [ct for ct in cell_types if ct not in available]
        if unknown:
            raise UnknownCellTypeError(unknown, available)

    model = CTSVGModel.build(
        inputs.expression,
        inputs.coords,
        inputs.proportions,
        covariates=inputs.covariates,
        bandwidth=bandwidth,
        normalize=normalize,
        log_transform=log_transform,
    )
    model = model.run_overall_test(adjust_method=adjust_method, n_workers=n_workers)
    model = model.run_individual_test(
        cell_types=cell_types,
        overall_threshold=overall_threshold,
        adjust_method=adjust_method,
        n_workers=n_workers,
    )

    _store_result(
        adata=adata,
        overall=model.overall,
        individual=model.individual,
        key_added=key_added,
        metadata={
            "spatial_key": spatial_key,
            "proportion_key": proportion_key,
            "bandwidth": model.bundle.bandwidth,
            "overall_threshold": overall_threshold,
        },
    )
    return model


def ctsvg(
    adata: "ad.AnnData",
    proportion_key: str = "proportions",
    spatial_key: str = "spatial",
    layer: str | None = None,
    covariate_keys: list[str] | None = None,
    genes: list[str] | None = None,
    cell_types: list[str] | None = None,
    bandwidth: float | Literal["auto"] = "auto",
    normalize: bool | str = False,
    log_transform: bool = False,
    adjust_method: str = "BY",
    overall_threshold: float = 0.05,
    n_workers: int = 1,
    key_added: str = "ctsvg",
    copy: bool = False,
) -> "ad.AnnData | None":
    """
    Detect cell-type-specific spatially variable genes.

    Runs the overall test on every gene and the individual test, per cell
    type, on genes passing ``overall_threshold``. Results are stored in
    ``adata.var`` and ``adata.uns``.

    Parameters
    ----------
    adata
        Spots x genes data with coordinates in ``adata.obsm[spatial_key]``
        and proportions in ``adata.obsm[proportion_key]``.
    proportion_key
        Key in ``adata.obsm`` for cell-type proportions.
    spatial_key
        Key in ``adata.obsm`` for spatial coordinates.
    layer
        Expression layer to use. ``None`` means ``adata.X``.
    covariate_keys
        Numeric ``adata.obs`` columns added as fixed effects.
    genes
        Subset of genes to test. ``None`` tests all genes.
    cell_types
        Cell types for the individual test. ``None`` tests all.
    bandwidth
        Kernel bandwidth, or ``'auto'`` to select it from the data.
    normalize
        Library-size normalization: ``True``, ``False`` or ``'auto'``.
    log_transform
        Whether to apply log1p after normalization.
    adjust_method
        Multiple-testing correction.
    overall_threshold
        Adjusted overall p-value below which genes enter the individual test.
    n_workers
        Worker threads.
    key_added
        Key prefix for results in ``adata.var`` and ``adata.uns``.
    copy
        Whether to return a modified copy instead of updating in place.

    Returns
    -------
    Returns ``None`` if ``copy=False`` (results stored in ``adata``),
    otherwise a modified copy of ``adata``.

    The following fields are added:

    ``adata.var['{key_added}_statistic']``
        Overall score statistics.
    ``adata.var['{key_added}_pvalue']``
        Overall p-values.
    ``adata.var['{key_added}_pvalue_adj']``
        Adjusted overall p-values.
    ``adata.var['{key_added}_status']``
        Per-gene status of the overall test.
    ``adata.var['{key_added}_pvalue_<celltype>']``
        Individual-test p-values (and ``..._adj``) per cell type; NaN for
        genes not tested.
    ``adata.uns['{key_added}']``
        Dictionary with metadata (n_tested, n_significant, bandwidth, ...).

    Examples
    --------
    >>> import ctsvg
    >>> ctsvg.tl.ctsvg(adata, proportion_key="proportions")
    >>> adata.var.query("ctsvg_pvalue_adj < 0.05")
    """
    if copy:
        adata = adata.copy()

    _run_and_store(
        adata, proportion_key, spatial_key, layer, covariate_keys, genes, cell_types,
        bandwidth, normalize, log_transform, adjust_method, overall_threshold,
        n_workers, key_added,
    )

    return adata if copy else None
