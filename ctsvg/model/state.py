"""
Fitted-model state for the cell-type-specific SVG pipeline.

:class:`CTSVGModel` bundles the kernel structure, the aligned expression
matrix and whatever results have been computed so far. It is immutable:
every operation returns a new model, so intermediate states can be kept,
compared or shared between threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Literal

import numpy as np
import pandas as pd

from ..core.inputs import expression_array, spots_frame
from ..core.kernel import KernelBundle, build_kernel
from ..core.result import (
    IndividualTestResult,
    OverallTestResult,
    TopGenesResult,
    VarianceComponentResult,
)
from ..core.varcomp import VarCompConfig
from ..preprocessing.normalize import log1p_transform, normalize_total
from .engine import (
    estimate_variance_components,
    rank_top_genes,
    run_individual_test,
    run_overall_test,
)

logger = logging.getLogger(__name__)


def _normalize_expression(
    expression: pd.DataFrame,
    normalize: bool | str,
    log_transform: bool,
) -> pd.DataFrame:
    """
    Library-size normalize and/or log-transform expression.

    ``normalize='auto'`` normalizes when the maximum value exceeds 100
    (likely raw counts).
    """
    max_val = float(np.nanmax(expression.to_numpy())) if expression.size else 0.0
    is_raw_counts = max_val > 100

    if normalize == "auto":
        do_normalize = is_raw_counts
    elif normalize is True:
        do_normalize = True
    elif normalize is False:
        do_normalize = False
    else:
        raise ValueError(f"normalize must be True, False, or 'auto', got {normalize!r}")

    out = expression
    if do_normalize:
        logger.info("Normalizing expression data (max value: %.0f)", max_val)
        out = normalize_total(out, target_sum=1e4)
    if log_transform:
        out = log1p_transform(out)
    return out


@dataclass(frozen=True, eq=False)
class CTSVGModel:
    """
    Cell-type-specific spatially variable gene model.

    Typical use chains the operations in order::

        model = (
            CTSVGModel.build(expression, coords, proportions)
            .run_overall_test()
            .run_individual_test()
            .estimate_variance_components()
        )
        top = model.top_genes("Tumor")

    Examples
    --------
    >>> model = CTSVGModel.build(expr, coords, props, bandwidth=0.1)
    >>> model = model.run_overall_test()
    >>> model.overall.significant_genes()
    """

    bundle: KernelBundle
    expression: pd.DataFrame
    """Genes x spots expression, columns in ``bundle.spot_ids`` order."""

    overall: OverallTestResult | None = None
    individual: IndividualTestResult | None = None
    varcomp: VarianceComponentResult | None = None

    @classmethod
    def build(
        cls,
        expression,
        coords,
        proportions,
        covariates=None,
        bandwidth: float | Literal["auto"] = "auto",
        bandwidth_method: Literal["auto", "sj", "silverman"] = "auto",
        regularization: Literal["jitter", "clip"] | None = None,
        normalize: bool | str = False,
        log_transform: bool = False,
    ) -> "CTSVGModel":
        """
        Validate inputs and build the shared kernel structure.

        Parameters
        ----------
        expression : DataFrame or ndarray of shape (n_genes, n_spots)
            Expression matrix. Array columns follow the row order of ``coords``.
        coords : DataFrame or ndarray of shape (n_spots, n_dims)
            Spatial coordinates.
        proportions : DataFrame or ndarray of shape (n_spots, n_cell_types)
            Cell-type proportions (rows sum to one).
        covariates : DataFrame or ndarray, optional
            Additional spot-level fixed effects.
        bandwidth : float or 'auto', default='auto'
            Gaussian kernel bandwidth.
        bandwidth_method : {'auto', 'sj', 'silverman'}, default='auto'
            Rule used when ``bandwidth='auto'``.
        regularization : {'jitter', 'clip'}, optional
            Repair policy for an indefinite kernel.
        normalize : bool or "auto", default=False
            - "auto": Normalize if max value > 100 (likely raw counts)
            - True: Always normalize (library size to 1e4)
            - False: Never normalize
        log_transform : bool, default=False
            Whether to apply log1p transformation.
        """
        coords_df = spots_frame(coords, "coords", "dim_")
        spot_ids = list(coords_df.index)
        values, gene_names = expression_array(expression, spot_ids)
        frame = pd.DataFrame(values, index=gene_names, columns=spot_ids)
        frame = _normalize_expression(frame, normalize, log_transform)

        bundle = build_kernel(
            coords_df,
            proportions,
            bandwidth=bandwidth,
            expression=frame,
            covariates=covariates,
            bandwidth_method=bandwidth_method,
            regularization=regularization,
        )
        return cls(bundle=bundle, expression=frame)

    @property
    def gene_names(self) -> list[str]:
        return list(self.expression.index)

    @property
    def cell_types(self) -> list[str]:
        return list(self.bundle.cell_types)

    def run_overall_test(
        self,
        correction: bool = True,
        adjust_method: str = "BY",
        n_workers: int = 1,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> "CTSVGModel":
        """Run the overall test on every gene; see :func:`ctsvg.run_overall_test`."""
        result = run_overall_test(
            self.bundle, self.expression,
            correction=correction, adjust_method=adjust_method,
            n_workers=n_workers, timeout=timeout, cancel_event=cancel_event,
        )
        return replace(self, overall=result)

    def _default_genes(self, threshold: float) -> list[str] | None:
        if self.overall is None:
            return None
        return self.overall.significant_genes(threshold)

    def run_individual_test(
        self,
        genes: list[str] | None = None,
        cell_types: list[str] | None = None,
        overall_threshold: float = 0.05,
        correction: bool = True,
        adjust_method: str = "BY",
        n_workers: int = 1,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> "CTSVGModel":
        """
        Run the individual tests.

        When ``genes`` is None and the overall test has been run, only genes
        with adjusted overall p-value below ``overall_threshold`` are tested;
        without an overall test all genes are tested. Earlier results are
        merged gene by gene within each cell type: re-run genes are replaced
        and adjusted p-values recomputed over the merged genes. Re-running a
        cell type with a different ``correction`` or ``adjust_method``
        replaces its earlier results.
        """
        self.bundle.cell_type_indices(cell_types)
        if genes is None:
            genes = self._default_genes(overall_threshold)
        result = run_individual_test(
            self.bundle, self.expression, genes=genes, cell_types=cell_types,
            correction=correction, adjust_method=adjust_method,
            n_workers=n_workers, timeout=timeout, cancel_event=cancel_event,
        )
        if self.individual is not None:
            result = self.individual.merge(result)
        return replace(self, individual=result)

    def estimate_variance_components(
        self,
        genes: list[str] | None = None,
        method: str = "reml",
        config: VarCompConfig | None = None,
        overall_threshold: float = 0.05,
        n_workers: int = 1,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> "CTSVGModel":
        """
        Estimate variance components.

        ``genes=None`` follows the same default as :meth:`run_individual_test`.
        Estimates for genes computed earlier are kept unless re-run.
        """
        if genes is None:
            genes = self._default_genes(overall_threshold)
        result = estimate_variance_components(
            self.bundle, self.expression, genes=genes, method=method, config=config,
            n_workers=n_workers, timeout=timeout, cancel_event=cancel_event,
        )
        if self.varcomp is not None:
            result = self.varcomp.merge(result)
        return replace(self, varcomp=result)

    def top_genes(
        self,
        cell_type: str,
        threshold: float = 0.05,
        max_count: int = 20,
        use_adjusted: bool = True,
    ) -> TopGenesResult:
        """Top genes for ``cell_type``; see :func:`ctsvg.rank_top_genes`."""
        self.bundle.cell_type_indices([cell_type])
        if self.individual is None or self.varcomp is None:
            raise RuntimeError(
                "top_genes requires run_individual_test() and "
                "estimate_variance_components() first"
            )
        return rank_top_genes(
            self.varcomp, self.individual, cell_type,
            threshold=threshold, max_count=max_count, use_adjusted=use_adjusted,
        )
