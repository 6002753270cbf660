"""
Batch operations on a kernel bundle.

- run_overall_test: pooled score test for any spatial variability
- run_individual_test: per-cell-type score tests
- estimate_variance_components: per-gene REML / moment estimates
- rank_top_genes: top cell-type-specific genes for one cell type

Caller errors (unknown cell types, bad options, mismatched spots) raise
before any unit is dispatched. Per-gene numerical problems are recorded in
the ``status`` column of the result instead of aborting the batch.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter

import numpy as np
from numpy.typing import NDArray

from ..core.errors import ConfigurationError, UnknownCellTypeError
from ..core.inputs import expression_array, select_genes
from ..core.kernel import KernelBundle
from ..core.parallel import CANCELLED, run_units
from ..core.pvalue import adjust_pvalues, normalize_adjust_method
from ..core.result import (
    CellTypeTestResult,
    IndividualTestResult,
    OverallTestResult,
    TopGenesResult,
    VarianceComponentResult,
)
from ..core.score import ScoreOutcome, null_spectrum, residualize, score_test
from ..core.varcomp import (
    VarCompConfig,
    VarCompOutcome,
    estimate_gene,
    prepare_components,
)

logger = logging.getLogger(__name__)


def _log_summary(label: str, status: NDArray[np.object_]) -> None:
    counts = Counter(status.tolist())
    n_ok = counts.pop("ok", 0)
    if counts:
        logger.warning(
            "%s: %d/%d units ok; flagged: %s",
            label, n_ok, len(status), dict(sorted(counts.items())),
        )
    else:
        logger.info("%s: %d units ok", label, n_ok)


def _unpack_scores(outcomes: list) -> tuple[NDArray, NDArray, NDArray]:
    n = len(outcomes)
    statistics = np.full(n, np.nan)
    pvalues = np.full(n, np.nan)
    status = np.empty(n, dtype=object)
    for i, out in enumerate(outcomes):
        if out is CANCELLED:
            status[i] = "cancelled"
            continue
        statistics[i] = out.statistic
        pvalues[i] = out.pvalue
        status[i] = out.status
    return statistics, pvalues, status


def run_overall_test(
    bundle: KernelBundle,
    expression,
    correction: bool = True,
    adjust_method: str = "BY",
    n_workers: int = 1,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> OverallTestResult:
    """
    Test every gene for a spatial component pooled over cell types.

    Parameters
    ----------
    bundle : KernelBundle
        Output of :func:`ctsvg.build_kernel`.
    expression : DataFrame or ndarray of shape (n_genes, n_spots)
        Expression matrix; DataFrame columns are matched to the bundle spots.
    correction : bool, default=True
        Use the finite-sample null that accounts for estimating the error
        variance. ``False`` treats it as known: faster to reason about but
        slightly anti-conservative in small samples.
    adjust_method : {'BY', 'BH', 'Bonferroni', 'holm', 'storey', 'none'}
        Multiple-testing correction over the valid p-values.
    n_workers : int, default=1
        Worker threads.
    timeout : float, optional
        Per-gene time budget in seconds.
    cancel_event : threading.Event, optional
        Stops dispatching further genes once set.

    Returns
    -------
    result : OverallTestResult
        Input-ordered statistics, p-values, adjusted p-values and status.
    """
    method = normalize_adjust_method(adjust_method)
    expr, gene_names = expression_array(expression, bundle.spot_ids)

    residuals = residualize(expr, bundle)
    pooled = bundle.kernel_sum()
    spectrum = null_spectrum(bundle, pooled)

    def unit(gene: int, deadline: float | None) -> ScoreOutcome:
        return score_test(residuals, gene, pooled, spectrum, correction)

    outcomes = run_units(unit, range(len(gene_names)), n_workers, timeout, cancel_event)
    statistics, pvalues, status = _unpack_scores(outcomes)
    _log_summary("Overall test", status)

    return OverallTestResult(
        gene_names=gene_names,
        statistics=statistics,
        pvalues=pvalues,
        pvalues_adj=adjust_pvalues(pvalues, method),
        status=status,
        correction=correction,
        adjust_method=method,
    )


def run_individual_test(
    bundle: KernelBundle,
    expression,
    genes: list[str] | None = None,
    cell_types: list[str] | None = None,
    correction: bool = True,
    adjust_method: str = "BY",
    n_workers: int = 1,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> IndividualTestResult:
    """
    Test genes for a spatial component specific to each cell type.

    Each (gene, cell type) pair is an independent unit scored against
    Sigma_k; p-values are adjusted within each cell type.

    Parameters
    ----------
    bundle : KernelBundle
        Shared kernel structure.
    expression : DataFrame or ndarray of shape (n_genes, n_spots)
        Expression matrix.
    genes : list of str, optional
        Genes to test (typically those passing the overall test). ``None``
        tests all genes.
    cell_types : list of str, optional
        Cell types to test. ``None`` tests all.
    correction, adjust_method, n_workers, timeout, cancel_event
        As in :func:`run_overall_test`.

    Returns
    -------
    result : IndividualTestResult

    Raises
    ------
    UnknownCellTypeError
        Before any computation, if a label in ``cell_types`` is unknown.
    """
    type_indices = bundle.cell_type_indices(cell_types)
    method = normalize_adjust_method(adjust_method)
    expr, all_names = expression_array(expression, bundle.spot_ids)
    gene_indices = select_genes(all_names, genes)
    gene_names = [all_names[i] for i in gene_indices]

    residuals = residualize(expr[gene_indices], bundle)
    spectra = {k: null_spectrum(bundle, bundle.sigmas[k]) for k in type_indices}

    units = [(k, g) for k in type_indices for g in range(len(gene_names))]

    def unit(item: tuple[int, int], deadline: float | None) -> ScoreOutcome:
        k, g = item
        return score_test(residuals, g, bundle.sigmas[k], spectra[k], correction)

    outcomes = run_units(unit, units, n_workers, timeout, cancel_event)

    n_genes = len(gene_names)
    results: dict[str, CellTypeTestResult] = {}
    for pos, k in enumerate(type_indices):
        block = outcomes[pos * n_genes:(pos + 1) * n_genes]
        statistics, pvalues, status = _unpack_scores(block)
        cell_type = bundle.cell_types[k]
        _log_summary(f"Individual test [{cell_type}]", status)
        results[cell_type] = CellTypeTestResult(
            gene_names=gene_names,
            statistics=statistics,
            pvalues=pvalues,
            pvalues_adj=adjust_pvalues(pvalues, method),
            status=status,
            correction=correction,
            adjust_method=method,
            cell_type=cell_type,
        )

    return IndividualTestResult(results=results)


def estimate_variance_components(
    bundle: KernelBundle,
    expression,
    genes: list[str] | None = None,
    method: str = "reml",
    config: VarCompConfig | None = None,
    n_workers: int = 1,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> VarianceComponentResult:
    """
    Estimate per-gene variance components tau_1..tau_K, tau_e.

    Parameters
    ----------
    bundle : KernelBundle
        Shared kernel structure.
    expression : DataFrame or ndarray of shape (n_genes, n_spots)
        Expression matrix.
    genes : list of str, optional
        Genes to estimate. ``None`` estimates all genes.
    method : {'reml', 'moment'}, default='reml'
        Estimator; ignored when ``config`` is given.
    config : VarCompConfig, optional
        Full estimator settings.
    n_workers, timeout, cancel_event
        Worker pool settings; ``timeout`` stops REML iteration for a gene
        and keeps its current estimate.

    Returns
    -------
    result : VarianceComponentResult
        Non-negative estimates. Non-converged or timed-out genes keep their
        best estimate with a warning; degenerate or failed genes are NaN.
    """
    config = config or VarCompConfig(method=method)
    expr, all_names = expression_array(expression, bundle.spot_ids)
    gene_indices = select_genes(all_names, genes)
    gene_names = [all_names[i] for i in gene_indices]

    residuals = residualize(expr[gene_indices], bundle)
    reduced = residuals.values @ bundle.residual_basis
    structure = prepare_components(bundle)
    n_comp = structure.n_components

    def unit(g: int, deadline: float | None) -> VarCompOutcome:
        if residuals.degenerate[g]:
            return VarCompOutcome(np.full(n_comp, np.nan), 0, "degenerate")
        try:
            return estimate_gene(reduced[g], structure, config, deadline)
        except np.linalg.LinAlgError as exc:
            logger.warning("Variance components failed for gene %s: %s", gene_names[g], exc)
            return VarCompOutcome(np.full(n_comp, np.nan), 0, "failed")

    outcomes = run_units(unit, range(len(gene_names)), n_workers, timeout, cancel_event)

    n_genes = len(gene_names)
    components = np.full((n_genes, n_comp), np.nan)
    n_iter = np.zeros(n_genes, dtype=np.int64)
    status = np.empty(n_genes, dtype=object)
    for g, out in enumerate(outcomes):
        if out is CANCELLED:
            status[g] = "cancelled"
            continue
        components[g] = out.components
        n_iter[g] = out.n_iter
        status[g] = out.status
        if out.status in ("not_converged", "timeout"):
            logger.warning(
                "Variance components for gene %s %s after %d iterations; "
                "keeping best estimate",
                gene_names[g],
                "did not converge" if out.status == "not_converged" else "timed out",
                out.n_iter,
            )
    _log_summary("Variance components", status)

    return VarianceComponentResult(
        gene_names=gene_names,
        cell_types=list(bundle.cell_types),
        components=components,
        scale=structure.scale,
        n_iter=n_iter,
        status=status,
        method=config.method,
    )


def rank_top_genes(
    varcomp: VarianceComponentResult,
    individual: IndividualTestResult | CellTypeTestResult,
    cell_type: str,
    threshold: float = 0.05,
    max_count: int = 20,
    use_adjusted: bool = True,
) -> TopGenesResult:
    """
    Select the top cell-type-specific genes for ``cell_type``.

    Genes significant in the individual test for ``cell_type`` (at
    ``threshold``) and with a finite variance estimate are ranked by the
    cell type's variance share, largest first, ties broken by gene name.

    Parameters
    ----------
    varcomp : VarianceComponentResult
        Variance-component estimates.
    individual : IndividualTestResult or CellTypeTestResult
        Individual test results containing ``cell_type``.
    cell_type : str
        Target cell type.
    threshold : float, default=0.05
        Significance level in (0, 1].
    max_count : int, default=20
        Maximum number of genes returned.
    use_adjusted : bool, default=True
        Compare adjusted (rather than raw) individual p-values.

    Returns
    -------
    result : TopGenesResult
        Up to ``min(max_count, n_significant)`` genes; empty when none pass.
    """
    if not 0 < threshold <= 1:
        raise ConfigurationError(f"threshold must be in (0, 1], got {threshold}")
    if isinstance(max_count, bool) or not isinstance(max_count, (int, np.integer)) or max_count < 1:
        raise ConfigurationError(f"max_count must be a positive integer, got {max_count!r}")
    if cell_type not in varcomp.cell_types:
        raise UnknownCellTypeError([cell_type], varcomp.cell_types)

    if isinstance(individual, IndividualTestResult):
        if cell_type not in individual:
            raise ConfigurationError(
                f"No individual test results for cell type '{cell_type}'; "
                f"available: {individual.cell_types}"
            )
        tested = individual[cell_type]
    else:
        if individual.cell_type != cell_type:
            raise ConfigurationError(
                f"Individual test results are for '{individual.cell_type}', not '{cell_type}'"
            )
        tested = individual

    significant = set(tested.significant_genes(threshold, adjusted=use_adjusted))
    shares = varcomp.to_dataframe("shares").drop(columns="status")
    target = shares[cell_type]
    candidates = [
        g for g in varcomp.gene_names if g in significant and np.isfinite(target.loc[g])
    ]
    ordered = sorted(candidates, key=lambda g: (-target.loc[g], g))
    selected = ordered[:max_count]

    logger.info(
        "Top genes for %s: %d significant with estimates, returning %d",
        cell_type, len(candidates), len(selected),
    )
    return TopGenesResult(
        cell_type=cell_type,
        genes=selected,
        decomposition=shares.loc[selected],
        threshold=threshold,
        n_significant=len(candidates),
    )
