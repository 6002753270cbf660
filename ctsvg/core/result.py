"""
Result tables for the spatial tests and variance-component estimates.

Every per-gene array is aligned with ``gene_names``. Genes that could not
be processed keep their row, with NaN values and a ``status`` other than
``'ok'``, so batch runs report failures instead of dropping genes.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from .pvalue import adjust_pvalues

logger = logging.getLogger(__name__)

STATUS_OK = "ok"


def _check_length(name: str, values, expected: int) -> None:
    if len(values) != expected:
        raise ValueError(f"{name} length ({len(values)}) does not match gene_names ({expected})")


@dataclass
class SpatialTestResult:
    """
    Base class for score test results.

    Provides status bookkeeping, significant gene filtering and DataFrame
    conversion shared by the overall and per-cell-type tests.
    """

    gene_names: list[str]
    """Gene names, aligned with input order."""

    statistics: NDArray[np.floating]
    """Score test statistics (NaN for flagged genes)."""

    pvalues: NDArray[np.floating]
    """Raw p-values (NaN for flagged genes)."""

    pvalues_adj: NDArray[np.floating]
    """Multiple-testing adjusted p-values."""

    status: NDArray[np.object_]
    """Per-gene status: 'ok', 'degenerate', 'cancelled', ..."""

    n_tested: int = field(init=False)
    """Number of genes with a valid p-value."""

    correction: bool = True
    """Whether the finite-sample corrected null was used (False: naive null)."""

    adjust_method: str = "by"
    """Multiple-testing method applied to ``pvalues``."""

    def __post_init__(self):
        n = len(self.gene_names)
        for name in ("statistics", "pvalues", "pvalues_adj", "status"):
            _check_length(name, getattr(self, name), n)
        self.status = np.asarray(self.status, dtype=object)
        self.n_tested = int(np.sum(self.status == STATUS_OK))

    @property
    def n_failed(self) -> int:
        """Number of genes flagged with a non-'ok' status."""
        return len(self.gene_names) - self.n_tested

    def status_counts(self) -> dict[str, int]:
        """Counts of each status value."""
        return dict(Counter(self.status.tolist()))

    def significant_genes(self, threshold: float = 0.05, adjusted: bool = True) -> list[str]:
        """
        Genes with (adjusted) p-value below ``threshold``.

        Parameters
        ----------
        threshold : float, default=0.05
            Significance level.
        adjusted : bool, default=True
            Compare adjusted rather than raw p-values.

        Returns
        -------
        genes : list[str]
            Names of significant genes, in input order.
        """
        values = self.pvalues_adj if adjusted else self.pvalues
        with np.errstate(invalid="ignore"):
            mask = values < threshold
        return [g for g, m in zip(self.gene_names, mask) if m]

    def _build_dataframe_dict(self) -> dict:
        """
        Build base dictionary for DataFrame conversion.

        Subclasses extend it with additional columns.
        """
        return {
            "gene": self.gene_names,
            "statistic": self.statistics,
            "p_value": self.pvalues,
            "p_value_adj": self.pvalues_adj,
            "status": self.status,
        }

    def to_dataframe(self, sort: bool = True) -> pd.DataFrame:
        """
        Convert results to a pandas DataFrame indexed by gene.

        Parameters
        ----------
        sort : bool, default=True
            Sort by p-value (NaN last); otherwise keep input order.
        """
        df = pd.DataFrame(self._build_dataframe_dict()).set_index("gene", drop=False)
        if sort:
            df = df.sort_values("p_value", kind="mergesort", na_position="last")
        return df


@dataclass
class OverallTestResult(SpatialTestResult):
    """Per-gene results of the overall spatial-variability test."""


@dataclass
class CellTypeTestResult(SpatialTestResult):
    """Per-gene results of the individual test for one cell type."""

    cell_type: str = ""

    def merge(self, other: "CellTypeTestResult") -> "CellTypeTestResult":
        """
        New result with ``other``'s genes appended (re-run genes replaced).

        Adjusted p-values are recomputed over the merged genes. If ``other``
        used a different null or adjustment method, it replaces this result
        entirely, since one cell type cannot mix settings.
        """
        if other.cell_type != self.cell_type:
            raise ValueError(
                f"Cannot merge results for '{other.cell_type}' into '{self.cell_type}'"
            )
        if (other.correction, other.adjust_method) != (self.correction, self.adjust_method):
            logger.warning(
                "Individual test for %s re-run with correction=%s, adjust_method=%s; "
                "discarding %d earlier gene(s) tested with correction=%s, adjust_method=%s",
                self.cell_type, other.correction, other.adjust_method,
                len(self.gene_names), self.correction, self.adjust_method,
            )
            return other

        replaced = set(other.gene_names)
        keep = [i for i, g in enumerate(self.gene_names) if g not in replaced]
        pvalues = np.concatenate([np.asarray(self.pvalues)[keep], other.pvalues])
        return CellTypeTestResult(
            gene_names=[self.gene_names[i] for i in keep] + list(other.gene_names),
            statistics=np.concatenate([np.asarray(self.statistics)[keep], other.statistics]),
            pvalues=pvalues,
            pvalues_adj=adjust_pvalues(pvalues, self.adjust_method),
            status=np.concatenate([self.status[keep], other.status]),
            correction=self.correction,
            adjust_method=self.adjust_method,
            cell_type=self.cell_type,
        )


@dataclass
class IndividualTestResult:
    """Individual (cell-type-specific) test results grouped by cell type."""

    results: dict[str, CellTypeTestResult]
    """Cell type -> per-gene results (adjusted within the cell type)."""

    def __getitem__(self, cell_type: str) -> CellTypeTestResult:
        return self.results[cell_type]

    def __contains__(self, cell_type: str) -> bool:
        return cell_type in self.results

    @property
    def cell_types(self) -> list[str]:
        return list(self.results)

    @property
    def n_failed(self) -> int:
        return sum(r.n_failed for r in self.results.values())

    def settings(self) -> dict[str, dict]:
        """Null (``correction``) and ``adjust_method`` used for each cell type."""
        return {
            cell_type: {"correction": res.correction, "adjust_method": res.adjust_method}
            for cell_type, res in self.results.items()
        }

    def merge(self, other: "IndividualTestResult") -> "IndividualTestResult":
        """New result with ``other`` merged gene by gene within each cell type."""
        results = dict(self.results)
        for cell_type, res in other.results.items():
            results[cell_type] = results[cell_type].merge(res) if cell_type in results else res
        return IndividualTestResult(results=results)

    def to_dataframe(self) -> pd.DataFrame:
        """Long-format table with one row per (cell type, gene)."""
        frames = []
        for cell_type, res in self.results.items():
            df = res.to_dataframe(sort=False).reset_index(drop=True)
            df.insert(0, "cell_type", cell_type)
            frames.append(df)
        if not frames:
            return pd.DataFrame(
                columns=["cell_type", "gene", "statistic", "p_value", "p_value_adj", "status"]
            )
        return pd.concat(frames, ignore_index=True)


@dataclass
class VarianceComponentResult:
    """
    Per-gene variance-component estimates.

    ``components[:, k]`` is tau_k for cell type k and ``components[:, -1]``
    the residual variance tau_e. Because Sigma_k is scaled by the
    proportions, tau_k is converted to an average variance contribution
    ``tau_k * tr(Sigma_k) / N`` before computing shares.
    """

    gene_names: list[str]
    cell_types: list[str]
    components: NDArray[np.floating]
    """Estimates, shape (n_genes, n_cell_types + 1); all >= 0 where finite."""

    scale: NDArray[np.floating]
    """tr(Sigma_k) / N per cell type, then 1 for the residual."""

    n_iter: NDArray[np.integer]
    status: NDArray[np.object_]
    method: str = "reml"

    def __post_init__(self):
        n = len(self.gene_names)
        self.components = np.asarray(self.components, dtype=np.float64)
        if self.components.shape != (n, len(self.cell_types) + 1):
            raise ValueError(
                f"components shape {self.components.shape} does not match "
                f"({n}, {len(self.cell_types) + 1})"
            )
        _check_length("n_iter", self.n_iter, n)
        _check_length("status", self.status, n)
        self.status = np.asarray(self.status, dtype=object)
        with np.errstate(invalid="ignore"):
            if np.any(self.components < 0):
                raise ValueError("variance components must be non-negative")

    @property
    def component_names(self) -> list[str]:
        return [*self.cell_types, "residual"]

    @property
    def contributions(self) -> NDArray[np.float64]:
        """Average variance contributed by each component."""
        return self.components * self.scale[None, :]

    @property
    def shares(self) -> NDArray[np.float64]:
        """Contributions divided by their per-gene total (rows sum to 1)."""
        contrib = self.contributions
        total = contrib.sum(axis=1, keepdims=True)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(total > 0, contrib / total, np.nan)

    @property
    def n_failed(self) -> int:
        return int(np.sum(self.status != STATUS_OK))

    def status_counts(self) -> dict[str, int]:
        return dict(Counter(self.status.tolist()))

    def merge(self, other: "VarianceComponentResult") -> "VarianceComponentResult":
        """New result with ``other``'s genes appended (re-run genes replaced)."""
        if other.cell_types != self.cell_types:
            raise ValueError("Cannot merge estimates with different cell types")
        replaced = set(other.gene_names)
        keep = [i for i, g in enumerate(self.gene_names) if g not in replaced]
        return VarianceComponentResult(
            gene_names=[self.gene_names[i] for i in keep] + list(other.gene_names),
            cell_types=self.cell_types,
            components=np.vstack([self.components[keep], other.components]),
            scale=other.scale,
            n_iter=np.concatenate([np.asarray(self.n_iter)[keep], other.n_iter]),
            status=np.concatenate([self.status[keep], other.status]),
            method=other.method,
        )

    def to_dataframe(self, kind: str = "components") -> pd.DataFrame:
        """
        Wide table (genes x components).

        Parameters
        ----------
        kind : {'components', 'contributions', 'shares'}
            Which quantity to tabulate. A ``status`` column is appended.
        """
        if kind == "components":
            values = self.components
        elif kind == "contributions":
            values = self.contributions
        elif kind == "shares":
            values = self.shares
        else:
            raise ValueError(
                f"Unknown kind '{kind}', expected 'components', 'contributions' or 'shares'"
            )
        df = pd.DataFrame(values, index=pd.Index(self.gene_names, name="gene"),
                          columns=self.component_names)
        df["status"] = self.status
        return df


@dataclass
class TopGenesResult:
    """Top cell-type-specific genes for one cell type."""

    cell_type: str
    genes: list[str]
    """Selected genes, ordered by decreasing variance share of ``cell_type``."""

    decomposition: pd.DataFrame
    """Variance shares of the selected genes (rows follow ``genes``)."""

    threshold: float = 0.05
    n_significant: int = 0
    """Genes passing the significance threshold before truncation."""

    def __post_init__(self):
        if list(self.decomposition.index) != list(self.genes):
            raise ValueError("decomposition rows must follow the selected gene order")

    def __len__(self) -> int:
        return len(self.genes)

    def to_dataframe(self) -> pd.DataFrame:
        """Decomposition table with a 1-based ``rank`` column."""
        df = self.decomposition.copy()
        df.insert(0, "rank", np.arange(1, len(self.genes) + 1))
        return df
