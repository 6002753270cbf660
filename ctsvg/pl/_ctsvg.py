"""Plotting functions for cell-type-specific SVG results."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from ..core.errors import InputValidationError
from ..core.result import TopGenesResult, VarianceComponentResult

if TYPE_CHECKING:
    from matplotlib.figure import Figure

    from ..model.state import CTSVGModel

_FRAME_COLUMNS = ["cell_type", "rank", "gene"]


def minmax_scale(values) -> np.ndarray:
    """
    Rescale to [0, 1] via ``(y - min y) / (max y - min y)``.

    Constant vectors map to all zeros; NaN entries stay NaN.
    """
    y = np.asarray(values, dtype=np.float64)
    if y.size == 0 or np.all(np.isnan(y)):
        return y.copy()
    lo = np.nanmin(y)
    spread = np.nanmax(y) - lo
    if spread <= 0:
        return np.where(np.isnan(y), np.nan, 0.0)
    return (y - lo) / spread


def top_genes_frame(result: TopGenesResult) -> pd.DataFrame:
    """
    Tidy table of a :class:`TopGenesResult`.

    One row per selected gene with columns ``cell_type``, ``rank``, ``gene``
    and the variance share of every component.
    """
    df = result.to_dataframe().rename_axis("gene").reset_index()
    df.insert(0, "cell_type", result.cell_type)
    return df[_FRAME_COLUMNS + [c for c in df.columns if c not in _FRAME_COLUMNS]]


def genes_from_frame(frame: pd.DataFrame) -> list[str]:
    """Ordered gene list from a table produced by :func:`top_genes_frame`."""
    missing = [c for c in ("rank", "gene") if c not in frame.columns]
    if missing:
        raise InputValidationError(f"frame is missing column(s) {missing}")
    return [str(g) for g in frame.sort_values("rank", kind="mergesort")["gene"]]


def _finalize_figure(
    fig: "Figure",
    save: str | None,
    show: bool,
) -> "Figure | None":
    """Save and/or show figure; return Figure if show=False."""
    import matplotlib.pyplot as plt

    fig.tight_layout()
    if save is not None:
        fig.savefig(save, dpi=300, bbox_inches="tight")
    if show:
        plt.show()
        return None
    return fig


def spatial_expression(
    model: "CTSVGModel",
    genes: list[str] | TopGenesResult,
    spot_size: float | None = None,
    ncols: int = 3,
    cmap: str = "viridis",
    figsize: tuple[float, float] | None = None,
    save: str | None = None,
    show: bool = True,
) -> "Figure | None":
    """
    Plot min-max scaled expression of genes on spatial coordinates.

    Parameters
    ----------
    model
        Model holding the expression and coordinates.
    genes
        Genes to draw, or a :class:`TopGenesResult` whose genes are drawn
        in rank order.
    spot_size
        Size of scatter points. ``None`` auto-detects.
    ncols
        Number of columns in subplot grid.
    cmap
        Colormap for expression values.
    figsize
        Figure size ``(width, height)``. ``None`` auto-computes.
    save
        Path to save figure. ``None`` does not save.
    show
        Whether to show figure with ``plt.show()``.

    Returns
    -------
    ``Figure`` if ``show=False``, otherwise ``None``.
    """
    import matplotlib.pyplot as plt

    if isinstance(genes, TopGenesResult):
        genes = list(genes.genes)
    if not genes:
        raise ValueError("No genes to plot.")
    unknown = [g for g in genes if g not in model.expression.index]
    if unknown:
        raise KeyError(f"Genes not in the model expression: {unknown[:5]}")

    coords = model.bundle.coords
    n_genes = len(genes)
    ncols = min(ncols, n_genes)
    nrows = int(np.ceil(n_genes / ncols))
    if figsize is None:
        figsize = (ncols * 3.5, nrows * 3.2)

    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)

    if spot_size is None:
        extent = np.ptp(coords[:, :2], axis=0).max()
        spot_size = max(0.5, (extent / np.sqrt(len(coords))) * 20)

    for i, gene in enumerate(genes):
        ax = axes[i // ncols, i % ncols]
        values = minmax_scale(model.expression.loc[gene].to_numpy())
        sc = ax.scatter(
            coords[:, 0],
            coords[:, 1],
            c=values,
            s=spot_size,
            cmap=cmap,
            vmin=0.0,
            vmax=1.0,
            edgecolors="none",
            rasterized=True,
        )
        ax.set_title(gene, fontsize=9)
        ax.set_aspect("equal")
        ax.invert_yaxis()
        ax.set_xticks([])
        ax.set_yticks([])
        fig.colorbar(sc, ax=ax, shrink=0.7, pad=0.02)

    for j in range(n_genes, nrows * ncols):
        axes[j // ncols, j % ncols].set_visible(False)

    return _finalize_figure(fig, save, show)


def variance_components(
    result: VarianceComponentResult | TopGenesResult,
    genes: list[str] | None = None,
    figsize: tuple[float, float] | None = None,
    cmap: str = "tab20",
    save: str | None = None,
    show: bool = True,
) -> "Figure | None":
    """
    Stacked bar chart of per-gene variance shares.

    Parameters
    ----------
    result
        Variance-component estimates, or a :class:`TopGenesResult` whose
        decomposition is drawn.
    genes
        Genes to include (VarianceComponentResult only). ``None`` draws
        every gene with finite estimates.
    figsize
        Figure size. ``None`` scales with the number of genes.
    cmap
        Qualitative colormap for the components.
    save
        Path to save figure.
    show
        Whether to show figure.

    Returns
    -------
    ``Figure`` if ``show=False``, otherwise ``None``.
    """
    import matplotlib.pyplot as plt

    if isinstance(result, TopGenesResult):
        shares = result.decomposition
    else:
        shares = result.to_dataframe("shares").drop(columns="status")
        if genes is not None:
            shares = shares.loc[genes]
    shares = shares.dropna()
    if shares.empty:
        raise ValueError("No genes with finite variance estimates to plot.")

    if figsize is None:
        figsize = (max(4.0, 0.35 * len(shares) + 2.0), 4.0)
    fig, ax = plt.subplots(1, 1, figsize=figsize)
    colors = plt.get_cmap(cmap)(np.linspace(0, 1, shares.shape[1]))
    x = np.arange(len(shares))
    bottom = np.zeros(len(shares))
    for j, component in enumerate(shares.columns):
        values = shares[component].to_numpy()
        ax.bar(x, values, bottom=bottom, color=colors[j], width=0.8, label=component)
        bottom += values

    ax.set_xticks(x)
    ax.set_xticklabels(shares.index, rotation=90, fontsize=7)
    ax.set_ylim(0, 1)
    ax.set_ylabel("Variance share")
    ax.legend(frameon=False, fontsize=7, bbox_to_anchor=(1.02, 1), loc="upper left")

    return _finalize_figure(fig, save, show)
