"""Plotting module (scanpy-style API)."""

from ._ctsvg import (
    genes_from_frame,
    minmax_scale,
    spatial_expression,
    top_genes_frame,
    variance_components,
)

__all__ = [
    "genes_from_frame",
    "minmax_scale",
    "spatial_expression",
    "top_genes_frame",
    "variance_components",
]
