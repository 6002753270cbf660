"""Data preprocessing for ctsvg."""

from .normalize import filter_genes, log1p_transform, normalize_total, scale_coordinates

__all__ = [
    "filter_genes",
    "log1p_transform",
    "normalize_total",
    "scale_coordinates",
]
