"""Tools module (scanpy-style API)."""

from ._ctsvg import ctsvg

cell_type_svg = ctsvg

__all__ = ["cell_type_svg", "ctsvg"]
