"""Input/output helpers (AnnData)."""

from .anndata import AnnDataInputs, extract_inputs

__all__ = ["AnnDataInputs", "extract_inputs"]
