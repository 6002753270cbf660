"""High-level model interface for ctsvg."""

from .engine import (
    estimate_variance_components,
    rank_top_genes,
    run_individual_test,
    run_overall_test,
)
from .state import CTSVGModel

__all__ = [
    "CTSVGModel",
    "estimate_variance_components",
    "rank_top_genes",
    "run_individual_test",
    "run_overall_test",
]
