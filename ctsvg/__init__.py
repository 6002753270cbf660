"""
ctsvg: Cell-type-specific spatially variable genes

Detects genes whose spatial expression pattern is driven by a particular
cell type in spot-based spatial transcriptomics, using a spatial linear
mixed model with one Gaussian-kernel random effect per cell type.

Features
--------
- Overall score test for spatial variability pooled over cell types
- Individual score tests for cell-type-specific spatial variability
- Finite-sample corrected null via mixtures of chi-square variables
- Non-negative variance components (AI-REML / moment estimator)
- AnnData/Scanpy ecosystem integration

Quick Start
-----------
>>> from ctsvg import CTSVGModel
>>> model = (
...     CTSVGModel.build(expression, coords, proportions)
...     .run_overall_test()
...     .run_individual_test()
...     .estimate_variance_components()
... )
>>> model.top_genes("Tumor").genes

With AnnData (scanpy-style):

>>> import ctsvg
>>> ctsvg.tl.ctsvg(adata, proportion_key="proportions")
>>> sig = adata.var.query("ctsvg_pvalue_adj < 0.05")
"""

__version__ = "0.1.0"

# Main API
from .core.kernel import KernelBundle, build_kernel
from .model import (
    CTSVGModel,
    estimate_variance_components,
    rank_top_genes,
    run_individual_test,
    run_overall_test,
)

# Scanpy-style submodules
from . import tl, pl

# Utilities
from .core.bandwidth import select_bandwidth
from .core.errors import (
    ConfigurationError,
    CTSVGError,
    InputValidationError,
    NumericalError,
    UnknownCellTypeError,
)
from .core.pvalue import adjust_pvalues
from .core.varcomp import VarCompConfig

__all__ = [
    "__version__",
    # Main API
    "CTSVGModel",
    "KernelBundle",
    "build_kernel",
    "estimate_variance_components",
    "rank_top_genes",
    "run_individual_test",
    "run_overall_test",
    # Scanpy-style submodules
    "tl",
    "pl",
    # Utilities
    "CTSVGError",
    "ConfigurationError",
    "InputValidationError",
    "NumericalError",
    "UnknownCellTypeError",
    "VarCompConfig",
    "adjust_pvalues",
    "select_bandwidth",
]
