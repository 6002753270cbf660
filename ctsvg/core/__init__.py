"""Core algorithms for cell-type-specific spatial testing."""

from .bandwidth import BandwidthResult, select_bandwidth, select_rule
from .errors import (
    ConfigurationError,
    CTSVGError,
    DegenerateBandwidthError,
    DimensionMismatchError,
    InputValidationError,
    NumericalError,
    SingularKernelError,
    UnknownCellTypeError,
)
from .kernel import KernelBundle, build_kernel, gaussian_kernel
from .pvalue import adjust_pvalues, mixture_chi2_sf
from .varcomp import VarCompConfig

__all__ = [
    "BandwidthResult",
    "CTSVGError",
    "ConfigurationError",
    "DegenerateBandwidthError",
    "DimensionMismatchError",
    "InputValidationError",
    "KernelBundle",
    "NumericalError",
    "SingularKernelError",
    "UnknownCellTypeError",
    "VarCompConfig",
    "adjust_pvalues",
    "build_kernel",
    "gaussian_kernel",
    "mixture_chi2_sf",
    "select_bandwidth",
    "select_rule",
]
