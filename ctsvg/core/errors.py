"""
Exception taxonomy for ctsvg.

Three families:
- InputValidationError: inputs violate a structural requirement (fatal).
- ConfigurationError: the caller passed an invalid option (fatal, raised
  before any work is dispatched).
- NumericalError: a matrix or estimator misbehaves. Raised for shared
  structures (kernel, bandwidth); downgraded to per-gene status flags
  inside batch engines.
"""

from __future__ import annotations


class CTSVGError(Exception):
    """Base class for all ctsvg errors."""


class InputValidationError(CTSVGError, ValueError):
    """Inputs violate a structural requirement."""


class DimensionMismatchError(InputValidationError):
    """Spot keys or shapes disagree across input matrices."""


class ConfigurationError(CTSVGError, ValueError):
    """Invalid option passed by the caller."""


class UnknownCellTypeError(ConfigurationError):
    """A requested cell-type label is not present in the kernel bundle."""

    def __init__(self, unknown: list[str], available: list[str]):
        self.unknown = list(unknown)
        self.available = list(available)
        super().__init__(
            f"Unknown cell type(s) {self.unknown}; "
            f"available cell types: {self.available}"
        )


class NumericalError(CTSVGError, ArithmeticError):
    """A numerical procedure failed."""


class SingularKernelError(NumericalError):
    """Kernel matrix is too poorly conditioned for downstream use."""


class DegenerateBandwidthError(NumericalError):
    """No gene produced a usable bandwidth estimate."""


class ConvergenceError(NumericalError):
    """Iterative estimator did not converge."""
