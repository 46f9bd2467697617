"""Error taxonomy for the helium density-functional solver.

Each error subclasses the closest builtin so that callers catching the
builtin (ValueError, MemoryError, RuntimeError) keep working.

- ConfigError: missing or malformed startup parameter. Always fatal, raised
  before the first iteration.
- AllocationError: grid or wavefunction storage could not be allocated.
- DomainError: strict spline query outside the tabulated range. Non-strict
  queries return a sentinel and emit DomainWarning instead.
- ConvergenceAssumptionError: a bounded inverse scan never crossed its target.
- KernelNotPreparedError: a convolution was evaluated without a prepared
  transform for the current grid.
- NumericalInstabilityError: NaN or Inf detected in a field.
"""


class ConfigError(ValueError):
    """Missing or malformed configuration parameter."""


class AllocationError(MemoryError):
    """Grid or wavefunction allocation failure."""


class DomainError(ValueError):
    """Query outside the valid domain of a tabulated property."""


class DomainWarning(RuntimeWarning):
    """Emitted when a spline query falls outside its table and the sentinel is returned."""


class ConvergenceAssumptionError(RuntimeError):
    """An iterative search did not reach its target within its bounds."""


class KernelNotPreparedError(RuntimeError):
    """Convolution evaluated without a cached transform for the current grid."""


class NumericalInstabilityError(RuntimeError):
    """Non-finite values detected in a propagated field."""
