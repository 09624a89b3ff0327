"""
Error taxonomy for circuit analysis.

Structural errors describe circuits that cannot be analysed at all, numeric
errors describe a failed attempt at solving a well-formed system. Warnings are
plain records collected into results and never raised.
"""

from dataclasses import dataclass
from typing import List, Optional


class CircuitError(Exception):
    """Base class for analysis failures"""
    pass


class StructuralError(CircuitError):
    """Raised when the circuit graph or its linear system is malformed"""

    def __init__(self, message: str, violations: Optional[List[str]] = None,
                 component_count: int = 1):
        super().__init__(message)
        self.violations = violations or [message]
        self.component_count = component_count


class NumericError(CircuitError):
    """Raised when a numerical method fails on a well-formed system"""
    pass


class SingularMatrixError(NumericError):
    """Raised when circuit matrix is singular"""
    pass


class ConvergenceError(NumericError):
    """Raised when numerical methods fail to converge"""

    def __init__(self, message: str, residual_history: Optional[List[float]] = None):
        super().__init__(message)
        self.residual_history = residual_history or []


class NotPositiveDefiniteError(NumericError):
    """Raised when Cholesky decomposition meets a non positive-definite matrix"""
    pass


class CancelledError(NumericError):
    """Raised when a solve is cancelled by its caller"""

    def __init__(self, message: str, iterations: int = 0):
        super().__init__(message)
        self.iterations = iterations


@dataclass(frozen=True)
class ValidationWarning:
    """Non-fatal finding attached to analysis results"""
    source: str
    message: str

    def __str__(self):
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message
