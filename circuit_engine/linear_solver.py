"""
Dense linear solvers with automatic method selection.

Direct methods raise SingularMatrixError on pivot underflow, iterative
methods raise ConvergenceError when they run out of iterations. A solve
never hands back NaN or Inf.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np
from scipy import linalg

from .config import SOLVER_TOLERANCE, VERIFY_FACTOR, SimulationSettings
from .exceptions import (CancelledError, ConvergenceError, NotPositiveDefiniteError,
                         SingularMatrixError, StructuralError)
from .matrix_builder import AnalysisMethod, LinearSystem, MatrixBuilder, determinant

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


class SolverMethod(Enum):
    SERIES_SIMPLE = "series_simple"
    PARALLEL_SIMPLE = "parallel_simple"
    CRAMER = "cramer"
    CHOLESKY = "cholesky"
    GAUSSIAN = "gaussian"
    LU = "lu"
    GAUSS_SEIDEL = "gauss_seidel"
    JACOBI = "jacobi"


@dataclass
class Solution:
    """Solver output together with its verification"""
    values: np.ndarray
    method: SolverMethod
    is_valid: bool = True
    iterations: int = 0
    residual: float = 0.0
    relative_error: float = 0.0
    elapsed: float = 0.0
    residual_history: List[float] = field(default_factory=list)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def select_method(system: LinearSystem, tolerance: float = SOLVER_TOLERANCE) -> SolverMethod:
    """Pick a solver from the analysis method and the matrix diagnostics"""
    if system.method is AnalysisMethod.SERIES:
        return SolverMethod.SERIES_SIMPLE
    if system.method is AnalysisMethod.PARALLEL:
        return SolverMethod.PARALLEL_SIMPLE

    conditioning = system.conditioning
    if conditioning is None:
        conditioning = MatrixBuilder().analyze_conditioning(system.matrix)
    n = system.size
    if n <= 3 and abs(conditioning.determinant) > tolerance:
        return SolverMethod.CRAMER
    if conditioning.symmetric and conditioning.positive_definite:
        return SolverMethod.CHOLESKY
    if not conditioning.near_singular:
        return SolverMethod.GAUSSIAN if n <= 10 else SolverMethod.LU
    if conditioning.diagonally_dominant:
        return SolverMethod.GAUSS_SEIDEL
    return SolverMethod.GAUSSIAN


class LinearSolver:
    """Solves LinearSystem instances and keeps running statistics"""

    def __init__(self, settings: Optional[SimulationSettings] = None):
        self.settings = settings or SimulationSettings()
        self.tolerance = self.settings.solver_tolerance
        self.max_iterations = self.settings.max_iterations
        self._stats = {
            'solves': 0,
            'failures': 0,
            'total_time': 0.0,
            'methods': defaultdict(int),
        }

    def configure(self, tolerance: Optional[float] = None, max_iterations: Optional[int] = None):
        if tolerance is not None:
            self.tolerance = max(1e-15, min(1e-3, tolerance))
        if max_iterations is not None:
            self.max_iterations = int(max(10, min(10000, max_iterations)))
        logger.info(f"Solver configured: tolerance={self.tolerance}, max_iterations={self.max_iterations}")

    def statistics(self) -> Dict[str, object]:
        solves = self._stats['solves']
        return {
            'solves': solves,
            'failures': self._stats['failures'],
            'average_time': self._stats['total_time'] / solves if solves else 0.0,
            'methods': dict(self._stats['methods']),
            'tolerance': self.tolerance,
            'max_iterations': self.max_iterations,
        }

    def solve(self, system: LinearSystem, method: Optional[SolverMethod] = None,
              cancel: Optional[CancelCheck] = None) -> Solution:
        MatrixBuilder.validate_dimensions(system)
        A, b = system.matrix, system.rhs
        if system.size == 0:
            raise StructuralError("Cannot solve an empty system")

        selected = method or select_method(system, self.tolerance)
        logger.info(f"Solving {system.size}x{system.size} system with {selected.value}")
        start_time = time.perf_counter()
        self._stats['solves'] += 1
        try:
            self._check_cancel(cancel, 1)
            try:
                values, iterations, history = self._run(selected, A, b, cancel)
            except NotPositiveDefiniteError:
                if method is not None:
                    raise
                logger.warning("Cholesky failed, falling back to Gaussian elimination")
                selected = SolverMethod.GAUSSIAN
                values, iterations, history = self._run(selected, A, b, cancel)

            if not np.all(np.isfinite(values)):
                raise SingularMatrixError("Solution contains NaN or Inf values")
        except Exception:
            self._stats['failures'] += 1
            raise

        elapsed = time.perf_counter() - start_time
        self._stats['total_time'] += elapsed
        self._stats['methods'][selected.value] += 1

        check = self.verify_solution(A, b, values)
        solution = Solution(values=values, method=selected, is_valid=check['is_valid'],
                            iterations=iterations, residual=check['residual'],
                            relative_error=check['relative_error'], elapsed=elapsed,
                            residual_history=history)
        if not solution.is_valid:
            solution.error = f"Residual {check['residual']:.3e} exceeds verification limit"
            logger.warning(f"Solution verification failed: {solution.error}")
        else:
            logger.info(f"Solved with {selected.value} in {elapsed:.4f}s (residual {check['residual']:.2e})")
        return solution

    def _run(self, method: SolverMethod, A: np.ndarray, b: np.ndarray, cancel: Optional[CancelCheck]):
        if method is SolverMethod.JACOBI:
            return self.jacobi(A, b, cancel=cancel)
        if method is SolverMethod.GAUSS_SEIDEL:
            return self.gauss_seidel(A, b, cancel=cancel)
        direct = {
            SolverMethod.SERIES_SIMPLE: self.series_simple,
            SolverMethod.PARALLEL_SIMPLE: self.parallel_simple,
            SolverMethod.CRAMER: self.cramer,
            SolverMethod.CHOLESKY: self.cholesky,
            SolverMethod.GAUSSIAN: self.gaussian,
            SolverMethod.LU: self.lu,
        }
        solver = direct.get(method)
        if solver is None:
            raise StructuralError(f"Unknown solver method: {method!r}")
        return solver(A, b), 1, []

    # Direct methods

    def gaussian(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Gaussian elimination with partial pivoting"""
        n = A.shape[0]
        dtype = np.result_type(A, b, float)
        M = A.astype(dtype, copy=True)
        y = b.astype(dtype, copy=True)

        for k in range(n):
            pivot_row = k + int(np.argmax(np.abs(M[k:, k])))
            if abs(M[pivot_row, k]) < self.tolerance:
                raise SingularMatrixError(f"Matrix is singular (pivot {k} below tolerance)")
            if pivot_row != k:
                M[[k, pivot_row]] = M[[pivot_row, k]]
                y[[k, pivot_row]] = y[[pivot_row, k]]
            factors = M[k + 1:, k] / M[k, k]
            M[k + 1:, k:] -= np.outer(factors, M[k, k:])
            y[k + 1:] -= factors * y[k]

        x = np.zeros(n, dtype=dtype)
        for i in range(n - 1, -1, -1):
            x[i] = (y[i] - M[i, i + 1:] @ x[i + 1:]) / M[i, i]
        return x

    def lu(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        lu_matrix, pivots = linalg.lu_factor(A, check_finite=True)
        if np.min(np.abs(np.diag(lu_matrix))) < self.tolerance:
            raise SingularMatrixError("Matrix is singular (zero pivot in LU factorisation)")
        return linalg.lu_solve((lu_matrix, pivots), b)

    def cholesky(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        if np.iscomplexobj(A) or not np.allclose(A, A.T, atol=self.tolerance):
            raise NotPositiveDefiniteError("Cholesky requires a real symmetric matrix")
        try:
            factor = linalg.cho_factor(A)
        except linalg.LinAlgError as e:
            raise NotPositiveDefiniteError(f"Matrix is not positive definite: {e}")
        return linalg.cho_solve(factor, b)

    def cramer(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        det = self._laplace_determinant(A)
        if abs(det) < self.tolerance:
            raise SingularMatrixError("Matrix is singular (zero determinant)")
        dtype = np.result_type(A, b, float)
        x = np.zeros(A.shape[0], dtype=dtype)
        for i in range(A.shape[0]):
            replaced = A.astype(dtype, copy=True)
            replaced[:, i] = b
            x[i] = self._laplace_determinant(replaced) / det
        return x

    def _laplace_determinant(self, A: np.ndarray):
        n = A.shape[0]
        if n <= 3:
            return determinant(A)
        total = 0
        for j in range(n):
            if A[0, j] == 0:
                continue
            minor = np.delete(np.delete(A, 0, axis=0), j, axis=1)
            total += (-1) ** j * A[0, j] * self._laplace_determinant(minor)
        return total

    def series_simple(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Single loop: I = V / R"""
        resistance = A[0, 0]
        if abs(resistance) < self.tolerance or resistance.real < 0:
            raise SingularMatrixError(f"Series resistance must be positive, got {resistance}")
        return np.array([b[0] / resistance])

    def parallel_simple(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Independent branches: I_i = V / R_i, zero for non-positive R_i"""
        dtype = np.result_type(A, b, float)
        x = np.zeros(A.shape[0], dtype=dtype)
        for i in range(A.shape[0]):
            resistance = A[i, i]
            if abs(resistance) > self.tolerance and resistance.real > 0:
                x[i] = b[i] / resistance
        return x

    # Iterative methods

    def jacobi(self, A: np.ndarray, b: np.ndarray, x0: Optional[np.ndarray] = None,
               cancel: Optional[CancelCheck] = None):
        diagonal = np.diag(A)
        if np.any(np.abs(diagonal) < self.tolerance):
            raise SingularMatrixError("Jacobi iteration needs a non-zero diagonal")
        remainder = A - np.diagflat(diagonal)
        x = self._initial_guess(A, b, x0)
        history: List[float] = []
        target = self._residual_target(b)
        for iteration in range(1, self.max_iterations + 1):
            self._check_cancel(cancel, iteration)
            x_new = (b - remainder @ x) / diagonal
            history.append(float(np.linalg.norm(A @ x_new - b)))
            if not np.all(np.isfinite(x_new)):
                raise ConvergenceError("Jacobi iteration diverged", history)
            if history[-1] < target:
                return x_new, iteration, history
            x = x_new
        raise ConvergenceError(f"Jacobi did not converge in {self.max_iterations} iterations", history)

    def gauss_seidel(self, A: np.ndarray, b: np.ndarray, x0: Optional[np.ndarray] = None,
                     cancel: Optional[CancelCheck] = None):
        n = A.shape[0]
        if np.any(np.abs(np.diag(A)) < self.tolerance):
            raise SingularMatrixError("Gauss-Seidel iteration needs a non-zero diagonal")
        x = self._initial_guess(A, b, x0)
        history: List[float] = []
        target = self._residual_target(b)
        for iteration in range(1, self.max_iterations + 1):
            self._check_cancel(cancel, iteration)
            for i in range(n):
                x[i] = (b[i] - A[i, :i] @ x[:i] - A[i, i + 1:] @ x[i + 1:]) / A[i, i]
            history.append(float(np.linalg.norm(A @ x - b)))
            if not np.all(np.isfinite(x)):
                raise ConvergenceError("Gauss-Seidel iteration diverged", history)
            if history[-1] < target:
                return x, iteration, history
        raise ConvergenceError(f"Gauss-Seidel did not converge in {self.max_iterations} iterations", history)

    def _residual_target(self, b: np.ndarray) -> float:
        """Converged once ||Ax - b|| drops below tolerance, scaled for large right-hand sides"""
        return self.tolerance * max(1.0, float(np.linalg.norm(b)))

    @staticmethod
    def _initial_guess(A: np.ndarray, b: np.ndarray, x0: Optional[np.ndarray]) -> np.ndarray:
        dtype = np.result_type(A, b, float)
        if x0 is None:
            return np.zeros(A.shape[0], dtype=dtype)
        return np.array(x0, dtype=dtype)

    @staticmethod
    def _check_cancel(cancel: Optional[CancelCheck], iteration: int):
        if cancel is not None and cancel():
            raise CancelledError(f"Solve cancelled after {iteration - 1} iterations", iteration - 1)

    # Verification

    def verify_solution(self, A: np.ndarray, b: np.ndarray, x: np.ndarray) -> Dict[str, object]:
        residual = float(np.linalg.norm(A @ x - b))
        b_norm = float(np.linalg.norm(b))
        relative_error = residual / b_norm if b_norm > 0 else residual
        return {
            'residual': residual,
            'relative_error': relative_error,
            'is_valid': residual <= self.tolerance * VERIFY_FACTOR,
        }

    def iterative_refinement(self, A: np.ndarray, b: np.ndarray, x0: np.ndarray,
                             max_refinements: int = 3) -> np.ndarray:
        """Improve a solution by solving for the residual correction"""
        x = np.array(x0, dtype=np.result_type(A, b, x0, float))
        for refinement in range(max_refinements):
            residual = b - A @ x
            if np.linalg.norm(residual) < self.tolerance:
                break
            x = x + self.gaussian(A, residual)
            logger.debug(f"Refinement {refinement + 1}: residual {np.linalg.norm(b - A @ x):.3e}")
        return x
