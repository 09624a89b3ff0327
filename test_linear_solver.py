"""
Tests for the linear solvers and automatic solver selection.
"""

import numpy as np
import pytest

from circuit_engine import (AnalysisMethod, CancelledError, ConvergenceError, LinearSolver,
                            NotPositiveDefiniteError, SingularMatrixError, SolverMethod, select_method)
from circuit_engine.matrix_builder import LinearSystem


def system_for(matrix, rhs, method=AnalysisMethod.NODAL):
    return LinearSystem(matrix=np.array(matrix, dtype=float), rhs=np.array(rhs, dtype=float), method=method)


SPD = [[4.0, 1.0], [1.0, 3.0]]
SPD_RHS = [1.0, 2.0]


def test_closed_form_methods_are_selected_by_analysis():
    assert select_method(system_for([[1000.0]], [12.0], AnalysisMethod.SERIES)) is SolverMethod.SERIES_SIMPLE
    assert select_method(system_for(np.eye(2), [1, 1], AnalysisMethod.PARALLEL)) is SolverMethod.PARALLEL_SIMPLE


def test_small_systems_use_cramer():
    assert select_method(system_for(SPD, SPD_RHS)) is SolverMethod.CRAMER


def test_spd_systems_use_cholesky():
    matrix = 4 * np.eye(4) + 0.5 * (np.ones((4, 4)) - np.eye(4))
    assert select_method(system_for(matrix, np.ones(4))) is SolverMethod.CHOLESKY


def test_large_general_systems_use_lu():
    matrix = 10 * np.eye(12) + np.triu(np.ones((12, 12)), 1)
    assert select_method(system_for(matrix, np.ones(12))) is SolverMethod.LU


def test_near_singular_dominant_systems_iterate():
    matrix = np.diag([1e-7, 1e-7, 1.0, 1.0])
    matrix[2, 3] = 0.5
    assert select_method(system_for(matrix, np.ones(4))) is SolverMethod.GAUSS_SEIDEL


def test_singular_systems_fall_back_to_gaussian():
    assert select_method(system_for([[1.0, 2.0], [2.0, 4.0]], [1, 2])) is SolverMethod.GAUSSIAN


@pytest.mark.parametrize("method", [SolverMethod.GAUSSIAN, SolverMethod.LU, SolverMethod.CHOLESKY,
                                    SolverMethod.CRAMER, SolverMethod.GAUSS_SEIDEL, SolverMethod.JACOBI])
def test_every_method_solves_a_well_posed_system(method):
    solver = LinearSolver()
    solution = solver.solve(system_for(SPD, SPD_RHS), method=method)

    assert solution.method is method
    assert solution.is_valid
    assert np.allclose(solution.values, np.linalg.solve(SPD, SPD_RHS), atol=1e-9)
    assert solution.residual < 1e-8


def test_residual_is_below_tolerance_for_direct_solves():
    solver = LinearSolver()
    matrix = 10 * np.eye(12) + np.triu(np.ones((12, 12)), 1)
    solution = solver.solve(system_for(matrix, np.arange(12)))
    assert solution.method is SolverMethod.LU
    assert solution.residual < solver.tolerance


def test_singular_matrix_raises_instead_of_returning_nan():
    solver = LinearSolver()
    with pytest.raises(SingularMatrixError):
        solver.solve(system_for([[1.0, 2.0], [2.0, 4.0]], [1.0, 2.0]))
    with pytest.raises(SingularMatrixError):
        solver.solve(system_for([[1.0, 2.0], [2.0, 4.0]], [1.0, 2.0]), method=SolverMethod.LU)
    assert solver.statistics()['failures'] == 2


def test_cholesky_rejects_indefinite_matrices():
    solver = LinearSolver()
    with pytest.raises(NotPositiveDefiniteError):
        solver.cholesky(np.array([[1.0, 2.0], [2.0, 1.0]]), np.ones(2))
    with pytest.raises(NotPositiveDefiniteError):
        solver.cholesky(np.array([[1.0, 2.0], [0.0, 1.0]]), np.ones(2))


def test_complex_systems():
    solver = LinearSolver()
    matrix = np.array([[2 + 1j, 1], [1, 3 - 1j]])
    rhs = np.array([1, 1j])
    system = LinearSystem(matrix=matrix, rhs=rhs, method=AnalysisMethod.NODAL)
    solution = solver.solve(system)
    assert np.allclose(matrix @ solution.values, rhs)


def test_iterative_solvers_report_history():
    solver = LinearSolver()
    values, iterations, history = solver.gauss_seidel(np.array(SPD), np.array(SPD_RHS))
    assert iterations == len(history)
    assert history[-1] < 1e-8
    assert np.allclose(values, np.linalg.solve(SPD, SPD_RHS))


@pytest.mark.parametrize("method", ["gauss_seidel", "jacobi"])
def test_iterative_solvers_stop_on_the_residual(method):
    """Strong coupling makes the steps small long before the residual is."""
    solver = LinearSolver()
    solver.configure(tolerance=1e-3, max_iterations=10000)
    A = np.array([[1.0, 0.999], [0.999, 1.0]])
    b = np.array([1.0, 1.0])
    values, iterations, history = getattr(solver, method)(A, b)

    assert np.linalg.norm(A @ values - b) < 1e-3 * np.linalg.norm(b)
    assert history[-1] == pytest.approx(np.linalg.norm(A @ values - b))
    assert all(residual >= 1e-3 * np.linalg.norm(b) for residual in history[:-1])


def test_solve_checks_cancellation_before_direct_methods():
    solver = LinearSolver()
    with pytest.raises(CancelledError) as excinfo:
        solver.solve(system_for(SPD, SPD_RHS), method=SolverMethod.LU, cancel=lambda: True)
    assert excinfo.value.iterations == 0


def test_iterative_solver_convergence_failure():
    solver = LinearSolver()
    solver.configure(max_iterations=10)
    with pytest.raises(ConvergenceError) as excinfo:
        solver.jacobi(np.array([[1.0, 2.0], [2.0, 1.0]]), np.ones(2))
    assert len(excinfo.value.residual_history) == 10


def test_iterative_solver_needs_nonzero_diagonal():
    with pytest.raises(SingularMatrixError):
        LinearSolver().jacobi(np.array([[0.0, 1.0], [1.0, 0.0]]), np.ones(2))


def test_cancellation_stops_iteration():
    solver = LinearSolver()
    calls = []

    def cancel():
        calls.append(1)
        return len(calls) > 2

    with pytest.raises(CancelledError) as excinfo:
        solver.gauss_seidel(np.array(SPD), np.array(SPD_RHS), cancel=cancel)
    assert excinfo.value.iterations == 2

    with pytest.raises(CancelledError):
        solver.solve(system_for(SPD, SPD_RHS), method=SolverMethod.JACOBI, cancel=lambda: True)


def test_configure_clamps_limits():
    solver = LinearSolver()
    solver.configure(tolerance=1.0, max_iterations=5)
    assert solver.tolerance == 1e-3
    assert solver.max_iterations == 10
    solver.configure(tolerance=0.0, max_iterations=10 ** 9)
    assert solver.tolerance == 1e-15
    assert solver.max_iterations == 10000


def test_verify_solution():
    solver = LinearSolver()
    A, b = np.array(SPD), np.array(SPD_RHS)
    good = solver.verify_solution(A, b, np.linalg.solve(A, b))
    assert good['is_valid']
    bad = solver.verify_solution(A, b, np.zeros(2))
    assert not bad['is_valid']
    assert bad['relative_error'] == pytest.approx(1.0)


def test_iterative_refinement():
    solver = LinearSolver()
    A, b = np.array(SPD), np.array(SPD_RHS)
    exact = np.linalg.solve(A, b)
    refined = solver.iterative_refinement(A, b, exact + 1e-3)
    assert np.allclose(refined, exact, atol=1e-12)


def test_closed_form_solvers():
    solver = LinearSolver()
    assert solver.series_simple(np.array([[1000.0]]), np.array([12.0]))[0] == pytest.approx(0.012)
    with pytest.raises(SingularMatrixError):
        solver.series_simple(np.array([[0.0]]), np.array([12.0]))
    currents = solver.parallel_simple(np.diag([100.0, 0.0, 50.0]), np.full(3, 10.0))
    assert currents.tolist() == pytest.approx([0.1, 0.0, 0.2])


def test_statistics_track_methods():
    solver = LinearSolver()
    solver.solve(system_for(SPD, SPD_RHS))
    solver.solve(system_for(SPD, SPD_RHS), method=SolverMethod.GAUSSIAN)
    stats = solver.statistics()
    assert stats['solves'] == 2
    assert stats['methods'] == {'cramer': 1, 'gaussian': 1}
