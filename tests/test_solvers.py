"""Tests for the GMRES wrapper and preconditioners."""

import numpy as np
import pytest
from scipy.sparse import diags

from burgers.errors import ConfigurationError, SolverError
from burgers.solvers import LinearSolver


def laplacian_1d(n, shift=0.0):
    """Tridiagonal -u'' (+ shift*u) with a small nonsymmetric advection part."""
    main = (2.0 + shift) * np.ones(n)
    lower = -1.1 * np.ones(n - 1)
    upper = -0.9 * np.ones(n - 1)
    return diags([lower, main, upper], [-1, 0, 1], format="csr")


@pytest.fixture
def system():
    A = laplacian_1d(100, shift=0.5)
    x_true = np.sin(np.linspace(0, np.pi, 100))
    return A, A @ x_true, x_true


class TestLinearSolver:
    """Restarted GMRES with each preconditioner."""
    @pytest.mark.parametrize("preconditioner", ["ssor", "ilu", "amg", "lu", "none"])
    def test_converges(self, system, preconditioner):
        """Every preconditioner reaches the tolerance."""
        A, b, x_true = system
        result = LinearSolver(preconditioner=preconditioner).solve(A, b)
        assert result.converged
        assert result.residual <= 1e-9
        assert np.allclose(result.solution, x_true, atol=1e-6)

    def test_exact_preconditioner_is_fast(self, system):
        """An exact LU preconditioner converges within two iterations."""
        A, b, _ = system
        result = LinearSolver(preconditioner="lu").solve(A, b)
        assert result.iterations <= 2

    def test_zero_rhs(self, system):
        """A zero right-hand side returns zero immediately."""
        A, _, _ = system
        result = LinearSolver().solve(A, np.zeros(100))
        assert result.iterations == 0
        assert np.allclose(result.solution, 0.0)

    def test_nonconvergence_warns(self):
        """Hitting the cap logs a warning and returns the iterate."""
        A = laplacian_1d(200)
        b = np.ones(200)
        result = LinearSolver(max_iterations=2, restart=1, preconditioner="none").solve(A, b)
        assert not result.converged
        assert result.residual > 1e-9

    def test_nonconvergence_raises(self):
        """Hitting the cap raises when so configured."""
        A = laplacian_1d(200)
        solver = LinearSolver(max_iterations=2, restart=1, preconditioner="none", on_nonconvergence="raise")
        with pytest.raises(SolverError):
            solver.solve(A, np.ones(200))


class TestValidation:
    """Argument checks."""
    def test_unknown_preconditioner(self):
        """Unknown preconditioners are rejected."""
        with pytest.raises(ConfigurationError):
            LinearSolver(preconditioner="jacobi")

    def test_dimension_mismatch(self, system):
        """Matrix and right-hand side sizes must agree."""
        A, _, _ = system
        with pytest.raises(ConfigurationError):
            LinearSolver().solve(A, np.ones(5))

    def test_bad_relaxation(self, system):
        """SSOR relaxation must lie in (0, 2)."""
        A, b, _ = system
        with pytest.raises(ConfigurationError):
            LinearSolver(relaxation=2.5).solve(A, b)
