"""Restarted GMRES with selectable preconditioners."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pyamg
from numpy.typing import NDArray
from scipy.sparse import csr_matrix, diags, spmatrix, tril, triu
from scipy.sparse.linalg import LinearOperator, gmres, spilu, splu, spsolve_triangular

from .datastructures import PRECONDITIONERS
from .errors import ConfigurationError, SolverError

log = logging.getLogger(__name__)


@dataclass
class SolverResult:
    solution: NDArray[np.float64]
    iterations: int
    converged: bool
    residual: float  # relative residual ||b - A x|| / ||b||


# =============================================================================
# Preconditioners
# =============================================================================
def ssor_preconditioner(A: csr_matrix, omega: float = 1.0) -> LinearOperator:
    """Symmetric successive over-relaxation, M^-1 applied by two triangular solves."""
    if not 0.0 < omega < 2.0:
        raise ConfigurationError(f"SSOR relaxation must lie in (0, 2), got {omega}")
    D = A.diagonal()
    if np.any(D == 0.0):
        raise SolverError("SSOR preconditioner needs a nonzero diagonal")
    D_w = diags(D / omega)
    lower = (D_w + tril(A, k=-1)).tocsr()
    upper = (D_w + triu(A, k=1)).tocsr()
    scale = (2.0 - omega) / omega

    def apply(r):
        y = spsolve_triangular(lower, r, lower=True)
        return scale * spsolve_triangular(upper, (D / omega) * y, lower=False)

    return LinearOperator(A.shape, matvec=apply, dtype=np.float64)


def ilu_preconditioner(A: csr_matrix) -> LinearOperator:
    ilu = spilu(A.tocsc())
    return LinearOperator(A.shape, matvec=ilu.solve, dtype=np.float64)


def amg_preconditioner(A: csr_matrix) -> LinearOperator:
    ml = pyamg.smoothed_aggregation_solver(A)
    return ml.aspreconditioner()


def lu_preconditioner(A: csr_matrix) -> LinearOperator:
    lu = splu(A.tocsc())
    return LinearOperator(A.shape, matvec=lu.solve, dtype=np.float64)


# =============================================================================
# GMRES wrapper
# =============================================================================
class LinearSolver:
    """Restarted GMRES with an iteration cap counted in inner iterations.

    Parameters
    ----------
    max_iterations : cap on inner GMRES iterations
    tolerance : relative residual target ||r|| <= tolerance * ||b||
    restart : Krylov subspace size between restarts
    preconditioner : one of "ssor", "ilu", "amg", "lu", "none"
    relaxation : SSOR relaxation factor
    on_nonconvergence : "warn" returns the last iterate, "raise" raises SolverError
    """

    def __init__(
        self,
        max_iterations: int = 5000,
        tolerance: float = 1e-9,
        restart: int = 30,
        preconditioner: Literal["ssor", "ilu", "amg", "lu", "none"] = "ssor",
        relaxation: float = 1.0,
        on_nonconvergence: Literal["warn", "raise"] = "warn",
    ):
        if preconditioner not in PRECONDITIONERS:
            raise ConfigurationError(
                f"Unknown preconditioner '{preconditioner}'. Use one of {PRECONDITIONERS}."
            )
        if on_nonconvergence not in ("warn", "raise"):
            raise ConfigurationError("on_nonconvergence must be 'warn' or 'raise'")
        if max_iterations < 1 or restart < 1 or tolerance <= 0.0:
            raise ConfigurationError("Need max_iterations >= 1, restart >= 1 and tolerance > 0")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.restart = restart
        self.preconditioner = preconditioner
        self.relaxation = relaxation
        self.on_nonconvergence = on_nonconvergence

    def _build_preconditioner(self, A: csr_matrix) -> Optional[LinearOperator]:
        if self.preconditioner == "ssor":
            return ssor_preconditioner(A, self.relaxation)
        if self.preconditioner == "ilu":
            return ilu_preconditioner(A)
        if self.preconditioner == "amg":
            return amg_preconditioner(A)
        if self.preconditioner == "lu":
            return lu_preconditioner(A)
        return None

    def solve(
        self,
        A: spmatrix,
        b: NDArray[np.float64],
        x0: Optional[NDArray[np.float64]] = None,
    ) -> SolverResult:
        A = csr_matrix(A)
        b = np.asarray(b, dtype=np.float64)
        n = A.shape[0]
        if A.shape != (n, n) or b.shape != (n,):
            raise ConfigurationError(f"Dimension mismatch: matrix {A.shape}, rhs {b.shape}")
        if x0 is not None and np.shape(x0) != (n,):
            raise ConfigurationError(f"Initial guess has shape {np.shape(x0)}, expected ({n},)")

        b_norm = np.linalg.norm(b)
        if b_norm == 0.0:
            return SolverResult(np.zeros(n), 0, True, 0.0)

        M = self._build_preconditioner(A)
        inner = [0]

        def count(_):
            inner[0] += 1

        x, info = gmres(
            A, b, x0=x0,
            rtol=self.tolerance, atol=0.0,
            restart=self.restart,
            maxiter=math.ceil(self.max_iterations / self.restart),
            M=M,
            callback=count, callback_type="pr_norm",
        )
        if info < 0:
            raise SolverError(f"GMRES failed with illegal input or breakdown (info={info})")

        residual = float(np.linalg.norm(b - A @ x) / b_norm)
        converged = info == 0
        log.info(f"GMRES: {inner[0]} iterations, relative residual {residual:.3e}")

        if not converged:
            msg = (
                f"GMRES did not converge within {self.max_iterations} iterations "
                f"(relative residual {residual:.3e}, tolerance {self.tolerance:.1e})"
            )
            if self.on_nonconvergence == "raise":
                raise SolverError(msg)
            log.warning(msg)

        return SolverResult(x, inner[0], converged, residual)
