"""Point evaluation, L2 projection and error norms for Q1 fields."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.sparse.linalg import cg

from .assembly import assemble_load, assemble_mass, quadrature_points
from .dofs import DofHandler
from .elements import gauss_2d, shape_values
from .errors import ConfigurationError, SolverError

log = logging.getLogger(__name__)


def point_values(dofs: DofHandler, field: NDArray[np.float64], points: NDArray[np.float64]) -> NDArray[np.float64]:
    """Evaluate a field at arbitrary points of the domain, shape (n, D)."""
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    nodal = dofs.cell_values(field)
    cells = dofs.mesh.locate(points)
    if np.any(cells < 0):
        raise ConfigurationError("Evaluation point outside the domain")
    rows = dofs.cell_row(cells)
    lower_left, h = dofs.mesh.cell_geometry(cells)
    ref = (points - lower_left) / h[:, None]
    return np.einsum("mv,mvc->mc", shape_values(ref), nodal[rows])


def project(
    dofs: DofHandler,
    function: Callable,
    time: float = 0.0,
    quadrature_order: int = 3,
    tol: float = 1e-12,
) -> NDArray[np.float64]:
    """L2 projection onto the constrained Q1 space.

    Solves the condensed mass system with CG and fills in the
    constrained entries afterwards.
    """
    M = assemble_mass(dofs)
    F = assemble_load(dofs, function, time, quadrature_order)
    M, F = dofs.constraints.condense(M, F)

    x, info = cg(M, F, rtol=tol, atol=0.0, maxiter=10 * dofs.n_dofs)
    if info != 0:
        raise SolverError(f"CG failed in L2 projection (info={info})")
    return dofs.reconstruct(x)


def integrate_difference(
    dofs: DofHandler,
    field: NDArray[np.float64],
    function: Callable,
    time: float = 0.0,
    quadrature_order: int = 3,
) -> NDArray[np.float64]:
    """Per-cell L2 norm of (field - function)."""
    nodal = dofs.cell_values(field)
    ref_points, weights = gauss_2d(quadrature_order)
    points = quadrature_points(dofs, ref_points)

    u_h = np.einsum("qv,evc->eqc", shape_values(ref_points), nodal)
    exact = function(points.reshape(-1, 2), time).reshape(u_h.shape)

    _, h = dofs.mesh.cell_geometry(dofs.cells)
    err2 = np.einsum("q,eqc->e", weights, (u_h - exact) ** 2) * h**2
    return np.sqrt(err2)


def l2_error(
    dofs: DofHandler,
    field: NDArray[np.float64],
    function: Callable,
    time: float = 0.0,
    quadrature_order: int = 3,
) -> float:
    """Global L2 error ||field - function|| over the domain."""
    per_cell = integrate_difference(dofs, field, function, time, quadrature_order)
    return float(np.sqrt(np.sum(per_cell**2)))
