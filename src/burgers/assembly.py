"""Assembly of the semi-implicit Burgers system on Q1 elements.

One time step solves

    (M + dt*C(u*) + theta_skew*dt*D(u*) + dt*nu*K) u = M u_old + dt*F(t)

with u* an extrapolation of previous solutions, C the linearized advection
(u*.grad)u, D the divergence term div(u*) u and K the vector Laplacian.
The per-cell quadrature loop runs in a numba kernel.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
from numba import njit
from numpy.typing import NDArray
from scipy.sparse import csr_matrix, spmatrix

from .datastructures import N_COMPONENTS
from .dofs import DofHandler
from .elements import element_mass, gauss_2d, shape_gradients, shape_values
from .errors import ConfigurationError

log = logging.getLogger(__name__)


@njit
def _assemble_burgers_core(
    h, u_star, u_old, f_q, ref_vals, ref_grads, weights,
    dt, nu, theta_skew, theta_imex, streamline,
):
    """Local matrices (n_cells, 8, 8) and right-hand sides (n_cells, 8).

    Row index = test function, column index = trial function; local unknown
    2*v + c is the shape function of vertex v times unit vector e_c.
    """
    n_cells = len(h)
    n_q = len(weights)
    Ke_all = np.zeros((n_cells, 8, 8))
    Fe_all = np.zeros((n_cells, 8))
    G = np.empty((4, 2))
    adv = np.empty(4)

    for e in range(n_cells):
        he = h[e]
        for q in range(n_q):
            JxW = weights[q] * he * he
            N = ref_vals[q]
            for v in range(4):
                G[v, 0] = ref_grads[q, v, 0] / he
                G[v, 1] = ref_grads[q, v, 1] / he

            # u* and u_old (values and gradients) at the quadrature point
            us0 = 0.0
            us1 = 0.0
            div_us = 0.0
            uo0 = 0.0
            uo1 = 0.0
            grad_uo = np.zeros((2, 2))
            for v in range(4):
                us0 += N[v] * u_star[e, v, 0]
                us1 += N[v] * u_star[e, v, 1]
                div_us += u_star[e, v, 0] * G[v, 0] + u_star[e, v, 1] * G[v, 1]
                uo0 += N[v] * u_old[e, v, 0]
                uo1 += N[v] * u_old[e, v, 1]
                for c in range(2):
                    grad_uo[c, 0] += u_old[e, v, c] * G[v, 0]
                    grad_uo[c, 1] += u_old[e, v, c] * G[v, 1]

            for v in range(4):
                adv[v] = us0 * G[v, 0] + us1 * G[v, 1]

            for a in range(4):
                for b in range(4):
                    val = (
                        N[b] * N[a]
                        + theta_imex * dt * adv[b] * N[a]
                        + theta_skew * dt * div_us * N[b] * N[a]
                        + dt * nu * (G[b, 0] * G[a, 0] + G[b, 1] * G[a, 1])
                    )
                    if streamline:
                        val += dt * dt / 6.0 * adv[b] * adv[a]
                    for c in range(2):
                        Ke_all[e, 2 * a + c, 2 * b + c] += val * JxW

            uo = (uo0, uo1)
            for c in range(2):
                explicit_adv = us0 * grad_uo[c, 0] + us1 * grad_uo[c, 1]
                rhs_c = uo[c] + dt * f_q[e, q, c] - (1.0 - theta_imex) * dt * explicit_adv
                for a in range(4):
                    Fe_all[e, 2 * a + c] += rhs_c * N[a] * JxW

    return Ke_all, Fe_all


def extrapolate(
    old_solution: NDArray[np.float64],
    old_old_solution: NDArray[np.float64],
    order: int = 1,
) -> NDArray[np.float64]:
    """Advection velocity u* from the previous time levels."""
    if old_solution.shape != old_old_solution.shape:
        raise ConfigurationError(
            f"Solution generations differ in size: {old_solution.shape} vs {old_old_solution.shape}"
        )
    if order == 1:
        return old_solution.copy()
    if order == 2:
        return 2.0 * old_solution - 0.5 * old_old_solution
    raise ConfigurationError(f"extrapolation order must be 1 or 2, got {order}")


def quadrature_points(dofs: DofHandler, ref_points: NDArray[np.float64]) -> NDArray[np.float64]:
    """Physical quadrature points of every active cell, shape (n_cells, n_q, 2)."""
    lower_left, h = dofs.mesh.cell_geometry(dofs.cells)
    return lower_left[:, None, :] + h[:, None, None] * ref_points[None, :, :]


def cell_contributions(
    dofs: DofHandler,
    old_solution: NDArray[np.float64],
    old_old_solution: NDArray[np.float64],
    time: float,
    dt: float,
    nu: float,
    forcing: Callable,
    theta_skew: float = 0.5,
    theta_imex: float = 1.0,
    extrapolation_order: int = 1,
    streamline_diffusion: bool = False,
    quadrature_order: int = 2,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Unconstrained cell matrices and right-hand sides for one time step."""
    for name, vec in (("old_solution", old_solution), ("old_old_solution", old_old_solution)):
        if vec.shape != (dofs.n_dofs,):
            raise ConfigurationError(f"{name} has shape {vec.shape}, expected ({dofs.n_dofs},)")

    u_star = extrapolate(old_solution, old_old_solution, extrapolation_order)
    ref_points, weights = gauss_2d(quadrature_order)
    points = quadrature_points(dofs, ref_points)
    f_q = forcing(points.reshape(-1, 2), time).reshape(dofs.n_cells, len(weights), N_COMPONENTS)

    _, h = dofs.mesh.cell_geometry(dofs.cells)
    return _assemble_burgers_core(
        h,
        np.ascontiguousarray(dofs.cell_values(u_star)),
        np.ascontiguousarray(dofs.cell_values(old_solution)),
        np.ascontiguousarray(f_q),
        shape_values(ref_points),
        shape_gradients(ref_points),
        weights,
        float(dt),
        float(nu),
        float(theta_skew),
        float(theta_imex),
        bool(streamline_diffusion),
    )


def boundary_values(
    dofs: DofHandler,
    boundary_function: Optional[Callable] = None,
    time: float = 0.0,
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    """Unknown indices on the whole boundary and their prescribed values."""
    nodes = dofs.boundary_nodes("all")
    bdofs = (nodes[:, None] * N_COMPONENTS + np.arange(N_COMPONENTS)).ravel()
    if boundary_function is None:
        values = np.zeros(len(bdofs))
    else:
        values = np.asarray(boundary_function(dofs.node_coords[nodes], time), dtype=np.float64).ravel()
    return bdofs, values


def apply_dirichlet(
    A: spmatrix,
    b: NDArray[np.float64],
    bdofs: NDArray[np.int64],
    values: NDArray[np.float64],
) -> tuple[csr_matrix, NDArray[np.float64]]:
    """Impose Dirichlet values by row/column elimination.

    Rows and columns of ``bdofs`` are zeroed, the diagonal set to 1 and the
    right-hand side set to the value; column contributions move to b.
    """
    n = A.shape[0]
    A_csr = csr_matrix(A)
    b = np.array(b, dtype=np.float64)

    # A[:, bdofs] @ values == A @ f_full where f_full is zero except at bdofs
    f_full = np.zeros(n)
    f_full[bdofs] = values
    b -= A_csr @ f_full
    b[bdofs] = values

    scale = np.ones(n)
    scale[bdofs] = 0.0
    row_scale = np.repeat(scale, np.diff(A_csr.indptr))
    col_scale = scale[A_csr.indices]

    A_new = A_csr.copy()
    A_new.data *= row_scale * col_scale
    A_new.setdiag(A_new.diagonal() + (scale == 0).astype(float))
    return A_new, b


def assemble_system(
    dofs: DofHandler,
    old_solution: NDArray[np.float64],
    old_old_solution: NDArray[np.float64],
    time: float,
    dt: float,
    nu: float,
    forcing: Callable,
    theta_skew: float = 0.5,
    theta_imex: float = 1.0,
    extrapolation_order: int = 1,
    streamline_diffusion: bool = False,
    quadrature_order: int = 2,
    boundary_function: Optional[Callable] = None,
) -> tuple[csr_matrix, NDArray[np.float64]]:
    """Assemble the constrained linear system for one time step.

    Parameters
    ----------
    dofs : DofHandler with closed constraints
    old_solution, old_old_solution : previous two time levels
    time : time at which the forcing is evaluated
    dt, nu : time step and viscosity
    forcing : vector function f(points, t)

    Returns
    -------
    A : csr_matrix (n_dofs, n_dofs)
    b : ndarray (n_dofs,)
    """
    dofs.check_valid()
    Ke_all, Fe_all = cell_contributions(
        dofs, old_solution, old_old_solution, time, dt, nu, forcing,
        theta_skew=theta_skew,
        theta_imex=theta_imex,
        extrapolation_order=extrapolation_order,
        streamline_diffusion=streamline_diffusion,
        quadrature_order=quadrature_order,
    )
    A, b = dofs.distribute_local_to_global(Ke_all, Fe_all)
    bdofs, values = boundary_values(dofs, boundary_function, time)
    A, b = apply_dirichlet(A, b, bdofs, values)
    log.debug(f"Assembled system: {dofs.n_dofs} unknowns, {A.nnz} nonzeros")
    return A, b


def assemble_mass(dofs: DofHandler) -> csr_matrix:
    """Unconstrained vector mass matrix."""
    dofs.check_valid()
    _, h = dofs.mesh.cell_geometry(dofs.cells)
    Me = np.kron(element_mass(), np.eye(N_COMPONENTS))
    Ke_all = h[:, None, None] ** 2 * Me[None, :, :]
    cell_dofs = dofs.cell_dofs
    n_loc = cell_dofs.shape[1]
    rows = np.repeat(cell_dofs, n_loc, axis=1).ravel()
    cols = np.tile(cell_dofs, (1, n_loc)).ravel()
    return csr_matrix((Ke_all.ravel(), (rows, cols)), shape=(dofs.n_dofs, dofs.n_dofs))


def assemble_load(
    dofs: DofHandler,
    function: Callable,
    time: float = 0.0,
    quadrature_order: int = 3,
) -> NDArray[np.float64]:
    """Unconstrained load vector (f, phi_i)."""
    dofs.check_valid()
    ref_points, weights = gauss_2d(quadrature_order)
    points = quadrature_points(dofs, ref_points)
    f_q = function(points.reshape(-1, 2), time).reshape(dofs.n_cells, len(weights), N_COMPONENTS)

    _, h = dofs.mesh.cell_geometry(dofs.cells)
    Fe_all = np.einsum("q,qa,eqc->eac", weights, shape_values(ref_points), f_q) * (h**2)[:, None, None]
    return np.bincount(dofs.cell_dofs.ravel(), weights=Fe_all.reshape(dofs.n_cells, -1).ravel(), minlength=dofs.n_dofs)
