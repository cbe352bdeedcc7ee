"""Kelly error estimator for Q1 fields.

For each active cell K

    eta_K^2 = sum_{faces F of K} h_K / 24 * int_F |[du/dn]|^2

summed over the velocity components, where [du/dn] is the jump of the
normal derivative to the active cell(s) across F. Boundary faces
contribute nothing.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from .dofs import DofHandler
from .elements import gauss_1d, shape_gradients
from .mesh import FACE_NORMALS, QuadMesh

log = logging.getLogger(__name__)

# Reference position of each face: (fixed axis, fixed value)
_FACE_AXIS = np.array([0, 0, 1, 1])
_FACE_VALUE = np.array([0.0, 1.0, 0.0, 1.0])


def _face_parameters() -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Points along a face (0..1) and weights: a 2-point rule on each half."""
    g, w = gauss_1d(2)
    t = np.concatenate([0.5 * g, 0.5 + 0.5 * g])
    return t, np.concatenate([0.5 * w, 0.5 * w])


def cell_gradients(
    nodal: NDArray[np.float64],
    lower_left: NDArray[np.float64],
    h: NDArray[np.float64],
    points: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Gradient of the bilinear interpolant of each cell at one point per cell.

    nodal : (m, 4, D) nodal values; returns (m, D, 2).
    """
    ref = (points - lower_left) / h[:, None]
    grads = shape_gradients(ref) / h[:, None, None]
    return np.einsum("mvc,mvd->mcd", nodal, grads)


def kelly_estimate(mesh: QuadMesh, dofs: DofHandler, field: NDArray[np.float64]) -> NDArray[np.float64]:
    """Error indicator per active cell (in the order of dofs.cells)."""
    dofs.check_valid()
    nodal = dofs.cell_values(field)
    lower_left, h = mesh.cell_geometry(dofs.cells)
    n_cells = dofs.n_cells

    t, w = _face_parameters()
    eta2 = np.zeros(n_cells)

    for face in range(4):
        normal = FACE_NORMALS[face].astype(np.float64)
        axis = _FACE_AXIS[face]
        for tq, wq in zip(t, w):
            ref = np.empty(2)
            ref[axis] = _FACE_VALUE[face]
            ref[1 - axis] = tq
            points = lower_left + h[:, None] * ref

            neighbors = mesh.locate(points + 0.25 * h[:, None] * normal)
            interior = np.flatnonzero(neighbors >= 0)
            if len(interior) == 0:
                continue
            rows = dofs.cell_row(neighbors[interior])

            grad_own = cell_gradients(nodal[interior], lower_left[interior], h[interior], points[interior])
            grad_nb = cell_gradients(nodal[rows], lower_left[rows], h[rows], points[interior])
            jump = (grad_own - grad_nb) @ normal
            eta2[interior] += h[interior] / 24.0 * wq * h[interior] * np.sum(jump**2, axis=1)

    indicator = np.sqrt(eta2)
    log.debug(f"Kelly estimate: max {indicator.max(initial=0.0):.3e}, total {np.sqrt(eta2.sum()):.3e}")
    return indicator
