"""Adaptive refinement step and solution transfer between meshes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from numpy.typing import NDArray

from .dofs import DofHandler, setup_dofs
from .elements import shape_values
from .mesh import QuadMesh

log = logging.getLogger(__name__)


@dataclass
class FieldSnapshot:
    """Cell-local nodal values of a field, taken before the mesh changes."""

    cells: NDArray[np.int64]
    cell_row: NDArray[np.int64]
    nodal: NDArray[np.float64]
    n_cells_total: int

    @classmethod
    def take(cls, dofs: DofHandler, field: NDArray[np.float64]) -> FieldSnapshot:
        return cls(
            cells=dofs.cells.copy(),
            cell_row=dofs.cell_row(np.arange(len(dofs.mesh.levels))).copy(),
            nodal=dofs.cell_values(field).copy(),
            n_cells_total=len(dofs.mesh.levels),
        )


def transfer_solution(mesh: QuadMesh, snapshot: FieldSnapshot, new_dofs: DofHandler) -> NDArray[np.float64]:
    """Carry a snapshot over to the current mesh.

    Unchanged cells copy their values, refined cells interpolate the bilinear
    field of their old ancestor at the new vertices, coarsened cells take each
    vertex from the child sharing it. Constrained entries are reconstructed.
    """
    cells = new_dofs.cells
    D = new_dofs.n_components
    nodal = np.zeros((len(cells), 4, D))

    old_active = np.zeros(len(mesh.levels), dtype=bool)
    old_active[snapshot.cells] = True

    kept = old_active[cells]
    nodal[kept] = snapshot.nodal[snapshot.cell_row[cells[kept]]]

    # Prolongation onto cells created by refinement
    refined = ~kept & (cells >= snapshot.n_cells_total)
    if refined.any():
        new_cells = cells[refined]
        ancestors = mesh.parents[new_cells]
        pending = ~old_active[ancestors]
        while pending.any():
            ancestors[pending] = mesh.parents[ancestors[pending]]
            pending = ~old_active[ancestors]

        points = mesh.key_to_point(mesh.vertex_keys(new_cells))
        lower_left, h = mesh.cell_geometry(ancestors)
        ref = (points - lower_left[:, None, :]) / h[:, None, None]
        N = shape_values(ref.reshape(-1, 2)).reshape(len(new_cells), 4, 4)
        nodal[refined] = np.einsum("mvs,msc->mvc", N, snapshot.nodal[snapshot.cell_row[ancestors]])

    # Restriction onto coarsened parents: vertex k comes from child k
    removed = snapshot.cells[~mesh.alive[snapshot.cells]]
    if len(removed):
        parents = mesh.parents[removed]
        offset = mesh.coords[removed] - 2 * mesh.coords[parents]
        k = offset[:, 0] + 2 * offset[:, 1]
        nodal[new_dofs.cell_row(parents), k] = snapshot.nodal[snapshot.cell_row[removed], k]

    values = np.zeros((new_dofs.n_nodes, D))
    values[new_dofs.cell_nodes] = nodal
    return new_dofs.reconstruct(values.ravel())


def refine_and_transfer(
    mesh: QuadMesh,
    dofs: DofHandler,
    solution: NDArray[np.float64],
    indicator: NDArray[np.float64],
    min_level: int,
    max_level: int,
    refine_fraction: float = 0.5,
    coarsen_fraction: float = 0.2,
    boundary_function: Optional[Callable] = None,
    time: float = 0.0,
) -> tuple[DofHandler, NDArray[np.float64]]:
    """Adapt the mesh to the indicator and carry the solution along.

    Returns
    -------
    new_dofs : DofHandler on the adapted mesh (constraints closed)
    transferred : the solution interpolated onto new_dofs
    """
    snapshot = FieldSnapshot.take(dofs, solution)
    n_dofs_before = dofs.n_dofs

    mesh.refine_coarsen(indicator, refine_fraction, coarsen_fraction, min_level, max_level)
    new_dofs = setup_dofs(mesh, boundary_function, time)
    transferred = transfer_solution(mesh, snapshot, new_dofs)

    log.info(f"Refinement: {n_dofs_before} -> {new_dofs.n_dofs} degrees of freedom, {mesh.n_levels} levels")
    return new_dofs, transferred
