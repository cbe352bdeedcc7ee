"""VTK snapshots and the L2 error diagnostics stream."""

from __future__ import annotations

import logging
from pathlib import Path

import meshio
import numpy as np
from numpy.typing import NDArray

from .dofs import DofHandler

log = logging.getLogger(__name__)

# Lexicographic local vertices -> counter-clockwise VTK quad
_VTK_QUAD_ORDER = [0, 1, 3, 2]


def snapshot_filename(timestep: int) -> str:
    return f"solution-{timestep:03d}.vtk"


def write_vtk_snapshot(
    dofs: DofHandler,
    field: NDArray[np.float64],
    output_dir: str | Path,
    timestep: int,
) -> Path:
    """Write the velocity field on the active quads as a legacy VTK file."""
    dofs.check_valid()
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / snapshot_filename(timestep)

    coords = dofs.node_coords
    points = np.column_stack([coords, np.zeros(dofs.n_nodes)])
    velocity = np.asarray(field, dtype=np.float64).reshape(dofs.n_nodes, dofs.n_components)
    cells = [("quad", dofs.cell_nodes[:, _VTK_QUAD_ORDER])]

    meshio.write(
        path,
        meshio.Mesh(
            points, cells,
            point_data={"velocity": np.column_stack([velocity, np.zeros(dofs.n_nodes)])},
        ),
        file_format="vtk",
        binary=False,
    )
    log.debug(f"Wrote {path}")
    return path


class DiagnosticsWriter:
    """One "<time>  <error>" line per write, flushed immediately.

    The file is truncated when the writer is entered.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file = None

    def __enter__(self) -> DiagnosticsWriter:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "w")
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def write(self, time: float, error: float) -> None:
        self._file.write(f"{time}  {error}\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
