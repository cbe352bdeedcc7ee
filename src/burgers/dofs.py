"""Degrees of freedom and constraints for vector-valued Q1 elements.

Nodes are the distinct vertices of the active cells. Each node carries
N_COMPONENTS unknowns numbered node-major::

    dof = node * N_COMPONENTS + component

and the cell-local ordering follows the same rule (2 * vertex + component),
so cell matrices are 8x8 with a block structure per component.

Constraints have the form x_i = sum_k c_k x_k + g_i. After closing, every
constraint refers only to unconstrained unknowns and the set is stored as a
sparse distribution matrix C (identity on free rows) plus the inhomogeneity g,
so that the full vector is x = C x + g.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from .datastructures import N_COMPONENTS
from .errors import ConfigurationError, ConstraintError, StaleDofsError
from .mesh import FACE_VERTICES, LATTICE, MAX_DEPTH, QuadMesh

log = logging.getLogger(__name__)

BOUNDARY_TAGS = ("all", "left", "right", "bottom", "top")

# Vertex keys are packed into a single int64 code: kx * KEY_BASE + ky
KEY_BASE = LATTICE + 1


# ============================================================================
# Constraints
# ============================================================================


@dataclass
class Constraints:
    """Linear constraints x_i = sum_k c_k x_k + g_i on a global vector."""

    n_dofs: int
    lines: dict = field(default_factory=dict)
    closed: bool = field(default=False, init=False)

    distribution: sp.csr_matrix = field(init=False, repr=False, default=None)
    inhomogeneity: NDArray[np.float64] = field(init=False, repr=False, default=None)
    constrained: NDArray[np.bool_] = field(init=False, repr=False, default=None)

    def add_line(self, dof: int, entries=(), inhomogeneity: float = 0.0) -> None:
        """Constrain ``dof`` to sum(c * x[k] for k, c in entries) + inhomogeneity."""
        if self.closed:
            raise ConstraintError("Cannot add constraints to a closed constraint set")
        if not 0 <= dof < self.n_dofs:
            raise ConfigurationError(f"Unknown index {dof} out of range [0, {self.n_dofs})")
        if dof in self.lines:
            raise ConstraintError(f"Unknown {dof} is already constrained")
        entries = [(int(k), float(c)) for k, c in entries]
        if any(k == dof for k, _ in entries):
            raise ConstraintError(f"Unknown {dof} cannot be constrained to itself")
        self.lines[int(dof)] = (entries, float(inhomogeneity))

    def is_constrained(self, dof: int) -> bool:
        return int(dof) in self.lines

    @property
    def n_constraints(self) -> int:
        return len(self.lines)

    def close(self) -> None:
        """Resolve chained constraints and build the distribution operators."""
        if self.closed:
            return

        resolved: dict[int, tuple[dict, float]] = {}

        def resolve(dof: int, visiting: set) -> tuple[dict, float]:
            if dof in resolved:
                return resolved[dof]
            if dof in visiting:
                raise ConstraintError(f"Cyclic constraint chain through unknown {dof}")
            visiting.add(dof)
            entries, g = self.lines[dof]
            direct: dict[int, float] = {}
            for k, c in entries:
                if k in self.lines:
                    sub, sub_g = resolve(k, visiting)
                    for kk, cc in sub.items():
                        direct[kk] = direct.get(kk, 0.0) + c * cc
                    g += c * sub_g
                else:
                    direct[k] = direct.get(k, 0.0) + c
            visiting.discard(dof)
            resolved[dof] = (direct, g)
            return resolved[dof]

        for dof in self.lines:
            resolve(dof, set())

        n = self.n_dofs
        self.constrained = np.zeros(n, dtype=bool)
        self.constrained[list(resolved)] = True
        self.inhomogeneity = np.zeros(n)

        free = np.flatnonzero(~self.constrained)
        rows, cols, vals = [free], [free], [np.ones(len(free))]
        for dof, (direct, g) in resolved.items():
            self.inhomogeneity[dof] = g
            if direct:
                rows.append(np.full(len(direct), dof))
                cols.append(np.fromiter(direct.keys(), dtype=np.int64, count=len(direct)))
                vals.append(np.fromiter(direct.values(), dtype=np.float64, count=len(direct)))

        self.distribution = sp.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(n, n)
        ).tocsr()
        self.lines = {dof: (list(direct.items()), g) for dof, (direct, g) in resolved.items()}
        self.closed = True

    def _require_closed(self) -> None:
        if not self.closed:
            raise ConstraintError("Constraint set must be closed before use")

    def condense(self, A: sp.spmatrix, b: NDArray[np.float64]) -> tuple[sp.csr_matrix, NDArray[np.float64]]:
        """Eliminate constrained unknowns from A x = b.

        Returns C^T A C and C^T (b - A g), with each constrained row reduced
        to a positive diagonal entry d and right-hand side d * g.
        """
        self._require_closed()
        A = sp.csr_matrix(A)
        C, g = self.distribution, self.inhomogeneity

        raw_diagonal = A.diagonal()
        rhs = C.T @ (b - A @ g)
        A = (C.T @ A @ C).tocsr()

        d = np.abs(raw_diagonal[self.constrained])
        d = np.where(d > 0.0, d, 1.0)
        diagonal = np.zeros(self.n_dofs)
        diagonal[self.constrained] = d
        A = (A + sp.diags(diagonal)).tocsr()
        rhs[self.constrained] = d * g[self.constrained]
        return A, rhs

    def reconstruct(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Set every constrained entry of x from its constraint, in place."""
        self._require_closed()
        if len(x) != self.n_dofs:
            raise ConfigurationError(f"Vector has {len(x)} entries, expected {self.n_dofs}")
        values = self.distribution @ x + self.inhomogeneity
        x[self.constrained] = values[self.constrained]
        return x


# ============================================================================
# DofHandler
# ============================================================================


@dataclass
class DofHandler:
    """Node and unknown numbering on the active cells of a QuadMesh."""

    mesh: QuadMesh
    n_components: int = N_COMPONENTS

    generation: int = field(init=False)
    cells: NDArray[np.int64] = field(init=False, repr=False)
    cell_nodes: NDArray[np.int64] = field(init=False, repr=False)
    node_keys: NDArray[np.int64] = field(init=False, repr=False)
    constraints: Constraints = field(init=False, repr=False)
    _node_codes: NDArray[np.int64] = field(init=False, repr=False)
    _cell_row: NDArray[np.int64] = field(init=False, repr=False)

    def __post_init__(self):
        self.rebuild(self.mesh)

    def rebuild(self, mesh: QuadMesh) -> None:
        """Fresh contiguous numbering for the current active cells."""
        self.mesh = mesh
        self.generation = mesh.generation
        self.cells = mesh.active_cells

        keys = mesh.vertex_keys(self.cells)
        codes = keys[..., 0] * KEY_BASE + keys[..., 1]
        self._node_codes, inverse = np.unique(codes.ravel(), return_inverse=True)
        self.cell_nodes = inverse.reshape(-1, 4).astype(np.int64)
        self.node_keys = np.column_stack([self._node_codes // KEY_BASE, self._node_codes % KEY_BASE])

        self._cell_row = np.full(len(mesh.levels), -1, dtype=np.int64)
        self._cell_row[self.cells] = np.arange(len(self.cells))
        self.constraints = Constraints(self.n_dofs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def n_nodes(self) -> int:
        return len(self._node_codes)

    @property
    def n_dofs(self) -> int:
        return self.n_components * self.n_nodes

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def node_coords(self) -> NDArray[np.float64]:
        return self.mesh.key_to_point(self.node_keys)

    @property
    def cell_dofs(self) -> NDArray[np.int64]:
        """Global unknowns of each cell in local order, shape (n_cells, 8)."""
        D = self.n_components
        return (self.cell_nodes[:, :, None] * D + np.arange(D)).reshape(self.n_cells, -1)

    def cell_row(self, cells: NDArray[np.int64]) -> NDArray[np.int64]:
        """Row of each cell id in this numbering (-1 if not active here)."""
        return self._cell_row[np.asarray(cells)]

    def find_nodes(self, keys: NDArray[np.int64]) -> NDArray[np.int64]:
        """Node index for each lattice key, -1 where no node exists."""
        keys = np.asarray(keys, dtype=np.int64).reshape(-1, 2)
        codes = keys[:, 0] * KEY_BASE + keys[:, 1]
        pos = np.searchsorted(self._node_codes, codes)
        pos = np.minimum(pos, self.n_nodes - 1)
        return np.where(self._node_codes[pos] == codes, pos, -1)

    def boundary_nodes(self, tag: str = "all") -> NDArray[np.int64]:
        kx, ky = self.node_keys[:, 0], self.node_keys[:, 1]
        masks = {
            "left": kx == 0,
            "right": kx == LATTICE,
            "bottom": ky == 0,
            "top": ky == LATTICE,
        }
        if tag == "all":
            return np.flatnonzero(masks["left"] | masks["right"] | masks["bottom"] | masks["top"])
        if tag not in masks:
            raise ConfigurationError(f"Unknown boundary tag '{tag}'. Use one of {BOUNDARY_TAGS}.")
        return np.flatnonzero(masks[tag])

    def check_valid(self) -> None:
        if self.generation != self.mesh.generation:
            raise StaleDofsError(
                f"DofHandler built for mesh generation {self.generation}, "
                f"mesh is at generation {self.mesh.generation}"
            )

    def cell_values(self, field_values: NDArray[np.float64]) -> NDArray[np.float64]:
        """Nodal values per cell, shape (n_cells, 4, n_components)."""
        self.check_valid()
        field_values = np.asarray(field_values)
        if field_values.shape != (self.n_dofs,):
            raise ConfigurationError(f"Field has shape {field_values.shape}, expected ({self.n_dofs},)")
        return field_values.reshape(-1, self.n_components)[self.cell_nodes]

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------
    def add_hanging_node_constraints(self) -> int:
        """Constrain midpoints of coarse edges to the mean of the edge ends.

        Returns the number of hanging nodes found.
        """
        self.check_valid()
        levels = self.mesh.levels[self.cells]
        keys = self.mesh.vertex_keys(self.cells)[levels < MAX_DEPTH]
        cell_nodes = self.cell_nodes[levels < MAX_DEPTH]

        hanging: dict[int, tuple[int, int]] = {}
        for a, b in FACE_VERTICES:
            mid = (keys[:, a] + keys[:, b]) // 2
            mid_nodes = self.find_nodes(mid)
            for row in np.flatnonzero(mid_nodes >= 0):
                hanging.setdefault(int(mid_nodes[row]), (int(cell_nodes[row, a]), int(cell_nodes[row, b])))

        D = self.n_components
        for node, (na, nb) in hanging.items():
            for c in range(D):
                self.constraints.add_line(node * D + c, [(na * D + c, 0.5), (nb * D + c, 0.5)])
        return len(hanging)

    def add_dirichlet_constraints(
        self,
        boundary_tag: str = "all",
        value_fn: Optional[Callable] = None,
        time: float = 0.0,
    ) -> None:
        """Fix every component on the tagged boundary (zero if value_fn is None).

        Unknowns that already carry a constraint are left untouched.
        """
        self.check_valid()
        nodes = self.boundary_nodes(boundary_tag)
        D = self.n_components
        if value_fn is None:
            values = np.zeros((len(nodes), D))
        else:
            values = np.asarray(value_fn(self.node_coords[nodes], time), dtype=np.float64)
        for node, value in zip(nodes, values):
            for c in range(D):
                dof = int(node) * D + c
                if not self.constraints.is_constrained(dof):
                    self.constraints.add_line(dof, (), value[c])

    def setup_constraints(self, boundary_function: Optional[Callable] = None, time: float = 0.0) -> int:
        """Fresh closed constraint set: hanging nodes, then Dirichlet values at ``time``.

        Returns the number of hanging nodes found.
        """
        self.constraints = Constraints(self.n_dofs)
        n_hanging = self.add_hanging_node_constraints()
        self.add_dirichlet_constraints("all", boundary_function, time)
        self.close()
        return n_hanging

    def close(self) -> None:
        self.constraints.close()

    def distribute_local_to_global(
        self,
        cell_matrices: NDArray[np.float64],
        cell_rhs: NDArray[np.float64],
    ) -> tuple[sp.csr_matrix, NDArray[np.float64]]:
        """Scatter cell contributions and eliminate constrained unknowns.

        Parameters
        ----------
        cell_matrices : (n_cells, 8, 8) local matrices, row = test function
        cell_rhs : (n_cells, 8) local right-hand sides
        """
        self.check_valid()
        cell_dofs = self.cell_dofs
        n_loc = cell_dofs.shape[1]
        if cell_matrices.shape != (self.n_cells, n_loc, n_loc) or cell_rhs.shape != (self.n_cells, n_loc):
            raise ConfigurationError(
                f"Cell contributions of shape {cell_matrices.shape}/{cell_rhs.shape} do not match "
                f"{self.n_cells} cells with {n_loc} unknowns each"
            )

        rows = np.repeat(cell_dofs, n_loc, axis=1).ravel()
        cols = np.tile(cell_dofs, (1, n_loc)).ravel()
        A = sp.coo_matrix((cell_matrices.ravel(), (rows, cols)), shape=(self.n_dofs, self.n_dofs)).tocsr()
        b = np.bincount(cell_dofs.ravel(), weights=cell_rhs.ravel(), minlength=self.n_dofs)
        return self.constraints.condense(A, b)

    def reconstruct(self, solution: NDArray[np.float64]) -> NDArray[np.float64]:
        self.check_valid()
        return self.constraints.reconstruct(solution)


def setup_dofs(
    mesh: QuadMesh,
    boundary_function: Optional[Callable] = None,
    time: float = 0.0,
) -> DofHandler:
    """Number unknowns, add hanging-node and Dirichlet constraints, close."""
    dofs = DofHandler(mesh)
    n_hanging = dofs.setup_constraints(boundary_function, time)
    log.info(f"Number of active cells: {dofs.n_cells}")
    log.info(f"Number of degrees of freedom: {dofs.n_dofs} ({n_hanging} hanging nodes)")
    return dofs
