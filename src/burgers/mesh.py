"""Hierarchical quadrilateral mesh for adaptive refinement.

The mesh is a quadtree over the square [x_min, x_max]^2. Every cell ever
created keeps its row in the hierarchy arrays so that parent/child links
survive refinement and coarsening; the leaves ('active' cells) tile the
domain.

Key Data Structures:
    levels:   refinement level of each cell (root = 0).
    parents:  parent id (-1 for the root).
    children: 4 child ids in lexicographic order, -1 when unrefined.
    coords:   integer (ix, iy) position of the cell at its own level.
    active:   True for leaf cells.
    alive:    False for children removed by coarsening.

Vertices are addressed by integer keys on a lattice of 2**MAX_DEPTH
intervals per side, so vertex matching never relies on floating point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from .datastructures import X_MAX, X_MIN
from .elements import VERTEX_OFFSETS
from .errors import ConfigurationError

log = logging.getLogger(__name__)

MAX_DEPTH = 24
LATTICE = 1 << MAX_DEPTH

# Face constants
LEFT, RIGHT, BOTTOM, TOP = 0, 1, 2, 3
FACE_NORMALS = np.array([[-1, 0], [1, 0], [0, -1], [0, 1]], dtype=np.int64)

# Local vertices on each face. Child k occupies the quadrant of vertex k,
# so the same table lists the children touching each face.
FACE_VERTICES = np.array([[0, 2], [1, 3], [0, 1], [2, 3]], dtype=np.int64)


def mark_fixed_number(
    indicator: NDArray[np.float64],
    refine_fraction: float,
    coarsen_fraction: float,
) -> tuple[NDArray[np.bool_], NDArray[np.bool_]]:
    """Flag the top/bottom fractions of cells ranked by indicator.

    Returns (refine, coarsen) boolean masks over the cells. Cells with a zero
    indicator are never refined, and a uniformly zero indicator flags nothing.
    """
    if not (0.0 <= refine_fraction <= 1.0 and 0.0 <= coarsen_fraction <= 1.0):
        raise ConfigurationError("Refinement fractions must lie in [0, 1]")
    if refine_fraction + coarsen_fraction > 1.0:
        raise ConfigurationError("refine_fraction + coarsen_fraction must not exceed 1")

    indicator = np.asarray(indicator, dtype=np.float64)
    n = len(indicator)
    refine = np.zeros(n, dtype=bool)
    coarsen = np.zeros(n, dtype=bool)
    if n == 0 or not np.any(indicator > 0.0):
        return refine, coarsen

    order = np.argsort(-indicator, kind="stable")
    n_refine = int(refine_fraction * n)
    n_coarsen = int(coarsen_fraction * n)

    refine[order[:n_refine]] = True
    refine &= indicator > 0.0
    if n_coarsen > 0:
        coarsen[order[n - n_coarsen:]] = True
        coarsen &= ~refine
    return refine, coarsen


def clamp_flags(
    levels: NDArray[np.int64],
    refine: NDArray[np.bool_],
    coarsen: NDArray[np.bool_],
    min_level: int,
    max_level: int,
) -> tuple[NDArray[np.bool_], NDArray[np.bool_]]:
    """Clear refine flags at max_level and coarsen flags at min_level."""
    levels = np.asarray(levels)
    return refine & (levels < max_level), coarsen & (levels > min_level)


@dataclass
class QuadMesh:
    """Quadtree mesh of the square domain [x_min, x_max]^2."""

    x_min: float = X_MIN
    x_max: float = X_MAX
    refine_count: int = 0

    levels: NDArray[np.int64] = field(init=False, repr=False)
    parents: NDArray[np.int64] = field(init=False, repr=False)
    children: NDArray[np.int64] = field(init=False, repr=False)
    coords: NDArray[np.int64] = field(init=False, repr=False)
    active: NDArray[np.bool_] = field(init=False, repr=False)
    alive: NDArray[np.bool_] = field(init=False, repr=False)
    generation: int = field(init=False, default=0)

    # (level, ix, iy) -> cell id for every alive cell
    _lookup: dict = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.x_max <= self.x_min:
            raise ConfigurationError(f"Empty domain [{self.x_min}, {self.x_max}]")
        if not 0 <= self.refine_count <= MAX_DEPTH:
            raise ConfigurationError(f"refine_count must lie in [0, {MAX_DEPTH}], got {self.refine_count}")

        self.levels = np.zeros(1, dtype=np.int64)
        self.parents = np.full(1, -1, dtype=np.int64)
        self.children = np.full((1, 4), -1, dtype=np.int64)
        self.coords = np.zeros((1, 2), dtype=np.int64)
        self.active = np.ones(1, dtype=bool)
        self.alive = np.ones(1, dtype=bool)
        self._lookup = {(0, 0, 0): 0}

        for _ in range(self.refine_count):
            self._refine_cells(self.active_cells)
        self.generation = 0

    @classmethod
    def create_uniform(
        cls, domain: tuple[float, float] = (X_MIN, X_MAX), refine_count: int = 0
    ) -> QuadMesh:
        """Square mesh refined globally refine_count times."""
        mesh = cls(x_min=domain[0], x_max=domain[1], refine_count=refine_count)
        log.info(f"Number of active cells: {mesh.n_active_cells}")
        log.info(f"Total number of cells: {mesh.n_cells}")
        return mesh

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def length(self) -> float:
        return self.x_max - self.x_min

    @property
    def active_cells(self) -> NDArray[np.int64]:
        return np.flatnonzero(self.active)

    @property
    def n_active_cells(self) -> int:
        return int(np.count_nonzero(self.active))

    @property
    def n_cells(self) -> int:
        """Number of alive cells in the hierarchy (active and refined)."""
        return int(np.count_nonzero(self.alive))

    @property
    def n_levels(self) -> int:
        return int(self.levels[self.active].max()) + 1

    def cell_levels(self, cells: NDArray[np.int64] | None = None) -> NDArray[np.int64]:
        if cells is None:
            cells = self.active_cells
        return self.levels[cells]

    def cell_geometry(
        self, cells: NDArray[np.int64] | None = None
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Return (lower-left corners (n, 2), side lengths (n,))."""
        if cells is None:
            cells = self.active_cells
        h = self.length / 2.0 ** self.levels[cells]
        lower_left = self.x_min + self.coords[cells] * h[:, None]
        return lower_left, h

    def vertex_keys(self, cells: NDArray[np.int64] | None = None) -> NDArray[np.int64]:
        """Integer lattice keys of the 4 vertices of each cell, shape (n, 4, 2)."""
        if cells is None:
            cells = self.active_cells
        scale = np.right_shift(LATTICE, self.levels[cells])
        return (self.coords[cells][:, None, :] + VERTEX_OFFSETS[None, :, :]) * scale[:, None, None]

    def key_to_point(self, keys: NDArray[np.int64]) -> NDArray[np.float64]:
        return self.x_min + self.length * (np.asarray(keys, dtype=np.float64) / LATTICE)

    def cell_id(self, level: int, ix: int, iy: int) -> int:
        return self._lookup.get((int(level), int(ix), int(iy)), -1)

    def neighbor(self, cell: int, face: int) -> int:
        """Same-level neighbour across a face, or -1 if it does not exist."""
        dx, dy = FACE_NORMALS[face]
        ix, iy = self.coords[cell]
        return self.cell_id(self.levels[cell], ix + dx, iy + dy)

    def locate(self, points: NDArray[np.float64]) -> NDArray[np.int64]:
        """Active cell containing each point (-1 outside the domain)."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        ids = np.full(len(pts), -1, dtype=np.int64)
        inside = np.all((pts >= self.x_min) & (pts <= self.x_max), axis=1)
        if not inside.any():
            return ids

        frac = np.clip((pts[inside] - self.x_min) / self.length, 0.0, np.nextafter(1.0, 0.0))
        cur = np.zeros(len(frac), dtype=np.int64)
        while True:
            idx = np.flatnonzero(~self.active[cur])
            if len(idx) == 0:
                break
            c = cur[idx]
            n_cells = 2.0 ** (self.levels[c] + 1)
            quadrant = np.floor(frac[idx] * n_cells[:, None]).astype(np.int64) - 2 * self.coords[c]
            quadrant = np.clip(quadrant, 0, 1)
            cur[idx] = self.children[c, quadrant[:, 0] + 2 * quadrant[:, 1]]

        ids[inside] = cur
        return ids

    def _too_coarse(self, cell: int) -> bool:
        """True if an active cell two or more levels finer touches a face."""
        for face in range(4):
            nb = self.neighbor(cell, face)
            if nb < 0 or self.active[nb]:
                continue
            facing = self.children[nb, FACE_VERTICES[face ^ 1]]
            if not self.active[facing].all():
                return True
        return False

    def is_balanced(self) -> bool:
        """Check the 2:1 balance constraint across faces."""
        return not any(self._too_coarse(c) for c in self.active_cells)

    # ------------------------------------------------------------------
    # Topology changes
    # ------------------------------------------------------------------
    def _refine_cells(self, cells: NDArray[np.int64]) -> None:
        """Split active cells into 4 children each."""
        cells = np.asarray(cells, dtype=np.int64)
        if len(cells) == 0:
            return
        start = len(self.levels)
        new_ids = start + np.arange(4 * len(cells)).reshape(-1, 4)

        new_levels = np.repeat(self.levels[cells] + 1, 4)
        new_coords = (2 * self.coords[cells][:, None, :] + VERTEX_OFFSETS[None, :, :]).reshape(-1, 2)
        n_new = len(new_levels)

        self.levels = np.concatenate([self.levels, new_levels])
        self.parents = np.concatenate([self.parents, np.repeat(cells, 4)])
        self.children = np.concatenate([self.children, np.full((n_new, 4), -1, dtype=np.int64)])
        self.coords = np.concatenate([self.coords, new_coords])
        self.active = np.concatenate([self.active, np.ones(n_new, dtype=bool)])
        self.alive = np.concatenate([self.alive, np.ones(n_new, dtype=bool)])

        self.children[cells] = new_ids
        self.active[cells] = False
        for cid, lvl, (ix, iy) in zip(new_ids.ravel(), new_levels, new_coords):
            self._lookup[(int(lvl), int(ix), int(iy))] = int(cid)

    def _can_coarsen(self, parent: int) -> bool:
        kids = self.children[parent]
        if (kids < 0).any() or not self.active[kids].all():
            return False
        # The merged cell must not sit next to cells two levels finer
        for face in range(4):
            nb = self.neighbor(parent, face)
            if nb < 0 or self.active[nb]:
                continue
            facing = self.children[nb, FACE_VERTICES[face ^ 1]]
            if not self.active[facing].all():
                return False
        return True

    def _coarsen_cell(self, parent: int) -> None:
        kids = self.children[parent]
        for k in kids:
            del self._lookup[(int(self.levels[k]), int(self.coords[k, 0]), int(self.coords[k, 1]))]
        self.active[kids] = False
        self.alive[kids] = False
        self.children[parent] = -1
        self.active[parent] = True

    def execute_coarsening_and_refinement(
        self,
        refine_cells: NDArray[np.int64],
        coarsen_cells: NDArray[np.int64],
    ) -> tuple[int, int]:
        """Refine, restore 2:1 balance, then coarsen where allowed.

        Returns (number of cells split, number of parents merged).
        """
        refine_cells = np.unique(np.asarray(refine_cells, dtype=np.int64))
        self._refine_cells(refine_cells)
        n_split = len(refine_cells)

        while True:
            violators = np.array([c for c in self.active_cells if self._too_coarse(c)], dtype=np.int64)
            if len(violators) == 0:
                break
            self._refine_cells(violators)
            n_split += len(violators)

        flagged = {int(c) for c in coarsen_cells if self.active[c]}
        n_merged = 0
        for parent in np.unique(self.parents[list(flagged)]) if flagged else []:
            if parent < 0:
                continue
            kids = self.children[parent]
            if not all(int(k) in flagged for k in kids):
                continue
            if self._can_coarsen(parent):
                self._coarsen_cell(parent)
                n_merged += 1

        self.generation += 1
        return n_split, n_merged

    def refine_coarsen(
        self,
        indicator: NDArray[np.float64],
        refine_fraction: float,
        coarsen_fraction: float,
        min_level: int,
        max_level: int,
    ) -> NDArray[np.int64]:
        """Fixed-number refinement and coarsening within level bounds.

        Parameters
        ----------
        indicator : error indicator, one entry per active cell
        refine_fraction, coarsen_fraction : fractions of cells to flag
        min_level, max_level : cells at max_level are never refined, cells at
            min_level are never coarsened

        Returns
        -------
        The new active cell ids.
        """
        cells = self.active_cells
        indicator = np.asarray(indicator, dtype=np.float64)
        if indicator.shape != cells.shape:
            raise ConfigurationError(
                f"Indicator has shape {indicator.shape}, expected ({len(cells)},)"
            )
        if max_level > MAX_DEPTH:
            raise ConfigurationError(f"max_level must not exceed {MAX_DEPTH}")

        refine, coarsen = mark_fixed_number(indicator, refine_fraction, coarsen_fraction)
        refine, coarsen = clamp_flags(self.levels[cells], refine, coarsen, min_level, max_level)

        n_before = len(cells)
        n_split, n_merged = self.execute_coarsening_and_refinement(cells[refine], cells[coarsen])
        log.info(
            f"Adapted mesh: {n_split} cells refined, {n_merged} parents coarsened, "
            f"{n_before} -> {self.n_active_cells} active cells"
        )
        return self.active_cells
