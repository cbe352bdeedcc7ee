"""Tests for unknown numbering and constraints."""

import numpy as np
import pytest

from burgers.dofs import Constraints, DofHandler, setup_dofs
from burgers.errors import ConfigurationError, ConstraintError, StaleDofsError
from burgers.functions import VectorFunction
from burgers.mesh import QuadMesh


@pytest.fixture
def uniform_dofs():
    return setup_dofs(QuadMesh.create_uniform(refine_count=2))


@pytest.fixture
def hanging_mesh():
    """2x2 mesh with the lower-left cell refined once."""
    mesh = QuadMesh.create_uniform(refine_count=1)
    mesh.execute_coarsening_and_refinement([mesh.cell_id(1, 0, 0)], [])
    return mesh


def node_at(dofs, point):
    return int(np.flatnonzero(np.all(np.isclose(dofs.node_coords, point), axis=1))[0])


class TestNumbering:
    """Node and unknown numbering."""

    def test_counts(self, uniform_dofs):
        """A 4x4 mesh has 25 nodes and two unknowns per node."""
        assert uniform_dofs.n_nodes == 25
        assert uniform_dofs.n_dofs == 2 * uniform_dofs.n_nodes

    def test_boundary_nodes(self, uniform_dofs):
        """Boundary tags select the right nodes."""
        assert len(uniform_dofs.boundary_nodes("all")) == 16
        assert len(uniform_dofs.boundary_nodes("left")) == 5
        left = uniform_dofs.node_coords[uniform_dofs.boundary_nodes("left")]
        assert np.allclose(left[:, 0], -1.0)

    def test_unknown_tag(self, uniform_dofs):
        """Unknown boundary tags are rejected."""
        with pytest.raises(ConfigurationError):
            uniform_dofs.boundary_nodes("inlet")

    def test_cell_dofs_node_major(self, uniform_dofs):
        """Cell unknowns are numbered node-major."""
        cell_dofs = uniform_dofs.cell_dofs
        assert cell_dofs.shape == (16, 8)
        assert np.all(cell_dofs[:, 0::2] == 2 * uniform_dofs.cell_nodes)
        assert np.all(cell_dofs[:, 1::2] == 2 * uniform_dofs.cell_nodes + 1)

    def test_cell_values_shape(self, uniform_dofs):
        """Cell values are gathered per vertex and component."""
        field = np.arange(uniform_dofs.n_dofs, dtype=float)
        values = uniform_dofs.cell_values(field)
        assert values.shape == (16, 4, 2)
        assert np.all(values[..., 1] == values[..., 0] + 1)

    def test_cell_values_size_mismatch(self, uniform_dofs):
        """Fields of the wrong size are rejected."""
        with pytest.raises(ConfigurationError):
            uniform_dofs.cell_values(np.zeros(3))

    def test_stale_after_mesh_change(self, uniform_dofs):
        """Using a numbering after the mesh changed raises."""
        mesh = uniform_dofs.mesh
        mesh.execute_coarsening_and_refinement([mesh.active_cells[0]], [])
        with pytest.raises(StaleDofsError):
            uniform_dofs.cell_values(np.zeros(uniform_dofs.n_dofs))

    def test_rebuild_restores_validity(self, uniform_dofs):
        """Rebuilding renumbers the adapted mesh."""
        mesh = uniform_dofs.mesh
        mesh.execute_coarsening_and_refinement([mesh.active_cells[0]], [])
        uniform_dofs.rebuild(mesh)
        uniform_dofs.check_valid()
        assert uniform_dofs.n_dofs == 2 * uniform_dofs.n_nodes


class TestHangingNodes:
    """Hanging node detection and continuity."""

    def test_hanging_node_count(self, hanging_mesh):
        """One refined corner cell creates two hanging nodes."""
        dofs = DofHandler(hanging_mesh)
        assert dofs.n_nodes == 14
        assert dofs.add_hanging_node_constraints() == 2

    def test_reconstruct_is_continuous(self, hanging_mesh):
        """Hanging values are the mean of their edge ends."""
        dofs = setup_dofs(hanging_mesh)
        field = np.random.default_rng(1).random(dofs.n_dofs)
        dofs.reconstruct(field)

        values = field.reshape(-1, 2)
        hanging = node_at(dofs, [0.0, -0.5])
        a, b = node_at(dofs, [0.0, -1.0]), node_at(dofs, [0.0, 0.0])
        assert np.allclose(values[hanging], 0.5 * (values[a] + values[b]))
        assert np.allclose(values[dofs.boundary_nodes()], 0.0)

    def test_uniform_mesh_has_no_hanging_nodes(self, uniform_dofs):
        """Uniform meshes have no hanging nodes."""
        dofs = DofHandler(uniform_dofs.mesh)
        assert dofs.add_hanging_node_constraints() == 0


class TestConstraints:
    """Constraint set life cycle."""

    def test_chain_resolution(self):
        """Chained constraints resolve to free unknowns."""
        c = Constraints(4)
        c.add_line(0, [(1, 0.5)])
        c.add_line(1, [(2, 2.0)], 1.0)
        c.close()
        x = np.array([0.0, 0.0, 3.0, 0.0])
        c.reconstruct(x)
        assert np.isclose(x[1], 7.0)
        assert np.isclose(x[0], 3.5)
        assert c.lines[0] == ([(2, 1.0)], 0.5)

    def test_close_twice_is_noop(self):
        """Closing a closed set changes nothing."""
        c = Constraints(3)
        c.add_line(0, [(1, 0.5), (2, 0.5)])
        c.close()
        matrix = c.distribution.copy()
        c.close()
        assert (c.distribution != matrix).nnz == 0

    def test_add_after_close(self):
        """A closed set accepts no new lines."""
        c = Constraints(3)
        c.close()
        with pytest.raises(ConstraintError):
            c.add_line(0, [(1, 1.0)])

    def test_cycle_detected(self):
        """Cyclic chains raise ConstraintError."""
        c = Constraints(3)
        c.add_line(0, [(1, 1.0)])
        c.add_line(1, [(0, 1.0)])
        with pytest.raises(ConstraintError):
            c.close()

    def test_self_reference(self):
        """An unknown cannot depend on itself."""
        with pytest.raises(ConstraintError):
            Constraints(2).add_line(0, [(0, 1.0)])

    def test_dirichlet_keeps_existing_lines(self, uniform_dofs):
        """Dirichlet values do not replace existing constraints."""
        dofs = DofHandler(uniform_dofs.mesh)
        corner = node_at(dofs, [-1.0, -1.0])
        dofs.constraints.add_line(2 * corner, (), 5.0)
        dofs.add_dirichlet_constraints("all")
        assert dofs.constraints.lines[2 * corner] == ([], 5.0)
        assert dofs.constraints.n_constraints == 2 * 16

    def test_condensed_rows(self, hanging_mesh):
        """Constrained rows reduce to a positive diagonal."""
        dofs = setup_dofs(hanging_mesh)
        cell_matrices = np.broadcast_to(2.0 * np.eye(8), (dofs.n_cells, 8, 8)).copy()
        cell_rhs = np.ones((dofs.n_cells, 8))
        A, b = dofs.distribute_local_to_global(cell_matrices, cell_rhs)

        constrained = np.flatnonzero(dofs.constraints.constrained)
        A = A.tocsr()
        for dof in constrained:
            row = A.getrow(dof)
            assert row.nnz == 1 and row.indices[0] == dof
            assert row.data[0] > 0.0
        assert np.allclose(b[constrained], 0.0)
        assert np.allclose((A - A.T).toarray(), 0.0)


class TestTimeDependentBoundary:
    """Refreshing Dirichlet values in time."""

    @staticmethod
    def ramp():
        return VectorFunction("ramp", lambda p, t: t * p)

    def test_refresh_moves_boundary_values(self, hanging_mesh):
        """setup_constraints imposes the data at the requested time."""
        dofs = setup_dofs(hanging_mesh, self.ramp(), 0.0)
        n_constraints = dofs.constraints.n_constraints
        boundary = dofs.boundary_nodes()
        assert np.allclose(dofs.reconstruct(np.zeros(dofs.n_dofs)).reshape(-1, 2)[boundary], 0.0)

        dofs.setup_constraints(self.ramp(), 2.0)
        values = dofs.reconstruct(np.zeros(dofs.n_dofs)).reshape(-1, 2)
        assert np.allclose(values[boundary], 2.0 * dofs.node_coords[boundary])
        assert dofs.constraints.n_constraints == n_constraints

    def test_refresh_keeps_hanging_constraints(self, hanging_mesh):
        """Hanging nodes stay the mean of their edge ends after a refresh."""
        dofs = setup_dofs(hanging_mesh, self.ramp(), 0.0)
        dofs.setup_constraints(self.ramp(), 1.0)
        values = dofs.reconstruct(np.random.default_rng(2).random(dofs.n_dofs)).reshape(-1, 2)
        hanging = node_at(dofs, [0.0, -0.5])
        a, b = node_at(dofs, [0.0, -1.0]), node_at(dofs, [0.0, 0.0])
        assert np.allclose(values[hanging], 0.5 * (values[a] + values[b]))
