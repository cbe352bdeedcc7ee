"""Tests for the Kelly error estimator."""

import numpy as np
import pytest

from burgers.dofs import setup_dofs
from burgers.estimator import kelly_estimate
from burgers.mesh import QuadMesh


def nodal_field(dofs, fn):
    """Field with nodal values fn(x, y) -> (u, v), without constraints applied."""
    x, y = dofs.node_coords.T
    u, v = fn(x, y)
    return np.column_stack([u, v]).ravel()


@pytest.fixture
def mesh():
    return QuadMesh.create_uniform(refine_count=2)


class TestKelly:
    """Kelly jump indicator."""
    def test_linear_field_has_no_jumps(self, mesh):
        """Globally linear fields have continuous gradients."""
        dofs = setup_dofs(mesh)
        field = nodal_field(dofs, lambda x, y: (x + 2 * y, 3 * x - y))
        eta = kelly_estimate(mesh, dofs, field)
        assert eta.shape == (dofs.n_cells,)
        assert np.allclose(eta, 0.0, atol=1e-12)

    def test_linear_field_with_hanging_nodes(self, mesh):
        """Hanging faces add no spurious jumps."""
        mesh.execute_coarsening_and_refinement([mesh.cell_id(2, 1, 1)], [])
        dofs = setup_dofs(mesh)
        field = nodal_field(dofs, lambda x, y: (x - y, 0.5 * x))
        assert np.allclose(kelly_estimate(mesh, dofs, field), 0.0, atol=1e-12)

    def test_kink_is_detected(self, mesh):
        """Cells along a gradient kink are flagged."""
        dofs = setup_dofs(mesh)
        field = nodal_field(dofs, lambda x, y: (np.abs(x), np.zeros_like(x)))
        eta = kelly_estimate(mesh, dofs, field)

        lower_left, h = mesh.cell_geometry(dofs.cells)
        touches_kink = np.isclose(lower_left[:, 0], 0.0) | np.isclose(lower_left[:, 0] + h, 0.0)
        assert np.all(eta[touches_kink] > 0.0)
        assert np.allclose(eta[~touches_kink], 0.0, atol=1e-12)

    def test_kink_value(self, mesh):
        """Jump of d|x|/dx is 2 on a face of length h: eta^2 = h/24 * 4 * h."""
        dofs = setup_dofs(mesh)
        field = nodal_field(dofs, lambda x, y: (np.abs(x), np.zeros_like(x)))
        eta = kelly_estimate(mesh, dofs, field)
        h = 0.5
        assert np.isclose(eta.max(), np.sqrt(h / 24 * 4 * h))

    def test_nonnegative(self, mesh):
        """Indicators are non-negative for random fields."""
        dofs = setup_dofs(mesh)
        field = np.random.default_rng(2).random(dofs.n_dofs)
        assert np.all(kelly_estimate(mesh, dofs, field) >= 0.0)
