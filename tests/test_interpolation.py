"""Tests for point evaluation, projection and error norms."""

import numpy as np
import pytest

from burgers.dofs import setup_dofs
from burgers.errors import ConfigurationError
from burgers.functions import get_function
from burgers.interpolation import integrate_difference, l2_error, point_values, project
from burgers.mesh import QuadMesh

# ||((x^2-1)(y^2-1), (x^2-1)(y^2-1))||_L2 on [-1, 1]^2
EXACT_NORM = np.sqrt(2.0 * (16.0 / 15.0) ** 2)


@pytest.fixture
def dofs():
    return setup_dofs(QuadMesh.create_uniform(refine_count=2))


class TestPointValues:
    """Point evaluation of finite element fields."""
    def test_values_at_nodes(self, dofs):
        """Values at nodes equal the nodal unknowns."""
        field = np.random.default_rng(0).random(dofs.n_dofs)
        values = point_values(dofs, field, dofs.node_coords)
        assert np.allclose(values, field.reshape(-1, 2))

    def test_value_at_cell_center_is_mean(self, dofs):
        """The cell center value is the mean of the corners."""
        field = np.random.default_rng(1).random(dofs.n_dofs)
        cell = 5
        lower_left, h = dofs.mesh.cell_geometry(dofs.cells[[cell]])
        center = lower_left + 0.5 * h[:, None]
        expected = dofs.cell_values(field)[cell].mean(axis=0)
        assert np.allclose(point_values(dofs, field, center)[0], expected)

    def test_outside_domain(self, dofs):
        """Points outside the domain are rejected."""
        with pytest.raises(ConfigurationError):
            point_values(dofs, np.zeros(dofs.n_dofs), np.array([[2.0, 0.0]]))


class TestProjection:
    """L2 projection."""
    def test_zero(self, dofs):
        """Projecting zero gives zero."""
        assert np.allclose(project(dofs, get_function("zero")), 0.0)

    def test_converges_under_refinement(self):
        """The projection error decreases with refinement."""
        exact = get_function("exact")
        errors = []
        for refine_count in (2, 3, 4):
            dofs = setup_dofs(QuadMesh.create_uniform(refine_count=refine_count))
            errors.append(l2_error(dofs, project(dofs, exact), exact))
        assert errors[0] > errors[1] > errors[2]
        assert errors[1] / errors[2] > 3.0

    def test_boundary_values(self, dofs):
        """Projected fields keep the boundary constraints."""
        field = project(dofs, get_function("gaussian"))
        boundary = dofs.boundary_nodes()
        assert np.allclose(field.reshape(-1, 2)[boundary], 0.0)


class TestErrorNorms:
    """L2 error integration."""
    def test_error_of_zero_field(self, dofs):
        """The error of zero is the norm of the reference."""
        error = l2_error(dofs, np.zeros(dofs.n_dofs), get_function("exact"))
        assert np.isclose(error, EXACT_NORM)

    def test_error_of_matching_field(self, dofs):
        """A matching field has zero error."""
        exact = get_function("zero")
        assert np.isclose(l2_error(dofs, np.zeros(dofs.n_dofs), exact), 0.0)

    def test_per_cell_errors(self, dofs):
        """Per-cell errors combine to the global norm."""
        per_cell = integrate_difference(dofs, np.zeros(dofs.n_dofs), get_function("exact"))
        assert per_cell.shape == (dofs.n_cells,)
        assert np.isclose(np.sqrt(np.sum(per_cell**2)), EXACT_NORM)
