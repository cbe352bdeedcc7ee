"""Adaptive finite element solver for the 2D vector Burgers equation.

Solves du/dt + (u.grad)u - nu*lap(u) = f on [-1, 1]^2 with homogeneous
Dirichlet conditions, using Q1 elements on a quadtree mesh with hanging
nodes and a semi-implicit time step (one linear solve per step).

Main components:
- QuadMesh: hierarchical mesh with 2:1 balanced refinement/coarsening
- DofHandler, setup_dofs: unknown numbering and constraints
- assemble_system: per-step linear system
- LinearSolver: restarted GMRES with preconditioners
- kelly_estimate, refine_and_transfer: adaptivity
- BurgersSimulation, run_and_report: the time-stepping driver
"""

from .datastructures import Parameters, Metrics, TimeSeries, X_MIN, X_MAX, N_COMPONENTS
from .errors import (
    BurgersError,
    ConfigurationError,
    ConstraintError,
    SolverError,
    StaleDofsError,
)
from .mesh import QuadMesh, mark_fixed_number, clamp_flags, LEFT, RIGHT, BOTTOM, TOP
from .dofs import Constraints, DofHandler, setup_dofs
from .functions import VectorFunction, FUNCTIONS, get_function
from .assembly import assemble_system, assemble_mass, assemble_load, apply_dirichlet, extrapolate
from .solvers import LinearSolver, SolverResult
from .estimator import kelly_estimate
from .adaptivity import refine_and_transfer, transfer_solution
from .interpolation import point_values, project, l2_error, integrate_difference
from .output import write_vtk_snapshot, DiagnosticsWriter
from .driver import BurgersSimulation, SimulationState, Phase, run_and_report
