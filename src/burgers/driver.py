"""Time-stepping driver for the adaptive Burgers solver.

The run is a small state machine::

    INIT -> PRE_REFINE -> STEADY_LOOP -> DONE
      ^         |
      +---------+   (restart after each pre-refinement step)

INIT projects the initial condition onto the current mesh. During
PRE_REFINE the mesh is adapted after the first step and the run restarts
from INIT with the refined mesh, at most ``pre_refinement_steps`` times.
The STEADY_LOOP adapts every ``refine_interval`` steps without restarting.
"""

from __future__ import annotations

import logging
import sys
import time
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

import numpy as np
from numpy.typing import NDArray

from .adaptivity import refine_and_transfer
from .assembly import assemble_system
from .datastructures import Metrics, Parameters, TimeSeries, empty_field
from .dofs import DofHandler, setup_dofs
from .errors import BurgersError
from .estimator import kelly_estimate
from .functions import get_function
from .interpolation import l2_error, project
from .mesh import QuadMesh
from .output import DiagnosticsWriter, write_vtk_snapshot
from .solvers import LinearSolver, SolverResult

log = logging.getLogger(__name__)

BANNER = "-" * 52


class Phase(Enum):
    INIT = "init"
    PRE_REFINE = "pre_refine"
    STEADY_LOOP = "steady_loop"
    DONE = "done"


@dataclass
class SimulationState:
    """Mesh, unknowns and the three solution generations of a run."""

    mesh: QuadMesh
    dofs: DofHandler
    solution: NDArray[np.float64]
    old_solution: NDArray[np.float64]
    old_old_solution: NDArray[np.float64]
    time: float = 0.0
    timestep_number: int = 0
    pre_refinement_step: int = 0
    phase: Phase = Phase.INIT

    @classmethod
    def create(cls, mesh: QuadMesh, dofs: DofHandler) -> SimulationState:
        n = dofs.n_dofs
        return cls(mesh, dofs, empty_field(n), empty_field(n), empty_field(n))

    def reset_fields(self) -> None:
        """Zero all generations at the size of the current unknown space."""
        n = self.dofs.n_dofs
        self.solution = empty_field(n)
        self.old_solution = empty_field(n)
        self.old_old_solution = empty_field(n)

    def reset_history(self) -> None:
        n = self.dofs.n_dofs
        self.old_solution = empty_field(n)
        self.old_old_solution = empty_field(n)

    def rotate(self) -> None:
        self.old_old_solution = self.old_solution
        self.old_solution = self.solution
        self.solution = empty_field(self.dofs.n_dofs)


class BurgersSimulation:
    """Adaptive semi-implicit solver for the vector Burgers equation.

    Parameters
    ----------
    params : Parameters, optional
        Run configuration. If not provided, kwargs are used to create it.
    output_dir : directory for VTK snapshots and the diagnostics file
    """

    def __init__(self, params: Optional[Parameters] = None, output_dir: str | Path = ".", **kwargs):
        if params is None:
            params = Parameters(**kwargs)
        params.validate()
        self.params = params
        self.output_dir = Path(output_dir)

        self.forcing = get_function(params.forcing)
        self.initial_condition = get_function(params.initial_condition)
        self.reference = get_function(params.reference) if params.reference else None
        self.boundary_function = None if params.boundary_value == "zero" else get_function(params.boundary_value)

        self.solver = LinearSolver(
            max_iterations=params.max_linear_iterations,
            tolerance=params.linear_tolerance,
            restart=params.gmres_restart,
            preconditioner=params.preconditioner,
            on_nonconvergence=params.on_nonconvergence,
        )
        self.metrics = Metrics()
        self.time_series = TimeSeries()
        self.state: Optional[SimulationState] = None
        self._last_iterations = 0

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def setup(self) -> None:
        mesh = QuadMesh.create_uniform(refine_count=self.params.initial_refinement)
        dofs = setup_dofs(mesh, self.boundary_function)
        self.state = SimulationState.create(mesh, dofs)

    def start_time_iteration(self) -> None:
        """Reset the clock and project the initial condition."""
        state = self.state
        state.phase = Phase.INIT
        state.time = 0.0
        state.timestep_number = 0
        self._update_boundary_values()
        state.old_solution = project(state.dofs, self.initial_condition, 0.0, self.params.error_quadrature_order)
        state.solution = state.old_solution.copy()
        state.old_old_solution = empty_field(state.dofs.n_dofs)
        self._write_snapshot()

        if state.pre_refinement_step < self.params.pre_refinement_steps:
            state.phase = Phase.PRE_REFINE
        else:
            state.phase = Phase.STEADY_LOOP

    def step(self) -> SolverResult:
        """Assemble and solve one time step into state.solution."""
        p, state = self.params, self.state
        self._update_boundary_values()
        A, b = assemble_system(
            state.dofs, state.old_solution, state.old_old_solution,
            state.time, p.dt, p.nu, self.forcing,
            theta_skew=p.theta_skew,
            theta_imex=p.theta_imex,
            extrapolation_order=p.extrapolation_order,
            streamline_diffusion=p.streamline_diffusion,
            quadrature_order=p.quadrature_order,
            boundary_function=self.boundary_function,
        )
        result = self.solver.solve(A, b)
        state.solution = state.dofs.reconstruct(result.solution)

        self.metrics.loop_iterations += 1
        self.metrics.linear_iterations += result.iterations
        if not result.converged:
            self.metrics.nonconverged_solves += 1
        self._last_iterations = result.iterations

        self._write_snapshot()
        return result

    def refine(self) -> None:
        """Estimate the error of state.solution and adapt the mesh."""
        p, state = self.params, self.state
        indicator = kelly_estimate(state.mesh, state.dofs, state.solution)
        state.dofs, state.solution = refine_and_transfer(
            state.mesh, state.dofs, state.solution, indicator,
            min_level=p.min_level,
            max_level=p.max_level,
            refine_fraction=p.refine_fraction,
            coarsen_fraction=p.coarsen_fraction,
            boundary_function=self.boundary_function,
            time=state.time,
        )
        self.metrics.refinement_events += 1

    def advance(self, diagnostics: Optional[DiagnosticsWriter]) -> None:
        """Move the clock forward, record the error and rotate the generations."""
        state = self.state
        state.timestep_number += 1
        state.time = state.timestep_number * self.params.dt

        error = float("nan")
        if self.reference is not None:
            error = l2_error(
                state.dofs, state.solution, self.reference, state.time, self.params.error_quadrature_order
            )
            if diagnostics is not None:
                diagnostics.write(state.time, error)

        self.time_series.append(
            state.timestep_number, state.time, error,
            state.dofs.n_dofs, state.mesh.n_active_cells, self._last_iterations,
        )
        self.metrics.final_l2_error = error
        state.rotate()

    def _update_boundary_values(self) -> None:
        """Dirichlet inhomogeneities at the current time (no-op for zero data)."""
        if self.boundary_function is None:
            return
        self.state.dofs.setup_constraints(self.boundary_function, self.state.time)

    def _write_snapshot(self) -> None:
        if not self.params.write_vtk:
            return
        write_vtk_snapshot(self.state.dofs, self.state.solution, self.output_dir, self.state.timestep_number)
        self.metrics.snapshots_written += 1

    def _finished(self) -> bool:
        """Bodies run at t = 0, dt, 2dt, ... so ceil(end_time/dt) of them execute."""
        return self.state.time >= self.params.end_time - 1e-10 * self.params.dt

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def run(self) -> Metrics:
        """Run the simulation to end_time and return the metrics."""
        p = self.params
        time_start = time.time()
        self.setup()
        state = self.state

        if self.reference is not None and p.diagnostics_file:
            diagnostics_ctx = DiagnosticsWriter(self.output_dir / p.diagnostics_file)
        else:
            diagnostics_ctx = nullcontext()

        with diagnostics_ctx as diagnostics:
            self.start_time_iteration()
            while not self._finished():
                log.info(f"Time step {state.timestep_number} at t={state.time:g}")
                self.step()
                if state.phase is Phase.STEADY_LOOP:
                    self.metrics.steady_iterations += 1

                if state.timestep_number == 1 and state.phase is Phase.PRE_REFINE:
                    self.refine()
                    state.reset_fields()
                    state.pre_refinement_step += 1
                    self.metrics.restarts += 1
                    self.metrics.active_cells_per_restart.append(state.mesh.n_active_cells)
                    log.info(
                        f"Pre-refinement step {state.pre_refinement_step}/{p.pre_refinement_steps}: "
                        f"{state.mesh.n_active_cells} active cells, restarting"
                    )
                    self.start_time_iteration()
                    continue
                elif state.timestep_number > 0 and state.timestep_number % p.refine_interval == 0:
                    self.refine()
                    state.reset_history()

                self.advance(diagnostics)

        state.phase = Phase.DONE
        self.metrics.final_time = state.time
        self.metrics.final_n_dofs = state.dofs.n_dofs
        self.metrics.final_active_cells = state.mesh.n_active_cells
        self.metrics.wall_time_seconds = time.time() - time_start
        log.info(
            f"Finished at t={state.time:g} after {self.metrics.loop_iterations} steps "
            f"({self.metrics.restarts} restarts), {self.metrics.final_n_dofs} unknowns, "
            f"{self.metrics.wall_time_seconds:.2f}s"
        )
        return self.metrics


def run_and_report(
    params: Optional[Parameters] = None,
    output_dir: str | Path = ".",
    stream: TextIO = sys.stderr,
    config: Optional[Mapping[str, Any]] = None,
) -> int:
    """Run one simulation; report any failure on stream and map it to an exit code.

    When params is None they are built from config (or the defaults) inside
    the guarded region, so configuration errors get the same report. The
    resolved parameters are written to ``parameters.csv`` in output_dir.
    """
    try:
        if params is None:
            params = Parameters.from_config(config or {})
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        params.to_dataframe().to_csv(output_dir / "parameters.csv", index=False)
        BurgersSimulation(params, output_dir).run()
    except (BurgersError, ArithmeticError, np.linalg.LinAlgError, ValueError) as exc:
        stream.write(f"\n\n{BANNER}\nException on processing: \n{exc}\nAborting!\n{BANNER}\n")
        return 1
    except Exception:
        stream.write(f"\n\n{BANNER}\nUnknown exception!\nAborting!\n{BANNER}\n")
        return 1
    return 0
