"""Data structures for simulation configuration and results.

Architecture: Params vs Metrics

             Params (input/config)         Metrics (output/results)
             ─────────────────────         ────────────────────────
Global       Parameters                    Metrics
             dt, nu, levels, solver...     steps, restarts, iterations...

Timeseries   -                             TimeSeries
                                           time[], l2_error[], n_dofs[]...
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, List, Mapping, Optional

import numpy as np
import pandas as pd

from .errors import ConfigurationError

# Square domain [X_MIN, X_MAX]^2
X_MIN, X_MAX = -1.0, 1.0

# Number of vector components (velocity in 2D)
N_COMPONENTS = 2

PRECONDITIONERS = ("ssor", "ilu", "amg", "lu", "none")


# ============================================================================
# Parameters (Input Configuration)
# ============================================================================


@dataclass
class Parameters:
    """Simulation parameters - input configuration for a single run."""

    name: str = "burgers"

    # Mesh and adaptivity
    initial_refinement: int = 3
    min_level: int = 2
    max_level: int = 6
    pre_refinement_steps: int = 4
    refine_fraction: float = 0.5
    coarsen_fraction: float = 0.2
    refine_interval: int = 5

    # Time stepping
    dt: float = 1.0 / 500
    end_time: float = 1.0

    # Physics and discretization
    nu: float = 1.0
    theta_skew: float = 0.5
    theta_imex: float = 1.0
    extrapolation_order: int = 1
    streamline_diffusion: bool = False
    quadrature_order: int = 2
    error_quadrature_order: int = 3

    # Function strategies (see functions.FUNCTIONS)
    forcing: str = "pulsed"
    initial_condition: str = "zero"
    reference: Optional[str] = "exact"
    boundary_value: str = "zero"

    # Linear solver
    preconditioner: str = "ssor"
    max_linear_iterations: int = 5000
    linear_tolerance: float = 1e-9
    gmres_restart: int = 30
    on_nonconvergence: str = "warn"

    # Output
    write_vtk: bool = True
    diagnostics_file: Optional[str] = "l2_error.dat"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Parameters:
        """Validated Parameters from a plain mapping (e.g. a resolved hydra config)."""
        unknown = sorted(set(config) - {f.name for f in fields(cls)})
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        params = cls(**config)
        try:
            params.validate()
        except TypeError as exc:
            raise ConfigurationError(f"Ill-typed configuration value: {exc}") from exc
        return params

    def validate(self) -> None:
        """Raise ConfigurationError on inconsistent settings."""
        if self.initial_refinement < 0:
            raise ConfigurationError(f"initial_refinement must be >= 0, got {self.initial_refinement}")
        if not 0 <= self.min_level <= self.max_level:
            raise ConfigurationError(
                f"Level bounds must satisfy 0 <= min_level <= max_level, "
                f"got min_level={self.min_level}, max_level={self.max_level}"
            )
        if self.pre_refinement_steps < 0:
            raise ConfigurationError("pre_refinement_steps must be >= 0")
        if not (0.0 <= self.refine_fraction <= 1.0 and 0.0 <= self.coarsen_fraction <= 1.0):
            raise ConfigurationError("refine_fraction and coarsen_fraction must lie in [0, 1]")
        if self.refine_fraction + self.coarsen_fraction > 1.0:
            raise ConfigurationError("refine_fraction + coarsen_fraction must not exceed 1")
        if self.refine_interval < 1:
            raise ConfigurationError("refine_interval must be >= 1")
        if self.dt <= 0.0 or self.end_time < 0.0:
            raise ConfigurationError(f"Need dt > 0 and end_time >= 0, got dt={self.dt}, end_time={self.end_time}")
        if self.nu < 0.0:
            raise ConfigurationError(f"Viscosity must be non-negative, got nu={self.nu}")
        if not (0.0 <= self.theta_skew <= 1.0 and 0.0 <= self.theta_imex <= 1.0):
            raise ConfigurationError("theta_skew and theta_imex must lie in [0, 1]")
        if self.extrapolation_order not in (1, 2):
            raise ConfigurationError(f"extrapolation_order must be 1 or 2, got {self.extrapolation_order}")
        if self.preconditioner not in PRECONDITIONERS:
            raise ConfigurationError(
                f"Unknown preconditioner '{self.preconditioner}'. Use one of {PRECONDITIONERS}."
            )
        if self.on_nonconvergence not in ("warn", "raise"):
            raise ConfigurationError("on_nonconvergence must be 'warn' or 'raise'")
        if self.max_linear_iterations < 1 or self.gmres_restart < 1:
            raise ConfigurationError("max_linear_iterations and gmres_restart must be >= 1")

    def to_dict(self) -> dict:
        return asdict(self)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_dict()])


# ============================================================================
# Metrics (Output Results)
# ============================================================================


@dataclass
class Metrics:
    """Run metrics - output results computed during/after the simulation."""

    loop_iterations: int = 0  # loop bodies executed, restarts included
    steady_iterations: int = 0  # loop bodies after the last restart
    restarts: int = 0
    refinement_events: int = 0
    linear_iterations: int = 0
    nonconverged_solves: int = 0
    snapshots_written: int = 0
    final_time: float = 0.0
    final_n_dofs: int = 0
    final_active_cells: int = 0
    final_l2_error: float = float("nan")
    wall_time_seconds: float = 0.0
    active_cells_per_restart: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Scalar metrics only (bools as int)."""
        return {
            k: (int(v) if isinstance(v, bool) else v)
            for k, v in self.__dict__.items()
            if not isinstance(v, list)
        }

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self.to_dict()])


# ============================================================================
# TimeSeries (per advanced timestep)
# ============================================================================


@dataclass
class TimeSeries:
    """History recorded once per advanced timestep."""

    timestep: List[int] = field(default_factory=list)
    time: List[float] = field(default_factory=list)
    l2_error: List[float] = field(default_factory=list)
    n_dofs: List[int] = field(default_factory=list)
    n_active_cells: List[int] = field(default_factory=list)
    linear_iterations: List[int] = field(default_factory=list)

    def append(self, timestep, time, l2_error, n_dofs, n_active_cells, linear_iterations) -> None:
        self.timestep.append(int(timestep))
        self.time.append(float(time))
        self.l2_error.append(float(l2_error))
        self.n_dofs.append(int(n_dofs))
        self.n_active_cells.append(int(n_active_cells))
        self.linear_iterations.append(int(linear_iterations))

    def __len__(self) -> int:
        return len(self.time)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.__dict__)


def empty_field(n_dofs: int) -> np.ndarray:
    """Zero-initialized field vector of the given size."""
    return np.zeros(n_dofs, dtype=np.float64)
