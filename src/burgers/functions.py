"""Vector-valued coefficient functions (forcing, initial data, reference).

All functions are stateless and vectorized: ``fn(points, t)`` takes an
(n, 2) array of points and returns an (n, 2) array of values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from .datastructures import N_COMPONENTS
from .errors import ConfigurationError

# Pulsed forcing: period and the two source regions
PULSE_PERIOD = 0.2
DISK_RADIUS = 0.2


@dataclass(frozen=True)
class VectorFunction:
    """Named vector field f(x, t) with N_COMPONENTS components."""

    name: str
    evaluate: Callable[[NDArray[np.float64], float], NDArray[np.float64]]

    def __call__(self, points: NDArray[np.float64], time: float = 0.0) -> NDArray[np.float64]:
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        return np.asarray(self.evaluate(points, float(time)), dtype=np.float64).reshape(len(points), N_COMPONENTS)

    def value(self, point, component: int = 0, time: float = 0.0) -> float:
        """Single component at a single point."""
        if not 0 <= component < N_COMPONENTS:
            raise ConfigurationError(f"Component index {component} out of range [0, {N_COMPONENTS})")
        return float(self(np.asarray(point, dtype=np.float64)[None, :], time)[0, component])


def _pulsed(points, t):
    x, y = points[:, 0], points[:, 1]
    phase = t / PULSE_PERIOD - np.floor(t / PULSE_PERIOD)

    def window(lo, hi):
        return lo <= phase <= hi

    region_a = (x > 0.5) & (y > -0.5)
    region_b = (x > -0.5) & (y > 0.5)

    values = np.zeros((len(points), N_COMPONENTS))
    if window(0.0, 0.2):
        values[region_a, 0] = 1.0
    elif window(0.5, 0.7):
        values[region_b, 0] = 1.0
    if window(0.2, 0.4):
        values[region_a, 1] = 1.0
    elif window(0.7, 0.9):
        values[region_b, 1] = 1.0
    return values


def _zero(points, t):
    return np.zeros((len(points), N_COMPONENTS))


def _disks(points, t):
    r2 = DISK_RADIUS ** 2
    left = np.sum((points - [-0.5, 0.0]) ** 2, axis=1) < r2
    right = np.sum((points - [0.5, 0.0]) ** 2, axis=1) < r2
    center = np.sum(points**2, axis=1) < r2
    return np.column_stack([(left | right).astype(float), center.astype(float)])


def _exact(points, t):
    x, y = points[:, 0], points[:, 1]
    w = (x**2 - 1) * (y**2 - 1)
    return np.column_stack([w, w])


def manufactured_source(nu: float = 1.0) -> VectorFunction:
    """Steady source (u.grad)u - nu*lap(u) for the 'exact' reference field."""

    def evaluate(points, t):
        x, y = points[:, 0], points[:, 1]
        w = (x**2 - 1) * (y**2 - 1)
        advection = 2 * w * (x * (y**2 - 1) + y * (x**2 - 1))
        laplacian = 2 * (y**2 - 1) + 2 * (x**2 - 1)
        value = advection - nu * laplacian
        return np.column_stack([value, value])

    return VectorFunction("manufactured", evaluate)


def gaussian_bump(amplitude: float = 1.0, sigma: float = 5.0, center=(0.0, 0.0)) -> VectorFunction:
    """amplitude * exp(-sigma * |x - center|^2) on component 0."""
    center = np.asarray(center, dtype=np.float64)

    def evaluate(points, t):
        r2 = np.sum((points - center) ** 2, axis=1)
        values = np.zeros((len(points), N_COMPONENTS))
        values[:, 0] = amplitude * np.exp(-sigma * r2)
        return values

    return VectorFunction("gaussian", evaluate)


FUNCTIONS: dict[str, VectorFunction] = {
    "pulsed": VectorFunction("pulsed", _pulsed),
    "zero": VectorFunction("zero", _zero),
    "disks": VectorFunction("disks", _disks),
    "manufactured": manufactured_source(),
    "gaussian": gaussian_bump(),
    "exact": VectorFunction("exact", _exact),
}


def get_function(name: str) -> VectorFunction:
    if name not in FUNCTIONS:
        raise ConfigurationError(f"Unknown function '{name}'. Use one of {sorted(FUNCTIONS)}.")
    return FUNCTIONS[name]
