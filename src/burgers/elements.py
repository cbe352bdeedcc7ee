"""Bilinear (Q1) reference element on the unit square and Gauss quadrature.

Local vertex numbering is lexicographic::

    2 ---- 3
    |      |
    0 ---- 1

so vertex v sits at reference position (v % 2, v // 2).
"""

import numpy as np

from .errors import ConfigurationError

# Pre-computed Gauss quadrature points and weights on [-1, 1]
_GAUSS_QUAD = {
    1: (np.array([0.0]), np.array([2.0])),
    2: (np.array([-1.0 / np.sqrt(3), 1.0 / np.sqrt(3)]), np.array([1.0, 1.0])),
    3: (np.array([-np.sqrt(3 / 5), 0.0, np.sqrt(3 / 5)]), np.array([5 / 9, 8 / 9, 5 / 9])),
    5: (
        np.array([
            -np.sqrt(5 + 2 * np.sqrt(10 / 7)) / 3,
            -np.sqrt(5 - 2 * np.sqrt(10 / 7)) / 3,
            0.0,
            np.sqrt(5 - 2 * np.sqrt(10 / 7)) / 3,
            np.sqrt(5 + 2 * np.sqrt(10 / 7)) / 3,
        ]),
        np.array([
            (322 - 13 * np.sqrt(70)) / 900,
            (322 + 13 * np.sqrt(70)) / 900,
            128 / 225,
            (322 + 13 * np.sqrt(70)) / 900,
            (322 - 13 * np.sqrt(70)) / 900,
        ]),
    ),
}

N_VERTICES = 4

# Reference position of each local vertex
VERTEX_OFFSETS = np.array([[0, 0], [1, 0], [0, 1], [1, 1]], dtype=np.int64)


def gauss_1d(n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Gauss points and weights mapped to [0, 1] (weights sum to 1)."""
    if n_points not in _GAUSS_QUAD:
        raise ConfigurationError(f"Unsupported quadrature order {n_points}. Use 1, 2, 3, or 5.")
    pts, wts = _GAUSS_QUAD[n_points]
    return 0.5 * (pts + 1.0), 0.5 * wts


def gauss_2d(n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Tensor-product Gauss rule on the unit square.

    Returns
    -------
    points : ndarray (n_points**2, 2)
    weights : ndarray (n_points**2,)
        Weights sum to 1 (the reference area).
    """
    pts, wts = gauss_1d(n_points)
    X, Y = np.meshgrid(pts, pts, indexing="ij")
    WX, WY = np.meshgrid(wts, wts, indexing="ij")
    points = np.column_stack([X.ravel(), Y.ravel()])
    return points, (WX * WY).ravel()


def shape_values(ref_points: np.ndarray) -> np.ndarray:
    """Q1 shape function values, shape (n_points, 4)."""
    ref_points = np.atleast_2d(ref_points)
    xi, eta = ref_points[:, 0], ref_points[:, 1]
    values = np.empty((len(xi), N_VERTICES))
    values[:, 0] = (1 - xi) * (1 - eta)
    values[:, 1] = xi * (1 - eta)
    values[:, 2] = (1 - xi) * eta
    values[:, 3] = xi * eta
    return values


def shape_gradients(ref_points: np.ndarray) -> np.ndarray:
    """Q1 shape function gradients on the unit square, shape (n_points, 4, 2).

    Divide by the cell size h to get physical gradients.
    """
    ref_points = np.atleast_2d(ref_points)
    xi, eta = ref_points[:, 0], ref_points[:, 1]
    grads = np.empty((len(xi), N_VERTICES, 2))
    grads[:, 0, 0] = -(1 - eta)
    grads[:, 0, 1] = -(1 - xi)
    grads[:, 1, 0] = 1 - eta
    grads[:, 1, 1] = -xi
    grads[:, 2, 0] = -eta
    grads[:, 2, 1] = 1 - xi
    grads[:, 3, 0] = eta
    grads[:, 3, 1] = xi
    return grads


def element_mass() -> np.ndarray:
    """Scalar Q1 mass matrix on the unit square (scale by h**2)."""
    return np.array([
        [4.0, 2.0, 2.0, 1.0],
        [2.0, 4.0, 1.0, 2.0],
        [2.0, 1.0, 4.0, 2.0],
        [1.0, 2.0, 2.0, 4.0],
    ]) / 36.0


def element_diffusion() -> np.ndarray:
    """Scalar Q1 stiffness matrix (size independent in 2D)."""
    return np.array([
        [4.0, -1.0, -1.0, -2.0],
        [-1.0, 4.0, -2.0, -1.0],
        [-1.0, -2.0, 4.0, -1.0],
        [-2.0, -1.0, -1.0, 4.0],
    ]) / 6.0
