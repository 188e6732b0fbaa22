# controls.py
"""
controls.py

Utility functions for box-shaped admissible control (and disturbance) sets
U = [-b_1, b_1] x ... x [-b_m, b_m]:

- bang-bang selection of the extremal element for a linear objective,
- the extremal value of that objective,
- componentwise saturation,
- a discrete grid of candidate controls inside the box.

Because every vehicle model is affine in control and disturbance, the
Hamiltonian is linear in each component, so its extremum over a box is always
attained at a corner picked by the sign of the component's coefficient.
"""

from typing import Literal, Sequence

import numpy as np

OptMode = Literal["max", "min"]


def bang_bang(coefficients: np.ndarray, bounds: np.ndarray, mode: OptMode = "max") -> np.ndarray:
    """
    Pick the corner of the box that maximizes (or minimizes) <c, u>.

    A zero coefficient always selects the positive bound, in both modes, so the
    result is reproducible.

    Parameters
    ----------
    coefficients : np.ndarray
        Coefficients c of the linear objective, shape (..., m).
    bounds : np.ndarray
        Symmetric component bounds b, shape (m,).
    mode : {"max", "min"}
        Whether to maximize or minimize <c, u>.

    Returns
    -------
    np.ndarray
        Extremal element, shape (..., m).
    """
    c = np.asarray(coefficients, dtype=float)
    b = np.asarray(bounds, dtype=float)
    if mode == "max":
        return np.where(c < 0.0, -b, b)
    elif mode == "min":
        return np.where(c > 0.0, -b, b)
    else:
        raise ValueError(f"Unknown optimization mode: {mode}")


def extremal_value(coefficients: np.ndarray, bounds: np.ndarray, mode: OptMode = "max") -> np.ndarray:
    """
    Value of max_u <c, u> (or min_u) over the box, i.e. +-sum_j b_j |c_j|.
    """
    c = np.asarray(coefficients, dtype=float)
    b = np.asarray(bounds, dtype=float)
    magnitude = np.abs(c) @ b
    if mode == "max":
        return magnitude
    elif mode == "min":
        return -magnitude
    else:
        raise ValueError(f"Unknown optimization mode: {mode}")


def saturate(u: np.ndarray, bounds: np.ndarray) -> np.ndarray:
    """
    Clamp every component independently to [-b_j, b_j].

    The vector is clamped, not rescaled, so the direction of u may change.
    """
    b = np.asarray(bounds, dtype=float)
    return np.clip(np.asarray(u, dtype=float), -b, b)


def generate_controls_box(num_per_dim: int, bounds: Sequence[float]) -> np.ndarray:
    """
    Generate a regular grid of controls inside the box [-b_1, b_1] x ... x [-b_m, b_m].

    Parameters
    ----------
    num_per_dim : int
        Number of grid points per dimension (2 gives the corners only).
    bounds : sequence of float
        Symmetric bounds per control component.

    Returns
    -------
    np.ndarray
        Array of controls of shape (num_per_dim ** m, m).
    """
    if num_per_dim < 2:
        raise ValueError("num_per_dim must be at least 2 to include both bounds")
    b = np.asarray(bounds, dtype=float)
    if b.size == 0:
        return np.zeros((1, 0))
    axes = [np.linspace(-bj, bj, num_per_dim) for bj in b]
    mesh = np.meshgrid(*axes, indexing="ij")
    return np.stack([m.ravel() for m in mesh], axis=-1)
