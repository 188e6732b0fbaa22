# backend_numpy.py
"""
backend_numpy.py

NumPy backend for advancing a value function on a grid by one time step of
the Hamilton-Jacobi equation

    dV/dtau = H(x, grad V),   H(x, p) = ext_u ext_d <p, f(x, u, d)>

written in time-to-go tau, with a first-order Lax-Friedrichs scheme. The
control-affine structure of the dynamics is evaluated once on the grid
(HamiltonianTerms) so each step only needs array arithmetic, which the Torch
backend mirrors.
"""

from dataclasses import dataclass
from typing import Literal, Tuple

import numpy as np

from controls import OptMode
from grid import Grid
from system import DynamicsModel

Accuracy = Literal["low", "medium"]


def _mode_sign(mode: OptMode) -> float:
    if mode == "max":
        return 1.0
    elif mode == "min":
        return -1.0
    raise ValueError(f"Unknown optimization mode: {mode}")


@dataclass(frozen=True)
class HamiltonianTerms:
    """
    Affine decomposition of the dynamics sampled on a grid, plus the
    dissipation coefficients of the Lax-Friedrichs scheme.
    """
    drift: np.ndarray               # (*shape, n)
    control_gain: np.ndarray        # (*shape, n, m)
    disturbance_gain: np.ndarray    # (*shape, n, k)
    control_bounds: np.ndarray      # (m,)
    disturbance_bounds: np.ndarray  # (k,)
    u_sign: float
    d_sign: float
    alpha: np.ndarray               # (n,) max |f_i| over grid, controls and disturbances
    dx: np.ndarray                  # (n,)
    periodic: Tuple[bool, ...]

    def stable_time_step(self, cfl_number: float) -> float:
        """Largest sub-step allowed by the CFL condition; inf if nothing moves."""
        rate = float(np.sum(self.alpha / self.dx))
        return cfl_number / rate if rate > 0.0 else np.inf


def build_terms(grid: Grid, dynamics: DynamicsModel, u_mode: OptMode, d_mode: OptMode) -> HamiltonianTerms:
    """
    Evaluate the affine decomposition of `dynamics` on every grid point.
    """
    x = grid.states
    alpha = np.max(dynamics.max_rates(x).reshape(-1, grid.ndim), axis=0)
    return HamiltonianTerms(
        drift=dynamics.drift(x),
        control_gain=np.ascontiguousarray(dynamics.control_matrix(x)),
        disturbance_gain=np.ascontiguousarray(dynamics.disturbance_matrix(x)),
        control_bounds=np.asarray(dynamics.control_bounds, dtype=float),
        disturbance_bounds=np.asarray(dynamics.disturbance_bounds, dtype=float),
        u_sign=_mode_sign(u_mode),
        d_sign=_mode_sign(d_mode),
        alpha=alpha,
        dx=np.asarray(grid.dx, dtype=float),
        periodic=tuple(grid.is_periodic(d) for d in range(grid.ndim)),
    )


def one_sided_differences(V: np.ndarray, dim: int, h: float, periodic: bool) -> Tuple[np.ndarray, np.ndarray]:
    """
    Backward and forward differences of V along `dim`.

    Non-periodic boundaries replicate the edge value, so the outward
    difference there is zero.
    """
    if periodic:
        backward = (V - np.roll(V, 1, axis=dim)) / h
        forward = (np.roll(V, -1, axis=dim) - V) / h
        return backward, forward
    inner = np.diff(V, axis=dim) / h
    pad_shape = list(V.shape)
    pad_shape[dim] = 1
    zero = np.zeros(pad_shape)
    backward = np.concatenate([zero, inner], axis=dim)
    forward = np.concatenate([inner, zero], axis=dim)
    return backward, forward


def hamiltonian_numpy(p: np.ndarray, terms: HamiltonianTerms) -> np.ndarray:
    """
    Optimal Hamiltonian for gradients p of shape (*shape, n).
    """
    ham = np.sum(p * terms.drift, axis=-1)
    if terms.control_bounds.size:
        c = np.einsum("...i,...ij->...j", p, terms.control_gain)
        ham = ham + terms.u_sign * (np.abs(c) @ terms.control_bounds)
    if terms.disturbance_bounds.size:
        e = np.einsum("...i,...ij->...j", p, terms.disturbance_gain)
        ham = ham + terms.d_sign * (np.abs(e) @ terms.disturbance_bounds)
    return ham


def lax_friedrichs_rhs_numpy(V: np.ndarray, terms: HamiltonianTerms) -> np.ndarray:
    """
    Right-hand side dV/dtau of the Lax-Friedrichs scheme.
    """
    centered = []
    dissipation = np.zeros_like(V)
    for dim in range(V.ndim):
        backward, forward = one_sided_differences(V, dim, terms.dx[dim], terms.periodic[dim])
        centered.append(0.5 * (backward + forward))
        dissipation = dissipation + 0.5 * terms.alpha[dim] * (forward - backward)
    p = np.stack(centered, axis=-1)
    return hamiltonian_numpy(p, terms) + dissipation


def propagate_numpy(V: np.ndarray, dt: float, terms: HamiltonianTerms, accuracy: Accuracy = "low") -> np.ndarray:
    """
    Advance V by dt (forward Euler for "low", two-stage TVD Runge-Kutta for
    "medium"). Returns a new array; V is not modified.
    """
    V1 = V + dt * lax_friedrichs_rhs_numpy(V, terms)
    if accuracy == "low":
        return V1
    elif accuracy == "medium":
        V2 = V1 + dt * lax_friedrichs_rhs_numpy(V1, terms)
        return 0.5 * (V + V2)
    raise ValueError(f"Unknown accuracy: {accuracy}")
