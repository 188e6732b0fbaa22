# backend_torch.py
"""
backend_torch.py

PyTorch version of the Lax-Friedrichs time step from backend_numpy.

The Hamiltonian terms are moved to the selected device once per solve; the
value function then stays on the device for all sub-steps and is only copied
back to NumPy when the solve ends.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

try:
    import torch
except ImportError as e:  # pragma: no cover
    raise ImportError(
        "backend_torch requires PyTorch to be installed. "
        "Install it via `pip install torch`."
    ) from e

from backend_numpy import Accuracy, HamiltonianTerms


@dataclass(frozen=True)
class TorchHamiltonianTerms:
    """HamiltonianTerms with array members stored as tensors on one device."""
    drift: "torch.Tensor"
    control_gain: "torch.Tensor"
    disturbance_gain: "torch.Tensor"
    control_bounds: "torch.Tensor"
    disturbance_bounds: "torch.Tensor"
    u_sign: float
    d_sign: float
    alpha: Tuple[float, ...]
    dx: Tuple[float, ...]
    periodic: Tuple[bool, ...]


def terms_to_torch(terms: HamiltonianTerms, device: str = "cpu") -> TorchHamiltonianTerms:
    """Copy precomputed Hamiltonian terms to `device` (float64)."""

    def _t(a: np.ndarray) -> "torch.Tensor":
        return torch.as_tensor(np.ascontiguousarray(a), dtype=torch.float64, device=device)

    return TorchHamiltonianTerms(
        drift=_t(terms.drift),
        control_gain=_t(terms.control_gain),
        disturbance_gain=_t(terms.disturbance_gain),
        control_bounds=_t(terms.control_bounds),
        disturbance_bounds=_t(terms.disturbance_bounds),
        u_sign=terms.u_sign,
        d_sign=terms.d_sign,
        alpha=tuple(float(a) for a in terms.alpha),
        dx=tuple(float(h) for h in terms.dx),
        periodic=terms.periodic,
    )


def one_sided_differences_torch(
        V: "torch.Tensor",
        dim: int,
        h: float,
        periodic: bool,
) -> Tuple["torch.Tensor", "torch.Tensor"]:
    """Backward and forward differences along `dim` (edge-replicated boundaries)."""
    if periodic:
        backward = (V - torch.roll(V, shifts=1, dims=dim)) / h
        forward = (torch.roll(V, shifts=-1, dims=dim) - V) / h
        return backward, forward
    inner = torch.diff(V, dim=dim) / h
    pad_shape = list(V.shape)
    pad_shape[dim] = 1
    zero = torch.zeros(pad_shape, dtype=V.dtype, device=V.device)
    backward = torch.cat([zero, inner], dim=dim)
    forward = torch.cat([inner, zero], dim=dim)
    return backward, forward


def hamiltonian_torch(p: "torch.Tensor", terms: TorchHamiltonianTerms) -> "torch.Tensor":
    """Optimal Hamiltonian for gradients p of shape (*shape, n)."""
    ham = torch.sum(p * terms.drift, dim=-1)
    if terms.control_bounds.numel():
        c = torch.einsum("...i,...ij->...j", p, terms.control_gain)
        ham = ham + terms.u_sign * torch.matmul(torch.abs(c), terms.control_bounds)
    if terms.disturbance_bounds.numel():
        e = torch.einsum("...i,...ij->...j", p, terms.disturbance_gain)
        ham = ham + terms.d_sign * torch.matmul(torch.abs(e), terms.disturbance_bounds)
    return ham


def lax_friedrichs_rhs_torch(V: "torch.Tensor", terms: TorchHamiltonianTerms) -> "torch.Tensor":
    """Right-hand side dV/dtau of the Lax-Friedrichs scheme on a tensor."""
    centered = []
    dissipation = torch.zeros_like(V)
    for dim in range(V.dim()):
        backward, forward = one_sided_differences_torch(V, dim, terms.dx[dim], terms.periodic[dim])
        centered.append(0.5 * (backward + forward))
        dissipation = dissipation + 0.5 * terms.alpha[dim] * (forward - backward)
    p = torch.stack(centered, dim=-1)
    return hamiltonian_torch(p, terms) + dissipation


def propagate_torch_tensor(
        V: "torch.Tensor",
        dt: float,
        terms: TorchHamiltonianTerms,
        accuracy: Accuracy = "low",
) -> "torch.Tensor":
    """
    Advance V by dt on its device. Same schemes as propagate_numpy.
    """
    V1 = V + dt * lax_friedrichs_rhs_torch(V, terms)
    if accuracy == "low":
        return V1
    elif accuracy == "medium":
        V2 = V1 + dt * lax_friedrichs_rhs_torch(V1, terms)
        return 0.5 * (V + V2)
    raise ValueError(f"Unknown accuracy: {accuracy}")
