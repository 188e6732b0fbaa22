# grid_reachability.py
"""
grid_reachability.py

Reachability engine: solves the Hamilton-Jacobi equation for a value function
on a grid until convergence or until the time horizon is exhausted. Supports
both NumPy and Torch backends for the expensive propagation step.

Two compute modes are available:

- "min_over_time": after every sub-step V <- min(V_propagated, V). Used for
  avoid sets, whose zero level set converges to the boundary of the maximal
  safe set.
- "max_with_running_cost": after every sub-step V <- max(V_propagated, l),
  which accumulates the worst cost l seen up to the current time. Used for
  tracking error bounds.

Convergence is polled once per time stamp: the field has converged when its
largest absolute change over the last time step falls below the threshold.
Only the latest field is kept.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import numpy as np

from backend_numpy import Accuracy, HamiltonianTerms, build_terms, propagate_numpy
from controls import OptMode
from errors import InvalidConfigurationError
from grid import Grid, GradientField, ValueFunction, compute_gradient, create_grid, project
from system import DynamicsModel

try:
    import torch
    from backend_torch import propagate_torch_tensor, terms_to_torch

    HAS_TORCH_BACKEND = True
except ImportError:
    HAS_TORCH_BACKEND = False

logger = logging.getLogger(__name__)

ComputeMode = Literal["min_over_time", "max_with_running_cost"]
BackendType = Literal["numpy", "torch"]


@dataclass
class ReachabilityConfig:
    """
    Configuration of the PDE solver.
    """
    backend: BackendType = "numpy"
    torch_device: Literal["cpu", "cuda"] = "cpu"
    accuracy: Accuracy = "low"
    cfl_number: float = 0.8

    def __post_init__(self):
        if self.backend not in ("numpy", "torch"):
            raise InvalidConfigurationError(f"Unknown backend: {self.backend}")
        if self.torch_device not in ("cpu", "cuda"):
            raise InvalidConfigurationError(f"Unknown torch device: {self.torch_device}")
        if self.accuracy not in ("low", "medium"):
            raise InvalidConfigurationError(f"Unknown accuracy: {self.accuracy}")
        if not (0.0 < self.cfl_number <= 1.0):
            raise InvalidConfigurationError(f"cfl_number must lie in (0, 1], got {self.cfl_number}")


@dataclass
class ConvergenceConfig:
    """
    threshold : largest absolute change of the field over one time step that
        counts as converged.
    stop_on_converge : stop as soon as the threshold is met; otherwise run to
        the end of the horizon.
    """
    threshold: float = 0.01
    stop_on_converge: bool = True

    def __post_init__(self):
        if not (np.isfinite(self.threshold) and self.threshold > 0.0):
            raise InvalidConfigurationError(f"Convergence threshold must be positive, got {self.threshold}")


@dataclass(frozen=True)
class SolveResult:
    """
    Outcome of a solve: the final field, the time stamps actually computed,
    whether the last step met the convergence threshold, and the size of
    that last change.
    """
    value: ValueFunction
    times: np.ndarray
    converged: bool
    last_change: float


def time_stamps(horizon: float, step: float) -> np.ndarray:
    """Poll times 0, step, 2 step, ..., ending exactly at horizon."""
    if not (step > 0.0 and horizon > 0.0):
        raise InvalidConfigurationError(f"Time step and horizon must be positive, got {step}, {horizon}")
    n = int(math.ceil(horizon / step - 1e-9))
    return np.minimum(np.arange(n + 1) * step, horizon)


class _NumpyOps:
    def __init__(self, terms: HamiltonianTerms, accuracy: Accuracy):
        self.terms = terms
        self.accuracy = accuracy

    def to_backend(self, a: np.ndarray):
        return np.array(a, dtype=float)

    def to_numpy(self, a) -> np.ndarray:
        return a

    def propagate(self, V, dt):
        return propagate_numpy(V, dt, self.terms, self.accuracy)

    minimum = staticmethod(np.minimum)
    maximum = staticmethod(np.maximum)

    @staticmethod
    def max_abs_diff(a, b) -> float:
        return float(np.max(np.abs(a - b)))


class _TorchOps:
    def __init__(self, terms: HamiltonianTerms, accuracy: Accuracy, device: str):
        self.terms = terms_to_torch(terms, device)
        self.accuracy = accuracy
        self.device = device

    def to_backend(self, a: np.ndarray):
        return torch.as_tensor(np.ascontiguousarray(a), dtype=torch.float64, device=self.device)

    def to_numpy(self, a) -> np.ndarray:
        return a.detach().cpu().numpy()

    def propagate(self, V, dt):
        return propagate_torch_tensor(V, dt, self.terms, self.accuracy)

    @staticmethod
    def minimum(a, b):
        return torch.minimum(a, b)

    @staticmethod
    def maximum(a, b):
        return torch.maximum(a, b)

    @staticmethod
    def max_abs_diff(a, b) -> float:
        return float(torch.max(torch.abs(a - b)).item())


def _make_ops(terms: HamiltonianTerms, cfg: ReachabilityConfig):
    if cfg.backend == "numpy":
        return _NumpyOps(terms, cfg.accuracy)
    elif cfg.backend == "torch":
        if not HAS_TORCH_BACKEND:
            raise RuntimeError("Torch backend requested but backend_torch is not available.")
        return _TorchOps(terms, cfg.accuracy, cfg.torch_device)
    raise ValueError(f"Unknown backend: {cfg.backend}")


def solve_value_function(
        grid: Grid,
        initial_field: np.ndarray,
        times: Sequence[float],
        dynamics: DynamicsModel,
        compute_mode: ComputeMode,
        u_mode: OptMode,
        d_mode: OptMode,
        convergence: Optional[ConvergenceConfig] = None,
        target: Optional[np.ndarray] = None,
        cfg: Optional[ReachabilityConfig] = None,
) -> SolveResult:
    """
    Propagate `initial_field` over the time stamps `times`.

    Parameters
    ----------
    grid : Grid
        Grid the field lives on.
    initial_field : np.ndarray
        Field at tau = 0, shape grid.shape.
    times : sequence of float
        Increasing time stamps; convergence is polled at each of them.
    dynamics : DynamicsModel
        Model with the same state dimension as the grid.
    compute_mode : {"min_over_time", "max_with_running_cost"}
        How each propagated field is combined with the previous one or the
        running cost.
    u_mode, d_mode : {"max", "min"}
        Whether control and disturbance maximize or minimize the Hamiltonian.
    convergence : ConvergenceConfig or None
        Convergence threshold and stopping rule.
    target : np.ndarray or None
        Running cost l, required for "max_with_running_cost".
    cfg : ReachabilityConfig or None
        Backend, accuracy and CFL settings.

    Returns
    -------
    SolveResult
    """
    cfg = cfg or ReachabilityConfig()
    convergence = convergence or ConvergenceConfig()
    times = np.asarray(times, dtype=float)
    V0 = np.asarray(initial_field, dtype=float)

    if dynamics.state_dim != grid.ndim:
        raise InvalidConfigurationError(
            f"{type(dynamics).__name__} has {dynamics.state_dim} states but the grid has {grid.ndim} dimensions"
        )
    if V0.shape != grid.shape:
        raise InvalidConfigurationError(f"Initial field of shape {V0.shape} does not match grid {grid.shape}")
    if times.ndim != 1 or times.size < 2 or np.any(np.diff(times) <= 0.0):
        raise InvalidConfigurationError("times must be an increasing sequence of at least two stamps")
    if compute_mode == "max_with_running_cost":
        if target is None or np.shape(target) != grid.shape:
            raise InvalidConfigurationError("max_with_running_cost needs a running cost shaped like the grid")
    elif compute_mode != "min_over_time":
        raise InvalidConfigurationError(f"Unknown compute mode: {compute_mode}")

    terms = build_terms(grid, dynamics, u_mode, d_mode)
    ops = _make_ops(terms, cfg)
    dt_max = terms.stable_time_step(cfg.cfl_number)

    V = ops.to_backend(V0)
    cost = ops.to_backend(target) if target is not None else None
    used = [float(times[0])]
    converged = False
    change = np.inf

    for t0, t1 in zip(times[:-1], times[1:]):
        V_prev = V
        span = float(t1 - t0)
        n_sub = max(1, int(math.ceil(span / dt_max))) if np.isfinite(dt_max) else 1
        h = span / n_sub
        for _ in range(n_sub):
            V_next = ops.propagate(V, h)
            if compute_mode == "min_over_time":
                V = ops.minimum(V_next, V)
            else:
                V = ops.maximum(V_next, cost)
        used.append(float(t1))

        change = ops.max_abs_diff(V, V_prev)
        converged = change < convergence.threshold
        logger.debug("t = %.3f: max change %.5f (%d sub-steps of %.4f)", t1, change, n_sub, h)
        if converged and convergence.stop_on_converge:
            break

    return SolveResult(
        value=ValueFunction(grid, ops.to_numpy(V)),
        times=np.asarray(used),
        converged=converged,
        last_change=float(change),
    )


class ReachabilityEngine:
    """
    Facade over grid construction, value-function solving, gradient
    extraction and projection, bound to one solver configuration.
    """

    def __init__(self, cfg: Optional[ReachabilityConfig] = None):
        self.cfg = cfg or ReachabilityConfig()

    @staticmethod
    def create_grid(mins, maxs, resolution, periodic_dims=()) -> Grid:
        return create_grid(mins, maxs, resolution, periodic_dims)

    def solve(
            self,
            grid: Grid,
            initial_field: np.ndarray,
            times: Sequence[float],
            dynamics: DynamicsModel,
            compute_mode: ComputeMode,
            u_mode: OptMode,
            d_mode: OptMode,
            convergence: Optional[ConvergenceConfig] = None,
            target: Optional[np.ndarray] = None,
    ) -> SolveResult:
        return solve_value_function(
            grid, initial_field, times, dynamics, compute_mode, u_mode, d_mode,
            convergence=convergence, target=target, cfg=self.cfg,
        )

    @staticmethod
    def compute_gradient(grid: Grid, field) -> GradientField:
        return compute_gradient(grid, field)

    @staticmethod
    def project(grid: Grid, field, keep_dims, reduce_op="min"):
        return project(grid, field, keep_dims, reduce_op)
