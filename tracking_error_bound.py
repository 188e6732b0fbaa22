# tracking_error_bound.py
"""
tracking_error_bound.py

Synthesis of the tracking error bound (TEB) between a unicycle and a planar
reference that moves adversarially within its own speed limits.

The cost is the squared distance r_x^2 + r_y^2 (squared rather than the
distance itself so that its gradient is smooth at the origin). Starting from
V = cost, the value function is propagated in "max_with_running_cost" mode,
tracker minimizing and reference maximizing, so V(x) is the worst squared
error the tracker cannot avoid from x over the elapsed horizon. The TEB is
the square root of the smallest value on the grid: starting anywhere in the
sublevel set {V <= TEB^2}, the tracker can stay within distance TEB of the
reference forever.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from errors import InvalidConfigurationError
from grid import Grid, GradientField, ValueFunction
from grid_reachability import ConvergenceConfig, ReachabilityConfig, ReachabilityEngine, time_stamps
from system import RelativeUnicycleWithAdversarialReference

logger = logging.getLogger(__name__)


@dataclass
class TrackingErrorBoundConfig:
    """
    Options of the TEB synthesis.

    grid_min, grid_max, resolution, periodic_dims : grid over
        (r_x, r_y, heading, speed); heading is periodic.
    turn_rate_bound, accel_bound : tracker actuator limits.
    reference_speed_limits : reference velocity limit per planar axis.
    max_speed : tracker speed limit (normally the speed grid bound).
    time_step : interval between convergence polls (s).
    horizon : longest time-to-go computed (s).
    convergence_threshold, stop_on_converge : see ConvergenceConfig.
    engine : PDE solver settings.
    """
    grid_min: Tuple[float, ...] = (-1.5, -1.5, -np.pi, -2.0)
    grid_max: Tuple[float, ...] = (1.5, 1.5, np.pi, 2.0)
    resolution: Tuple[int, ...] = (40, 40, 40, 40)
    periodic_dims: Tuple[int, ...] = (2,)
    turn_rate_bound: float = 2.0
    accel_bound: float = 2.0
    reference_speed_limits: Tuple[float, float] = (0.6, 0.6)
    max_speed: float = 2.0
    time_step: float = 0.1
    horizon: float = 40.0
    convergence_threshold: float = 0.04
    stop_on_converge: bool = True
    engine: ReachabilityConfig = field(default_factory=ReachabilityConfig)

    def __post_init__(self):
        if not (len(self.grid_min) == len(self.grid_max) == len(self.resolution) == 4):
            raise InvalidConfigurationError("The relative grid spans exactly (r_x, r_y, heading, speed)")
        if self.time_step <= 0.0 or self.horizon <= 0.0:
            raise InvalidConfigurationError("time_step and horizon must be positive")


@dataclass(frozen=True)
class TrackingErrorBoundResult:
    """
    teb : tracking error bound, sqrt(min V).
    converged : False when the horizon ran out first; the fields are still
        the last ones computed.
    """
    teb: float
    grid: Grid
    dynamics: RelativeUnicycleWithAdversarialReference
    cost: ValueFunction
    value: ValueFunction
    gradient: GradientField
    times: np.ndarray
    converged: bool

    def value_at(self, relative: np.ndarray) -> np.ndarray:
        return self.value.interpolate(relative)

    def within_bound(self, relative: np.ndarray, margin: float = 0.0) -> np.ndarray:
        """True where the relative state lies inside the invariant set {V <= (TEB + margin)^2}."""
        return self.value.interpolate(relative) <= (self.teb + margin) ** 2


def tracking_cost(grid: Grid) -> np.ndarray:
    """Squared relative distance r_x^2 + r_y^2 on every grid point."""
    x = grid.states
    return x[..., 0] ** 2 + x[..., 1] ** 2


class TrackingErrorBoundSynthesizer:
    """
    Builds the relative-state grid and quadratic cost and runs the engine to
    convergence or horizon exhaustion.
    """

    def __init__(self, config: Optional[TrackingErrorBoundConfig] = None):
        self.config = config or TrackingErrorBoundConfig()
        cfg = self.config
        self.dynamics = RelativeUnicycleWithAdversarialReference(
            turn_rate_bound=cfg.turn_rate_bound,
            accel_bound=cfg.accel_bound,
            reference_speed_limits=tuple(cfg.reference_speed_limits),
            max_speed=cfg.max_speed,
        )
        self.engine = ReachabilityEngine(cfg.engine)
        self.grid = self.engine.create_grid(cfg.grid_min, cfg.grid_max, cfg.resolution, cfg.periodic_dims)
        if self.dynamics.heading_index not in self.grid.periodic_dims:
            raise InvalidConfigurationError("The heading dimension of the relative grid must be periodic")
        self.times = time_stamps(cfg.horizon, cfg.time_step)
        self.convergence = ConvergenceConfig(cfg.convergence_threshold, cfg.stop_on_converge)

    def synthesize(self) -> TrackingErrorBoundResult:
        cfg = self.config
        logger.info(
            "Synthesizing tracking error bound on a %s grid (turn rate %.2f, accel %.2f, reference limits %s)",
            "x".join(map(str, self.grid.shape)), cfg.turn_rate_bound, cfg.accel_bound,
            tuple(cfg.reference_speed_limits),
        )
        cost = tracking_cost(self.grid)
        # tracker minimizes, reference maximizes
        result = self.engine.solve(
            self.grid, cost, self.times, self.dynamics,
            compute_mode="max_with_running_cost", u_mode="min", d_mode="max",
            convergence=self.convergence, target=cost,
        )
        teb = float(np.sqrt(max(result.value.min(), 0.0)))
        if result.converged:
            logger.info("TEB = %.4f, converged after %.2f s", teb, result.times[-1])
        else:
            logger.warning(
                "TEB = %.4f is unconverged: horizon %.2f s exhausted with last change %.4f",
                teb, result.times[-1], result.last_change,
            )
        return TrackingErrorBoundResult(
            teb=teb,
            grid=self.grid,
            dynamics=self.dynamics,
            cost=ValueFunction(self.grid, cost),
            value=result.value,
            gradient=self.engine.compute_gradient(self.grid, result.value),
            times=result.times,
            converged=result.converged,
        )
