# avoid_set.py
"""
avoid_set.py

Synthesis of the set of states from which a constant-speed turning vehicle can
avoid a group of circular obstacles, and the safety certificate derived from
its value function.

Each obstacle is a cylinder in (x, y, heading) space: a disk in the plane,
unbounded in heading. The unsafe set is the union of the cylinders, encoded
as the pointwise minimum of their signed distance functions (negative inside).
Solving the avoid game in "min_over_time" mode turns that signed distance
into a value function V whose zero level set bounds the maximal safe set.

A control u is certified safe at x when the Hamiltonian
<grad V(x), f(x, u, d*)> is non-negative, d* being the worst-case disturbance
for that gradient. The argmax control always passes, but so does any other
control with a non-negative Hamiltonian.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from controls import generate_controls_box
from errors import InvalidConfigurationError
from grid import Grid, GradientField, ValueFunction
from grid_reachability import ConvergenceConfig, ReachabilityConfig, ReachabilityEngine, time_stamps
from system import SimpleTurningVehicle

logger = logging.getLogger(__name__)

DEFAULT_CENTERS = ((-2.0, -2.0), (-0.5, -0.5), (2.0, 3.0), (4.0, -3.0))


@dataclass(frozen=True)
class Obstacle:
    """Disk in the plane, extended over all headings."""
    center: Tuple[float, float]
    radius: float

    def __post_init__(self):
        if len(self.center) != 2:
            raise InvalidConfigurationError(f"Obstacle center must be a 2D point, got {self.center}")
        if not (np.isfinite(self.radius) and self.radius > 0.0):
            raise InvalidConfigurationError(f"Obstacle radius must be positive, got {self.radius}")
        object.__setattr__(self, "center", (float(self.center[0]), float(self.center[1])))
        object.__setattr__(self, "radius", float(self.radius))

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        """Distance to the obstacle boundary, negative inside. points: (..., >=2)."""
        p = np.asarray(points, dtype=float)
        return np.hypot(p[..., 0] - self.center[0], p[..., 1] - self.center[1]) - self.radius


def signed_distance(points: np.ndarray, obstacles: Sequence[Obstacle]) -> np.ndarray:
    """
    Signed distance to the union of obstacles (pointwise minimum).

    Only the first two components of `points` (x, y) are used.
    """
    if not obstacles:
        raise InvalidConfigurationError("At least one obstacle is required")
    return np.min(np.stack([obs.signed_distance(points) for obs in obstacles], axis=0), axis=0)


def in_unsafe_set(points: np.ndarray, obstacles: Sequence[Obstacle]) -> np.ndarray:
    """True where a point lies strictly inside at least one obstacle."""
    return signed_distance(points, obstacles) < 0.0


def make_obstacles(centers: Sequence[Sequence[float]],
                   radius: Union[float, Sequence[float]] = 1.0) -> List[Obstacle]:
    """Build obstacles from centers and a shared radius or one radius per center."""
    radii = np.asarray(radius, dtype=float)
    if radii.ndim == 0:
        radii = np.full(len(centers), float(radii))
    if len(radii) != len(centers):
        raise InvalidConfigurationError(f"Got {len(radii)} radii for {len(centers)} obstacles")
    return [Obstacle(tuple(c), float(r)) for c, r in zip(centers, radii)]


@dataclass
class ObstacleAvoidConfig:
    """
    Options of the avoid-set synthesis.

    centers / radius : obstacle centers and their shared or individual radii.
    grid_min, grid_max, resolution, periodic_dims : grid over (x, y, heading).
    speed, turn_rate_bound, disturbance_max : vehicle model.
    time_step : interval between convergence polls (s).
    horizon : longest time-to-go computed (s).
    convergence_threshold, stop_on_converge : see ConvergenceConfig.
    engine : PDE solver settings.
    """
    centers: Sequence[Tuple[float, float]] = DEFAULT_CENTERS
    radius: Union[float, Sequence[float]] = 1.0
    grid_min: Tuple[float, float, float] = (-5.0, -5.0, -np.pi)
    grid_max: Tuple[float, float, float] = (5.0, 5.0, np.pi)
    resolution: Tuple[int, int, int] = (50, 50, 50)
    periodic_dims: Tuple[int, ...] = (2,)
    speed: float = 1.0
    turn_rate_bound: float = 1.0
    disturbance_max: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    time_step: float = 0.05
    horizon: float = 10.0
    convergence_threshold: float = 0.01
    stop_on_converge: bool = True
    engine: ReachabilityConfig = field(default_factory=ReachabilityConfig)

    def __post_init__(self):
        if len(self.centers) == 0:
            raise InvalidConfigurationError("The obstacle list is empty")
        if not (len(self.grid_min) == len(self.grid_max) == len(self.resolution) == 3):
            raise InvalidConfigurationError("The avoid grid spans exactly (x, y, heading)")
        if self.time_step <= 0.0 or self.horizon <= 0.0:
            raise InvalidConfigurationError("time_step and horizon must be positive")

    @property
    def obstacles(self) -> List[Obstacle]:
        return make_obstacles(self.centers, self.radius)


@dataclass(frozen=True)
class AvoidSetResult:
    """
    Solved avoid set: value function, its gradient and the safety certificate.
    """
    grid: Grid
    obstacles: Tuple[Obstacle, ...]
    dynamics: SimpleTurningVehicle
    initial_value: ValueFunction
    value: ValueFunction
    gradient: GradientField
    times: np.ndarray
    converged: bool

    def value_at(self, state: np.ndarray) -> np.ndarray:
        return self.value.interpolate(state)

    def is_safe_state(self, state: np.ndarray) -> np.ndarray:
        """States from which the obstacles can be avoided (V > 0)."""
        return self.value.interpolate(state) > 0.0

    def hamiltonian(self, state: np.ndarray, control: np.ndarray) -> np.ndarray:
        """<grad V(x), f(x, u, d*)> with the worst-case disturbance d*. NaN outside the grid."""
        x = np.asarray(state, dtype=float)
        p = self.gradient.interpolate(x)
        d = self.dynamics.extremal_disturbance(x, p, mode="min")
        return self.dynamics.hamiltonian(x, p, control, d)

    def is_safe_control(self, state: np.ndarray, control: np.ndarray) -> np.ndarray:
        """Certificate: True iff the Hamiltonian is non-negative (False where undefined)."""
        return self.hamiltonian(state, control) >= 0.0

    def optimal_safe_control(self, state: np.ndarray) -> np.ndarray:
        """Argmax of the Hamiltonian; zero control where the gradient is undefined."""
        x = np.asarray(state, dtype=float)
        p = self.gradient.interpolate(x)
        u = self.dynamics.extremal_control(x, p, mode="max")
        valid = np.all(np.isfinite(p), axis=-1, keepdims=True)
        return np.where(valid, u, 0.0)

    def safe_controls(self, state: np.ndarray, candidates: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Candidate controls that pass the certificate at a single state.

        The default candidates are {-w_max, 0, w_max}.
        """
        if candidates is None:
            candidates = generate_controls_box(3, self.dynamics.control_bounds)
        candidates = np.asarray(candidates, dtype=float)
        x = np.broadcast_to(np.asarray(state, dtype=float), (candidates.shape[0], self.grid.ndim))
        return candidates[self.is_safe_control(x, candidates)]


class ObstacleAvoidSynthesizer:
    """
    Builds the avoid target set and solves the avoid game on a grid.

    Configuration problems are raised from the constructor, before any
    synthesis work.
    """

    def __init__(self, config: Optional[ObstacleAvoidConfig] = None):
        self.config = config or ObstacleAvoidConfig()
        cfg = self.config
        self.obstacles = tuple(cfg.obstacles)
        self.dynamics = SimpleTurningVehicle(
            speed=cfg.speed,
            turn_rate_bound=cfg.turn_rate_bound,
            disturbance_max=tuple(cfg.disturbance_max),
        )
        self.engine = ReachabilityEngine(cfg.engine)
        self.grid = self.engine.create_grid(cfg.grid_min, cfg.grid_max, cfg.resolution, cfg.periodic_dims)
        self.times = time_stamps(cfg.horizon, cfg.time_step)
        self.convergence = ConvergenceConfig(cfg.convergence_threshold, cfg.stop_on_converge)

    def target_set(self) -> np.ndarray:
        """Signed distance to the union of obstacle cylinders on the grid."""
        return signed_distance(self.grid.states, self.obstacles)

    def synthesize(self) -> AvoidSetResult:
        logger.info(
            "Synthesizing avoid set for %d obstacles on a %s grid, horizon %.2f s",
            len(self.obstacles), "x".join(map(str, self.grid.shape)), self.config.horizon,
        )
        data0 = self.target_set()
        result = self.engine.solve(
            self.grid, data0, self.times, self.dynamics,
            compute_mode="min_over_time", u_mode="max", d_mode="min",
            convergence=self.convergence,
        )
        if result.converged:
            logger.info("Avoid set converged after %.2f s", result.times[-1])
        else:
            logger.warning(
                "Avoid set did not converge within %.2f s (last change %.4f); using the last field",
                result.times[-1], result.last_change,
            )
        return AvoidSetResult(
            grid=self.grid,
            obstacles=self.obstacles,
            dynamics=self.dynamics,
            initial_value=ValueFunction(self.grid, data0),
            value=result.value,
            gradient=self.engine.compute_gradient(self.grid, result.value),
            times=result.times,
            converged=result.converged,
        )
