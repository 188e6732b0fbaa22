# simulator.py
"""
simulator.py

Forward simulation of a vehicle driven by a SafetyController.

The simulator is a two-state machine:

- RUNNING: every control period the safety controller is queried once and
  its output is held while the dynamics are integrated over the period.
- STOPPING: entered by stop(); the vehicle brakes at bounded deceleration
  along its current heading until it stands still. Stopping is terminal.

Integration uses scipy's solve_ivp (RK45, DOP853 or LSODA) or a fixed-step
RK4 loop. A failed or non-finite integration raises IntegrationError; the
history up to the failing tick is kept.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Literal, Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from errors import IntegrationError, InvalidConfigurationError
from nominal import BrakingController
from safety_controller import ControlDecision, SafetyController
from system import DynamicsModel, relative_state, wrap_angle

logger = logging.getLogger(__name__)

IntegratorMethod = Literal["RK45", "DOP853", "LSODA", "RK4"]

# offset of the stop reference ahead of the current pose (m)
STOP_REFERENCE_OFFSET = 1e-3


@dataclass
class IntegratorConfig:
    """
    method : "RK45", "DOP853" and "LSODA" are adaptive (scipy); "RK4" is a
        fixed-step classical Runge-Kutta loop.
    rtol, atol : tolerances of the adaptive methods.
    fixed_step : step of the RK4 loop (s).
    """
    method: IntegratorMethod = "RK45"
    rtol: float = 1e-2
    atol: float = 1e-2
    fixed_step: float = 0.01

    def __post_init__(self):
        if self.method not in ("RK45", "DOP853", "LSODA", "RK4"):
            raise InvalidConfigurationError(f"Unknown integration method: {self.method}")
        if self.rtol <= 0.0 or self.atol <= 0.0:
            raise InvalidConfigurationError("rtol and atol must be positive")
        if self.fixed_step <= 0.0:
            raise InvalidConfigurationError(f"fixed_step must be positive, got {self.fixed_step}")


def _integrate_rk4(fun, t_span, z0, step):
    t0, t1 = t_span
    n = max(1, int(math.ceil((t1 - t0) / step - 1e-9)))
    ts = np.linspace(t0, t1, n + 1)
    zs = [z0]
    z = z0
    for ta, tb in zip(ts[:-1], ts[1:]):
        h = tb - ta
        k1 = fun(ta, z)
        k2 = fun(ta + h / 2.0, z + h / 2.0 * k1)
        k3 = fun(ta + h / 2.0, z + h / 2.0 * k2)
        k4 = fun(tb, z + h * k3)
        z = z + h / 6.0 * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
        if not np.all(np.isfinite(z)):
            raise IntegrationError(f"Non-finite state at t = {tb:.4f}")
        zs.append(z)
    return ts, np.stack(zs, axis=0)


def integrate(
        fun: Callable[[float, np.ndarray], np.ndarray],
        t_span: Tuple[float, float],
        z0: np.ndarray,
        cfg: Optional[IntegratorConfig] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Integrate dz/dt = fun(t, z) over t_span.

    Returns
    -------
    (t, Z) : time stamps (N,) and states (N, n), first row z0.

    Raises
    ------
    IntegrationError
        The solver failed or produced non-finite states.
    """
    cfg = cfg or IntegratorConfig()
    z0 = np.asarray(z0, dtype=float)
    if cfg.method == "RK4":
        return _integrate_rk4(fun, t_span, z0, cfg.fixed_step)

    sol = solve_ivp(fun, t_span, z0, method=cfg.method, rtol=cfg.rtol, atol=cfg.atol)
    if not sol.success:
        raise IntegrationError(f"{cfg.method} failed on [{t_span[0]:.4f}, {t_span[1]:.4f}]: {sol.message}")
    Z = sol.y.T
    if not np.all(np.isfinite(Z)):
        raise IntegrationError(f"{cfg.method} produced non-finite states on [{t_span[0]:.4f}, {t_span[1]:.4f}]")
    return sol.t, Z


class ReferenceTrajectory:
    """
    Time-stamped reference states, linearly interpolated between stamps and
    held constant before the first and after the last one.

    Headings (column 2, when present) are unwrapped before interpolation so
    that the reference turns the short way around.
    """

    def __init__(self, times: Sequence[float], states: Sequence[Sequence[float]]):
        times = np.asarray(times, dtype=float)
        states = np.atleast_2d(np.asarray(states, dtype=float))
        if times.ndim != 1 or times.size == 0 or states.shape[0] != times.size:
            raise InvalidConfigurationError("Need one reference state per time stamp")
        if np.any(np.diff(times) <= 0.0):
            raise InvalidConfigurationError("Reference time stamps must be increasing")
        if states.shape[1] < 2:
            raise InvalidConfigurationError("Reference states need at least a planar position")
        if states.shape[1] > 2:
            states = states.copy()
            states[:, 2] = np.unwrap(states[:, 2])
        self.times = times
        self.states = states

    @classmethod
    def stationary(cls, state: Sequence[float]) -> "ReferenceTrajectory":
        return cls([0.0], [state])

    @property
    def dim(self) -> int:
        return self.states.shape[1]

    def state_at(self, t: float) -> np.ndarray:
        out = np.array([np.interp(t, self.times, self.states[:, k]) for k in range(self.dim)])
        if self.dim > 2:
            out[2] = wrap_angle(out[2])
        return out


class SimulatorMode(Enum):
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SimulationHistory:
    times: List[float] = field(default_factory=list)
    states: List[np.ndarray] = field(default_factory=list)
    controls: List[np.ndarray] = field(default_factory=list)
    decisions: List[Optional[ControlDecision]] = field(default_factory=list)
    references: List[np.ndarray] = field(default_factory=list)

    def as_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Time stamps (N,), states (N, n) and the controls held after each stamp (N - 1, m)."""
        controls = np.stack(self.controls, axis=0) if self.controls else np.zeros((0, 0))
        return np.asarray(self.times), np.stack(self.states, axis=0), controls


def pose_state(agent_state: np.ndarray, reference_state: np.ndarray) -> np.ndarray:
    """Absolute (x, y, heading), the coordinates of an avoid-set field."""
    return np.asarray(agent_state, dtype=float)[:3]


class AgentSimulator:
    """
    Parameters
    ----------
    dynamics : DynamicsModel
        Model of the simulated vehicle (world coordinates).
    controller : SafetyController
        Source of the control in the RUNNING state.
    initial_state : sequence of float
        Starting state of the vehicle.
    control_period : float
        Zero-order-hold interval of the control (s).
    max_deceleration : float or None
        Braking limit of the stop maneuver; defaults to the model's
        acceleration bound.
    min_stop_time : float
        Shortest duration of the stop maneuver (s).
    integrator : IntegratorConfig or None
        Integration method and tolerances.
    field_state : callable
        Maps (agent_state, reference_state) to the coordinates of the
        controller's gradient field; relative_state for tracking, pose_state
        for obstacle avoidance.
    """

    def __init__(
            self,
            dynamics: DynamicsModel,
            controller: SafetyController,
            initial_state: Sequence[float],
            control_period: float = 0.1,
            max_deceleration: Optional[float] = None,
            min_stop_time: float = 1.0,
            integrator: Optional[IntegratorConfig] = None,
            field_state: Callable[[np.ndarray, np.ndarray], np.ndarray] = relative_state,
    ):
        z0 = np.asarray(initial_state, dtype=float)
        if z0.shape != (dynamics.state_dim,) or not np.all(np.isfinite(z0)):
            raise InvalidConfigurationError(
                f"Initial state must hold {dynamics.state_dim} finite values, got {initial_state}"
            )
        if controller.control_dim != dynamics.control_dim:
            raise InvalidConfigurationError(
                f"Controller outputs {controller.control_dim} controls, "
                f"{type(dynamics).__name__} takes {dynamics.control_dim}"
            )
        if not control_period > 0.0:
            raise InvalidConfigurationError(f"control_period must be positive, got {control_period}")
        if max_deceleration is None:
            if dynamics.speed_index is None:
                raise InvalidConfigurationError("max_deceleration is required for a model without speed state")
            max_deceleration = float(dynamics.control_bounds[-1])
        if not max_deceleration > 0.0:
            raise InvalidConfigurationError(f"max_deceleration must be positive, got {max_deceleration}")
        if min_stop_time < 0.0:
            raise InvalidConfigurationError(f"min_stop_time must be non-negative, got {min_stop_time}")

        self.dynamics = dynamics
        self.controller = controller
        self.control_period = float(control_period)
        self.max_deceleration = float(max_deceleration)
        self.min_stop_time = float(min_stop_time)
        self.integrator = integrator or IntegratorConfig()
        self.field_state = field_state
        self.mode = SimulatorMode.RUNNING
        self.history = SimulationHistory(times=[0.0], states=[z0])

    @property
    def state(self) -> np.ndarray:
        return self.history.states[-1].copy()

    @property
    def time(self) -> float:
        return self.history.times[-1]

    def _advance(self, u: np.ndarray, duration: float) -> None:
        t0 = self.time
        z0 = self.history.states[-1]

        def rhs(t, z):
            return self.dynamics.dynamics(z, u)

        try:
            _, Z = integrate(rhs, (t0, t0 + duration), z0, self.integrator)
        except IntegrationError:
            logger.error("Integration failed at t = %.3f with control %s", t0, u)
            raise
        z1 = Z[-1].copy()
        if self.dynamics.heading_index is not None:
            z1[self.dynamics.heading_index] = wrap_angle(z1[self.dynamics.heading_index])
        self.history.times.append(t0 + duration)
        self.history.states.append(z1)

    def _ticks(self, duration: float):
        """Lengths of the control ticks that cover `duration`, the last one possibly shorter."""
        elapsed = 0.0
        while duration - elapsed > 1e-9:
            h = min(self.control_period, duration - elapsed)
            yield h
            elapsed += h

    def move(self, duration: float, reference: ReferenceTrajectory) -> None:
        """
        Drive the vehicle for `duration` seconds under the safety controller,
        the reference being sampled at the start of every tick.
        """
        if self.mode is SimulatorMode.STOPPING:
            raise RuntimeError("The simulator is stopping; a stopped run cannot be resumed")
        if duration <= 0.0:
            raise ValueError(f"duration must be positive, got {duration}")
        logger.debug("Moving for %.3f s from t = %.3f", duration, self.time)
        for h in self._ticks(duration):
            z = self.history.states[-1]
            ref = reference.state_at(self.time)
            decision = self.controller.control(self.field_state(z, ref), z, ref)
            self.history.controls.append(decision.control)
            self.history.decisions.append(decision)
            self.history.references.append(ref)
            self._advance(decision.control, h)

    def stop(self, t_stop: Optional[float] = None) -> float:
        """
        Emergency stop: brake along the current heading until standstill.

        The maneuver lasts max(|v| / max_deceleration, t_stop) seconds,
        t_stop defaulting to min_stop_time, and is the last thing this
        simulator does.

        Returns
        -------
        float
            Duration of the maneuver (s).
        """
        speed_index = self.dynamics.speed_index
        heading_index = self.dynamics.heading_index
        if speed_index is None or heading_index is None:
            raise InvalidConfigurationError(f"{type(self.dynamics).__name__} has no speed and heading to stop")
        t_stop = self.min_stop_time if t_stop is None else float(t_stop)
        if t_stop < 0.0:
            raise ValueError(f"t_stop must be non-negative, got {t_stop}")

        self.mode = SimulatorMode.STOPPING
        z0 = self.state
        v = float(z0[speed_index])
        duration = max(abs(v) / self.max_deceleration, t_stop)
        logger.info("Stopping from speed %.3f over %.3f s", v, duration)

        # constant-heading reference just ahead of the current pose
        h = z0[heading_index]
        z1 = z0.copy()
        z1[0] += STOP_REFERENCE_OFFSET * np.cos(h)
        z1[1] += STOP_REFERENCE_OFFSET * np.sin(h)
        z1[speed_index] = 0.0
        reference = ReferenceTrajectory([self.time, self.time + duration], [z0, z1])

        braking = BrakingController(self.max_deceleration)
        for tick in self._ticks(duration):
            z = self.history.states[-1]
            ref = reference.state_at(self.time)
            u = braking.control(z, ref, tick)
            self.history.controls.append(u)
            self.history.decisions.append(None)
            self.history.references.append(ref)
            self._advance(u, tick)
        return duration
