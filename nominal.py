# nominal.py
"""
nominal.py

Low-level controllers that do not use any value function:

- PDTrackingController: proportional-derivative law that steers a unicycle
  toward a reference state; the secondary controller of a tracking blend
  policy.
- LineOfSightController: turn-rate-only law for the constant-speed vehicle
  of the avoid set; the secondary controller of an avoidance blend policy.
- BrakingController: bounded-deceleration stop at constant heading, used by
  the emergency-stop maneuver.

PDTrackingController and BrakingController take the agent state
(x, y, heading, speed) and a reference state (x, y[, heading[, speed]]) and
return (turn rate, acceleration). Each controller declares `control_dim`, the
length of the control it returns.
"""

from dataclasses import dataclass
from typing import ClassVar, Union

import numpy as np

from errors import InvalidConfigurationError
from system import wrap_angle


@dataclass
class PDTrackingController:
    """
    a = k_speed (v_ref - v) + k_along e_along
    w = k_heading wrap(h_ref - h) + k_cross e_cross

    where (e_along, e_cross) is the position error in the agent's frame. A
    reference without heading uses the line of sight as h_ref.
    """
    k_speed: float = 4.0
    k_along: float = 1.0
    k_heading: float = 3.0
    k_cross: float = 2.0
    line_of_sight_tolerance: float = 1e-3
    control_dim: ClassVar[int] = 2

    def control(self, agent_state: np.ndarray, reference_state: np.ndarray) -> np.ndarray:
        z = np.asarray(agent_state, dtype=float)
        ref = np.asarray(reference_state, dtype=float)
        if z.shape[0] < 4:
            raise InvalidConfigurationError(f"PD tracking needs (x, y, heading, speed), got {z.shape[0]} states")
        x, y, h, v = z[0], z[1], z[2], z[3]
        dx = ref[0] - x
        dy = ref[1] - y
        c, s = np.cos(h), np.sin(h)
        e_along = c * dx + s * dy
        e_cross = -s * dx + c * dy

        if ref.shape[0] > 2:
            h_ref = ref[2]
        elif np.hypot(dx, dy) > self.line_of_sight_tolerance:
            h_ref = np.arctan2(dy, dx)
        else:
            h_ref = h
        v_ref = ref[3] if ref.shape[0] > 3 else 0.0

        a = self.k_speed * (v_ref - v) + self.k_along * e_along
        w = self.k_heading * float(wrap_angle(h_ref - h)) + self.k_cross * e_cross
        return np.array([w, a])


@dataclass
class LineOfSightController:
    """
    w = k_heading wrap(atan2(dy, dx) - h), zero once the reference position
    is within line_of_sight_tolerance. Works on any pose (x, y, heading, ...).
    """
    k_heading: float = 2.0
    line_of_sight_tolerance: float = 1e-3
    control_dim: ClassVar[int] = 1

    def control(self, agent_state: np.ndarray, reference_state: np.ndarray) -> np.ndarray:
        z = np.asarray(agent_state, dtype=float)
        ref = np.asarray(reference_state, dtype=float)
        dx = ref[0] - z[0]
        dy = ref[1] - z[1]
        if np.hypot(dx, dy) <= self.line_of_sight_tolerance:
            return np.zeros(1)
        return np.array([self.k_heading * float(wrap_angle(np.arctan2(dy, dx) - z[2]))])


NominalController = Union[PDTrackingController, LineOfSightController]


@dataclass
class BrakingController:
    """
    Holds the reference heading and decelerates at no more than
    max_deceleration, landing exactly on zero speed instead of overshooting.
    """
    max_deceleration: float
    k_heading: float = 1.0
    control_dim: ClassVar[int] = 2

    def __post_init__(self):
        if not (np.isfinite(self.max_deceleration) and self.max_deceleration > 0.0):
            raise InvalidConfigurationError(f"max_deceleration must be positive, got {self.max_deceleration}")

    def control(self, agent_state: np.ndarray, reference_state: np.ndarray, period: float) -> np.ndarray:
        z = np.asarray(agent_state, dtype=float)
        ref = np.asarray(reference_state, dtype=float)
        v = z[3]
        a = -np.sign(v) * min(self.max_deceleration, abs(v) / period)
        w = self.k_heading * float(wrap_angle(ref[2] - z[2]))
        return np.array([w, a])
