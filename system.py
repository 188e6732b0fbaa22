# system.py
"""
system.py

Defines the vehicle models used by the offline synthesis and by the online
simulation. Every model is affine in control and disturbance:

    dx/dt = f0(x) + G(x) u + D(x) d,    |u_j| <= b_j,  |d_k| <= e_k

which makes the Hamiltonian <p, f(x, u, d)> linear in each control and
disturbance component, so its extremum is bang-bang.

The set of models is closed:

- SimpleTurningVehicle: constant-speed car (x, y, heading), turn-rate control.
- RelativeUnicycleWithAdversarialReference: tracking error (r_x, r_y, heading,
  speed) of a unicycle chasing a planar reference that moves adversarially
  within its own speed limits.
- Unicycle: the tracked vehicle itself (x, y, heading, speed) with turn-rate
  and acceleration controls.

All arrays carry the state/control components on the last axis, so the same
functions evaluate a single state of shape (n,) or a whole grid (..., n).
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import ClassVar, Dict, Optional, Tuple, Type

import numpy as np

from controls import OptMode, bang_bang, extremal_value
from errors import InvalidConfigurationError


def wrap_angle(angle):
    """Wrap an angle (scalar or array) to [-pi, pi)."""
    return (np.asarray(angle, dtype=float) + np.pi) % (2.0 * np.pi) - np.pi


def relative_state(agent_state: np.ndarray, reference_position: np.ndarray) -> np.ndarray:
    """
    Express a planar reference point in the frame of a unicycle agent.

    Parameters
    ----------
    agent_state : np.ndarray
        Agent state (x, y, heading, speed), shape (..., 4).
    reference_position : np.ndarray
        Reference position (x, y), shape (..., 2). Extra trailing components
        (e.g. a reference heading) are ignored.

    Returns
    -------
    np.ndarray
        Relative state (r_x, r_y, heading, speed), shape (..., 4), where
        (r_x, r_y) = R(-heading) (p_ref - p_agent).
    """
    z = np.asarray(agent_state, dtype=float)
    ref = np.asarray(reference_position, dtype=float)
    ex = ref[..., 0] - z[..., 0]
    ey = ref[..., 1] - z[..., 1]
    c = np.cos(z[..., 2])
    s = np.sin(z[..., 2])
    return np.stack((c * ex + s * ey, -s * ex + c * ey, wrap_angle(z[..., 2]), z[..., 3]), axis=-1)


class DynamicsModel(ABC):
    """
    Common capability interface of all vehicle models.

    Subclasses provide the affine decomposition (drift, control matrix,
    disturbance matrix) and the symmetric component bounds; everything else is
    derived here.
    """

    kind: ClassVar[str]
    state_dim: ClassVar[int]
    control_dim: ClassVar[int]
    disturbance_dim: ClassVar[int]
    heading_index: ClassVar[Optional[int]] = None
    speed_index: ClassVar[Optional[int]] = None

    @property
    @abstractmethod
    def control_bounds(self) -> np.ndarray:
        """Symmetric bound per control component, shape (m,)."""

    @property
    @abstractmethod
    def disturbance_bounds(self) -> np.ndarray:
        """Symmetric bound per disturbance component, shape (k,)."""

    @abstractmethod
    def drift(self, x: np.ndarray) -> np.ndarray:
        """f0(x), shape (..., n)."""

    @abstractmethod
    def control_matrix(self, x: np.ndarray) -> np.ndarray:
        """G(x), shape (..., n, m)."""

    @abstractmethod
    def disturbance_matrix(self, x: np.ndarray) -> np.ndarray:
        """D(x), shape (..., n, k)."""

    def dynamics(self, x: np.ndarray, u: np.ndarray, d: Optional[np.ndarray] = None) -> np.ndarray:
        """
        State derivative f(x, u, d).

        Parameters
        ----------
        x : np.ndarray
            State, shape (..., n).
        u : np.ndarray
            Control, shape (..., m), broadcast-compatible with x.
        d : np.ndarray or None
            Disturbance, shape (..., k). None means zero disturbance.

        Returns
        -------
        np.ndarray
            dx/dt, shape (..., n).
        """
        x = np.asarray(x, dtype=float)
        u = np.asarray(u, dtype=float)
        dx = self.drift(x) + np.einsum("...ij,...j->...i", self.control_matrix(x), u)
        if d is not None and self.disturbance_dim > 0:
            d = np.asarray(d, dtype=float)
            dx = dx + np.einsum("...ij,...j->...i", self.disturbance_matrix(x), d)
        return dx

    def control_coefficients(self, x: np.ndarray, p: np.ndarray) -> np.ndarray:
        """Coefficients of the control components in the Hamiltonian, p^T G(x)."""
        x = np.asarray(x, dtype=float)
        return np.einsum("...i,...ij->...j", np.asarray(p, dtype=float), self.control_matrix(x))

    def disturbance_coefficients(self, x: np.ndarray, p: np.ndarray) -> np.ndarray:
        """Coefficients of the disturbance components in the Hamiltonian, p^T D(x)."""
        x = np.asarray(x, dtype=float)
        return np.einsum("...i,...ij->...j", np.asarray(p, dtype=float), self.disturbance_matrix(x))

    def extremal_control(self, x: np.ndarray, p: np.ndarray, mode: OptMode = "max") -> np.ndarray:
        """Bang-bang control that maximizes (or minimizes) the Hamiltonian for gradient p."""
        return bang_bang(self.control_coefficients(x, p), self.control_bounds, mode)

    def extremal_disturbance(self, x: np.ndarray, p: np.ndarray, mode: OptMode = "min") -> np.ndarray:
        """
        Worst-case disturbance for gradient p.

        In the zero-sum game the disturbance plays the opposite mode of the
        control, so callers pass the opposite of their control mode.
        """
        return bang_bang(self.disturbance_coefficients(x, p), self.disturbance_bounds, mode)

    def hamiltonian(self, x: np.ndarray, p: np.ndarray, u: np.ndarray,
                    d: Optional[np.ndarray] = None) -> np.ndarray:
        """<p, f(x, u, d)>."""
        return np.sum(np.asarray(p, dtype=float) * self.dynamics(x, u, d), axis=-1)

    def optimal_hamiltonian(self, x: np.ndarray, p: np.ndarray,
                            u_mode: OptMode, d_mode: OptMode) -> np.ndarray:
        """Hamiltonian evaluated at the extremal control and disturbance."""
        x = np.asarray(x, dtype=float)
        p = np.asarray(p, dtype=float)
        ham = np.sum(p * self.drift(x), axis=-1)
        ham = ham + extremal_value(self.control_coefficients(x, p), self.control_bounds, u_mode)
        if self.disturbance_dim > 0:
            ham = ham + extremal_value(self.disturbance_coefficients(x, p), self.disturbance_bounds, d_mode)
        return ham

    def max_rates(self, x: np.ndarray) -> np.ndarray:
        """
        Upper bound of |f_i(x, u, d)| over the control and disturbance boxes.

        Exact for box sets, since f is affine in u and d.
        """
        x = np.asarray(x, dtype=float)
        rates = np.abs(self.drift(x)) + np.abs(self.control_matrix(x)) @ self.control_bounds
        if self.disturbance_dim > 0:
            rates = rates + np.abs(self.disturbance_matrix(x)) @ self.disturbance_bounds
        return rates

    def parameters(self) -> Dict[str, object]:
        """Constructor parameters, used to persist and rebuild the model."""
        return asdict(self)


def _require_positive(name: str, value: float) -> None:
    if not np.isfinite(value) or value <= 0.0:
        raise InvalidConfigurationError(f"{name} must be a positive finite number, got {value}")


def _require_non_negative(name: str, value: float) -> None:
    if not np.isfinite(value) or value < 0.0:
        raise InvalidConfigurationError(f"{name} must be a non-negative finite number, got {value}")


@dataclass(frozen=True)
class SimpleTurningVehicle(DynamicsModel):
    """
    Constant-speed turning car.

    Dynamics:
        dx/dt = speed * cos(h) + d1
        dy/dt = speed * sin(h) + d2
        dh/dt = w + d3
    """
    speed: float = 1.0
    turn_rate_bound: float = 1.0
    disturbance_max: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    kind: ClassVar[str] = "simple_turning"
    state_dim: ClassVar[int] = 3
    control_dim: ClassVar[int] = 1
    disturbance_dim: ClassVar[int] = 3
    heading_index: ClassVar[Optional[int]] = 2

    def __post_init__(self):
        _require_non_negative("speed", self.speed)
        _require_positive("turn_rate_bound", self.turn_rate_bound)
        if len(self.disturbance_max) != 3:
            raise InvalidConfigurationError("disturbance_max needs one bound per state component")
        for value in self.disturbance_max:
            _require_non_negative("disturbance_max", value)
        object.__setattr__(self, "disturbance_max", tuple(float(v) for v in self.disturbance_max))

    @property
    def control_bounds(self) -> np.ndarray:
        return np.array([self.turn_rate_bound], dtype=float)

    @property
    def disturbance_bounds(self) -> np.ndarray:
        return np.asarray(self.disturbance_max, dtype=float)

    def drift(self, x: np.ndarray) -> np.ndarray:
        h = x[..., 2]
        return np.stack((self.speed * np.cos(h), self.speed * np.sin(h), np.zeros_like(h)), axis=-1)

    def control_matrix(self, x: np.ndarray) -> np.ndarray:
        G = np.zeros(x.shape[:-1] + (3, 1))
        G[..., 2, 0] = 1.0
        return G

    def disturbance_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.broadcast_to(np.eye(3), x.shape[:-1] + (3, 3))


@dataclass(frozen=True)
class RelativeUnicycleWithAdversarialReference(DynamicsModel):
    """
    Tracking error between a unicycle and a planar reference point.

    State (r_x, r_y, h, v): reference position in the tracker's body frame,
    tracker heading and tracker speed. Control (w, a): tracker turn rate and
    acceleration. Disturbance (d1, d2): reference velocity in the world frame,
    bounded by the reference generator's speed limits per axis.

    Dynamics:
        dr_x/dt =  w r_y - v + cos(h) d1 + sin(h) d2
        dr_y/dt = -w r_x     - sin(h) d1 + cos(h) d2
        dh/dt   =  w
        dv/dt   =  a
    """
    turn_rate_bound: float = 2.0
    accel_bound: float = 2.0
    reference_speed_limits: Tuple[float, float] = (0.6, 0.6)
    max_speed: float = 2.0

    kind: ClassVar[str] = "relative_unicycle"
    state_dim: ClassVar[int] = 4
    control_dim: ClassVar[int] = 2
    disturbance_dim: ClassVar[int] = 2
    heading_index: ClassVar[Optional[int]] = 2
    speed_index: ClassVar[Optional[int]] = 3

    def __post_init__(self):
        _require_positive("turn_rate_bound", self.turn_rate_bound)
        _require_positive("accel_bound", self.accel_bound)
        _require_positive("max_speed", self.max_speed)
        if len(self.reference_speed_limits) != 2:
            raise InvalidConfigurationError("reference_speed_limits needs one limit per planar axis")
        for value in self.reference_speed_limits:
            _require_non_negative("reference_speed_limits", value)
        object.__setattr__(self, "reference_speed_limits", tuple(float(v) for v in self.reference_speed_limits))

    @property
    def control_bounds(self) -> np.ndarray:
        return np.array([self.turn_rate_bound, self.accel_bound], dtype=float)

    @property
    def disturbance_bounds(self) -> np.ndarray:
        return np.asarray(self.reference_speed_limits, dtype=float)

    def drift(self, x: np.ndarray) -> np.ndarray:
        zero = np.zeros_like(x[..., 0])
        return np.stack((-x[..., 3], zero, zero, zero), axis=-1)

    def control_matrix(self, x: np.ndarray) -> np.ndarray:
        G = np.zeros(x.shape[:-1] + (4, 2))
        G[..., 0, 0] = x[..., 1]
        G[..., 1, 0] = -x[..., 0]
        G[..., 2, 0] = 1.0
        G[..., 3, 1] = 1.0
        return G

    def disturbance_matrix(self, x: np.ndarray) -> np.ndarray:
        c = np.cos(x[..., 2])
        s = np.sin(x[..., 2])
        D = np.zeros(x.shape[:-1] + (4, 2))
        D[..., 0, 0] = c
        D[..., 0, 1] = s
        D[..., 1, 0] = -s
        D[..., 1, 1] = c
        return D


@dataclass(frozen=True)
class Unicycle(DynamicsModel):
    """
    Tracked vehicle in world coordinates.

    Dynamics:
        dx/dt = v cos(h)
        dy/dt = v sin(h)
        dh/dt = w
        dv/dt = a
    """
    turn_rate_bound: float = 2.0
    accel_bound: float = 2.0
    max_speed: float = 2.0

    kind: ClassVar[str] = "unicycle"
    state_dim: ClassVar[int] = 4
    control_dim: ClassVar[int] = 2
    disturbance_dim: ClassVar[int] = 0
    heading_index: ClassVar[Optional[int]] = 2
    speed_index: ClassVar[Optional[int]] = 3

    def __post_init__(self):
        _require_positive("turn_rate_bound", self.turn_rate_bound)
        _require_positive("accel_bound", self.accel_bound)
        _require_positive("max_speed", self.max_speed)

    @property
    def control_bounds(self) -> np.ndarray:
        return np.array([self.turn_rate_bound, self.accel_bound], dtype=float)

    @property
    def disturbance_bounds(self) -> np.ndarray:
        return np.zeros(0)

    def drift(self, x: np.ndarray) -> np.ndarray:
        h = x[..., 2]
        v = x[..., 3]
        zero = np.zeros_like(h)
        return np.stack((v * np.cos(h), v * np.sin(h), zero, zero), axis=-1)

    def control_matrix(self, x: np.ndarray) -> np.ndarray:
        G = np.zeros(x.shape[:-1] + (4, 2))
        G[..., 2, 0] = 1.0
        G[..., 3, 1] = 1.0
        return G

    def disturbance_matrix(self, x: np.ndarray) -> np.ndarray:
        return np.zeros(x.shape[:-1] + (4, 0))


DYNAMICS_MODELS: Dict[str, Type[DynamicsModel]] = {
    cls.kind: cls
    for cls in (SimpleTurningVehicle, RelativeUnicycleWithAdversarialReference, Unicycle)
}


def make_dynamics(kind: str, **params) -> DynamicsModel:
    """Build a model from its kind tag and constructor parameters."""
    try:
        cls = DYNAMICS_MODELS[kind]
    except KeyError:
        raise InvalidConfigurationError(f"Unknown dynamics model: {kind}") from None
    for key, value in params.items():
        if isinstance(value, (list, np.ndarray)):
            params[key] = tuple(np.asarray(value, dtype=float).tolist())
    return cls(**params)
