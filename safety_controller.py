# safety_controller.py
"""
safety_controller.py

Runtime controller built on a precomputed gradient field.

At every tick:

1. wrap the periodic components of the state,
2. look the gradient up at the state; if the lookup is undefined (outside the
   grid or NaN) fall back to the zero control,
3. compute the extremal safe control u_s and a normalizer in [0, 1] that
   grows with the magnitude of the Hamiltonian's control coefficients,
4. compute the nominal control u_p of the policy's secondary controller,
5. combine them according to the blend policy,
6. clamp every component to its actuator bound.

The default policy mode "safe_only" always outputs u_s. Mode "blend" outputs
u_s when the normalizer exceeds the trust threshold and the convex
combination normalizer * u_s + (1 - normalizer) * u_p otherwise.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import numpy as np

from avoid_set import AvoidSetResult
from controls import OptMode, saturate
from errors import InvalidConfigurationError
from grid import GradientField
from nominal import NominalController
from system import DynamicsModel
from tracking_error_bound import TrackingErrorBoundResult

logger = logging.getLogger(__name__)

BlendMode = Literal["safe_only", "blend"]


@dataclass
class BlendPolicy:
    """
    nominal : secondary controller with control(agent_state, reference_state);
        its control_dim must match the controlled model.
    trust_threshold : normalizer above which the safe control is used alone.
    mode : "safe_only" or "blend".
    normalizer_scale : coefficient magnitude that maps to a normalizer of 1.
    """
    nominal: Optional[NominalController] = None
    trust_threshold: float = 0.8
    mode: BlendMode = "safe_only"
    normalizer_scale: float = 1.0

    def __post_init__(self):
        if self.mode not in ("safe_only", "blend"):
            raise InvalidConfigurationError(f"Unknown blend mode: {self.mode}")
        if not (0.0 <= self.trust_threshold <= 1.0):
            raise InvalidConfigurationError(f"trust_threshold must lie in [0, 1], got {self.trust_threshold}")
        if not (np.isfinite(self.normalizer_scale) and self.normalizer_scale > 0.0):
            raise InvalidConfigurationError(f"normalizer_scale must be positive, got {self.normalizer_scale}")
        if self.mode == "blend" and self.nominal is None:
            raise InvalidConfigurationError("The blend mode needs a nominal controller")


@dataclass(frozen=True)
class ControlDecision:
    """Output of one tick, with the intermediate quantities kept for inspection."""
    control: np.ndarray
    safe_control: np.ndarray
    nominal_control: np.ndarray
    normalizer: float
    fail_safe: bool


class SafetyController:
    """
    Parameters
    ----------
    gradient : GradientField
        Gradient of the synthesized value function.
    dynamics : DynamicsModel
        Model the field was synthesized with.
    policy : BlendPolicy
        How the safe and nominal controls are combined.
    control_mode : {"min", "max"}
        "min" for tracking (the tracker minimizes the error value), "max" for
        obstacle avoidance (the vehicle maximizes the safety value).
    actuator_bounds : sequence of float or None
        Saturation bounds; defaults to the model's control bounds.
    """

    def __init__(
            self,
            gradient: GradientField,
            dynamics: DynamicsModel,
            policy: Optional[BlendPolicy] = None,
            control_mode: OptMode = "min",
            actuator_bounds: Optional[Sequence[float]] = None,
    ):
        if gradient.grid.ndim != dynamics.state_dim:
            raise InvalidConfigurationError(
                f"Gradient field has {gradient.grid.ndim} dimensions, "
                f"{type(dynamics).__name__} has {dynamics.state_dim} states"
            )
        if control_mode not in ("min", "max"):
            raise InvalidConfigurationError(f"Unknown control mode: {control_mode}")
        bounds = dynamics.control_bounds if actuator_bounds is None else np.asarray(actuator_bounds, dtype=float)
        if bounds.shape != (dynamics.control_dim,) or np.any(bounds <= 0.0):
            raise InvalidConfigurationError(f"Need {dynamics.control_dim} positive actuator bounds, got {bounds}")
        policy = policy or BlendPolicy()
        nominal_dim = getattr(policy.nominal, "control_dim", None)
        if nominal_dim is not None and nominal_dim != dynamics.control_dim:
            raise InvalidConfigurationError(
                f"{type(policy.nominal).__name__} outputs {nominal_dim} controls, "
                f"{type(dynamics).__name__} takes {dynamics.control_dim}"
            )
        self.gradient = gradient
        self.dynamics = dynamics
        self.policy = policy
        self.control_mode = control_mode
        self.actuator_bounds = bounds

    @classmethod
    def for_tracking(cls, result: TrackingErrorBoundResult, policy: Optional[BlendPolicy] = None,
                     actuator_bounds: Optional[Sequence[float]] = None) -> "SafetyController":
        return cls(result.gradient, result.dynamics, policy, control_mode="min", actuator_bounds=actuator_bounds)

    @classmethod
    def for_avoidance(cls, result: AvoidSetResult, policy: Optional[BlendPolicy] = None,
                      actuator_bounds: Optional[Sequence[float]] = None) -> "SafetyController":
        return cls(result.gradient, result.dynamics, policy, control_mode="max", actuator_bounds=actuator_bounds)

    @property
    def control_dim(self) -> int:
        return self.dynamics.control_dim

    def control(
            self,
            field_state: np.ndarray,
            agent_state: Optional[np.ndarray] = None,
            reference_state: Optional[np.ndarray] = None,
    ) -> ControlDecision:
        """
        Compute the saturated control for one tick.

        Parameters
        ----------
        field_state : np.ndarray
            State in the coordinates of the gradient field (relative state for
            tracking, absolute pose for avoidance), shape (n,).
        agent_state, reference_state : np.ndarray or None
            Inputs of the nominal controller. Without them the nominal control
            is zero.

        Returns
        -------
        ControlDecision
        """
        m = self.control_dim
        x = self.gradient.grid.wrap(np.asarray(field_state, dtype=float))
        p = self.gradient.interpolate(x)

        fail_safe = not bool(np.all(np.isfinite(p)))
        if fail_safe:
            logger.warning("Gradient undefined at %s; applying zero control", np.array2string(x, precision=3))
            u_safe = np.zeros(m)
            normalizer = 0.0
        else:
            u_safe = self.dynamics.extremal_control(x, p, self.control_mode)
            coefficients = self.dynamics.control_coefficients(x, p)
            normalizer = float(np.clip(np.linalg.norm(coefficients) / self.policy.normalizer_scale, 0.0, 1.0))

        if self.policy.nominal is not None and agent_state is not None and reference_state is not None:
            u_nominal = np.asarray(self.policy.nominal.control(agent_state, reference_state), dtype=float)
            if u_nominal.shape != (m,):
                raise InvalidConfigurationError(
                    f"Nominal controller returned shape {u_nominal.shape}, expected ({m},)"
                )
        else:
            u_nominal = np.zeros(m)

        if fail_safe:
            u = np.zeros(m)
        elif self.policy.mode == "safe_only" or normalizer > self.policy.trust_threshold:
            u = u_safe
        else:
            u = normalizer * u_safe + (1.0 - normalizer) * u_nominal

        u = np.where(np.isfinite(u), u, 0.0)
        return ControlDecision(
            control=saturate(u, self.actuator_bounds),
            safe_control=u_safe,
            nominal_control=u_nominal,
            normalizer=normalizer,
            fail_safe=fail_safe,
        )
