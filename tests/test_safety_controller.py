import numpy as np
import pytest

from errors import InvalidConfigurationError
from grid import GradientField
from nominal import LineOfSightController, PDTrackingController
from safety_controller import BlendPolicy, SafetyController
from system import RelativeUnicycleWithAdversarialReference, SimpleTurningVehicle


class ConstantNominal:
    def __init__(self, u):
        self.u = np.asarray(u, dtype=float)
        self.control_dim = self.u.shape[0]

    def control(self, agent_state, reference_state):
        return self.u


@pytest.fixture
def model():
    return RelativeUnicycleWithAdversarialReference()


ORIGIN = np.zeros(4)
AGENT = np.array([0.0, 0.0, 0.0, 0.0])
REFERENCE = np.array([0.5, 0.0, 0.0, 0.0])


def test_safe_only_outputs_extremal_control(constant_gradient, model):
    controller = SafetyController(constant_gradient, model, control_mode="min")
    decision = controller.control(ORIGIN)
    # coefficients (0.5, -1): the tracker picks the minimizing corner
    np.testing.assert_array_equal(decision.control, [-2.0, 2.0])
    np.testing.assert_array_equal(decision.safe_control, [-2.0, 2.0])
    assert decision.normalizer == 1.0
    assert not decision.fail_safe


def test_avoidance_mode_maximizes(constant_gradient, model):
    controller = SafetyController(constant_gradient, model, control_mode="max")
    np.testing.assert_array_equal(controller.control(ORIGIN).control, [2.0, -2.0])


def test_safe_only_ignores_nominal(constant_gradient, model):
    policy = BlendPolicy(nominal=ConstantNominal([1.0, -1.0]), normalizer_scale=10.0)
    decision = SafetyController(constant_gradient, model, policy).control(ORIGIN, AGENT, REFERENCE)
    np.testing.assert_array_equal(decision.control, [-2.0, 2.0])
    np.testing.assert_array_equal(decision.nominal_control, [1.0, -1.0])


def test_blend_below_trust_threshold(constant_gradient, model):
    policy = BlendPolicy(nominal=ConstantNominal([1.0, -1.0]), mode="blend", normalizer_scale=10.0)
    decision = SafetyController(constant_gradient, model, policy).control(ORIGIN, AGENT, REFERENCE)
    n = np.hypot(0.5, 1.0) / 10.0
    assert decision.normalizer == pytest.approx(n)
    expected = n * np.array([-2.0, 2.0]) + (1.0 - n) * np.array([1.0, -1.0])
    np.testing.assert_allclose(decision.control, expected)


def test_blend_above_trust_threshold_uses_safe_control(constant_gradient, model):
    policy = BlendPolicy(nominal=ConstantNominal([1.0, -1.0]), mode="blend", trust_threshold=0.5)
    decision = SafetyController(constant_gradient, model, policy).control(ORIGIN, AGENT, REFERENCE)
    np.testing.assert_array_equal(decision.control, [-2.0, 2.0])


def test_output_is_clamped_per_component(constant_gradient, model):
    controller = SafetyController(constant_gradient, model, actuator_bounds=(1.0, 0.5))
    np.testing.assert_array_equal(controller.control(ORIGIN).control, [-1.0, 0.5])

    policy = BlendPolicy(nominal=ConstantNominal([5.0, -0.1]), mode="blend", normalizer_scale=1e6)
    controller = SafetyController(constant_gradient, model, policy)
    np.testing.assert_allclose(controller.control(ORIGIN, AGENT, REFERENCE).control, [2.0, -0.1], atol=1e-5)


def test_fail_safe_outside_grid(constant_gradient, model, caplog):
    controller = SafetyController(constant_gradient, model)
    with caplog.at_level("WARNING", logger="safety_controller"):
        decision = controller.control(np.array([5.0, 0.0, 0.0, 0.0]))
    np.testing.assert_array_equal(decision.control, [0.0, 0.0])
    assert decision.fail_safe
    assert decision.normalizer == 0.0
    assert "zero control" in caplog.text


def test_fail_safe_on_nan_state_or_gradient(constant_gradient, relative_grid, model):
    controller = SafetyController(constant_gradient, model)
    assert controller.control(np.array([np.nan, 0.0, 0.0, 0.0])).fail_safe

    data = np.array(constant_gradient.data)
    data[2, 2, 4, 2] = np.nan
    controller = SafetyController(GradientField(relative_grid, data), model)
    decision = controller.control(relative_grid.states[2, 2, 4, 2] + np.array([0.1, 0.0, 0.0, 0.0]))
    assert decision.fail_safe
    np.testing.assert_array_equal(decision.control, [0.0, 0.0])


def test_periodic_heading_is_wrapped(constant_gradient, model):
    controller = SafetyController(constant_gradient, model)
    a = controller.control(np.array([0.2, 0.1, 0.3, 0.0]))
    b = controller.control(np.array([0.2, 0.1, 0.3 + 4.0 * np.pi, 0.0]))
    assert not b.fail_safe
    np.testing.assert_array_equal(a.control, b.control)


def test_dimension_mismatch_is_rejected(constant_gradient):
    with pytest.raises(InvalidConfigurationError):
        SafetyController(constant_gradient, SimpleTurningVehicle())


def test_invalid_policies(constant_gradient, model):
    with pytest.raises(InvalidConfigurationError):
        BlendPolicy(mode="blend")
    with pytest.raises(InvalidConfigurationError):
        BlendPolicy(trust_threshold=1.5)
    with pytest.raises(InvalidConfigurationError):
        BlendPolicy(normalizer_scale=0.0)
    with pytest.raises(InvalidConfigurationError):
        SafetyController(constant_gradient, model, actuator_bounds=(1.0,))
    with pytest.raises(InvalidConfigurationError):
        SafetyController(constant_gradient, model, control_mode="argmin")


def test_tracking_controller_from_synthesis(teb_result):
    policy = BlendPolicy(nominal=PDTrackingController(), mode="blend")
    controller = SafetyController.for_tracking(teb_result, policy)
    decision = controller.control(np.array([0.3, -0.2, 0.5, 0.4]), AGENT, REFERENCE)
    assert not decision.fail_safe
    assert np.all(np.abs(decision.control) <= teb_result.dynamics.control_bounds)


def test_avoidance_controller_from_synthesis(avoid_result):
    controller = SafetyController.for_avoidance(avoid_result)
    state = np.array([1.5, 0.5, -1.0])
    np.testing.assert_array_equal(controller.control(state).control, avoid_result.optimal_safe_control(state))


def test_avoidance_blend_rejects_tracking_nominal(avoid_result):
    with pytest.raises(InvalidConfigurationError):
        SafetyController.for_avoidance(avoid_result, BlendPolicy(nominal=PDTrackingController(), mode="blend"))
    with pytest.raises(InvalidConfigurationError):
        SafetyController.for_avoidance(avoid_result, BlendPolicy(nominal=ConstantNominal([0.1, 0.2]), mode="blend"))


def test_avoidance_blend_with_line_of_sight_nominal(avoid_result):
    policy = BlendPolicy(nominal=LineOfSightController(), mode="blend", trust_threshold=1.0, normalizer_scale=1e6)
    controller = SafetyController.for_avoidance(avoid_result, policy)
    pose = np.array([-3.0, 3.0, 0.0])
    decision = controller.control(pose, pose, np.array([-3.0, 0.0]))
    assert decision.nominal_control.shape == (1,)
    assert decision.control.shape == (1,)
    # negligible normalizer: the nominal turn toward the reference dominates
    assert decision.control[0] < 0.0


def test_nominal_output_shape_is_checked_every_tick(constant_gradient, model):
    class UndeclaredNominal:
        def control(self, agent_state, reference_state):
            return np.zeros(3)

    policy = BlendPolicy(nominal=UndeclaredNominal(), mode="blend")
    controller = SafetyController(constant_gradient, model, policy)
    with pytest.raises(InvalidConfigurationError):
        controller.control(ORIGIN, AGENT, REFERENCE)


def test_gradient_is_periodic_across_the_heading_seam(teb_result):
    grid = teb_result.grid
    controller = SafetyController.for_tracking(teb_result)
    for heading in (grid.maxs[2] - 0.05, grid.mins[2] + 0.05, grid.maxs[2] - 0.5 * grid.dx[2]):
        state = np.array([0.3, -0.2, heading, 0.4])
        shifted = state + np.array([0.0, 0.0, 2.0 * np.pi, 0.0])
        p = teb_result.gradient.interpolate(state)
        assert np.all(np.isfinite(p))
        np.testing.assert_allclose(teb_result.gradient.interpolate(shifted), p, atol=1e-9)
        np.testing.assert_allclose(teb_result.gradient.interpolate(state - [0.0, 0.0, 4.0 * np.pi, 0.0]), p,
                                   atol=1e-9)
        a, b = controller.control(state), controller.control(shifted)
        np.testing.assert_array_equal(a.control, b.control)
        assert a.normalizer == pytest.approx(b.normalizer)
