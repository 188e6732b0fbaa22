import numpy as np
import pytest

import simulator
from errors import IntegrationError, InvalidConfigurationError
from grid import GradientField, create_grid
from nominal import LineOfSightController
from safety_controller import BlendPolicy, SafetyController
from simulator import (
    AgentSimulator,
    IntegratorConfig,
    ReferenceTrajectory,
    SimulatorMode,
    integrate,
    pose_state,
)
from system import RelativeUnicycleWithAdversarialReference, SimpleTurningVehicle, Unicycle


@pytest.fixture
def controller(constant_gradient):
    return SafetyController(constant_gradient, RelativeUnicycleWithAdversarialReference())


@pytest.fixture
def reference():
    return ReferenceTrajectory.stationary([0.5, 0.0, 0.0, 0.0])


def make_simulator(controller, initial_state, **kwargs):
    return AgentSimulator(Unicycle(), controller, initial_state, **kwargs)


def test_rk4_matches_exponential_decay():
    t, Z = integrate(lambda t, z: -z, (0.0, 1.0), np.array([1.0]), IntegratorConfig(method="RK4"))
    assert t[0] == 0.0 and t[-1] == pytest.approx(1.0)
    assert Z[-1, 0] == pytest.approx(np.exp(-1.0), abs=1e-8)


@pytest.mark.parametrize("method", ["RK45", "DOP853", "LSODA"])
def test_adaptive_methods(method):
    _, Z = integrate(lambda t, z: -z, (0.0, 1.0), np.array([1.0]), IntegratorConfig(method=method))
    assert Z[-1, 0] == pytest.approx(np.exp(-1.0), abs=0.05)


def test_integration_failure_raises():
    with pytest.raises(IntegrationError):
        integrate(lambda t, z: z ** 2, (0.0, 2.0), np.array([1.0]))
    with pytest.raises(IntegrationError):
        integrate(lambda t, z: np.array([np.inf]), (0.0, 1.0), np.array([1.0]), IntegratorConfig(method="RK4"))
    with pytest.raises(InvalidConfigurationError):
        IntegratorConfig(method="Euler")


def test_reference_interpolation_and_hold():
    ref = ReferenceTrajectory([0.0, 2.0], [[0.0, 0.0, 0.0, 1.0], [2.0, 4.0, 0.0, 3.0]])
    np.testing.assert_allclose(ref.state_at(1.0), [1.0, 2.0, 0.0, 2.0])
    np.testing.assert_allclose(ref.state_at(-1.0), [0.0, 0.0, 0.0, 1.0])
    np.testing.assert_allclose(ref.state_at(5.0), [2.0, 4.0, 0.0, 3.0])
    with pytest.raises(InvalidConfigurationError):
        ReferenceTrajectory([1.0, 0.0], [[0.0, 0.0], [1.0, 1.0]])


def test_reference_heading_turns_short_way():
    ref = ReferenceTrajectory([0.0, 1.0], [[0.0, 0.0, 3.0], [0.0, 0.0, -3.0]])
    assert abs(ref.state_at(0.5)[2]) == pytest.approx(np.pi)


def test_move_records_history(controller, reference):
    sim = make_simulator(controller, [0.0, 0.0, 0.0, 0.0], control_period=0.1)
    sim.move(0.25, reference)
    times, states, controls = sim.history.as_arrays()
    np.testing.assert_allclose(times, [0.0, 0.1, 0.2, 0.25])
    assert states.shape == (4, 4)
    assert controls.shape == (3, 2)
    assert len(sim.history.decisions) == 3
    # first tick: relative state (0.5, 0, 0, 0) gives the minimizing corner
    np.testing.assert_array_equal(controls[0], [-2.0, 2.0])
    assert np.all(np.abs(states[:, 2]) <= np.pi)
    assert sim.mode is SimulatorMode.RUNNING


def test_stop_brakes_to_standstill(controller):
    sim = make_simulator(controller, [0.0, 0.0, 0.3, 1.5], max_deceleration=2.0)
    duration = sim.stop(0.5)
    assert duration == pytest.approx(0.75)
    assert sim.time == pytest.approx(0.75)
    state = sim.state
    assert abs(state[3]) < 1e-6
    assert state[2] == pytest.approx(0.3)
    assert np.hypot(state[0], state[1]) == pytest.approx(1.5 ** 2 / (2 * 2.0), rel=1e-6)
    assert np.arctan2(state[1], state[0]) == pytest.approx(0.3)
    assert sim.mode is SimulatorMode.STOPPING


def test_stop_lasts_at_least_min_stop_time(controller):
    sim = make_simulator(controller, [0.0, 0.0, 0.0, 0.2], max_deceleration=2.0, min_stop_time=1.0)
    duration = sim.stop()
    assert duration == pytest.approx(1.0)
    assert sim.time == pytest.approx(1.0)
    np.testing.assert_allclose(sim.history.as_arrays()[1][1:, 3], 0.0, atol=1e-9)


def test_stop_from_reverse(controller):
    sim = make_simulator(controller, [1.0, 1.0, 0.0, -1.0], max_deceleration=2.0)
    assert sim.stop(0.0) == pytest.approx(0.5)
    assert abs(sim.state[3]) < 1e-6


def test_stopping_is_terminal(controller, reference):
    sim = make_simulator(controller, [0.0, 0.0, 0.0, 1.0])
    sim.move(0.2, reference)
    sim.stop()
    with pytest.raises(RuntimeError):
        sim.move(0.1, reference)


def test_integration_failure_aborts_run(controller, reference, monkeypatch, caplog):
    def failing(*args, **kwargs):
        raise IntegrationError("diverged")

    sim = make_simulator(controller, [0.0, 0.0, 0.0, 0.0])
    monkeypatch.setattr(simulator, "integrate", failing)
    with caplog.at_level("ERROR", logger="simulator"):
        with pytest.raises(IntegrationError):
            sim.move(0.5, reference)
    assert len(sim.history.states) == 1
    assert "Integration failed" in caplog.text


def test_avoidance_simulation_uses_pose():
    grid = create_grid((-2.0, -2.0, -np.pi), (2.0, 2.0, np.pi), (5, 5, 8), periodic_dims=(2,))
    gradient = GradientField(grid, np.broadcast_to([0.0, 0.0, 1.0], grid.shape + (3,)))
    vehicle = SimpleTurningVehicle()
    sim = AgentSimulator(
        vehicle, SafetyController(gradient, vehicle, control_mode="max"), [0.0, 0.0, 0.0],
        max_deceleration=1.0, field_state=pose_state,
    )
    sim.move(0.5, ReferenceTrajectory.stationary([0.0, 0.0]))
    # constant positive heading gradient: always turn left at full rate
    assert sim.state[2] == pytest.approx(0.5, abs=1e-6)
    with pytest.raises(InvalidConfigurationError):
        sim.stop()


def test_avoidance_blend_simulation_runs_on_the_pose(avoid_result):
    policy = BlendPolicy(nominal=LineOfSightController(), mode="blend")
    controller = SafetyController.for_avoidance(avoid_result, policy)
    sim = AgentSimulator(
        avoid_result.dynamics, controller, [-3.0, 3.0, 0.0],
        max_deceleration=1.0, field_state=pose_state,
    )
    sim.move(0.3, ReferenceTrajectory.stationary([-3.0, 0.0]))
    assert len(sim.history.controls) == 3
    assert sim.state.shape == (3,)
    for decision in sim.history.decisions:
        assert not decision.fail_safe
        assert decision.nominal_control.shape == (1,)
        assert abs(decision.control[0]) <= avoid_result.dynamics.control_bounds[0]


def test_invalid_simulator_configuration(controller):
    with pytest.raises(InvalidConfigurationError):
        make_simulator(controller, [0.0, 0.0, 0.0])
    with pytest.raises(InvalidConfigurationError):
        make_simulator(controller, [0.0, 0.0, 0.0, 0.0], control_period=0.0)
    with pytest.raises(InvalidConfigurationError):
        make_simulator(controller, [0.0, 0.0, 0.0, 0.0], min_stop_time=-1.0)

    grid = create_grid((-1.0, -1.0, -np.pi), (1.0, 1.0, np.pi), 4, periodic_dims=(2,))
    turning = SafetyController(GradientField(grid, np.zeros(grid.shape + (3,))), SimpleTurningVehicle())
    with pytest.raises(InvalidConfigurationError):
        make_simulator(turning, [0.0, 0.0, 0.0, 0.0])
