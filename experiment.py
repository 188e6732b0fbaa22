# experiment.py
"""
experiment.py

This module contains three experiments:

1) Avoid set for a constant-speed turning vehicle among four circular
   obstacles:
   - value function synthesis on an (x, y, heading) grid,
   - safety certificate queries at a few states,
   - plot of the avoid set boundary.

2) Tracking error bound between a unicycle and an adversarial reference:
   - value function synthesis on an (r_x, r_y, heading, speed) grid with the
     max-with-running-cost accumulation,
   - TEB extraction and archiving of the result to a .npz artifact,
   - plot of the error level sets.

3) Simulated tracking of a planar reference with the safety controller built
   from the TEB gradient, followed by an emergency stop.

run_experiment() runs all of them in sequence.
"""

import logging
import time

import numpy as np

from artifacts import load_synthesis_artifact, save_synthesis_artifact
from avoid_set import ObstacleAvoidConfig, ObstacleAvoidSynthesizer
from grid_reachability import ReachabilityConfig
from nominal import PDTrackingController
from plotting import plot_avoid_set, plot_tracking_error_bound, plot_trajectory
from safety_controller import BlendPolicy, SafetyController
from simulator import AgentSimulator, IntegratorConfig, ReferenceTrajectory
from system import Unicycle
from tracking_error_bound import TrackingErrorBoundConfig, TrackingErrorBoundSynthesizer


# ---------------------------------------------------------------------
# 1. Avoid set
# ---------------------------------------------------------------------


def run_avoid_example(backend: str = "numpy"):
    """
    Obstacles of radius 1 at (-2, -2), (-0.5, -0.5), (2, 3) and (4, -3);
    vehicle speed 1, turn rate bound 1.
    """
    print("=" * 80)
    print("Avoid set: turning vehicle, speed 1, |w| <= 1, four circular obstacles")
    print("=" * 80)

    cfg = ObstacleAvoidConfig(engine=ReachabilityConfig(backend=backend))
    synthesizer = ObstacleAvoidSynthesizer(cfg)

    t0 = time.perf_counter()
    result = synthesizer.synthesize()
    t1 = time.perf_counter()
    print(f"[Avoid] grid {result.grid.shape}, solved up to t = {result.times[-1]:.2f} s "
          f"in {t1 - t0:.2f} s, converged = {result.converged}")

    # A state next to the obstacle at (-0.5, -0.5), facing it and facing away
    for heading in (np.pi + np.pi / 4, np.pi / 4):
        state = np.array([0.5, 0.5, heading])
        safe = result.safe_controls(state)
        print(f"[Avoid] state {state.round(3)}: V = {float(result.value_at(state)):.3f}, "
              f"certified turn rates = {safe[:, 0].round(3).tolist()}")

    plot_avoid_set(result, title="Avoid set (reduced over heading)")
    return result


# ---------------------------------------------------------------------
# 2. Tracking error bound
# ---------------------------------------------------------------------


def run_teb_example(artifact_path: str = "teb_unicycle.npz", backend: str = "numpy"):
    """
    Unicycle with |w| <= 2, |a| <= 2 tracking a reference that moves at up to
    0.6 m/s per axis. The grid is coarser than the default to keep the run
    short.
    """
    print("=" * 80)
    print("Tracking error bound: unicycle vs adversarial planar reference")
    print("=" * 80)

    cfg = TrackingErrorBoundConfig(
        resolution=(31, 31, 24, 21),
        engine=ReachabilityConfig(backend=backend),
    )
    synthesizer = TrackingErrorBoundSynthesizer(cfg)

    t0 = time.perf_counter()
    result = synthesizer.synthesize()
    t1 = time.perf_counter()
    print(f"[TEB] TEB = {result.teb:.4f} after {result.times[-1]:.2f} s of time-to-go "
          f"({t1 - t0:.2f} s wall), converged = {result.converged}")

    path = save_synthesis_artifact(artifact_path, result)
    print(f"[TEB] Artifact written to {path}")

    plot_tracking_error_bound(result)
    return result, path


# ---------------------------------------------------------------------
# 3. Simulated tracking and emergency stop
# ---------------------------------------------------------------------


def run_simulation_example(artifact_path: str, blend: bool = False):
    """
    Track a reference moving along a circle of radius 2 at 0.5 m/s with the
    controller rebuilt from the TEB artifact, then stop.
    """
    print("=" * 80)
    print("Simulation: tracking a circular reference, then emergency stop")
    print("=" * 80)

    artifact = load_synthesis_artifact(artifact_path)
    policy = BlendPolicy(
        nominal=PDTrackingController(),
        mode="blend" if blend else "safe_only",
    )
    controller = SafetyController(artifact.gradient, artifact.dynamics, policy, control_mode="min")

    horizon = 10.0
    ts = np.linspace(0.0, horizon, 201)
    omega = 0.25
    ref_states = np.stack((
        2.0 * np.cos(omega * ts),
        2.0 * np.sin(omega * ts),
        omega * ts + np.pi / 2.0,
        np.full_like(ts, 2.0 * omega),
    ), axis=1)
    reference = ReferenceTrajectory(ts, ref_states)

    agent = Unicycle(
        turn_rate_bound=float(artifact.control_bounds[0]),
        accel_bound=float(artifact.control_bounds[1]),
    )
    simulator = AgentSimulator(
        agent, controller,
        initial_state=[1.8, 0.0, np.pi / 2.0, 0.0],
        control_period=0.1,
        min_stop_time=1.0,
        integrator=IntegratorConfig(method="RK45"),
    )

    simulator.move(horizon, reference)
    times, states, _ = simulator.history.as_arrays()
    refs = np.array([reference.state_at(t) for t in times])
    errors = np.hypot(states[:, 0] - refs[:, 0], states[:, 1] - refs[:, 1])
    fail_safe = sum(1 for d in simulator.history.decisions if d is not None and d.fail_safe)
    print(f"[Sim] max tracking error = {errors.max():.3f} (TEB = {artifact.teb:.3f}), "
          f"fail-safe ticks = {fail_safe}")

    v_before = simulator.state[3]
    duration = simulator.stop()
    print(f"[Sim] stop from v = {v_before:.3f} took {duration:.2f} s, "
          f"final speed = {simulator.state[3]:.2e}")

    _, states, _ = simulator.history.as_arrays()
    plot_trajectory(states, ref_states, title="Tracking a circular reference")
    return simulator


# ---------------------------------------------------------------------
# 4. Entry point
# ---------------------------------------------------------------------


def run_experiment():
    """
    Run all experiments:

    1) Avoid set among circular obstacles.
    2) Tracking error bound synthesis and archiving.
    3) Simulation driven by the archived tracking controller.
    """
    run_avoid_example()
    _, path = run_teb_example()
    run_simulation_example(str(path))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    run_experiment()
