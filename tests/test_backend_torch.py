import numpy as np
import pytest

torch = pytest.importorskip("torch")

from backend_numpy import build_terms, lax_friedrichs_rhs_numpy  # noqa: E402
from backend_torch import lax_friedrichs_rhs_torch, terms_to_torch  # noqa: E402
from grid import create_grid  # noqa: E402
from grid_reachability import ReachabilityConfig, solve_value_function, time_stamps  # noqa: E402
from system import RelativeUnicycleWithAdversarialReference, SimpleTurningVehicle  # noqa: E402


def test_rhs_matches_numpy():
    grid = create_grid((-1.0, -1.0, -np.pi, -1.0), (1.0, 1.0, np.pi, 1.0), (7, 7, 8, 5), periodic_dims=(2,))
    x = grid.states
    V = x[..., 0] ** 2 + x[..., 1] ** 2 + 0.1 * np.sin(x[..., 2]) * x[..., 3]
    terms = build_terms(grid, RelativeUnicycleWithAdversarialReference(), "min", "max")

    expected = lax_friedrichs_rhs_numpy(V, terms)
    got = lax_friedrichs_rhs_torch(torch.as_tensor(V, dtype=torch.float64), terms_to_torch(terms, "cpu"))
    np.testing.assert_allclose(got.numpy(), expected, atol=1e-12)


@pytest.mark.parametrize("accuracy", ["low", "medium"])
def test_solve_matches_numpy(accuracy):
    grid = create_grid((-3.0, -3.0, -np.pi), (3.0, 3.0, np.pi), (13, 13, 12), periodic_dims=(2,))
    V0 = np.hypot(grid.states[..., 0], grid.states[..., 1]) - 1.0
    kwargs = dict(compute_mode="min_over_time", u_mode="max", d_mode="min")
    times = time_stamps(0.5, 0.1)

    ref = solve_value_function(grid, V0, times, SimpleTurningVehicle(), cfg=ReachabilityConfig(accuracy=accuracy),
                               **kwargs)
    got = solve_value_function(grid, V0, times, SimpleTurningVehicle(),
                               cfg=ReachabilityConfig(backend="torch", accuracy=accuracy), **kwargs)
    np.testing.assert_allclose(got.value.data, ref.value.data, atol=1e-10)
    np.testing.assert_allclose(got.times, ref.times)
