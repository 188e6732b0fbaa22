import numpy as np
import pytest

from errors import InvalidConfigurationError
from grid import GradientField, Grid, ValueFunction, compute_gradient, create_grid, project


def test_periodic_dimension_excludes_upper_bound():
    grid = create_grid((-1.0, -np.pi), (1.0, np.pi), (5, 20), periodic_dims=(1,))
    assert grid.dx[1] == pytest.approx(2.0 * np.pi / 20)
    assert grid.vs[1][0] == pytest.approx(-np.pi)
    assert grid.vs[1][-1] == pytest.approx(np.pi - grid.dx[1])
    assert grid.vs[0][-1] == pytest.approx(1.0)
    assert grid.states.shape == (5, 20, 2)


def test_wrap_maps_into_periodic_range():
    grid = create_grid((0.0, -np.pi), (1.0, np.pi), 4, periodic_dims=(1,))
    x = grid.wrap(np.array([[0.5, 1.5 * np.pi], [2.0, -np.pi]]))
    np.testing.assert_allclose(x, [[0.5, -0.5 * np.pi], [2.0, -np.pi]])


@pytest.mark.parametrize("kwargs", [
    dict(mins=(0.0,), maxs=(1.0, 2.0), shape=(3,)),
    dict(mins=(1.0,), maxs=(0.0,), shape=(3,)),
    dict(mins=(0.0,), maxs=(1.0,), shape=(1,)),
    dict(mins=(0.0,), maxs=(1.0,), shape=(3,), periodic_dims=(1,)),
])
def test_invalid_grid_is_rejected(kwargs):
    with pytest.raises(InvalidConfigurationError):
        Grid(**kwargs)


def test_interpolation_across_periodic_seam():
    grid = create_grid((-np.pi,), (np.pi,), 40, periodic_dims=(0,))
    value = ValueFunction(grid, np.cos(grid.vs[0]))
    theta = np.array([[np.pi - 1e-3], [np.pi + 0.2], [-3.0 * np.pi + 0.1]])
    np.testing.assert_allclose(value.interpolate(theta), np.cos(theta[:, 0]), atol=1e-2)


def test_interpolation_outside_grid_is_nan():
    grid = create_grid((0.0, 0.0), (1.0, 1.0), 5)
    value = ValueFunction(grid, np.zeros(grid.shape))
    out = value.interpolate(np.array([[0.5, 0.5], [1.5, 0.5], [np.nan, 0.5]]))
    assert out[0] == 0.0
    assert np.isnan(out[1]) and np.isnan(out[2])


def test_fields_are_read_only_snapshots():
    grid = create_grid((0.0,), (1.0,), 5)
    data = np.arange(5.0)
    value = ValueFunction(grid, data)
    data[0] = 100.0
    assert value.data[0] == 0.0
    with pytest.raises(ValueError):
        value.data[1] = 3.0
    with pytest.raises(InvalidConfigurationError):
        ValueFunction(grid, np.zeros(4))


def test_gradient_of_linear_field_is_exact():
    grid = create_grid((-1.0, -2.0), (1.0, 2.0), (7, 9))
    x = grid.states
    gradient = compute_gradient(grid, 2.0 * x[..., 0] + 3.0 * x[..., 1])
    assert isinstance(gradient, GradientField)
    np.testing.assert_allclose(gradient.component(0), 2.0)
    np.testing.assert_allclose(gradient.component(1), 3.0)
    np.testing.assert_allclose(gradient.interpolate(np.array([0.3, -0.4])), [2.0, 3.0])


def test_periodic_gradient_wraps():
    grid = create_grid((-np.pi,), (np.pi,), 64, periodic_dims=(0,))
    gradient = compute_gradient(grid, np.sin(grid.vs[0]))
    np.testing.assert_allclose(gradient.component(0), np.cos(grid.vs[0]), atol=5e-3)


def test_project_reduces_removed_dimensions():
    grid = create_grid((0.0, -1.0, -np.pi), (1.0, 1.0, np.pi), (3, 5, 4), periodic_dims=(2,))
    x = grid.states
    field = x[..., 0] + x[..., 1] + np.cos(x[..., 2])

    sub_grid, low = project(grid, field, keep_dims=(0,), reduce_op="min")
    assert sub_grid.shape == (3,)
    np.testing.assert_allclose(low.data, grid.vs[0] - 1.0 - 1.0)

    sub_grid, high = project(grid, ValueFunction(grid, field), keep_dims=(0, 2), reduce_op="max")
    assert sub_grid.shape == (3, 4)
    assert sub_grid.periodic_dims == (1,)
    np.testing.assert_allclose(high.data[:, 0], grid.vs[0] + 1.0 - 1.0)

    with pytest.raises(ValueError):
        project(grid, field, keep_dims=(0,), reduce_op="mean")
