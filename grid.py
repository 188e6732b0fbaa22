# grid.py
"""
grid.py

Discretized state-space boxes and the fields sampled on them.

- Grid: bounding box, number of points per dimension and the periodic
  dimensions (e.g. heading). A periodic dimension with N points covers
  [min, max) with spacing (max - min) / N, so the point at max coincides with
  the point at min and is not stored twice.
- ValueFunction: scalar field on a grid.
- GradientField: one component per state dimension on the same grid.

Fields are read-only snapshots: their arrays are copied on construction and
flagged as non-writeable, so a field can be shared by any number of readers.
Lookups wrap periodic coordinates before interpolating and return NaN for
states outside the grid.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Literal, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.interpolate import RegularGridInterpolator

from errors import InvalidConfigurationError

ReduceOp = Literal["min", "max"]


@dataclass(frozen=True)
class Grid:
    """
    Regular grid over a box in state space.
    """
    mins: Tuple[float, ...]
    maxs: Tuple[float, ...]
    shape: Tuple[int, ...]
    periodic_dims: Tuple[int, ...] = ()

    def __post_init__(self):
        mins = tuple(float(v) for v in self.mins)
        maxs = tuple(float(v) for v in self.maxs)
        shape = tuple(int(n) for n in self.shape)
        periodic = tuple(sorted(int(d) for d in self.periodic_dims))
        if not (len(mins) == len(maxs) == len(shape)) or len(shape) == 0:
            raise InvalidConfigurationError(
                f"Grid bounds and resolution disagree: {len(mins)} mins, {len(maxs)} maxs, {len(shape)} sizes"
            )
        for lo, hi in zip(mins, maxs):
            if not (np.isfinite(lo) and np.isfinite(hi)) or hi <= lo:
                raise InvalidConfigurationError(f"Grid bound [{lo}, {hi}] is empty or not finite")
        if any(n < 2 for n in shape):
            raise InvalidConfigurationError(f"Grid needs at least 2 points per dimension, got {shape}")
        if len(set(periodic)) != len(periodic) or any(d < 0 or d >= len(shape) for d in periodic):
            raise InvalidConfigurationError(f"Invalid periodic dimensions {self.periodic_dims} for a {len(shape)}D grid")
        object.__setattr__(self, "mins", mins)
        object.__setattr__(self, "maxs", maxs)
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "periodic_dims", periodic)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.shape))

    def is_periodic(self, dim: int) -> bool:
        return dim in self.periodic_dims

    @cached_property
    def periods(self) -> Tuple[Optional[float], ...]:
        return tuple(
            (hi - lo) if self.is_periodic(dim) else None
            for dim, (lo, hi) in enumerate(zip(self.mins, self.maxs))
        )

    @cached_property
    def vs(self) -> Tuple[np.ndarray, ...]:
        """Coordinate vector of every dimension."""
        axes = []
        for dim, (lo, hi, n) in enumerate(zip(self.mins, self.maxs, self.shape)):
            if self.is_periodic(dim):
                axis = lo + np.arange(n) * (hi - lo) / n
            else:
                axis = np.linspace(lo, hi, n)
            axis.setflags(write=False)
            axes.append(axis)
        return tuple(axes)

    @cached_property
    def dx(self) -> np.ndarray:
        spacing = np.array([v[1] - v[0] for v in self.vs])
        spacing.setflags(write=False)
        return spacing

    @cached_property
    def states(self) -> np.ndarray:
        """All grid points stacked on the last axis, shape (*shape, ndim)."""
        pts = np.stack(np.meshgrid(*self.vs, indexing="ij"), axis=-1)
        pts.setflags(write=False)
        return pts

    def wrap(self, states: np.ndarray) -> np.ndarray:
        """Map periodic coordinates into [min, max) of their dimension."""
        x = np.array(states, dtype=float)
        for dim in self.periodic_dims:
            lo = self.mins[dim]
            x[..., dim] = lo + np.mod(x[..., dim] - lo, self.periods[dim])
        return x


def create_grid(
    mins: Sequence[float],
    maxs: Sequence[float],
    resolution: Union[int, Sequence[int]],
    periodic_dims: Sequence[int] = (),
) -> Grid:
    """
    Create a grid over [mins, maxs].

    Parameters
    ----------
    mins, maxs : sequence of float
        Box corners, one value per dimension.
    resolution : int or sequence of int
        Number of points per dimension (a single int is used for all).
    periodic_dims : sequence of int
        Indices of the periodic dimensions.

    Returns
    -------
    Grid
    """
    if np.isscalar(resolution):
        resolution = (int(resolution),) * len(mins)
    return Grid(tuple(mins), tuple(maxs), tuple(resolution), tuple(periodic_dims))


def _build_interpolator(grid: Grid, values: np.ndarray) -> RegularGridInterpolator:
    """
    Linear interpolator that closes every periodic dimension by repeating its
    first slice at coordinate min + period.
    """
    points = []
    vals = values
    for dim, axis in enumerate(grid.vs):
        if grid.is_periodic(dim):
            points.append(np.append(axis, grid.mins[dim] + grid.periods[dim]))
            vals = np.concatenate([vals, np.take(vals, [0], axis=dim)], axis=dim)
        else:
            points.append(np.asarray(axis))
    return RegularGridInterpolator(points, vals, method="linear", bounds_error=False, fill_value=np.nan)


class _GridField:
    """Shared storage and lookup of read-only fields sampled on a grid."""

    _trailing: Tuple[int, ...] = ()

    def __init__(self, grid: Grid, data: np.ndarray):
        data = np.array(data, dtype=float)
        expected = grid.shape + self._trailing
        if data.shape != expected:
            raise InvalidConfigurationError(f"Field of shape {data.shape} does not match grid {expected}")
        data.setflags(write=False)
        self._grid = grid
        self._data = data
        self._interpolator = None

    @property
    def grid(self) -> Grid:
        return self._grid

    @property
    def data(self) -> np.ndarray:
        return self._data

    def _lookup(self, states: np.ndarray) -> np.ndarray:
        x = np.asarray(states, dtype=float)
        if x.shape[-1] != self._grid.ndim:
            raise ValueError(f"Expected states with {self._grid.ndim} components, got shape {x.shape}")
        if self._interpolator is None:
            self._interpolator = _build_interpolator(self._grid, self._data)
        flat = self._grid.wrap(x).reshape(-1, self._grid.ndim)
        out = np.full((flat.shape[0],) + self._trailing, np.nan)
        finite = np.all(np.isfinite(flat), axis=-1)
        if np.any(finite):
            out[finite] = self._interpolator(flat[finite])
        return out.reshape(x.shape[:-1] + self._trailing)


class ValueFunction(_GridField):
    """Scalar field sampled on a grid."""

    def interpolate(self, states: np.ndarray) -> np.ndarray:
        """Value at arbitrary states, shape (...,). NaN outside the grid."""
        return self._lookup(states)

    def min(self) -> float:
        return float(np.min(self._data))

    def max(self) -> float:
        return float(np.max(self._data))


class GradientField(_GridField):
    """Spatial gradient of a value function, one component per grid dimension."""

    def __init__(self, grid: Grid, data: np.ndarray):
        self._trailing = (grid.ndim,)
        super().__init__(grid, data)

    def component(self, dim: int) -> np.ndarray:
        return self._data[..., dim]

    def interpolate(self, states: np.ndarray) -> np.ndarray:
        """Gradient at arbitrary states, shape (..., ndim). NaN outside the grid."""
        return self._lookup(states)


def compute_gradient(grid: Grid, field: Union[ValueFunction, np.ndarray]) -> GradientField:
    """
    Central-difference gradient of a field.

    Periodic dimensions wrap around; other dimensions use one-sided
    differences at the boundary.
    """
    data = field.data if isinstance(field, ValueFunction) else np.asarray(field, dtype=float)
    components = []
    for dim in range(grid.ndim):
        h = grid.dx[dim]
        if grid.is_periodic(dim):
            components.append((np.roll(data, -1, axis=dim) - np.roll(data, 1, axis=dim)) / (2.0 * h))
        else:
            components.append(np.gradient(data, h, axis=dim))
    return GradientField(grid, np.stack(components, axis=-1))


def project(
    grid: Grid,
    field: Union[ValueFunction, np.ndarray],
    keep_dims: Sequence[int],
    reduce_op: ReduceOp = "min",
) -> Tuple[Grid, ValueFunction]:
    """
    Project a field onto a subset of its dimensions.

    Parameters
    ----------
    grid : Grid
        Grid of the field.
    field : ValueFunction or np.ndarray
        Field to project.
    keep_dims : sequence of int
        Dimensions that remain.
    reduce_op : {"min", "max"}
        Reduction applied over the removed dimensions.

    Returns
    -------
    (Grid, ValueFunction)
        Lower-dimensional grid and projected field.
    """
    data = field.data if isinstance(field, ValueFunction) else np.asarray(field, dtype=float)
    keep = sorted(set(int(d) for d in keep_dims))
    if not keep or any(d < 0 or d >= grid.ndim for d in keep):
        raise ValueError(f"Invalid dimensions to keep: {keep_dims}")
    removed = tuple(d for d in range(grid.ndim) if d not in keep)
    if reduce_op == "min":
        reduced = np.min(data, axis=removed) if removed else data
    elif reduce_op == "max":
        reduced = np.max(data, axis=removed) if removed else data
    else:
        raise ValueError(f"Unknown reduction: {reduce_op}")
    sub_grid = Grid(
        tuple(grid.mins[d] for d in keep),
        tuple(grid.maxs[d] for d in keep),
        tuple(grid.shape[d] for d in keep),
        tuple(keep.index(d) for d in grid.periodic_dims if d in keep),
    )
    return sub_grid, ValueFunction(sub_grid, reduced)
