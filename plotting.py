# plotting.py
"""
plotting.py

Visualization utilities: projected value functions with their level sets, the
avoid set with its obstacles, the tracking error bound in the relative plane,
and simulated trajectories. Everything is drawn from projections of the
solved fields, so the synthesis code never touches matplotlib.
"""

from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from avoid_set import AvoidSetResult
from grid import Grid, ReduceOp, ValueFunction, project
from tracking_error_bound import TrackingErrorBoundResult


def _finish(fig, ax, title: str, save_path: Optional[str]):
    ax.set_title(title)
    ax.grid(True)
    ax.legend(loc="best")
    if save_path is not None:
        fig.savefig(save_path, bbox_inches="tight", dpi=150)
    else:
        plt.show()
    return fig


def plot_value_projection(
    grid: Grid,
    value: ValueFunction,
    keep_dims: Sequence[int] = (0, 1),
    reduce_op: ReduceOp = "min",
    levels: Sequence[float] = (0.0,),
    title: str = "Projected value function",
    save_path: Optional[str] = None,
):
    """
    Filled contours of a value function projected onto two dimensions, with
    the given level sets drawn on top.

    Parameters
    ----------
    grid : Grid
        Grid of the value function.
    value : ValueFunction
        Field to draw.
    keep_dims : pair of int
        The two dimensions kept by the projection.
    reduce_op : {"min", "max"}
        Reduction over the other dimensions.
    levels : sequence of float
        Level sets to outline.
    title : str
        Plot title.
    save_path : str or None
        If given, save the figure to this path. Otherwise, just show it.
    """
    if len(keep_dims) != 2:
        raise ValueError("Only planar projections can be plotted")
    sub_grid, sub = project(grid, value, keep_dims, reduce_op)
    X, Y = np.meshgrid(sub_grid.vs[0], sub_grid.vs[1], indexing="ij")

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.set_aspect("equal", adjustable="box")
    filled = ax.contourf(X, Y, sub.data, levels=30, cmap="viridis")
    fig.colorbar(filled, ax=ax)
    for level in sorted(levels):
        if sub.min() <= level <= sub.max():
            ax.contour(X, Y, sub.data, levels=[level], colors="white", linewidths=2.0)
            ax.plot([], [], color="white", linewidth=2.0, label=f"level {level:.3f}")
    ax.set_xlabel(f"x{keep_dims[0]}")
    ax.set_ylabel(f"x{keep_dims[1]}")
    return _finish(fig, ax, title, save_path)


def plot_avoid_set(
    result: AvoidSetResult,
    heading: Optional[float] = None,
    title: str = "Avoid set",
    save_path: Optional[str] = None,
):
    """
    Zero level set of the avoid value function in the plane, either at one
    heading or reduced over all headings (a state is drawn unsafe when some
    heading is unsafe), together with the obstacle disks.
    """
    grid = result.grid
    if heading is None:
        sub_grid, sub = project(grid, result.value, (0, 1), "min")
        data = sub.data
        xs, ys = sub_grid.vs
    else:
        xs, ys = grid.vs[0], grid.vs[1]
        X, Y = np.meshgrid(xs, ys, indexing="ij")
        data = result.value.interpolate(np.stack((X, Y, np.full_like(X, heading)), axis=-1))
    X, Y = np.meshgrid(xs, ys, indexing="ij")

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.set_aspect("equal", adjustable="box")
    lowest = float(np.nanmin(data))
    if lowest < 0.0 < float(np.nanmax(data)):
        ax.contourf(X, Y, data, levels=[lowest, 0.0], colors=["tab:red"], alpha=0.3)
        ax.contour(X, Y, data, levels=[0.0], colors="tab:red", linewidths=2.0)
    ax.plot([], [], color="tab:red", linewidth=2.0, label="Avoid set boundary (V = 0)")

    angles = np.linspace(0.0, 2.0 * np.pi, 100)
    for i, obs in enumerate(result.obstacles):
        ax.plot(obs.center[0] + obs.radius * np.cos(angles),
                obs.center[1] + obs.radius * np.sin(angles),
                color="black", linestyle="--", label="Obstacle" if i == 0 else None)

    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return _finish(fig, ax, title, save_path)


def plot_tracking_error_bound(
    result: TrackingErrorBoundResult,
    offsets: Sequence[float] = (0.0, 0.5, 1.0),
    title: str = "Tracking error bound",
    save_path: Optional[str] = None,
):
    """
    Square root of the TEB value function in the relative plane, maximized
    over heading and speed, with the level sets TEB + offset.
    """
    sub_grid, sub = project(result.grid, result.value, (0, 1), "max")
    error = np.sqrt(np.maximum(sub.data, 0.0))
    X, Y = np.meshgrid(sub_grid.vs[0], sub_grid.vs[1], indexing="ij")

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.set_aspect("equal", adjustable="box")
    filled = ax.contourf(X, Y, error, levels=30, cmap="viridis")
    fig.colorbar(filled, ax=ax)
    for offset in offsets:
        level = result.teb + offset
        if error.min() <= level <= error.max():
            ax.contour(X, Y, error, levels=[level], colors="white", linewidths=1.5)
    ax.scatter([0.0], [0.0], color="red", s=40, label=f"Reference (TEB = {result.teb:.3f})")
    ax.set_xlabel("r_x")
    ax.set_ylabel("r_y")
    return _finish(fig, ax, title, save_path)


def plot_trajectory(
    states: np.ndarray,
    reference: Optional[np.ndarray] = None,
    title: str = "Simulated trajectory",
    save_path: Optional[str] = None,
):
    """
    Planar path of a simulated vehicle, shape (N, >=2), and optionally the
    reference positions it tracked, shape (M, >=2).
    """
    states = np.asarray(states, dtype=float)
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.set_aspect("equal", adjustable="box")
    ax.plot(states[:, 0], states[:, 1], linewidth=2.0, label="Vehicle")
    ax.scatter([states[0, 0]], [states[0, 1]], color="green", s=60, label="Start")
    ax.scatter([states[-1, 0]], [states[-1, 1]], color="red", s=60, label="End")
    if reference is not None and len(reference) > 0:
        reference = np.asarray(reference, dtype=float)
        ax.plot(reference[:, 0], reference[:, 1], linestyle="--", color="black", label="Reference")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return _finish(fig, ax, title, save_path)
