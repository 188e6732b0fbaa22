# artifacts.py
"""
artifacts.py

Persisted synthesis results. A synthesis artifact is a compressed .npz archive
holding everything a runtime controller needs to rebuild its gradient field:
the grid, the model kind and parameters, the final value function and its
gradient, actuator and disturbance limits, and the TEB when there is one.
Only plain arrays and strings are stored, so loading never unpickles.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from grid import Grid, GradientField, ValueFunction, create_grid
from system import DynamicsModel, make_dynamics

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class SynthesisArtifact:
    teb: Optional[float]
    converged: bool
    grid: Grid
    dynamics: DynamicsModel
    value: ValueFunction
    gradient: GradientField
    control_bounds: np.ndarray
    disturbance_bounds: np.ndarray
    times: np.ndarray


def save_synthesis_artifact(path: PathLike, result) -> Path:
    """
    Write an AvoidSetResult or TrackingErrorBoundResult to `path`.

    The ".npz" suffix is appended when missing. Returns the written path.
    """
    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_name(path.name + ".npz")
    grid = result.grid
    dynamics = result.dynamics
    teb = getattr(result, "teb", None)
    np.savez_compressed(
        path,
        teb=np.array(np.nan if teb is None else teb, dtype=float),
        converged=np.array(bool(result.converged)),
        grid_min=np.array(grid.mins, dtype=float),
        grid_max=np.array(grid.maxs, dtype=float),
        grid_shape=np.array(grid.shape, dtype=int),
        periodic_dims=np.array(grid.periodic_dims, dtype=int),
        dynamics_kind=np.array(dynamics.kind),
        dynamics_params=np.array(json.dumps(dynamics.parameters())),
        value=result.value.data,
        gradient=result.gradient.data,
        control_bounds=dynamics.control_bounds,
        disturbance_bounds=dynamics.disturbance_bounds,
        times=np.asarray(result.times, dtype=float),
    )
    logger.info("Saved %s synthesis artifact to %s", dynamics.kind, path)
    return path


def load_synthesis_artifact(path: PathLike) -> SynthesisArtifact:
    with np.load(Path(path), allow_pickle=False) as data:
        grid = create_grid(
            data["grid_min"].tolist(),
            data["grid_max"].tolist(),
            data["grid_shape"].tolist(),
            data["periodic_dims"].tolist(),
        )
        dynamics = make_dynamics(str(data["dynamics_kind"]), **json.loads(str(data["dynamics_params"])))
        teb = float(data["teb"])
        return SynthesisArtifact(
            teb=None if np.isnan(teb) else teb,
            converged=bool(data["converged"]),
            grid=grid,
            dynamics=dynamics,
            value=ValueFunction(grid, data["value"]),
            gradient=GradientField(grid, data["gradient"]),
            control_bounds=np.array(data["control_bounds"]),
            disturbance_bounds=np.array(data["disturbance_bounds"]),
            times=np.array(data["times"]),
        )
