import numpy as np
import pytest

from avoid_set import ObstacleAvoidConfig, ObstacleAvoidSynthesizer
from grid import GradientField, create_grid
from tracking_error_bound import TrackingErrorBoundConfig, TrackingErrorBoundSynthesizer


@pytest.fixture(scope="session")
def avoid_result():
    """Two unit obstacles at (0, 0) and (3, 3) on a coarse grid."""
    cfg = ObstacleAvoidConfig(
        centers=((0.0, 0.0), (3.0, 3.0)),
        radius=1.0,
        resolution=(31, 31, 20),
        time_step=0.1,
        horizon=2.0,
    )
    return ObstacleAvoidSynthesizer(cfg).synthesize()


@pytest.fixture(scope="session")
def teb_config():
    return TrackingErrorBoundConfig(resolution=(15, 15, 12, 9), time_step=0.1, horizon=1.0)


@pytest.fixture(scope="session")
def teb_result(teb_config):
    return TrackingErrorBoundSynthesizer(teb_config).synthesize()


@pytest.fixture
def relative_grid():
    return create_grid((-1.0, -1.0, -np.pi, -1.0), (1.0, 1.0, np.pi, 1.0), (5, 5, 8, 5), periodic_dims=(2,))


@pytest.fixture
def constant_gradient(relative_grid):
    """Gradient (1, 0, 0.5, -1) everywhere on the relative grid."""
    p = np.array([1.0, 0.0, 0.5, -1.0])
    return GradientField(relative_grid, np.broadcast_to(p, relative_grid.shape + (4,)))
