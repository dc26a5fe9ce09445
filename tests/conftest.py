"""
Shared fixtures: seeded generators, synthetic clouds and a quiet logger.
"""
import numpy as np
import pytest

from grasp_registration.helpers import sample_box_surface
from grasp_registration.parameters import RegistrationParameters
from grasp_registration.structures import PointCloud
from grasp_registration.utils.logger import ProjectLogger


QUIET_CONFIG = {
    'debug': {'enabled': False, 'log_level': 'WARNING', 'log_to_file': False},
}


@pytest.fixture(autouse=True)
def quiet_logger():
    ProjectLogger.reset()
    logger = ProjectLogger.get_instance(QUIET_CONFIG)
    yield logger
    ProjectLogger.reset()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def make_l_block(n_points=3000, seed=0):
    """Asymmetric L: a 20 cm bar with a 12 cm arm at one end."""
    rng = np.random.default_rng(seed)
    long_part = sample_box_surface((0.20, 0.04, 0.04), n_points // 2, rng)
    short_part = sample_box_surface((0.04, 0.12, 0.04), n_points - n_points // 2, rng,
                                     offset=(-0.08, 0.08, 0.0))
    return PointCloud(np.vstack([long_part.points, short_part.points]))


def make_sphere(n_points=1000, radius=1.0, center=(0.0, 0.0, 0.0)):
    """Fibonacci lattice on a sphere (near-uniform, deterministic)."""
    i = np.arange(n_points) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / n_points)
    theta = np.pi * (1.0 + 5.0 ** 0.5) * i
    points = np.column_stack([np.cos(theta) * np.sin(phi),
                              np.sin(theta) * np.sin(phi),
                              np.cos(phi)])
    return PointCloud(radius * points + np.asarray(center))


def make_plane(n_side=30, size=1.0, z=0.0):
    """Square grid in the plane z = const."""
    u = np.linspace(0.0, size, n_side)
    xx, yy = np.meshgrid(u, u)
    points = np.column_stack([xx.ravel(), yy.ravel(), np.full(xx.size, z)])
    return PointCloud(points)


@pytest.fixture(scope='session')
def l_block():
    return make_l_block()


@pytest.fixture(scope='session')
def cube():
    return sample_box_surface((1.0, 1.0, 1.0), 1500, np.random.default_rng(5))


@pytest.fixture
def sphere():
    return make_sphere()


@pytest.fixture
def plane():
    return make_plane()


@pytest.fixture
def l_block_params():
    """Parameters sized for the L block (leaf small enough to keep every point)."""
    return RegistrationParameters(
        leaf=0.0005,
        normal_radius=0.012,
        feature_radius=0.03,
        number_of_samples=3,
        correspondence_randomness=1,
        maximum_iterations_ransac=3000,
        num_workers=2,
    )


@pytest.fixture
def cube_params():
    return RegistrationParameters(
        leaf=0.01,
        normal_radius=0.15,
        feature_radius=0.3,
        number_of_samples=3,
        correspondence_randomness=1,
        maximum_iterations_ransac=5000,
        num_workers=2,
    )
