import numpy as np
import pytest
from spatialmath import SE3

from grasp_registration.errors import InvalidParameterError
from grasp_registration.parameters import RegistrationParameters
from grasp_registration.preprocessing import downsample, estimate_normals
from grasp_registration.structures import PointCloud

from conftest import make_plane, make_sphere


# =============================================================================
# DOWNSAMPLING
# =============================================================================

def test_downsample_replaces_voxel_by_centroid():
    points = np.array([
        [0.1, 0.1, 0.1],
        [0.3, 0.2, 0.1],
        [0.2, 0.6, 0.4],
        [1.5, 0.5, 0.5],   # second voxel
    ])
    result = downsample(PointCloud(points), 1.0)

    assert len(result) == 2
    np.testing.assert_allclose(result.points[0], points[:3].mean(axis=0))
    np.testing.assert_allclose(result.points[1], points[3])


def test_downsample_grid_is_anchored_at_origin():
    # 0.9 and 1.1 straddle the voxel boundary at 1.0
    result = downsample(PointCloud([[0.9, 0.0, 0.0], [1.1, 0.0, 0.0]]), 1.0)
    assert len(result) == 2


def test_downsample_is_idempotent(rng):
    cloud = PointCloud(rng.random((2000, 3)))
    once = downsample(cloud, 0.1)
    twice = downsample(once, 0.1)

    assert len(twice) == len(once)
    np.testing.assert_allclose(twice.points, once.points, atol=1e-12)


def test_downsample_count_shrinks_with_leaf(rng):
    cloud = PointCloud(rng.random((3000, 3)))
    counts = [len(downsample(cloud, leaf)) for leaf in (0.01, 0.02, 0.04, 0.08)]

    assert counts[0] <= len(cloud)
    assert counts == sorted(counts, reverse=True)


def test_downsample_drops_normals_and_non_finite_points():
    cloud = PointCloud([[0.0, 0.0, 0.0], [np.nan, 0.0, 0.0], [5.0, 5.0, 5.0]],
                       normals=[[0.0, 0.0, 1.0]] * 3)
    result = downsample(cloud, 0.5)

    assert len(result) == 2
    assert not result.has_normals
    assert np.isfinite(result.points).all()


def test_downsample_empty_cloud():
    assert len(downsample(PointCloud(np.empty((0, 3))), 0.1)) == 0


@pytest.mark.parametrize('leaf', [0.0, -0.1])
def test_downsample_rejects_bad_leaf(leaf):
    with pytest.raises(InvalidParameterError):
        downsample(PointCloud([[0.0, 0.0, 0.0]]), leaf)


# =============================================================================
# NORMALS
# =============================================================================

def test_plane_normals_point_to_viewpoint():
    plane = make_plane()

    up = estimate_normals(plane, 0.08, viewpoint=(0.5, 0.5, 1.0), orientation='viewpoint')
    down = estimate_normals(plane, 0.08, viewpoint=(0.5, 0.5, -1.0), orientation='viewpoint')

    np.testing.assert_allclose(up.normals, np.tile([0.0, 0.0, 1.0], (len(plane), 1)), atol=1e-9)
    np.testing.assert_allclose(down.normals, np.tile([0.0, 0.0, -1.0], (len(plane), 1)), atol=1e-9)
    assert np.all(up.curvature < 1e-9)


def test_unoriented_normals_are_unit_and_on_axis():
    plane = make_plane()
    result = estimate_normals(plane, 0.08, viewpoint=None, orientation='viewpoint')

    np.testing.assert_allclose(np.abs(result.normals[:, 2]), 1.0, atol=1e-9)
    np.testing.assert_allclose(np.linalg.norm(result.normals, axis=1), 1.0, atol=1e-12)


def test_outward_normals_on_sphere():
    sphere = make_sphere(center=(3.0, -2.0, 1.0))
    result = estimate_normals(sphere, 0.3, orientation='outward')

    radial = sphere.points - np.array([3.0, -2.0, 1.0])
    cosines = np.einsum('ij,ij->i', result.normals, radial)
    assert result.normal_mask.all()
    assert np.all(cosines > 0.95)
    # Small positive curvature on a sphere
    assert np.all(result.curvature > 0.0)
    assert np.all(result.curvature < 0.05)


def test_outward_normals_move_with_the_cloud():
    sphere = make_sphere()
    T = (SE3(2.0, 0.5, -1.0) * SE3.Rz(40, unit='deg') * SE3.Rx(25, unit='deg')).A

    normals = estimate_normals(sphere, 0.3, orientation='outward')
    moved = estimate_normals(sphere.transform(T), 0.3, orientation='outward')

    np.testing.assert_allclose(moved.normals, normals.normals @ T[:3, :3].T, atol=1e-6)


def test_default_orientation_matches_pipeline_default():
    sphere = make_sphere(center=(3.0, -2.0, 1.0))
    params = RegistrationParameters()

    default = estimate_normals(sphere, 0.3)
    configured = estimate_normals(sphere, 0.3, orientation=params.normal_orientation)

    np.testing.assert_array_equal(default.normals, configured.normals)


def test_sparse_points_get_undefined_normal():
    plane = make_plane(n_side=10)
    lonely = np.array([[10.0, 10.0, 10.0]])
    cloud = PointCloud(np.vstack([plane.points, lonely]))

    result = estimate_normals(cloud, 0.3)

    assert not result.normal_mask[-1]
    assert np.isnan(result.normals[-1]).all()
    assert np.isnan(result.curvature[-1])
    assert result.normal_mask[:-1].all()


def test_normals_independent_of_worker_count():
    plane = make_plane(n_side=40)   # several chunks
    serial = estimate_normals(plane, 0.06, viewpoint=(0.0, 0.0, 1.0), num_workers=1,
                              orientation='viewpoint')
    threaded = estimate_normals(plane, 0.06, viewpoint=(0.0, 0.0, 1.0), num_workers=4,
                                orientation='viewpoint')

    np.testing.assert_array_equal(serial.normals, threaded.normals)
    np.testing.assert_array_equal(serial.curvature, threaded.curvature)


def test_input_cloud_is_not_modified():
    plane = make_plane()
    before = plane.points.copy()
    estimate_normals(plane, 0.08)

    assert not plane.has_normals
    np.testing.assert_array_equal(plane.points, before)


def test_normal_estimation_rejects_bad_arguments():
    plane = make_plane()
    with pytest.raises(InvalidParameterError):
        estimate_normals(plane, 0.0)
    with pytest.raises(InvalidParameterError):
        estimate_normals(plane, 0.1, orientation='inward')
