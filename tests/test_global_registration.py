import numpy as np
import pytest
from spatialmath import SE3

from grasp_registration.errors import InsufficientDataError
from grasp_registration.features import compute_fpfh
from grasp_registration.global_registration import (
    GlobalAligner,
    edge_lengths,
    passes_prerejection,
)
from grasp_registration.preprocessing import estimate_normals
from grasp_registration.structures import FeatureSet, PointCloud, rotation_angle

from conftest import make_sphere


def describe(cloud, params):
    with_normals = estimate_normals(cloud, params.normal_search_radius,
                                    orientation=params.normal_orientation,
                                    num_workers=params.num_workers)
    return compute_fpfh(with_normals, params.feature_search_radius, num_workers=params.num_workers)


@pytest.fixture
def l_block_features(l_block, l_block_params):
    return describe(l_block, l_block_params)


# =============================================================================
# PREREJECTION
# =============================================================================

def test_edge_lengths_of_triangle():
    lengths = edge_lengths(np.array([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 4.0, 0.0]]))
    np.testing.assert_allclose(sorted(lengths), [3.0, 4.0, 5.0])


def test_prerejection_accepts_rigid_copies():
    source = np.random.default_rng(3).random((5, 3))
    T = (SE3(1.0, 2.0, 3.0) * SE3.Rz(70, unit='deg')).A
    target = source @ T[:3, :3].T + T[:3, 3]
    assert passes_prerejection(source, target, 0.99)


def test_prerejection_rejects_scaled_polygons():
    source = np.random.default_rng(3).random((5, 3))
    assert not passes_prerejection(source, 2.0 * source, 0.7)
    assert passes_prerejection(source, 1.2 * source, 0.7)


def test_prerejection_rejects_degenerate_edges():
    source = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    assert not passes_prerejection(source, source, 0.0)


# =============================================================================
# RANSAC
# =============================================================================

def test_identity_alignment_of_a_cloud_with_itself(l_block_features, l_block_params):
    aligner = GlobalAligner(l_block_params, rng=0)
    result = aligner.align(l_block_features, l_block_features)

    assert result.converged
    assert result.inlier_fraction == pytest.approx(1.0)
    np.testing.assert_allclose(result.transformation, np.eye(4), atol=1e-6)
    np.testing.assert_allclose(result.aligned_source.points, l_block_features.cloud.points, atol=1e-6)


def test_recovers_known_pose(l_block, l_block_features, l_block_params):
    T = (SE3(0.05, -0.02, 0.3) * SE3.Rz(30, unit='deg') * SE3.Rx(10, unit='deg')).A
    target = describe(l_block.transform(T), l_block_params)

    result = GlobalAligner(l_block_params, rng=1).align(l_block_features, target)

    assert result.converged
    assert result.inlier_fraction >= l_block_params.inlier_fraction
    assert np.degrees(rotation_angle(result.transformation[:3, :3].T @ T[:3, :3])) < 2.0
    assert np.linalg.norm(result.transformation[:3, 3] - T[:3, 3]) < 0.005


def test_identity_alignment_succeeds_across_seeds(l_block_features, l_block_params):
    successes = 0
    for seed in range(20):
        result = GlobalAligner(l_block_params, rng=seed).align(l_block_features, l_block_features)
        if result.converged and np.allclose(result.transformation, np.eye(4), atol=1e-6):
            successes += 1

    assert successes >= 19


def test_same_seed_same_hypotheses(l_block_features, l_block_params):
    params = l_block_params.replace(maximum_iterations_ransac=200, inlier_fraction=1.0)
    first = GlobalAligner(params, rng=42).align(l_block_features, l_block_features)
    second = GlobalAligner(params, rng=42).align(l_block_features, l_block_features)

    assert first.iterations == second.iterations
    assert first.hypotheses_evaluated == second.hypotheses_evaluated
    np.testing.assert_array_equal(first.transformation, second.transformation)


def test_non_convergence_returns_identity(l_block_features, l_block_params):
    params = l_block_params.replace(maximum_iterations_ransac=50, inlier_fraction=1.0)
    sphere = describe(make_sphere(1000, radius=0.1), params.replace(normal_radius=0.03, feature_radius=0.05))

    result = GlobalAligner(params, rng=0).align(l_block_features, sphere)

    assert not result.converged
    assert result.iterations == 50
    assert result.aligned_source is None
    np.testing.assert_allclose(result.transformation, np.eye(4))
    assert result.inlier_fraction < 1.0


def test_too_few_descriptors(l_block_features, l_block_params):
    tiny_cloud = PointCloud(np.eye(3), normals=np.eye(3))
    tiny = FeatureSet(tiny_cloud, np.zeros((2, 33)), np.array([0, 1]))

    aligner = GlobalAligner(l_block_params, rng=0)
    with pytest.raises(InsufficientDataError):
        aligner.align(l_block_features, tiny)
    with pytest.raises(InsufficientDataError):
        aligner.align(tiny, l_block_features)


def test_descriptor_size_mismatch(l_block_features, l_block_params):
    other = FeatureSet(l_block_features.cloud, l_block_features.descriptors[:, :11],
                       l_block_features.indices)
    with pytest.raises(ValueError):
        GlobalAligner(l_block_params, rng=0).align(l_block_features, other)
