import logging

import numpy as np
import pytest
from spatialmath import SE3

from grasp_registration.local_refinement import (
    LocalRefiner,
    estimate_rigid_transform,
    step_magnitude,
)
from grasp_registration.parameters import RegistrationParameters
from grasp_registration.structures import PointCloud, rotation_angle, transform_points


SMALL_PERTURBATION = (SE3(0.004, -0.003, 0.002) * SE3.Rz(2, unit='deg') * SE3.Rx(1, unit='deg')).A


def test_estimate_rigid_transform_from_exact_correspondences(rng):
    source = rng.random((20, 3))
    T = (SE3(0.3, -0.1, 2.0) * SE3.Ry(75, unit='deg')).A

    estimate = estimate_rigid_transform(source, transform_points(source, T))

    np.testing.assert_allclose(estimate, T, atol=1e-9)


def test_step_magnitude():
    assert step_magnitude(np.eye(4)) == pytest.approx(0.0)
    step = (SE3(0.3, 0.0, 0.4) * SE3.Rz(0.1)).A
    assert step_magnitude(step) == pytest.approx(0.1 + 0.5)


def test_icp_residual_never_increases(l_block):
    target = l_block.transform(SMALL_PERTURBATION)
    params = RegistrationParameters(euclidean_epsilon=1e-12, maximum_iterations_icp=200)

    result = LocalRefiner(params).refine(l_block, target)

    history = np.array(result.residual_history)
    assert len(history) == result.iterations + 1
    assert np.all(np.diff(history) <= 1e-12)
    assert result.fitness <= history[0]


def test_icp_recovers_small_perturbation(l_block):
    target = l_block.transform(SMALL_PERTURBATION)
    params = RegistrationParameters(euclidean_epsilon=1e-12, maximum_iterations_icp=500)

    result = LocalRefiner(params).refine(l_block, target)

    assert result.converged
    error = result.transformation @ np.linalg.inv(SMALL_PERTURBATION)
    assert np.degrees(rotation_angle(error)) < 0.5
    assert np.linalg.norm(error[:3, 3]) < 0.002
    np.testing.assert_allclose(result.aligned_source.points,
                               l_block.transform(result.transformation).points)


def test_icp_starts_from_initial_transformation(l_block):
    target = l_block.transform(SMALL_PERTURBATION)

    result = LocalRefiner(RegistrationParameters()).refine(
        l_block, target, initial_transformation=SMALL_PERTURBATION)

    assert result.converged
    assert result.residual_history[0] == pytest.approx(0.0, abs=1e-20)
    np.testing.assert_allclose(result.transformation, SMALL_PERTURBATION, atol=1e-9)


def test_icp_budget_exhaustion_is_soft(l_block, quiet_logger, caplog):
    target = l_block.transform(SMALL_PERTURBATION)
    params = RegistrationParameters(euclidean_epsilon=0.0, maximum_iterations_icp=2)

    quiet_logger._logger.propagate = True
    with caplog.at_level(logging.WARNING, logger='grasp_registration'):
        result = LocalRefiner(params).refine(l_block, target)

    assert not result.converged
    assert result.iterations == 2
    assert result.fitness <= result.residual_history[0]
    assert 'ICP reached 2 iterations' in caplog.text


def test_icp_needs_three_points(l_block):
    tiny = PointCloud(np.zeros((2, 3)))
    with pytest.raises(ValueError):
        LocalRefiner(RegistrationParameters()).refine(tiny, l_block)
    with pytest.raises(ValueError):
        LocalRefiner(RegistrationParameters()).refine(l_block, tiny)


def test_unseen_model_points_do_not_pull_the_pose(l_block):
    # The scene only shows the +y part of the block
    pose = (SE3(0.05, 0.1, 0.5) * SE3.Rz(-40, unit='deg')).A
    scene = l_block.select(np.flatnonzero(l_block.points[:, 1] > 0.0)).transform(pose)
    params = RegistrationParameters(leaf=0.0005)

    result = LocalRefiner(params).refine(l_block, scene, initial_transformation=pose)

    error = result.transformation @ np.linalg.inv(pose)
    assert np.degrees(rotation_angle(error)) < 0.1
    assert np.linalg.norm(error[:3, 3]) < 0.0005


def test_icp_stops_without_correspondences(l_block, quiet_logger, caplog):
    far_away = l_block.transform(SE3(1.0, 0.0, 0.0).A)

    quiet_logger._logger.propagate = True
    with caplog.at_level(logging.WARNING, logger='grasp_registration'):
        result = LocalRefiner(RegistrationParameters()).refine(l_block, far_away)

    assert not result.converged
    assert result.iterations == 0
    assert result.fitness == float('inf')
    np.testing.assert_allclose(result.transformation, np.eye(4))
    assert 'ICP stopped after 0 iterations' in caplog.text
