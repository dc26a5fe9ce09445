"""
Registration helpers.

Contains shared functions around the pose estimation pipeline:
- Error computation against a ground truth pose
- Noise addition
- Grasp point mapping
- Point cloud visualization (optional observer)

Reference:
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html
"""

import math

import numpy as np
import open3d as o3d
from spatialmath import SE3
from spatialmath.base import trnorm

from .structures import AlignmentResult, PointCloud


def sample_box_surface(extent, n_points, rng=None, offset=(0.0, 0.0, 0.0)) -> PointCloud:
    """
    Uniform random samples on the surface of an axis-aligned box.

    Args:
        extent: Box edge lengths (x, y, z)
        n_points: Number of samples
        rng: numpy Generator or seed
        offset: Position of the box centre

    Returns:
        PointCloud without normals
    """
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    half = 0.5 * np.asarray(extent, dtype=np.float64)
    ex, ey, ez = 2.0 * half
    # Faces come in pairs: +-x, +-y, +-z
    areas = np.array([ey * ez, ey * ez, ex * ez, ex * ez, ex * ey, ex * ey])
    faces = rng.choice(6, size=n_points, p=areas / areas.sum())

    points = rng.uniform(-half, half, size=(n_points, 3))
    axis = faces // 2
    sign = np.where(faces % 2 == 0, 1.0, -1.0)
    points[np.arange(n_points), axis] = sign * half[axis]
    return PointCloud(points + np.asarray(offset, dtype=np.float64))


def add_noise(cloud: PointCloud, mu, sigma, rng=None) -> PointCloud:
    """Add Gaussian noise to point positions (normals are dropped)."""
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    points = cloud.points + rng.normal(mu, sigma, size=cloud.points.shape)
    return PointCloud(points)


def numpyToSE3(transform_np):
    assert(transform_np.shape[0] == 4)
    assert(transform_np.shape[1] == 4)

    transform_se3 = SE3(trnorm(transform_np))

    return transform_se3


def computeError(ground_truth, estimate_pose, position_scale=1.0):
    """
    Rotation error in degrees and position error between two 4x4 poses.

    Args:
        position_scale: Multiplier for the position error (1000 for m -> mm)
    """
    gt_se3 = numpyToSE3(ground_truth)
    ep_se3 = numpyToSE3(estimate_pose)

    error_angle = gt_se3.angdist(ep_se3) * 180.0 / math.pi
    error_pos = np.linalg.norm(gt_se3.t - ep_se3.t, 2) * position_scale

    return float(error_angle), float(error_pos)


def map_grasp_points(result: AlignmentResult, grasp_points) -> np.ndarray:
    """
    Move grasp points defined on the model into the scene (sensor) frame.

    Args:
        result: Converged AlignmentResult
        grasp_points: (N, 3) array or PointCloud in model space

    Raises:
        GlobalAlignmentFailure: result is a hard failure
    """
    if isinstance(grasp_points, PointCloud):
        grasp_points = grasp_points.points
    return result.map_points(grasp_points)


# =============================================================================
# VISUALIZATION
# =============================================================================

# draw_geometries renders on a white background
SCENE_COLOR = [0.0, 1.0, 0.0]
MODEL_COLOR = [0.0, 0.0, 1.0]
UNALIGNED_MODEL_COLOR = [1.0, 0.0, 0.0]


def show_point_clouds(geometries, title, info=None, debug=True):

    if not debug:
        return

    print(f"\n[STEP] {title}")
    if info:
        for line in info:
            print(f"  {line}")
    o3d.visualization.draw_geometries(geometries, window_name=title)


class Open3DViewer:
    """
    Registration observer that opens a blocking Open3D window.

    Scene in green, aligned model in blue. On failure only the inputs are shown.
    """

    def __init__(self, title="RANSAC-ICP", enabled=True):
        self.title = title
        self.enabled = enabled

    def on_result(self, model: PointCloud, scene: PointCloud, result: AlignmentResult):
        scene_pcd = scene.to_open3d()
        scene_pcd.paint_uniform_color(SCENE_COLOR)

        if result.failed:
            model_pcd = model.to_open3d()
            model_pcd.paint_uniform_color(UNALIGNED_MODEL_COLOR)
            info = ["Global alignment failed, showing unaligned inputs"]
        else:
            model_pcd = result.aligned_model.to_open3d()
            model_pcd.paint_uniform_color(MODEL_COLOR)
            info = [
                f"Status: {result.status.name}",
                f"Fitness (MSE): {result.fitness:.3e}",
                f"Inlier fraction: {result.inlier_fraction:.3f}",
            ]
        show_point_clouds([scene_pcd, model_pcd], self.title, info, debug=self.enabled)
