"""
Local pose refinement with point-to-point ICP.

Each iteration:
1. Nearest target point for every source point, keeping only pairs closer
   than inlier_distance (max_correspondence × leaf). Model points the scene
   does not see (occlusion, partial views) then drop out instead of being
   dragged onto the scene boundary.
2. Rigid transform minimising the summed squared distances over the kept
   pairs (Kabsch/Umeyama)
3. Apply it to the source
4. Mean squared residual of the kept pairs against the new neighbours

Stops when the residual improvement or the step size drops below
euclidean_epsilon, when fewer than 3 pairs survive the gate, or after
maximum_iterations_icp. Stopping without meeting epsilon is a soft outcome: the
best transform so far is returned with converged=False.

Reference:
- Besl & McKay 1992 "A Method for Registration of 3-D Shapes"
- https://www.open3d.org/docs/release/tutorial/pipelines/icp_registration.html
"""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import open3d as o3d

from .parameters import RegistrationParameters
from .spatial_index import SpatialIndex
from .structures import PointCloud, rotation_angle, transform_points
from .utils.logger import ProjectLogger


def estimate_rigid_transform(source_points: np.ndarray, target_points: np.ndarray) -> np.ndarray:
    """
    Closed-form rigid transform mapping source_points[i] onto target_points[i].

    Uses open3d's point-to-point estimation (SVD, no scaling).

    Args:
        source_points: (K, 3), K >= 3
        target_points: (K, 3)

    Returns:
        4x4 transform
    """
    source = o3d.geometry.PointCloud()
    source.points = o3d.utility.Vector3dVector(np.asarray(source_points, dtype=np.float64))
    target = o3d.geometry.PointCloud()
    target.points = o3d.utility.Vector3dVector(np.asarray(target_points, dtype=np.float64))

    k = len(source_points)
    corr = o3d.utility.Vector2iVector(np.tile(np.arange(k, dtype=np.int32)[:, None], (1, 2)))
    est = o3d.pipelines.registration.TransformationEstimationPointToPoint(False)
    return np.asarray(est.compute_transformation(source, target, corr), dtype=np.float64)


def step_magnitude(T: np.ndarray) -> float:
    """Size of an incremental transform: rotation angle (rad) + translation norm."""
    return rotation_angle(T) + float(np.linalg.norm(T[:3, 3]))


@dataclass
class RefinementResult:
    """
    Outcome of one ICP run.

    Attributes:
        transformation: Transform mapping the input source onto the target
        converged: True if an epsilon criterion stopped the loop
        fitness: Mean squared residual of the returned transform
        iterations: ICP iterations performed
        residual_history: MSE before the first and after every iteration
        aligned_source: Source moved by `transformation`
    """
    transformation: np.ndarray
    converged: bool
    fitness: float
    iterations: int
    residual_history: List[float] = field(default_factory=list)
    aligned_source: Optional[PointCloud] = None


class LocalRefiner:
    """Point-to-point ICP between two roughly aligned clouds."""

    def __init__(self, params: Optional[RegistrationParameters] = None,
                 logger: Optional[ProjectLogger] = None):
        self.params = params or RegistrationParameters()
        self.logger = logger or ProjectLogger.get_instance()

    def refine(self, source: PointCloud, target: PointCloud,
               initial_transformation: Optional[np.ndarray] = None) -> RefinementResult:
        """
        Refine the pose of `source` against `target`.

        Args:
            source: Cloud to move (e.g. the globally aligned model)
            target: Fixed cloud (the scene)
            initial_transformation: Optional starting transform for source

        Returns:
            RefinementResult
        """
        epsilon = self.params.euclidean_epsilon
        max_iterations = self.params.maximum_iterations_icp
        max_sq_dist = self.params.inlier_distance ** 2

        if len(source) < 3 or len(target) < 3:
            raise ValueError("ICP needs at least 3 source and 3 target points")

        index = SpatialIndex(target.points)
        T = np.eye(4) if initial_transformation is None else np.array(initial_transformation, dtype=np.float64)
        current = transform_points(source.points, T)

        pairs, nearest, mse = self._correspondences(index, current, max_sq_dist)
        history = [mse]
        best_T, best_mse = T.copy(), mse

        converged = False
        iterations = 0
        for iterations in range(1, max_iterations + 1):
            if pairs.size < 3:
                iterations -= 1
                self.logger.warning(f"ICP stopped after {iterations} iterations: "
                                    f"{pairs.size} correspondences within {self.params.inlier_distance:g}")
                break

            step = estimate_rigid_transform(current[pairs], target.points[nearest])
            current = transform_points(current, step)
            T = step @ T

            pairs, nearest, new_mse = self._correspondences(index, current, max_sq_dist)
            history.append(new_mse)

            improvement = mse - new_mse
            magnitude = step_magnitude(step)
            mse = new_mse
            if new_mse <= best_mse:
                best_T, best_mse = T.copy(), new_mse

            if self.logger.debug_enabled:
                self.logger.debug(f"ICP iter {iterations}: mse={new_mse:.6e}, pairs={pairs.size}, "
                                  f"improvement={improvement:.3e}, step={magnitude:.3e}")

            if abs(improvement) < epsilon or magnitude < epsilon:
                converged = True
                break
        else:
            self.logger.warning(f"ICP reached {max_iterations} iterations without meeting "
                                f"epsilon={epsilon:g} (mse={best_mse:.3e})")

        return RefinementResult(
            transformation=best_T,
            converged=converged,
            fitness=best_mse,
            iterations=iterations,
            residual_history=history,
            aligned_source=source.transform(best_T),
        )

    @staticmethod
    def _correspondences(index: SpatialIndex, current: np.ndarray, max_sq_dist: float):
        """Source rows with a target neighbour inside the gate, their targets and the MSE."""
        nearest, sq_dists = index.nearest(current)
        pairs = np.flatnonzero(sq_dists <= max_sq_dist)
        mse = float(sq_dists[pairs].mean()) if pairs.size else float('inf')
        return pairs, nearest[pairs], mse
