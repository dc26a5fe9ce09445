"""
Core data structures: point clouds, feature sets, poses and results.

Clouds are immutable values. Every stage hands back a new PointCloud instead
of editing its input, so descriptors computed from one cloud can never be
silently paired with a later, mutated version of it.

Poses are plain 4x4 float64 numpy arrays (homogeneous transforms).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import numpy as np
import open3d as o3d

from .errors import GlobalAlignmentFailure


NORMAL_UNIT_TOLERANCE = 1e-6


# =============================================================================
# POSE HELPERS
# =============================================================================

def make_pose(rotation=None, translation=None) -> np.ndarray:
    """Build a 4x4 homogeneous transform from R (3x3) and t (3,)."""
    T = np.eye(4)
    if rotation is not None:
        T[:3, :3] = rotation
    if translation is not None:
        T[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return T


def invert_pose(T: np.ndarray) -> np.ndarray:
    """Closed-form inverse of a rigid transform."""
    R = T[:3, :3]
    t = T[:3, 3]
    return make_pose(R.T, -R.T @ t)


def compose_poses(*poses) -> np.ndarray:
    """compose_poses(A, B, C) = A @ B @ C (C applied first)."""
    T = np.eye(4)
    for pose in poses:
        T = T @ pose
    return T


def transform_points(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to an (N, 3) array."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def rotation_angle(T: np.ndarray) -> float:
    """Rotation angle (radians) of the rotation block of T."""
    cos_angle = (np.trace(T[:3, :3]) - 1.0) * 0.5
    return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))


# =============================================================================
# POINT CLOUD
# =============================================================================

def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


class PointCloud:
    """
    Ordered set of 3D points with optional unit normals and curvature.

    A point without a normal carries a row of NaN in `normals`. This is the
    "undefined normal" marker, distinct from a zero vector.

    Attributes:
        points: (N, 3) positions
        normals: (N, 3) unit normals or None when no normals were estimated
        curvature: (N,) surface variation or None
    """

    __slots__ = ('points', 'normals', 'curvature')

    def __init__(self, points, normals=None, curvature=None):
        points = np.asarray(points, dtype=np.float64)
        if points.size == 0:
            points = points.reshape(0, 3)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")
        n = points.shape[0]

        if normals is not None:
            normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
            if normals.shape[0] != n:
                raise ValueError(f"normals length {normals.shape[0]} != point count {n}")
            defined = ~np.isnan(normals).any(axis=1)
            lengths = np.linalg.norm(normals[defined], axis=1)
            if lengths.size and np.any(np.abs(lengths - 1.0) > NORMAL_UNIT_TOLERANCE):
                raise ValueError("normals must be unit length (or NaN for undefined)")
        if curvature is not None:
            curvature = np.asarray(curvature, dtype=np.float64).reshape(-1)
            if curvature.shape[0] != n:
                raise ValueError(f"curvature length {curvature.shape[0]} != point count {n}")

        object.__setattr__(self, 'points', _frozen(points))
        object.__setattr__(self, 'normals', None if normals is None else _frozen(normals))
        object.__setattr__(self, 'curvature', None if curvature is None else _frozen(curvature))

    def __setattr__(self, name, value):
        raise AttributeError("PointCloud is immutable")

    def __len__(self):
        return self.points.shape[0]

    def __repr__(self):
        state = 'normals' if self.has_normals else 'no normals'
        return f"PointCloud({len(self)} pts, {state})"

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    @property
    def normal_mask(self) -> np.ndarray:
        """Boolean mask of points that carry a defined normal."""
        if self.normals is None:
            return np.zeros(len(self), dtype=bool)
        return ~np.isnan(self.normals).any(axis=1)

    def with_normals(self, normals, curvature=None) -> 'PointCloud':
        return PointCloud(self.points, normals, curvature)

    def select(self, indices) -> 'PointCloud':
        """New cloud containing only the given point indices, in order."""
        indices = np.asarray(indices, dtype=np.int64)
        normals = None if self.normals is None else self.normals[indices]
        curvature = None if self.curvature is None else self.curvature[indices]
        return PointCloud(self.points[indices], normals, curvature)

    def transform(self, T: np.ndarray) -> 'PointCloud':
        """New cloud with positions and normals moved by the rigid transform T."""
        points = transform_points(self.points, T)
        normals = None
        if self.normals is not None:
            # NaN rows stay NaN
            normals = self.normals @ T[:3, :3].T
        return PointCloud(points, normals, self.curvature)

    # =========================================================================
    # OPEN3D INTEROP (loaders and viewers work with open3d clouds)
    # =========================================================================

    @classmethod
    def from_open3d(cls, pcd: o3d.geometry.PointCloud) -> 'PointCloud':
        points = np.asarray(pcd.points)
        normals = None
        if pcd.has_normals():
            normals = np.asarray(pcd.normals).copy()
            lengths = np.linalg.norm(normals, axis=1)
            valid = lengths > 0
            normals[valid] /= lengths[valid, None]
            normals[~valid] = np.nan
        return cls(points, normals)

    def to_open3d(self) -> o3d.geometry.PointCloud:
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.points.copy())
        if self.normals is not None:
            # open3d has no undefined marker, zero vectors stand in for NaN rows
            pcd.normals = o3d.utility.Vector3dVector(np.nan_to_num(self.normals, nan=0.0))
        return pcd


# =============================================================================
# FEATURES
# =============================================================================

@dataclass(frozen=True)
class FeatureSet:
    """
    FPFH descriptors paired with the cloud they were computed from.

    Points without a normal are skipped, so descriptors[i] belongs to
    cloud.points[indices[i]]. Never assume positional alignment.
    """
    cloud: PointCloud
    descriptors: np.ndarray
    indices: np.ndarray

    def __post_init__(self):
        if self.descriptors.shape[0] != self.indices.shape[0]:
            raise ValueError(
                f"descriptor count {self.descriptors.shape[0]} != index count {self.indices.shape[0]}")

    def __len__(self):
        return self.descriptors.shape[0]

    @property
    def points(self) -> np.ndarray:
        """Positions of the described points (len(self) x 3)."""
        return self.cloud.points[self.indices]

    @property
    def dimension(self) -> int:
        return self.descriptors.shape[1]


# =============================================================================
# RESULT
# =============================================================================

class AlignmentStatus(Enum):
    """Tri-state outcome of one registration run."""
    FAILED = 'failed'                                  # RANSAC did not converge, identity pose
    REFINEMENT_INCOMPLETE = 'refinement_incomplete'    # ICP ran out of iterations
    CONVERGED = 'converged'


@dataclass(frozen=True)
class AlignmentResult:
    """
    Final model-to-scene pose of one orchestrator run.

    `transformation` maps model-space points into scene space. On FAILED it
    is the identity and must not be used as an alignment. Check `converged`
    / `status`, or call raise_for_status().
    """
    transformation: np.ndarray
    converged: bool
    fitness: float
    status: AlignmentStatus
    global_transformation: np.ndarray = field(default_factory=lambda: np.eye(4))
    refinement_transformation: np.ndarray = field(default_factory=lambda: np.eye(4))
    inlier_fraction: float = 0.0
    ransac_iterations: int = 0
    icp_iterations: int = 0
    aligned_model: Optional[PointCloud] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def failure(cls, inlier_fraction=0.0, ransac_iterations=0, timings=None) -> 'AlignmentResult':
        return cls(
            transformation=np.eye(4),
            converged=False,
            fitness=float('inf'),
            status=AlignmentStatus.FAILED,
            inlier_fraction=inlier_fraction,
            ransac_iterations=ransac_iterations,
            timings=dict(timings or {}),
        )

    @property
    def failed(self) -> bool:
        return self.status is AlignmentStatus.FAILED

    def raise_for_status(self) -> 'AlignmentResult':
        """Raise GlobalAlignmentFailure on hard failure, otherwise return self."""
        if self.failed:
            raise GlobalAlignmentFailure(
                f"Global alignment did not reach the inlier fraction after "
                f"{self.ransac_iterations} iterations (best {self.inlier_fraction:.3f})")
        return self

    def inverse(self) -> np.ndarray:
        """Scene-to-model transform."""
        return invert_pose(self.transformation)

    def map_points(self, points) -> np.ndarray:
        """Map model-space points (e.g. grasp points) into scene space."""
        self.raise_for_status()
        return transform_points(points, self.transformation)
