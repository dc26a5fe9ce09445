"""
Point cloud preprocessing: voxel grid downsampling and normal estimation.

Both functions return a new PointCloud and never touch their input.

Reference:
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
- https://pointclouds.org/documentation/tutorials/voxel_grid.html
- https://pointclouds.org/documentation/tutorials/normal_estimation.html
"""

from typing import Optional, Sequence

import numpy as np

from .errors import InvalidParameterError
from .parameters import NORMAL_ORIENTATIONS
from .spatial_index import SpatialIndex
from .structures import PointCloud
from .utils.parallel import parallel_for_chunks

# A plane needs at least 3 points
MIN_NORMAL_NEIGHBORS = 3


# =============================================================================
# DOWNSAMPLING
# =============================================================================

def downsample(cloud: PointCloud, leaf: float) -> PointCloud:
    """
    Voxel grid downsampling.

    The grid is anchored at the origin (voxel key = floor(p / leaf)), so the
    result depends only on the points and the leaf. Each occupied voxel is
    replaced by the centroid of its points. Normals are dropped because an
    averaged normal is not meaningful.

    Output order is the lexicographic order of the voxel keys, which makes the
    operation deterministic and idempotent at a fixed leaf.

    Args:
        cloud: Input cloud
        leaf: Voxel edge length (> 0)

    Returns:
        PointCloud with at most len(cloud) points and no normals
    """
    if not leaf > 0:
        raise InvalidParameterError(f"Voxel leaf size must be > 0, got {leaf}")

    points = cloud.points[np.isfinite(cloud.points).all(axis=1)]
    if points.shape[0] == 0:
        return PointCloud(np.empty((0, 3)))

    keys = np.floor(points / leaf).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)

    sums = np.zeros((counts.shape[0], 3))
    np.add.at(sums, inverse, points)
    return PointCloud(sums / counts[:, None])


# =============================================================================
# NORMAL ESTIMATION
# =============================================================================

def _fit_plane(neighborhood: np.ndarray):
    """
    Normal and curvature of a local neighbourhood (PCA).

    Returns:
        tuple: (unit normal, curvature) or (None, nan) for a degenerate patch
    """
    centered = neighborhood - neighborhood.mean(axis=0)
    covariance = centered.T @ centered / neighborhood.shape[0]
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)

    total = eigenvalues.sum()
    if total <= 0.0:
        # All neighbours coincide
        return None, np.nan
    return eigenvectors[:, 0], max(eigenvalues[0], 0.0) / total


def estimate_normals(cloud: PointCloud, radius: float,
                     viewpoint: Optional[Sequence[float]] = (0.0, 0.0, 0.0),
                     num_workers: Optional[int] = None,
                     index: Optional[SpatialIndex] = None,
                     orientation: str = 'outward') -> PointCloud:
    """
    Estimate per-point normals and curvature from radius neighbourhoods.

    The normal is the eigenvector of the smallest eigenvalue of the
    neighbourhood covariance. Curvature is lambda_0 / (lambda_0 + lambda_1 + lambda_2).
    Points with fewer than 3 neighbours inside `radius` (the point itself
    included) get a NaN normal and NaN curvature.

    Sign, by `orientation`:
    - "viewpoint": flipped to point towards `viewpoint` (the sensor origin by
      default). With viewpoint=None the sign is left to the eigen-solver.
    - "outward": flipped to point away from the cloud centroid. Moves with
      the cloud under any rigid transform, so a model and a moved copy of it
      get matching normals wherever each was captured.
    - "none": whatever the eigen-solver returns.

    Points are processed in chunks on a thread pool. The cloud and its
    index are only read, each chunk writes its own rows of the output.

    Args:
        cloud: Input cloud (existing normals are replaced)
        radius: Neighbourhood radius (> 0)
        viewpoint: Orientation target or None
        num_workers: Worker threads (None = CPU count)
        index: Prebuilt SpatialIndex over cloud.points
        orientation: "outward" (default, as RegistrationParameters), "viewpoint" or "none"

    Returns:
        PointCloud with the same points plus normals and curvature
    """
    if not radius > 0:
        raise InvalidParameterError(f"Normal radius must be > 0, got {radius}")
    if orientation not in NORMAL_ORIENTATIONS:
        raise InvalidParameterError(f"Unknown normal orientation {orientation!r}")

    n = len(cloud)
    normals = np.full((n, 3), np.nan)
    curvature = np.full(n, np.nan)
    if n == 0:
        return cloud.with_normals(normals, curvature)

    points = cloud.points
    if index is None:
        index = SpatialIndex(points)
    centroid = points.mean(axis=0)
    vp = None
    if orientation == 'viewpoint' and viewpoint is not None:
        vp = np.asarray(viewpoint, dtype=np.float64)

    def worker(start, stop):
        for i in range(start, stop):
            neighbors, _ = index.radius_search(points[i], radius)
            if neighbors.shape[0] < MIN_NORMAL_NEIGHBORS:
                continue
            normal, surface_variation = _fit_plane(points[neighbors])
            if normal is None:
                continue
            if vp is not None and np.dot(vp - points[i], normal) < 0.0:
                normal = -normal
            elif orientation == 'outward' and np.dot(points[i] - centroid, normal) < 0.0:
                normal = -normal
            normals[i] = normal / np.linalg.norm(normal)
            curvature[i] = surface_variation

    parallel_for_chunks(n, worker, num_workers)
    return cloud.with_normals(normals, curvature)
