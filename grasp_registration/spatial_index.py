"""
Nearest-neighbour queries over point positions and feature descriptors.

SpatialIndex wraps open3d's KDTreeFlann for per-point radius / kNN queries
(used from the normal and feature worker pools, read-only) and an
open3d.core NearestNeighborSearch index for whole-cloud nearest lookups
(used by RANSAC inlier counting and ICP).

Reference:
- https://www.open3d.org/docs/release/tutorial/geometry/kdtree.html
- https://www.open3d.org/docs/release/python_api/open3d.core.nns.NearestNeighborSearch.html
"""

from typing import Tuple

import numpy as np
import open3d as o3d
import open3d.core as o3c


def _as_query(points: np.ndarray, dim: int) -> np.ndarray:
    # open3d refuses read-only buffers, and PointCloud arrays are frozen
    return np.array(points, dtype=np.float64, copy=True).reshape(-1, dim)


def _batch_knn(nns, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    indices, sq_dists = nns.knn_search(o3c.Tensor(queries), k)
    indices = indices.numpy().astype(np.int64).reshape(-1, k)
    sq_dists = sq_dists.numpy().astype(np.float64).reshape(-1, k)
    return indices, sq_dists


class SpatialIndex:
    """
    Read-only k-d tree over an (N, 3) point array.

    Built once per cloud per stage. All query methods are safe to call from
    several threads at once as long as nobody rebuilds the index.
    """

    def __init__(self, points: np.ndarray):
        self.points = _as_query(points, 3)
        if self.points.shape[0] == 0:
            raise ValueError("Cannot build a spatial index over an empty point set")

        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.points)
        self._tree = o3d.geometry.KDTreeFlann(pcd)

        self._nns = o3c.nns.NearestNeighborSearch(o3c.Tensor(self.points))
        self._nns.knn_index()

    def __len__(self):
        return self.points.shape[0]

    def radius_search(self, query: np.ndarray, radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        All points within `radius` of `query` (the query point itself included).

        Returns:
            tuple: (indices, squared distances)
        """
        _, idx, dist = self._tree.search_radius_vector_3d(np.asarray(query, dtype=np.float64), radius)
        return np.asarray(idx, dtype=np.int64), np.asarray(dist, dtype=np.float64)

    def knn_search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """k nearest points to `query` as (indices, squared distances)."""
        k = min(k, len(self))
        _, idx, dist = self._tree.search_knn_vector_3d(np.asarray(query, dtype=np.float64), k)
        return np.asarray(idx, dtype=np.int64), np.asarray(dist, dtype=np.float64)

    def nearest(self, queries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Nearest indexed point for every row of `queries`.

        Returns:
            tuple: (indices (M,), squared distances (M,))
        """
        queries = _as_query(queries, 3)
        if queries.shape[0] == 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)
        indices, sq_dists = _batch_knn(self._nns, queries, 1)
        return indices[:, 0], sq_dists[:, 0]


class FeatureIndex:
    """kNN over descriptor vectors (rows of an (N, D) matrix)."""

    def __init__(self, descriptors: np.ndarray):
        descriptors = np.asarray(descriptors, dtype=np.float64)
        if descriptors.ndim != 2 or descriptors.shape[0] == 0:
            raise ValueError("Cannot build a feature index over an empty descriptor set")
        self.descriptors = np.ascontiguousarray(descriptors)
        self.dimension = descriptors.shape[1]

        self._nns = o3c.nns.NearestNeighborSearch(o3c.Tensor(self.descriptors))
        self._nns.knn_index()

    def __len__(self):
        return self.descriptors.shape[0]

    def knn(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        k most similar descriptors for every query row.

        Returns:
            tuple: (indices (M, k), squared distances (M, k)), k clipped to len(self)
        """
        k = min(k, len(self))
        queries = _as_query(queries, self.dimension)
        if queries.shape[0] == 0:
            return np.empty((0, k), dtype=np.int64), np.empty((0, k), dtype=np.float64)
        return _batch_knn(self._nns, queries, k)
