"""
Fast Point Feature Histograms (FPFH).

For every point with a normal:
1. SPFH: for each neighbour inside the radius, build the Darboux frame of the
   pair and bin the three angle features (f1, f2, f3) into 11 bins each.
   Each sub-histogram is normalised to sum to 100.
2. FPFH: own SPFH plus the inverse-squared-distance weighted sum of the
   neighbours' SPFH (re-normalised to 100 per sub-histogram).

The result has 33 values per point and every sub-histogram sums to 200
(all zeros for a point without described neighbours).

Reference:
- Rusu et al. 2009 "Fast Point Feature Histograms (FPFH) for 3D Registration"
- https://pointclouds.org/documentation/tutorials/fpfh_estimation.html
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html#Extract-geometric-feature
"""

from typing import Optional

import numpy as np

from .errors import InvalidParameterError
from .spatial_index import SpatialIndex
from .structures import FeatureSet, PointCloud
from .utils.parallel import parallel_for_chunks

FPFH_BINS = 11
FPFH_DIMENSION = 3 * FPFH_BINS
HISTOGRAM_SCALE = 100.0


def compute_pair_features(p1: np.ndarray, n1: np.ndarray, p2: np.ndarray, n2: np.ndarray):
    """
    Darboux-frame angle features between one point and K neighbours.

    Args:
        p1, n1: Source point and its normal, shape (3,)
        p2, n2: Neighbour points and normals, shape (K, 3)

    Returns:
        tuple: (f1, f2, f3, valid) each of shape (K,). f1 is the angle in
        [-pi, pi], f2 and f3 are cosines in [-1, 1]. Pairs with coincident
        points or a degenerate frame are marked invalid.
    """
    dp = p2 - p1
    f4 = np.linalg.norm(dp, axis=1)
    valid = f4 > 0.0
    safe_f4 = np.where(valid, f4, 1.0)

    angle1 = dp @ n1 / safe_f4
    angle2 = np.einsum('ij,ij->i', n2, dp) / safe_f4

    # Use the point whose normal makes the smaller angle with the line as source
    swap = np.abs(angle1) < np.abs(angle2)
    source_n = np.where(swap[:, None], n2, n1)
    target_n = np.where(swap[:, None], n1, n2)
    dp = np.where(swap[:, None], -dp, dp)
    f3 = np.where(swap, -angle2, angle1)

    v = np.cross(dp, source_n)
    v_norm = np.linalg.norm(v, axis=1)
    valid &= v_norm > 0.0
    v = v / np.where(v_norm > 0.0, v_norm, 1.0)[:, None]
    w = np.cross(source_n, v)

    f2 = np.einsum('ij,ij->i', v, target_n)
    f1 = np.arctan2(np.einsum('ij,ij->i', w, target_n), np.einsum('ij,ij->i', source_n, target_n))
    return f1, f2, f3, valid


def _bin(values: np.ndarray, low: float, high: float) -> np.ndarray:
    bins = np.floor(FPFH_BINS * (values - low) / (high - low)).astype(np.int64)
    return np.clip(bins, 0, FPFH_BINS - 1)


def _spfh(p: np.ndarray, n: np.ndarray, neighbor_points: np.ndarray, neighbor_normals: np.ndarray) -> np.ndarray:
    """Simplified point feature histogram of one point (33 values)."""
    histogram = np.zeros(FPFH_DIMENSION)
    if neighbor_points.shape[0] == 0:
        return histogram

    f1, f2, f3, valid = compute_pair_features(p, n, neighbor_points, neighbor_normals)
    count = int(valid.sum())
    if count == 0:
        return histogram

    increment = HISTOGRAM_SCALE / count
    histogram[:FPFH_BINS] = np.bincount(_bin(f1[valid], -np.pi, np.pi), minlength=FPFH_BINS) * increment
    histogram[FPFH_BINS:2 * FPFH_BINS] = np.bincount(_bin(f2[valid], -1.0, 1.0), minlength=FPFH_BINS) * increment
    histogram[2 * FPFH_BINS:] = np.bincount(_bin(f3[valid], -1.0, 1.0), minlength=FPFH_BINS) * increment
    return histogram


def compute_fpfh(cloud: PointCloud, radius: float, num_workers: Optional[int] = None,
                 index: Optional[SpatialIndex] = None) -> FeatureSet:
    """
    Compute FPFH descriptors for every point that has a normal.

    Points without a normal get no descriptor and are not used as neighbours.
    The returned FeatureSet records which cloud indices were described.

    Args:
        cloud: Cloud with normals
        radius: Neighbourhood radius (typically 5 x voxel leaf)
        num_workers: Worker threads (None = CPU count)
        index: Prebuilt SpatialIndex over cloud.points

    Returns:
        FeatureSet with (M, 33) descriptors, M = number of points with normals
    """
    if not radius > 0:
        raise InvalidParameterError(f"Feature radius must be > 0, got {radius}")
    if not cloud.has_normals:
        raise InvalidParameterError("FPFH needs normals, run estimate_normals first")

    mask = cloud.normal_mask
    described = np.flatnonzero(mask)
    m = described.shape[0]
    if m == 0:
        return FeatureSet(cloud, np.zeros((0, FPFH_DIMENSION)), described)

    points = cloud.points
    normals = cloud.normals
    if index is None:
        index = SpatialIndex(points)

    # Slots indexed by position in `described`, filled by disjoint chunks
    neighbor_lists = [None] * m
    neighbor_sq_dists = [None] * m
    spfh = np.zeros((m, FPFH_DIMENSION))

    def spfh_worker(start, stop):
        for row in range(start, stop):
            i = described[row]
            idx, sq_dists = index.radius_search(points[i], radius)
            keep = (idx != i) & mask[idx]
            idx, sq_dists = idx[keep], sq_dists[keep]
            neighbor_lists[row] = idx
            neighbor_sq_dists[row] = sq_dists
            spfh[row] = _spfh(points[i], normals[i], points[idx], normals[idx])

    parallel_for_chunks(m, spfh_worker, num_workers)

    # Cloud index -> row in the spfh table
    row_of = np.full(len(cloud), -1, dtype=np.int64)
    row_of[described] = np.arange(m)
    descriptors = np.zeros((m, FPFH_DIMENSION))

    def fpfh_worker(start, stop):
        for row in range(start, stop):
            idx = neighbor_lists[row]
            sq_dists = neighbor_sq_dists[row]
            nonzero = sq_dists > 0.0
            histogram = spfh[row].copy()
            if np.any(nonzero):
                weights = 1.0 / sq_dists[nonzero]
                weighted = weights @ spfh[row_of[idx[nonzero]]]
                for block in range(3):
                    part = weighted[block * FPFH_BINS:(block + 1) * FPFH_BINS]
                    total = part.sum()
                    if total > 0.0:
                        histogram[block * FPFH_BINS:(block + 1) * FPFH_BINS] += part * (HISTOGRAM_SCALE / total)
            descriptors[row] = histogram

    parallel_for_chunks(m, fpfh_worker, num_workers)
    return FeatureSet(cloud, descriptors, described)
