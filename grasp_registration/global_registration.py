"""
Global pose search: sample consensus with geometric prerejection.

Each iteration:
1. Sample number_of_samples distinct source points that have descriptors
2. For each, pick one of its correspondence_randomness nearest target
   features at random
3. Prerejection: every pairwise edge length among the sampled source points
   must match the corresponding target edge (shorter / longer >=
   similarity_threshold), otherwise the hypothesis is dropped before any
   pose is computed
4. Closed-form rigid transform from the sampled correspondences
5. Inliers = source points whose nearest target point lies within the
   inlier distance after the transform
6. Keep the hypothesis with the most inliers (lower MSE breaks ties)

Converged means at least one hypothesis reached inlier_fraction.

Reference:
- Buch et al. 2013 "Pose Estimation using Local Structure-Specific Shape and Appearance Context"
- https://pointclouds.org/documentation/tutorials/alignment_prerejective.html
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .errors import InsufficientDataError
from .local_refinement import estimate_rigid_transform
from .parameters import RegistrationParameters
from .spatial_index import FeatureIndex, SpatialIndex
from .structures import FeatureSet, PointCloud, transform_points
from .utils.logger import ProjectLogger


@dataclass
class GlobalAlignmentResult:
    """
    Outcome of the RANSAC stage.

    On non-convergence `transformation` is the identity and
    `aligned_source` is None.
    """
    transformation: np.ndarray
    converged: bool
    inlier_fraction: float
    inlier_count: int
    fitness: float
    iterations: int
    hypotheses_evaluated: int
    aligned_source: Optional[PointCloud] = None


def edge_lengths(points: np.ndarray) -> np.ndarray:
    """All pairwise distances among the rows of `points` (upper triangle, flat)."""
    i, j = np.triu_indices(points.shape[0], k=1)
    return np.linalg.norm(points[i] - points[j], axis=1)


def passes_prerejection(source_points: np.ndarray, target_points: np.ndarray,
                        similarity_threshold: float) -> bool:
    """
    Polygon edge length check between sampled source and matched target points.

    Every edge ratio min(ls, lt) / max(ls, lt) must be >= similarity_threshold.
    Degenerate edges (zero length) fail.
    """
    ls = edge_lengths(source_points)
    lt = edge_lengths(target_points)
    longer = np.maximum(ls, lt)
    if np.any(longer <= 0.0):
        return False
    return bool(np.all(np.minimum(ls, lt) / longer >= similarity_threshold))


class GlobalAligner:
    """
    Prerejective RANSAC aligner (model -> scene).

    The random source is injected. Pass a seeded numpy Generator (or an
    int seed) to reproduce a hypothesis sequence.
    """

    def __init__(self, params: Optional[RegistrationParameters] = None,
                 rng=None, logger: Optional[ProjectLogger] = None):
        self.params = params or RegistrationParameters()
        self.rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        self.logger = logger or ProjectLogger.get_instance()

    def _check_data(self, source: FeatureSet, target: FeatureSet):
        n_samples = self.params.number_of_samples
        if len(source) < n_samples:
            raise InsufficientDataError(
                f"Source has {len(source)} described points, need at least {n_samples}")
        if len(target) < n_samples:
            raise InsufficientDataError(
                f"Target has {len(target)} described points, need at least {n_samples}")
        if source.dimension != target.dimension:
            raise ValueError(f"Descriptor size mismatch: {source.dimension} vs {target.dimension}")

    def align(self, source: FeatureSet, target: FeatureSet) -> GlobalAlignmentResult:
        """
        Search a pose that maps source.cloud onto target.cloud.

        Args:
            source: Model features (with their cloud)
            target: Scene features (with their cloud)

        Returns:
            GlobalAlignmentResult
        """
        self._check_data(source, target)
        p = self.params
        rng = self.rng

        source_all = source.cloud.points
        source_described = source.points
        target_described = target.points
        n_source = source_all.shape[0]

        # Candidate target matches for every described source point
        feature_index = FeatureIndex(target.descriptors)
        candidates, _ = feature_index.knn(source.descriptors, p.correspondence_randomness)
        k = candidates.shape[1]

        target_index = SpatialIndex(target.cloud.points)
        max_sq_dist = p.inlier_distance ** 2
        required_inliers = p.inlier_fraction * n_source

        best_T = np.eye(4)
        best_inliers = -1
        best_mse = np.inf
        converged = False
        evaluated = 0
        iterations = 0

        for iterations in range(1, p.maximum_iterations_ransac + 1):
            samples = rng.choice(len(source), size=p.number_of_samples, replace=False)
            picks = rng.integers(0, k, size=p.number_of_samples)
            matches = candidates[samples, picks]

            src = source_described[samples]
            tgt = target_described[matches]
            if not passes_prerejection(src, tgt, p.similarity_threshold):
                continue

            T = estimate_rigid_transform(src, tgt)
            evaluated += 1

            _, sq_dists = target_index.nearest(transform_points(source_all, T))
            inlier_mask = sq_dists < max_sq_dist
            inlier_count = int(inlier_mask.sum())
            if inlier_count == 0:
                continue
            mse = float(sq_dists[inlier_mask].mean())

            if inlier_count > best_inliers or (inlier_count == best_inliers and mse < best_mse):
                best_T, best_inliers, best_mse = T, inlier_count, mse
                if inlier_count >= required_inliers:
                    converged = True
                if self.logger.debug_enabled:
                    self.logger.debug(f"RANSAC iter {iterations}: inliers={inlier_count}/{n_source}, mse={mse:.3e}")

            # Every source point is an inlier, nothing left to improve
            if best_inliers == n_source and converged:
                break

        fraction = max(best_inliers, 0) / n_source
        self.logger.info(f"RANSAC: {iterations} iterations, {evaluated} hypotheses survived prerejection, "
                         f"best inlier fraction {fraction:.3f}")

        if not converged:
            return GlobalAlignmentResult(
                transformation=np.eye(4),
                converged=False,
                inlier_fraction=fraction,
                inlier_count=max(best_inliers, 0),
                fitness=best_mse,
                iterations=iterations,
                hypotheses_evaluated=evaluated,
            )

        return GlobalAlignmentResult(
            transformation=best_T,
            converged=True,
            inlier_fraction=fraction,
            inlier_count=best_inliers,
            fitness=best_mse,
            iterations=iterations,
            hypotheses_evaluated=evaluated,
            aligned_source=source.cloud.transform(best_T),
        )
