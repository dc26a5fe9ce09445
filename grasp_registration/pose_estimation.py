"""
Model-to-scene pose estimation: RANSAC (global) + ICP (local refinement).

Pipeline:
    INIT -> DOWNSAMPLING -> NORMAL_ESTIMATION -> FEATURE_ESTIMATION
         -> GLOBAL_ALIGNMENT -> FAILED | LOCAL_REFINEMENT -> DONE

- Only the scene is downsampled. The model is used at its own resolution.
- FAILED is terminal: the identity pose is returned with converged=False
  and ICP is not run on an unreliable seed.
- DONE composes refinement @ global so the final matrix maps original
  model points straight into scene space.

The caller's clouds are never modified. Observers (e.g. a viewer) are only
called once the result is final.

Reference:
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html#Global-registration
- https://pointclouds.org/documentation/tutorials/alignment_prerejective.html
"""

from enum import Enum
from typing import Dict, List, Optional, Protocol

import numpy as np

from .errors import InsufficientDataError
from .features import compute_fpfh
from .global_registration import GlobalAligner
from .local_refinement import LocalRefiner
from .parameters import RegistrationParameters
from .preprocessing import downsample, estimate_normals
from .spatial_index import SpatialIndex
from .structures import AlignmentResult, AlignmentStatus, PointCloud, compose_poses
from .utils.logger import ProjectLogger, stage_timer


class RegistrationStage(Enum):
    INIT = 'init'
    DOWNSAMPLING = 'downsampling'
    NORMAL_ESTIMATION = 'normal_estimation'
    FEATURE_ESTIMATION = 'feature_estimation'
    GLOBAL_ALIGNMENT = 'global_alignment'
    LOCAL_REFINEMENT = 'local_refinement'
    FAILED = 'failed'
    DONE = 'done'


class RegistrationObserver(Protocol):
    """Receives the finished result, e.g. to display it. Never alters it."""

    def on_result(self, model: PointCloud, scene: PointCloud, result: AlignmentResult) -> None:
        ...


class RegistrationOrchestrator:
    """
    Runs the full registration pipeline for one model / scene pair per call.

    One orchestrator owns its random generator and stage state. Use one
    instance per thread when registering in parallel.

    Example:
        orchestrator = RegistrationOrchestrator(RegistrationParameters(leaf=0.005), rng=42)
        result = orchestrator.register(model, scene)
        if result.converged:
            grasp_in_scene = result.map_points(grasp_points)
    """

    def __init__(self, params: Optional[RegistrationParameters] = None, rng=None,
                 observers: Optional[List[RegistrationObserver]] = None,
                 logger: Optional[ProjectLogger] = None):
        self.params = params or RegistrationParameters.from_config()
        self.rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        self.observers = list(observers or [])
        self.logger = logger or ProjectLogger.get_instance()
        self.stage = RegistrationStage.INIT

    def add_observer(self, observer: RegistrationObserver):
        self.observers.append(observer)

    def _enter(self, stage: RegistrationStage, details: Optional[Dict] = None):
        self.stage = stage
        self.logger.log_stage_start(stage.value, details)

    def _require_points(self, name: str, count: int):
        needed = self.params.number_of_samples
        if count < needed:
            raise InsufficientDataError(f"{name} has {count} points, need at least {needed}")

    def _notify(self, model: PointCloud, scene: PointCloud, result: AlignmentResult):
        for observer in self.observers:
            observer.on_result(model, scene, result)

    def register(self, model: PointCloud, scene: PointCloud) -> AlignmentResult:
        """
        Estimate the pose of `model` in `scene`.

        Args:
            model: Object model (with or without normals)
            scene: Observed scene region

        Returns:
            AlignmentResult; check `converged` / `status` before use

        Raises:
            InsufficientDataError: a cloud is too small to sample from, or the
                model has no normals and estimate_model_normals is off
            InvalidParameterError: out-of-domain radius or leaf
        """
        p = self.params
        timings: Dict[str, float] = {}
        self.stage = RegistrationStage.INIT
        self._require_points("Model", len(model))
        self._require_points("Scene", len(scene))

        # ======================================================================
        # STEP 1: Voxel downsample (scene)
        # ======================================================================
        self._enter(RegistrationStage.DOWNSAMPLING, {'leaf': p.leaf})
        with stage_timer('downsample', timings, self.logger):
            scene_down = downsample(scene, p.leaf)
        self.logger.debug(f"    Scene: {len(scene)} -> {len(scene_down)} pts")
        self._require_points("Downsampled scene", len(scene_down))

        # ======================================================================
        # STEP 2: Normals (scene, and model if it has none)
        # ======================================================================
        self._enter(RegistrationStage.NORMAL_ESTIMATION, {'radius': p.normal_search_radius})
        with stage_timer('normals', timings, self.logger):
            scene_index = SpatialIndex(scene_down.points)
            scene_down = estimate_normals(scene_down, p.normal_search_radius, p.viewpoint, p.num_workers,
                                          index=scene_index, orientation=p.normal_orientation)
            model_index = None
            if not model.has_normals:
                if not p.estimate_model_normals:
                    raise InsufficientDataError("Model has no normals and estimate_model_normals is off")
                model_index = SpatialIndex(model.points)
                model = estimate_normals(model, p.normal_search_radius, p.viewpoint, p.num_workers,
                                         index=model_index, orientation=p.normal_orientation)
        self.logger.debug(f"    Scene normals: {int(scene_down.normal_mask.sum())}/{len(scene_down)}")

        # ======================================================================
        # STEP 3: FPFH features
        # ======================================================================
        self._enter(RegistrationStage.FEATURE_ESTIMATION, {'radius': p.feature_search_radius})
        with stage_timer('features', timings, self.logger):
            model_features = compute_fpfh(model, p.feature_search_radius, p.num_workers, index=model_index)
            scene_features = compute_fpfh(scene_down, p.feature_search_radius, p.num_workers, index=scene_index)
        self.logger.debug(f"    Descriptors: model={len(model_features)}, scene={len(scene_features)}")
        self._require_points("Model feature set", len(model_features))
        self._require_points("Scene feature set", len(scene_features))

        # ======================================================================
        # STEP 4: RANSAC
        # ======================================================================
        self._enter(RegistrationStage.GLOBAL_ALIGNMENT, {
            'iterations': p.maximum_iterations_ransac,
            'samples': p.number_of_samples,
            'inlier_distance': p.inlier_distance,
        })
        aligner = GlobalAligner(p, rng=self.rng, logger=self.logger)
        with stage_timer('ransac', timings, self.logger):
            coarse = aligner.align(model_features, scene_features)

        if not coarse.converged:
            self.stage = RegistrationStage.FAILED
            result = AlignmentResult.failure(coarse.inlier_fraction, coarse.iterations, timings)
            self.logger.log_registration_result(result)
            self._notify(model, scene, result)
            return result
        self.logger.log_transform("RANSAC transformation", coarse.transformation)

        # ======================================================================
        # STEP 5: ICP on the globally aligned model
        # ======================================================================
        self._enter(RegistrationStage.LOCAL_REFINEMENT, {'epsilon': p.euclidean_epsilon})
        refiner = LocalRefiner(p, logger=self.logger)
        with stage_timer('icp', timings, self.logger):
            fine = refiner.refine(coarse.aligned_source, scene_down)
        self.logger.log_transform("ICP transformation", fine.transformation)

        transformation = compose_poses(fine.transformation, coarse.transformation)
        status = AlignmentStatus.CONVERGED if fine.converged else AlignmentStatus.REFINEMENT_INCOMPLETE

        result = AlignmentResult(
            transformation=transformation,
            converged=fine.converged,
            fitness=fine.fitness,
            status=status,
            global_transformation=coarse.transformation,
            refinement_transformation=fine.transformation,
            inlier_fraction=coarse.inlier_fraction,
            ransac_iterations=coarse.iterations,
            icp_iterations=fine.iterations,
            aligned_model=model.transform(transformation),
            timings=timings,
        )
        self.stage = RegistrationStage.DONE
        self.logger.log_registration_result(result)
        self._notify(model, scene, result)
        return result


def do_pose_estimation(scene: PointCloud, model: PointCloud,
                       params: Optional[RegistrationParameters] = None, rng=None,
                       observers: Optional[List[RegistrationObserver]] = None) -> AlignmentResult:
    """
    One-shot registration of `model` into `scene`.

    Returns:
        AlignmentResult (4x4 model->scene pose, convergence flag, fitness)
    """
    return RegistrationOrchestrator(params, rng=rng, observers=observers).register(model, scene)
