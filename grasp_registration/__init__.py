"""
Rigid model-to-scene registration for point clouds.

Voxel downsampling, normal and FPFH estimation, prerejective RANSAC and
point-to-point ICP, wrapped by RegistrationOrchestrator / do_pose_estimation.
"""
from .errors import (
    RegistrationError,
    InvalidParameterError,
    InsufficientDataError,
    GlobalAlignmentFailure,
)
from .parameters import RegistrationParameters
from .structures import (
    PointCloud,
    FeatureSet,
    AlignmentResult,
    AlignmentStatus,
    make_pose,
    invert_pose,
    compose_poses,
    transform_points,
)
from .spatial_index import (
    SpatialIndex,
    FeatureIndex,
)
from .preprocessing import (
    downsample,
    estimate_normals,
)
from .features import compute_fpfh
from .global_registration import (
    GlobalAligner,
    GlobalAlignmentResult,
)
from .local_refinement import (
    LocalRefiner,
    RefinementResult,
)
from .pose_estimation import (
    RegistrationOrchestrator,
    RegistrationObserver,
    RegistrationStage,
    do_pose_estimation,
)

__version__ = "0.1.0"
