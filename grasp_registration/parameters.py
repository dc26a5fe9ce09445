"""
Registration parameters.

One immutable record consumed read-only by every pipeline stage. Defaults are
the values the grasping cell was tuned with (1 cm leaf, 50k RANSAC
iterations, 5-point hypotheses).

Reference:
- https://pointclouds.org/documentation/tutorials/alignment_prerejective.html
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidParameterError
from .utils.config import get_registration_config, load_config


# Radius factors relative to the voxel leaf (normal = leaf × 2, FPFH = leaf × 5)
NORMAL_RADIUS_FACTOR = 2.0
FEATURE_RADIUS_FACTOR = 5.0

NORMAL_ORIENTATIONS = ('outward', 'viewpoint', 'none')


@dataclass(frozen=True)
class RegistrationParameters:
    """
    Configuration for downsampling, RANSAC and ICP.

    Attributes:
        leaf: Voxel edge length for scene downsampling
        maximum_iterations_ransac: RANSAC hypothesis budget
        number_of_samples: Points sampled per pose hypothesis
        correspondence_randomness: k nearest features to pick a match from
        similarity_threshold: Minimum edge length ratio (shorter / longer)
            between sampled source and target polygons
        max_correspondence: Inlier distance threshold in units of leaf
        inlier_fraction: Required inlier fraction to accept a hypothesis
        euclidean_epsilon: ICP residual improvement / transform step epsilon
        maximum_iterations_icp: ICP iteration budget
        normal_radius: Normal estimation radius (None = leaf × 2)
        feature_radius: FPFH radius (None = leaf × 5)
        normal_orientation: "outward" (away from the cloud centroid),
            "viewpoint" (towards `viewpoint`) or "none" (solver sign)
        viewpoint: Sensor position used by the "viewpoint" orientation
        num_workers: Worker threads for per-point stages (None = CPU count)
        estimate_model_normals: Estimate model normals when the model has none
    """
    # Downsample
    leaf: float = 0.01
    # RANSAC
    maximum_iterations_ransac: int = 50000
    number_of_samples: int = 5
    correspondence_randomness: int = 5
    similarity_threshold: float = 0.7
    max_correspondence: float = 2.5
    inlier_fraction: float = 0.2
    # ICP
    euclidean_epsilon: float = 2e-8
    maximum_iterations_icp: int = 1000
    # Normals / features
    normal_radius: Optional[float] = None
    feature_radius: Optional[float] = None
    normal_orientation: str = 'outward'
    viewpoint: Optional[Tuple[float, float, float]] = (0.0, 0.0, 0.0)
    num_workers: Optional[int] = None
    estimate_model_normals: bool = True

    def __post_init__(self):
        if self.viewpoint is not None:
            object.__setattr__(self, 'viewpoint', tuple(float(v) for v in self.viewpoint))
        self.validate()

    def validate(self):
        """Raise InvalidParameterError for any out-of-domain value."""
        if not self.leaf > 0:
            raise InvalidParameterError(f"leaf must be > 0, got {self.leaf}")
        if self.maximum_iterations_ransac < 1:
            raise InvalidParameterError(
                f"maximum_iterations_ransac must be >= 1, got {self.maximum_iterations_ransac}")
        if self.number_of_samples < 3:
            raise InvalidParameterError(
                f"number_of_samples must be >= 3 to define a rigid pose, got {self.number_of_samples}")
        if self.correspondence_randomness < 1:
            raise InvalidParameterError(
                f"correspondence_randomness must be >= 1, got {self.correspondence_randomness}")
        if not 0.0 <= self.similarity_threshold < 1.0:
            raise InvalidParameterError(
                f"similarity_threshold must be in [0, 1), got {self.similarity_threshold}")
        if not self.max_correspondence > 0:
            raise InvalidParameterError(
                f"max_correspondence must be > 0, got {self.max_correspondence}")
        if not 0.0 < self.inlier_fraction <= 1.0:
            raise InvalidParameterError(
                f"inlier_fraction must be in (0, 1], got {self.inlier_fraction}")
        if self.euclidean_epsilon < 0:
            raise InvalidParameterError(
                f"euclidean_epsilon must be >= 0, got {self.euclidean_epsilon}")
        if self.maximum_iterations_icp < 1:
            raise InvalidParameterError(
                f"maximum_iterations_icp must be >= 1, got {self.maximum_iterations_icp}")
        for name in ('normal_radius', 'feature_radius'):
            value = getattr(self, name)
            if value is not None and not value > 0:
                raise InvalidParameterError(f"{name} must be > 0, got {value}")
        if self.normal_orientation not in NORMAL_ORIENTATIONS:
            raise InvalidParameterError(
                f"normal_orientation must be one of {NORMAL_ORIENTATIONS}, got {self.normal_orientation!r}")
        if self.normal_orientation == 'viewpoint' and self.viewpoint is None:
            raise InvalidParameterError("normal_orientation 'viewpoint' needs a viewpoint")
        if self.viewpoint is not None and len(self.viewpoint) != 3:
            raise InvalidParameterError(f"viewpoint must have 3 coordinates, got {self.viewpoint}")
        if self.num_workers is not None and self.num_workers < 1:
            raise InvalidParameterError(f"num_workers must be >= 1, got {self.num_workers}")

    # =========================================================================
    # DERIVED VALUES
    # =========================================================================

    @property
    def normal_search_radius(self) -> float:
        if self.normal_radius is not None:
            return self.normal_radius
        return self.leaf * NORMAL_RADIUS_FACTOR

    @property
    def feature_search_radius(self) -> float:
        if self.feature_radius is not None:
            return self.feature_radius
        return self.leaf * FEATURE_RADIUS_FACTOR

    @property
    def inlier_distance(self) -> float:
        """Inlier threshold in scene units (max_correspondence × leaf)."""
        return self.max_correspondence * self.leaf

    def replace(self, **changes) -> 'RegistrationParameters':
        """Return a validated copy with some fields changed."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        if self.viewpoint is not None:
            data['viewpoint'] = list(self.viewpoint)
        return data

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> 'RegistrationParameters':
        """
        Build parameters from a loaded config.yaml.

        Args:
            config: Full config dict (uses its 'registration' section) or
                None for the packaged defaults

        Returns:
            Validated RegistrationParameters
        """
        if config is None:
            config = load_config()

        section = get_registration_config(config)
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise InvalidParameterError(f"Unknown registration parameters: {', '.join(unknown)}")
        return cls(**section)
