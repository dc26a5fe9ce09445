"""
Exception taxonomy for the registration pipeline.

- InvalidParameterError: bad configuration, raised before any geometric work
- InsufficientDataError: a cloud is too small to sample hypotheses from
- GlobalAlignmentFailure: RANSAC budget exhausted without an accepted pose

An ICP run that hits its iteration ceiling is not an error. It is reported
through AlignmentStatus.REFINEMENT_INCOMPLETE on the result.
"""


class RegistrationError(Exception):
    """Base class for all registration errors."""


class InvalidParameterError(RegistrationError, ValueError):
    """Out-of-domain configuration value (non-positive leaf, zero samples, ...)."""


class InsufficientDataError(RegistrationError):
    """A cloud or feature set has too few points to attempt sampling."""


class GlobalAlignmentFailure(RegistrationError):
    """
    No RANSAC hypothesis reached the required inlier fraction.

    The orchestrator does not raise this itself. It returns an identity
    result with converged=False, and AlignmentResult.raise_for_status()
    turns that into this exception for callers that want hard failures.
    """
