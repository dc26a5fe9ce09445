#!/usr/bin/env python3
"""
End-to-end demo on a synthetic scene.

Builds an L-shaped block, moves it by a known pose, adds sensor noise,
runs RANSAC + ICP and compares the estimate with the ground truth.

Usage:
    python -m grasp_registration.trial_run
"""

import numpy as np
from spatialmath import SE3

from .helpers import Open3DViewer, add_noise, computeError, sample_box_surface
from .parameters import RegistrationParameters
from .pose_estimation import do_pose_estimation
from .structures import PointCloud
from .utils.config import load_config


class bcolors:
    OKGREEN = '\033[92m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'


SEED = 7
NOISE_LEVEL = 0.001  # 1mm
SHOW = False

ROT_THRESHOLD = 5.0  # deg
POS_THRESHOLD = 5.0  # mm


def make_l_block(rng, n_points=4000):
    """Two glued boxes (20x4x4 cm and 4x12x4 cm) forming an L."""
    long_part = sample_box_surface((0.20, 0.04, 0.04), n_points // 2, rng, offset=(0.0, 0.0, 0.0))
    short_part = sample_box_surface((0.04, 0.12, 0.04), n_points // 2, rng, offset=(-0.08, 0.08, 0.0))
    return PointCloud(np.vstack([long_part.points, short_part.points]))


def main():
    rng = np.random.default_rng(SEED)

    print(f"\n------------------------------------------------------------")
    print(f"POSE ESTIMATION - synthetic L block, Noise {NOISE_LEVEL}")
    print(f"------------------------------------------------------------")

    # =========================================================================
    # STEP 1: Build data
    # =========================================================================
    print(f"\n[1/3] Building data...")

    model = make_l_block(rng)
    ground_truth = (SE3(0.1, 0.05, 0.6) * SE3.Rz(30, unit='deg') * SE3.Rx(15, unit='deg')).A
    scene = add_noise(model.transform(ground_truth), 0.0, NOISE_LEVEL, rng)
    print(f"  Model: {len(model)} pts, Scene: {len(scene)} pts")

    config = load_config()
    params = RegistrationParameters.from_config(config).replace(
        leaf=0.005, maximum_iterations_ransac=20000, number_of_samples=3)

    # =========================================================================
    # STEP 2: Pose estimation
    # =========================================================================
    print(f"\n[2/3] Running pose estimation...")

    observers = [Open3DViewer("Final alignment")] if SHOW else []
    result = do_pose_estimation(scene, model, params, rng=rng, observers=observers)

    # =========================================================================
    # STEP 3: Evaluate
    # =========================================================================
    print(f"\n[3/3] Evaluating...")

    if result.failed:
        print(f"\n{bcolors.FAIL}Result: FAIL (global alignment did not converge){bcolors.ENDC}")
        return 1

    error_angle, error_pos = computeError(ground_truth, result.transformation, position_scale=1000.0)

    if error_angle <= ROT_THRESHOLD and error_pos <= POS_THRESHOLD:
        color = bcolors.OKGREEN
        outcome = "PASS"
    else:
        color = bcolors.FAIL
        outcome = "FAIL"

    print(f"\n{color}Result: {outcome} ({result.status.name}){bcolors.ENDC}")
    print(f"  Rotation: {error_angle:.3f} / {ROT_THRESHOLD} deg")
    print(f"  Position: {error_pos:.3f} / {POS_THRESHOLD} mm")
    return 0 if outcome == "PASS" else 1


if __name__ == "__main__":
    raise SystemExit(main())
