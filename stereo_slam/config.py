#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SLAM Configuration Module
=========================

Handles YAML configuration loading and defines the compiled-in calibration
and sizing constants of the stereo-inertial SLAM filter.

Configuration Structure:
------------------------
The YAML config file contains (every section optional):
- calibration: body-to-camera rotation R_bc (3x3, row-major) and stereo
  intrinsics [f, cx, cy, baseline]
- noise: process noise [accel, gyro, gyro_bias, position] and image noise
  [u, v, disparity]
- initial_uncertainty: initial sigmas [position, attitude, velocity, bias]
- anchors: num_anchors, num_points_per_anchor, num_track_features,
  min_feature_threshold, fix_features, reinit_window_frames,
  max_consecutive_rejections
- gating: chi2_probability, max_innovation_px
- imu: gravity vector, axis_signs for the 9-element inertial vector
- runtime: rng_seed, verbose

Frame Conventions:
------------------
- World Frame: gravity along -Z (default g = [0, 0, -9.81])
- Body Frame: IMU axes after axis_signs have been applied
- Camera Frame: X-right, Y-down, Z-forward (p_c = R_bc @ p_b)
- Quaternion: [w, x, y, z] Hamilton convention, body-to-world

Author: Stereo SLAM project
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Tuple

import numpy as np
import yaml


class ConfigurationError(ValueError):
    """Raised when the filter configuration is invalid; the filter does not start."""


# =============================================================================
# Compiled-in constants
# =============================================================================

NUM_STATES = 12          # Navigation error-state: δp, δθ, δv, δbg
NUM_STATES_XT = 13       # Stored navigation state: p, q, v, bg
NUM_TRACK_FEATURES = 16  # Upper bound on tracked points across all anchors
MIN_FEATURE_THRESHOLD = 2
FIX_FEATURES = False

# Body-to-camera rotation, exported column-major by the calibration toolbox
R_BC = np.array([
    -0.0077, -0.9999, 0.0101,
    0.0087, -0.0101, -0.9999,
    0.9999, -0.0077, 0.0087,
], dtype=np.float64).reshape(3, 3, order="F")

# Stereo intrinsics: [focal length (px), cx (px), cy (px), baseline (m)]
CAMERA_PARAMS = np.array([
    3.839736774809138e+02,
    3.052485794790584e+02,
    3.052485794790584e+02,
    0.029865896166552,
], dtype=np.float64)

# =============================================================================
# Default Configuration Variables (overridden by load_config)
# =============================================================================

NUM_ANCHORS = 32
NUM_POINTS_PER_ANCHOR = 1

# [sigma_accel (m/s^2/sqrt(s)), sigma_gyro (rad/s/sqrt(s)),
#  sigma_gyro_bias (rad/s/sqrt(s)), sigma_position (m/sqrt(s))]
PROCESS_NOISE = (0.5, 0.05, 1e-3, 0.0)

# [sigma_u (px), sigma_v (px), sigma_disparity (px)]
IM_NOISE = (1.0, 1.0, 2.0)

# [position (m), attitude (rad), velocity (m/s), gyro bias (rad/s)]
INITIAL_SIGMAS = (0.01, 0.01, 0.1, 0.01)

GRAVITY = (0.0, 0.0, -9.81)

# Sign applied to each component of [gyro(3), accel(3), mag(3)]
IMU_AXIS_SIGNS = (1.0, -1.0, 1.0, 1.0, -1.0, -1.0, 1.0, 1.0, 1.0)

CHI2_GATE_PROBABILITY = 0.999
MAX_INNOVATION_PX = 80.0
MAX_CONSECUTIVE_REJECTIONS = 3
REINIT_WINDOW_FRAMES = 0

# MT19937 default seed of the original synthetic-noise generator
RNG_SEED = 5489

VERBOSE_DEBUG = False  # Per-frame debug output


def _readonly(values, length: int, name: str) -> np.ndarray:
    arr = np.array(values, dtype=np.float64).reshape(-1)
    if arr.size != length:
        raise ConfigurationError(f"{name} must have {length} elements, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise ConfigurationError(f"{name} contains non-finite values: {arr}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class SLAMConfig:
    """
    Immutable filter configuration.

    Built once before the first frame and read-only afterwards. Array
    fields are stored as read-only numpy arrays.
    """

    R_bc: np.ndarray = field(default_factory=lambda: R_BC.copy())
    camera_params: np.ndarray = field(default_factory=lambda: CAMERA_PARAMS.copy())
    process_noise: np.ndarray = PROCESS_NOISE
    im_noise: np.ndarray = IM_NOISE
    initial_sigmas: np.ndarray = INITIAL_SIGMAS
    gravity: np.ndarray = GRAVITY
    imu_axis_signs: np.ndarray = IMU_AXIS_SIGNS
    num_anchors: int = NUM_ANCHORS
    num_points_per_anchor: int = NUM_POINTS_PER_ANCHOR
    num_track_features: int = NUM_TRACK_FEATURES
    min_feature_threshold: int = MIN_FEATURE_THRESHOLD
    fix_features: bool = FIX_FEATURES
    chi2_gate_probability: float = CHI2_GATE_PROBABILITY
    max_innovation_px: float = MAX_INNOVATION_PX
    max_consecutive_rejections: int = MAX_CONSECUTIVE_REJECTIONS
    reinit_window_frames: int = REINIT_WINDOW_FRAMES
    rng_seed: int = RNG_SEED
    verbose: bool = VERBOSE_DEBUG

    def __post_init__(self):
        if int(self.num_anchors) < 0:
            raise ConfigurationError("Number of anchors may not be negative!")
        if int(self.num_points_per_anchor) < 0:
            raise ConfigurationError("Number of points per anchors may not be negative!")
        if int(self.num_track_features) < 0:
            raise ConfigurationError("Number of tracked features may not be negative!")
        if int(self.min_feature_threshold) < 0:
            raise ConfigurationError("Minimum feature threshold may not be negative!")
        if int(self.max_consecutive_rejections) < 1:
            raise ConfigurationError("max_consecutive_rejections must be at least 1")
        if int(self.reinit_window_frames) < 0:
            raise ConfigurationError("reinit_window_frames may not be negative")
        if not 0.0 < float(self.chi2_gate_probability) < 1.0:
            raise ConfigurationError(
                f"chi2_gate_probability must lie in (0, 1), got {self.chi2_gate_probability}")
        if not float(self.max_innovation_px) > 0.0:
            raise ConfigurationError("max_innovation_px must be positive")

        R_bc = np.array(self.R_bc, dtype=np.float64)
        if R_bc.shape != (3, 3):
            raise ConfigurationError(f"R_bc must be 3x3, got shape {R_bc.shape}")
        if not np.all(np.isfinite(R_bc)) or abs(np.linalg.det(R_bc)) < 1e-6:
            raise ConfigurationError("R_bc must be a finite, invertible rotation")
        R_bc.setflags(write=False)

        camera_params = _readonly(self.camera_params, 4, "camera_params")
        if camera_params[0] <= 0.0 or camera_params[3] <= 0.0:
            raise ConfigurationError("Focal length and stereo baseline must be positive")

        process_noise = _readonly(self.process_noise, 4, "process_noise")
        im_noise = _readonly(self.im_noise, 3, "im_noise")
        initial_sigmas = _readonly(self.initial_sigmas, 4, "initial_sigmas")
        if np.any(process_noise < 0) or np.any(im_noise < 0) or np.any(initial_sigmas < 0):
            raise ConfigurationError("Noise and uncertainty sigmas may not be negative")

        # Frozen dataclass: bypass __setattr__ to store the normalized values
        object.__setattr__(self, "R_bc", R_bc)
        object.__setattr__(self, "camera_params", camera_params)
        object.__setattr__(self, "process_noise", process_noise)
        object.__setattr__(self, "im_noise", im_noise)
        object.__setattr__(self, "initial_sigmas", initial_sigmas)
        object.__setattr__(self, "gravity", _readonly(self.gravity, 3, "gravity"))
        object.__setattr__(self, "imu_axis_signs", _readonly(self.imu_axis_signs, 9, "imu_axis_signs"))
        for name in ("num_anchors", "num_points_per_anchor", "num_track_features",
                     "min_feature_threshold", "max_consecutive_rejections",
                     "reinit_window_frames", "rng_seed"):
            object.__setattr__(self, name, int(getattr(self, name)))
        object.__setattr__(self, "fix_features", bool(self.fix_features))
        object.__setattr__(self, "verbose", bool(self.verbose))

        R_cb = np.linalg.inv(R_bc)
        R_cb.setflags(write=False)
        object.__setattr__(self, "_R_cb", R_cb)

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    @property
    def R_cb(self) -> np.ndarray:
        """Camera-to-body rotation (exact inverse of R_bc)."""
        return self._R_cb

    @property
    def focal_length(self) -> float:
        return float(self.camera_params[0])

    @property
    def principal_point(self) -> Tuple[float, float]:
        return float(self.camera_params[1]), float(self.camera_params[2])

    @property
    def baseline(self) -> float:
        return float(self.camera_params[3])

    @property
    def num_states(self) -> int:
        return NUM_STATES

    @property
    def num_states_xt(self) -> int:
        return NUM_STATES_XT

    @property
    def anchor_state_size(self) -> int:
        """Error-state size of one anchor (3 per tracked point)."""
        return 3 * self.num_points_per_anchor

    @property
    def anchor_block_capacity(self) -> int:
        """Number of anchors that can be Active at the same time."""
        if self.num_points_per_anchor == 0:
            return 0
        return min(self.num_anchors, self.num_track_features // self.num_points_per_anchor)

    @property
    def covariance_dim(self) -> int:
        """Dimension of the (fixed-size) error-state covariance."""
        if self.fix_features:
            return NUM_STATES
        return NUM_STATES + self.anchor_block_capacity * self.anchor_state_size

    @property
    def measurement_noise(self) -> np.ndarray:
        """Per-point measurement noise covariance R (3x3)."""
        return np.diag(np.asarray(self.im_noise) ** 2)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SLAMConfig":
        """
        Build a SLAMConfig from the flat dict returned by load_config().

        Keys are the UPPER_CASE names used by load_config; unknown keys are
        ignored so the same dict can carry runner settings.
        """
        kwargs = {}
        names = {f.name.lower(): f.name for f in fields(cls)}
        for key, value in config.items():
            name = names.get(str(key).lower())
            if name is not None:
                kwargs[name] = value
        return cls(**kwargs)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to the flat key format.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with configuration parameters including:
        - R_BC: 3x3 body-to-camera rotation
        - CAMERA_PARAMS: [f, cx, cy, baseline]
        - PROCESS_NOISE / IM_NOISE / INITIAL_SIGMAS: noise vectors
        - NUM_ANCHORS / NUM_POINTS_PER_ANCHOR / NUM_TRACK_FEATURES
        - MIN_FEATURE_THRESHOLD / FIX_FEATURES
        - CHI2_GATE_PROBABILITY / MAX_INNOVATION_PX
        - GRAVITY / IMU_AXIS_SIGNS / RNG_SEED / VERBOSE

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ConfigurationError: If a section has the wrong type

    Example:
        >>> config = load_config("configs/config_stereo_slam.yaml")
        >>> slam_config = SLAMConfig.from_dict(config)
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path}: top level must be a mapping")

    result = {}

    # ========================================
    # Calibration (compiled-in unless overridden)
    # ========================================
    calib = config.get('calibration', {}) or {}
    result['R_BC'] = np.array(calib.get('R_bc', R_BC), dtype=np.float64)
    result['CAMERA_PARAMS'] = np.array(calib.get('camera_params', CAMERA_PARAMS), dtype=np.float64)

    # ========================================
    # Noise models
    # ========================================
    noise = config.get('noise', {}) or {}
    result['PROCESS_NOISE'] = noise.get('process_noise', list(PROCESS_NOISE))
    result['IM_NOISE'] = noise.get('im_noise', list(IM_NOISE))
    result['INITIAL_SIGMAS'] = (config.get('initial_uncertainty', {}) or {}).get(
        'sigmas', list(INITIAL_SIGMAS))

    # ========================================
    # Anchor capacity and lifecycle
    # ========================================
    anchors = config.get('anchors', {}) or {}
    result['NUM_ANCHORS'] = anchors.get('num_anchors', NUM_ANCHORS)
    result['NUM_POINTS_PER_ANCHOR'] = anchors.get('num_points_per_anchor', NUM_POINTS_PER_ANCHOR)
    result['NUM_TRACK_FEATURES'] = anchors.get('num_track_features', NUM_TRACK_FEATURES)
    result['MIN_FEATURE_THRESHOLD'] = anchors.get('min_feature_threshold', MIN_FEATURE_THRESHOLD)
    result['FIX_FEATURES'] = anchors.get('fix_features', FIX_FEATURES)
    result['REINIT_WINDOW_FRAMES'] = anchors.get('reinit_window_frames', REINIT_WINDOW_FRAMES)
    result['MAX_CONSECUTIVE_REJECTIONS'] = anchors.get(
        'max_consecutive_rejections', MAX_CONSECUTIVE_REJECTIONS)

    # ========================================
    # Outlier gating
    # ========================================
    gating = config.get('gating', {}) or {}
    result['CHI2_GATE_PROBABILITY'] = gating.get('chi2_probability', CHI2_GATE_PROBABILITY)
    result['MAX_INNOVATION_PX'] = gating.get('max_innovation_px', MAX_INNOVATION_PX)

    # ========================================
    # IMU conventions
    # ========================================
    imu = config.get('imu', {}) or {}
    result['GRAVITY'] = imu.get('gravity', list(GRAVITY))
    result['IMU_AXIS_SIGNS'] = imu.get('axis_signs', list(IMU_AXIS_SIGNS))

    runtime = config.get('runtime', {}) or {}
    result['RNG_SEED'] = runtime.get('rng_seed', RNG_SEED)
    result['VERBOSE'] = runtime.get('verbose', VERBOSE_DEBUG)

    return result
