#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Synthetic Stereo Scene Module

Test-harness support: an explicit RNG context and a simulator that
renders known landmarks through the same stereo model the filter uses.
The estimator never draws random numbers itself.

Author: Stereo SLAM project
"""

from typing import Iterator, Optional, Tuple

import numpy as np

from .camera import project_stereo, world_to_camera
from .config import RNG_SEED, SLAMConfig
from .data_loaders import FrameRecord
from .math_utils import IDENTITY_QUAT, quat_to_rot


class RNGContext:
    """
    Seeded random generator owned by whichever component needs synthetic noise.

    Args:
        seed: Seed (default 5489, the MT19937 default seed)
    """

    def __init__(self, seed: int = RNG_SEED):
        self.seed = int(seed)
        self.generator = np.random.default_rng(self.seed)

    def reseed(self, seed: Optional[int] = None) -> None:
        if seed is not None:
            self.seed = int(seed)
        self.generator = np.random.default_rng(self.seed)

    def normal(self, scale=1.0, size=None) -> np.ndarray:
        return self.generator.normal(0.0, scale, size)

    def uniform(self, low=0.0, high=1.0, size=None) -> np.ndarray:
        return self.generator.uniform(low, high, size)


class StereoSceneSimulator:
    """
    Static landmark scene seen by the stereo rig.

    Landmarks are laid out in front of the camera at the rest pose
    (p = 0, q = identity), one group of points per anchor slot.

    Attributes:
        landmarks: (num_anchors, ppa, 3) world-frame points
        magnetic_field: Constant body-frame field reported in the inertial vector
    """

    def __init__(self, config: SLAMConfig, rng: Optional[RNGContext] = None,
                 landmarks_camera: Optional[np.ndarray] = None,
                 depth_range: Tuple[float, float] = (2.0, 6.0)):
        self.config = config
        self.rng = rng if rng is not None else RNGContext(config.rng_seed)
        n, ppa = config.num_anchors, config.num_points_per_anchor

        if landmarks_camera is None:
            landmarks_camera = self._random_camera_points(n, ppa, depth_range)
        landmarks_camera = np.asarray(landmarks_camera, dtype=float).reshape(n, ppa, 3)

        # Rest pose: p_w = R_cb p_c
        self.landmarks = landmarks_camera @ np.asarray(config.R_cb).T
        self.magnetic_field = np.array([0.22, 0.0, -0.41])

    def _random_camera_points(self, n: int, ppa: int, depth_range) -> np.ndarray:
        f = self.config.focal_length
        cx, cy = self.config.principal_point
        depth = self.rng.uniform(depth_range[0], depth_range[1], size=(n, ppa))
        # Keep pixels inside a 2*cx by 2*cy image with a margin
        u = self.rng.uniform(0.2 * cx, 1.8 * cx, size=(n, ppa))
        v = self.rng.uniform(0.2 * cy, 1.8 * cy, size=(n, ppa))
        x = (u - cx) * depth / f
        y = (v - cy) * depth / f
        return np.stack([x, y, depth], axis=-1)

    def static_inertial(self, q: np.ndarray = IDENTITY_QUAT) -> np.ndarray:
        """Noise-free inertial vector at rest: ω = 0, a = -Rᵀ g."""
        R = quat_to_rot(q)
        accel = -R.T @ np.asarray(self.config.gravity)
        return np.concatenate([np.zeros(3), accel, self.magnetic_field])

    def measure(self, position: Optional[np.ndarray] = None, q: Optional[np.ndarray] = None,
                noise_px: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """
        Stereo measurements of every landmark from a pose.

        Returns:
            measurements: (num_anchors, ppa, 3)
            validity: (num_anchors,) False for anchors with any point behind the camera
        """
        position = np.zeros(3) if position is None else np.asarray(position, dtype=float)
        q = IDENTITY_QUAT if q is None else np.asarray(q, dtype=float)
        cfg = self.config
        n, ppa = cfg.num_anchors, cfg.num_points_per_anchor
        z = np.zeros((n, ppa, 3))
        valid = np.ones(n, dtype=bool)
        for i in range(n):
            for j in range(ppa):
                p_c = world_to_camera(self.landmarks[i, j], position, q, cfg.R_bc)
                if p_c[2] <= 0.0:
                    valid[i] = False
                    continue
                z[i, j] = project_stereo(p_c, cfg.camera_params)
        if noise_px > 0.0:
            z = z + self.rng.normal(noise_px, size=z.shape)
        return z, valid

    def static_frames(self, num_frames: int, dt: float = 0.05, noise_px: float = 0.0,
                      imu_noise: float = 0.0) -> Iterator[FrameRecord]:
        """Frames of a rig resting at the origin (first frame has dt = 0)."""
        for k in range(num_frames):
            inertial = self.static_inertial()
            if imu_noise > 0.0:
                inertial = inertial + np.concatenate(
                    [self.rng.normal(imu_noise, size=6), np.zeros(3)])
            z, valid = self.measure(noise_px=noise_px)
            yield FrameRecord(t=k * dt, dt=0.0 if k == 0 else dt, inertial=inertial,
                              measurements=z, validity=valid)
