#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stereo Camera Model Module

Rectified pinhole stereo pair: projection of world points into
[u, v, disparity] measurements, triangulation of measurements back into
world points, and the Jacobians of both mappings.

Measurement model for a point p_c = [x, y, z] in the left camera frame:
    u = f * x / z + cx
    v = f * y / z + cy
    d = f * b / z          (disparity, u_left - u_right)

Author: Stereo SLAM project
"""

from typing import Tuple

import numpy as np

from .math_utils import quat_to_rot, skew_symmetric


def world_to_camera(p_w: np.ndarray, position: np.ndarray, q: np.ndarray,
                    R_bc: np.ndarray) -> np.ndarray:
    """
    Transform a world point into the camera frame.

    Args:
        p_w: 3D point in world frame
        position: Body position in world frame
        q: Body-to-world quaternion [w, x, y, z]
        R_bc: Body-to-camera rotation

    Returns:
        3D point in camera frame
    """
    R_wb = quat_to_rot(q)
    return R_bc @ (R_wb.T @ (np.asarray(p_w, dtype=float) - position))


def project_stereo(p_c: np.ndarray, camera_params: np.ndarray) -> np.ndarray:
    """
    Project a camera-frame point to a stereo measurement [u, v, d].

    The caller is responsible for checking that p_c[2] > 0.
    """
    f, cx, cy, b = camera_params
    x, y, z = p_c
    return np.array([f * x / z + cx, f * y / z + cy, f * b / z])


def stereo_projection_jacobian(p_c: np.ndarray, camera_params: np.ndarray) -> np.ndarray:
    """
    Jacobian of project_stereo with respect to the camera-frame point.

    Returns:
        3x3 matrix d[u, v, d] / d[x, y, z]
    """
    f, _, _, b = camera_params
    x, y, z = p_c
    inv_z = 1.0 / z
    inv_z2 = inv_z * inv_z
    return np.array([
        [f * inv_z, 0.0, -f * x * inv_z2],
        [0.0, f * inv_z, -f * y * inv_z2],
        [0.0, 0.0, -f * b * inv_z2],
    ])


def triangulate_stereo(z: np.ndarray, camera_params: np.ndarray) -> np.ndarray:
    """
    Triangulate a stereo measurement [u, v, d] into a camera-frame point.

    The caller is responsible for checking that the disparity is positive.
    """
    f, cx, cy, b = camera_params
    u, v, d = z
    depth = f * b / d
    return np.array([(u - cx) * depth / f, (v - cy) * depth / f, depth])


def triangulation_jacobian(z: np.ndarray, camera_params: np.ndarray) -> np.ndarray:
    """
    Jacobian of triangulate_stereo with respect to the measurement.

    Returns:
        3x3 matrix d[x, y, z] / d[u, v, d]
    """
    f, cx, cy, b = camera_params
    u, v, d = z
    inv_d = 1.0 / d
    inv_d2 = inv_d * inv_d
    return np.array([
        [b * inv_d, 0.0, -(u - cx) * b * inv_d2],
        [0.0, b * inv_d, -(v - cy) * b * inv_d2],
        [0.0, 0.0, -f * b * inv_d2],
    ])


def predict_measurement(p_w: np.ndarray, position: np.ndarray, q: np.ndarray,
                        R_bc: np.ndarray, camera_params: np.ndarray
                        ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float]:
    """
    Expected stereo measurement of a world point and its Jacobians.

    Error-state conventions: δp additive, δθ right-multiplicative
    (R_true = R @ Exp(δθ)), landmark error additive in world frame.

    Args:
        p_w: Anchor point in world frame
        position: Body position in world frame
        q: Body-to-world quaternion [w, x, y, z]
        R_bc: Body-to-camera rotation
        camera_params: [f, cx, cy, baseline]

    Returns:
        z_hat: Expected measurement [u, v, d] (zeros if behind the camera)
        H_nav: 3x6 Jacobian w.r.t. [δp, δθ]
        H_point: 3x3 Jacobian w.r.t. the anchor point
        depth: Camera-frame depth of the point (<= 0 means behind the camera)
    """
    R_wb = quat_to_rot(q)
    p_b = R_wb.T @ (np.asarray(p_w, dtype=float) - position)
    p_c = R_bc @ p_b
    depth = float(p_c[2])

    if depth <= 0.0:
        return np.zeros(3), np.zeros((3, 6)), np.zeros((3, 3)), depth

    j_proj = stereo_projection_jacobian(p_c, camera_params)

    H_nav = np.zeros((3, 6))
    H_nav[:, 0:3] = j_proj @ (-R_bc @ R_wb.T)
    H_nav[:, 3:6] = j_proj @ (R_bc @ skew_symmetric(p_b))
    H_point = j_proj @ (R_bc @ R_wb.T)

    return project_stereo(p_c, camera_params), H_nav, H_point, depth


def triangulate_to_world(z: np.ndarray, position: np.ndarray, q: np.ndarray,
                         R_cb: np.ndarray, camera_params: np.ndarray
                         ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Triangulate a stereo measurement into a world point with Jacobians.

    Args:
        z: Stereo measurement [u, v, d] with d > 0
        position: Body position in world frame
        q: Body-to-world quaternion [w, x, y, z]
        R_cb: Camera-to-body rotation (inverse of R_bc)
        camera_params: [f, cx, cy, baseline]

    Returns:
        p_w: 3D point in world frame
        J_nav: 3x6 Jacobian w.r.t. [δp, δθ]
        J_z: 3x3 Jacobian w.r.t. the measurement
    """
    R_wb = quat_to_rot(q)
    p_c = triangulate_stereo(z, camera_params)
    p_b = R_cb @ p_c
    p_w = position + R_wb @ p_b

    J_nav = np.zeros((3, 6))
    J_nav[:, 0:3] = np.eye(3)
    J_nav[:, 3:6] = -R_wb @ skew_symmetric(p_b)
    J_z = R_wb @ R_cb @ triangulation_jacobian(z, camera_params)

    return p_w, J_nav, J_z
