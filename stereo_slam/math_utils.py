#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SLAM Math Utilities Module
==========================

Contains quaternion operations, rotation matrices, and mathematical helpers
for the stereo-inertial filter.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering:
- w is the scalar (real) part
- [x, y, z] is the vector (imaginary) part
- q = w + xi + yj + zk

The navigation quaternion maps body-frame vectors into the world frame:
    v_world = R(q) @ v_body

Attitude errors are right-multiplicative rotation vectors:
    q_true = q ⊗ Exp(δθ)

Key Operations:
---------------
- quat_multiply: Hamilton quaternion product
- quat_normalize: Ensure unit quaternion
- quat_to_rot: Convert to 3x3 rotation matrix
- small_angle_quat: Rotation vector to quaternion (exponential map)
- quat_boxplus: Quaternion ⊞ rotation vector (perturbation)
- skew_symmetric: Create 3x3 skew-symmetric matrix for cross product

Author: Stereo SLAM project
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


IDENTITY_QUAT = np.array([1.0, 0.0, 0.0, 0.0])


# =============================================================================
# Quaternion Operations (all use [w, x, y, z] Hamilton convention)
# =============================================================================

def quat_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """
    Quaternion multiplication: q1 ⊗ q2, both in [w,x,y,z] format.

    q1 ⊗ q2 represents rotation q2 followed by rotation q1.

    Args:
        q1: First quaternion [w, x, y, z]
        q2: Second quaternion [w, x, y, z]

    Returns:
        Product quaternion [w, x, y, z]
    """
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2
    ])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """
    Normalize quaternion to unit length.

    Degenerate (near-zero) quaternions fall back to identity; callers that
    must treat a zero norm as a failure check the norm themselves.
    """
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return IDENTITY_QUAT.copy()
    return q / norm


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = q
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


def small_angle_quat(dtheta: np.ndarray) -> np.ndarray:
    """
    Convert rotation vector (3D) to quaternion.
    For small angles: q ≈ [1, θx/2, θy/2, θz/2]
    Uses exact formula otherwise.
    """
    theta = np.linalg.norm(dtheta)
    if theta < 1e-8:
        return quat_normalize(np.array([1.0, dtheta[0]/2, dtheta[1]/2, dtheta[2]/2]))
    half_theta = theta / 2
    axis = dtheta / theta
    return np.array([
        np.cos(half_theta),
        np.sin(half_theta) * axis[0],
        np.sin(half_theta) * axis[1],
        np.sin(half_theta) * axis[2]
    ])


def rotvec_to_rot(dtheta: np.ndarray) -> np.ndarray:
    """Exponential map from rotation vector to rotation matrix: Exp(δθ)."""
    return R_scipy.from_rotvec(np.asarray(dtheta, dtype=float)).as_matrix()


def quat_boxplus(q: np.ndarray, dtheta: np.ndarray) -> np.ndarray:
    """
    Quaternion box-plus operation (manifold update).
    q_new = q ⊕ δθ = q ⊗ exp(δθ)
    """
    dq = small_angle_quat(dtheta)
    return quat_normalize(quat_multiply(q, dq))


# =============================================================================
# Matrix Operations
# =============================================================================

def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Create skew-symmetric matrix from 3D vector.
    [v]× such that [v]× @ u = v × u (cross product)

    [v]× = [ 0   -vz   vy ]
           [ vz   0   -vx ]
           [-vy   vx   0  ]
    """
    return np.array([
        [0,      -v[2],  v[1]],
        [v[2],    0,    -v[0]],
        [-v[1],   v[0],   0   ]
    ], dtype=float)


# =============================================================================
# Mahalanobis Distance
# =============================================================================

def mahalanobis_squared(y: np.ndarray, S: np.ndarray) -> float:
    """
    Compute squared Mahalanobis distance: d² = y^T @ S^{-1} @ y
    Uses Cholesky decomposition for numerical stability.

    Args:
        y: Innovation vector
        S: Innovation covariance matrix

    Returns:
        Squared Mahalanobis distance
    """
    y = np.asarray(y, dtype=float).reshape(-1)
    try:
        L = np.linalg.cholesky(S)
        z = np.linalg.solve(L, y)
        return float(np.dot(z, z))
    except np.linalg.LinAlgError:
        # Fallback to pseudoinverse if Cholesky fails
        return float(y @ np.linalg.pinv(S) @ y)
