#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Inertial Propagation Module

Prediction stage of the stereo-inertial filter: integrates gyroscope and
accelerometer readings over the caller-supplied elapsed time and
propagates the error-state covariance. Anchor blocks are stationary.

Author: Stereo SLAM project
"""

import numpy as np

from .ekf import build_process_noise, propagate_error_state_covariance
from .math_utils import quat_multiply, quat_normalize, quat_to_rot, rotvec_to_rot, \
    skew_symmetric, small_angle_quat
from .state_manager import (
    BG, ERR_BG, ERR_POS, ERR_THETA, ERR_VEL, FilterContext, POS, QUAT, VEL,
    renormalize_orientation,
)


def compute_error_state_jacobian(R_body_to_world: np.ndarray, a_meas: np.ndarray,
                                 w_corr: np.ndarray, dt: float) -> np.ndarray:
    """
    Navigation error-state transition F (12×12) for one step.

    Error order: δp, δθ, δv, δbg with right-multiplicative attitude error.

    Args:
        R_body_to_world: Rotation at the start of the step
        a_meas: Specific force in body frame [m/s^2]
        w_corr: Bias-corrected angular rate [rad/s]
        dt: Time step [s]
    """
    F = np.eye(12, dtype=float)
    R_ax = R_body_to_world @ skew_symmetric(a_meas)

    F[ERR_POS, ERR_VEL] = np.eye(3) * dt
    F[ERR_POS, ERR_THETA] = -0.5 * R_ax * dt ** 2
    F[ERR_THETA, ERR_THETA] = rotvec_to_rot(w_corr * dt).T
    F[ERR_THETA, ERR_BG] = -np.eye(3) * dt
    F[ERR_VEL, ERR_THETA] = -R_ax * dt
    return F


def predict(ctx: FilterContext, dt: float, inertial: np.ndarray) -> bool:
    """
    Propagate navigation state and covariance by dt.

    A zero/negative dt is a no-op. Non-finite dt, inputs or results skip
    the stage and hold the previous state and covariance (recoverable
    anomaly, logged and counted).

    Args:
        ctx: Filter context (mutated on success)
        dt: Elapsed time [s]
        inertial: [ω(3), a(3), m(3)] in body frame

    Returns:
        True if the state was propagated
    """
    cfg = ctx.config
    inertial = np.asarray(inertial, dtype=float).reshape(-1)

    if not np.isfinite(dt):
        print(f"[PROPAGATE] frame={ctx.frame_index}: non-finite dt={dt}, holding previous state")
        ctx.counters.skipped_predictions += 1
        ctx.counters.prediction_anomalies += 1
        return False

    if dt <= 0.0:
        if cfg.verbose:
            print(f"[PROPAGATE] frame={ctx.frame_index}: dt={dt:.6f} <= 0, skipping prediction")
        ctx.counters.skipped_predictions += 1
        return False

    # Magnetic field is recorded only; it does not drive the motion model
    mag = inertial[6:9]
    if np.all(np.isfinite(mag)):
        ctx.last_magnetic_field = mag.copy()

    omega = inertial[0:3]
    a_meas = inertial[3:6]
    if not (np.all(np.isfinite(omega)) and np.all(np.isfinite(a_meas))):
        print(f"[PROPAGATE] frame={ctx.frame_index}: non-finite inertial input "
              f"ω={omega} a={a_meas}, holding previous state")
        ctx.counters.skipped_predictions += 1
        ctx.counters.prediction_anomalies += 1
        return False

    p = ctx.xt[POS]
    q = ctx.xt[QUAT]
    v = ctx.xt[VEL]
    bg = ctx.xt[BG]

    R_body_to_world = quat_to_rot(q)
    w_corr = omega - bg
    a_world = R_body_to_world @ a_meas + cfg.gravity

    # Nominal state propagation
    p_new = p + v * dt + 0.5 * a_world * dt ** 2
    v_new = v + a_world * dt
    q_new = quat_normalize(quat_multiply(q, small_angle_quat(w_corr * dt)))

    # ESKF covariance propagation
    F = compute_error_state_jacobian(R_body_to_world, a_meas, w_corr, dt)
    Q = build_process_noise(cfg.process_noise, dt)
    P_new = propagate_error_state_covariance(ctx.P, F, Q)

    if not (np.all(np.isfinite(p_new)) and np.all(np.isfinite(v_new))
            and np.all(np.isfinite(q_new)) and np.all(np.isfinite(P_new))):
        print(f"[PROPAGATE] frame={ctx.frame_index}: non-finite propagation result "
              f"(dt={dt:.6f}), holding previous state and covariance")
        ctx.counters.skipped_predictions += 1
        ctx.counters.prediction_anomalies += 1
        return False

    ctx.xt[POS] = p_new
    ctx.xt[VEL] = v_new
    ctx.xt[QUAT] = q_new
    ctx.P = P_new
    renormalize_orientation(ctx)
    ctx.counters.predictions += 1

    if cfg.verbose:
        print(f"[PROPAGATE] frame={ctx.frame_index} dt={dt:.4f}s "
              f"p=[{p_new[0]:.3f}, {p_new[1]:.3f}, {p_new[2]:.3f}] "
              f"|v|={np.linalg.norm(v_new):.3f} m/s")
    return True
