#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Extended Kalman Filter Module

Error-state covariance propagation and joint Kalman correction for the
stereo-inertial filter.

Error state layout (12 + 3*ppa*B for B covariance blocks):
    idx 0..2   : δp (position error)
    idx 3..5   : δθ (rotation error - 3D)
    idx 6..8   : δv (velocity error)
    idx 9..11  : δbg (gyro bias error)
    idx 12+    : anchor point position errors (world frame)
"""

from math import sqrt
from typing import Optional

import numpy as np
from numpy import dot
import scipy.linalg as linalg
from filterpy.stats import logpdf
from filterpy.common import pretty_str

from .config import NUM_STATES
from .numerical_checks import EstimatorDivergedError, check_covariance


def ensure_covariance_valid(P: np.ndarray, label: str = "", frame: Optional[int] = None,
                            symmetry_tol: float = 1e-6, check_psd: bool = True,
                            psd_tol: float = 1e-9) -> np.ndarray:
    """
    Symmetrize a covariance and verify it is finite and positive semi-definite.

    Small negative eigenvalues left by rounding are lifted with a diagonal
    jitter of |λ_min| on the variances in use; zero rows and columns of
    released anchor blocks stay zero.

    Args:
        P: Covariance matrix (n×n)
        label: Debug label for logging
        frame: Frame index for tripwire output
        symmetry_tol: Relative asymmetry tolerated before symmetrizing
        check_psd: Check and fix negative eigenvalues
        psd_tol: Relative eigenvalue tolerance below zero before jitter is added

    Returns:
        P_valid: Symmetrized covariance

    Raises:
        EstimatorDivergedError: if P is non-finite, has a negative variance,
            or its eigenvalues cannot be computed
    """
    P = np.asarray(P, dtype=float)
    if P.size:
        asymmetry = np.linalg.norm(P - P.T, ord='fro')
        if asymmetry > symmetry_tol * max(1.0, float(np.max(np.abs(P)))):
            print(f"[COV_CHECK] {label}: Asymmetry detected (||P - P^T|| = {asymmetry:.3e}), "
                  f"symmetrizing")
    P = (P + P.T) / 2.0
    check_covariance(P, name=label or "covariance", frame=frame)

    if check_psd and P.size:
        try:
            eigvals = np.linalg.eigvalsh(P)
        except np.linalg.LinAlgError as e:
            print(f"[COV_CHECK] {label}: Eigenvalue computation failed: {e}")
            raise EstimatorDivergedError(f"{label or 'covariance'}: eigenvalues failed") from e

        lambda_min, lambda_max = eigvals[0], eigvals[-1]
        if lambda_min < -psd_tol * max(1.0, lambda_max):
            jitter = abs(lambda_min)
            print(f"[COV_CHECK] {label}: Negative eigenvalue λ_min = {lambda_min:.3e}, "
                  f"adding jitter ε = {jitter:.3e}")
            in_use = np.flatnonzero(np.diag(P) > 0.0)
            P[in_use, in_use] += jitter
    return P


def build_process_noise(process_noise: np.ndarray, dt: float) -> np.ndarray:
    """
    Discrete navigation process noise for one prediction step.

    Args:
        process_noise: [σ_accel, σ_gyro, σ_gyro_bias, σ_position]
        dt: Elapsed time [s]

    Returns:
        Q: 12×12 diagonal noise in error-state order (δp, δθ, δv, δbg)
    """
    sigma_a, sigma_g, sigma_bg, sigma_p = process_noise
    q_diag = np.concatenate([
        np.full(3, sigma_p ** 2),
        np.full(3, sigma_g ** 2),
        np.full(3, sigma_a ** 2),
        np.full(3, sigma_bg ** 2),
    ])
    return np.diag(q_diag * dt)


def propagate_error_state_covariance(P: np.ndarray, F: np.ndarray,
                                     Q: np.ndarray) -> np.ndarray:
    """
    Propagate error-state covariance with stationary anchor blocks.

    Only the navigation block moves: anchor-anchor blocks are unchanged and
    navigation-anchor cross terms pick up the transition.

    Args:
        P: Current error-state covariance (12 + anchors)
        F: Navigation error-state transition (12×12)
        Q: Navigation process noise (12×12)

    Returns:
        P_new: Propagated covariance
    """
    n = NUM_STATES
    P_new = np.array(P, dtype=float, copy=True)

    # P_k+1 = F * P_k * F^T + Q on the navigation block
    P_new[:n, :n] = F @ P[:n, :n] @ F.T + Q

    if P.shape[0] > n:
        cross = F @ P[:n, n:]
        P_new[:n, n:] = cross
        P_new[n:, :n] = cross.T

    return (P_new + P_new.T) / 2


class KalmanCorrection:
    """
    Result of one joint Kalman correction.

    Attributes:
        dx: Error-state correction (n,)
        P: Joseph-form posterior covariance (n×n)
        K: Kalman gain (n×m)
        S: Innovation covariance (m×m)
        y: Innovation (m,)
    """

    def __init__(self, dx, P, K, S, y):
        self.dx = dx
        self.P = P
        self.K = K
        self.S = S
        self.y = y
        self._log_likelihood = None
        self._mahalanobis = None

    @property
    def log_likelihood(self):
        """log-likelihood of the stacked innovation."""
        if self._log_likelihood is None:
            self._log_likelihood = float(logpdf(x=self.y, cov=self.S))
        return self._log_likelihood

    @property
    def mahalanobis(self):
        """Mahalanobis distance of the stacked innovation."""
        if self._mahalanobis is None:
            cf = linalg.cho_factor(self.S)
            self._mahalanobis = sqrt(float(dot(self.y, linalg.cho_solve(cf, self.y))))
        return self._mahalanobis

    def __repr__(self):
        return '\n'.join([
            'KalmanCorrection object',
            pretty_str('dx', self.dx),
            pretty_str('P', self.P),
            pretty_str('K', self.K),
            pretty_str('y', self.y),
            pretty_str('S', self.S),
            pretty_str('log-likelihood', self.log_likelihood),
            pretty_str('mahalanobis', self.mahalanobis),
        ])


def joint_kalman_correction(P: np.ndarray, H: np.ndarray, R: np.ndarray,
                            y: np.ndarray) -> Optional[KalmanCorrection]:
    """
    One stacked Kalman correction over all surviving measurements.

    K = P H^T (H P H^T + R)^-1 is computed with a Cholesky solve; the
    covariance uses the Joseph form (I - KH) P (I - KH)^T + K R K^T.

    Args:
        P: Prior error-state covariance (n×n)
        H: Stacked measurement Jacobian (m×n)
        R: Stacked measurement noise (m×m)
        y: Stacked innovation (m,)

    Returns:
        KalmanCorrection, or None if S is not positive definite
    """
    y = np.asarray(y, dtype=float).reshape(-1)
    PHT = dot(P, H.T)
    S = dot(H, PHT) + R
    S = (S + S.T) / 2

    try:
        cf = linalg.cho_factor(S)
    except np.linalg.LinAlgError:
        print("[ESKF] WARNING: Singular S matrix, rejecting update")
        return None

    # K^T = S^-1 (H P) since S and P are symmetric
    K = linalg.cho_solve(cf, PHT.T).T
    dx = dot(K, y)

    I_KH = np.eye(P.shape[0]) - dot(K, H)
    P_new = dot(I_KH, P).dot(I_KH.T) + dot(K, R).dot(K.T)

    return KalmanCorrection(dx=dx, P=P_new, K=K, S=S, y=y)
