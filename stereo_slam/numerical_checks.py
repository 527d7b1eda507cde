#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
=========================================

Catches NaN/inf propagation at the source and dumps diagnostic information
when numerical issues are detected. A failed tripwire on the published
state or covariance is an internal-consistency violation and surfaces as
EstimatorDivergedError.
"""

import numpy as np


class EstimatorDivergedError(RuntimeError):
    """State or covariance became non-finite/inconsistent; re-initialize the filter."""


def assert_finite(name, M, frame=None, extra_info=None, raise_on_fail=False):
    """
    Tripwire: Check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    frame : int, optional
        Frame index (for logging context)
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises EstimatorDivergedError on failure. If False, only prints.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        print(f"[TRIPWIRE] {name}: is None!")
        if raise_on_fail:
            raise EstimatorDivergedError(f"{name} is None")
        return False

    M = np.asarray(M, dtype=float)
    if np.all(np.isfinite(M)):
        return True

    print(f"\n{'='*70}")
    print(f"[TRIPWIRE] NaN/inf DETECTED in {name}")
    print(f"{'='*70}")

    if frame is not None:
        print(f"Frame: {frame}")

    print(f"\nMatrix shape: {M.shape}")
    print(f"Has NaN: {np.any(np.isnan(M))}")
    print(f"Has inf: {np.any(np.isinf(M))}")

    if M.size <= 100:
        print(f"\nFull matrix:\n{M}")
    else:
        finite = M[np.isfinite(M)]
        if finite.size:
            print(f"\nFinite entries: min={finite.min():.6e} max={finite.max():.6e}")
        else:
            print("\nNo finite entries")

    if np.any(np.isnan(M)):
        print(f"\nNaN locations (first 10): {np.argwhere(np.isnan(M))[:10].tolist()}")
    if np.any(np.isinf(M)):
        print(f"Inf locations (first 10): {np.argwhere(np.isinf(M))[:10].tolist()}")

    if extra_info:
        print("\nAdditional context:")
        for key, val in extra_info.items():
            if isinstance(val, np.ndarray) and val.size > 10:
                print(f"  {key}: shape={val.shape}, norm={np.linalg.norm(val):.6e}")
            elif isinstance(val, np.ndarray):
                print(f"  {key}: {val.ravel()}")
            else:
                print(f"  {key}: {val}")

    print(f"{'='*70}\n")

    if raise_on_fail:
        raise EstimatorDivergedError(f"NaN/inf detected in {name}")
    return False


def check_quaternion(q, name="quaternion", frame=None):
    """
    Validate a quaternion and return it normalized.

    Raises:
        EstimatorDivergedError: if q is non-finite or its norm is (near) zero
    """
    assert_finite(name, q, frame=frame, raise_on_fail=True)

    q_norm = np.linalg.norm(q)
    if q_norm < 1e-8:
        print(f"[TRIPWIRE] {name}: norm near zero ({q_norm:.6e}) at frame={frame}")
        raise EstimatorDivergedError(f"{name} degenerated to zero norm")

    if abs(q_norm - 1.0) > 0.1:
        print(f"[TRIPWIRE] {name}: norm far from 1 ({q_norm:.6f}) at frame={frame}")

    return q / q_norm


def check_covariance(P, name="covariance", frame=None, symmetry_tol=1e-6):
    """
    Validate a covariance: finite, symmetric within tolerance, non-negative diagonal.

    Raises:
        EstimatorDivergedError: on any violation
    """
    assert_finite(name, P, frame=frame, raise_on_fail=True)

    scale = max(1.0, float(np.max(np.abs(P)))) if P.size else 1.0
    asymmetry = float(np.max(np.abs(P - P.T))) if P.size else 0.0
    if asymmetry > symmetry_tol * scale:
        print(f"[TRIPWIRE] {name}: not symmetric (max diff={asymmetry:.6e}) at frame={frame}")
        raise EstimatorDivergedError(f"{name} is not symmetric")

    diag = np.diag(P)
    if np.any(diag < -symmetry_tol * scale):
        idx = int(np.argmin(diag))
        print(f"[TRIPWIRE] {name}: negative variance P[{idx},{idx}]={diag[idx]:.6e} at frame={frame}")
        raise EstimatorDivergedError(f"{name} has a negative variance")

    return True


def check_state_validity(xt, frame=None):
    """
    Navigation state validation.

    Expected state layout:
    xt[0:3]   = position
    xt[3:7]   = quaternion [w,x,y,z]
    xt[7:10]  = velocity
    xt[10:13] = gyro bias

    Raises:
        EstimatorDivergedError: if the state is non-finite or the quaternion
        is not unit norm
    """
    assert_finite("state_xt", xt, frame=frame, raise_on_fail=True)

    q_norm = np.linalg.norm(xt[3:7])
    if abs(q_norm - 1.0) > 1e-6:
        print(f"[TRIPWIRE] Quaternion norm = {q_norm:.9f} (should be 1.0) at frame={frame}")
        raise EstimatorDivergedError("quaternion is not unit norm")
    return True
