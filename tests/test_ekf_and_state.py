import numpy as np
import pytest
from scipy.stats import multivariate_normal

from stereo_slam.config import SLAMConfig
from stereo_slam.ekf import (
    build_process_noise,
    ensure_covariance_valid,
    joint_kalman_correction,
    propagate_error_state_covariance,
)
from stereo_slam.math_utils import skew_symmetric
from stereo_slam.numerical_checks import EstimatorDivergedError
from stereo_slam.state_manager import (
    initialize_filter_context,
    inject_error_state,
    renormalize_orientation,
    symmetrize_covariance,
)


def _make_spd(n: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    return A @ A.T + n * np.eye(n)


# =============================================================================
# ekf
# =============================================================================

def test_propagation_keeps_anchor_blocks_stationary():
    P = _make_spd(18)
    F = np.eye(12) + 0.01 * np.random.default_rng(1).normal(size=(12, 12))
    Q = np.eye(12) * 1e-3
    P_new = propagate_error_state_covariance(P, F, Q)

    np.testing.assert_allclose(P_new[12:, 12:], P[12:, 12:])
    np.testing.assert_allclose(P_new[:12, 12:], F @ P[:12, 12:])
    np.testing.assert_allclose(P_new[:12, :12], F @ P[:12, :12] @ F.T + Q, rtol=1e-12)
    np.testing.assert_array_equal(P_new, P_new.T)


def test_process_noise_channel_order():
    Q = build_process_noise(np.array([0.5, 0.05, 1e-3, 0.2]), dt=0.1)
    assert np.isclose(Q[0, 0], 0.2 ** 2 * 0.1)   # position
    assert np.isclose(Q[3, 3], 0.05 ** 2 * 0.1)  # attitude <- gyro
    assert np.isclose(Q[6, 6], 0.5 ** 2 * 0.1)   # velocity <- accel
    assert np.isclose(Q[9, 9], 1e-3 ** 2 * 0.1)  # gyro bias
    assert np.count_nonzero(Q - np.diag(np.diag(Q))) == 0


def test_joint_correction_scalar_case():
    P = np.eye(2)
    H = np.eye(2)
    R = np.eye(2)
    y = np.array([1.0, -2.0])
    corr = joint_kalman_correction(P, H, R, y)

    np.testing.assert_allclose(corr.K, 0.5 * np.eye(2))
    np.testing.assert_allclose(corr.dx, [0.5, -1.0])
    np.testing.assert_allclose(corr.P, 0.5 * np.eye(2))
    assert np.isclose(corr.log_likelihood,
                      multivariate_normal.logpdf(y, mean=np.zeros(2), cov=2 * np.eye(2)))
    assert np.isclose(corr.mahalanobis, np.sqrt(2.5))
    assert "KalmanCorrection" in repr(corr)


def test_joint_correction_singular_innovation_returns_none():
    assert joint_kalman_correction(np.zeros((3, 3)), np.eye(3), np.zeros((3, 3)),
                                   np.ones(3)) is None


def test_joseph_form_keeps_covariance_symmetric():
    P = _make_spd(9, seed=3)
    H = np.random.default_rng(4).normal(size=(6, 9))
    corr = joint_kalman_correction(P, H, np.eye(6) * 0.5, np.ones(6))
    np.testing.assert_allclose(corr.P, corr.P.T, atol=1e-10)
    assert np.all(np.linalg.eigvalsh((corr.P + corr.P.T) / 2) > -1e-10)


def test_ensure_covariance_valid_symmetrizes_small_drift():
    P = np.eye(3)
    P[0, 1] = 1e-9
    P_out = ensure_covariance_valid(P, label="drift")
    np.testing.assert_array_equal(P_out, P_out.T)


def test_ensure_covariance_valid_non_finite_is_fatal():
    P = np.eye(3)
    P[1, 1] = np.nan
    with pytest.raises(EstimatorDivergedError):
        ensure_covariance_valid(P, label="nan")


def test_ensure_covariance_valid_negative_variance_is_fatal():
    with pytest.raises(EstimatorDivergedError):
        ensure_covariance_valid(np.diag([1.0, -1.0, 1.0]), label="neg")


def test_ensure_covariance_valid_lifts_negative_eigenvalue(capsys):
    P = np.array([[1.0, 1.1, 0.0],
                  [1.1, 1.0, 0.0],
                  [0.0, 0.0, 0.0]])
    P_out = ensure_covariance_valid(P, label="indefinite")

    assert "Negative eigenvalue" in capsys.readouterr().out
    assert np.linalg.eigvalsh(P_out)[0] >= -1e-12
    np.testing.assert_allclose(np.diag(P_out), [1.1, 1.1, 0.0])
    # Released rows stay zero
    assert not np.any(P_out[2, :])
    assert not np.any(P_out[:, 2])


def test_ensure_covariance_valid_leaves_psd_matrix_unchanged(capsys):
    P = np.diag([1.0, 0.0, 2.0])
    P[0, 2] = P[2, 0] = 0.5
    np.testing.assert_array_equal(ensure_covariance_valid(P, label="psd"), P)
    assert capsys.readouterr().out == ""


# =============================================================================
# state_manager
# =============================================================================

def test_initialize_sets_rest_pose_and_diagonal_covariance():
    cfg = SLAMConfig()
    ctx = initialize_filter_context(cfg)

    np.testing.assert_array_equal(ctx.xt, [0, 0, 0, 1, 0, 0, 0, 0, 0, 0, 0, 0, 0])
    assert ctx.P.shape == (60, 60)
    sig_p, sig_th, sig_v, sig_bg = cfg.initial_sigmas
    np.testing.assert_allclose(np.diag(ctx.P)[:12], np.repeat([sig_p, sig_th, sig_v, sig_bg], 3) ** 2)
    assert not np.any(ctx.P[12:, :])
    assert np.count_nonzero(ctx.P - np.diag(np.diag(ctx.P))) == 0


def test_renormalize_rescales_quaternion():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    ctx.xt[3:7] = [2.0, 0.0, 0.0, 0.0]
    renormalize_orientation(ctx)
    np.testing.assert_allclose(ctx.xt[3:7], [1.0, 0, 0, 0])


def test_renormalize_zero_quaternion_is_fatal():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    ctx.xt[3:7] = 0.0
    with pytest.raises(EstimatorDivergedError):
        renormalize_orientation(ctx)


def test_renormalize_applies_reset_jacobian_to_attitude_block():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    ctx.P = _make_spd(ctx.P.shape[0], seed=7)
    P0 = ctx.P.copy()
    dtheta = np.array([0.01, -0.02, 0.005])
    renormalize_orientation(ctx, dtheta)

    G = np.eye(ctx.P.shape[0])
    G[3:6, 3:6] = np.eye(3) - skew_symmetric(dtheta / 2)
    np.testing.assert_allclose(ctx.P, G @ P0 @ G.T, atol=1e-12)


def test_inject_error_state_additive_and_multiplicative_parts():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    dx = np.zeros(ctx.P.shape[0])
    dx[0:3] = [0.1, 0.2, 0.3]
    dx[3:6] = [0.0, 0.0, 0.01]
    dx[6:9] = [1.0, 0.0, -1.0]
    dx[9:12] = [1e-3, 0.0, 0.0]
    inject_error_state(ctx, dx)

    np.testing.assert_allclose(ctx.position, [0.1, 0.2, 0.3])
    np.testing.assert_allclose(ctx.velocity, [1.0, 0.0, -1.0])
    np.testing.assert_allclose(ctx.gyro_bias, [1e-3, 0.0, 0.0])
    assert np.isclose(np.linalg.norm(ctx.quaternion), 1.0)
    assert np.isclose(ctx.quaternion[3], np.sin(0.005))


def test_symmetrize_covariance_averages_with_transpose():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    ctx.P[0, 6] = 2e-4
    ctx.P[6, 0] = 0.0
    symmetrize_covariance(ctx, label="drift")
    np.testing.assert_array_equal(ctx.P, ctx.P.T)
    assert ctx.P[0, 6] == 1e-4


def test_context_copy_is_independent():
    ctx = initialize_filter_context(SLAMConfig(num_anchors=2))
    work = ctx.copy()
    work.xt[0] = 5.0
    work.P[0, 0] = 9.0
    work.counters.frames = 3
    work.anchors.slots[0].points[0] = [1.0, 2.0, 3.0]

    assert ctx.xt[0] == 0.0
    assert ctx.P[0, 0] != 9.0
    assert ctx.counters.frames == 0
    assert not np.any(ctx.anchors.slots[0].points)
    assert work.config is ctx.config
