import numpy as np

from stereo_slam.camera import project_stereo
from stereo_slam.config import SLAMConfig
from stereo_slam.math_utils import quat_to_rot
from stereo_slam.propagation import compute_error_state_jacobian, predict
from stereo_slam.state_manager import initialize_filter_context

G = 9.81


def _make_ctx(**overrides):
    kwargs = dict(num_anchors=4)
    kwargs.update(overrides)
    return initialize_filter_context(SLAMConfig(**kwargs))


def _inertial(omega=(0.0, 0.0, 0.0), accel=(0.0, 0.0, G), mag=(0.2, 0.0, -0.4)):
    return np.concatenate([omega, accel, mag]).astype(float)


def test_zero_and_negative_dt_are_no_ops():
    ctx = _make_ctx()
    xt0, P0 = ctx.xt.copy(), ctx.P.copy()
    for dt in (0.0, -0.1):
        assert predict(ctx, dt, _inertial(omega=(1.0, 2.0, 3.0))) is False
    np.testing.assert_array_equal(ctx.xt, xt0)
    np.testing.assert_array_equal(ctx.P, P0)
    assert ctx.counters.skipped_predictions == 2
    assert ctx.counters.prediction_anomalies == 0


def test_non_finite_dt_holds_state_and_counts_anomaly():
    ctx = _make_ctx()
    xt0 = ctx.xt.copy()
    assert predict(ctx, float("nan"), _inertial()) is False
    np.testing.assert_array_equal(ctx.xt, xt0)
    assert ctx.counters.prediction_anomalies == 1


def test_non_finite_inertial_holds_state():
    ctx = _make_ctx()
    xt0, P0 = ctx.xt.copy(), ctx.P.copy()
    assert predict(ctx, 0.05, _inertial(accel=(np.nan, 0.0, G))) is False
    np.testing.assert_array_equal(ctx.xt, xt0)
    np.testing.assert_array_equal(ctx.P, P0)
    assert ctx.counters.prediction_anomalies == 1


def test_rest_stays_at_rest_and_uncertainty_grows():
    ctx = _make_ctx()
    P0 = ctx.P.copy()
    for _ in range(20):
        assert predict(ctx, 0.05, _inertial())
    np.testing.assert_allclose(ctx.position, 0.0, atol=1e-12)
    np.testing.assert_allclose(ctx.velocity, 0.0, atol=1e-12)
    np.testing.assert_allclose(ctx.quaternion, [1.0, 0.0, 0.0, 0.0], atol=1e-12)
    assert np.trace(ctx.P[:12, :12]) > np.trace(P0[:12, :12])
    np.testing.assert_array_equal(ctx.P, ctx.P.T)
    assert ctx.counters.predictions == 20


def test_free_fall_integrates_gravity():
    ctx = _make_ctx()
    dt = 0.1
    predict(ctx, dt, _inertial(accel=(0.0, 0.0, 0.0)))
    np.testing.assert_allclose(ctx.velocity, [0.0, 0.0, -G * dt])
    np.testing.assert_allclose(ctx.position, [0.0, 0.0, -0.5 * G * dt ** 2])


def test_constant_rate_rotates_about_body_axis():
    ctx = _make_ctx()
    for _ in range(10):
        predict(ctx, 0.02, _inertial(omega=(0.0, 0.0, 0.5)))
    R = quat_to_rot(ctx.quaternion)
    yaw = np.arctan2(R[1, 0], R[0, 0])
    assert np.isclose(yaw, 0.1, atol=1e-9)
    assert np.isclose(np.linalg.norm(ctx.quaternion), 1.0)


def test_gyro_bias_is_subtracted():
    ctx = _make_ctx()
    ctx.xt[10:13] = [0.0, 0.0, 0.5]
    predict(ctx, 0.1, _inertial(omega=(0.0, 0.0, 0.5)))
    np.testing.assert_allclose(ctx.quaternion, [1.0, 0.0, 0.0, 0.0], atol=1e-12)


def test_anchor_blocks_are_stationary():
    ctx = _make_ctx()
    cfg = ctx.config
    for i, p_c in enumerate([[0.1, 0.2, 3.0], [-0.3, 0.1, 2.0]]):
        z = project_stereo(np.array(p_c), cfg.camera_params).reshape(1, 3)
        ctx.anchors.admit(i, z, ctx.position, ctx.quaternion, ctx.P)
    P_aa = ctx.P[12:, 12:].copy()
    P_na = ctx.P[:12, 12:].copy()

    dt = 0.05
    inertial = _inertial(omega=(0.1, -0.2, 0.3), accel=(0.5, 0.0, G))
    F = compute_error_state_jacobian(quat_to_rot(ctx.quaternion), inertial[3:6],
                                     inertial[0:3] - ctx.gyro_bias, dt)
    predict(ctx, dt, inertial)

    np.testing.assert_allclose(ctx.P[12:, 12:], P_aa)
    np.testing.assert_allclose(ctx.P[:12, 12:], F @ P_na, atol=1e-15)


def test_magnetic_field_is_recorded_only():
    ctx = _make_ctx()
    predict(ctx, 0.05, _inertial(mag=(0.3, -0.1, 0.5)))
    np.testing.assert_array_equal(ctx.last_magnetic_field, [0.3, -0.1, 0.5])
    np.testing.assert_allclose(ctx.position, 0.0, atol=1e-12)


def test_error_state_jacobian_structure():
    dt = 0.1
    F = compute_error_state_jacobian(np.eye(3), np.array([0.0, 0.0, G]), np.zeros(3), dt)
    np.testing.assert_allclose(F[0:3, 6:9], np.eye(3) * dt)
    np.testing.assert_allclose(F[3:6, 9:12], -np.eye(3) * dt)
    np.testing.assert_allclose(F[3:6, 3:6], np.eye(3))
    # Tilt error couples into velocity through the specific force
    assert np.isclose(F[6, 4], G * dt)
    assert np.isclose(F[7, 3], -G * dt)
