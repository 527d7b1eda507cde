import numpy as np
import pytest

from stereo_slam import slam_filter as slam_filter_module
from stereo_slam.anchor_manager import AnchorStatus, UpdateRequest
from stereo_slam.config import ConfigurationError, SLAMConfig
from stereo_slam.numerical_checks import EstimatorDivergedError
from stereo_slam.simulation import StereoSceneSimulator
from stereo_slam.slam_filter import SLAMFilter
from stereo_slam.state_manager import renormalize_orientation


def _make_filter(**overrides):
    kwargs = dict(num_anchors=8)
    kwargs.update(overrides)
    cfg = SLAMConfig(**kwargs)
    return SLAMFilter(cfg), StereoSceneSimulator(cfg)


def _warm_up(slam, sim, frames=3, dt=0.05):
    z, valid = sim.measure()
    result = slam.step(0.0, sim.static_inertial(), z, valid)
    for _ in range(frames - 1):
        result = slam.step(dt, sim.static_inertial(), z, valid)
    return result


# =============================================================================
# Lifecycle
# =============================================================================

def test_step_before_initialize_raises():
    slam = SLAMFilter()
    assert not slam.is_initialized
    with pytest.raises(RuntimeError):
        slam.step(0.0, np.zeros(9), np.zeros((32, 3)), np.zeros(32, dtype=bool))


def test_invalid_configuration_creates_no_filter():
    slam = SLAMFilter()
    with pytest.raises(ConfigurationError):
        slam.initialize({"NUM_ANCHORS": -1})
    assert not slam.is_initialized


def test_initialize_returns_rest_pose():
    slam = SLAMFilter()
    result = slam.initialize({"NUM_ANCHORS": 6})
    assert slam.config.num_anchors == 6
    assert result.frame_index == 0
    np.testing.assert_array_equal(result.position, np.zeros(3))
    np.testing.assert_array_equal(result.quaternion, [1.0, 0.0, 0.0, 0.0])
    assert result.anchor_status == (AnchorStatus.EMPTY,) * 6
    np.testing.assert_array_equal(result.update_requests, [UpdateRequest.REQUEST_NEW] * 6)
    assert result.state.shape == (13,)


def test_shutdown_releases_context():
    slam, sim = _make_filter()
    slam.shutdown()
    assert not slam.is_initialized
    with pytest.raises(RuntimeError):
        slam.snapshot()


def test_rng_context_is_seeded():
    a, _ = _make_filter(rng_seed=11)
    b, _ = _make_filter(rng_seed=11)
    np.testing.assert_array_equal(a.rng.normal(1.0, size=5), b.rng.normal(1.0, size=5))


# =============================================================================
# Per-frame behaviour
# =============================================================================

def test_first_frame_admits_and_reproduces_measurements():
    slam, sim = _make_filter()
    z, valid = sim.measure()
    result = slam.step(0.0, sim.static_inertial(), z, valid)

    assert not result.prediction_applied
    assert result.update_skipped_reason == "no_measurements"
    assert result.num_active_anchors == 8
    np.testing.assert_allclose(result.anchor_positions, sim.landmarks, atol=1e-9)
    np.testing.assert_allclose(result.predicted_measurements, z, atol=1e-8)
    np.testing.assert_array_equal(result.update_requests, [UpdateRequest.KEEP] * 8)


def test_capacity_limits_active_anchors():
    slam, sim = _make_filter(num_anchors=20)
    result = _warm_up(slam, sim, frames=2)
    assert result.num_active_anchors == 16
    assert result.anchor_status[16:] == (AnchorStatus.EMPTY,) * 4
    np.testing.assert_array_equal(result.update_requests[16:], [UpdateRequest.IDLE] * 4)
    assert np.all(np.isnan(result.anchor_positions[16:]))


def test_static_scene_stays_at_origin():
    slam, sim = _make_filter()
    result = _warm_up(slam, sim, frames=30)
    assert result.update_applied
    assert result.frame_index == 30
    np.testing.assert_allclose(result.position, 0.0, atol=1e-6)
    np.testing.assert_allclose(result.velocity, 0.0, atol=1e-6)
    np.testing.assert_allclose(result.quaternion, [1.0, 0.0, 0.0, 0.0], atol=1e-6)


def test_noisy_run_keeps_covariance_symmetric_and_quaternion_unit():
    slam, sim = _make_filter()
    for frame in sim.static_frames(25, dt=0.05, noise_px=0.5, imu_noise=0.01):
        result = slam.step(frame.dt, frame.inertial, frame.measurements, frame.validity)
        np.testing.assert_array_equal(result.covariance, result.covariance.T)
        assert np.all(np.diag(result.covariance) >= 0.0)
        assert abs(np.linalg.norm(result.quaternion) - 1.0) < 1e-9
    assert np.linalg.norm(result.position) < 0.1


def test_zero_dt_with_no_valid_anchor_changes_nothing():
    slam, sim = _make_filter()
    before = slam.snapshot()
    z, _ = sim.measure()
    result = slam.step(0.0, sim.static_inertial(), z, np.zeros(8, dtype=bool))

    np.testing.assert_array_equal(result.position, before.position)
    np.testing.assert_array_equal(result.quaternion, before.quaternion)
    np.testing.assert_array_equal(result.velocity, before.velocity)
    np.testing.assert_array_equal(result.covariance, before.covariance)


def test_zero_dt_all_invalid_keeps_covariance_with_reinit_window():
    # Assumption: with a reinit window, lost anchors park in PendingReinit and
    # keep their blocks, so the whole covariance is unchanged.
    slam, sim = _make_filter(reinit_window_frames=2)
    before = _warm_up(slam, sim)
    z, _ = sim.measure()
    result = slam.step(0.0, sim.static_inertial(), z, np.zeros(8, dtype=bool))

    np.testing.assert_array_equal(result.position, before.position)
    np.testing.assert_array_equal(result.covariance, before.covariance)
    assert result.anchor_status == (AnchorStatus.PENDING_REINIT,) * 8


def test_zero_dt_all_invalid_releases_anchor_blocks_without_window():
    # Assumption: a false flag is a tracking loss, so without a reinit window
    # the anchors are evicted and their blocks released; the navigation block
    # is what must not shrink.
    slam, sim = _make_filter()
    before = _warm_up(slam, sim)
    z, _ = sim.measure()
    result = slam.step(0.0, sim.static_inertial(), z, np.zeros(8, dtype=bool))

    np.testing.assert_array_equal(result.position, before.position)
    np.testing.assert_array_equal(result.quaternion, before.quaternion)
    np.testing.assert_array_equal(result.velocity, before.velocity)
    np.testing.assert_array_equal(result.covariance[:12, :12], before.covariance[:12, :12])
    assert result.anchor_status == (AnchorStatus.EMPTY,) * 8
    assert not np.any(result.covariance[12:, :])
    assert not np.any(result.covariance[:, 12:])


def test_invalid_anchor_payload_is_ignored():
    runs = []
    for payload in ([0.0, 0.0, 0.0], [5.0e3, -20.0, -1.0]):
        slam, sim = _make_filter()
        _warm_up(slam, sim)
        z, valid = sim.measure(noise_px=0.3)
        valid[5] = False
        z[5, 0] = payload
        runs.append(slam.step(0.05, sim.static_inertial(), z, valid))

    a, b = runs
    np.testing.assert_array_equal(a.state, b.state)
    np.testing.assert_array_equal(a.covariance, b.covariance)
    assert a.anchor_status == b.anchor_status


def test_single_valid_anchor_is_prediction_only():
    results = []
    for n_valid in (1, 0):
        slam, sim = _make_filter(reinit_window_frames=5)
        _warm_up(slam, sim)
        z, _ = sim.measure()
        valid = np.zeros(8, dtype=bool)
        valid[:n_valid] = True
        results.append(slam.step(0.05, sim.static_inertial(), z, valid))

    one, none = results
    assert one.update_skipped_reason == "min_feature_threshold"
    assert not one.update_applied and one.prediction_applied
    np.testing.assert_array_equal(one.covariance, none.covariance)
    np.testing.assert_array_equal(one.state, none.state)


def test_results_are_read_only():
    slam, sim = _make_filter()
    result = _warm_up(slam, sim, frames=2)
    with pytest.raises(ValueError):
        result.position[0] = 1.0
    with pytest.raises(ValueError):
        result.covariance[0, 0] = 1.0
    with pytest.raises(ValueError):
        result.update_requests[0] = 0
    snapshot = slam.snapshot()
    np.testing.assert_array_equal(snapshot.position, result.position)


def test_measurement_layouts_are_accepted():
    slam, sim = _make_filter()
    z, valid = sim.measure()
    for layout in (z, z.reshape(8, 3), z.reshape(-1)):
        result = slam.step(0.0, sim.static_inertial(), layout, valid)
        assert result.num_active_anchors == 8


@pytest.mark.parametrize("inertial, measurements, validity", [
    (np.zeros(6), np.zeros((8, 3)), np.ones(8, dtype=bool)),
    (np.zeros(9), np.zeros((7, 3)), np.ones(8, dtype=bool)),
    (np.zeros(9), np.zeros((8, 3)), np.ones(5, dtype=bool)),
])
def test_malformed_inputs_raise_value_error(inertial, measurements, validity):
    slam, _ = _make_filter()
    with pytest.raises(ValueError):
        slam.step(0.05, inertial, measurements, validity)
    assert slam.snapshot().frame_index == 0


def test_negative_pixel_coordinates_are_logged(capsys):
    slam, sim = _make_filter()
    z, valid = sim.measure()
    z[2, 0, 0] = -4.0
    slam.step(0.0, sim.static_inertial(), z, valid)
    assert "[BOUNDARY]" in capsys.readouterr().out
    assert slam.counters.boundary_anomalies == 1


def test_negative_disparity_is_logged_and_not_admitted(capsys):
    slam, sim = _make_filter()
    z, valid = sim.measure()
    z[1, 0, 2] = -3.0
    result = slam.step(0.0, sim.static_inertial(), z, valid)

    assert "anchor 1: neg disparity" in capsys.readouterr().out
    assert slam.counters.boundary_anomalies == 1
    assert result.anchor_status[1] == AnchorStatus.EMPTY
    assert result.num_active_anchors == 7


# =============================================================================
# Multi-point anchors
# =============================================================================

def test_multi_point_anchors_track_every_sub_feature():
    slam, sim = _make_filter(num_anchors=6, num_points_per_anchor=2)
    z, valid = sim.measure()
    first = slam.step(0.0, sim.static_inertial(), z, valid)

    assert first.num_active_anchors == 6
    assert first.anchor_positions.shape == (6, 2, 3)
    np.testing.assert_allclose(first.anchor_positions, sim.landmarks, atol=1e-9)
    np.testing.assert_allclose(first.predicted_measurements, z, atol=1e-8)

    applied = 0
    for frame in sim.static_frames(20, dt=0.05, noise_px=0.5, imu_noise=0.01):
        result = slam.step(frame.dt, frame.inertial, frame.measurements, frame.validity)
        applied += result.update_applied
        np.testing.assert_array_equal(result.covariance, result.covariance.T)
        assert abs(np.linalg.norm(result.quaternion) - 1.0) < 1e-9
    assert applied > 0
    assert np.linalg.norm(result.position) < 0.05


def test_multi_point_eviction_zeroes_whole_block():
    slam, sim = _make_filter(num_anchors=6, num_points_per_anchor=2)
    before = _warm_up(slam, sim)
    # Slot 2 owns the third 6x6 block; its two points are correlated
    blk = slice(12 + 2 * 6, 12 + 3 * 6)
    assert np.any(before.covariance[24:27, 27:30])

    z, valid = sim.measure()
    valid[2] = False
    result = slam.step(0.05, sim.static_inertial(), z, valid)

    assert result.anchor_status[2] == AnchorStatus.EMPTY
    assert np.all(np.isnan(result.anchor_positions[2]))
    assert not np.any(result.covariance[blk, :])
    assert not np.any(result.covariance[:, blk])
    assert np.any(result.covariance[30:36, 30:36])
    assert result.num_active_anchors == 5


# =============================================================================
# Failure handling
# =============================================================================

def test_divergence_is_not_committed_and_requires_initialize(monkeypatch):
    slam, sim = _make_filter()
    before = _warm_up(slam, sim)

    def corrupt(ctx, dt, inertial):
        ctx.xt[3:7] = np.nan
        renormalize_orientation(ctx)
        return True

    monkeypatch.setattr(slam_filter_module, "predict", corrupt)
    z, valid = sim.measure()
    with pytest.raises(EstimatorDivergedError):
        slam.step(0.05, sim.static_inertial(), z, valid)

    assert slam.diverged
    with pytest.raises(EstimatorDivergedError):
        slam.step(0.05, sim.static_inertial(), z, valid)
    with pytest.raises(EstimatorDivergedError):
        slam.snapshot()

    monkeypatch.undo()
    result = slam.initialize()
    assert not slam.diverged
    assert result.frame_index == 0
    assert slam.config.num_anchors == 8
    np.testing.assert_array_equal(result.position, np.zeros(3))
    assert before.num_active_anchors == 8


def test_step_is_not_reentrant(monkeypatch):
    slam, sim = _make_filter()
    z, valid = sim.measure()
    inertial = sim.static_inertial()

    def reenter(ctx, dt, inertial_):
        slam.step(dt, inertial_, z, valid)
        return False

    monkeypatch.setattr(slam_filter_module, "predict", reenter)
    with pytest.raises(RuntimeError, match="re-entrant"):
        slam.step(0.05, inertial, z, valid)

    monkeypatch.undo()
    result = slam.step(0.05, inertial, z, valid)
    assert result.frame_index == 1
