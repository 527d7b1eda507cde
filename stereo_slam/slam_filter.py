#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SLAM Filter Orchestrator

Single per-frame entry point of the stereo-inertial estimator:

    slam = SLAMFilter(config)
    result = slam.step(dt, inertial, measurements, validity)

Each step runs, on a working copy of the filter context:
    1. Prediction (propagation.predict)
    2. Measurement update (measurement_updates.apply_stereo_update)
    3. Anchor admission / eviction (AnchorManager.manage)
    4. Final state/covariance checks

The copy is committed only when every stage succeeded, so a frame that
ends in EstimatorDivergedError publishes nothing. A diverged filter
refuses further steps until initialize() is called again.

Author: Stereo SLAM project
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import numpy as np

from .anchor_manager import AnchorStatus
from .config import SLAMConfig
from .measurement_updates import UpdateReport, apply_stereo_update
from .numerical_checks import EstimatorDivergedError, check_state_validity
from .propagation import predict
from .simulation import RNGContext
from .state_manager import FilterContext, initialize_filter_context, symmetrize_covariance


def _frozen(arr) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class StepResult:
    """
    Read-only snapshot published after a frame.

    Arrays are copies flagged read-only; mutating them raises ValueError.
    """

    frame_index: int
    position: np.ndarray
    quaternion: np.ndarray
    velocity: np.ndarray
    gyro_bias: np.ndarray
    covariance: np.ndarray
    anchor_positions: np.ndarray
    anchor_status: Tuple[AnchorStatus, ...]
    update_requests: np.ndarray
    predicted_measurements: np.ndarray
    prediction_applied: bool = False
    update_applied: bool = False
    update_skipped_reason: Optional[str] = None
    accepted_anchors: Tuple[int, ...] = ()
    rejected_anchors: Mapping[int, str] = field(default_factory=dict)
    log_likelihood: Optional[float] = None

    @property
    def state(self) -> np.ndarray:
        """Stored navigation state [p, q, v, b_g] (13,)."""
        return np.concatenate([self.position, self.quaternion, self.velocity, self.gyro_bias])

    @property
    def num_active_anchors(self) -> int:
        return sum(1 for s in self.anchor_status if s == AnchorStatus.ACTIVE)


class SLAMFilter:
    """
    Stereo-inertial error-state Kalman filter.

    Not thread-safe: callers serialize step() themselves. A re-entrant call
    (e.g. from a callback inside a step) raises RuntimeError.
    """

    def __init__(self, config: Union[SLAMConfig, Dict[str, Any], None] = None):
        self._ctx: Optional[FilterContext] = None
        self._rng: Optional[RNGContext] = None
        self._diverged = False
        self._busy = False
        self.last_report: Optional[UpdateReport] = None
        if config is not None:
            self.initialize(config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, config: Union[SLAMConfig, Dict[str, Any], None] = None) -> StepResult:
        """
        (Re-)initialize the filter at the rest pose.

        Args:
            config: SLAMConfig, flat dict from load_config(), or None for defaults

        Returns:
            Snapshot of the initial state

        Raises:
            ConfigurationError: invalid configuration; no filter state is created
        """
        if self._busy:
            raise RuntimeError("initialize() called during step()")
        if config is None:
            config = self._ctx.config if self._ctx is not None else SLAMConfig()
        elif not isinstance(config, SLAMConfig):
            config = SLAMConfig.from_dict(config)

        ctx = initialize_filter_context(config)
        self._ctx = ctx
        self._rng = RNGContext(config.rng_seed)
        self._diverged = False
        self.last_report = None
        return self._make_result(ctx, UpdateReport(), prediction_applied=False)

    def shutdown(self) -> None:
        """Release the filter context and RNG context."""
        self._ctx = None
        self._rng = None
        self._diverged = False
        self.last_report = None

    @property
    def is_initialized(self) -> bool:
        return self._ctx is not None

    @property
    def diverged(self) -> bool:
        return self._diverged

    @property
    def config(self) -> SLAMConfig:
        self._require_ready()
        return self._ctx.config

    @property
    def rng(self) -> RNGContext:
        """Synthetic-noise RNG for test harnesses (never used by the estimator)."""
        if self._rng is None:
            raise RuntimeError("filter is not initialized")
        return self._rng

    @property
    def counters(self):
        self._require_ready()
        return self._ctx.counters

    # ------------------------------------------------------------------
    # Per-frame entry point
    # ------------------------------------------------------------------

    def step(self, dt: float, inertial, measurements, validity) -> StepResult:
        """
        Process one synchronized sensor frame.

        Args:
            dt: Elapsed time since the previous frame [s]
            inertial: [ω(3), a(3), m(3)] body-frame inertial/magnetic vector
            measurements: per-anchor [u, v, d] as (num_anchors, ppa, 3),
                (num_anchors, 3*ppa) or flat
            validity: per-anchor tracker flags (num_anchors,)

        Returns:
            StepResult snapshot

        Raises:
            ValueError: malformed inputs
            RuntimeError: filter not initialized, or re-entrant call
            EstimatorDivergedError: numerical failure (filter must be re-initialized)
        """
        if self._busy:
            raise RuntimeError("SLAMFilter.step() is not re-entrant")
        self._require_ready()

        cfg = self._ctx.config
        inertial = np.asarray(inertial, dtype=float).reshape(-1)
        if inertial.size != 9:
            raise ValueError(f"inertial vector must have 9 elements, got {inertial.size}")
        z, valid = self._check_measurements(cfg, measurements, validity)

        self._busy = True
        try:
            work = self._ctx.copy()
            work.frame_index += 1
            work.counters.frames += 1
            self._log_boundary_anomalies(work, z, valid)

            predicted = predict(work, float(dt), inertial)
            report = apply_stereo_update(work, z, valid)

            events = work.anchors.manage(work.position, work.quaternion, work.P, z, valid,
                                         set(report.rejected))
            work.counters.admissions += len(events.admitted) + len(events.reacquired)
            work.counters.evictions += len(events.evicted)

            symmetrize_covariance(work, label="P_step")
            check_state_validity(work.xt, frame=work.frame_index)
        except EstimatorDivergedError as e:
            self._diverged = True
            print(f"[SLAM] frame={self._ctx.frame_index + 1}: estimator diverged ({e}); "
                  f"call initialize() to restart")
            raise
        finally:
            self._busy = False

        self._ctx = work
        self.last_report = report
        if cfg.verbose:
            print(f"[SLAM] frame={work.frame_index} active={work.anchors.num_active} "
                  f"admitted={events.admitted} evicted={events.evicted}")
        return self._make_result(work, report, prediction_applied=predicted)

    def snapshot(self) -> StepResult:
        """Read-only view of the last committed state."""
        self._require_ready()
        return self._make_result(self._ctx, self.last_report or UpdateReport(),
                                 prediction_applied=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        if self._ctx is None:
            raise RuntimeError("filter is not initialized; call initialize() first")
        if self._diverged:
            raise EstimatorDivergedError("estimator diverged; call initialize() to restart")

    @staticmethod
    def _check_measurements(cfg: SLAMConfig, measurements, validity):
        n, ppa = cfg.num_anchors, cfg.num_points_per_anchor
        z = np.asarray(measurements, dtype=float)
        if z.size != n * ppa * 3:
            raise ValueError(f"measurements must hold {n}x{ppa}x3 values, got shape {z.shape}")
        z = z.reshape(n, ppa, 3)

        valid = np.asarray(validity).reshape(-1)
        if valid.size != n:
            raise ValueError(f"validity must have {n} flags, got {valid.size}")
        return z, valid.astype(bool)

    @staticmethod
    def _log_boundary_anomalies(ctx: FilterContext, z: np.ndarray, valid: np.ndarray) -> None:
        """Negative pixel coordinates and disparities are logged and passed through to gating."""
        for i in np.flatnonzero(valid):
            if np.any(z[i, :, 0] < 0):
                print(f"[BOUNDARY] frame={ctx.frame_index} anchor {i}: neg x")
                ctx.counters.boundary_anomalies += 1
            if np.any(z[i, :, 1] < 0):
                print(f"[BOUNDARY] frame={ctx.frame_index} anchor {i}: neg y")
                ctx.counters.boundary_anomalies += 1
            if np.any(z[i, :, 2] < 0):
                print(f"[BOUNDARY] frame={ctx.frame_index} anchor {i}: neg disparity")
                ctx.counters.boundary_anomalies += 1

    @staticmethod
    def _make_result(ctx: FilterContext, report: UpdateReport,
                     prediction_applied: bool) -> StepResult:
        anchors = ctx.anchors
        requests = anchors.update_requests()
        requests.setflags(write=False)
        return StepResult(
            frame_index=ctx.frame_index,
            position=_frozen(ctx.position),
            quaternion=_frozen(ctx.quaternion),
            velocity=_frozen(ctx.velocity),
            gyro_bias=_frozen(ctx.gyro_bias),
            covariance=_frozen(ctx.P),
            anchor_positions=_frozen(anchors.anchor_positions()),
            anchor_status=tuple(anchors.statuses()),
            update_requests=requests,
            predicted_measurements=_frozen(
                anchors.predicted_measurements(ctx.position, ctx.quaternion)),
            prediction_applied=prediction_applied,
            update_applied=report.applied,
            update_skipped_reason=report.skipped_reason,
            accepted_anchors=tuple(report.accepted),
            rejected_anchors=dict(report.rejected),
            log_likelihood=report.log_likelihood,
        )
