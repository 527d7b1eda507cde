#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stereo SLAM Replay Loop

SLAMRunner feeds synchronized frames (from a frames CSV or the synthetic
scene simulator) through SLAMFilter one at a time, logs the results, and
restarts the filter when it reports divergence.

Author: Stereo SLAM project
"""

import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .config import SLAMConfig, load_config
from .data_loaders import FrameRecord, load_frames_csv
from .numerical_checks import EstimatorDivergedError
from .output_utils import DebugCSVWriters, print_summary
from .simulation import StereoSceneSimulator
from .slam_filter import SLAMFilter


@dataclass
class RunnerConfig:
    """Paths and runtime flags for one replay run (algorithm settings live in YAML)."""
    output_dir: str
    config_yaml: Optional[str] = None
    frames_csv: Optional[str] = None
    simulate_frames: int = 0
    simulate_dt: float = 0.05
    simulate_noise_px: float = 0.5
    apply_axis_signs: bool = False
    save_debug_data: bool = False
    max_restarts: int = 3


class SLAMRunner:
    """
    Replay runner.

    1. Configuration loading
    2. Frame source (CSV or simulator)
    3. Per-frame SLAMFilter.step with restart on divergence
    4. Output logging and summary
    """

    def __init__(self, config: RunnerConfig):
        self.config = config
        self.slam_config: Optional[SLAMConfig] = None
        self.slam: Optional[SLAMFilter] = None
        self.writers: Optional[DebugCSVWriters] = None
        self.restarts = 0
        self.diverged_at: List[float] = []

    def load_config(self) -> SLAMConfig:
        """Load YAML configuration (defaults when no file is given)."""
        if self.config.config_yaml:
            self.slam_config = SLAMConfig.from_dict(load_config(self.config.config_yaml))
        else:
            self.slam_config = SLAMConfig()
        return self.slam_config

    def load_frames(self) -> Iterable[FrameRecord]:
        """Frame source: CSV if given, otherwise the static synthetic scene."""
        cfg = self.slam_config
        if self.config.frames_csv:
            return load_frames_csv(self.config.frames_csv, cfg.num_anchors,
                                   cfg.num_points_per_anchor,
                                   apply_axis_signs=self.config.apply_axis_signs,
                                   axis_signs=cfg.imu_axis_signs)
        if self.config.simulate_frames <= 0:
            raise ValueError("Either frames_csv or simulate_frames > 0 is required")
        sim = StereoSceneSimulator(cfg, rng=self.slam.rng)
        print(f"[SIM] Static scene: {cfg.num_anchors} anchors, "
              f"{self.config.simulate_frames} frames, noise={self.config.simulate_noise_px} px")
        return sim.static_frames(self.config.simulate_frames, dt=self.config.simulate_dt,
                                 noise_px=self.config.simulate_noise_px)

    def process_frame(self, frame: FrameRecord) -> bool:
        """
        Run one frame through the filter.

        Returns:
            True if the frame was committed, False if the filter diverged
            (and was restarted)
        """
        try:
            result = self.slam.step(frame.dt, frame.inertial, frame.measurements, frame.validity)
        except EstimatorDivergedError as e:
            self.diverged_at.append(frame.t)
            if self.restarts >= self.config.max_restarts:
                raise
            self.restarts += 1
            print(f"[RUNNER] t={frame.t:.3f}: {e}; restart {self.restarts}/"
                  f"{self.config.max_restarts}")
            self.slam.initialize()
            return False

        self.writers.log_pose(frame.t, result)
        self.writers.log_state_covariance(frame.t, result)
        self.writers.log_residuals(frame.t, result.frame_index, self.slam.last_report)
        return True

    def run(self) -> dict:
        """Run the full replay and return the summary statistics."""
        tic = time.time()
        self.load_config()
        self.slam = SLAMFilter(self.slam_config)
        self.writers = DebugCSVWriters(self.config.output_dir, self.config.save_debug_data)

        n = 0
        for frame in self.load_frames():
            self.process_frame(frame)
            n += 1
            if self.slam_config.verbose and n % 100 == 0:
                print(f"[RUNNER] {n} frames processed", end="\r")

        stats = print_summary(self.slam.counters, restarts=self.restarts,
                              pose_csv=self.writers.pose_csv)
        self.slam.shutdown()
        print(f"\n=== Finished {n} frames in {time.time() - tic:.2f} seconds ===")
        return stats


def run_slam(config: RunnerConfig) -> dict:
    """
    Convenience function to run the replay pipeline.

    Args:
        config: RunnerConfig instance
    """
    runner = SLAMRunner(config)
    return runner.run()
