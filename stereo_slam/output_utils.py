#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stereo SLAM Output Utilities Module

CSV writers for replay runs (pose, covariance diagonal, per-anchor
innovations) and end-of-run summaries.

Author: Stereo SLAM project
"""

import os
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .measurement_updates import UpdateReport


# =============================================================================
# Debug CSV Writers
# =============================================================================

class DebugCSVWriters:
    """
    Manages CSV writers for a replay run.

    Creates and manages:
    - Pose log (always)
    - Navigation covariance diagonal + bias (debug)
    - Per-anchor innovation log (debug)
    """

    def __init__(self, output_dir: str, save_debug_data: bool = False):
        """
        Initialize CSV writers.

        Args:
            output_dir: Output directory path
            save_debug_data: Whether to enable the covariance/residual logs
        """
        self.output_dir = output_dir
        self.enabled = save_debug_data

        self.pose_csv = None
        self.state_cov_csv = None
        self.residual_csv = None

        self._init_files()

    def _init_files(self):
        """Initialize CSV files (headers only)."""
        os.makedirs(self.output_dir, exist_ok=True)

        self.pose_csv = os.path.join(self.output_dir, "pose.csv")
        with open(self.pose_csv, "w", newline="") as f:
            f.write("t,frame,px,py,pz,qw,qx,qy,qz,vx,vy,vz,"
                    "num_active,update_applied,num_accepted,num_rejected,log_likelihood\n")

        if not self.enabled:
            return

        self.state_cov_csv = os.path.join(self.output_dir, "debug_state_covariance.csv")
        with open(self.state_cov_csv, "w", newline="") as f:
            f.write("t,frame,P_pos_xx,P_pos_yy,P_pos_zz,P_rot_xx,P_rot_yy,P_rot_zz,"
                    "P_vel_xx,P_vel_yy,P_vel_zz,P_bg_xx,P_bg_yy,P_bg_zz,"
                    "bg_x,bg_y,bg_z,trace_anchor\n")

        self.residual_csv = os.path.join(self.output_dir, "debug_residuals.csv")
        with open(self.residual_csv, "w", newline="") as f:
            f.write("t,frame,anchor,point,res_u,res_v,res_d,mahalanobis_sq,accepted,reason\n")

    def log_pose(self, t: float, result):
        """Log one StepResult to pose.csv."""
        p, q, v = result.position, result.quaternion, result.velocity
        ll = result.log_likelihood if result.log_likelihood is not None else float('nan')
        with open(self.pose_csv, "a", newline="") as f:
            f.write(f"{t:.6f},{result.frame_index},"
                    f"{p[0]:.6f},{p[1]:.6f},{p[2]:.6f},"
                    f"{q[0]:.9f},{q[1]:.9f},{q[2]:.9f},{q[3]:.9f},"
                    f"{v[0]:.6f},{v[1]:.6f},{v[2]:.6f},"
                    f"{result.num_active_anchors},{int(result.update_applied)},"
                    f"{len(result.accepted_anchors)},{len(result.rejected_anchors)},{ll:.6f}\n")

    def log_state_covariance(self, t: float, result):
        """Log navigation covariance diagonal and gyro bias."""
        if not self.enabled or self.state_cov_csv is None:
            return
        P = result.covariance
        d = np.diag(P)
        bg = result.gyro_bias
        trace_anchor = float(np.sum(d[12:])) if d.size > 12 else 0.0
        with open(self.state_cov_csv, "a", newline="") as f:
            f.write(f"{t:.6f},{result.frame_index},"
                    + ",".join(f"{d[i]:.6e}" for i in range(12))
                    + f",{bg[0]:.6f},{bg[1]:.6f},{bg[2]:.6f},{trace_anchor:.6e}\n")

    def log_residuals(self, t: float, frame: int, report: Optional[UpdateReport]):
        """Log per-anchor innovations of one update stage."""
        if not self.enabled or self.residual_csv is None or report is None:
            return
        with open(self.residual_csv, "a", newline="") as f:
            for rec in report.records:
                res = np.asarray(rec.residual).reshape(-1, 3)
                for j, r in enumerate(res):
                    f.write(f"{t:.6f},{frame},{rec.slot},{j},"
                            f"{r[0]:.6f},{r[1]:.6f},{r[2]:.6f},"
                            f"{rec.mahalanobis_sq:.6f},{int(rec.accepted)},{rec.reason}\n")


# =============================================================================
# Run Statistics
# =============================================================================

def print_summary(counters, restarts: int = 0, pose_csv: Optional[str] = None) -> Dict[str, float]:
    """
    Print end-of-run statistics.

    Args:
        counters: FilterCounters of the final filter context
        restarts: Number of re-initializations after divergence
        pose_csv: Optional pose.csv for drift statistics

    Returns:
        Dictionary of the printed statistics
    """
    stats = dict(vars(counters))
    stats["restarts"] = restarts

    print("\n=== Stereo SLAM Summary ===")
    print(f"Frames: {counters.frames}")
    print(f"Predictions: {counters.predictions} (skipped {counters.skipped_predictions}, "
          f"anomalies {counters.prediction_anomalies})")
    print(f"Updates: {counters.updates} (skipped {counters.skipped_updates}, "
          f"rejected anchor measurements {counters.rejected_measurements})")
    print(f"Anchors: {counters.admissions} admitted, {counters.evictions} evicted")
    if counters.boundary_anomalies:
        print(f"Boundary anomalies: {counters.boundary_anomalies}")
    if restarts:
        print(f"Restarts after divergence: {restarts}")

    if pose_csv is not None and os.path.exists(pose_csv):
        pose_df = pd.read_csv(pose_csv)
        if len(pose_df) > 0:
            drift = np.linalg.norm(pose_df[["px", "py", "pz"]].to_numpy(), axis=1)
            stats["final_drift_m"] = float(drift[-1])
            stats["max_drift_m"] = float(drift.max())
            print("Position (from origin):")
            print(f"  Final: {stats['final_drift_m']:.4f} m")
            print(f"  Max: {stats['max_drift_m']:.4f} m")
            print(f"  Mean active anchors: {pose_df['num_active'].mean():.1f}")
    return stats
