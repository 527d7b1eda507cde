#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stereo SLAM Data Loaders Module

Sensor records and the frames CSV used to replay synchronized
inertial + stereo-tracker data through the filter.
"""

import os
import re
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd

from .config import IMU_AXIS_SIGNS


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class IMURecord:
    """Single IMU measurement."""
    t: float  # timestamp (seconds)
    ang: np.ndarray  # angular velocity [wx,wy,wz] rad/s
    lin: np.ndarray  # linear acceleration [ax,ay,az] m/s²


@dataclass
class MagRecord:
    """Single magnetometer measurement."""
    t: float  # timestamp (seconds)
    mag: np.ndarray  # magnetic field [x,y,z] in sensor frame


@dataclass
class FrameRecord:
    """
    One synchronized frame as handed to SLAMFilter.step().

    Attributes:
        t: Frame timestamp (seconds)
        dt: Elapsed time since the previous frame (seconds)
        inertial: [ω(3), a(3), m(3)] already in the body convention
        measurements: (num_anchors, ppa, 3) stereo measurements [u, v, d]
        validity: (num_anchors,) tracker flags
    """
    t: float
    dt: float
    inertial: np.ndarray
    measurements: np.ndarray
    validity: np.ndarray


def inertial_vector_from_imu(imu: IMURecord, mag: Optional[MagRecord] = None,
                             axis_signs=IMU_AXIS_SIGNS) -> np.ndarray:
    """
    Build the 9-element inertial vector from raw sensor records.

    The IMU driver reports y and z in a mirrored frame; axis_signs maps
    [gyro(3), accel(3), mag(3)] into the body convention (default
    +ωx, -ωy, +ωz, +ax, -ay, -az, +m).

    Args:
        imu: IMU record
        mag: Magnetometer record (zeros if absent)
        axis_signs: 9 per-component signs

    Returns:
        [ω(3), a(3), m(3)]
    """
    mag_vec = mag.mag if mag is not None else np.zeros(3)
    raw = np.concatenate([np.asarray(imu.ang, dtype=float),
                          np.asarray(imu.lin, dtype=float),
                          np.asarray(mag_vec, dtype=float)])
    return raw * np.asarray(axis_signs, dtype=float)


# =============================================================================
# Loader Functions
# =============================================================================

_ANCHOR_COL = re.compile(r"^z(\d+)_(\d+)_([uvd])$")


def load_frames_csv(path: str, num_anchors: int, points_per_anchor: int = 1,
                    apply_axis_signs: bool = False, axis_signs=IMU_AXIS_SIGNS) -> List[FrameRecord]:
    """
    Load synchronized frames from a wide CSV.

    Required columns:
        t, gyro_x, gyro_y, gyro_z, acc_x, acc_y, acc_z
    Optional columns:
        mag_x, mag_y, mag_z           (zeros if absent)
        z{i}_{j}_u, z{i}_{j}_v, z{i}_{j}_d, valid{i}
                                      (anchor i, point j; missing anchors are invalid)

    dt is taken from consecutive timestamps (0 for the first frame).

    Args:
        path: CSV path
        num_anchors: Anchor slots expected by the filter
        points_per_anchor: Points per anchor
        apply_axis_signs: Treat the inertial columns as raw driver output
            and apply axis_signs (see inertial_vector_from_imu)
        axis_signs: Per-component signs for the raw inertial vector

    Returns:
        List of FrameRecord sorted by time
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Frames CSV not found: {path}")

    df = pd.read_csv(path)

    cols = ["t", "gyro_x", "gyro_y", "gyro_z", "acc_x", "acc_y", "acc_z"]
    for c in cols:
        if c not in df.columns:
            raise ValueError(f"Frames CSV missing column: {c}")

    for c in df.columns:
        m = _ANCHOR_COL.match(c)
        if m and (int(m.group(1)) >= num_anchors or int(m.group(2)) >= points_per_anchor):
            print(f"[FRAMES] WARNING: column {c} outside {num_anchors} anchors x "
                  f"{points_per_anchor} points, ignored")

    df = df.sort_values("t").reset_index(drop=True)
    t = df["t"].to_numpy(dtype=float)
    dts = np.concatenate([[0.0], np.diff(t)]) if len(t) else np.zeros(0)

    gyro = df[["gyro_x", "gyro_y", "gyro_z"]].to_numpy(dtype=float)
    acc = df[["acc_x", "acc_y", "acc_z"]].to_numpy(dtype=float)
    mag_cols = ["mag_x", "mag_y", "mag_z"]
    if all(c in df.columns for c in mag_cols):
        mag = df[mag_cols].to_numpy(dtype=float)
    else:
        mag = np.zeros((len(df), 3))

    z = np.zeros((len(df), num_anchors, points_per_anchor, 3))
    valid = np.zeros((len(df), num_anchors), dtype=bool)
    for i in range(num_anchors):
        vcol = f"valid{i}"
        complete = True
        for j in range(points_per_anchor):
            for k, comp in enumerate("uvd"):
                col = f"z{i}_{j}_{comp}"
                if col in df.columns:
                    z[:, i, j, k] = df[col].to_numpy(dtype=float)
                else:
                    complete = False
        if vcol in df.columns and complete:
            valid[:, i] = df[vcol].fillna(0).to_numpy() != 0

    signs = axis_signs if apply_axis_signs else np.ones(9)
    recs = []
    for n in range(len(df)):
        imu = IMURecord(t=float(t[n]), ang=gyro[n], lin=acc[n])
        inertial = inertial_vector_from_imu(imu, MagRecord(t=float(t[n]), mag=mag[n]), signs)
        recs.append(FrameRecord(t=float(t[n]), dt=float(dts[n]), inertial=inertial,
                                measurements=z[n], validity=valid[n]))

    print(f"[FRAMES] Loaded {len(recs)} frames, {int(valid.any(axis=0).sum())} anchors "
          f"observed at least once")
    return recs


def frames_to_dataframe(frames: List[FrameRecord]) -> pd.DataFrame:
    """Inverse of load_frames_csv (used to export simulated runs)."""
    rows = []
    for fr in frames:
        row = {"t": fr.t}
        for k, name in enumerate(["gyro_x", "gyro_y", "gyro_z", "acc_x", "acc_y", "acc_z",
                                  "mag_x", "mag_y", "mag_z"]):
            row[name] = fr.inertial[k]
        for i in range(fr.measurements.shape[0]):
            for j in range(fr.measurements.shape[1]):
                for k, comp in enumerate("uvd"):
                    row[f"z{i}_{j}_{comp}"] = fr.measurements[i, j, k]
            row[f"valid{i}"] = int(fr.validity[i])
        rows.append(row)
    return pd.DataFrame(rows)
