"""
Stereo Measurement Update for the SLAM Filter

Per frame, every Active anchor whose tracker flag is set is linearized
through the stereo projection model, gated, and the survivors are fused
in one joint Kalman correction:

    K = P H^T (H P H^T + R)^-1

Gating (per anchor, failures are excluded for this frame only):
- negative_depth: expected depth or observed disparity <= 0
- innovation_gate: any |residual| component above max_innovation_px
- chi2_gate: Mahalanobis distance above the chi-square quantile

If fewer than min_feature_threshold anchors survive, the correction is
skipped for the whole frame (prediction-only frame).

Author: Stereo SLAM project
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from scipy.stats import chi2

from .camera import predict_measurement
from .ekf import joint_kalman_correction
from .math_utils import mahalanobis_squared
from .numerical_checks import check_state_validity
from .state_manager import FilterContext, inject_error_state, symmetrize_covariance


@dataclass(frozen=True)
class AnchorInnovationRecord:
    """Innovation of one anchor in one frame."""

    slot: int
    z: np.ndarray
    z_hat: np.ndarray
    residual: np.ndarray
    mahalanobis_sq: float
    accepted: bool
    reason: str = ""


@dataclass
class UpdateReport:
    """Outcome of the measurement update stage for one frame."""

    applied: bool = False
    skipped_reason: Optional[str] = None
    num_candidates: int = 0
    accepted: List[int] = field(default_factory=list)
    rejected: Dict[int, str] = field(default_factory=dict)
    records: List[AnchorInnovationRecord] = field(default_factory=list)
    log_likelihood: Optional[float] = None


def chi2_threshold(probability: float, dof: int) -> float:
    """Chi-square gate for a dof-dimensional innovation."""
    return float(chi2.ppf(probability, dof))


def _anchor_jacobian(ctx: FilterContext, slot, z: np.ndarray):
    """
    Expected measurement, residual and stacked Jacobian of one anchor.

    Returns:
        (z_hat, residual, H_i, reason) where reason is non-empty when the
        anchor must be rejected before the statistical gates.
    """
    cfg = ctx.config
    anchors = ctx.anchors
    ppa = anchors.points_per_anchor
    n = ctx.P.shape[0]
    offset = anchors.block_offset(slot)

    z_hat = np.zeros((ppa, 3))
    H_i = np.zeros((3 * ppa, n))

    if not np.all(np.isfinite(z)):
        return z_hat, np.zeros(3 * ppa), H_i, "non_finite"

    for j in range(ppa):
        zj_hat, H_nav, H_pt, depth = predict_measurement(
            slot.points[j], ctx.position, ctx.quaternion, cfg.R_bc, cfg.camera_params)
        if depth <= 0.0 or z[j, 2] <= 0.0:
            return z_hat, np.zeros(3 * ppa), H_i, "negative_depth"
        z_hat[j] = zj_hat
        rows = slice(3 * j, 3 * j + 3)
        H_i[rows, 0:6] = H_nav
        if offset is not None:
            H_i[rows, offset + 3 * j:offset + 3 * j + 3] = H_pt

    residual = (z - z_hat).reshape(-1)
    if np.any(np.abs(residual) > cfg.max_innovation_px):
        return z_hat, residual, H_i, "innovation_gate"
    return z_hat, residual, H_i, ""


def apply_stereo_update(ctx: FilterContext, measurements: np.ndarray,
                        validity: np.ndarray) -> UpdateReport:
    """
    Measurement update stage.

    Args:
        ctx: Filter context (mutated when the correction is applied)
        measurements: (num_anchors, ppa, 3) stereo measurements [u, v, d]
        validity: (num_anchors,) tracker flags

    Returns:
        UpdateReport; rejected anchors are listed by slot with a reason
    """
    cfg = ctx.config
    report = UpdateReport()
    ppa = ctx.anchors.points_per_anchor
    R_point = cfg.measurement_noise
    R_i = np.kron(np.eye(ppa), R_point)
    gate = chi2_threshold(cfg.chi2_gate_probability, 3 * ppa) if ppa else 0.0

    H_rows, y_rows = [], []

    for slot in ctx.anchors.active_slots():
        if not validity[slot.index]:
            continue
        report.num_candidates += 1
        z = np.asarray(measurements[slot.index], dtype=float)

        z_hat, residual, H_i, reason = _anchor_jacobian(ctx, slot, z)
        d2 = float("nan")
        if not reason:
            S_i = H_i @ ctx.P @ H_i.T + R_i
            d2 = mahalanobis_squared(residual, S_i)
            if d2 > gate:
                reason = "chi2_gate"

        report.records.append(AnchorInnovationRecord(
            slot=slot.index, z=z.copy(), z_hat=z_hat, residual=residual,
            mahalanobis_sq=d2, accepted=not reason, reason=reason))

        if reason:
            report.rejected[slot.index] = reason
            ctx.counters.rejected_measurements += 1
            print(f"[STEREO] frame={ctx.frame_index} anchor {slot.index} rejected: {reason}"
                  + (f" (d²={d2:.2f} > {gate:.2f})" if reason == "chi2_gate" else ""))
            continue

        report.accepted.append(slot.index)
        H_rows.append(H_i)
        y_rows.append(residual)

    if not report.accepted or len(report.accepted) < cfg.min_feature_threshold:
        report.skipped_reason = "min_feature_threshold" if report.accepted else "no_measurements"
        ctx.counters.skipped_updates += 1
        if cfg.verbose:
            print(f"[STEREO] frame={ctx.frame_index}: {len(report.accepted)} anchors survived "
                  f"(< {cfg.min_feature_threshold}), update skipped")
        return report

    m = len(report.accepted)
    H = np.vstack(H_rows)
    y = np.concatenate(y_rows)
    R = np.kron(np.eye(m), R_i)

    correction = joint_kalman_correction(ctx.P, H, R, y)
    if correction is None:
        report.skipped_reason = "singular_innovation"
        ctx.counters.skipped_updates += 1
        return report

    ctx.P = correction.P
    inject_error_state(ctx, correction.dx)
    symmetrize_covariance(ctx, label="P_update")
    check_state_validity(ctx.xt, frame=ctx.frame_index)

    report.applied = True
    report.log_likelihood = correction.log_likelihood
    ctx.counters.updates += 1

    if cfg.verbose:
        dx = correction.dx
        print(f"[STEREO] frame={ctx.frame_index}: fused {m} anchors, "
              f"|δp|={np.linalg.norm(dx[0:3]):.4f} m, "
              f"|δθ|={np.degrees(np.linalg.norm(dx[3:6])):.3f}°, "
              f"logL={report.log_likelihood:.2f}")
    return report

