"""
State Manager for the Stereo SLAM Filter

This module handles:
- Navigation state layout and initialization (canonical rest pose)
- Initial error-state covariance from configured sigmas
- FilterContext: the single object holding state, covariance and anchors
- Error-state injection and orientation renormalization
- Covariance symmetrization

State Layout (13 elements):
    idx 0..2   : p (position) [m]
    idx 3..6   : q (quaternion w,x,y,z, body-to-world)
    idx 7..9   : v (velocity) [m/s]
    idx 10..12 : b_g (gyro bias) [rad/s]

Error State (12 + 3*ppa*B for B anchor covariance blocks):
    idx 0..2   : δp (position error)
    idx 3..5   : δθ (rotation error - 3D!)
    idx 6..8   : δv (velocity error)
    idx 9..11  : δbg (gyro bias error)
    idx 12+3*ppa*k : anchor block k point errors

Author: Stereo SLAM project
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .anchor_manager import AnchorManager
from .config import NUM_STATES, NUM_STATES_XT, SLAMConfig
from .ekf import ensure_covariance_valid
from .math_utils import IDENTITY_QUAT, quat_boxplus, skew_symmetric
from .numerical_checks import check_quaternion

# Stored navigation state
POS = slice(0, 3)
QUAT = slice(3, 7)
VEL = slice(7, 10)
BG = slice(10, 13)

# Navigation error state
ERR_POS = slice(0, 3)
ERR_THETA = slice(3, 6)
ERR_VEL = slice(6, 9)
ERR_BG = slice(9, 12)


@dataclass
class FilterCounters:
    """Per-run counters reported in summaries."""

    frames: int = 0
    predictions: int = 0
    skipped_predictions: int = 0
    prediction_anomalies: int = 0
    updates: int = 0
    skipped_updates: int = 0
    rejected_measurements: int = 0
    admissions: int = 0
    evictions: int = 0
    boundary_anomalies: int = 0


@dataclass
class FilterContext:
    """
    Everything the estimator mutates during a frame.

    Owned by the orchestrator and passed to each stage; there is no module
    level filter state.
    """

    config: SLAMConfig
    xt: np.ndarray
    P: np.ndarray
    anchors: AnchorManager
    frame_index: int = 0
    counters: FilterCounters = field(default_factory=FilterCounters)
    last_magnetic_field: np.ndarray = field(default_factory=lambda: np.zeros(3))

    @property
    def position(self) -> np.ndarray:
        return self.xt[POS]

    @property
    def quaternion(self) -> np.ndarray:
        return self.xt[QUAT]

    @property
    def velocity(self) -> np.ndarray:
        return self.xt[VEL]

    @property
    def gyro_bias(self) -> np.ndarray:
        return self.xt[BG]

    def copy(self) -> "FilterContext":
        """Working copy for one frame; the (immutable) config is shared."""
        return FilterContext(
            config=self.config,
            xt=self.xt.copy(),
            P=self.P.copy(),
            anchors=self.anchors.copy(),
            frame_index=self.frame_index,
            counters=FilterCounters(**vars(self.counters)),
            last_magnetic_field=self.last_magnetic_field.copy(),
        )


def initial_state() -> np.ndarray:
    """Canonical rest pose: zero position/velocity/bias, identity orientation."""
    xt = np.zeros(NUM_STATES_XT, dtype=float)
    xt[QUAT] = IDENTITY_QUAT
    return xt


def initial_covariance(config: SLAMConfig) -> np.ndarray:
    """
    Diagonal navigation covariance inside the full fixed-size matrix.

    Anchor blocks start at exactly zero (unowned).
    """
    sigma_p, sigma_th, sigma_v, sigma_bg = config.initial_sigmas
    P = np.zeros((config.covariance_dim, config.covariance_dim), dtype=float)
    P[ERR_POS, ERR_POS] = np.eye(3) * sigma_p ** 2
    P[ERR_THETA, ERR_THETA] = np.eye(3) * sigma_th ** 2
    P[ERR_VEL, ERR_VEL] = np.eye(3) * sigma_v ** 2
    P[ERR_BG, ERR_BG] = np.eye(3) * sigma_bg ** 2
    return P


def initialize_filter_context(config: SLAMConfig) -> FilterContext:
    """
    Build a fresh FilterContext for a validated configuration.

    Args:
        config: Validated SLAMConfig

    Returns:
        FilterContext at the rest pose with all anchor slots Empty
    """
    ctx = FilterContext(
        config=config,
        xt=initial_state(),
        P=initial_covariance(config),
        anchors=AnchorManager(config),
    )

    if config.verbose:
        print(f"[INIT] Stereo SLAM filter: {NUM_STATES} nav error states, "
              f"{NUM_STATES_XT} stored, {config.num_anchors} anchors x "
              f"{config.num_points_per_anchor} pts, {config.anchor_block_capacity} "
              f"covariance blocks, P dim={config.covariance_dim}, "
              f"fix_features={config.fix_features}")
    return ctx


def renormalize_orientation(ctx: FilterContext, dtheta: Optional[np.ndarray] = None) -> None:
    """
    Rescale the quaternion to unit norm and reproject the attitude covariance.

    When an attitude correction dtheta was just injected, the error state is
    reset with G = I - [dtheta/2]x applied to the attitude rows and columns
    (first-order Jacobian of the reset).

    Raises:
        EstimatorDivergedError: if the quaternion is non-finite or zero norm
    """
    ctx.xt[QUAT] = check_quaternion(ctx.xt[QUAT], name="q", frame=ctx.frame_index)

    if dtheta is None:
        return

    G = np.eye(3) - skew_symmetric(0.5 * np.asarray(dtheta, dtype=float))
    ctx.P[ERR_THETA, :] = G @ ctx.P[ERR_THETA, :]
    ctx.P[:, ERR_THETA] = ctx.P[:, ERR_THETA] @ G.T


def symmetrize_covariance(ctx: FilterContext, label: str = "P") -> None:
    """Average P with its transpose and run the finiteness and PSD checks."""
    ctx.P = ensure_covariance_valid(ctx.P, label=label, frame=ctx.frame_index)


def inject_error_state(ctx: FilterContext, dx: np.ndarray) -> None:
    """
    Apply an error-state correction to the nominal state.

    Additive for position, velocity, bias and anchor points; right
    multiplicative for orientation (q <- q ⊗ Exp(δθ)).
    """
    dx = np.asarray(dx, dtype=float).reshape(-1)
    dtheta = dx[ERR_THETA]

    ctx.xt[POS] += dx[ERR_POS]
    ctx.xt[VEL] += dx[ERR_VEL]
    ctx.xt[BG] += dx[ERR_BG]
    ctx.xt[QUAT] = quat_boxplus(ctx.xt[QUAT], dtheta)

    if not ctx.config.fix_features and dx.size > NUM_STATES:
        ctx.anchors.apply_correction(dx[NUM_STATES:])

    renormalize_orientation(ctx, dtheta)
