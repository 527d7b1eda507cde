#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Anchor Manager Module

Owns the anchor slot table: occupancy state, 3-D point estimates, and the
covariance block each Active anchor occupies. The estimator references
anchors only by slot index.

Slot state machine:
    EMPTY  -> ACTIVE            (admit: fresh valid measurement, block free)
    ACTIVE -> EMPTY             (evict: tracking lost, repeated rejection,
                                 estimate behind the camera)
    ACTIVE -> PENDING_REINIT    (tracking lost with a re-acquisition window)
    PENDING_REINIT -> ACTIVE    (re-acquired: treated as a fresh admission)
    PENDING_REINIT -> EMPTY     (window expired)

Covariance blocks:
    The covariance has a fixed number of anchor blocks
    (num_track_features // points_per_anchor). A block is allocated
    first-empty on admission; block k spans rows/cols
    12 + k*3*ppa ... 12 + (k+1)*3*ppa. Released blocks are zeroed so no
    correlation leaks into the next owner.

Author: Stereo SLAM project
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Set

import numpy as np

from .camera import predict_measurement, triangulate_to_world, world_to_camera
from .config import NUM_STATES, SLAMConfig


class AnchorStatus(IntEnum):
    """Occupancy state of an anchor slot."""
    EMPTY = 0
    ACTIVE = 1
    PENDING_REINIT = 2


class UpdateRequest(IntEnum):
    """Per-slot feedback handed back to the feature tracker."""
    IDLE = 0          # Nothing to do (slot empty, no capacity)
    KEEP = 1          # Keep tracking the current feature
    REQUEST_NEW = 2   # Slot empty and a covariance block is free


class AnchorTransitionError(RuntimeError):
    """Illegal anchor slot state transition (internal bug)."""


_ALLOWED_TRANSITIONS = {
    AnchorStatus.EMPTY: {AnchorStatus.ACTIVE},
    AnchorStatus.ACTIVE: {AnchorStatus.EMPTY, AnchorStatus.PENDING_REINIT},
    AnchorStatus.PENDING_REINIT: {AnchorStatus.ACTIVE, AnchorStatus.EMPTY},
}


@dataclass
class AnchorSlot:
    """
    One tracked landmark.

    Attributes:
        index: Tracker slot index
        status: Occupancy state
        points: (ppa, 3) world-frame point estimates
        block: Covariance block index (None when no block is owned)
        missed_frames: Consecutive frames without a valid measurement
        consecutive_rejections: Consecutive frames rejected by update gating
        age: Frames since admission
    """
    index: int
    status: AnchorStatus = AnchorStatus.EMPTY
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    block: Optional[int] = None
    missed_frames: int = 0
    consecutive_rejections: int = 0
    age: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AnchorStatus.ACTIVE


@dataclass
class BookkeepingEvents:
    """Slot indices touched by one bookkeeping pass."""
    admitted: List[int] = field(default_factory=list)
    reacquired: List[int] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)
    evicted: Dict[int, str] = field(default_factory=dict)


class AnchorManager:
    """
    Anchor slot table with first-empty covariance block allocation.

    Methods that touch the covariance mutate the array passed in.
    """

    def __init__(self, config: SLAMConfig):
        self.config = config
        self.num_anchors = config.num_anchors
        self.points_per_anchor = config.num_points_per_anchor
        self.block_size = config.anchor_state_size
        self.slots = [
            AnchorSlot(index=i, points=np.zeros((self.points_per_anchor, 3)))
            for i in range(self.num_anchors)
        ]
        self.block_owner: List[Optional[int]] = [None] * config.anchor_block_capacity

    def copy(self) -> "AnchorManager":
        other = AnchorManager.__new__(AnchorManager)
        other.config = self.config
        other.num_anchors = self.num_anchors
        other.points_per_anchor = self.points_per_anchor
        other.block_size = self.block_size
        other.slots = [
            AnchorSlot(index=s.index, status=s.status, points=s.points.copy(),
                       block=s.block, missed_frames=s.missed_frames,
                       consecutive_rejections=s.consecutive_rejections, age=s.age)
            for s in self.slots
        ]
        other.block_owner = list(self.block_owner)
        return other

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def num_active(self) -> int:
        return sum(1 for s in self.slots if s.status == AnchorStatus.ACTIVE)

    @property
    def num_free_blocks(self) -> int:
        return sum(1 for owner in self.block_owner if owner is None)

    def active_slots(self) -> List[AnchorSlot]:
        return [s for s in self.slots if s.status == AnchorStatus.ACTIVE]

    def statuses(self) -> List[AnchorStatus]:
        return [s.status for s in self.slots]

    def block_offset(self, slot: AnchorSlot) -> Optional[int]:
        """First covariance row of the slot's block (None if not in the covariance)."""
        if slot.block is None or self.config.fix_features:
            return None
        return NUM_STATES + slot.block * self.block_size

    def anchor_positions(self) -> np.ndarray:
        """(num_anchors, ppa, 3) point estimates, NaN for Empty slots."""
        out = np.full((self.num_anchors, self.points_per_anchor, 3), np.nan)
        for s in self.slots:
            if s.status != AnchorStatus.EMPTY:
                out[s.index] = s.points
        return out

    def predicted_measurements(self, position: np.ndarray, q: np.ndarray) -> np.ndarray:
        """
        Expected [u, v, d] of every Active anchor point.

        NaN for non-Active slots and for points behind the camera.
        """
        out = np.full((self.num_anchors, self.points_per_anchor, 3), np.nan)
        for s in self.active_slots():
            for j, p_w in enumerate(s.points):
                z_hat, _, _, depth = predict_measurement(
                    p_w, position, q, self.config.R_bc, self.config.camera_params)
                if depth > 0.0:
                    out[s.index, j] = z_hat
        return out

    def update_requests(self) -> np.ndarray:
        """Per-slot UpdateRequest codes for the tracker."""
        free = self.num_free_blocks
        codes = np.zeros(self.num_anchors, dtype=int)
        for s in self.slots:
            if s.status == AnchorStatus.EMPTY:
                codes[s.index] = UpdateRequest.REQUEST_NEW if free > 0 else UpdateRequest.IDLE
            else:
                codes[s.index] = UpdateRequest.KEEP
        return codes

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, slot: AnchorSlot, new_status: AnchorStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[slot.status]:
            raise AnchorTransitionError(
                f"anchor {slot.index}: {slot.status.name} -> {new_status.name} not allowed")
        slot.status = new_status

    def _allocate_block(self, slot_index: int) -> Optional[int]:
        for k, owner in enumerate(self.block_owner):
            if owner is None:
                self.block_owner[k] = slot_index
                return k
        return None

    def _clear_block(self, slot: AnchorSlot, P: Optional[np.ndarray]) -> None:
        offset = self.block_offset(slot)
        if offset is not None and P is not None:
            P[offset:offset + self.block_size, :] = 0.0
            P[:, offset:offset + self.block_size] = 0.0

    def _release_block(self, slot: AnchorSlot, P: Optional[np.ndarray]) -> None:
        self._clear_block(slot, P)
        if slot.block is not None:
            self.block_owner[slot.block] = None
        slot.block = None

    def _initialize_point_block(self, slot: AnchorSlot, z: np.ndarray, position: np.ndarray,
                                q: np.ndarray, P: np.ndarray) -> None:
        """Triangulate the slot's points and fill its covariance block."""
        cfg = self.config
        n = NUM_STATES
        J_x = np.zeros((self.block_size, n))
        R_pts = np.zeros((self.block_size, self.block_size))
        R_z = cfg.measurement_noise

        for j in range(self.points_per_anchor):
            p_w, J_nav, J_z = triangulate_to_world(z[j], position, q, cfg.R_cb, cfg.camera_params)
            slot.points[j] = p_w
            r = slice(3 * j, 3 * j + 3)
            J_x[r, 0:6] = J_nav
            R_pts[r, r] = J_z @ R_z @ J_z.T

        offset = self.block_offset(slot)
        if offset is None:
            return

        blk = slice(offset, offset + self.block_size)
        cross = J_x @ P[:n, :]
        P[blk, :] = cross
        P[:, blk] = cross.T
        P[blk, blk] = J_x @ P[:n, :n] @ J_x.T + R_pts

    def measurement_admissible(self, z: np.ndarray) -> bool:
        """Sanity check for a new anchor: finite and positive disparity for every point."""
        z = np.asarray(z, dtype=float)
        return bool(np.all(np.isfinite(z)) and np.all(z[:, 2] > 0.0))

    def admit(self, index: int, z: np.ndarray, position: np.ndarray, q: np.ndarray,
              P: Optional[np.ndarray]) -> bool:
        """
        Admit a fresh measurement into an Empty slot.

        Args:
            index: Slot index
            z: (ppa, 3) stereo measurements [u, v, d]
            position: Body position in world frame
            q: Body-to-world quaternion
            P: Covariance, mutated in place (None with fix_features)

        Returns:
            True if the slot became Active
        """
        slot = self.slots[index]
        if slot.status != AnchorStatus.EMPTY:
            raise AnchorTransitionError(f"anchor {index}: admit on {slot.status.name} slot")
        if not self.measurement_admissible(z):
            return False

        block = self._allocate_block(index)
        if block is None:
            if self.config.verbose:
                print(f"[ANCHOR] slot {index}: no free covariance block "
                      f"({self.num_active} active), admission deferred")
            return False

        slot.block = block
        self._transition(slot, AnchorStatus.ACTIVE)
        self._initialize_point_block(slot, np.asarray(z, dtype=float), position, q, P)
        slot.missed_frames = 0
        slot.consecutive_rejections = 0
        slot.age = 0
        return True

    def reacquire(self, index: int, z: np.ndarray, position: np.ndarray, q: np.ndarray,
                  P: Optional[np.ndarray]) -> bool:
        """
        Re-acquire a PendingReinit slot as a fresh admission.

        The old block is cleared (no carried-over covariance) and the points
        are re-triangulated. An inadmissible measurement leaves the slot
        pending.
        """
        slot = self.slots[index]
        if slot.status != AnchorStatus.PENDING_REINIT:
            raise AnchorTransitionError(f"anchor {index}: reacquire on {slot.status.name} slot")
        if not self.measurement_admissible(z):
            return False

        self._clear_block(slot, P)
        self._transition(slot, AnchorStatus.ACTIVE)
        self._initialize_point_block(slot, np.asarray(z, dtype=float), position, q, P)
        slot.missed_frames = 0
        slot.consecutive_rejections = 0
        slot.age = 0
        return True

    def mark_pending(self, index: int) -> None:
        slot = self.slots[index]
        self._transition(slot, AnchorStatus.PENDING_REINIT)
        slot.missed_frames = 1

    def evict(self, index: int, P: Optional[np.ndarray], reason: str = "") -> None:
        """Mark the slot Empty, zero its covariance rows/cols and release its block."""
        slot = self.slots[index]
        self._transition(slot, AnchorStatus.EMPTY)
        self._release_block(slot, P)
        slot.points[:] = 0.0
        slot.missed_frames = 0
        slot.consecutive_rejections = 0
        slot.age = 0
        if self.config.verbose or reason not in ("", "tracking_lost"):
            print(f"[ANCHOR] evicted slot {index} ({reason or 'unspecified'})")

    def apply_correction(self, dx_anchors: np.ndarray) -> None:
        """Add the anchor part of an error-state correction to owned points."""
        for s in self.slots:
            if s.block is None or s.status == AnchorStatus.EMPTY:
                continue
            start = s.block * self.block_size
            s.points += dx_anchors[start:start + self.block_size].reshape(-1, 3)

    # ------------------------------------------------------------------
    # Per-frame bookkeeping
    # ------------------------------------------------------------------

    def manage(self, position: np.ndarray, q: np.ndarray, P: Optional[np.ndarray],
               measurements: np.ndarray, validity: np.ndarray,
               rejected: Set[int]) -> BookkeepingEvents:
        """
        Admission and eviction for one frame, after the update stage.

        Order: admissions (Empty + valid) and re-acquisitions
        (PendingReinit + valid) first, then loss handling for the remaining
        slots.

        Args:
            position: Body position in world frame (post-update)
            q: Body-to-world quaternion (post-update)
            P: Covariance, mutated in place (None with fix_features)
            measurements: (num_anchors, ppa, 3)
            validity: (num_anchors,) bool
            rejected: Slots rejected by this frame's update gating

        Returns:
            BookkeepingEvents
        """
        cfg = self.config
        events = BookkeepingEvents()
        fresh = set()

        for s in self.slots:
            if not validity[s.index]:
                continue
            if s.status == AnchorStatus.EMPTY:
                if self.admit(s.index, measurements[s.index], position, q, P):
                    events.admitted.append(s.index)
                    fresh.add(s.index)
            elif s.status == AnchorStatus.PENDING_REINIT:
                if self.reacquire(s.index, measurements[s.index], position, q, P):
                    events.reacquired.append(s.index)
                    fresh.add(s.index)

        for s in self.slots:
            if s.index in fresh or s.status == AnchorStatus.EMPTY:
                continue

            if s.status == AnchorStatus.PENDING_REINIT:
                s.missed_frames += 1
                if s.missed_frames > cfg.reinit_window_frames:
                    self.evict(s.index, P, "reinit_window_expired")
                    events.evicted[s.index] = "reinit_window_expired"
                continue

            if not validity[s.index]:
                if cfg.reinit_window_frames > 0:
                    self.mark_pending(s.index)
                    events.pending.append(s.index)
                else:
                    self.evict(s.index, P, "tracking_lost")
                    events.evicted[s.index] = "tracking_lost"
                continue

            s.age += 1
            if s.index in rejected:
                s.consecutive_rejections += 1
            else:
                s.consecutive_rejections = 0

            if s.consecutive_rejections >= cfg.max_consecutive_rejections:
                self.evict(s.index, P, "repeated_rejection")
                events.evicted[s.index] = "repeated_rejection"
                continue

            for p_w in s.points:
                if world_to_camera(p_w, position, q, cfg.R_bc)[2] <= 0.0:
                    self.evict(s.index, P, "behind_camera")
                    events.evicted[s.index] = "behind_camera"
                    break

        return events
