"""
Relocalization - finds where a saved route starts when replaying it.

Routes saved with an environment snapshot are replayed from the physical spot
they were recorded at: the snapshot seeds the sensor, and once tracking is
normal again the start anchor is looked up. Routes without a snapshot (or
whose anchor cannot be found) are placed in front of the walker instead.

    NOT_STARTED -> AWAITING_TRACKING_NORMAL -> RESOLVED | FALLBACK_USED
    NOT_STARTED -> FALLBACK_USED                      (no snapshot)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from geometry import Pose, Vec3, degrees, offset_forward, yaw_of
from interfaces import TrackingQuality, TrackingSensor
from metrics import get_metrics
from nav_config import DEFAULT_CONFIG, NavigationConfig
from route import Route

logger = logging.getLogger(__name__)


class RelocalizationState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_TRACKING_NORMAL = "awaiting_tracking_normal"
    RESOLVED = "resolved"
    FALLBACK_USED = "fallback_used"

    @property
    def is_terminal(self) -> bool:
        return self in (RelocalizationState.RESOLVED, RelocalizationState.FALLBACK_USED)


@dataclass(frozen=True, slots=True)
class Placement:
    """Start pose for reconstructing a replayed route."""

    position: Vec3
    heading: float
    source: RelocalizationState


@dataclass
class ReplaySession:
    """One replay request. A new request gets a new session."""

    pending_route: Route
    state: RelocalizationState = RelocalizationState.NOT_STARTED
    placement: Placement | None = None
    placement_deferred: bool = False
    history: list[RelocalizationState] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_awaiting_relocalization(self) -> bool:
        return self.state is RelocalizationState.AWAITING_TRACKING_NORMAL

    def _enter(self, state: RelocalizationState) -> None:
        self.state = state
        self.history.append(state)


PlacementCallback = Callable[[ReplaySession, Placement], None]
StatusCallback = Callable[[str], None]

STATUS_RELOCALIZING = "Re-establishing reference... move the sensor"
STATUS_WAITING_FOR_POSE = "Waiting for tracking..."


class RelocalizationProtocol:
    """
    Drives one replay request at a time to a start placement.

    Every session delivers its placement through `on_placement` exactly once.
    After `cancel()` or a newer `start()`, events meant for the old session
    are ignored.
    """

    def __init__(
        self,
        sensor: TrackingSensor,
        on_placement: PlacementCallback,
        on_status: StatusCallback | None = None,
        config: NavigationConfig = DEFAULT_CONFIG,
    ):
        self.sensor = sensor
        self.on_placement = on_placement
        self.on_status = on_status or (lambda message: None)
        self.config = config
        self.session: ReplaySession | None = None

    @property
    def state(self) -> RelocalizationState:
        if self.session is None:
            return RelocalizationState.NOT_STARTED
        return self.session.state

    def start(self, route: Route) -> ReplaySession:
        """Begin placing `route`; replaces any earlier request."""
        session = ReplaySession(pending_route=route)
        self.session = session
        get_metrics().record_replay()

        if route.environment_snapshot:
            logger.info("Seeding tracker with %d-byte snapshot for %s", len(route.environment_snapshot), route.name)
            self.sensor.start_run(route.environment_snapshot)
            session._enter(RelocalizationState.AWAITING_TRACKING_NORMAL)
            self.on_status(STATUS_RELOCALIZING)
            return session

        logger.info("Route %s has no snapshot, using fallback placement", route.name)
        self._use_fallback(session)
        return session

    def cancel(self) -> None:
        if self.session is not None:
            logger.info("Replay %s abandoned in state %s", self.session.session_id, self.session.state.value)
        self.session = None

    # --- Sensor events ---

    def on_tracking_quality(self, quality: TrackingQuality) -> None:
        session = self.session
        if session is None or not session.is_awaiting_relocalization:
            return
        if not quality.is_normal:
            return

        key = session.pending_route.start_anchor_key
        anchor = self.sensor.find_anchor(key) if key else None
        if anchor is None:
            logger.warning("Start anchor %s not found after relocalization, using fallback", key)
            self._use_fallback(session)
            return

        logger.info("Relocalized on start anchor %s", key)
        session._enter(RelocalizationState.RESOLVED)
        get_metrics().record_relocalization("resolved")
        placement = Placement(
            position=anchor.position.lowered(self.config.positioning.floor_offset),
            heading=yaw_of(anchor),
            source=RelocalizationState.RESOLVED,
        )
        self._deliver(session, placement)

    def on_pose_tick(self, pose: Pose | None) -> None:
        session = self.session
        if session is None or not session.placement_deferred or pose is None:
            return
        self._place_in_front(session, pose)

    # --- Placement ---

    def _use_fallback(self, session: ReplaySession) -> None:
        session._enter(RelocalizationState.FALLBACK_USED)
        get_metrics().record_relocalization("fallback")
        pose = self.sensor.current_pose()
        if pose is None:
            session.placement_deferred = True
            logger.info("No pose for fallback placement yet; deferring")
            self.on_status(STATUS_WAITING_FOR_POSE)
            return
        self._place_in_front(session, pose)

    def _place_in_front(self, session: ReplaySession, pose: Pose) -> None:
        heading = yaw_of(pose)
        positioning = self.config.positioning
        position = offset_forward(
            pose.position,
            heading,
            positioning.fallback_forward_distance,
            drop=positioning.floor_offset,
        )
        session.placement_deferred = False
        self._deliver(
            session,
            Placement(position=position, heading=heading, source=RelocalizationState.FALLBACK_USED),
        )

    def _deliver(self, session: ReplaySession, placement: Placement) -> None:
        if session.placement is not None or session is not self.session:
            return
        session.placement = placement
        logger.info(
            "Replay start placed at (%.2f, %.2f, %.2f), heading %.1f deg (%s)",
            placement.position.x, placement.position.y, placement.position.z,
            degrees(placement.heading), placement.source.value,
        )
        self.on_placement(session, placement)
