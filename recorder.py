"""
Path Recorder - turns a live pose stream into route items.

Recording state per session:
- start pose/heading (anchored through the sensor so replay can re-find it)
- last turn pose + heading (distance/angle of the next Move are measured from it)
- last trail sample (live ribbon cadence)

Nothing else is accumulated per tick, so a session costs the same after an
hour of walking as after a second.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from errors import NotTracking, NothingRecorded, SnapshotUnavailable
from geometry import Pose, Vec3, degrees, normalize_angle, planar_distance, yaw_of
from interfaces import (
    RECORDING_GROUP,
    GuardedRenderer,
    MarkerKind,
    Renderer,
    TrackingSensor,
    TrailColor,
)
from metrics import get_metrics
from nav_config import DEFAULT_CONFIG, NavigationConfig
from route import Event, EventKind, Move, RouteItem

logger = logging.getLogger(__name__)


@dataclass
class RecordingSession:
    """In-progress recording. Owned by the recorder; dropped on save/cancel."""

    start_pose: Pose
    start_heading: float
    last_turn_pose: Pose
    last_heading: float
    last_trail_position: Vec3
    anchor_key: str | None = None
    items: list[RouteItem] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    saving: bool = False

    @property
    def move_count(self) -> int:
        return sum(1 for item in self.items if isinstance(item, Move))


@dataclass(frozen=True, slots=True)
class LiveReadout:
    """Non-authoritative distance/angle since the last turn, for display."""

    distance: float
    angle: float  # radians

    @property
    def angle_degrees(self) -> float:
        return degrees(self.angle)

    @property
    def display_angle(self) -> float:
        return round(self.angle_degrees, 1)


@dataclass(frozen=True, slots=True)
class TurnResult:
    """Outcome of mark_turn. `item` is None when the leg was too short."""

    committed: bool
    distance: float
    angle: float
    item: Move | None = None

    @property
    def readout(self) -> LiveReadout:
        return LiveReadout(self.distance, self.angle)


@dataclass(frozen=True)
class SaveData:
    """Finalized recording, handed to the store once the snapshot is known."""

    session_id: str
    items: tuple[RouteItem, ...]
    anchor_key: str | None
    start_heading: float
    environment_snapshot: bytes | None = None
    snapshot_error: SnapshotUnavailable | None = None


class PathRecorder:
    """
    Records moves between user-confirmed turn points.

    The recorder never keeps a session itself; callers hold the
    RecordingSession returned by `begin` and pass it back in.
    """

    def __init__(
        self,
        sensor: TrackingSensor,
        renderer: Renderer | None = None,
        config: NavigationConfig = DEFAULT_CONFIG,
    ):
        self.sensor = sensor
        self.renderer = GuardedRenderer.wrap(renderer)
        self.config = config

    # --- Session lifecycle ---

    def begin(self, pose: Pose | None) -> RecordingSession:
        """
        Open a recording session at `pose`.

        Raises:
            NotTracking: if no current pose is available.
        """
        if pose is None:
            raise NotTracking()

        heading = yaw_of(pose)
        anchor_key = self.sensor.place_anchor(f"start_{uuid.uuid4()}", pose)
        session = RecordingSession(
            start_pose=pose,
            start_heading=heading,
            last_turn_pose=pose,
            last_heading=heading,
            last_trail_position=pose.position,
            anchor_key=anchor_key,
        )
        self.renderer.draw_marker(MarkerKind.START, pose.position, RECORDING_GROUP)
        logger.info(
            "Recording started at (%.2f, %.2f, %.2f), heading %.1f deg, anchor %s",
            pose.x, pose.y, pose.z, degrees(heading), anchor_key,
        )
        return session

    def cancel(self, session: RecordingSession | None) -> None:
        """Drop the session and its live trail. Always succeeds."""
        if session is not None:
            logger.info("Recording %s cancelled (%d items discarded)", session.session_id, len(session.items))
            session.items.clear()
        self.renderer.clear(RECORDING_GROUP)

    # --- Measurements ---

    def _measure(self, session: RecordingSession, pose: Pose) -> tuple[float, float]:
        distance = planar_distance(session.last_turn_pose, pose)
        angle = normalize_angle(yaw_of(pose) - session.last_heading)
        return distance, angle

    def live_readout(self, session: RecordingSession, pose: Pose) -> LiveReadout:
        """Distance/angle since the last turn; never commits anything."""
        distance, angle = self._measure(session, pose)
        return LiveReadout(distance, angle)

    def mark_turn(self, session: RecordingSession, pose: Pose | None) -> TurnResult:
        """
        Close the current leg as a Move if it is long enough.

        Legs shorter than `min_turn_distance` are reported back with
        committed=False and leave the session untouched.

        Raises:
            NotTracking: if no current pose is available.
        """
        if pose is None:
            raise NotTracking()

        distance, angle = self._measure(session, pose)
        if distance < self.config.recording.min_turn_distance:
            get_metrics().record_turn(committed=False)
            logger.debug("Turn ignored: %.3fm < %.3fm", distance, self.config.recording.min_turn_distance)
            return TurnResult(False, distance, angle)

        item = Move(distance, angle)
        session.items.append(item)
        session.last_turn_pose = pose
        session.last_heading = yaw_of(pose)
        self.renderer.draw_marker(MarkerKind.TURN, pose.position.lowered(self._floor), RECORDING_GROUP)
        get_metrics().record_turn(committed=True)
        logger.info("Turn recorded: %.2fm, %.0f deg", distance, degrees(angle))
        return TurnResult(True, distance, angle, item)

    def add_event(self, session: RecordingSession, kind: EventKind) -> Event:
        event = Event(EventKind(kind))
        session.items.append(event)
        get_metrics().record_event()
        logger.info("Event recorded: %s", event.kind.label)
        return event

    # --- Live trail ---

    @property
    def _floor(self) -> float:
        return self.config.positioning.floor_offset

    def update_trail(self, session: RecordingSession, pose: Pose) -> bool:
        """
        Draw a trail ribbon once the walker is `ribbon_interval` past the
        last trail sample. Returns True if a segment was drawn.
        """
        position = pose.position
        if planar_distance(session.last_trail_position, position) < self.config.trail.ribbon_interval:
            return False
        self.renderer.draw_ribbon(
            session.last_trail_position.lowered(self._floor),
            position.lowered(self._floor),
            TrailColor.RECORDING,
            RECORDING_GROUP,
        )
        session.last_trail_position = position
        get_metrics().record_trail_segment()
        return True

    # --- Saving ---

    def finalize_for_save(
        self,
        session: RecordingSession,
        pose: Pose | None,
        on_complete: Callable[[SaveData], None],
    ) -> None:
        """
        Close out the recording and capture the environment snapshot.

        The residual leg since the last turn is kept if it is at least
        `min_save_distance`. `on_complete` runs once the sensor reports the
        snapshot (or its absence); this call does not wait for it.

        Raises:
            NothingRecorded: if there is nothing to save.
        """
        if pose is not None:
            distance, angle = self._measure(session, pose)
            if distance >= self.config.recording.min_save_distance:
                session.items.append(Move(distance, angle))
                session.last_turn_pose = pose
                session.last_heading = yaw_of(pose)

        if not session.items:
            raise NothingRecorded()

        session.saving = True
        items = tuple(session.items)
        session_id = session.session_id
        anchor_key = session.anchor_key
        start_heading = session.start_heading

        def _snapshot_ready(snapshot: bytes | None) -> None:
            error = None
            if not snapshot:
                snapshot = None
                error = SnapshotUnavailable()
                get_metrics().record_snapshot_miss()
                logger.warning("Environment snapshot unavailable; saving route without it")
            else:
                logger.info("Environment snapshot captured: %d bytes", len(snapshot))
            on_complete(
                SaveData(
                    session_id=session_id,
                    items=items,
                    anchor_key=anchor_key,
                    start_heading=start_heading,
                    environment_snapshot=snapshot,
                    snapshot_error=error,
                )
            )

        logger.info("Finalizing recording %s with %d items", session_id, len(items))
        self.sensor.request_snapshot(_snapshot_ready)
