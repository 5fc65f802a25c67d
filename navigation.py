"""
Navigation Controller - the phase state machine behind the UI.

Phases:
- Idle: nothing in progress (a save may still be completing)
- Recording: a RecordingSession is open
- Replaying(route_name): a saved route is being placed and drawn

Commands that do not apply to the current phase are ignored; the UI is
expected to have disabled them already. Every mutation happens on the
dispatcher's owner thread, and observers receive an immutable
NavigationViewState after each change.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Union

from dispatch import Dispatcher
from errors import DeleteFailed, FetchFailed, NavigationError, NotTracking, NothingRecorded, SaveFailed
from geometry import Pose
from interfaces import (
    REPLAY_GROUP,
    GuardedRenderer,
    LimitedReason,
    MarkerKind,
    Renderer,
    RouteStore,
    TrackingQuality,
    TrackingSensor,
    TrackingState,
    TrailColor,
)
from metrics import get_metrics
from nav_config import DEFAULT_CONFIG, NavigationConfig
from reconstruction import reconstruct
from recorder import LiveReadout, PathRecorder, RecordingSession, SaveData, TurnResult
from relocalization import STATUS_RELOCALIZING, Placement, RelocalizationProtocol, ReplaySession
from route import Event, EventKind, Move, Route, RouteSummary

logger = logging.getLogger(__name__)


# PHASES


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Recording:
    pass


@dataclass(frozen=True, slots=True)
class Replaying:
    route_name: str


Phase = Union[Idle, Recording, Replaying]


STATUS_READY = "Ready"
STATUS_PREPARING = "Preparing..."
STATUS_RECORDING = "Recording... walk the route"
STATUS_SAVING = "Capturing environment snapshot..."
STATUS_REPLAY_PREPARING = "Preparing replay..."

_QUALITY_MESSAGES = {
    TrackingState.NORMAL: STATUS_READY,
    TrackingState.UNAVAILABLE: "Tracking unavailable",
}
_LIMITED_MESSAGES = {
    LimitedReason.INITIALIZING: "Initializing...",
    LimitedReason.EXCESSIVE_MOTION: "Moving too fast",
    LimitedReason.INSUFFICIENT_FEATURES: "Not enough visual features",
    LimitedReason.RELOCALIZING: "Relocalizing...",
}


def quality_message(quality: TrackingQuality) -> str:
    if quality.state is TrackingState.LIMITED:
        return _LIMITED_MESSAGES.get(quality.reason, "Tracking limited")
    return _QUALITY_MESSAGES[quality.state]


@dataclass(frozen=True)
class NavigationViewState:
    """Everything the UI needs to draw itself."""

    phase: Phase
    sensor_ready: bool
    status_message: str
    readout: LiveReadout | None = None
    saved_routes: tuple[RouteSummary, ...] = ()
    is_saving: bool = False
    last_error: str | None = None

    @property
    def can_start_recording(self) -> bool:
        return isinstance(self.phase, Idle) and self.sensor_ready and not self.is_saving

    @property
    def indicator(self) -> str:
        """Status colour name: preparing/ready/recording/replaying."""
        if isinstance(self.phase, Recording):
            return "recording"
        if isinstance(self.phase, Replaying):
            return "replaying"
        return "ready" if self.sensor_ready else "preparing"


Listener = Callable[[NavigationViewState], None]


class NavigationMachine:
    """
    Single source of truth for the navigation session.

    Wires the PathRecorder, RelocalizationProtocol, route store and renderer
    together. Commands: start_recording, mark_turn, add_event, save_route,
    cancel_recording, start_replay, stop_replay. Sensor ingress:
    on_pose_tick, on_tracking_quality_changed.
    """

    def __init__(
        self,
        sensor: TrackingSensor,
        store: RouteStore,
        renderer: Renderer | None = None,
        config: NavigationConfig = DEFAULT_CONFIG,
        dispatcher: Dispatcher | None = None,
    ):
        self.sensor = sensor
        self.store = store
        self.renderer = GuardedRenderer.wrap(renderer)
        self.config = config
        self.dispatcher = dispatcher or Dispatcher()

        self.recorder = PathRecorder(sensor, self.renderer, config)
        self.relocalization = RelocalizationProtocol(
            sensor,
            on_placement=self._on_placement,
            on_status=self._on_replay_status,
            config=config,
        )

        self._phase: Phase = Idle()
        self._sensor_ready = False
        self._status = STATUS_PREPARING
        self._readout: LiveReadout | None = None
        self._routes: tuple[RouteSummary, ...] = ()
        self._last_error: str | None = None

        self._session: RecordingSession | None = None
        self._saving_session: RecordingSession | None = None

        self._listeners: list[Listener] = []
        self._depth = 0

    # --- Observation ---

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    @property
    def replay_session(self) -> ReplaySession | None:
        return self.relocalization.session

    @property
    def state(self) -> NavigationViewState:
        return NavigationViewState(
            phase=self._phase,
            sensor_ready=self._sensor_ready,
            status_message=self._status,
            readout=self._readout,
            saved_routes=self._routes,
            is_saving=self._saving_session is not None,
            last_error=self._last_error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; returns a function that unregisters it."""
        self._listeners.append(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self.state
        for listener in list(self._listeners):
            listener(snapshot)

    # --- Execution context ---

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue work for the owner context. Safe from any thread."""
        self.dispatcher.post(fn, *args)

    def process_pending(self) -> int:
        """Run work posted from other threads (sensor, snapshot capture)."""
        return self.dispatcher.drain()

    def _marshal(self, fn: Callable[..., Any], *args: Any) -> None:
        # Completions that arrive inside a command are deferred until the
        # command has finished mutating state.
        if self._depth == 0 and self.dispatcher.on_owner_thread:
            fn(*args)
        else:
            self.dispatcher.post(fn, *args)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._notify()
                if self.dispatcher.on_owner_thread:
                    self.dispatcher.drain()

    def _idle_message(self) -> str:
        return STATUS_READY if self._sensor_ready else STATUS_PREPARING

    def _fail(self, error: NavigationError) -> None:
        self._status = str(error)
        self._last_error = str(error)
        logger.warning("%s", error)

    def _require_pose(self) -> Pose:
        pose = self.sensor.current_pose()
        if pose is None:
            raise NotTracking()
        return pose

    # --- Recording commands ---

    def start_recording(self) -> RecordingSession | None:
        """Idle -> Recording. Ignored unless idle with a ready sensor."""
        if not self.state.can_start_recording:
            return None
        with self._transaction():
            try:
                session = self.recorder.begin(self._require_pose())
            except NotTracking as exc:
                self._fail(exc)
                raise
            self._session = session
            self._phase = Recording()
            self._readout = LiveReadout(0.0, 0.0)
            self._status = STATUS_RECORDING
            self._last_error = None
            return session

    def mark_turn(self) -> TurnResult | None:
        if not isinstance(self._phase, Recording) or self._session is None:
            return None
        with self._transaction():
            try:
                result = self.recorder.mark_turn(self._session, self._require_pose())
            except NotTracking as exc:
                self._fail(exc)
                raise
            if result.committed:
                self._readout = LiveReadout(0.0, 0.0)
                self._status = f"Recorded: {result.distance:.2f}m, {result.readout.angle_degrees:.0f}°"
            else:
                self._readout = result.readout
                self._status = (
                    f"Too short (walk at least {self.config.recording.min_turn_distance:.2f}m)"
                )
            return result

    def add_event(self, kind: EventKind) -> Event | None:
        if not isinstance(self._phase, Recording) or self._session is None:
            return None
        with self._transaction():
            event = self.recorder.add_event(self._session, kind)
            self._status = event.kind.label
            return event

    def save_route(self) -> None:
        """
        Recording -> Idle while the snapshot is captured, then persist.

        Raises:
            NothingRecorded: nothing to save; the machine stays Recording.
        """
        if not isinstance(self._phase, Recording) or self._session is None:
            return
        with self._transaction():
            session = self._session
            try:
                self.recorder.finalize_for_save(
                    session,
                    self.sensor.current_pose(),
                    on_complete=lambda data: self._marshal(self._finish_save, data),
                )
            except NothingRecorded as exc:
                self._fail(exc)
                raise
            self._saving_session = session
            self._session = None
            self._phase = Idle()
            self._status = STATUS_SAVING

    def _finish_save(self, data: SaveData) -> None:
        saving = self._saving_session
        if saving is None or saving.session_id != data.session_id:
            logger.info("Discarding snapshot completion for stale recording %s", data.session_id)
            return

        with self._transaction():
            try:
                route = self.store.save(
                    data.items,
                    data.environment_snapshot,
                    data.anchor_key,
                    data.start_heading,
                )
            except SaveFailed as exc:
                # Back to the pre-save phase with the same session so the
                # user can retry or cancel.
                get_metrics().record_save(success=False)
                saving.saving = False
                self._saving_session = None
                self._session = saving
                self._phase = Recording()
                self._fail(exc)
                return

            get_metrics().record_save(success=True)
            self._saving_session = None
            self.recorder.cancel(None)
            self._phase = Idle()
            self._readout = None
            self._last_error = None
            self._status = f"Saved: {route.name}"
            if data.snapshot_error is not None:
                self._status += " (no environment snapshot)"
            self._reload_routes(raise_errors=False)

    def cancel_recording(self) -> None:
        """Drop the recording (or the save waiting on its snapshot)."""
        session = self._session or self._saving_session
        if session is None:
            return
        with self._transaction():
            self.recorder.cancel(session)
            self._session = None
            self._saving_session = None
            self._phase = Idle()
            self._readout = None
            self._status = self._idle_message()

    # --- Replay commands ---

    def start_replay(self, route_id: str) -> ReplaySession | None:
        """
        Idle -> Replaying(route name); starts relocalization.

        Raises:
            FetchFailed: unknown route id.
        """
        if not isinstance(self._phase, Idle) or self._saving_session is not None:
            return None
        with self._transaction():
            try:
                route = self.store.get(route_id)
            except FetchFailed as exc:
                self._fail(exc)
                raise
            self.renderer.clear(REPLAY_GROUP)
            self._phase = Replaying(route.name)
            self._status = STATUS_REPLAY_PREPARING
            self._last_error = None
            logger.info("Replay requested: %s (%d items)", route.name, len(route.items))
            return self.relocalization.start(route)

    def stop_replay(self) -> None:
        if not isinstance(self._phase, Replaying):
            return
        with self._transaction():
            self.relocalization.cancel()
            self.renderer.clear(REPLAY_GROUP)
            self._phase = Idle()
            self._status = self._idle_message()

    def _on_replay_status(self, message: str) -> None:
        if isinstance(self._phase, Replaying):
            self._status = message

    def _on_placement(self, session: ReplaySession, placement: Placement) -> None:
        if not isinstance(self._phase, Replaying) or session is not self.relocalization.session:
            return
        route = session.pending_route
        self.draw_route(route, placement)
        self._status = f"Replaying: {route.name}"

    def draw_route(self, route: Route, placement: Placement) -> None:
        """Ribbons, arrows, start/goal and event markers for a placed route."""
        waypoints = reconstruct(route.items, placement.position, placement.heading)
        previous = placement.position
        for waypoint in waypoints:
            if isinstance(waypoint.item, Move):
                self.renderer.draw_ribbon(previous, waypoint.position, TrailColor.REPLAY, REPLAY_GROUP)
                self.renderer.draw_arrow(previous, waypoint.position, REPLAY_GROUP)
                previous = waypoint.position
            else:
                self.renderer.draw_event(waypoint.item.kind, waypoint.position, REPLAY_GROUP)
        self.renderer.draw_marker(MarkerKind.START, placement.position, REPLAY_GROUP)
        self.renderer.draw_marker(MarkerKind.GOAL, previous, REPLAY_GROUP)

    # --- Route management ---

    def _reload_routes(self, raise_errors: bool = True) -> None:
        try:
            self._routes = tuple(self.store.list_all())
        except FetchFailed as exc:
            self._fail(exc)
            if raise_errors:
                raise

    def refresh_routes(self) -> tuple[RouteSummary, ...]:
        with self._transaction():
            self._reload_routes()
            return self._routes

    def delete_routes(self, route_ids: Iterable[str]) -> None:
        with self._transaction():
            try:
                for route_id in route_ids:
                    self.store.delete(route_id)
            except DeleteFailed as exc:
                self._fail(exc)
                self._reload_routes(raise_errors=False)
                raise
            self._reload_routes()

    def reset(self) -> None:
        """Abandon whatever is in progress and return to Idle."""
        with self._transaction():
            self.recorder.cancel(self._session or self._saving_session)
            self.relocalization.cancel()
            self.renderer.clear(REPLAY_GROUP)
            self._session = None
            self._saving_session = None
            self._phase = Idle()
            self._readout = None
            self._status = self._idle_message()

    # --- Sensor ingress ---

    def _deferred(self, fn: Callable[..., Any], *args: Any) -> bool:
        # Sensor callbacks fired from inside a command (e.g. start_run during
        # start_replay) or from another thread wait for the owner context.
        if self._depth > 0 or not self.dispatcher.on_owner_thread:
            self.dispatcher.post(fn, *args)
            return True
        return False

    def on_pose_tick(self, pose: Pose | None) -> None:
        """Per-frame pose callback."""
        if self._deferred(self.on_pose_tick, pose):
            return
        get_metrics().record_pose_tick()
        with self._transaction():
            if isinstance(self._phase, Recording) and self._session is not None:
                if pose is None:
                    return
                self._readout = self.recorder.live_readout(self._session, pose)
                self.recorder.update_trail(self._session, pose)
            elif isinstance(self._phase, Replaying):
                self.relocalization.on_pose_tick(pose)

    def on_sensor_ready_changed(self, ready: bool) -> None:
        if self._deferred(self.on_sensor_ready_changed, ready):
            return
        with self._transaction():
            self._sensor_ready = ready
            if isinstance(self._phase, Idle) and self._saving_session is None:
                self._status = self._idle_message()

    def on_tracking_quality_changed(self, quality: TrackingQuality) -> None:
        if self._deferred(self.on_tracking_quality_changed, quality):
            return
        with self._transaction():
            self._sensor_ready = quality.is_normal
            replay = self.relocalization.session
            awaiting = replay is not None and replay.is_awaiting_relocalization
            if isinstance(self._phase, Idle) and self._saving_session is None:
                self._status = quality_message(quality)
            elif awaiting and not quality.is_normal:
                self._status = (
                    STATUS_RELOCALIZING
                    if quality.reason is LimitedReason.RELOCALIZING
                    else quality_message(quality)
                )
            if isinstance(self._phase, Replaying):
                self.relocalization.on_tracking_quality(quality)
