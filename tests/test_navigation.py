"""Tests for the NavigationMachine phase table and its save/replay flows."""

import math
import threading

import pytest

from errors import DeleteFailed, FetchFailed, NothingRecorded, NotTracking, SaveFailed
from geometry import Pose
from interfaces import RECORDING_GROUP, REPLAY_GROUP, LimitedReason, MarkerKind, TrackingQuality
from metrics import get_metrics
from navigation import (
    STATUS_PREPARING,
    STATUS_READY,
    STATUS_RECORDING,
    STATUS_SAVING,
    Idle,
    NavigationMachine,
    Recording,
    Replaying,
)
from relocalization import STATUS_RELOCALIZING, RelocalizationState
from route import EventKind, Move
from route_store import InMemoryRouteStore


class FailingStore(InMemoryRouteStore):
    def save(self, items, environment_snapshot, anchor_key, start_heading):
        raise SaveFailed("disk full")


@pytest.fixture
def machine(tracker, renderer, config):
    machine = NavigationMachine(tracker, InMemoryRouteStore(), renderer, config)
    machine.on_tracking_quality_changed(TrackingQuality.normal())
    return machine


def record_l_route(machine, tracker):
    """Two legs with a door between them; returns the saved summary."""
    tracker.pose = Pose(0.0, 1.5, 0.0, 0.0)
    machine.start_recording()
    tracker.pose = Pose(0.0, 1.5, -2.0, 0.0)
    machine.mark_turn()
    machine.add_event(EventKind.DOOR)
    tracker.pose = Pose(1.0, 1.5, -2.0, math.pi / 2)
    machine.save_route()
    return machine.state.saved_routes[0]


# PHASES


def test_starts_idle_and_preparing(tracker, renderer):
    machine = NavigationMachine(tracker, InMemoryRouteStore(), renderer)

    state = machine.state
    assert state.phase == Idle()
    assert state.status_message == STATUS_PREPARING
    assert state.indicator == "preparing"
    assert not state.can_start_recording
    assert machine.start_recording() is None
    assert machine.phase == Idle()


def test_tracking_quality_drives_idle_status(machine):
    assert machine.state.status_message == STATUS_READY

    machine.on_tracking_quality_changed(TrackingQuality.limited(LimitedReason.INITIALIZING))
    assert machine.state.status_message == "Initializing..."
    assert not machine.state.sensor_ready

    machine.on_sensor_ready_changed(True)
    assert machine.state.status_message == STATUS_READY
    assert machine.state.indicator == "ready"


def test_start_recording(machine, tracker, renderer):
    session = machine.start_recording()

    assert machine.phase == Recording()
    assert machine.session is session
    assert machine.state.status_message == STATUS_RECORDING
    assert machine.state.indicator == "recording"
    assert session.anchor_key in tracker.anchors
    assert renderer.drawn(RECORDING_GROUP, "marker")


def test_start_recording_without_pose(machine, tracker):
    tracker.pose = None

    with pytest.raises(NotTracking):
        machine.start_recording()

    assert machine.phase == Idle()
    assert machine.state.last_error == str(NotTracking())


def test_commands_outside_their_phase_are_ignored(machine, tracker):
    assert machine.mark_turn() is None
    assert machine.add_event(EventKind.DOOR) is None
    machine.save_route()
    machine.stop_replay()
    machine.cancel_recording()
    assert machine.phase == Idle()

    machine.start_recording()
    assert machine.start_recording() is None
    assert machine.start_replay("anything") is None
    machine.stop_replay()
    assert machine.phase == Recording()


def test_pose_ticks_update_readout_only(machine, tracker):
    machine.start_recording()

    machine.on_pose_tick(Pose(0.3, 0.0, -0.4, -math.pi / 4))

    readout = machine.state.readout
    assert readout.distance == pytest.approx(0.5)
    assert readout.display_angle == -45.0
    assert machine.session.items == []
    assert get_metrics().pose_ticks == 1


def test_short_turn_reports_without_recording(machine, tracker):
    machine.start_recording()
    tracker.pose = Pose(0.01, 0.0, 0.0, 0.0)

    result = machine.mark_turn()

    assert not result.committed
    assert machine.session.items == []
    assert machine.state.status_message.startswith("Too short")


# SAVING


def test_save_flow(machine, tracker, renderer):
    summary = record_l_route(machine, tracker)

    state = machine.state
    assert state.phase == Idle()
    assert not state.is_saving
    assert state.status_message == f"Saved: {summary.name}"
    assert machine.session is None
    assert summary.move_count == 2
    assert summary.event_count == 1
    assert summary.total_distance == pytest.approx(3.0)
    assert summary.has_snapshot
    assert renderer.drawn(RECORDING_GROUP) == []
    assert get_metrics().routes_saved == 1


def test_save_without_snapshot_is_still_saved(machine, tracker):
    tracker.snapshot = None

    summary = record_l_route(machine, tracker)

    assert not summary.has_snapshot
    assert machine.state.status_message.endswith("(no environment snapshot)")


def test_save_waits_for_snapshot(machine, tracker):
    tracker.auto_complete = False
    machine.start_recording()
    tracker.pose = Pose(0.0, 0.0, -1.0)

    machine.save_route()

    assert machine.phase == Idle()
    assert machine.state.is_saving
    assert machine.state.status_message == STATUS_SAVING
    assert not machine.state.can_start_recording
    assert machine.start_replay("anything") is None

    tracker.complete_snapshot()

    assert not machine.state.is_saving
    assert len(machine.state.saved_routes) == 1


def test_cancel_during_save_discards_completion(machine, tracker):
    tracker.auto_complete = False
    machine.start_recording()
    tracker.pose = Pose(0.0, 0.0, -1.0)
    machine.save_route()

    machine.cancel_recording()
    tracker.complete_snapshot()

    assert machine.phase == Idle()
    assert not machine.state.is_saving
    assert machine.store.list_all() == []
    assert machine.state.status_message == STATUS_READY


def test_nothing_recorded_keeps_recording(machine):
    machine.start_recording()

    with pytest.raises(NothingRecorded):
        machine.save_route()

    assert machine.phase == Recording()
    assert machine.state.last_error == str(NothingRecorded())
    assert not machine.session.saving


def test_failed_save_restores_recording(tracker, renderer):
    machine = NavigationMachine(tracker, FailingStore(), renderer)
    machine.on_tracking_quality_changed(TrackingQuality.normal())
    session = machine.start_recording()
    tracker.pose = Pose(0.0, 0.0, -1.0)

    machine.save_route()

    assert machine.phase == Recording()
    assert machine.session is session
    assert not session.saving
    assert machine.state.last_error == "Save failed: disk full"
    assert machine.state.status_message == "Save failed: disk full"
    assert get_metrics().save_failures == 1

    machine.cancel_recording()
    assert machine.phase == Idle()


# REPLAY


def test_replay_relocalizes_on_start_anchor(machine, tracker, renderer):
    summary = record_l_route(machine, tracker)
    tracker.pose = Pose(7.0, 1.5, 3.0, 1.0)

    replay = machine.start_replay(summary.id)

    assert machine.phase == Replaying(summary.name)
    assert tracker.runs[-1] == b"map"
    assert replay.state is RelocalizationState.AWAITING_TRACKING_NORMAL
    assert machine.state.status_message == STATUS_RELOCALIZING

    machine.on_tracking_quality_changed(TrackingQuality.limited(LimitedReason.EXCESSIVE_MOTION))
    assert machine.state.status_message == "Moving too fast"
    machine.on_tracking_quality_changed(TrackingQuality.limited(LimitedReason.RELOCALIZING))
    assert machine.state.status_message == STATUS_RELOCALIZING
    assert renderer.drawn(REPLAY_GROUP) == []

    machine.on_tracking_quality_changed(TrackingQuality.normal())

    assert replay.state is RelocalizationState.RESOLVED
    assert machine.state.status_message == f"Replaying: {summary.name}"
    assert len(renderer.drawn(REPLAY_GROUP, "ribbon")) == 2
    assert len(renderer.drawn(REPLAY_GROUP, "arrow")) == 2
    assert len(renderer.drawn(REPLAY_GROUP, "event")) == 1
    markers = {call[1]: call[2] for call in renderer.drawn(REPLAY_GROUP, "marker")}
    assert markers[MarkerKind.START].as_tuple() == pytest.approx((0.0, 1.0, 0.0))
    assert markers[MarkerKind.GOAL].as_tuple() == pytest.approx((1.0, 1.0, -2.0))


def test_replay_without_snapshot_goes_straight_to_fallback(machine, tracker, renderer):
    tracker.snapshot = None
    summary = record_l_route(machine, tracker)
    tracker.pose = Pose(5.0, 1.5, 5.0, 0.0)

    replay = machine.start_replay(summary.id)

    assert replay.history == [RelocalizationState.FALLBACK_USED]
    assert tracker.runs == []
    start = renderer.drawn(REPLAY_GROUP, "marker")[0][2]
    assert start.as_tuple() == pytest.approx((5.0, 1.0, 4.0))


def test_replay_fallback_waits_for_pose(machine, tracker, renderer):
    tracker.snapshot = None
    summary = record_l_route(machine, tracker)
    tracker.pose = None

    replay = machine.start_replay(summary.id)
    assert replay.placement_deferred
    assert renderer.drawn(REPLAY_GROUP) == []

    machine.on_pose_tick(Pose(0.0, 1.5, 0.0, 0.0))

    assert replay.placement is not None
    assert renderer.drawn(REPLAY_GROUP, "ribbon")


def test_stop_replay(machine, tracker, renderer):
    tracker.snapshot = None
    summary = record_l_route(machine, tracker)
    machine.start_replay(summary.id)

    machine.stop_replay()

    assert machine.phase == Idle()
    assert machine.replay_session is None
    assert renderer.drawn(REPLAY_GROUP) == []
    assert machine.state.status_message == STATUS_READY


def test_replay_unknown_route(machine):
    with pytest.raises(FetchFailed):
        machine.start_replay("missing")

    assert machine.phase == Idle()
    assert machine.state.last_error.startswith("Fetch failed")


def test_late_anchor_after_stop_is_ignored(machine, tracker, renderer):
    summary = record_l_route(machine, tracker)
    machine.start_replay(summary.id)
    machine.stop_replay()

    machine.on_tracking_quality_changed(TrackingQuality.normal())

    assert machine.phase == Idle()
    assert renderer.drawn(REPLAY_GROUP) == []


# ROUTES


def test_delete_routes(machine, tracker):
    summary = record_l_route(machine, tracker)

    machine.delete_routes([summary.id])
    assert machine.state.saved_routes == ()

    with pytest.raises(DeleteFailed):
        machine.delete_routes([summary.id])


def test_refresh_routes(machine):
    machine.store.save([Move(1.0)], None, None, 0.0)

    routes = machine.refresh_routes()

    assert len(routes) == 1
    assert machine.state.saved_routes == routes


def test_reset(machine, tracker):
    machine.start_recording()
    machine.reset()

    assert machine.phase == Idle()
    assert machine.session is None


# OBSERVATION AND THREADING


def test_subscribers_see_each_change(machine, tracker):
    seen = []
    unsubscribe = machine.subscribe(seen.append)
    machine.start_recording()
    tracker.pose = Pose(0.0, 0.0, -1.0)
    machine.mark_turn()
    unsubscribe()
    machine.cancel_recording()

    assert [state.phase for state in seen] == [Idle(), Recording(), Recording()]
    assert seen[-1].status_message.startswith("Recorded: 1.00m")


def test_pose_from_another_thread_is_queued(machine):
    machine.start_recording()

    worker = threading.Thread(target=machine.on_pose_tick, args=(Pose(0.0, 0.0, -0.5),))
    worker.start()
    worker.join()

    assert machine.state.readout.distance == 0.0
    assert machine.dispatcher.pending() == 1

    assert machine.process_pending() == 1
    assert machine.state.readout.distance == pytest.approx(0.5)


def test_snapshot_from_another_thread_is_queued(machine, tracker):
    tracker.auto_complete = False
    machine.start_recording()
    tracker.pose = Pose(0.0, 0.0, -1.0)
    machine.save_route()

    worker = threading.Thread(target=tracker.complete_snapshot)
    worker.start()
    worker.join()
    assert machine.state.is_saving

    machine.process_pending()
    assert not machine.state.is_saving
    assert len(machine.state.saved_routes) == 1


# RENDERING FAILURES


def _machine_with(renderer, tracker):
    machine = NavigationMachine(tracker, InMemoryRouteStore(), renderer)
    machine.on_tracking_quality_changed(TrackingQuality.normal())
    return machine


def test_cancel_succeeds_when_clear_fails(tracker, failing_renderer):
    machine = _machine_with(failing_renderer("clear"), tracker)
    machine.start_recording()

    machine.cancel_recording()

    assert machine.phase == Idle()
    assert machine.session is None
    assert machine.state.status_message == STATUS_READY


def test_start_recording_when_markers_fail(tracker, failing_renderer):
    machine = _machine_with(failing_renderer("marker"), tracker)

    session = machine.start_recording()

    assert machine.phase == Recording()
    assert machine.session is session
    tracker.pose = Pose(0.0, 0.0, -1.0)
    assert machine.mark_turn().committed


def test_save_completes_when_clear_fails(tracker, failing_renderer):
    machine = _machine_with(failing_renderer("clear"), tracker)

    summary = record_l_route(machine, tracker)

    assert machine.phase == Idle()
    assert machine.state.status_message == f"Saved: {summary.name}"


def test_placement_survives_drawing_failure(tracker, failing_renderer):
    renderer = failing_renderer("ribbon", "arrow")
    machine = _machine_with(renderer, tracker)
    tracker.snapshot = None
    summary = record_l_route(machine, tracker)

    replay = machine.start_replay(summary.id)

    assert replay.placement is not None
    assert machine.state.status_message == f"Replaying: {summary.name}"
    assert len(renderer.drawn(REPLAY_GROUP, "marker")) == 2
    assert len(renderer.drawn(REPLAY_GROUP, "event")) == 1
