import math

import pytest

from geometry import Pose
from interfaces import LimitedReason, TrackingQuality
from metrics import get_metrics
from relocalization import (
    STATUS_RELOCALIZING,
    STATUS_WAITING_FOR_POSE,
    RelocalizationProtocol,
    RelocalizationState,
)
from route import Move, Route


class Harness:
    def __init__(self, tracker):
        self.placements = []
        self.statuses = []
        self.protocol = RelocalizationProtocol(
            tracker,
            on_placement=lambda session, placement: self.placements.append((session, placement)),
            on_status=self.statuses.append,
        )


@pytest.fixture
def harness(tracker):
    return Harness(tracker)


def _route(snapshot=b"map", anchor_key="start_1"):
    return Route(items=[Move(1.0)], start_anchor_key=anchor_key, environment_snapshot=snapshot)


def test_route_without_snapshot_uses_fallback(harness, tracker):
    tracker.pose = Pose(2.0, 1.5, 0.0, math.pi / 2)

    session = harness.protocol.start(_route(snapshot=None))

    assert session.history == [RelocalizationState.FALLBACK_USED]
    assert tracker.runs == []
    (_, placement), = harness.placements
    assert placement.source is RelocalizationState.FALLBACK_USED
    assert placement.position.as_tuple() == pytest.approx((3.0, 1.0, 0.0))
    assert placement.heading == pytest.approx(math.pi / 2)


def test_snapshot_route_waits_for_normal_tracking(harness, tracker):
    tracker.anchors["start_1"] = Pose(4.0, 1.5, -2.0, -math.pi / 2)

    session = harness.protocol.start(_route())

    assert tracker.runs == [b"map"]
    assert session.state is RelocalizationState.AWAITING_TRACKING_NORMAL
    assert harness.statuses == [STATUS_RELOCALIZING]
    assert harness.placements == []

    harness.protocol.on_tracking_quality(TrackingQuality.limited(LimitedReason.RELOCALIZING))
    assert session.state is RelocalizationState.AWAITING_TRACKING_NORMAL

    harness.protocol.on_tracking_quality(TrackingQuality.normal())
    assert session.history == [
        RelocalizationState.AWAITING_TRACKING_NORMAL,
        RelocalizationState.RESOLVED,
    ]
    (_, placement), = harness.placements
    assert placement.position.as_tuple() == pytest.approx((4.0, 1.0, -2.0))
    assert placement.heading == pytest.approx(-math.pi / 2)
    assert get_metrics().relocalization["resolved"] == 1


def test_missing_anchor_falls_back(harness, tracker):
    session = harness.protocol.start(_route())
    harness.protocol.on_tracking_quality(TrackingQuality.normal())

    assert session.state is RelocalizationState.FALLBACK_USED
    assert harness.placements[0][1].source is RelocalizationState.FALLBACK_USED


def test_route_without_anchor_key_falls_back(harness):
    session = harness.protocol.start(_route(anchor_key=None))
    harness.protocol.on_tracking_quality(TrackingQuality.normal())

    assert session.state is RelocalizationState.FALLBACK_USED


def test_fallback_waits_for_a_pose(harness, tracker):
    tracker.pose = None

    session = harness.protocol.start(_route(snapshot=None))

    assert session.placement_deferred
    assert harness.statuses == [STATUS_WAITING_FOR_POSE]
    harness.protocol.on_pose_tick(None)
    assert harness.placements == []

    harness.protocol.on_pose_tick(Pose(0.0, 1.5, 0.0, 0.0))
    assert not session.placement_deferred
    assert harness.placements[0][1].position.as_tuple() == pytest.approx((0.0, 1.0, -1.0))


def test_placement_is_delivered_once(harness, tracker):
    tracker.anchors["start_1"] = Pose(0.0, 0.0, 0.0)
    harness.protocol.start(_route())

    harness.protocol.on_tracking_quality(TrackingQuality.normal())
    harness.protocol.on_tracking_quality(TrackingQuality.normal())
    harness.protocol.on_pose_tick(Pose(1.0, 0.0, 1.0))

    assert len(harness.placements) == 1


def test_cancelled_request_ignores_late_events(harness, tracker):
    tracker.anchors["start_1"] = Pose(0.0, 0.0, 0.0)
    harness.protocol.start(_route())

    harness.protocol.cancel()
    harness.protocol.on_tracking_quality(TrackingQuality.normal())

    assert harness.placements == []
    assert harness.protocol.state is RelocalizationState.NOT_STARTED


def test_newer_request_replaces_older(harness, tracker):
    tracker.anchors["start_1"] = Pose(0.0, 0.0, 0.0)
    first = harness.protocol.start(_route())
    second = harness.protocol.start(_route(snapshot=None))

    harness.protocol.on_tracking_quality(TrackingQuality.normal())

    assert [session for session, _ in harness.placements] == [second]
    assert first.placement is None
    assert first.session_id != second.session_id
