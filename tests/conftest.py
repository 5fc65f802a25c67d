from __future__ import annotations

import pytest

from geometry import Pose
from interfaces import TrackingQuality
from metrics import reset_metrics
from nav_config import NavigationConfig


class ScriptedTracker:
    """TrackingSensor whose pose and quality are set by the test."""

    def __init__(self, pose: Pose | None = Pose(0.0, 0.0, 0.0, 0.0), snapshot: bytes | None = b"map"):
        self.pose = pose
        self.snapshot = snapshot
        self.quality = TrackingQuality.normal()
        self.auto_complete = True
        self.anchors: dict[str, Pose] = {}
        self.runs: list[bytes | None] = []
        self.pending: list = []

    @property
    def tracking_quality(self) -> TrackingQuality:
        return self.quality

    def current_pose(self) -> Pose | None:
        return self.pose

    def start_run(self, snapshot: bytes | None = None) -> None:
        self.runs.append(snapshot)

    def request_snapshot(self, callback) -> None:
        if self.auto_complete:
            callback(self.snapshot)
        else:
            self.pending.append(callback)

    def complete_snapshot(self) -> None:
        callback = self.pending.pop(0)
        callback(self.snapshot)

    def place_anchor(self, name: str, pose: Pose) -> str:
        self.anchors[name] = pose
        return name

    def find_anchor(self, key: str) -> Pose | None:
        return self.anchors.get(key)


class RecordingRenderer:
    """Renderer that remembers what it was asked to draw."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.groups: dict[str, list[tuple]] = {}

    def _add(self, group: str, call: tuple) -> None:
        self.calls.append(call)
        self.groups.setdefault(group, []).append(call)

    def draw_marker(self, kind, position, group):
        self._add(group, ("marker", kind, position))

    def draw_ribbon(self, start, end, color, group):
        self._add(group, ("ribbon", start, end, color))

    def draw_arrow(self, start, end, group):
        self._add(group, ("arrow", start, end))

    def draw_event(self, kind, position, group):
        self._add(group, ("event", kind, position))

    def clear(self, group):
        self.calls.append(("clear", group))
        self.groups.pop(group, None)

    def drawn(self, group: str, kind: str | None = None) -> list[tuple]:
        items = self.groups.get(group, [])
        return [item for item in items if kind is None or item[0] == kind]


class FailingRenderer(RecordingRenderer):
    """RecordingRenderer whose listed operations raise."""

    def __init__(self, *failing: str):
        super().__init__()
        self.failing = set(failing)

    def _add(self, group, call):
        if call[0] in self.failing:
            raise RuntimeError("render backend gone")
        super()._add(group, call)

    def clear(self, group):
        if "clear" in self.failing:
            raise RuntimeError("render backend gone")
        super().clear(group)


@pytest.fixture(autouse=True)
def fresh_metrics():
    yield reset_metrics()


@pytest.fixture
def tracker() -> ScriptedTracker:
    return ScriptedTracker()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def config() -> NavigationConfig:
    return NavigationConfig()


@pytest.fixture
def failing_renderer():
    return FailingRenderer
