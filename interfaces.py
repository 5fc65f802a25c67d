"""
Contracts with the collaborators around the navigation core.

- TrackingSensor: pose/quality feed plus map snapshot and named anchors
- Renderer: fire-and-forget drawing of markers and ribbons
- RouteStore: durable route records

simulation.py and route_store.py provide implementations; tests use fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

from geometry import Pose, Vec3
from route import EventKind, Route, RouteItem, RouteSummary

logger = logging.getLogger(__name__)


# TRACKING QUALITY


class TrackingState(str, Enum):
    NORMAL = "normal"
    UNAVAILABLE = "unavailable"
    LIMITED = "limited"


class LimitedReason(str, Enum):
    INITIALIZING = "initializing"
    EXCESSIVE_MOTION = "excessive_motion"
    INSUFFICIENT_FEATURES = "insufficient_features"
    RELOCALIZING = "relocalizing"


@dataclass(frozen=True, slots=True)
class TrackingQuality:
    """Normal | Unavailable | Limited(reason)."""

    state: TrackingState
    reason: LimitedReason | None = None

    @classmethod
    def normal(cls) -> TrackingQuality:
        return cls(TrackingState.NORMAL)

    @classmethod
    def unavailable(cls) -> TrackingQuality:
        return cls(TrackingState.UNAVAILABLE)

    @classmethod
    def limited(cls, reason: LimitedReason) -> TrackingQuality:
        return cls(TrackingState.LIMITED, reason)

    @property
    def is_normal(self) -> bool:
        return self.state is TrackingState.NORMAL


# RENDERING


class MarkerKind(str, Enum):
    START = "start"
    GOAL = "goal"
    TURN = "turn"


class TrailColor(str, Enum):
    RECORDING = "recording"
    REPLAY = "replay"


RECORDING_GROUP = "recording"
REPLAY_GROUP = "replay"

# RGB used by renderers that need concrete colours
COLORS = {
    MarkerKind.START: (0.0, 1.0, 0.0),
    MarkerKind.GOAL: (0.0, 0.0, 1.0),
    MarkerKind.TURN: (1.0, 0.5, 0.0),
    TrailColor.RECORDING: (1.0, 0.0, 0.0),
    TrailColor.REPLAY: (0.0, 1.0, 1.0),
    "arrow": (1.0, 1.0, 0.0),
    "event": (0.6, 0.0, 0.8),
}


SnapshotCallback = Callable[[bytes | None], None]


class TrackingSensor(Protocol):
    @property
    def tracking_quality(self) -> TrackingQuality: ...

    def current_pose(self) -> Pose | None: ...

    def start_run(self, snapshot: bytes | None = None) -> None:
        """Restart tracking, optionally seeded with a saved environment snapshot."""

    def request_snapshot(self, callback: SnapshotCallback) -> None:
        """Capture the environment snapshot; `callback(None)` on failure."""

    def place_anchor(self, name: str, pose: Pose) -> str:
        """Place a named marker and return the key it can be found by."""

    def find_anchor(self, key: str) -> Pose | None: ...


class Renderer(Protocol):
    def draw_marker(self, kind: MarkerKind, position: Vec3, group: str) -> None: ...

    def draw_ribbon(self, start: Vec3, end: Vec3, color: TrailColor, group: str) -> None: ...

    def draw_arrow(self, start: Vec3, end: Vec3, group: str) -> None: ...

    def draw_event(self, kind: EventKind, position: Vec3, group: str) -> None: ...

    def clear(self, group: str) -> None: ...


class RouteStore(Protocol):
    def save(
        self,
        items: Sequence[RouteItem],
        environment_snapshot: bytes | None,
        anchor_key: str | None,
        start_heading: float,
    ) -> Route:
        """Persist a new route; raises SaveFailed."""

    def list_all(self) -> list[RouteSummary]:
        """Summaries, newest first; raises FetchFailed."""

    def get(self, route_id: str) -> Route:
        """Raises FetchFailed for unknown ids."""

    def delete(self, route_id: str) -> None:
        """Raises DeleteFailed."""


class NullRenderer:
    """Renderer that draws nothing (headless runs)."""

    def draw_marker(self, kind, position, group):
        pass

    def draw_ribbon(self, start, end, color, group):
        pass

    def draw_arrow(self, start, end, group):
        pass

    def draw_event(self, kind, position, group):
        pass

    def clear(self, group):
        pass


class GuardedRenderer:
    """
    Fire-and-forget wrapper: a failing draw or clear is logged and dropped,
    so navigation state never depends on the render backend.
    """

    def __init__(self, inner: Renderer):
        self.inner = inner

    @classmethod
    def wrap(cls, renderer: Renderer | None) -> GuardedRenderer:
        if isinstance(renderer, cls):
            return renderer
        return cls(renderer or NullRenderer())

    def _call(self, name: str, *args) -> None:
        try:
            getattr(self.inner, name)(*args)
        except Exception:
            logger.exception("Renderer %s failed; continuing without it", name)

    def draw_marker(self, kind, position, group):
        self._call("draw_marker", kind, position, group)

    def draw_ribbon(self, start, end, color, group):
        self._call("draw_ribbon", start, end, color, group)

    def draw_arrow(self, start, end, group):
        self._call("draw_arrow", start, end, group)

    def draw_event(self, kind, position, group):
        self._call("draw_event", kind, position, group)

    def clear(self, group):
        self._call("clear", group)
