"""
Route Model - captured paths as ordered move/event items.

A route never stores absolute positions. Each `Move` is a planar distance and
a turn relative to the previous heading, so the same route can be laid out
from any start pose (see reconstruction.py).
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Union


class EventKind(str, Enum):
    """Landmarks the walker can tag while recording."""

    STAIRS_UP = "stairs_up"
    STAIRS_DOWN = "stairs_down"
    ELEVATOR = "elevator"
    DOOR = "door"

    @property
    def label(self) -> str:
        return _EVENT_LABELS[self]


_EVENT_LABELS = {
    EventKind.STAIRS_UP: "Stairs up",
    EventKind.STAIRS_DOWN: "Stairs down",
    EventKind.ELEVATOR: "Elevator",
    EventKind.DOOR: "Door",
}


@dataclass(frozen=True, slots=True)
class Move:
    """Straight leg: planar distance (m) after turning `angle` rad clockwise."""

    distance: float
    angle: float = 0.0

    def __post_init__(self):
        if not math.isfinite(self.distance) or self.distance < 0:
            raise ValueError(f"Move distance must be a finite value >= 0, got {self.distance!r}")
        if not -math.pi < self.angle <= math.pi:
            raise ValueError(f"Move angle must be in (-pi, pi], got {self.angle!r}")


@dataclass(frozen=True, slots=True)
class Event:
    """Landmark at the current position; does not move the walker."""

    kind: EventKind


RouteItem = Union[Move, Event]


# METRICS


def total_distance(items: Iterable[RouteItem]) -> float:
    return sum(item.distance for item in items if isinstance(item, Move))


def move_count(items: Iterable[RouteItem]) -> int:
    return sum(1 for item in items if isinstance(item, Move))


def event_count(items: Iterable[RouteItem]) -> int:
    return sum(1 for item in items if isinstance(item, Event))


def route_name(created_at: datetime) -> str:
    """Display name derived from the creation time, e.g. `Route_Mar 04 17:32`."""
    return f"Route_{created_at:%b %d %H:%M}"


# ROUTES


@dataclass(frozen=True, slots=True)
class RouteSummary:
    """Row shown in route lists."""

    id: str
    name: str
    total_distance: float
    move_count: int
    event_count: int
    created_at: datetime
    has_snapshot: bool = False


@dataclass(frozen=True)
class Route:
    """
    Saved route. Immutable: stores hand out Route values, never references
    to something they will mutate later.
    """

    items: tuple[RouteItem, ...]
    start_heading: float = 0.0
    start_anchor_key: str | None = None
    environment_snapshot: bytes | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))
        if not self.name:
            object.__setattr__(self, "name", route_name(self.created_at))

    @property
    def total_distance(self) -> float:
        return total_distance(self.items)

    @property
    def move_count(self) -> int:
        return move_count(self.items)

    @property
    def event_count(self) -> int:
        return event_count(self.items)

    def summary(self) -> RouteSummary:
        return RouteSummary(
            id=self.id,
            name=self.name,
            total_distance=self.total_distance,
            move_count=self.move_count,
            event_count=self.event_count,
            created_at=self.created_at,
            has_snapshot=self.environment_snapshot is not None,
        )


# SERIALIZATION (used by route_store.JsonRouteStore)


def item_to_dict(item: RouteItem) -> dict:
    if isinstance(item, Move):
        return {"type": "move", "distance": item.distance, "angle": item.angle}
    return {"type": "event", "kind": item.kind.value}


def item_from_dict(data: dict) -> RouteItem:
    kind = data.get("type")
    if kind == "move":
        return Move(float(data["distance"]), float(data["angle"]))
    if kind == "event":
        return Event(EventKind(data["kind"]))
    raise ValueError(f"Unknown route item type: {kind!r}")
