"""
Path Reconstructor - lays a route out in space from a chosen start pose.

Used for both the live preview and the replay drawing, so it must stay a pure
function of its inputs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from geometry import Vec3
from route import Move, RouteItem


@dataclass(frozen=True, slots=True)
class Waypoint:
    """Position reached after `item` (events do not move the walker)."""

    position: Vec3
    item: RouteItem


def reconstruct(
    items: Iterable[RouteItem], start_position: Vec3, start_heading: float
) -> tuple[Waypoint, ...]:
    """
    Dead-reckon the route from `start_position` facing `start_heading`.

    Each Move turns by its relative angle, then walks its distance on the XZ
    plane; height is carried over from the start.

    Returns:
        One Waypoint per item, in order. The start itself is not included.
    """
    heading = start_heading
    x, y, z = start_position.x, start_position.y, start_position.z
    waypoints: list[Waypoint] = []

    for item in items:
        if isinstance(item, Move):
            heading += item.angle
            x += math.sin(heading) * item.distance
            z -= math.cos(heading) * item.distance
        waypoints.append(Waypoint(Vec3(x, y, z), item))

    return tuple(waypoints)


def centerline(
    items: Iterable[RouteItem], start_position: Vec3, start_heading: float
) -> tuple[Vec3, ...]:
    """Positions after each Move only (event markers dropped)."""
    return tuple(
        waypoint.position
        for waypoint in reconstruct(items, start_position, start_heading)
        if isinstance(waypoint.item, Move)
    )
