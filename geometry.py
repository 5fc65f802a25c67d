"""
Geometry - planar helpers shared by recording, replay and relocalization.

Frame conventions:
- Y is up, the walking plane is XZ.
- Heading 0 faces world -Z; positive heading turns clockwise seen from above,
  so heading pi/2 faces +X.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


TWO_PI = 2 * math.pi

# Inputs inside [-100*pi, 100*pi] need at most 50 steps of 2*pi.
_MAX_WRAP_STEPS = 51


@dataclass(frozen=True, slots=True)
class Vec3:
    """3-D position in meters."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __add__(self, other: Vec3) -> Vec3:
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: Vec3) -> Vec3:
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def scaled(self, factor: float) -> Vec3:
        return Vec3(self.x * factor, self.y * factor, self.z * factor)

    def lowered(self, drop: float) -> Vec3:
        """Same point moved down by `drop` meters."""
        return Vec3(self.x, self.y - drop, self.z)

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True, slots=True)
class Pose:
    """Sensor pose: position plus heading about the vertical axis."""

    x: float
    y: float
    z: float
    yaw: float = 0.0

    @classmethod
    def at(cls, position: Vec3, yaw: float = 0.0) -> Pose:
        return cls(position.x, position.y, position.z, yaw)

    @classmethod
    def from_forward(cls, position: Vec3, forward: Vec3) -> Pose:
        """
        Build a pose from a raw forward direction (e.g. a camera's -Z column).

        Only the horizontal projection of `forward` is used.
        """
        return cls(position.x, position.y, position.z, heading_of_vector(forward))

    @property
    def position(self) -> Vec3:
        return Vec3(self.x, self.y, self.z)

    @property
    def forward(self) -> Vec3:
        return forward_vector(self.yaw)


# ANGLES


def normalize_angle(angle: float) -> float:
    """
    Normalize angle to (-pi, pi].

    Uses a bounded number of +-2*pi steps so values near the boundary are not
    pushed across it the way a float modulo can.
    """
    if not math.isfinite(angle):
        raise ValueError(f"Cannot normalize non-finite angle: {angle!r}")

    if abs(angle) > 100 * math.pi:
        # Strip whole turns first; the loop below handles the remainder.
        angle = math.fmod(angle, TWO_PI)

    for _ in range(_MAX_WRAP_STEPS):
        if angle > math.pi:
            angle -= TWO_PI
        elif angle <= -math.pi:
            angle += TWO_PI
        else:
            break
    return angle


def forward_vector(heading: float) -> Vec3:
    """Unit vector on the walking plane for a heading."""
    return Vec3(math.sin(heading), 0.0, -math.cos(heading))


def heading_of_vector(vector: Vec3) -> float:
    """Heading of the horizontal projection of `vector`."""
    return math.atan2(vector.x, -vector.z)


def yaw_of(pose: Pose) -> float:
    """Signed heading of the pose's forward projection, in (-pi, pi]."""
    return normalize_angle(heading_of_vector(pose.forward))


# DISTANCES


def planar_distance(a: Vec3 | Pose, b: Vec3 | Pose) -> float:
    """Euclidean distance on the XZ plane (vertical axis ignored)."""
    dx = b.x - a.x
    dz = b.z - a.z
    return math.hypot(dx, dz)


def direction_of_travel(a: Vec3 | Pose, b: Vec3 | Pose) -> float:
    """Heading of the planar displacement a -> b."""
    return math.atan2(b.x - a.x, -(b.z - a.z))


def offset_forward(
    position: Vec3, heading: float, distance: float, drop: float = 0.0
) -> Vec3:
    """Point `distance` meters ahead along `heading`, lowered by `drop`."""
    ahead = position + forward_vector(heading).scaled(distance)
    return ahead.lowered(drop)


def degrees(angle: float) -> float:
    """Radians to degrees; display only."""
    return angle * 180.0 / math.pi
