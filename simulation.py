"""
Simulation Environment - PyBullet stand-in for the tracking sensor and renderer.

Provides:
- connect / create_environment: PyBullet setup (floor + grid)
- WalkerSimulation: kinematic body carried along a path
- SimulatedTracker: TrackingSensor with per-run coordinate frames,
  relocalization delay, anchors and JSON environment snapshots
- DebugRenderer: Renderer drawing with PyBullet debug lines and shapes

Frames: navigation code is Y-up with heading 0 facing -Z. PyBullet is Z-up.
    nav (x, y, z)  <->  bullet (x, -z, y)
    nav heading h  <->  bullet yaw pi/2 - h (body +X faces along h)
"""

from __future__ import annotations

import json
import logging
import math
from collections import defaultdict
from typing import Callable, Iterator

import pybullet
import pybullet_data

from errors import SensorNotReady
from geometry import Pose, Vec3, direction_of_travel, normalize_angle
from interfaces import (
    COLORS,
    LimitedReason,
    MarkerKind,
    SnapshotCallback,
    TrackingQuality,
    TrailColor,
)
from route import EventKind

logger = logging.getLogger(__name__)

# SIMULATION PARAMETERS

TIME_STEP = 1.0 / 60.0  # Sensor frame rate (60 Hz)
WALK_SPEED = 1.2  # m/s
TURN_SPEED = math.radians(120)  # rad/s
SENSOR_HEIGHT = 1.4  # m above the floor (hand-held phone)
GRID_SIZE = 10.0  # m
GRID_CELL = 1.0  # m

INITIALIZING_STEPS = 10  # frames of Limited(initializing) after a plain run
RELOCALIZATION_STEPS = 45  # frames of Limited(relocalizing) after seeding
SNAPSHOT_DELAY_STEPS = 12  # ~200ms snapshot capture


# FRAMES


def nav_to_bullet(position: Vec3) -> list[float]:
    return [position.x, -position.z, position.y]


def bullet_to_nav(position) -> Vec3:
    return Vec3(position[0], position[2], -position[1])


def heading_to_bullet_yaw(heading: float) -> float:
    return normalize_angle(math.pi / 2 - heading)


def _rotate_planar(vector: Vec3, angle: float) -> Vec3:
    """Rotate a vector by `angle` in the heading sense (clockwise from above)."""
    c, s = math.cos(angle), math.sin(angle)
    return Vec3(vector.x * c - vector.z * s, vector.y, vector.z * c + vector.x * s)


# ENVIRONMENT SETUP


def connect(gui: bool = True) -> int:
    """
    Connect to PyBullet.
    """
    mode = pybullet.GUI if gui else pybullet.DIRECT
    return pybullet.connect(mode)


def create_environment(size: float = GRID_SIZE) -> dict:
    """
    Reset the world: ground plane, floor grid and camera.

    Returns:
        Dict with plane_id and size.
    """
    pybullet.resetSimulation()
    pybullet.setAdditionalSearchPath(pybullet_data.getDataPath())
    pybullet.setGravity(0, 0, -9.8)
    pybullet.setTimeStep(TIME_STEP)

    plane_id = pybullet.loadURDF("plane.urdf")
    _draw_grid(size)
    pybullet.resetDebugVisualizerCamera(8.0, 0, -60, [0, 0, 0])
    return {"plane_id": plane_id, "size": size}


def _draw_grid(size: float):
    """Draw grid lines on floor."""
    half = size / 2
    cells = int(size / GRID_CELL)
    for i in range(cells + 1):
        pos = -half + i * GRID_CELL
        pybullet.addUserDebugLine([-half, pos, 0.01], [half, pos, 0.01], [0.3, 0.3, 0.3])
        pybullet.addUserDebugLine([pos, -half, 0.01], [pos, half, 0.01], [0.3, 0.3, 0.3])


# WALKER


class WalkerSimulation:
    """A person carrying the sensor, moved kinematically step by step."""

    def __init__(self, start: Vec3 = Vec3(0.0, SENSOR_HEIGHT, 0.0), heading: float = 0.0):
        visual = pybullet.createVisualShape(
            pybullet.GEOM_CAPSULE, radius=0.15, length=SENSOR_HEIGHT - 0.3, rgbaColor=[0.2, 0.4, 0.9, 1]
        )
        self.body_id = pybullet.createMultiBody(0, baseVisualShapeIndex=visual)
        self.position = start
        self.heading = heading
        self._sync()

    def _sync(self) -> None:
        body = nav_to_bullet(self.position)
        body[2] = self.position.y / 2
        pybullet.resetBasePositionAndOrientation(
            self.body_id, body, pybullet.getQuaternionFromEuler([0, 0, heading_to_bullet_yaw(self.heading)])
        )

    def world_pose(self) -> Pose:
        """Ground-truth pose read back from PyBullet (body +X axis is forward)."""
        pos, orn = pybullet.getBasePositionAndOrientation(self.body_id)
        matrix = pybullet.getMatrixFromQuaternion(orn)
        forward = bullet_to_nav((matrix[0], matrix[3], matrix[6]))
        position = bullet_to_nav(pos)
        return Pose.from_forward(Vec3(position.x, self.position.y, position.z), forward)

    def turn_to(self, heading: float) -> Iterator[Pose]:
        """Rotate in place; yields the pose after every frame."""
        delta = normalize_angle(heading - self.heading)
        steps = max(1, int(math.ceil(abs(delta) / (TURN_SPEED * TIME_STEP))))
        start = self.heading
        for i in range(1, steps + 1):
            self.heading = normalize_angle(start + delta * i / steps)
            self._sync()
            pybullet.stepSimulation()
            yield self.world_pose()

    def walk_to(self, x: float, z: float, face_travel: bool = True) -> Iterator[Pose]:
        """Walk in a straight line to (x, z); yields the pose after every frame."""
        target = Vec3(x, self.position.y, z)
        offset = target - self.position
        distance = math.hypot(offset.x, offset.z)
        if distance < 1e-9:
            return
        if face_travel:
            yield from self.turn_to(direction_of_travel(self.position, target))
        steps = max(1, int(math.ceil(distance / (WALK_SPEED * TIME_STEP))))
        start = self.position
        for i in range(1, steps + 1):
            self.position = start + offset.scaled(i / steps)
            self._sync()
            pybullet.stepSimulation()
            yield self.world_pose()


# TRACKING SENSOR


class SimulatedTracker:
    """
    TrackingSensor backed by a WalkerSimulation.

    Each run has its own coordinate frame whose origin is the walker's pose
    when the run started, like a phone tracking session. Anchors are kept in
    world coordinates and are only findable while the current run knows the
    world (a run started without a snapshot forgets earlier anchors).
    """

    def __init__(
        self,
        walker: WalkerSimulation,
        snapshot_available: bool = True,
        initializing_steps: int = INITIALIZING_STEPS,
        relocalization_steps: int = RELOCALIZATION_STEPS,
        snapshot_delay_steps: int = SNAPSHOT_DELAY_STEPS,
    ):
        self.walker = walker
        self.snapshot_available = snapshot_available
        self.initializing_steps = initializing_steps
        self.relocalization_steps = relocalization_steps
        self.snapshot_delay_steps = snapshot_delay_steps

        self.on_pose: Callable[[Pose | None], None] | None = None
        self.on_quality: Callable[[TrackingQuality], None] | None = None

        self._running = False
        self._quality = TrackingQuality.unavailable()
        self._origin = Pose(0.0, 0.0, 0.0, 0.0)
        self._warmup = 0
        self._anchors: dict[str, Pose] = {}
        self._pending_anchors: dict[str, Pose] = {}
        self._snapshot_requests: list[list] = []  # [frames_left, callback]
        self.frame = 0

    # --- Frames ---

    def world_to_session(self, pose: Pose) -> Pose:
        local = _rotate_planar(pose.position - self._origin.position, -self._origin.yaw)
        return Pose(local.x, pose.y, local.z, normalize_angle(pose.yaw - self._origin.yaw))

    def session_to_world(self, pose: Pose) -> Pose:
        world = _rotate_planar(Vec3(pose.x, 0.0, pose.z), self._origin.yaw)
        return Pose(
            world.x + self._origin.x,
            pose.y,
            world.z + self._origin.z,
            normalize_angle(pose.yaw + self._origin.yaw),
        )

    def point_to_world(self, position: Vec3) -> Vec3:
        return self.session_to_world(Pose.at(position)).position

    # --- TrackingSensor ---

    @property
    def tracking_quality(self) -> TrackingQuality:
        return self._quality

    def current_pose(self) -> Pose | None:
        if not self._running:
            return None
        return self.world_to_session(self.walker.world_pose())

    def start_run(self, snapshot: bytes | None = None) -> None:
        self._running = True
        self._origin = self.walker.world_pose()
        self._origin = Pose(self._origin.x, 0.0, self._origin.z, self._origin.yaw)
        self._anchors = {}
        self._pending_anchors = {}
        self._snapshot_requests = []
        if snapshot:
            self._pending_anchors = self._decode_snapshot(snapshot)
            self._warmup = self.relocalization_steps
            self._set_quality(TrackingQuality.limited(LimitedReason.RELOCALIZING))
        else:
            self._warmup = self.initializing_steps
            self._set_quality(TrackingQuality.limited(LimitedReason.INITIALIZING))
        logger.info("Tracking run started (seeded=%s)", bool(snapshot))

    def request_snapshot(self, callback: SnapshotCallback) -> None:
        if not self._running:
            raise SensorNotReady()
        self._snapshot_requests.append([self.snapshot_delay_steps, callback])

    def place_anchor(self, name: str, pose: Pose) -> str:
        if not self._running:
            raise SensorNotReady()
        self._anchors[name] = self.session_to_world(pose)
        return name

    def find_anchor(self, key: str) -> Pose | None:
        if not self._quality.is_normal:
            return None
        world = self._anchors.get(key)
        return None if world is None else self.world_to_session(world)

    # --- Stepping ---

    def _set_quality(self, quality: TrackingQuality) -> None:
        if quality == self._quality:
            return
        self._quality = quality
        if self.on_quality is not None:
            self.on_quality(quality)

    def step(self) -> None:
        """Advance one sensor frame: quality, snapshot completions, pose callback."""
        self.frame += 1
        if not self._running:
            return

        if self._warmup > 0:
            self._warmup -= 1
            if self._warmup == 0:
                self._anchors.update(self._pending_anchors)
                self._pending_anchors = {}
                self._set_quality(TrackingQuality.normal())

        due = []
        for request in self._snapshot_requests:
            request[0] -= 1
            if request[0] <= 0:
                due.append(request)
        for request in due:
            self._snapshot_requests.remove(request)
            request[1](self._encode_snapshot())

        if self.on_pose is not None:
            self.on_pose(self.current_pose())

    def follow(self, poses: Iterator[Pose]) -> int:
        """Step once per frame of a walker motion; returns the frame count."""
        frames = 0
        for _ in poses:
            self.step()
            frames += 1
        return frames

    # --- Snapshots ---

    def _encode_snapshot(self) -> bytes | None:
        if not self.snapshot_available or not self._quality.is_normal:
            return None
        payload = {
            "frame": self.frame,
            "anchors": {key: [p.x, p.y, p.z, p.yaw] for key, p in self._anchors.items()},
        }
        return json.dumps(payload).encode("utf-8")

    @staticmethod
    def _decode_snapshot(snapshot: bytes) -> dict[str, Pose]:
        try:
            payload = json.loads(snapshot.decode("utf-8"))
            return {key: Pose(*values) for key, values in payload["anchors"].items()}
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable environment snapshot (%d bytes)", len(snapshot))
            return {}


# RENDERER


class DebugRenderer:
    """Renderer drawing into the PyBullet debug view."""

    RIBBON_WIDTH = 4
    MARKER_RADIUS = 0.05
    MARKER_HEIGHT = 0.4
    TURN_RADIUS = 0.04
    EVENT_RADIUS = 0.1

    def __init__(self, tracker: SimulatedTracker):
        self.tracker = tracker
        self._lines: dict[str, list[int]] = defaultdict(list)
        self._bodies: dict[str, list[int]] = defaultdict(list)

    def _world(self, position: Vec3) -> list[float]:
        return nav_to_bullet(self.tracker.point_to_world(position))

    def _shape(self, group: str, shape: int, position: Vec3, rgb, **kwargs) -> None:
        visual = pybullet.createVisualShape(shape, rgbaColor=[*rgb, 1.0], **kwargs)
        body = pybullet.createMultiBody(0, baseVisualShapeIndex=visual, basePosition=self._world(position))
        self._bodies[group].append(body)

    def draw_marker(self, kind: MarkerKind, position: Vec3, group: str) -> None:
        rgb = COLORS[kind]
        if kind is MarkerKind.TURN:
            self._shape(group, pybullet.GEOM_SPHERE, position, rgb, radius=self.TURN_RADIUS)
        else:
            self._shape(
                group, pybullet.GEOM_CYLINDER, position, rgb, radius=self.MARKER_RADIUS, length=self.MARKER_HEIGHT
            )

    def draw_ribbon(self, start: Vec3, end: Vec3, color: TrailColor, group: str) -> None:
        line = pybullet.addUserDebugLine(
            self._world(start), self._world(end), list(COLORS[color]), lineWidth=self.RIBBON_WIDTH
        )
        self._lines[group].append(line)

    def draw_arrow(self, start: Vec3, end: Vec3, group: str) -> None:
        # Two short barbs at `end`, pointing back along the segment.
        a, b = self._world(start), self._world(end)
        dx, dy = b[0] - a[0], b[1] - a[1]
        length = math.hypot(dx, dy)
        if length < 1e-6:
            return
        back = math.atan2(-dy, -dx)
        for spread in (-0.5, 0.5):
            tip = [b[0] + 0.1 * math.cos(back + spread), b[1] + 0.1 * math.sin(back + spread), b[2]]
            self._lines[group].append(pybullet.addUserDebugLine(b, tip, list(COLORS["arrow"]), lineWidth=2))

    def draw_event(self, kind: EventKind, position: Vec3, group: str) -> None:
        self._shape(group, pybullet.GEOM_SPHERE, position, COLORS["event"], radius=self.EVENT_RADIUS)
        label = self._world(position)
        label[2] += 0.3
        self._lines[group].append(pybullet.addUserDebugText(kind.label, label, [1, 1, 1], textSize=1.2))

    def clear(self, group: str) -> None:
        for line in self._lines.pop(group, []):
            pybullet.removeUserDebugItem(line)
        for body in self._bodies.pop(group, []):
            pybullet.removeBody(body)

    def count(self, group: str) -> int:
        """Items currently drawn in a group."""
        return len(self._lines.get(group, ())) + len(self._bodies.get(group, ()))
