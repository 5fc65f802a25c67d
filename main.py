"""
Path Replay Demo - record a walk once, replay it after a tracking restart.

Main entry point. Runs the full loop in PyBullet:
- geometry.py        : frames, headings, planar distances
- route.py           : Move/Event items and saved routes
- recorder.py        : pose stream -> route items
- reconstruction.py  : route items -> waypoints from any start pose
- relocalization.py  : finding the original start point again
- navigation.py      : phase state machine (Idle / Recording / Replaying)
- simulation.py      : PyBullet walker, tracker and debug renderer
- main.py            : Entry point (this file)
"""

from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path

import pybullet

import simulation
from geometry import planar_distance
from interfaces import REPLAY_GROUP
from metrics import get_metrics, reset_metrics
from nav_config import load_navigation_config
from navigation import NavigationMachine, Replaying
from relocalization import RelocalizationState
from route import EventKind
from route_store import InMemoryRouteStore, JsonRouteStore

# L-shaped walk with a door half way, in world meters (x, z)
DEMO_PATH = [(0.0, -2.0), (0.0, -4.0), (3.0, -4.0)]
DOOR_AFTER_LEG = 1


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--gui", action="store_true", help="open the PyBullet GUI")
    parser.add_argument("--store", type=Path, default=None, help="directory for JSON route files")
    parser.add_argument("--config", type=Path, default=None, help="pyproject.toml with [tool.pathreplay]")
    parser.add_argument("--no-snapshot", action="store_true", help="simulate snapshot capture failure")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Run the record/replay demo."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    reset_metrics()

    print("=" * 60)
    print("Path Replay - record once, replay anywhere")
    print("=" * 60)

    print("\n[1] Connecting to PyBullet...")
    try:
        client_id = simulation.connect(gui=args.gui)
        if client_id < 0:
            raise RuntimeError("PyBullet GUI connection failed")
    except Exception:
        print("    GUI unavailable, using DIRECT mode")
        client_id = simulation.connect(gui=False)
        if client_id < 0:
            raise RuntimeError("PyBullet DIRECT connection failed")
    simulation.create_environment()

    print("\n[2] Starting tracking...")
    config = load_navigation_config(args.config)
    walker = simulation.WalkerSimulation()
    tracker = simulation.SimulatedTracker(walker, snapshot_available=not args.no_snapshot)
    renderer = simulation.DebugRenderer(tracker)
    store = JsonRouteStore(args.store) if args.store else InMemoryRouteStore()
    machine = NavigationMachine(tracker, store, renderer, config)
    tracker.on_pose = machine.on_pose_tick
    tracker.on_quality = machine.on_tracking_quality_changed
    tracker.start_run()
    while not machine.state.sensor_ready:
        tracker.step()
    print(f"    {machine.state.status_message}")

    print("\n[3] Recording the walk...")
    start_world = walker.world_pose()
    machine.start_recording()
    for leg, (x, z) in enumerate(DEMO_PATH):
        tracker.follow(walker.walk_to(x, z))
        machine.mark_turn()
        print(f"    leg {leg + 1}: {machine.state.status_message}")
        if leg == DOOR_AFTER_LEG:
            machine.add_event(EventKind.DOOR)
    goal_world = walker.world_pose()

    print("\n[4] Saving...")
    machine.save_route()
    while machine.state.is_saving:
        tracker.step()
    print(f"    {machine.state.status_message}")
    if not machine.state.saved_routes:
        print("    Nothing saved")
        pybullet_disconnect()
        return 1
    summary = machine.state.saved_routes[0]
    print(
        f"    {summary.name}: {summary.total_distance:.2f}m, "
        f"{summary.move_count} moves, {summary.event_count} events"
    )

    print("\n[5] Restarting tracking somewhere else (new coordinate frame)...")
    tracker.follow(walker.walk_to(-2.0, 1.0))
    tracker.follow(walker.turn_to(math.radians(-135)))
    tracker.start_run()
    while not machine.state.sensor_ready:
        tracker.step()

    print("\n[6] Replaying...")
    replay = machine.start_replay(summary.id)
    while replay.state is RelocalizationState.AWAITING_TRACKING_NORMAL:
        tracker.step()
    print(f"    {machine.state.status_message} ({replay.state.value})")

    if replay.placement is not None:
        placed_start = tracker.point_to_world(replay.placement.position)
        error = planar_distance(placed_start, start_world)
        print(f"    Start placed {error:.3f}m from the original start point")
        print(f"    Replay items drawn: {renderer.count(REPLAY_GROUP)}")
        print(f"    Goal was at ({goal_world.x:.2f}, {goal_world.z:.2f})")

    if isinstance(machine.phase, Replaying):
        machine.stop_replay()

    print("\n" + "=" * 60)
    print("METRICS")
    for key, value in get_metrics().summary().items():
        print(f"    {key}: {value}")
    print("=" * 60)

    pybullet_disconnect()
    return 0


def pybullet_disconnect() -> None:
    if pybullet.isConnected():
        pybullet.disconnect()


if __name__ == "__main__":
    raise SystemExit(main())
