"""
Session metrics - counters for recording and replay activity.

Modules call `get_metrics().record_*()`; the demo prints `summary()` at the end.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field


@dataclass
class SessionMetrics:
    pose_ticks: int = 0
    turns_recorded: int = 0
    turns_too_short: int = 0
    events_recorded: int = 0
    trail_segments: int = 0
    routes_saved: int = 0
    save_failures: int = 0
    snapshot_misses: int = 0
    replays_started: int = 0
    relocalization: Counter = field(default_factory=Counter)

    def record_pose_tick(self) -> None:
        self.pose_ticks += 1

    def record_turn(self, committed: bool) -> None:
        if committed:
            self.turns_recorded += 1
        else:
            self.turns_too_short += 1

    def record_event(self) -> None:
        self.events_recorded += 1

    def record_trail_segment(self) -> None:
        self.trail_segments += 1

    def record_save(self, success: bool) -> None:
        if success:
            self.routes_saved += 1
        else:
            self.save_failures += 1

    def record_snapshot_miss(self) -> None:
        self.snapshot_misses += 1

    def record_replay(self) -> None:
        self.replays_started += 1

    def record_relocalization(self, outcome: str) -> None:
        """outcome: "resolved" or "fallback"."""
        self.relocalization[outcome] += 1

    def summary(self) -> dict:
        return {
            "pose_ticks": self.pose_ticks,
            "turns_recorded": self.turns_recorded,
            "turns_too_short": self.turns_too_short,
            "events_recorded": self.events_recorded,
            "trail_segments": self.trail_segments,
            "routes_saved": self.routes_saved,
            "save_failures": self.save_failures,
            "snapshot_misses": self.snapshot_misses,
            "replays_started": self.replays_started,
            "relocalization": dict(self.relocalization),
        }


_metrics = SessionMetrics()


def get_metrics() -> SessionMetrics:
    return _metrics


def reset_metrics() -> SessionMetrics:
    """Start a fresh set of counters (demo runs, tests)."""
    global _metrics
    _metrics = SessionMetrics()
    return _metrics
