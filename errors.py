"""
Errors raised by recording, replay and the route store.

Soft conditions (turn too short, snapshot unavailable) are reported as status
messages and never abort a session; the classes here are for everything the
caller has to see.
"""

from __future__ import annotations


class NavigationError(Exception):
    """Base class for all navigation errors."""

    message = "Navigation error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class NotTracking(NavigationError):
    """No current pose when one is required."""

    message = "No pose available (tracking not established)"


class NothingRecorded(NavigationError):
    """Save attempted with no captured items."""

    message = "Nothing recorded (walk a little before saving)"


class SnapshotUnavailable(NavigationError):
    """Environment snapshot capture failed or returned nothing."""

    message = "Environment snapshot unavailable"


class SensorNotReady(NavigationError):
    """Command needs a tracking session that is not running yet."""

    message = "Tracking sensor is not ready"


class _StoreError(NavigationError):
    prefix = "Store error"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"{self.prefix}: {reason}")


class SaveFailed(_StoreError):
    """Persistence layer rejected a write."""

    prefix = "Save failed"


class FetchFailed(_StoreError):
    """Persistence layer could not read routes."""

    prefix = "Fetch failed"


class DeleteFailed(_StoreError):
    """Persistence layer could not delete a route."""

    prefix = "Delete failed"
