"""
Route stores - durable records of saved routes.

InMemoryRouteStore backs tests and the demo; JsonRouteStore keeps one JSON
file per route in a directory (snapshot bytes are base64 encoded).
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Sequence

from errors import DeleteFailed, FetchFailed, SaveFailed
from route import Route, RouteItem, RouteSummary, item_from_dict, item_to_dict

logger = logging.getLogger(__name__)


def _new_route(
    items: Sequence[RouteItem],
    environment_snapshot: bytes | None,
    anchor_key: str | None,
    start_heading: float,
) -> Route:
    if not items:
        raise SaveFailed("route has no items")
    return Route(
        items=tuple(items),
        start_heading=float(start_heading),
        start_anchor_key=anchor_key,
        environment_snapshot=bytes(environment_snapshot) if environment_snapshot else None,
    )


def _newest_first(routes) -> list[RouteSummary]:
    return [route.summary() for route in sorted(routes, key=lambda r: r.created_at, reverse=True)]


class InMemoryRouteStore:
    def __init__(self):
        self._routes: dict[str, Route] = {}

    def save(self, items, environment_snapshot, anchor_key, start_heading) -> Route:
        route = _new_route(items, environment_snapshot, anchor_key, start_heading)
        self._routes[route.id] = route
        logger.info(
            "Route saved: %s, items: %d, %s",
            route.name, len(route.items), "with snapshot" if route.environment_snapshot else "no snapshot",
        )
        return route

    def list_all(self) -> list[RouteSummary]:
        return _newest_first(self._routes.values())

    def get(self, route_id: str) -> Route:
        try:
            return self._routes[route_id]
        except KeyError:
            raise FetchFailed(f"no route with id {route_id}") from None

    def delete(self, route_id: str) -> None:
        if self._routes.pop(route_id, None) is None:
            raise DeleteFailed(f"no route with id {route_id}")
        logger.info("Route deleted: %s", route_id)


# JSON DIRECTORY STORE


def route_to_dict(route: Route) -> dict:
    snapshot = route.environment_snapshot
    return {
        "id": route.id,
        "name": route.name,
        "created_at": route.created_at.isoformat(),
        "start_heading": route.start_heading,
        "start_anchor_key": route.start_anchor_key,
        "environment_snapshot": base64.b64encode(snapshot).decode("ascii") if snapshot else None,
        "items": [item_to_dict(item) for item in route.items],
    }


def route_from_dict(data: dict) -> Route:
    snapshot = data.get("environment_snapshot")
    return Route(
        id=data["id"],
        name=data["name"],
        created_at=datetime.fromisoformat(data["created_at"]),
        start_heading=float(data["start_heading"]),
        start_anchor_key=data.get("start_anchor_key"),
        environment_snapshot=base64.b64decode(snapshot) if snapshot else None,
        items=tuple(item_from_dict(item) for item in data["items"]),
    )


class JsonRouteStore:
    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, route_id: str) -> Path:
        return self.directory / f"{route_id}.json"

    def save(self, items, environment_snapshot, anchor_key, start_heading) -> Route:
        route = _new_route(items, environment_snapshot, anchor_key, start_heading)
        path = self._path(route.id)
        # Readers only ever see complete files.
        partial = path.with_name(path.name + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            partial.write_text(json.dumps(route_to_dict(route), indent=2), encoding="utf-8")
            partial.replace(path)
        except OSError as exc:
            if partial.exists():
                partial.unlink()
            raise SaveFailed(str(exc)) from exc
        logger.info("Route saved: %s -> %s", route.name, path)
        return route

    def _load(self, path: Path) -> Route:
        try:
            return route_from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise FetchFailed(f"{path.name}: {exc}") from exc

    def list_all(self) -> list[RouteSummary]:
        """Readable routes, newest first. Unreadable files are logged and skipped."""
        if not self.directory.exists():
            return []
        try:
            paths = sorted(self.directory.glob("*.json"))
        except OSError as exc:
            raise FetchFailed(f"{self.directory}: {exc}") from exc

        routes = []
        for path in paths:
            try:
                routes.append(self._load(path))
            except FetchFailed as exc:
                logger.warning("Skipping unreadable route file: %s", exc)
        return _newest_first(routes)

    def get(self, route_id: str) -> Route:
        path = self._path(route_id)
        if not path.exists():
            raise FetchFailed(f"no route with id {route_id}")
        return self._load(path)

    def delete(self, route_id: str) -> None:
        try:
            self._path(route_id).unlink()
        except OSError as exc:
            raise DeleteFailed(f"{route_id}: {exc}") from exc
        logger.info("Route deleted: %s", route_id)
