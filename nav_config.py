"""
Navigation settings - recording thresholds, trail cadence, replay placement.

Defaults can be overridden from a `[tool.pathreplay]` table in
pyproject.toml, e.g.

    [tool.pathreplay.recording]
    min_turn_distance = 0.1

    [tool.pathreplay.positioning]
    fallback_forward_distance = 1.5
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping


_PROJECT_FILENAME = "pyproject.toml"
_TOOL_SECTION = "pathreplay"


@dataclass(frozen=True, slots=True)
class RecordingConfig:
    min_turn_distance: float = 0.05  # shorter "mark turn" legs are ignored
    min_save_distance: float = 0.01  # residual leg at save time; noise floor


@dataclass(frozen=True, slots=True)
class TrailConfig:
    ribbon_interval: float = 0.15  # live trail segment length


@dataclass(frozen=True, slots=True)
class PositioningConfig:
    floor_offset: float = 0.5  # sensor height above the walking surface
    fallback_forward_distance: float = 1.0


@dataclass(frozen=True, slots=True)
class NavigationConfig:
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    trail: TrailConfig = field(default_factory=TrailConfig)
    positioning: PositioningConfig = field(default_factory=PositioningConfig)


DEFAULT_CONFIG = NavigationConfig()


def _apply_section(section: Any, overrides: Mapping[str, Any], name: str) -> Any:
    values: dict[str, float] = {}
    known = {f.name for f in fields(section)}
    for key, value in overrides.items():
        if key not in known:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"[tool.{_TOOL_SECTION}.{name}] {key} must be a number, got {value!r}")
        if value < 0:
            raise ValueError(f"[tool.{_TOOL_SECTION}.{name}] {key} must be >= 0, got {value!r}")
        values[key] = float(value)
    return replace(section, **values)


def config_from_mapping(
    payload: Mapping[str, Any], base: NavigationConfig = DEFAULT_CONFIG
) -> NavigationConfig:
    """Overlay a `{section: {key: value}}` mapping on `base`."""
    updated = {}
    for section_field in fields(base):
        overrides = payload.get(section_field.name)
        if overrides is None:
            continue
        if not isinstance(overrides, Mapping):
            raise ValueError(f"[tool.{_TOOL_SECTION}.{section_field.name}] must be a table")
        current = getattr(base, section_field.name)
        updated[section_field.name] = _apply_section(current, overrides, section_field.name)
    return replace(base, **updated)


def load_navigation_config(path: Path | str | None = None) -> NavigationConfig:
    """
    Load settings from `[tool.pathreplay]` in a pyproject.toml.

    Args:
        path: pyproject.toml file or the directory holding it. None or a
            missing file yields the defaults.
    """
    if path is None:
        return DEFAULT_CONFIG
    candidate = Path(path).expanduser()
    if candidate.name != _PROJECT_FILENAME:
        candidate = candidate / _PROJECT_FILENAME
    if not candidate.exists():
        return DEFAULT_CONFIG

    with candidate.open("rb") as handle:
        data = tomllib.load(handle)

    section = data.get("tool", {}).get(_TOOL_SECTION)
    if not isinstance(section, Mapping):
        return DEFAULT_CONFIG
    return config_from_mapping(section)
