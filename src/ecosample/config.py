#!/usr/bin/env python3
"""ecosample.config

Shared configuration utilities for the ecosample CLI subsystems.

This module provides common helpers used across ecosample.registry,
ecosample.features, etc.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Bbox helpers are used to derive the area of interest from the input points.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def load_sources_block(data: Dict[str, Any], path: Optional[Path] = None) -> Dict[str, dict]:
    """Return the `sources:` mapping of a parsed sources YAML.

    Expects structure like:
        sources:
          worldclim:
            kind: static-raster
            ...

    Raises ValueError if structure is invalid.
    """
    where = path if path is not None else "sources YAML"
    sources = data.get("sources")
    if not isinstance(sources, dict) or not sources:
        raise ValueError(f"{where} must have a non-empty top-level 'sources:' mapping.")
    for name, cfg in sources.items():
        if not isinstance(cfg, dict):
            raise ValueError(f"{where}: source '{name}' must be a mapping, got {type(cfg).__name__}")
    return sources


# -----------------------------------------------------------------------------
# Pipeline settings
# -----------------------------------------------------------------------------
# Run-level knobs that are not tied to a single source.

DEFAULT_PERCENTILES: Tuple[int, ...] = (25, 50, 75)


@dataclass(frozen=True)
class PipelineSettings:
    crs: Optional[str] = "EPSG:3035"
    id_field: Optional[str] = None
    workers: int = 1
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    # AOI padding, in multiples of each source's resolution
    margin_pixels: int = 2
    # radius (CRS units) used to turn bare point geometries into footprints; 0 = off
    footprint_buffer: float = 0.0
    percentiles: Tuple[int, ...] = DEFAULT_PERCENTILES


def pipeline_settings(data: Dict[str, Any]) -> PipelineSettings:
    """Build PipelineSettings from the optional `pipeline:` block."""
    block = data.get("pipeline") or {}
    if not isinstance(block, dict):
        raise ValueError("'pipeline:' must be a mapping")

    percentiles = block.get("percentiles", DEFAULT_PERCENTILES)
    if not isinstance(percentiles, (list, tuple)) or not percentiles:
        raise ValueError(f"pipeline.percentiles must be a non-empty list, got {percentiles!r}")

    settings = PipelineSettings(
        crs=block.get("crs", PipelineSettings.crs),
        id_field=block.get("id_field"),
        workers=int(block.get("workers", 1)),
        max_attempts=int(block.get("max_attempts", 5)),
        backoff_seconds=float(block.get("backoff_seconds", 1.0)),
        margin_pixels=int(block.get("margin_pixels", 2)),
        footprint_buffer=float(block.get("footprint_buffer", 0.0)),
        percentiles=tuple(int(p) for p in percentiles),
    )
    if settings.footprint_buffer < 0:
        raise ValueError(f"pipeline.footprint_buffer must be >= 0, got {settings.footprint_buffer}")
    if settings.workers < 1:
        raise ValueError(f"pipeline.workers must be >= 1, got {settings.workers}")
    if settings.max_attempts < 1:
        raise ValueError(f"pipeline.max_attempts must be >= 1, got {settings.max_attempts}")
    return settings


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used to derive the area of interest (AOI) from the input points.

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmin > xmax or ymin > ymax:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def union_bbox(bboxes: Iterable[BBox]) -> Optional[BBox]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def buffer_bbox(b: BBox, distance: float) -> BBox:
    """Grow a bbox by `distance` on every side."""
    return (b[0] - distance, b[1] - distance, b[2] + distance, b[3] + distance)


def bboxes_intersect(a: BBox, b: BBox) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


def describe_sources(sources: Dict[str, dict]) -> List[str]:
    """One summary line per configured source, in config order."""
    lines = []
    for name, cfg in sources.items():
        kind = cfg.get("kind", "?")
        policy = cfg.get("reduction_policy", "?")
        lines.append(f"{name} ({kind}, {policy}, scale={cfg.get('scale', '?')})")
    return lines


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_POINTS_PATH = Path("data/raw/points/points.gpkg")
DEFAULT_OUT_CSV = Path("data/processed/features/point_features.csv")
DEFAULT_FAILURES_CSV = Path("data/processed/features/point_failures.csv")
