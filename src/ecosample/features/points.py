#!/usr/bin/env python3
"""points.py

Input points: an identifier, a shapely geometry, and whatever attributes the
source dataset already carries. Points are immutable; extraction only ever
builds new records next to them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import geopandas as gpd
import pandas as pd
from shapely.geometry.base import BaseGeometry

from ecosample.config import BBox, union_bbox


@dataclass(frozen=True)
class Point:
    point_id: Any
    geometry: BaseGeometry
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # read-only view over a private copy
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))


def _clean(value: Any) -> Any:
    """pandas/numpy scalars -> plain Python, NaN -> None."""
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value.item() if hasattr(value, "item") else value


def points_from_geodataframe(gdf: gpd.GeoDataFrame, id_field: Optional[str] = None) -> List[Point]:
    """Convert rows to Points, keeping row order.

    With no id_field the row index is the identifier.
    """
    if id_field is not None and id_field not in gdf.columns:
        raise SystemExit(f"id field '{id_field}' not found. Available columns: {list(gdf.columns)}")

    geom_col = gdf.geometry.name
    attr_cols = [c for c in gdf.columns if c != geom_col and c != id_field]
    points = []
    for idx, row in gdf.iterrows():
        pid = _clean(row[id_field]) if id_field is not None else _clean(idx)
        attrs = {c: _clean(row[c]) for c in attr_cols}
        points.append(Point(point_id=pid, geometry=row[geom_col], attributes=attrs))
    return points


def load_points(
    path: Path,
    *,
    id_field: Optional[str] = None,
    crs: Optional[str] = None,
    layer: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Point]:
    """Read a vector file (GeoPackage, shapefile, GeoJSON...) into Points.

    Geometries are reprojected to `crs` when given, so they match the working
    CRS the rasters are materialized in.
    """
    if not path.exists():
        raise SystemExit(f"Points file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)

    if gdf.empty:
        raise SystemExit(f"Loaded {path} but it contains zero features. Wrong file?")
    if crs is not None:
        if gdf.crs is None:
            raise SystemExit(f"{path} has no CRS; can't reproject points to {crs} safely.")
        gdf = gdf.to_crs(crs)
    if limit is not None:
        gdf = gdf.head(int(limit))
    return points_from_geodataframe(gdf, id_field=id_field)


def with_footprint(points: Sequence[Point], radius: float) -> List[Point]:
    """Buffer bare Point geometries into discs of `radius`.

    Polygons and other geometries are kept as they are, so a collapsed
    geometry stays collapsed.
    """
    if radius <= 0:
        return list(points)
    out = []
    for p in points:
        geom = p.geometry
        if geom is not None and not geom.is_empty and geom.geom_type == "Point":
            geom = geom.buffer(radius)
        out.append(Point(point_id=p.point_id, geometry=geom, attributes=p.attributes))
    return out


def points_bound(points: Iterable[Point]) -> Optional[BBox]:
    """Bounding box containing every non-empty point geometry."""
    return union_bbox(
        tuple(p.geometry.bounds) for p in points if p.geometry is not None and not p.geometry.is_empty
    )


def attribute_columns(points: Sequence[Point]) -> List[str]:
    """Attribute names across all points, in first-seen order."""
    seen = {}
    for p in points:
        for k in p.attributes:
            seen.setdefault(k, None)
    return list(seen)
