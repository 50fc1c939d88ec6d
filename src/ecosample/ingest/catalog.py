#!/usr/bin/env python3
"""catalog.py

Resolve a Source's `location` (a GeoTIFF path or glob) into in-memory rasters
for the local provider.

Every source is read onto its own target Grid (AOI bound + source resolution):
- Fast path: same CRS and pixel size, grid aligned with the file's pixels ->
  a boundless window read (only the AOI window leaves the disk).
- Otherwise: rasterio.warp.reproject with nearest-neighbour resampling.

Pixels outside the file's extent, equal to nodata, or NaN are masked
(unavailable). Nothing is filled with zero.

Collections are scanned on metadata only (bounds, tags, date). Pixels are
read lazily when the provider asks for an item's image.

Required deps (typical conda geo stack): rasterio, numpy
"""

from __future__ import annotations

import glob
import re
from datetime import date, datetime
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.warp import reproject, transform_bounds
from rasterio.windows import Window

from ecosample.config import BBox
from ecosample.geo.raster import Grid, ImageCollection, Item, Raster, mosaic
from ecosample.registry.sources import InvalidSourceConfig, Source


# tags checked (in order) for an acquisition date when no filename pattern is set
DATE_TAGS = ("DATE", "date", "DATE_ACQUIRED", "ACQUISITION_DATE")


def resolve_paths(location: str, base_dir: Optional[Path] = None) -> List[Path]:
    """Expand a path or glob pattern. Sorted, so runs see files in a stable order."""
    pattern = str(Path(base_dir) / location) if base_dir is not None else str(location)
    return [Path(p) for p in sorted(glob.glob(pattern))]


def _same_crs(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return True
    return CRS.from_user_input(a) == CRS.from_user_input(b)


def _aligned_offsets(src, grid: Grid) -> Optional[tuple]:
    """(col_off, row_off) if grid pixels coincide with the file's pixels, else None."""
    st = src.transform
    if st.b != 0 or st.d != 0:
        return None
    if not np.allclose((st.a, -st.e), grid.res, rtol=0, atol=1e-9 * max(grid.res)):
        return None
    col = (grid.transform.c - st.c) / st.a
    row = (st.f - grid.transform.f) / -st.e
    if abs(col - round(col)) > 1e-6 or abs(row - round(row)) > 1e-6:
        return None
    return int(round(col)), int(round(row))


def _band_names(src, band_names: Optional[Sequence[str]]) -> List[str]:
    if band_names is not None:
        if len(band_names) != src.count:
            raise InvalidSourceConfig(
                f"{src.name}: has {src.count} band(s) but band_names lists {len(band_names)}"
            )
        return [str(b) for b in band_names]
    names = []
    for i, desc in enumerate(src.descriptions, start=1):
        names.append(desc if desc else f"b{i}")
    return names


def read_to_grid(
    path: Path,
    grid: Grid,
    band_names: Optional[Sequence[str]] = None,
    nodata: Optional[float] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> Raster:
    """Read every band of a GeoTIFF onto `grid`."""
    with rasterio.open(path) as src:
        names = _band_names(src, band_names)
        src_nodata = nodata if nodata is not None else src.nodata
        offsets = _aligned_offsets(src, grid) if _same_crs(src.crs, grid.crs) else None

        if offsets is not None:
            col_off, row_off = offsets
            win = Window(col_off, row_off, grid.width, grid.height)
            fill = src_nodata if src_nodata is not None else 0
            data = src.read(window=win, boundless=True, fill_value=fill).astype("float64")

            mask = np.zeros(data.shape, dtype=bool)
            rows = np.arange(grid.height) + row_off
            cols = np.arange(grid.width) + col_off
            mask[:, (rows < 0) | (rows >= src.height), :] = True
            mask[:, :, (cols < 0) | (cols >= src.width)] = True
        else:
            if src.crs is None or grid.crs is None:
                raise ValueError(f"Cannot reproject {path} onto the target grid without a CRS on both sides")
            data = np.full((src.count,) + grid.shape, np.nan, dtype="float64")
            for i in range(src.count):
                reproject(
                    source=rasterio.band(src, i + 1),
                    destination=data[i],
                    src_transform=src.transform,
                    src_crs=src.crs,
                    src_nodata=src_nodata,
                    dst_transform=grid.transform,
                    dst_crs=grid.crs,
                    dst_nodata=np.nan,
                    resampling=Resampling.nearest,
                )
            mask = np.zeros(data.shape, dtype=bool)

    if src_nodata is not None and not np.isnan(src_nodata):
        mask |= data == src_nodata
    mask |= ~np.isfinite(data)
    return Raster(np.ma.MaskedArray(data, mask=mask), grid, tuple(names), dict(properties or {}))


def _coerce_tag(value: str) -> Any:
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def _parse_date(text: str, fmt: str) -> Optional[date]:
    text = text.strip()
    for f in (fmt, "%Y-%m-%d", "%Y%m%d"):
        # also try the leading date part of timestamps like 2024-05-01T10:20:00
        for candidate in (text, text[:10], text[:8]):
            try:
                return datetime.strptime(candidate, f).date()
            except ValueError:
                continue
    return None


def item_date(path: Path, tags: Dict[str, Any], date_pattern: Optional[str], date_format: str) -> Optional[date]:
    """Acquisition date from the filename (regex group 'date') or from GeoTIFF tags."""
    if date_pattern:
        m = re.search(date_pattern, path.name)
        if m:
            text = m.group("date") if "date" in m.groupdict() else m.group(0)
            return _parse_date(text, date_format)
        return None
    for key in DATE_TAGS:
        if key in tags:
            return _parse_date(str(tags[key]), date_format)
    return None


class RasterCatalog:
    """Loads sources from GeoTIFFs on disk, relative to `base_dir` (default: cwd)."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = base_dir

    def _paths(self, source: Source) -> List[Path]:
        if not source.location:
            raise InvalidSourceConfig(f"{source.name}: no 'location' configured")
        return resolve_paths(source.location, self.base_dir)

    def open_image(self, source: Source, grid: Grid) -> Raster:
        """Read a static source. Several files (tiles) are mosaicked, last on top."""
        paths = self._paths(source)
        if not paths:
            raise InvalidSourceConfig(f"{source.name}: no files match location '{source.location}'")
        rasters = [read_to_grid(p, grid, source.band_names, source.nodata) for p in paths]
        return rasters[0] if len(rasters) == 1 else mosaic(rasters)

    def open_collection(self, source: Source, grid: Grid) -> ImageCollection:
        """Scan a dated collection. Reads metadata now, pixels on demand."""
        paths = self._paths(source)
        if not paths:
            print(f"  - warning: {source.name}: no files match location '{source.location}'")
        items = []
        for p in paths:
            with rasterio.open(p) as src:
                tags = {k: _coerce_tag(v) for k, v in src.tags().items()}
                bounds: BBox = tuple(src.bounds)  # type: ignore[assignment]
                if not _same_crs(src.crs, grid.crs):
                    bounds = transform_bounds(src.crs, grid.crs, *bounds, densify_pts=21)
            d = item_date(p, tags, source.date_pattern, source.date_format)
            items.append(
                Item(
                    item_id=p.stem,
                    date=d,
                    bounds=bounds,
                    properties=tags,
                    loader=partial(read_to_grid, p, grid, source.band_names, source.nodata, tags),
                )
            )
        return tuple(items)
