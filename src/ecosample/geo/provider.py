#!/usr/bin/env python3
"""ecosample.geo.provider

The geospatial compute provider contract, plus a local reference provider.

The extraction pipeline never touches pixels directly. It asks a provider to:
- sample a raster at a point
- compute a statistic over a region
- filter / map / reduce image collections
- evaluate band math

GeospatialProvider is the contract (a typing Protocol). LocalRasterProvider
implements it over in-memory numpy rasters (see ecosample.geo.raster); a
remote backend would implement the same methods.

Conventions:
- "Unavailable" is the UNAVAILABLE marker, distinct from any number.
- Geometries are shapely geometries in the raster's CRS.
- Scale is a pixel size in CRS units. Reductions at a scale other than the
  raster's own resolution read the nearest native pixel at the centre of
  each scale-sized cell (cells aligned to the raster origin).
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
import shapely
from rasterio.transform import rowcol
from shapely.geometry.base import BaseGeometry

from ecosample.config import BBox, bboxes_intersect
from ecosample.features.derived_features import evaluate_expression
from ecosample.geo.raster import Grid, ImageCollection, Item, Raster, as_masked


# -----------------------------------------------------------------------------
# Unavailable marker and errors
# -----------------------------------------------------------------------------

class _Unavailable:
    _instance: Optional["_Unavailable"] = None

    def __new__(cls) -> "_Unavailable":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __reduce__(self):
        return (_Unavailable, ())


UNAVAILABLE = _Unavailable()


def is_unavailable(value: Any) -> bool:
    return value is UNAVAILABLE


class ReductionFailure(RuntimeError):
    """The provider could not run a reduction (bad geometry, too many pixels, quota...)."""


class PointOutOfCoverage(LookupError):
    """A source has no data intersecting the point."""


class ProviderThrottled(RuntimeError):
    """The provider asked the caller to slow down. Safe to retry later."""


# -----------------------------------------------------------------------------
# Filters
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class DateRange:
    """Half-open date interval [start, end)."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"DateRange start ({self.start}) must be before end ({self.end})")

    def contains(self, d: Optional[date]) -> bool:
        return d is not None and self.start <= d < self.end


_COMPARATORS: Mapping[str, Callable[[Any, Any], bool]] = {
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "eq": lambda a, b: a == b,
    "neq": lambda a, b: a != b,
}


@dataclass(frozen=True)
class AttributeFilter:
    """Keep items whose `prop` compares true against `value` (e.g. cloud cover < 40)."""

    prop: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(f"Unknown attribute filter op '{self.op}' (expected one of {sorted(_COMPARATORS)})")

    def matches(self, properties: Mapping[str, Any]) -> bool:
        # items missing the property are dropped
        if self.prop not in properties:
            return False
        try:
            return bool(_COMPARATORS[self.op](properties[self.prop], self.value))
        except TypeError:
            return False


# -----------------------------------------------------------------------------
# Statistics
# -----------------------------------------------------------------------------
# Shared by region reductions (over pixels) and collection reductions (over time).

def _percentile_of(name: str) -> Optional[float]:
    if name.startswith("p") and name[1:].isdigit():
        q = float(name[1:])
        if 0 <= q <= 100:
            return q
    return None


def is_known_statistic(name: str) -> bool:
    return name in ("mean", "stdDev", "min", "max", "median") or _percentile_of(name) is not None


def nan_statistic(values: np.ndarray, statistic: str, axis: Optional[int] = None) -> Any:
    """Compute a statistic ignoring NaN. All-NaN slices come back as NaN."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        if statistic == "mean":
            return np.nanmean(values, axis=axis)
        if statistic == "stdDev":
            return np.nanstd(values, axis=axis)
        if statistic == "min":
            return np.nanmin(values, axis=axis)
        if statistic == "max":
            return np.nanmax(values, axis=axis)
        if statistic == "median":
            return np.nanmedian(values, axis=axis)
        q = _percentile_of(statistic)
        if q is not None:
            return np.nanpercentile(values, q, axis=axis)
    raise ValueError(f"Unknown statistic '{statistic}'")


# -----------------------------------------------------------------------------
# Provider contract
# -----------------------------------------------------------------------------

class GeospatialProvider(Protocol):
    def sample_at_point(self, raster: Raster, geometry: BaseGeometry, scale: float) -> Any: ...

    def region_statistic(
        self,
        raster: Raster,
        geometry: BaseGeometry,
        scale: float,
        statistic: str,
        max_pixels: int,
    ) -> Any: ...

    def filter_collection(
        self,
        collection: ImageCollection,
        spatial_bound: Optional[BBox] = None,
        date_range: Optional[DateRange] = None,
        attribute_filter: Optional[AttributeFilter] = None,
    ) -> ImageCollection: ...

    def map_over_collection(self, collection: ImageCollection, fn: Callable[[Raster], Raster]) -> ImageCollection: ...

    def reduce_collection_to_image(
        self,
        collection: ImageCollection,
        statistic: str,
        *,
        grid: Grid,
        bands: Sequence[str],
    ) -> Raster: ...

    def band_math(self, expression: str, bindings: Mapping[str, Raster], name: str = "result") -> Raster: ...


# -----------------------------------------------------------------------------
# Local provider
# -----------------------------------------------------------------------------

def _anchor(geometry: BaseGeometry) -> Tuple[float, float]:
    """The coordinate a point sample is read at: the point itself, else the centroid."""
    if geometry is None or geometry.is_empty:
        raise ReductionFailure("Cannot sample an empty geometry")
    if geometry.geom_type == "Point":
        return (geometry.x, geometry.y)
    c = geometry.centroid
    if c.is_empty:
        c = geometry.representative_point()
    if c.is_empty:
        raise ReductionFailure(f"Cannot find an anchor point for {geometry.geom_type}")
    return (c.x, c.y)


def _check_scale(scale: float) -> float:
    if scale is None or not (scale > 0) or not math.isfinite(scale):
        raise ReductionFailure(f"scale must be a positive number, got {scale!r}")
    return float(scale)


def _single_band(raster: Raster) -> np.ma.MaskedArray:
    if len(raster.band_names) != 1:
        raise ReductionFailure(f"Expected a single-band raster, got bands {list(raster.band_names)}")
    return raster.data[0]


def _read_native(raster: Raster, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Nearest native pixel values at coordinates; NaN where masked or off-raster."""
    band = _single_band(raster)
    rows, cols = rowcol(raster.grid.transform, xs, ys)
    rows = np.atleast_1d(np.asarray(rows, dtype=int))
    cols = np.atleast_1d(np.asarray(cols, dtype=int))
    height, width = raster.grid.shape
    inside = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)

    out = np.full(rows.shape, np.nan)
    if inside.any():
        vals = band[rows[inside], cols[inside]]
        out[inside] = np.ma.filled(np.ma.asarray(vals, dtype="float64"), np.nan)
    return out


# cell centres tested against a footprint per block
FOOTPRINT_BLOCK = 1 << 16


def _footprint_cells(
    grid: Grid, scale: float, geometry: BaseGeometry, max_pixels: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Centres of the scale-sized cells (aligned to the grid origin) inside geometry.

    Scans the geometry's bbox in fixed-size blocks and raises ReductionFailure
    as soon as more than max_pixels centres are inside, so a huge region is
    rejected without allocating its whole bbox.
    """
    x0 = grid.transform.c
    y0 = grid.transform.f
    minx, miny, maxx, maxy = geometry.bounds
    i0 = math.floor((minx - x0) / scale)
    i1 = max(math.ceil((maxx - x0) / scale), i0 + 1)
    j0 = math.floor((y0 - maxy) / scale)
    j1 = max(math.ceil((y0 - miny) / scale), j0 + 1)
    ncols = i1 - i0
    total = ncols * (j1 - j0)

    xs_in: List[np.ndarray] = []
    ys_in: List[np.ndarray] = []
    n_pixels = 0
    for start in range(0, total, FOOTPRINT_BLOCK):
        k = np.arange(start, min(start + FOOTPRINT_BLOCK, total), dtype="int64")
        xs = x0 + (i0 + k % ncols + 0.5) * scale
        ys = y0 - (j0 + k // ncols + 0.5) * scale
        inside = shapely.contains_xy(geometry, xs, ys)
        n_pixels += int(inside.sum())
        if n_pixels > max_pixels:
            raise ReductionFailure(
                f"Region exceeds maxPixels ({max_pixels}) at scale {scale}"
            )
        xs_in.append(xs[inside])
        ys_in.append(ys[inside])
    if not xs_in:
        return np.empty(0), np.empty(0)
    return np.concatenate(xs_in), np.concatenate(ys_in)


def _cached_loader(loader: Callable[[], Raster], fn: Callable[[Raster], Raster]) -> Callable[[], Raster]:
    @lru_cache(maxsize=None)
    def load() -> Raster:
        return fn(loader())

    return load


class LocalRasterProvider:
    """Provider over in-memory rasters. Stateless, safe to share across threads."""

    # --- per-point reductions ---

    def sample_at_point(self, raster: Raster, geometry: BaseGeometry, scale: float) -> Any:
        scale = _check_scale(scale)
        x, y = _anchor(geometry)
        x0, y0 = raster.grid.transform.c, raster.grid.transform.f
        cx = x0 + (math.floor((x - x0) / scale) + 0.5) * scale
        cy = y0 - (math.floor((y0 - y) / scale) + 0.5) * scale
        value = _read_native(raster, np.array([cx]), np.array([cy]))[0]
        if not np.isfinite(value):
            return UNAVAILABLE
        return float(value)

    def region_statistic(
        self,
        raster: Raster,
        geometry: BaseGeometry,
        scale: float,
        statistic: str,
        max_pixels: int,
    ) -> Any:
        scale = _check_scale(scale)
        if geometry is None or geometry.is_empty:
            raise ReductionFailure("Cannot reduce over an empty geometry")
        if not is_known_statistic(statistic):
            raise ReductionFailure(f"Unknown statistic '{statistic}'")

        # footprint: cells whose centre lies inside the geometry's area
        if geometry.area == 0:
            return UNAVAILABLE
        if not geometry.is_valid:
            raise ReductionFailure(f"Invalid geometry: {shapely.is_valid_reason(geometry)}")
        xs, ys = _footprint_cells(raster.grid, scale, geometry, max_pixels)
        if xs.size == 0:
            return UNAVAILABLE

        values = _read_native(raster, xs, ys)
        values = values[np.isfinite(values)]
        if values.size == 0:
            return UNAVAILABLE
        result = float(nan_statistic(values, statistic))
        return result if math.isfinite(result) else UNAVAILABLE

    # --- collections ---

    def filter_collection(
        self,
        collection: ImageCollection,
        spatial_bound: Optional[BBox] = None,
        date_range: Optional[DateRange] = None,
        attribute_filter: Optional[AttributeFilter] = None,
    ) -> ImageCollection:
        kept = []
        for item in collection:
            if spatial_bound is not None and not bboxes_intersect(item.bounds, spatial_bound):
                continue
            if date_range is not None and not date_range.contains(item.date):
                continue
            if attribute_filter is not None and not attribute_filter.matches(item.properties):
                continue
            kept.append(item)
        return tuple(kept)

    def map_over_collection(self, collection: ImageCollection, fn: Callable[[Raster], Raster]) -> ImageCollection:
        return tuple(
            Item(
                item_id=item.item_id,
                date=item.date,
                bounds=item.bounds,
                properties=item.properties,
                loader=_cached_loader(item.loader, fn),
            )
            for item in collection
        )

    def reduce_collection_to_image(
        self,
        collection: ImageCollection,
        statistic: str,
        *,
        grid: Grid,
        bands: Sequence[str],
    ) -> Raster:
        """Per band, per pixel statistic across the collection's items.

        An empty collection gives a fully unavailable raster on `grid`.
        """
        if not is_known_statistic(statistic):
            raise ValueError(f"Unknown statistic '{statistic}'")
        if not collection:
            return Raster.empty(grid, bands)

        images = [item.image() for item in collection]
        for item, img in zip(collection, images):
            if img.grid != grid:
                raise ValueError(f"Item '{item.item_id}' is not on the target grid")

        layers = {}
        for band in bands:
            stack = np.stack([np.ma.filled(img.band(band), np.nan) for img in images])
            layers[band] = nan_statistic(stack, statistic, axis=0)
        return Raster.from_bands(layers, grid)

    # --- band math ---

    def band_math(self, expression: str, bindings: Mapping[str, Raster], name: str = "result") -> Raster:
        if not bindings:
            raise ValueError("band_math needs at least one bound raster")
        grids = {r.grid for r in bindings.values()}
        if len(grids) != 1:
            raise ValueError("band_math inputs must share a grid")
        values = {var: _single_band(r) for var, r in bindings.items()}
        result = evaluate_expression(expression, values)
        grid = next(iter(grids))
        return Raster(as_masked(result[np.newaxis, :, :]), grid, (name,), {})
