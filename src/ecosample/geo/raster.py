#!/usr/bin/env python3
"""ecosample.geo.raster

In-memory raster model used by the local geospatial provider.

- Grid: a north-up pixel grid (transform + shape + CRS).
- Raster: a stack of named bands on a Grid. Pixel availability is carried by
  a numpy mask; a masked pixel is "unavailable", never zero.
- Item / ImageCollection: dated images with metadata, loaded lazily so that
  filters can run on metadata alone.

Rasters are treated as immutable once built. Every operation returns a new
Raster.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from rasterio.transform import Affine, array_bounds, from_origin

from ecosample.config import BBox


# -----------------------------------------------------------------------------
# Grid
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Grid:
    transform: Affine
    width: int
    height: int
    crs: Optional[str] = None

    def __post_init__(self) -> None:
        t = self.transform
        if t.b != 0 or t.d != 0:
            raise ValueError(f"Rotated grids are not supported: {t}")
        if t.a <= 0 or t.e >= 0:
            raise ValueError(f"Grid must be north-up with positive pixel width: {t}")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Grid must have at least one pixel, got {self.width}x{self.height}")

    @property
    def res(self) -> Tuple[float, float]:
        return (self.transform.a, -self.transform.e)

    @property
    def bounds(self) -> BBox:
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @classmethod
    def from_bounds(cls, bbox: BBox, resolution: float, crs: Optional[str] = None) -> "Grid":
        """Build a grid covering `bbox`, snapped outward to multiples of `resolution`.

        Snapping keeps grids identical for identical inputs, whatever the
        exact bbox, so reruns produce the same pixels.
        """
        if resolution <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        xmin = math.floor(bbox[0] / resolution) * resolution
        ymin = math.floor(bbox[1] / resolution) * resolution
        xmax = math.ceil(bbox[2] / resolution) * resolution
        ymax = math.ceil(bbox[3] / resolution) * resolution
        width = max(1, int(round((xmax - xmin) / resolution)))
        height = max(1, int(round((ymax - ymin) / resolution)))
        return cls(from_origin(xmin, ymax, resolution, resolution), width, height, crs)


# -----------------------------------------------------------------------------
# Raster
# -----------------------------------------------------------------------------

def as_masked(array: Any, nodata: Optional[float] = None) -> np.ma.MaskedArray:
    """Coerce an array to float64 with NaN / nodata / existing mask all masked."""
    existing = np.ma.getmaskarray(array) if np.ma.isMaskedArray(array) else None
    data = np.asarray(np.ma.getdata(array), dtype="float64")
    mask = ~np.isfinite(data)
    if nodata is not None and not (isinstance(nodata, float) and math.isnan(nodata)):
        mask |= data == nodata
    if existing is not None:
        mask |= existing
    return np.ma.MaskedArray(data, mask=mask)


@dataclass(frozen=True, eq=False)
class Raster:
    data: np.ma.MaskedArray
    grid: Grid
    band_names: Tuple[str, ...]
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.data.ndim != 3:
            raise ValueError(f"Raster data must be (bands, rows, cols), got shape {self.data.shape}")
        if self.data.shape[0] != len(self.band_names):
            raise ValueError(
                f"Raster has {self.data.shape[0]} band(s) but {len(self.band_names)} name(s): {self.band_names}"
            )
        if self.data.shape[1:] != self.grid.shape:
            raise ValueError(f"Raster shape {self.data.shape[1:]} does not match grid {self.grid.shape}")
        if len(set(self.band_names)) != len(self.band_names):
            raise ValueError(f"Duplicate band names: {self.band_names}")

    @classmethod
    def from_bands(
        cls,
        bands: Mapping[str, Any],
        grid: Grid,
        properties: Optional[Mapping[str, Any]] = None,
        nodata: Optional[float] = None,
    ) -> "Raster":
        """Build a raster from a mapping of band name -> 2D array."""
        names = tuple(bands.keys())
        layers = [as_masked(bands[n], nodata) for n in names]
        data = np.ma.stack(layers) if layers else np.ma.zeros((0,) + grid.shape)
        return cls(as_masked(data), grid, names, dict(properties or {}))

    @classmethod
    def empty(cls, grid: Grid, band_names: Sequence[str]) -> "Raster":
        """A raster whose every pixel is unavailable."""
        shape = (len(band_names),) + grid.shape
        data = np.ma.MaskedArray(np.full(shape, np.nan), mask=np.ones(shape, dtype=bool))
        return cls(data, grid, tuple(band_names), {})

    def band(self, name: str) -> np.ma.MaskedArray:
        try:
            idx = self.band_names.index(name)
        except ValueError:
            raise KeyError(f"Band '{name}' not in raster (bands: {list(self.band_names)})") from None
        return self.data[idx]

    def select(self, names: Sequence[str]) -> "Raster":
        layers = {n: self.band(n) for n in names}
        return Raster.from_bands(layers, self.grid, self.properties)

    def add_bands(self, other: "Raster") -> "Raster":
        if other.grid != self.grid:
            raise ValueError("Cannot add bands from a raster on a different grid")
        layers: Dict[str, np.ma.MaskedArray] = {n: self.band(n) for n in self.band_names}
        for n in other.band_names:
            layers[n] = other.band(n)
        return Raster.from_bands(layers, self.grid, self.properties)

    def update_mask(self, mask: np.ndarray) -> "Raster":
        """Mask every band where `mask` (2D, True = drop) is set."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.grid.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match grid {self.grid.shape}")
        combined = np.ma.getmaskarray(self.data) | mask[np.newaxis, :, :]
        return Raster(np.ma.MaskedArray(self.data.data.copy(), mask=combined), self.grid, self.band_names, self.properties)


def mosaic(rasters: Sequence[Raster]) -> Raster:
    """Combine rasters on one grid, last valid pixel on top."""
    if not rasters:
        raise ValueError("mosaic() needs at least one raster")
    first = rasters[0]
    data = np.ma.array(first.data, copy=True)
    for r in rasters[1:]:
        if r.grid != first.grid or r.band_names != first.band_names:
            raise ValueError("mosaic() rasters must share grid and band names")
        valid = ~np.ma.getmaskarray(r.data)
        data[valid] = r.data[valid]
    return Raster(as_masked(data), first.grid, first.band_names, {})


# -----------------------------------------------------------------------------
# Image collections
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Item:
    """One dated image in a collection. Pixels are read only when image() is called."""

    item_id: str
    date: Optional[date]
    bounds: BBox
    properties: Mapping[str, Any]
    loader: Callable[[], Raster] = field(compare=False, repr=False)

    def image(self) -> Raster:
        return self.loader()


ImageCollection = Tuple[Item, ...]


def item_from_raster(
    raster: Raster,
    item_id: str,
    date: Optional[date] = None,
    properties: Optional[Mapping[str, Any]] = None,
) -> Item:
    """Wrap an in-memory raster as a collection item."""
    return Item(
        item_id=item_id,
        date=date,
        bounds=raster.grid.bounds,
        properties=dict(properties or {}),
        loader=lambda: raster,
    )
