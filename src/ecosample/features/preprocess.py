#!/usr/bin/env python3
"""preprocess.py

# *how sources become ready-to-query rasters*

Phase 1 of an extraction run. Runs once per source, before any point is
touched, and produces read-only rasters tagged (source, band, statistic).

Per source kind:
- static-raster: read (mosaic tiles), add derived bands, keep output bands.
  Statistic "value".
- time-filtered-collection: filter (space, time, item attributes) ->
  quality mask -> derived bands -> per-pixel temporal composite
  (mean, stdDev, percentiles).
- derived-composite: filter (space, time) -> per-pixel temporal mean of the
  configured bands.

Only the (band, statistic) pairs that some output field needs are
materialized.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Tuple

import numpy as np

from ecosample.config import BBox, buffer_bbox
from ecosample.features.derived_features import DerivedBand
from ecosample.geo.provider import GeospatialProvider
from ecosample.geo.raster import Grid, ImageCollection, Raster
from ecosample.registry.sources import (
    DERIVED_COMPOSITE,
    STATIC_RASTER,
    TIME_FILTERED_COLLECTION,
    VALUE,
    InvalidSourceConfig,
    QualityFilter,
    Source,
    SourceRegistry,
)


class Catalog(Protocol):
    def open_image(self, source: Source, grid: Grid) -> Raster: ...

    def open_collection(self, source: Source, grid: Grid) -> ImageCollection: ...


@dataclass(frozen=True)
class PreparedRaster:
    source: str
    band: str
    statistic: str
    raster: Raster


@dataclass(frozen=True)
class PreparedSource:
    source: Source
    rasters: Tuple[PreparedRaster, ...]
    grid: Grid
    # items left after filtering (collections only)
    n_items: Optional[int] = None

    def get(self, band: str, statistic: str) -> Optional[PreparedRaster]:
        for pr in self.rasters:
            if pr.band == band and pr.statistic == statistic:
                return pr
        return None


# -----------------------------------------------------------------------------
# Per-image transforms
# -----------------------------------------------------------------------------

def apply_quality_mask(image: Raster, quality: QualityFilter) -> Raster:
    """Mask every band where the quality band holds an excluded class.

    Pixels where the quality band itself is unavailable are masked too.
    """
    q = image.band(quality.band)
    bad = np.isin(np.ma.filled(q, np.nan), np.asarray(quality.exclude, dtype="float64"))
    bad |= np.ma.getmaskarray(q)
    return image.update_mask(bad)


def add_derived_bands(image: Raster, derived: Sequence[DerivedBand], provider: GeospatialProvider) -> Raster:
    """Evaluate derived bands in order and append them to the image."""
    for db in derived:
        bindings = {var: image.select([db.band_for(var)]) for var in sorted(db.variables())}
        image = image.add_bands(provider.band_math(db.expression, bindings, name=db.name))
    return image


# -----------------------------------------------------------------------------
# Grid
# -----------------------------------------------------------------------------

def source_grid(source: Source, bound: BBox, crs: Optional[str], margin_pixels: int = 2) -> Grid:
    """Target grid for a source: its spatial filter (or the points bound) at its resolution."""
    aoi = source.spatial_filter if source.spatial_filter is not None else bound
    aoi = buffer_bbox(aoi, margin_pixels * source.resolution)
    return Grid.from_bounds(aoi, source.resolution, crs)


# -----------------------------------------------------------------------------
# Core
# -----------------------------------------------------------------------------

def _static(source: Source, provider: GeospatialProvider, catalog: Catalog, grid: Grid) -> PreparedSource:
    image = catalog.open_image(source, grid)
    missing = [b for b in source.bands if b not in image.band_names]
    if missing:
        raise InvalidSourceConfig(
            f"{source.name}: band(s) {missing} not found in data (has {list(image.band_names)})"
        )
    image = add_derived_bands(image, source.derived_bands, provider)
    rasters = tuple(
        PreparedRaster(source.name, band, VALUE, image.select([band])) for band in source.output_bands()
    )
    return PreparedSource(source, rasters, grid)


def _composite(
    source: Source,
    collection: ImageCollection,
    provider: GeospatialProvider,
    grid: Grid,
) -> Tuple[PreparedRaster, ...]:
    by_stat: Dict[str, list] = {}
    for band, statistic in source.outputs():
        by_stat.setdefault(statistic, []).append(band)

    prepared = {}
    for statistic, bands in by_stat.items():
        image = provider.reduce_collection_to_image(collection, statistic, grid=grid, bands=bands)
        for band in bands:
            prepared[(band, statistic)] = PreparedRaster(source.name, band, statistic, image.select([band]))
    # keep field order
    return tuple(prepared[key] for key in source.outputs())


def _collection(source: Source, provider: GeospatialProvider, catalog: Catalog, grid: Grid) -> PreparedSource:
    collection = catalog.open_collection(source, grid)
    n_scanned = len(collection)

    collection = provider.filter_collection(collection, grid.bounds, source.temporal_filter, source.attribute_filter)
    print(f"[PREP] {source.name}: {len(collection)} of {n_scanned} item(s) pass filters")
    if not collection:
        print(f"  - warning: {source.name}: empty collection; all of its fields will be null")

    if source.kind == TIME_FILTERED_COLLECTION and source.quality_filter is not None:
        quality = source.quality_filter
        collection = provider.map_over_collection(collection, lambda img: apply_quality_mask(img, quality))
    if source.derived_bands:
        derived = source.derived_bands
        collection = provider.map_over_collection(collection, lambda img: add_derived_bands(img, derived, provider))

    return PreparedSource(source, _composite(source, collection, provider, grid), grid, n_items=len(collection))


def prepare_source(
    source: Source,
    provider: GeospatialProvider,
    catalog: Catalog,
    grid: Grid,
) -> PreparedSource:
    """Materialize the ready-to-query rasters of one source on `grid`."""
    if source.kind == STATIC_RASTER:
        return _static(source, provider, catalog, grid)
    if source.kind in (TIME_FILTERED_COLLECTION, DERIVED_COMPOSITE):
        return _collection(source, provider, catalog, grid)
    raise InvalidSourceConfig(f"{source.name}: unknown kind '{source.kind}'")


def prepare_all(
    registry: SourceRegistry,
    provider: GeospatialProvider,
    catalog: Catalog,
    bound: BBox,
    *,
    crs: Optional[str] = None,
    margin_pixels: int = 2,
) -> Dict[str, PreparedSource]:
    """Prepare every registered source, in registry order."""
    prepared: Dict[str, PreparedSource] = {}
    for source in registry:
        grid = source_grid(source, bound, crs, margin_pixels)
        print(f"[PREP] {source.name} ({source.kind}) on {grid.width}x{grid.height} grid @ {source.resolution:g}")
        prepared[source.name] = prepare_source(source, provider, catalog, grid)
    return prepared
