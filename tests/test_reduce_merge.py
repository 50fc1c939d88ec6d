#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import box

from ecosample.features.merge import merge_record, passthrough_record
from ecosample.features.points import Point, attribute_columns, points_bound, with_footprint
from ecosample.features.preprocess import PreparedRaster, PreparedSource
from ecosample.features.reduce import ReductionResult, reduce_point, reduce_source
from ecosample.geo.provider import UNAVAILABLE, LocalRasterProvider, PointOutOfCoverage, ProviderThrottled
from ecosample.geo.raster import Raster
from ecosample.registry.sources import (
    POINT_SAMPLE,
    REGION_MEAN,
    STATIC_RASTER,
    TIME_FILTERED_COLLECTION,
    FieldSpec,
    SourceRegistry,
    register_source,
)

provider = LocalRasterProvider()


def _static(name, band, policy, grid, value, max_pixels=1000, field_name=None):
    source = register_source(
        name,
        STATIC_RASTER,
        bands=[band],
        scale=10,
        reduction_policy=policy,
        max_pixels=max_pixels,
        fields=[FieldSpec(field_name or band, band, "value")],
    )
    raster = Raster.from_bands({band: np.full(grid.shape, value)}, grid)
    return PreparedSource(source, (PreparedRaster(name, band, "value", raster),), grid)


# -----------------------------------------------------------------------------
# Points
# -----------------------------------------------------------------------------

def test_point_attributes_are_read_only():
    p = Point(1, ShapelyPoint(0, 0), {"site": "a"})
    with pytest.raises(TypeError):
        p.attributes["site"] = "b"


def test_points_helpers():
    pts = [
        Point(1, ShapelyPoint(0, 0), {"a": 1}),
        Point(2, box(10, 10, 20, 30), {"b": 2, "a": 3}),
    ]
    assert points_bound(pts) == (0, 0, 20, 30)
    assert attribute_columns(pts) == ["a", "b"]

    buffered = with_footprint(pts, 5)
    assert buffered[0].geometry.area > 0
    assert buffered[1].geometry.equals(pts[1].geometry)
    assert with_footprint(pts, 0)[0].geometry.area == 0


# -----------------------------------------------------------------------------
# Reduce
# -----------------------------------------------------------------------------

def test_point_sample_and_region_mean(grid10):
    prepared = {
        "climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5),
        "dem": _static("dem", "DEM", REGION_MEAN, grid10, 300.0),
    }
    results = reduce_point(Point(1, box(20, 20, 50, 50)), prepared, provider)
    assert [r.source for r in results] == ["climate", "dem"]
    assert results[0].get("bio01", "value") == 12.5
    assert results[1].get("DEM", "value") == 300.0
    assert results[1].available


def test_non_mean_statistics_are_point_sampled(grid10):
    source = register_source(
        "s2",
        TIME_FILTERED_COLLECTION,
        bands=["NDVI"],
        scale=10,
        reduction_policy="temporal-composite-then-region-mean",
        temporal_filter={"start": "2024-01-01", "end": "2025-01-01"},
        max_pixels=1,
        fields=[FieldSpec("NDVI_Std", "NDVI", "stdDev")],
    )
    raster = Raster.from_bands({"NDVI": np.full(grid10.shape, 0.1)}, grid10)
    prepared = PreparedSource(source, (PreparedRaster("s2", "NDVI", "stdDev", raster),), grid10)
    # a region reduction would exceed max_pixels
    result = reduce_source(Point(1, box(0, 0, 100, 100)), prepared, provider)
    assert result.error is None
    assert result.get("NDVI", "stdDev") == pytest.approx(0.1)


def test_reduction_failure_is_contained_per_source(grid10, capsys):
    prepared = {
        "dem": _static("dem", "DEM", REGION_MEAN, grid10, 300.0, max_pixels=2),
        "climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5),
    }
    dem, climate = reduce_point(Point(7, box(0, 0, 100, 100)), prepared, provider)
    assert dem.get("DEM", "value") is UNAVAILABLE
    assert "maxPixels" in dem.error
    assert not dem.available
    assert climate.get("bio01", "value") == 12.5
    assert "point 7" in capsys.readouterr().out


def test_huge_region_only_nulls_its_own_source(grid10):
    prepared = {
        "dem": _static("dem", "DEM", REGION_MEAN, grid10, 300.0, max_pixels=100),
        "climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5),
    }
    # centroid (50, 50) lies on the rasters
    huge = Point(1, box(-1e7, -1e7, 1e7 + 100, 1e7 + 100))
    dem, climate = reduce_point(huge, prepared, provider)
    assert dem.get("DEM", "value") is UNAVAILABLE
    assert "maxPixels" in dem.error
    assert climate.get("bio01", "value") == 12.5


def test_unexpected_provider_error_is_contained_per_source(grid10):
    class OutOfMemory(LocalRasterProvider):
        def region_statistic(self, raster, geometry, scale, statistic, max_pixels):
            raise MemoryError("Unable to allocate 7.28 TiB")

    prepared = {
        "dem": _static("dem", "DEM", REGION_MEAN, grid10, 300.0),
        "climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5),
    }
    dem, climate = reduce_point(Point(1, box(0, 0, 100, 100)), prepared, OutOfMemory())
    assert dem.error == "MemoryError: Unable to allocate 7.28 TiB"
    assert dem.get("DEM", "value") is UNAVAILABLE
    assert climate.get("bio01", "value") == 12.5


def test_throttling_is_not_contained(grid10):
    class Throttled(LocalRasterProvider):
        def sample_at_point(self, raster, geometry, scale):
            raise ProviderThrottled("rate limit")

    prepared = {"climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5)}
    with pytest.raises(ProviderThrottled):
        reduce_point(Point(1, ShapelyPoint(5, 5)), prepared, Throttled())


def test_out_of_coverage_is_unavailable(grid10):
    class NoCoverage(LocalRasterProvider):
        def sample_at_point(self, raster, geometry, scale):
            raise PointOutOfCoverage("outside")

    prepared = {"climate": _static("climate", "bio01", POINT_SAMPLE, grid10, 12.5)}
    (result,) = reduce_point(Point(1, ShapelyPoint(5, 5)), prepared, NoCoverage())
    assert result.get("bio01", "value") is UNAVAILABLE
    assert result.error is None


# -----------------------------------------------------------------------------
# Merge
# -----------------------------------------------------------------------------

def _schema(grid):
    reg = SourceRegistry()
    reg.register(_static("climate", "bio01", POINT_SAMPLE, grid, 0, field_name="Annual_Mean_Temperature").source)
    reg.register(_static("dem", "DEM", REGION_MEAN, grid, 0, field_name="Elevation").source)
    return reg.schema()


def test_merge_record_fills_every_field(grid10):
    schema = _schema(grid10)
    point = Point("P1", ShapelyPoint(0, 0), {"site": "a"})
    results = [ReductionResult("climate", {("bio01", "value"): 11.0})]

    record = merge_record(point, results, schema)
    assert record == {"id": "P1", "site": "a", "Annual_Mean_Temperature": 11.0, "Elevation": None}


def test_merge_record_unavailable_becomes_null(grid10):
    schema = _schema(grid10)
    point = Point("P1", ShapelyPoint(0, 0))
    results = [
        ReductionResult("climate", {("bio01", "value"): UNAVAILABLE}),
        ReductionResult("dem", {("DEM", "value"): 0.0}),
    ]
    record = merge_record(point, results, schema, id_field="POINT_ID")
    assert record == {"POINT_ID": "P1", "Annual_Mean_Temperature": None, "Elevation": 0.0}


def test_merge_never_overwrites_attribute_with_null(grid10):
    schema = _schema(grid10)
    point = Point("P1", ShapelyPoint(0, 0), {"Elevation": 55.0, "Annual_Mean_Temperature": 9.0})
    results = [ReductionResult("climate", {("bio01", "value"): 11.0})]
    record = merge_record(point, results, schema)
    assert record["Elevation"] == 55.0
    assert record["Annual_Mean_Temperature"] == 11.0
    # the input point is untouched
    assert point.attributes["Annual_Mean_Temperature"] == 9.0


def test_passthrough_record():
    point = Point(3, ShapelyPoint(0, 0), {"site": "c"})
    assert passthrough_record(point) == {"id": 3, "site": "c"}
