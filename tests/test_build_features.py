#!/usr/bin/env python3

from __future__ import annotations

import threading
import time
from datetime import date

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import box

from ecosample.features.build_features import FeatureExtractor, PointExtractionFailure
from ecosample.features.derived_features import normalized_difference
from ecosample.features.points import Point, points_bound
from ecosample.features.preprocess import prepare_all
from ecosample.geo.provider import LocalRasterProvider, ProviderThrottled
from ecosample.geo.raster import item_from_raster
from ecosample.registry.sources import (
    POINT_SAMPLE,
    REGION_MEAN,
    STATIC_RASTER,
    TIME_FILTERED_COLLECTION,
    FieldSpec,
    SourceRegistry,
    register_source,
)


# -----------------------------------------------------------------------------
# Fixture pipeline
# -----------------------------------------------------------------------------
# climate: everywhere; DEM: only west of x = 500; S2: two 2024 scenes everywhere.

def _registry() -> SourceRegistry:
    reg = SourceRegistry()
    reg.register(
        register_source(
            "climate",
            STATIC_RASTER,
            bands=["bio01"],
            scale=10,
            reduction_policy=POINT_SAMPLE,
            fields=[FieldSpec("Annual_Mean_Temperature", "bio01", "value")],
        )
    )
    reg.register(
        register_source(
            "dem",
            STATIC_RASTER,
            bands=["DEM"],
            scale=10,
            reduction_policy=REGION_MEAN,
            max_pixels=100,
            fields=[FieldSpec("Elevation", "DEM", "value")],
        )
    )
    reg.register(
        register_source(
            "s2",
            TIME_FILTERED_COLLECTION,
            bands=["B4", "B8"],
            scale=10,
            reduction_policy=POINT_SAMPLE,
            temporal_filter={"start": "2024-01-01", "end": "2025-01-01"},
            derived_bands=[normalized_difference("NDVI", "B8", "B4")],
            fields=[FieldSpec("NDVI_Mean", "NDVI", "mean"), FieldSpec("NDVI_Q2", "NDVI", "p50")],
        )
    )
    return reg


def _catalog(fake_catalog, make_raster):
    def scene(g, b8, b4):
        return make_raster(g, {"B4": lambda x, y: b4, "B8": lambda x, y: b8})

    return fake_catalog(
        images={
            "climate": lambda g: make_raster(g, {"bio01": lambda x, y: 12.5}),
            "dem": lambda g: make_raster(g, {"DEM": lambda x, y: np.where(x < 500, 100.0, np.nan)}),
        },
        collections={
            "s2": lambda g: (
                item_from_raster(scene(g, 0.5, 0.1), "a", date(2024, 4, 1)),
                item_from_raster(scene(g, 0.6, 0.2), "b", date(2024, 8, 1)),
            )
        },
    )


def _points():
    return [
        Point(1, box(100, 100, 140, 140), {"site": "inside"}),
        Point(2, box(800, 100, 840, 140), {"site": "outside-dem"}),
        Point(3, ShapelyPoint(300, 300), {"site": "degenerate"}),
    ]


@pytest.fixture
def pipeline(fake_catalog, make_raster):
    points = _points()
    reg = _registry()
    provider = LocalRasterProvider()
    prepared = prepare_all(reg, provider, _catalog(fake_catalog, make_raster), points_bound(points), crs=None)
    return points, prepared, reg.schema(), provider


NDVI = [0.4 / 0.6, 0.4 / 0.8]


# -----------------------------------------------------------------------------
# End to end
# -----------------------------------------------------------------------------

def test_three_point_scenario(pipeline):
    points, prepared, schema, provider = pipeline
    table = FeatureExtractor(prepared, schema, provider).extract_all(points)

    assert table.complete
    assert not table.aborted
    assert table.failures == []
    assert table.columns == ["id", "site", "Annual_Mean_Temperature", "Elevation", "NDVI_Mean", "NDVI_Q2"]
    assert len({frozenset(r) for r in table.rows}) == 1

    r1, r2, r3 = table.rows
    assert [r["id"] for r in table.rows] == [1, 2, 3]

    assert r1["Elevation"] == pytest.approx(100.0)
    assert r1["Annual_Mean_Temperature"] == 12.5
    assert r1["NDVI_Mean"] == pytest.approx(np.mean(NDVI))

    assert r2["Elevation"] is None
    assert r2["Annual_Mean_Temperature"] == 12.5
    assert r2["NDVI_Q2"] == pytest.approx(np.median(NDVI))

    # a single coordinate has no footprint for region-mean
    assert r3["Elevation"] is None
    assert r3["Annual_Mean_Temperature"] == 12.5
    assert r3["NDVI_Mean"] == pytest.approx(np.mean(NDVI))
    assert r3["site"] == "degenerate"


def test_reruns_are_identical(pipeline):
    points, prepared, schema, provider = pipeline
    a = FeatureExtractor(prepared, schema, provider).extract_all(points).to_dataframe()
    b = FeatureExtractor(prepared, schema, provider, max_workers=3).extract_all(points).to_dataframe()
    pd.testing.assert_frame_equal(a, b)


def test_output_order_ignores_completion_order(pipeline):
    points, prepared, schema, _ = pipeline

    class SlowFirst(LocalRasterProvider):
        def sample_at_point(self, raster, geometry, scale):
            # earlier points finish last
            time.sleep(0.03 if geometry.centroid.x < 200 else 0.0)
            return super().sample_at_point(raster, geometry, scale)

    many = [Point(i, p.geometry, p.attributes) for i, p in enumerate(points * 4)]
    table = FeatureExtractor(prepared, schema, SlowFirst(), max_workers=4).extract_all(many)
    assert [r["id"] for r in table.rows] == list(range(len(many)))


# -----------------------------------------------------------------------------
# Failures, throttling, abort
# -----------------------------------------------------------------------------

class _FailingExtractor(FeatureExtractor):
    """Raises `error` outside the per-source reducers for the listed points."""

    def __init__(self, *args, fail_ids=(), error=RuntimeError("boom"), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_ids = set(fail_ids)
        self.error = error

    def extract_point(self, point):
        if point.point_id in self.fail_ids:
            raise self.error
        return super().extract_point(point)


class _FakeClock:
    """Monotonic clock that only moves when slept on."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_provider_error_only_nulls_the_point_sources(pipeline):
    points, prepared, schema, _ = pipeline

    class Broken(LocalRasterProvider):
        def sample_at_point(self, raster, geometry, scale):
            if geometry.geom_type == "Point":
                raise RuntimeError("boom")
            return super().sample_at_point(raster, geometry, scale)

    table = FeatureExtractor(prepared, schema, Broken()).extract_all(points)
    assert table.failures == []
    assert table.rows[2]["site"] == "degenerate"
    assert table.rows[2]["Annual_Mean_Temperature"] is None
    assert table.rows[2]["NDVI_Mean"] is None
    assert table.rows[0]["Annual_Mean_Temperature"] == 12.5


def test_point_failure_keeps_original_attributes(pipeline, capsys):
    points, prepared, schema, provider = pipeline
    table = _FailingExtractor(prepared, schema, provider, fail_ids={3}).extract_all(points)

    assert table.complete
    assert table.rows[2] == {"id": 3, "site": "degenerate"}
    assert table.rows[0]["Elevation"] == pytest.approx(100.0)
    assert [(f.point_id, f.error, f.attempts) for f in table.failures] == [(3, "RuntimeError: boom", 1)]
    assert "warning: point 3" in capsys.readouterr().out

    df = table.to_dataframe()
    assert list(df.columns) == table.columns
    assert pd.isna(df.loc[2, "Elevation"])


def test_extract_with_retry_raises_point_extraction_failure(pipeline):
    points, prepared, schema, provider = pipeline
    extractor = _FailingExtractor(prepared, schema, provider, fail_ids={1}, error=KeyError("no band"))
    with pytest.raises(PointExtractionFailure) as exc:
        extractor.extract_with_retry(points[0])
    assert exc.value.point_id == 1
    assert exc.value.attempts == 1


class _Throttling(LocalRasterProvider):
    """Throttles the first `n` samples of bare point geometries (point 3)."""

    def __init__(self, n):
        self.n = n
        self.lock = threading.Lock()

    def sample_at_point(self, raster, geometry, scale):
        if geometry.geom_type == "Point":
            with self.lock:
                if self.n > 0:
                    self.n -= 1
                    raise ProviderThrottled("rate limit")
        return super().sample_at_point(raster, geometry, scale)


def test_throttled_point_is_retried_with_backoff(pipeline):
    points, prepared, schema, _ = pipeline
    clock = _FakeClock()
    extractor = FeatureExtractor(
        prepared, schema, _Throttling(2), max_attempts=5, backoff_seconds=1.0, sleep=clock.sleep, clock=clock
    )
    table = extractor.extract_all(points)
    assert clock.sleeps == [1.0, 2.0]
    assert table.failures == []
    assert table.rows[2]["Annual_Mean_Temperature"] == 12.5


def test_throttling_gives_up_after_max_attempts(pipeline):
    points, prepared, schema, _ = pipeline
    clock = _FakeClock()
    extractor = FeatureExtractor(
        prepared, schema, _Throttling(100), max_attempts=3, backoff_seconds=0.5, sleep=clock.sleep, clock=clock
    )
    table = extractor.extract_all(points)
    assert clock.sleeps == [0.5, 1.0]
    assert len(table.failures) == 1
    assert table.failures[0].attempts == 3
    assert table.rows[2] == {"id": 3, "site": "degenerate"}
    assert table.rows[1]["Annual_Mean_Temperature"] == 12.5


def test_throttled_point_does_not_hold_up_later_points(pipeline):
    _, prepared, schema, _ = pipeline
    clock = _FakeClock()
    events = []

    class Logged(FeatureExtractor):
        def extract_point(self, point):
            events.append(("start", point.point_id))
            return super().extract_point(point)

    def sleep(seconds):
        events.append(("sleep", seconds))
        clock.sleep(seconds)

    points = [Point(1, ShapelyPoint(300, 300)), Point(2, box(100, 100, 140, 140))]
    extractor = Logged(prepared, schema, _Throttling(1), sleep=sleep, clock=clock)
    table = extractor.extract_all(points)

    assert events == [("start", 1), ("start", 2), ("sleep", 1.0), ("start", 1)]
    assert [r["id"] for r in table.rows] == [1, 2]
    assert table.rows[0]["Annual_Mean_Temperature"] == 12.5


def test_throttled_points_leave_workers_free(pipeline):
    points, prepared, schema, _ = pipeline
    clock = _FakeClock()
    many = [Point(i, p.geometry, p.attributes) for i, p in enumerate(points * 3)]
    extractor = FeatureExtractor(
        prepared, schema, _Throttling(3), max_workers=2, sleep=clock.sleep, clock=clock
    )
    table = extractor.extract_all(many)
    assert table.complete
    assert table.failures == []
    assert [r["id"] for r in table.rows] == list(range(len(many)))
    assert all(r["Annual_Mean_Temperature"] == 12.5 for r in table.rows)


def test_abort_stops_new_work_and_keeps_collected_records(pipeline):
    points, prepared, schema, _ = pipeline
    holder = {}

    class AbortAfterFirst(LocalRasterProvider):
        def sample_at_point(self, raster, geometry, scale):
            holder["extractor"].abort()
            return super().sample_at_point(raster, geometry, scale)

    extractor = FeatureExtractor(prepared, schema, AbortAfterFirst())
    holder["extractor"] = extractor
    table = extractor.extract_all(points)

    assert table.aborted
    assert not table.complete
    assert [r["id"] for r in table.rows] == [1]
    assert table.rows[0]["Annual_Mean_Temperature"] == 12.5


def test_keyboard_interrupt_aborts_and_keeps_collected_records(pipeline, capsys):
    points, prepared, schema, _ = pipeline

    def interrupted(seconds):
        raise KeyboardInterrupt

    # point 3 is throttled, so the run is interrupted while waiting on its retry
    extractor = FeatureExtractor(prepared, schema, _Throttling(1), sleep=interrupted)
    table = extractor.extract_all(points)

    assert extractor.aborted
    assert table.aborted
    assert not table.complete
    assert [r["id"] for r in table.rows] == [1, 2]
    assert "interrupted" in capsys.readouterr().out


def test_extractor_rejects_bad_settings(pipeline):
    _, prepared, schema, provider = pipeline
    with pytest.raises(ValueError):
        FeatureExtractor(prepared, schema, provider, max_workers=0)
    with pytest.raises(ValueError):
        FeatureExtractor(prepared, schema, provider, max_attempts=0)


def test_write_csvs(pipeline, tmp_path):
    points, prepared, schema, provider = pipeline
    table = _FailingExtractor(prepared, schema, provider, fail_ids={1, 2, 3}).extract_all(points)
    out = tmp_path / "out" / "features.csv"
    fails = tmp_path / "out" / "failures.csv"
    table.write_csv(out)
    table.write_failures_csv(fails)

    df = pd.read_csv(out)
    assert list(df.columns) == table.columns
    assert list(df["id"]) == [1, 2, 3]
    assert df["Elevation"].isna().all()

    f = pd.read_csv(fails)
    assert list(f.columns) == ["point_id", "error", "attempts"]
    assert list(f["point_id"]) == [1, 2, 3]
