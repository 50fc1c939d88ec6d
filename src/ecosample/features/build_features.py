#!/usr/bin/env python3
"""
build_features.py

# *how points become feature rows*

Batch orchestrator. Two phases:
1. Prepare every source once (ecosample.features.preprocess).
2. For each point, reduce every source and merge one record
   (ecosample.features.reduce + ecosample.features.merge).

Points are independent, so phase 2 runs on a thread pool. Records are
collected by input index, which keeps the output table in input order
whatever the completion order.

Failure handling per point:
- ProviderThrottled: the point is deferred with exponential back-off and
  retried later; other points keep running meanwhile.
- Anything else (or too many retries): the point is emitted with its
  original attributes only, and a PointFailure is logged.
Nothing at point scope aborts the batch. abort() stops new work and keeps
what was already collected.

Example:
  python -m ecosample.features extract \
    --points data/raw/points/lucas_points.gpkg \
    --out-csv data/processed/features/point_features.csv
"""

from __future__ import annotations

import csv
import heapq
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ecosample.config import format_bbox, load_sources_block, pipeline_settings
from ecosample.features.merge import merge_record, passthrough_record
from ecosample.features.points import Point, attribute_columns, load_points, points_bound, with_footprint
from ecosample.features.preprocess import Catalog, PreparedSource, prepare_all
from ecosample.features.reduce import reduce_point
from ecosample.geo.provider import GeospatialProvider, LocalRasterProvider, ProviderThrottled
from ecosample.registry.sources import FieldSchema, registry_from_config


class PointExtractionFailure(RuntimeError):
    """A point's full reduction failed; the point keeps its original attributes only."""

    def __init__(self, point_id: Any, cause: str, attempts: int = 1) -> None:
        super().__init__(f"point {point_id}: {cause}")
        self.point_id = point_id
        self.cause = cause
        self.attempts = attempts


@dataclass(frozen=True)
class PointFailure:
    point_id: Any
    error: str
    attempts: int


@dataclass
class FeatureTable:
    columns: List[str]
    rows: List[Dict[str, Any]]
    failures: List[PointFailure] = field(default_factory=list)
    # completion signal: True once every point was processed
    complete: bool = False
    aborted: bool = False

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.columns)

    def write_csv(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().to_csv(path, index=False)

    def write_failures_csv(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(["point_id", "error", "attempts"])
            for fail in self.failures:
                writer.writerow([fail.point_id, fail.error, fail.attempts])


class FeatureExtractor:
    """Runs phase 2 over prepared sources. Holds no per-point state.

    Throttled points are not retried in place: they go onto a deferred heap
    keyed by their not-before time and the other points keep running. The
    main loop only sleeps when nothing else is runnable.
    """

    def __init__(
        self,
        prepared: Mapping[str, PreparedSource],
        schema: FieldSchema,
        provider: GeospatialProvider,
        *,
        id_field: str = "id",
        max_workers: int = 1,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.prepared = prepared
        self.schema = schema
        self.provider = provider
        self.id_field = id_field
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._clock = clock
        self._abort = threading.Event()

    def abort(self) -> None:
        """Stop issuing new per-point work. Points already running finish."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` + 1."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    def extract_point(self, point: Point) -> Dict[str, Any]:
        results = reduce_point(point, self.prepared, self.provider)
        return merge_record(point, results, self.schema, id_field=self.id_field)

    def attempt_point(self, point: Point, attempt: int) -> Dict[str, Any]:
        """One try at a point.

        ProviderThrottled propagates while attempts remain. Raises
        PointExtractionFailure on any other error, or on a throttle at the
        last attempt.
        """
        try:
            return self.extract_point(point)
        except ProviderThrottled as e:
            if attempt >= self.max_attempts:
                raise PointExtractionFailure(
                    point.point_id, f"throttled after {attempt} attempt(s): {e}", attempt
                ) from e
            raise
        except Exception as e:
            raise PointExtractionFailure(point.point_id, f"{type(e).__name__}: {e}", attempt) from e

    def extract_with_retry(self, point: Point) -> Dict[str, Any]:
        """Single-point convenience: attempt_point, sleeping through back-off in place."""
        attempt = 1
        while True:
            try:
                return self.attempt_point(point, attempt)
            except ProviderThrottled:
                self._sleep(self.backoff(attempt))
                attempt += 1

    def _run_point(self, point: Point, attempt: int) -> Tuple[str, Any]:
        """("skipped", None) | ("done", record) | ("failed", (record, failure)) | ("throttled", error)"""
        if self._abort.is_set():
            return "skipped", None
        try:
            return "done", self.attempt_point(point, attempt)
        except ProviderThrottled as e:
            return "throttled", e
        except PointExtractionFailure as e:
            print(f"  - warning: point {e.point_id}: extraction failed ({e.cause}); keeping original attributes")
            return "failed", (passthrough_record(point, self.id_field), PointFailure(e.point_id, e.cause, e.attempts))

    def columns(self, points: Sequence[Point]) -> List[str]:
        cols = [self.id_field] + [c for c in attribute_columns(points) if c != self.id_field]
        cols += [f for f in self.schema if f not in cols]
        return cols

    def extract_all(self, points: Sequence[Point]) -> FeatureTable:
        points = list(points)
        slots: List[Optional[Dict[str, Any]]] = [None] * len(points)
        failures: Dict[int, PointFailure] = {}

        # (index, attempt) ready to run; deferred holds (not_before, index, attempt)
        ready: Deque[Tuple[int, int]] = deque((i, 1) for i in range(len(points)))
        deferred: List[Tuple[float, int, int]] = []
        running: Dict[Future, Tuple[int, int]] = {}

        print(f"[EXTRACT] {len(points)} point(s), {len(self.prepared)} source(s), {self.max_workers} worker(s)")

        def collect(fut: Future) -> None:
            i, attempt = running.pop(fut)
            status, payload = fut.result()
            if status == "done":
                slots[i] = payload
            elif status == "failed":
                slots[i], failures[i] = payload
            elif status == "throttled":
                delay = self.backoff(attempt)
                print(f"  - point {points[i].point_id}: throttled, retrying in {delay:.1f}s ({attempt}/{self.max_attempts})")
                heapq.heappush(deferred, (self._clock() + delay, i, attempt + 1))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                while ready or deferred or running:
                    if self._abort.is_set():
                        ready.clear()
                        deferred.clear()

                    now = self._clock()
                    while deferred and deferred[0][0] <= now:
                        _, i, attempt = heapq.heappop(deferred)
                        ready.appendleft((i, attempt))
                    while ready and len(running) < self.max_workers:
                        i, attempt = ready.popleft()
                        running[pool.submit(self._run_point, points[i], attempt)] = (i, attempt)

                    if not running:
                        if deferred:
                            # nothing runnable until the earliest retry is due
                            not_before, i, attempt = heapq.heappop(deferred)
                            self._sleep(max(0.0, not_before - now))
                            ready.appendleft((i, attempt))
                        continue

                    timeout = max(0.0, deferred[0][0] - now) if deferred else None
                    done, _ = wait(running, timeout=timeout, return_when=FIRST_COMPLETED)
                    for fut in done:
                        collect(fut)
            except KeyboardInterrupt:
                print("[EXTRACT] interrupted: finishing running points, keeping collected records")
                self.abort()
                for fut in list(running):
                    # a point cut off by the interrupt itself is dropped
                    if fut.exception() is None:
                        collect(fut)
                    else:
                        running.pop(fut)

        rows = [r for r in slots if r is not None]
        aborted = self._abort.is_set()
        table = FeatureTable(
            columns=self.columns(points),
            rows=rows,
            failures=[failures[i] for i in sorted(failures)],
            complete=not aborted and len(rows) == len(points),
            aborted=aborted,
        )
        status = "aborted" if aborted else "done"
        print(f"[EXTRACT] {status}: {len(rows)} record(s), {len(table.failures)} failure(s)")
        return table


# -----------------------------------------------------------------------------
# Core function (called by CLI)
# -----------------------------------------------------------------------------

def run_extraction(
    *,
    sources_yaml: Dict[str, Any],
    points_path: Path,
    out_csv: Path,
    failures_csv: Optional[Path] = None,
    id_field: Optional[str] = None,
    layer: Optional[str] = None,
    workers: Optional[int] = None,
    limit: Optional[int] = None,
    dry_run: bool = False,
    provider: Optional[GeospatialProvider] = None,
    catalog: Optional[Catalog] = None,
) -> Optional[FeatureTable]:
    """Load points, prepare sources, extract, write the CSV outputs.

    Parameters
    ----------
    sources_yaml : dict
        Parsed sources.yaml (`pipeline:` + `sources:`).
    points_path : Path
        Vector file with the input points.
    out_csv, failures_csv : Path
        Feature table and per-point failure log.
    id_field, workers : optional
        Override pipeline.id_field / pipeline.workers.
    limit : int | None
        Debug: only process the first N points.
    dry_run : bool
        Validate config and points, print the plan, read no pixels.

    Raises
    ------
    InvalidSourceConfig
        If the source declarations are invalid (the only fatal error).
    """
    settings = pipeline_settings(sources_yaml)
    registry = registry_from_config(load_sources_block(sources_yaml), percentiles=settings.percentiles)
    schema = registry.schema()

    id_field = id_field or settings.id_field
    points = load_points(points_path, id_field=id_field, crs=settings.crs, layer=layer, limit=limit)
    points = with_footprint(points, settings.footprint_buffer)
    bound = points_bound(points)
    if bound is None:
        raise SystemExit(f"No usable geometries in {points_path}")

    print(f"[EXTRACT] {len(points)} point(s) from {points_path}")
    print(f"  - bound: {format_bbox(bound, precision=1)} ({settings.crs})")
    print(f"  - {len(registry)} source(s), {len(schema)} output field(s)")

    if dry_run:
        for s in registry:
            print(f"[dry-run] {s.name}: {s.kind}, {s.reduction_policy}, scale={s.scale:g} -> {[f.name for f in s.fields]}")
        print(f"[dry-run] Would write {out_csv}")
        return None

    if provider is None:
        provider = LocalRasterProvider()
    if catalog is None:
        from ecosample.ingest.catalog import RasterCatalog

        catalog = RasterCatalog()

    prepared = prepare_all(
        registry, provider, catalog, bound, crs=settings.crs, margin_pixels=settings.margin_pixels
    )
    extractor = FeatureExtractor(
        prepared,
        schema,
        provider,
        id_field=id_field or "id",
        max_workers=workers or settings.workers,
        max_attempts=settings.max_attempts,
        backoff_seconds=settings.backoff_seconds,
    )
    # Ctrl-C aborts inside extract_all; the partial table is still written
    table = extractor.extract_all(points)
    if table.aborted:
        print(f"  - warning: run aborted after {len(table.rows)}/{len(points)} point(s); writing partial table")

    table.write_csv(out_csv)
    print(f"Wrote {len(table.rows)} row(s) -> {out_csv}")
    if failures_csv is not None:
        table.write_failures_csv(failures_csv)
        print(f"Wrote {len(table.failures)} failure(s) -> {failures_csv}")
    return table
