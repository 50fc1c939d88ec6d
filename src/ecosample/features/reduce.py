#!/usr/bin/env python3
"""reduce.py

# *how rasters become numbers at a point*

Phase 2 of an extraction run: pure read-only queries against the prepared
rasters. One ReductionResult per (point, source), always.

Reduction per prepared raster:
- point-sample policy: nearest pixel at the source scale.
- region-mean / temporal-composite-then-region-mean: mean of the valid pixels
  inside the point's footprint, capped by the source's max_pixels.
- Temporal statistic rasters other than the mean (stdDev, percentiles) are
  always point-sampled: averaging a percentile surface over a footprint does
  not give a percentile.

Error containment:
- PointOutOfCoverage -> that value is UNAVAILABLE.
- Any other provider error (ReductionFailure, MemoryError, ...) -> every value
  of that source is UNAVAILABLE for this point; the error text rides along on
  the result. Other sources still run.
- ProviderThrottled propagates to the orchestrator, which retries the point.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ecosample.features.points import Point
from ecosample.features.preprocess import PreparedRaster, PreparedSource
from ecosample.geo.provider import (
    UNAVAILABLE,
    GeospatialProvider,
    PointOutOfCoverage,
    ProviderThrottled,
    ReductionFailure,
    is_unavailable,
)
from ecosample.registry.sources import POINT_SAMPLE, VALUE, Source


@dataclass(frozen=True)
class ReductionResult:
    source: str
    # (band, statistic) -> float | UNAVAILABLE
    values: Mapping[Tuple[str, str], Any] = field(default_factory=dict)
    error: Optional[str] = None

    def get(self, band: str, statistic: str) -> Any:
        return self.values.get((band, statistic), UNAVAILABLE)

    @property
    def available(self) -> bool:
        return any(not is_unavailable(v) for v in self.values.values())


def _uses_point_sample(source: Source, statistic: str) -> bool:
    if source.reduction_policy == POINT_SAMPLE:
        return True
    return statistic not in (VALUE, "mean")


def _as_value(x: Any) -> Any:
    if is_unavailable(x) or x is None:
        return UNAVAILABLE
    x = float(x)
    return x if math.isfinite(x) else UNAVAILABLE


def reduce_raster(point: Point, prepared: PreparedRaster, source: Source, provider: GeospatialProvider) -> Any:
    """Scalar for one prepared raster at one point."""
    try:
        if _uses_point_sample(source, prepared.statistic):
            return _as_value(provider.sample_at_point(prepared.raster, point.geometry, source.scale))
        return _as_value(
            provider.region_statistic(prepared.raster, point.geometry, source.scale, "mean", source.max_pixels)
        )
    except PointOutOfCoverage:
        return UNAVAILABLE


def _source_failure(point: Point, prepared: PreparedSource, error: str) -> ReductionResult:
    print(f"  - warning: point {point.point_id}: {prepared.source.name} reduction failed: {error}")
    return ReductionResult(
        source=prepared.source.name,
        values={(pr.band, pr.statistic): UNAVAILABLE for pr in prepared.rasters},
        error=error,
    )


def reduce_source(point: Point, prepared: PreparedSource, provider: GeospatialProvider) -> ReductionResult:
    """Reduce every prepared raster of one source at one point."""
    source = prepared.source
    values: Dict[Tuple[str, str], Any] = {}
    try:
        for pr in prepared.rasters:
            values[(pr.band, pr.statistic)] = reduce_raster(point, pr, source, provider)
    except ProviderThrottled:
        raise
    except ReductionFailure as e:
        return _source_failure(point, prepared, str(e))
    except Exception as e:
        return _source_failure(point, prepared, f"{type(e).__name__}: {e}")
    return ReductionResult(source=source.name, values=values)


def reduce_point(
    point: Point,
    prepared_sources: Mapping[str, PreparedSource],
    provider: GeospatialProvider,
) -> List[ReductionResult]:
    """One ReductionResult per source, in registry order."""
    return [reduce_source(point, ps, provider) for ps in prepared_sources.values()]
