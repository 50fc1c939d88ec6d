#!/usr/bin/env python3
"""merge.py

Record merger: one flat output row per point.

Row layout: identifier, then the point's own attributes, then every field of
the FieldSchema. The field set comes from configuration, so every row has
the same fields no matter which sources had data at the point. Unavailable
values and sources without a result become None.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable

from ecosample.features.points import Point
from ecosample.features.reduce import ReductionResult
from ecosample.geo.provider import is_unavailable
from ecosample.registry.sources import FieldSchema


def passthrough_record(point: Point, id_field: str = "id") -> Dict[str, Any]:
    """The point as it came in: identifier + original attributes, no derived fields."""
    record: Dict[str, Any] = {id_field: point.point_id}
    record.update(point.attributes)
    return record


def merge_record(
    point: Point,
    results: Iterable[ReductionResult],
    schema: FieldSchema,
    *,
    id_field: str = "id",
) -> Dict[str, Any]:
    record = passthrough_record(point, id_field)
    by_source = {r.source: r for r in results}

    for name in schema:
        source_name, spec = schema.lookup(name)
        result = by_source.get(source_name)
        value = result.get(spec.band, spec.statistic) if result is not None else None
        if value is None or is_unavailable(value):
            value = None
        # never replace an existing attribute with a null
        if value is None and record.get(name) is not None:
            continue
        record[name] = value
    return record
