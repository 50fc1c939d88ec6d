#!/usr/bin/env python3
"""sources.py

Source registry: the declarative list of rasters / collections a run samples.

A Source says WHAT to read (location, bands), HOW to pre-filter it (space,
time, item attributes, pixel quality), and HOW to reduce it at each point
(policy + scale). Output fields are declared here too, so the output schema
is fixed at configuration time, before any pixel is read.

This module exposes:
1. register_source() - validate arguments, return a frozen Source
2. source_from_config() - same, from a sources.yaml block
3. SourceRegistry - ordered collection of sources + the output FieldSchema

Every validation problem raises InvalidSourceConfig. It is the only error
that is fatal to a whole run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ecosample.config import BBox, DEFAULT_PERCENTILES, coerce_bbox
from ecosample.features.derived_features import DerivedBand, parse_derived_bands, parse_expression
from ecosample.geo.provider import AttributeFilter, DateRange


class InvalidSourceConfig(ValueError):
    """A source declaration is incomplete or inconsistent."""


# -----------------------------------------------------------------------------
# Vocabulary
# -----------------------------------------------------------------------------

STATIC_RASTER = "static-raster"
TIME_FILTERED_COLLECTION = "time-filtered-collection"
DERIVED_COMPOSITE = "derived-composite"
KINDS = (STATIC_RASTER, TIME_FILTERED_COLLECTION, DERIVED_COMPOSITE)

POINT_SAMPLE = "point-sample"
REGION_MEAN = "region-mean"
TEMPORAL_COMPOSITE_THEN_REGION_MEAN = "temporal-composite-then-region-mean"
POLICIES = (POINT_SAMPLE, REGION_MEAN, TEMPORAL_COMPOSITE_THEN_REGION_MEAN)

# statistic name for a raw (non-composited) sample
VALUE = "value"

# default cap on pixels per region reduction
DEFAULT_MAX_PIXELS = 10_000_000


# -----------------------------------------------------------------------------
# Filters and fields
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class QualityFilter:
    """Mask pixels whose `band` value is one of `exclude` (e.g. SCL cloud classes)."""

    band: str
    exclude: Tuple[float, ...]


@dataclass(frozen=True)
class FieldSpec:
    name: str
    band: str
    statistic: str
    valid_range: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class Source:
    name: str
    kind: str
    bands: Tuple[str, ...]
    scale: float
    reduction_policy: str
    resolution: float
    fields: Tuple[FieldSpec, ...]
    spatial_filter: Optional[BBox] = None
    temporal_filter: Optional[DateRange] = None
    quality_filter: Optional[QualityFilter] = None
    attribute_filter: Optional[AttributeFilter] = None
    derived_bands: Tuple[DerivedBand, ...] = ()
    max_pixels: int = DEFAULT_MAX_PIXELS
    percentiles: Tuple[int, ...] = DEFAULT_PERCENTILES
    # where the local catalogue finds pixels
    location: Optional[str] = None
    band_names: Optional[Tuple[str, ...]] = None
    nodata: Optional[float] = None
    date_pattern: Optional[str] = None
    date_format: str = "%Y%m%d"

    def statistics(self) -> Tuple[str, ...]:
        """Statistics this source's prepared rasters can provide."""
        return available_statistics(self.kind, self.percentiles)

    def output_bands(self) -> Tuple[str, ...]:
        """Bands referenced by output fields, in first-use order."""
        seen: Dict[str, None] = {}
        for f in self.fields:
            seen.setdefault(f.band, None)
        return tuple(seen)

    def outputs(self) -> Tuple[Tuple[str, str], ...]:
        """(band, statistic) pairs referenced by output fields, in first-use order."""
        seen: Dict[Tuple[str, str], None] = {}
        for f in self.fields:
            seen.setdefault((f.band, f.statistic), None)
        return tuple(seen)


def available_statistics(kind: str, percentiles: Sequence[int]) -> Tuple[str, ...]:
    if kind == STATIC_RASTER:
        return (VALUE,)
    if kind == DERIVED_COMPOSITE:
        return ("mean",)
    return ("mean", "stdDev") + tuple(f"p{int(p)}" for p in percentiles)


def default_statistic(kind: str) -> str:
    return VALUE if kind == STATIC_RASTER else "mean"


# -----------------------------------------------------------------------------
# Parsing helpers
# -----------------------------------------------------------------------------

def _as_date(x: Any, what: str) -> date:
    if isinstance(x, datetime):
        return x.date()
    if isinstance(x, date):
        return x
    if isinstance(x, str):
        try:
            return date.fromisoformat(x.strip())
        except ValueError:
            pass
    raise InvalidSourceConfig(f"{what}: expected an ISO date (YYYY-MM-DD), got {x!r}")


def parse_temporal_filter(cfg: Any, where: str = "temporal_filter") -> Optional[DateRange]:
    """Parse a temporal filter block into a half-open DateRange.

    Accepts either
        {start: 2024-01-01, end: 2025-01-01}      # end exclusive
    or
        {start_year: 2020, end_year: 2024}        # both years inclusive

    Both bounds are required: an open interval is a config error.
    """
    if cfg is None:
        return None
    if isinstance(cfg, DateRange):
        return cfg
    if not isinstance(cfg, dict):
        raise InvalidSourceConfig(f"{where} must be a mapping, got {cfg!r}")

    if "start_year" in cfg or "end_year" in cfg:
        if cfg.get("start_year") is None or cfg.get("end_year") is None:
            raise InvalidSourceConfig(f"{where} needs both start_year and end_year (closed interval)")
        try:
            start_year, end_year = int(cfg["start_year"]), int(cfg["end_year"])
        except (TypeError, ValueError):
            raise InvalidSourceConfig(f"{where}: years must be integers, got {cfg!r}") from None
        if start_year > end_year:
            raise InvalidSourceConfig(f"{where}: start_year ({start_year}) must be <= end_year ({end_year})")
        return DateRange(date(start_year, 1, 1), date(end_year + 1, 1, 1))

    if cfg.get("start") is None or cfg.get("end") is None:
        raise InvalidSourceConfig(f"{where} needs both start and end (closed interval)")
    start = _as_date(cfg["start"], f"{where}.start")
    end = _as_date(cfg["end"], f"{where}.end")
    if start >= end:
        raise InvalidSourceConfig(f"{where}: start ({start}) must be before end ({end})")
    return DateRange(start, end)


def parse_quality_filter(cfg: Any) -> Optional[QualityFilter]:
    if cfg is None or isinstance(cfg, QualityFilter):
        return cfg
    if not isinstance(cfg, dict) or not cfg.get("band"):
        raise InvalidSourceConfig(f"quality_filter needs a 'band', got {cfg!r}")
    exclude = cfg.get("exclude")
    if not isinstance(exclude, (list, tuple)) or not exclude:
        raise InvalidSourceConfig("quality_filter needs a non-empty 'exclude' list of classes")
    try:
        classes = tuple(float(c) for c in exclude)
    except (TypeError, ValueError) as e:
        raise InvalidSourceConfig(f"quality_filter.exclude must be numeric classes, got {exclude!r}") from e
    return QualityFilter(band=str(cfg["band"]), exclude=classes)


def parse_attribute_filter(cfg: Any) -> Optional[AttributeFilter]:
    if cfg is None or isinstance(cfg, AttributeFilter):
        return cfg
    if not isinstance(cfg, dict) or not {"property", "op", "value"} <= set(cfg):
        raise InvalidSourceConfig(f"attribute_filter needs property, op and value, got {cfg!r}")
    try:
        return AttributeFilter(prop=str(cfg["property"]), op=str(cfg["op"]), value=cfg["value"])
    except ValueError as e:
        raise InvalidSourceConfig(str(e)) from e


def _parse_range(x: Any, where: str) -> Optional[Tuple[float, float]]:
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 2:
        try:
            lo, hi = float(x[0]), float(x[1])
        except (TypeError, ValueError):
            lo, hi = None, None
        if lo is not None and lo <= hi:
            return (lo, hi)
    raise InvalidSourceConfig(f"{where}: valid_range must be [min, max], got {x!r}")


def parse_fields(cfg: Any, kind: str, source_name: str) -> List[FieldSpec]:
    """Parse the `fields:` block (output field name -> band / statistic).

    Shorthand `Elevation: DEM` means the band's default statistic.
    """
    if cfg is None:
        return []
    if not isinstance(cfg, dict):
        raise InvalidSourceConfig(f"{source_name}: fields must be a mapping of field name -> band/spec")
    out = []
    for fname, spec in cfg.items():
        where = f"{source_name}.fields.{fname}"
        if isinstance(spec, str):
            out.append(FieldSpec(str(fname), spec, default_statistic(kind)))
        elif isinstance(spec, dict) and spec.get("band"):
            out.append(
                FieldSpec(
                    name=str(fname),
                    band=str(spec["band"]),
                    statistic=str(spec.get("statistic", default_statistic(kind))),
                    valid_range=_parse_range(spec.get("valid_range"), where),
                )
            )
        else:
            raise InvalidSourceConfig(f"{where}: expected a band name or {{band, statistic}}, got {spec!r}")
    return out


# -----------------------------------------------------------------------------
# Core: register_source
# -----------------------------------------------------------------------------

def _positive(x: Any, what: str, source_name: str) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        raise InvalidSourceConfig(f"{source_name}: {what} must be a positive number, got {x!r}") from None
    if not v > 0:
        raise InvalidSourceConfig(f"{source_name}: {what} must be positive, got {x!r}")
    return v


def register_source(
    name: str,
    kind: str,
    *,
    bands: Sequence[str],
    scale: float,
    reduction_policy: str,
    spatial_filter: Optional[Any] = None,
    temporal_filter: Optional[Any] = None,
    quality_filter: Optional[Any] = None,
    attribute_filter: Optional[Any] = None,
    derived_bands: Sequence[DerivedBand] = (),
    fields: Optional[Sequence[FieldSpec]] = None,
    resolution: Optional[float] = None,
    max_pixels: int = DEFAULT_MAX_PIXELS,
    percentiles: Sequence[int] = DEFAULT_PERCENTILES,
    location: Optional[str] = None,
    band_names: Optional[Sequence[str]] = None,
    nodata: Optional[float] = None,
    date_pattern: Optional[str] = None,
    date_format: str = "%Y%m%d",
) -> Source:
    """Validate a source declaration and return a frozen Source.

    Args:
        name: Unique source name (used to tag prepared rasters)
        kind: static-raster | time-filtered-collection | derived-composite
        bands: Primary bands to read (non-empty)
        scale: Reduction scale, pixel size in CRS units (> 0)
        reduction_policy: point-sample | region-mean | temporal-composite-then-region-mean
        spatial_filter: Optional [xmin, ymin, xmax, ymax]; None means "bound of all points"
        temporal_filter: DateRange or parseable mapping; required for collection kinds
        quality_filter: QualityFilter or {band, exclude}
        attribute_filter: AttributeFilter or {property, op, value}
        derived_bands: Band-math declarations evaluated in order
        fields: Output fields; default is one `<band>_<statistic>` field per
            output band and statistic
        resolution: Native resolution used to materialize rasters (default: scale)
        max_pixels: Cap on pixels per region reduction
        percentiles: Percentiles composited for time-filtered collections

    Raises:
        InvalidSourceConfig: On any missing or inconsistent setting.
    """
    if not name or not str(name).strip():
        raise InvalidSourceConfig("Source name must be a non-empty string")
    if kind not in KINDS:
        raise InvalidSourceConfig(f"{name}: unknown kind '{kind}' (expected one of {KINDS})")
    if reduction_policy not in POLICIES:
        raise InvalidSourceConfig(f"{name}: unknown reduction_policy '{reduction_policy}' (expected one of {POLICIES})")
    if kind == STATIC_RASTER and reduction_policy == TEMPORAL_COMPOSITE_THEN_REGION_MEAN:
        raise InvalidSourceConfig(f"{name}: a static raster has no time axis to composite")

    bands = tuple(str(b) for b in (bands or ()))
    if not bands:
        raise InvalidSourceConfig(f"{name}: bands must be non-empty")
    if len(set(bands)) != len(bands):
        raise InvalidSourceConfig(f"{name}: duplicate bands in {list(bands)}")

    scale_v = _positive(scale, "scale", name)
    resolution_v = _positive(resolution, "resolution", name) if resolution is not None else scale_v
    max_pixels_v = int(_positive(max_pixels, "max_pixels", name))

    percentiles_t = tuple(int(p) for p in percentiles)
    if not percentiles_t or any(p < 0 or p > 100 for p in percentiles_t):
        raise InvalidSourceConfig(f"{name}: percentiles must be a non-empty list within 0..100, got {percentiles!r}")

    spatial = None
    if spatial_filter is not None:
        spatial = coerce_bbox(spatial_filter)
        if spatial is None:
            raise InvalidSourceConfig(f"{name}: spatial_filter must be [xmin, ymin, xmax, ymax], got {spatial_filter!r}")

    temporal = parse_temporal_filter(temporal_filter, f"{name}.temporal_filter")
    if kind in (TIME_FILTERED_COLLECTION, DERIVED_COMPOSITE) and temporal is None:
        raise InvalidSourceConfig(f"{name}: a {kind} source needs a temporal_filter with both bounds")

    quality = parse_quality_filter(quality_filter)
    attribute = parse_attribute_filter(attribute_filter)

    # --- derived bands: known inputs, no name clashes ---
    known = set(bands)
    if quality is not None:
        known.add(quality.band)
    derived = tuple(derived_bands)
    for db in derived:
        try:
            parse_expression(db.expression)
        except ValueError as e:
            raise InvalidSourceConfig(f"{name}: derived band '{db.name}': {e}") from e
        missing = [b for b in db.inputs() if b not in known]
        if missing:
            raise InvalidSourceConfig(f"{name}: derived band '{db.name}' uses unknown band(s) {missing}")
        if db.name in known:
            raise InvalidSourceConfig(f"{name}: derived band '{db.name}' clashes with an existing band")
        known.add(db.name)

    # --- output fields ---
    stats = available_statistics(kind, percentiles_t)
    if fields is None:
        fields = [FieldSpec(f"{b}_{s}", b, s) for b in bands for s in stats]
    fields_t = tuple(fields)
    if not fields_t:
        raise InvalidSourceConfig(f"{name}: no output fields declared")
    names_seen = set()
    for f in fields_t:
        if f.name in names_seen:
            raise InvalidSourceConfig(f"{name}: duplicate output field '{f.name}'")
        names_seen.add(f.name)
        if f.band not in known:
            raise InvalidSourceConfig(f"{name}: field '{f.name}' references unknown band '{f.band}'")
        if f.statistic not in stats:
            raise InvalidSourceConfig(
                f"{name}: field '{f.name}' asks for statistic '{f.statistic}'; a {kind} source provides {list(stats)}"
            )

    return Source(
        name=str(name),
        kind=kind,
        bands=bands,
        scale=scale_v,
        reduction_policy=reduction_policy,
        resolution=resolution_v,
        fields=fields_t,
        spatial_filter=spatial,
        temporal_filter=temporal,
        quality_filter=quality,
        attribute_filter=attribute,
        derived_bands=derived,
        max_pixels=max_pixels_v,
        percentiles=percentiles_t,
        location=str(location) if location is not None else None,
        band_names=tuple(str(b) for b in band_names) if band_names is not None else None,
        nodata=float(nodata) if nodata is not None else None,
        date_pattern=date_pattern,
        date_format=date_format,
    )


def source_from_config(
    name: str,
    cfg: Mapping[str, Any],
    *,
    percentiles: Sequence[int] = DEFAULT_PERCENTILES,
) -> Source:
    """Build a Source from one `sources:` entry of sources.yaml."""
    kind = cfg.get("kind")
    if kind is None:
        raise InvalidSourceConfig(f"{name}: missing 'kind'")
    for key in ("bands", "scale", "reduction_policy"):
        if cfg.get(key) is None:
            raise InvalidSourceConfig(f"{name}: missing required '{key}'")

    bands = cfg["bands"]
    if isinstance(bands, str):
        bands = [bands]

    spatial = cfg.get("spatial_filter")
    if spatial == "points":
        spatial = None

    try:
        derived = parse_derived_bands(cfg.get("derived_bands"))
    except ValueError as e:
        raise InvalidSourceConfig(f"{name}: {e}") from e

    fields_cfg = cfg.get("fields")
    fields = parse_fields(fields_cfg, str(kind), name) if fields_cfg is not None else None

    return register_source(
        name,
        str(kind),
        bands=bands,
        scale=cfg["scale"],
        reduction_policy=str(cfg["reduction_policy"]),
        spatial_filter=spatial,
        temporal_filter=cfg.get("temporal_filter"),
        quality_filter=cfg.get("quality_filter"),
        attribute_filter=cfg.get("attribute_filter"),
        derived_bands=derived,
        fields=fields,
        resolution=cfg.get("resolution"),
        max_pixels=cfg.get("max_pixels", DEFAULT_MAX_PIXELS),
        percentiles=cfg.get("percentiles", percentiles),
        location=cfg.get("location"),
        band_names=cfg.get("band_names"),
        nodata=cfg.get("nodata"),
        date_pattern=cfg.get("date_pattern"),
        date_format=str(cfg.get("date_format", "%Y%m%d")),
    )


# -----------------------------------------------------------------------------
# Registry + output schema
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSchema:
    """Ordered output fields across all sources. Identical for every record."""

    fields: Tuple[str, ...]
    specs: Mapping[str, Tuple[str, FieldSpec]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def lookup(self, field_name: str) -> Tuple[str, FieldSpec]:
        """(source name, FieldSpec) for an output field."""
        return self.specs[field_name]


class SourceRegistry:
    """Sources in registration order. Names and output fields are unique."""

    def __init__(self) -> None:
        self._sources: Dict[str, Source] = {}

    def register(self, source: Source) -> Source:
        if source.name in self._sources:
            raise InvalidSourceConfig(f"Source '{source.name}' is registered twice")
        taken = {f.name: s.name for s in self._sources.values() for f in s.fields}
        for f in source.fields:
            if f.name in taken:
                raise InvalidSourceConfig(
                    f"Output field '{f.name}' is declared by both '{taken[f.name]}' and '{source.name}'"
                )
        self._sources[source.name] = source
        return source

    def get(self, name: str) -> Source:
        return self._sources[name]

    @property
    def sources(self) -> Tuple[Source, ...]:
        return tuple(self._sources.values())

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[Source]:
        return iter(self.sources)

    def schema(self) -> FieldSchema:
        names: List[str] = []
        specs: Dict[str, Tuple[str, FieldSpec]] = {}
        for s in self._sources.values():
            for f in s.fields:
                names.append(f.name)
                specs[f.name] = (s.name, f)
        return FieldSchema(tuple(names), specs)


def registry_from_config(
    sources: Mapping[str, Mapping[str, Any]],
    *,
    percentiles: Sequence[int] = DEFAULT_PERCENTILES,
) -> SourceRegistry:
    """Build a registry from the parsed `sources:` mapping, in config order."""
    registry = SourceRegistry()
    for name, cfg in sources.items():
        registry.register(source_from_config(str(name), cfg, percentiles=percentiles))
    return registry
