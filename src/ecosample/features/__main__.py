#!/usr/bin/env python3
"""ecosample.features

Per-point feature extraction CLI for ecosample.

This is one of the ecosample subsystem CLIs:
- ecosample.registry → source declarations (list, validate)
- ecosample.features → point extraction + QA (this file)

ecosample.features turns a points file into one flat feature row per point:
- Prepare every configured source once (filter, mask, band math, composite)
- Reduce each source at each point (point sample / region mean)
- Merge into a fixed-schema table, in input point order

Outputs:
- data/processed/features/point_features.csv  → one row per input point
- data/processed/features/point_failures.csv  → points that kept only their attributes

Design notes:
- The output schema is fixed by sources.yaml before any pixel is read
- A bad source declaration is fatal; a bad point never is
- Lazy-imports the raster stack to keep CLI startup fast

Examples:
  # Show the output columns a run would produce
  python -m ecosample.features schema

  # Extract features for the first 10 points
  python -m ecosample.features extract --points data/raw/points/lucas_points.gpkg --limit 10

  # QA an existing feature table
  python -m ecosample.features validate --csv data/processed/features/point_features.csv
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from ecosample.config import (
    load_yaml,
    load_sources_block,
    pipeline_settings,
    DEFAULT_SOURCES_YAML,
    DEFAULT_POINTS_PATH,
    DEFAULT_OUT_CSV,
    DEFAULT_FAILURES_CSV,
)
from ecosample.registry.sources import FieldSchema, registry_from_config


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for ecosample.features."""
    ap = argparse.ArgumentParser(
        prog="ecosample.features",
        description="Per-point feature extraction for ecosample",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m ecosample.registry  # Source declarations
  python -m ecosample.features  # Point extraction + QA (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- schema ---
    sub.add_parser(
        "schema",
        help="Print the output fields, in column order",
    )

    # --- extract ---
    ext = sub.add_parser(
        "extract",
        help="Extract one feature row per point",
        description="""
Extract features for every point of a vector file.

This command:
1. Loads and validates sources.yaml
2. Reads points and reprojects them to the working CRS
3. Prepares every source once over the points' bound
4. Reduces every source at every point
5. Writes the feature table and the per-point failures log
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ext.add_argument(
        "--points",
        type=Path,
        default=DEFAULT_POINTS_PATH,
        help=f"Points file (default: {DEFAULT_POINTS_PATH})",
    )
    ext.add_argument(
        "--layer",
        default=None,
        help="Layer name in the points file (multi-layer GeoPackages)",
    )
    ext.add_argument(
        "--id-field",
        default=None,
        help="Points column holding the identifier (default: pipeline.id_field, else row index)",
    )
    ext.add_argument(
        "--out-csv",
        type=Path,
        default=DEFAULT_OUT_CSV,
        help=f"Output feature table (default: {DEFAULT_OUT_CSV})",
    )
    ext.add_argument(
        "--failures-csv",
        type=Path,
        default=DEFAULT_FAILURES_CSV,
        help=f"Output failures log (default: {DEFAULT_FAILURES_CSV})",
    )
    ext.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Base directory for relative source locations (default: cwd)",
    )
    ext.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel point workers (default: pipeline.workers)",
    )
    ext.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Debug: only process the first N points",
    )
    ext.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config and points, print the plan, read no rasters",
    )

    # --- validate ---
    val = sub.add_parser(
        "validate",
        help="QA an extracted feature table (missingness, impossible values)",
    )
    val.add_argument(
        "--csv",
        type=Path,
        default=DEFAULT_OUT_CSV,
        help=f"Feature table to check (default: {DEFAULT_OUT_CSV})",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _load_schema(sources_yaml_path: Path) -> FieldSchema:
    data = load_yaml(sources_yaml_path)
    try:
        settings = pipeline_settings(data)
        registry = registry_from_config(load_sources_block(data, sources_yaml_path), percentiles=settings.percentiles)
    except ValueError as e:
        raise SystemExit(f"Invalid sources config ({sources_yaml_path}): {e}")
    return registry.schema()


def _handle_schema(args: argparse.Namespace) -> int:
    schema = _load_schema(args.sources_yaml)
    for name in schema:
        source_name, spec = schema.lookup(name)
        print(f"{name}\t{source_name}.{spec.band}\t{spec.statistic}")
    return 0


def _handle_extract(args: argparse.Namespace) -> int:
    """Handle the extract subcommand.

    Only a bad source declaration stops the run; point-level problems end
    up in the failures CSV.
    """
    sources_yaml = load_yaml(args.sources_yaml)

    # Lazy import
    from ecosample.features.build_features import run_extraction

    catalog = None
    if args.data_dir is not None and not args.dry_run:
        from ecosample.ingest.catalog import RasterCatalog

        catalog = RasterCatalog(args.data_dir)

    try:
        table = run_extraction(
            sources_yaml=sources_yaml,
            points_path=args.points,
            out_csv=args.out_csv,
            failures_csv=args.failures_csv,
            id_field=args.id_field,
            layer=args.layer,
            workers=args.workers,
            limit=args.limit,
            dry_run=args.dry_run,
            catalog=catalog,
        )
    except ValueError as e:
        raise SystemExit(f"[EXTRACT] aborted: {e}")

    if table is not None and table.failures:
        print(f"  - warning: {len(table.failures)} point(s) kept original attributes only (see {args.failures_csv})")
    if table is not None and table.aborted:
        return 130
    return 0


def _handle_validate(args: argparse.Namespace) -> int:
    """Handle the validate subcommand. Returns 1 when impossible values are found."""
    if not args.csv.exists():
        raise SystemExit(f"Feature table not found: {args.csv}")
    schema = _load_schema(args.sources_yaml)

    import pandas as pd

    from ecosample.features.validate_features import format_report, validate_features

    df = pd.read_csv(args.csv)
    report = validate_features(df, schema)
    print(f"[QA] {args.csv}: {len(df)} row(s), {len(report)} field(s)")
    for line in format_report(report):
        print(line)
    return 0 if all(qa.ok for qa in report) else 1


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for ecosample.features CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "schema": _handle_schema,
        "extract": _handle_extract,
        "validate": _handle_validate,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
