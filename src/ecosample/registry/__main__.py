#!/usr/bin/env python3
"""ecosample.registry

Source declaration CLI for ecosample.

This is one of the ecosample subsystem CLIs:
- ecosample.registry → source declarations (this file)
- ecosample.features → point extraction + QA

ecosample.registry is the source of truth for WHAT gets sampled.
sources.yaml declares each raster source (kind, bands, scale, filters,
reduction policy, output fields); this CLI checks those declarations
without reading any pixels.

Design notes:
- Validation is the same code path extraction uses (registry_from_config)
- Invalid declarations exit non-zero with the offending source named

Examples:
  # One line per configured source
  python -m ecosample.registry list

  # Full validation, prints the output schema
  python -m ecosample.registry validate --sources-yaml config/sources.yaml
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from ecosample.config import (
    load_yaml,
    load_sources_block,
    pipeline_settings,
    describe_sources,
    DEFAULT_SOURCES_YAML,
)
from ecosample.registry.sources import registry_from_config


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for ecosample.registry."""
    ap = argparse.ArgumentParser(
        prog="ecosample.registry",
        description="Source declarations for ecosample",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m ecosample.registry  # Source declarations (this)
  python -m ecosample.features  # Point extraction + QA
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

    sub.add_parser(
        "list",
        help="List configured sources (no validation)",
    )
    sub.add_parser(
        "validate",
        help="Validate every source declaration and print the output schema",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_list(args: argparse.Namespace) -> int:
    data = load_yaml(args.sources_yaml)
    try:
        sources = load_sources_block(data, args.sources_yaml)
    except ValueError as e:
        raise SystemExit(str(e))
    print(f"[REGISTRY] {len(sources)} source(s) in {args.sources_yaml}")
    for line in describe_sources(sources):
        print(f"  {line}")
    return 0


def _handle_validate(args: argparse.Namespace) -> int:
    """Handle the validate subcommand.

    Builds the registry exactly as an extraction run would.
    """
    data = load_yaml(args.sources_yaml)
    try:
        settings = pipeline_settings(data)
        registry = registry_from_config(
            load_sources_block(data, args.sources_yaml), percentiles=settings.percentiles
        )
    except ValueError as e:
        raise SystemExit(f"[REGISTRY] invalid: {e}")

    schema = registry.schema()
    print(f"[REGISTRY] OK: {len(registry)} source(s), {len(schema)} output field(s)")
    for s in registry:
        window = f", {s.temporal_filter.start} .. {s.temporal_filter.end}" if s.temporal_filter else ""
        print(f"  {s.name}: {s.kind}, {s.reduction_policy}, scale={s.scale:g}{window}")
        for f in s.fields:
            print(f"    - {f.name} <- {f.band} ({f.statistic})")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for ecosample.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "list": _handle_list,
        "validate": _handle_validate,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
