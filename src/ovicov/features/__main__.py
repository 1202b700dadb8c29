#!/usr/bin/env python3
"""ovicov.features

Feature-table build CLI for ovicov.

This is one of the ovicov subsystem CLIs:
- ovicov.ingest   → covariate download/cache
- ovicov.features → staged feature-table build (this file)

Stages run in a fixed order, each reading the previous stage's checkpoint:
  static  → eggs_data_parcial_covariables.csv
  socio   → eggs_data_semi_completa_localidad.csv
  monthly → eggs_data_base_COMPLETA_FINAL_MENSUAL.csv

Design notes:
- Lazy-imports the geo stack to keep CLI startup fast
- All subcommands support --dry-run
- A failing stage leaves the previous checkpoint as the latest valid output

Examples:
  python -m ovicov.features all
  python -m ovicov.features socio --pipeline-yaml config/pipeline.yaml
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from ovicov.config import (
    DEFAULT_PIPELINE_YAML,
    DEFAULT_SOURCES_YAML,
    PipelineConfig,
    STAGE_ORDER,
    load_yaml,
)
from ovicov.errors import CovariateError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ovicov.features",
        description="Build the ovitrap covariate feature table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m ovicov.ingest    # Covariate download/cache
  python -m ovicov.features  # Feature-table build (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--pipeline-yaml",
        type=Path,
        default=DEFAULT_PIPELINE_YAML,
        help=f"Path to pipeline.yaml (default: {DEFAULT_PIPELINE_YAML})",
    )
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Re-download cached covariates",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned stages without reading or writing anything",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("static", help="Elevation, built-up fraction, historical mean temperature")
    sub.add_parser("socio", help="Locality population density and schooling (INEGI)")
    sub.add_parser("monthly", help="Monthly tmax and precipitation (12 bands each)")
    sub.add_parser("all", help="Run every stage in order")

    return ap


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for ovicov.features CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    cfg = PipelineConfig.from_yaml(load_yaml(args.pipeline_yaml))
    stages = STAGE_ORDER if args.command == "all" else [args.command]

    if args.dry_run:
        print("[dry-run] Would run stages:")
        for stage in stages:
            print(f"  - {stage} -> {cfg.checkpoint_path(stage)}")
        print(f"  Region: {cfg.region}")
        print(f"  Samples: {cfg.samples_csv}")
        print(f"  Localities: {cfg.localities_path}")
        print(f"  Census: {cfg.census_csv}")
        return 0

    # Lazy import: avoids loading geopandas/rasterio until needed
    from ovicov.features.stages import run_pipeline
    from ovicov.ingest.fetch_worldclim import WorldClimProvider

    provider = None
    if any(s in ("static", "monthly") for s in stages):
        provider = WorldClimProvider(load_yaml(args.sources_yaml), overwrite=args.overwrite)

    try:
        run_pipeline(cfg, provider, stages=stages)
    except CovariateError as e:
        raise SystemExit(f"[FEATURES] failed: {e}") from e

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
