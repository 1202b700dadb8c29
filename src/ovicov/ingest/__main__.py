#!/usr/bin/env python3
"""ovicov.ingest

Covariate ingestion CLI for ovicov.

This is one of the ovicov subsystem CLIs:
- ovicov.ingest   → covariate download/cache (this file)
- ovicov.features → staged feature-table build (static, socio, monthly)

Design goals:
- One entrypoint for ingestion only
- One level of subcommands
- Config-driven defaults via YAML
- A verify mode that checks the local cache for every source (or one)

Examples:
  # Download everything the pipeline uses into the cache
  python -m ovicov.ingest worldclim

  # Just the monthly stacks, plus clipped AOI subsets for inspection
  python -m ovicov.ingest worldclim --vars tmax prec --write-subsets

  # Verify that cached inputs exist
  python -m ovicov.ingest verify --source all
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from ovicov.config import (
    DEFAULT_PIPELINE_YAML,
    DEFAULT_SOURCES_YAML,
    PipelineConfig,
    load_yaml,
)
from ovicov.errors import CovariateError


# -----------------------------
# Verify helpers (lightweight)
# -----------------------------

def _verify_source(source_id: str, sources_yaml: Dict[str, Any]) -> Dict[str, Any]:
    """Presence check for one source's cache_dir.

    Reports how many GeoTIFFs are cached; it does not open them.
    """
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict) or source_id not in sources:
        return {"source": source_id, "ok": False, "reason": "unknown source"}

    cfg = sources[source_id]
    if not isinstance(cfg, dict):
        return {"source": source_id, "ok": False, "reason": "bad config block"}

    cache_dir = cfg.get("cache_dir")
    if not isinstance(cache_dir, str) or not cache_dir.strip():
        return {"source": source_id, "ok": True, "rule": "none", "note": "no cache_dir (skipped)"}

    p = Path(cache_dir)
    if not p.is_dir():
        return {"source": source_id, "ok": False, "rule": "cache_dir", "reason": f"missing dir: {p}"}
    files = sorted(x for x in p.rglob("*.tif") if x.is_file())
    return {
        "source": source_id,
        "ok": len(files) > 0,
        "rule": "cache_dir",
        "count": len(files),
        "sample": [str(x) for x in files[:5]],
    }


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ovicov.ingest", description="Covariate ingestion for ovicov")

    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML, help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--pipeline-yaml", type=Path, default=DEFAULT_PIPELINE_YAML, help=f"Path to pipeline.yaml, for the region (default: {DEFAULT_PIPELINE_YAML})")
    ap.add_argument("--overwrite", action="store_true", help="Ignore cache and re-download/rewrite outputs")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without downloading/writing")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- worldclim ---
    wc = sub.add_parser("worldclim", help="Fetch WorldClim/WorldCover covariates into the cache")
    wc.add_argument("--vars", nargs="+", default=None, help="Variables to fetch (default: every var in sources.yaml)")
    wc.add_argument("--write-subsets", action="store_true", help="Also write clipped <var>_AOI.tif subsets")
    wc.add_argument("--subset-dir", type=Path, default=Path("data_covariables/subsets"), help="Where AOI subsets go")

    # --- verify ---
    ver = sub.add_parser("verify", help="Verify that cached covariates exist")
    ver.add_argument("--source", default="all", help="Source id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def _all_vars(sources_yaml: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for cfg in (sources_yaml.get("sources") or {}).values():
        if isinstance(cfg, dict):
            out.extend(str(v) for v in cfg.get("vars") or [])
    return out


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    # Load YAML only inside main (so import doesn't have side effects)
    sources_yaml = load_yaml(args.sources_yaml)

    if args.command == "verify":
        sources = sources_yaml.get("sources")
        if not isinstance(sources, dict):
            raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")

        if args.source == "all":
            results = [_verify_source(sid, sources_yaml) for sid in sorted(sources.keys())]
        else:
            results = [_verify_source(args.source, sources_yaml)]

        ok = all(r.get("ok") for r in results)
        if args.json:
            print(json.dumps({"ok": ok, "results": results}, indent=2))
        else:
            for r in results:
                status = "OK" if r.get("ok") else "MISSING"
                print(f"[{status}] {r['source']} ({r.get('rule', '?')})")
                if "reason" in r:
                    print(f"  - reason: {r['reason']}")
                if "count" in r:
                    print(f"  - count: {r['count']}")
                for s in r.get("sample") or []:
                    print(f"    - {s}")
            print(f"Overall: {'OK' if ok else 'NOT OK'}")
        return 0 if ok else 2

    if args.command == "worldclim":
        vars_to_get = args.vars or _all_vars(sources_yaml)
        if not vars_to_get:
            raise SystemExit("No --vars provided and sources.yaml lists no vars")

        region = None
        if args.write_subsets:
            region = PipelineConfig.from_yaml(load_yaml(args.pipeline_yaml)).region

        # Lazy import handler (keeps CLI import fast and avoids rasterio unless used)
        from ovicov.ingest.fetch_worldclim import fetch_worldclim

        try:
            return fetch_worldclim(
                sources_yaml=sources_yaml,
                vars_to_get=vars_to_get,
                overwrite=args.overwrite,
                dry_run=args.dry_run,
                subset_dir=args.subset_dir if args.write_subsets else None,
                region=region,
            )
        except CovariateError as e:
            raise SystemExit(f"WorldClim fetch failed: {e}") from e

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
