#!/usr/bin/env python3
"""fetch_worldclim.py

Fetch WorldClim 2.1 / WorldCover covariates into the local cache and hand
them out as RasterSource objects.

This module is called by `python -m ovicov.ingest worldclim ...` and, through
WorldClimProvider, by the feature stages.

Behavior:
- Render URL from sources.yaml (url_template + base_url/res/var)
- Zip archives (WorldClim) are downloaded and extracted under cache_dir/<stem>/
- Plain GeoTIFFs (WorldCover) are downloaded to cache_dir/
- A source already on disk is reused as-is unless overwrite=True
- Downloads land in a `.part` file and are renamed once complete; the cache
  assumes a single writer
- Monthly archives are ordered by the month number in the file name
"""

from __future__ import annotations

import re
import shutil
import urllib.request
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ovicov.errors import SourceUnavailable
from ovicov.geo.rasters import RasterSource


_MONTH_RE = re.compile(r"_(\d{1,2})\.tif$", re.IGNORECASE)


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _render_url(template: str, context: Dict[str, Any]) -> str:
    try:
        return template.format(**context)
    except KeyError as e:
        raise KeyError(f"Missing key for url_template: {e.args[0]}") from e


def _band_sort_key(p: Path) -> Tuple[int, str]:
    m = _MONTH_RE.search(p.name)
    return (int(m.group(1)) if m else 0, p.name)


def _ordered_tifs(directory: Path) -> List[Path]:
    return sorted(directory.rglob("*.tif"), key=_band_sort_key)


def _download(url: str, out_path: Path) -> None:
    part = out_path.with_name(out_path.name + ".part")
    try:
        urllib.request.urlretrieve(url, part)
    except OSError as e:
        part.unlink(missing_ok=True)
        raise SourceUnavailable(f"Download failed for {url}: {e}") from e
    part.replace(out_path)


def _extract_zip(zip_path: Path, extract_dir: Path) -> None:
    tmp_dir = extract_dir.with_name(extract_dir.name + ".part")
    if tmp_dir.exists():
        shutil.rmtree(tmp_dir)
    try:
        with zipfile.ZipFile(zip_path, "r") as zf:
            zf.extractall(tmp_dir)
    except zipfile.BadZipFile as e:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise SourceUnavailable(f"Corrupt archive {zip_path}: {e}") from e
    if extract_dir.exists():
        shutil.rmtree(extract_dir)
    tmp_dir.replace(extract_dir)


def source_config(sources_yaml: Dict[str, Any], var: str) -> Tuple[str, Dict[str, Any]]:
    """Find the sources.yaml block that provides `var`."""
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict):
        raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")
    for source_id, cfg in sources.items():
        if isinstance(cfg, dict) and var in (cfg.get("vars") or []):
            return str(source_id), cfg
    raise SourceUnavailable(f"No source in sources.yaml provides variable '{var}'")


def plan(sources_yaml: Dict[str, Any], var: str) -> Tuple[str, Path]:
    """Return (url, local target) for `var`: an extract dir for zips, a file for tifs."""
    source_id, cfg = source_config(sources_yaml, var)
    template = cfg.get("url_template")
    if not template:
        raise SystemExit(f"{source_id} config missing url_template")

    ctx = {"base_url": cfg.get("base_url"), "res": cfg.get("res", "30s"), "var": var}
    url = _render_url(str(template), ctx)
    cache_dir = Path(cfg.get("cache_dir", f"data_covariables/{source_id}"))

    name = Path(url).name
    if name.lower().endswith(".zip"):
        return url, cache_dir / Path(name).stem
    return url, cache_dir / name


def ensure_source(
    sources_yaml: Dict[str, Any],
    var: str,
    *,
    overwrite: bool = False,
) -> RasterSource:
    """Make sure `var` is in the cache and return it as a RasterSource."""
    url, target = plan(sources_yaml, var)
    is_zip = url.lower().endswith(".zip")

    if is_zip:
        tifs = _ordered_tifs(target) if target.exists() else []
        if tifs and not overwrite:
            print(f"[SKIP] {var}: cached {len(tifs)} file(s) in {target}")
            return RasterSource.from_paths(var, tifs)
    elif target.exists() and not overwrite:
        print(f"[SKIP] {var}: cached {target}")
        return RasterSource.from_paths(var, [target])

    print(f"[WORLDCLIM] {var}")
    print(f"  - url: {url}")
    _ensure_dir(target.parent)

    if not is_zip:
        _download(url, target)
        return RasterSource.from_paths(var, [target])

    # names like wc2.1_30s_tmax carry dots, so no with_suffix()
    zip_path = target.with_name(target.name + ".zip")
    _download(url, zip_path)
    _extract_zip(zip_path, target)
    tifs = _ordered_tifs(target)
    if not tifs:
        raise SourceUnavailable(f"Archive {zip_path.name} contained no GeoTIFFs")
    print(f"  - extracted {len(tifs)} file(s) -> {target}")
    return RasterSource.from_paths(var, tifs)


class WorldClimProvider:
    """Covariate provider used by the feature stages: `get(var) -> RasterSource`."""

    def __init__(self, sources_yaml: Dict[str, Any], *, overwrite: bool = False) -> None:
        self.sources_yaml = sources_yaml
        self.overwrite = overwrite
        self._cache: Dict[str, RasterSource] = {}

    def get(self, var: str) -> RasterSource:
        if var not in self._cache:
            self._cache[var] = ensure_source(self.sources_yaml, var, overwrite=self.overwrite)
        return self._cache[var]


def fetch_worldclim(
    *,
    sources_yaml: Dict[str, Any],
    vars_to_get: Sequence[str],
    overwrite: bool = False,
    dry_run: bool = False,
    subset_dir: Optional[Path] = None,
    region: Any = None,
) -> int:
    """Fetch each variable into the cache; optionally write AOI subsets.

    Parameters
    ----------
    sources_yaml : dict
        Parsed sources.yaml.
    vars_to_get : list[str]
        Variables to fetch (e.g., ["elev", "tmax", "prec"]).
    overwrite : bool
        If True, re-download even if cached.
    dry_run : bool
        If True, print planned actions without downloading.
    subset_dir : Path | None
        If set (with `region`), write clipped `<var>_AOI.tif` subsets there.
    """
    for var in vars_to_get:
        url, target = plan(sources_yaml, var)
        if dry_run:
            print(f"[DRY-RUN] {var}: {url} -> {target}")
            continue

        source = ensure_source(sources_yaml, var, overwrite=overwrite)

        if subset_dir is not None and region is not None:
            from ovicov.geo.rasters import clip, write_layer

            out_path = subset_dir / f"{var}_AOI.tif"
            if out_path.exists() and not overwrite:
                print(f"[SKIP] {out_path.name}")
                continue
            written = write_layer(clip(source, region), out_path)
            if written is not None:
                print(f"  - subset: {written}")

    print("[WORLDCLIM] Done")
    return 0


if __name__ == "__main__":
    raise SystemExit(
        "This module is not meant to be run directly. "
        "Use: python -m ovicov.ingest worldclim --vars elev tmax prec"
    )
