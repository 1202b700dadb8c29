#!/usr/bin/env python3
"""stages.py

The three enrichment stages and the checkpointed driver that chains them.

    raw samples -> static -> socio -> monthly

Each stage is a plain table-in/table-out function. The driver feeds it the
previous stage's checkpoint (geometry re-derived from lon/lat), checks that
no sample was gained or lost, and writes the stage's own checkpoint. A stage
that raises writes nothing, so the previous checkpoint stays the latest
valid one.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import geopandas as gpd
import pandas as pd

from ovicov.config import STAGE_ORDER, PipelineConfig, Region
from ovicov.errors import AlignmentError, SchemaError, SourceUnavailable
from ovicov.features.accumulate import checkpoint, load_checkpoint, merge_columns, read_provenance
from ovicov.geo.localities import (
    DENSITY_COLUMN,
    SCHOOLING_COLUMN,
    join_attributes,
    read_census,
    read_localities,
    spatial_match,
)
from ovicov.geo.points import read_samples, to_point_set, to_table
from ovicov.geo.rasters import RasterSource, band_names, sample_multiband, sample_single


SAMPLE_COLUMNS: List[str] = ["id", "year", "week", "lon", "lat", "eggs"]

# (provider var, output column, band reducer)
STATIC_COVARIATES: List[Tuple[str, str, Optional[str]]] = [
    ("elev", "elev_srtm", None),
    ("built", "built_frac", None),
    ("tavg", "temp_media_hist", "mean"),
]

# (provider var, column prefix)
MONTHLY_COVARIATES: List[Tuple[str, str]] = [
    ("tmax", "tmax"),
    ("prec", "prcp"),
]

SOCIO_COLUMNS: List[str] = [DENSITY_COLUMN, SCHOOLING_COLUMN]


class CovariateProvider(Protocol):
    def get(self, var: str) -> RasterSource:
        ...


def _require(table: pd.DataFrame, cols: Sequence[str], stage: str) -> None:
    missing = [c for c in cols if c not in table.columns]
    if missing:
        raise SchemaError(f"{stage} stage input missing columns {missing}")


def _keyed(values: pd.DataFrame, points: gpd.GeoDataFrame) -> pd.DataFrame:
    """Pair sampled columns with the sample ids they were sampled for."""
    return pd.concat([pd.DataFrame({"id": points["id"]}), values], axis=1)


def check_rows(before: pd.DataFrame, after: pd.DataFrame, stage: str) -> None:
    if len(before) != len(after):
        raise AlignmentError(f"{stage} stage changed row count: {len(before)} -> {len(after)}")
    if "id" in before.columns and list(before["id"]) != list(after["id"]):
        raise AlignmentError(f"{stage} stage changed sample ids or their order")


# -----------------------------------------------------------------------------
# Stages
# -----------------------------------------------------------------------------

def static_stage(samples: pd.DataFrame, provider: CovariateProvider, region: Region) -> pd.DataFrame:
    """Elevation, built-up fraction and historical mean temperature."""
    _require(samples, SAMPLE_COLUMNS, "static")
    points = to_point_set(samples)

    table = samples
    for var, col, reduce in STATIC_COVARIATES:
        values = sample_single(provider.get(var), region, points, col, reduce=reduce)
        table = merge_columns(table, _keyed(values, points), key="id")

    return table[SAMPLE_COLUMNS + [col for _, col, _ in STATIC_COVARIATES]].copy()


def socio_stage(
    table: pd.DataFrame,
    localities: gpd.GeoDataFrame,
    census: pd.DataFrame,
    *,
    mismatch_threshold: float = 0.9,
) -> pd.DataFrame:
    """Population density and mean schooling of the covering locality."""
    _require(table, ["id", "lon", "lat"], "socio")
    points = to_point_set(table)
    polygons = join_attributes(localities, census, mismatch_threshold=mismatch_threshold)
    matched = to_table(spatial_match(points, polygons, SOCIO_COLUMNS))
    return merge_columns(table, matched[["id"] + SOCIO_COLUMNS], key="id")


def monthly_stage(table: pd.DataFrame, provider: CovariateProvider, region: Region) -> pd.DataFrame:
    """Twelve monthly bands each of maximum temperature and precipitation."""
    _require(table, ["id", "lon", "lat"], "monthly")
    points = to_point_set(table)

    out = table
    for var, prefix in MONTHLY_COVARIATES:
        values = sample_multiband(provider.get(var), region, points, prefix, band_count=12)
        out = merge_columns(out, _keyed(values, points), key="id")
    return out


# -----------------------------------------------------------------------------
# Provenance
# -----------------------------------------------------------------------------

def stage_provenance(stage: str) -> Dict[str, str]:
    """Which source each column added by `stage` came from."""
    if stage == "static":
        prov = {c: "samples" for c in SAMPLE_COLUMNS}
        prov.update({col: f"raster:{var}" for var, col, _ in STATIC_COVARIATES})
        return prov
    if stage == "socio":
        return {c: "census+localities" for c in SOCIO_COLUMNS}
    if stage == "monthly":
        prov: Dict[str, str] = {}
        for var, prefix in MONTHLY_COVARIATES:
            prov.update({c: f"raster:{var}" for c in band_names(prefix, 12)})
        return prov
    raise SystemExit(f"Unknown stage: {stage}")


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------

def _stage_input(cfg: PipelineConfig, stage: str) -> pd.DataFrame:
    idx = STAGE_ORDER.index(stage)
    if idx == 0:
        return read_samples(cfg.samples_csv)
    return load_checkpoint(cfg.checkpoint_path(STAGE_ORDER[idx - 1]))


def run_stage(cfg: PipelineConfig, stage: str, provider: Optional[CovariateProvider] = None) -> pd.DataFrame:
    """Run one stage from its persisted input to its persisted output."""
    if stage not in STAGE_ORDER:
        raise SystemExit(f"Unknown stage: {stage} (expected one of {STAGE_ORDER})")

    table = _stage_input(cfg, stage)
    print(f"[{stage.upper()}] {len(table)} samples, region {cfg.region}")

    if stage in ("static", "monthly"):
        if provider is None:
            raise SourceUnavailable(f"{stage} stage needs a covariate provider")
        fn = static_stage if stage == "static" else monthly_stage
        out = fn(table, provider, cfg.region)
    else:
        if cfg.localities_path is None or cfg.census_csv is None:
            raise SourceUnavailable("socio stage needs inputs.localities and inputs.census_csv in pipeline.yaml")
        out = socio_stage(
            table,
            read_localities(cfg.localities_path),
            read_census(cfg.census_csv, entidad=cfg.entidad),
            mismatch_threshold=cfg.mismatch_threshold,
        )

    check_rows(table, out, stage)

    provenance: Dict[str, str] = {}
    idx = STAGE_ORDER.index(stage)
    if idx > 0:
        provenance.update(read_provenance(cfg.checkpoint_path(STAGE_ORDER[idx - 1])))
    provenance.update(stage_provenance(stage))
    provenance = {c: provenance.get(c, "passthrough") for c in out.columns}

    checkpoint(out, cfg.checkpoint_path(stage), stage=stage, provenance=provenance)
    return out


def run_pipeline(
    cfg: PipelineConfig,
    provider: Optional[CovariateProvider] = None,
    stages: Sequence[str] = STAGE_ORDER,
) -> pd.DataFrame:
    """Run `stages` in pipeline order; returns the last stage's table."""
    ordered = [s for s in STAGE_ORDER if s in stages]
    unknown = set(stages) - set(STAGE_ORDER)
    if unknown:
        raise SystemExit(f"Unknown stages: {sorted(unknown)}")

    out = pd.DataFrame()
    for stage in ordered:
        out = run_stage(cfg, stage, provider)
    return out
