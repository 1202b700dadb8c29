#!/usr/bin/env python3
"""points.py

Conversions between flat sample tables and geometry-bearing point sets.

Geometry never survives a trip through a flat file: `to_table` drops it and
every stage re-derives it from `lon`/`lat` with `to_point_set` after loading a
checkpoint. Keep the coordinate columns around for that reason.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import geopandas as gpd
import pandas as pd
from pandas.api.types import is_numeric_dtype

from ovicov.errors import SchemaError, SourceUnavailable


# Raw ovitrap export columns (before renaming)
RAW_COLUMNS: List[str] = ["x", "y", "year", "week", "eggs"]


def _numeric_column(table: pd.DataFrame, col: str) -> pd.Series:
    if col not in table.columns:
        raise SchemaError(f"Missing coordinate column '{col}'. Columns: {list(table.columns)}")
    s = table[col]
    if is_numeric_dtype(s):
        return s.astype(float)
    # Object columns are accepted only if every present value parses as a number
    coerced = pd.to_numeric(s, errors="coerce")
    bad = coerced.isna() & s.notna()
    if bad.any():
        sample = s[bad].head(3).tolist()
        raise SchemaError(f"Non-numeric values in coordinate column '{col}': {sample}")
    return coerced.astype(float)


def to_point_set(
    table: pd.DataFrame,
    lon_col: str = "lon",
    lat_col: str = "lat",
    crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Attach point geometry built from `lon_col`/`lat_col` under `crs`.

    All columns (coordinates included) are carried through in the same order;
    the input table is not modified. Rows with a missing coordinate get a
    NaN point, which matches no polygon and samples as missing downstream.
    """
    xs = _numeric_column(table, lon_col)
    ys = _numeric_column(table, lat_col)
    geometry = gpd.points_from_xy(xs, ys, crs=crs)
    return gpd.GeoDataFrame(table.copy(), geometry=geometry, crs=crs)


def to_table(point_set: gpd.GeoDataFrame) -> pd.DataFrame:
    """Drop geometry and return a plain DataFrame (lossy for geometry)."""
    geom_col = point_set.geometry.name
    out = pd.DataFrame(point_set.drop(columns=geom_col))
    return out.reset_index(drop=True)


def ingest_samples(raw: pd.DataFrame) -> pd.DataFrame:
    """Normalize a raw ovitrap table: x/y -> lon/lat, plus a 1-based `id`.

    Extra columns pass through untouched, after the core ones.
    """
    missing = [c for c in RAW_COLUMNS if c not in raw.columns]
    if missing:
        raise SchemaError(f"Raw samples missing columns {missing}. Columns: {list(raw.columns)}")
    if "id" in raw.columns:
        raise SchemaError("Raw samples already carry an 'id' column; ids are assigned at ingestion.")
    if "lon" in raw.columns or "lat" in raw.columns:
        raise SchemaError("Raw samples carry both x/y and lon/lat columns; refusing to guess.")

    out = raw.rename(columns={"x": "lon", "y": "lat"}).reset_index(drop=True)
    # Validate coordinates now rather than at the first spatial op
    _numeric_column(out, "lon")
    _numeric_column(out, "lat")
    out.insert(0, "id", range(1, len(out) + 1))
    return out


def read_samples(path: Path) -> pd.DataFrame:
    """Read the raw samples CSV and ingest it."""
    if not path.exists():
        raise SourceUnavailable(f"Samples CSV not found: {path}")
    return ingest_samples(pd.read_csv(path))
