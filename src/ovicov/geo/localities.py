#!/usr/bin/env python3
"""localities.py

Attach INEGI census attributes to ovitrap points through locality polygons.

Flow:
1. `census_attributes()` turns the ITER census table into one row per
   locality key with `Densidad_Pob_LOC` and `GRAPROES`.
2. `read_localities()` loads the polygon layer in EPSG:4326 with valid geometry.
3. `join_attributes()` left-joins 1 onto 2 by locality key and keeps only
   polygons with a usable density.
4. `spatial_match()` copies the attributes of the covering polygon onto each
   point. Points never disappear; unmatched ones get NaN.

Notes:
- The locality key is the silent-failure point of the whole pipeline: MUN and
  LOC must be padded to 3 and 4 chars on *both* sides or nothing matches.
  Codes are normalized first so 7, "7", " 7 " and 7.0 all give "007".
- When a point touches more than one retained polygon (slivers along shared
  boundaries), the polygon with the lowest row position wins.
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

from ovicov.errors import JoinKeyMismatch, SchemaError, SourceUnavailable


KeyFn = Callable[[Any, Any], Optional[str]]

MUN_WIDTH = 3
LOC_WIDTH = 4

KEY_COLUMN = "CVE_LOC"
DENSITY_COLUMN = "Densidad_Pob_LOC"
SCHOOLING_COLUMN = "GRAPROES"

CENSUS_COLUMNS: List[str] = ["MUN", "LOC", "POBTOT", "TVIVHAB", "GRAPROES"]
POLYGON_COLUMNS: List[str] = ["CVE_MUN", "CVE_LOC"]


# -----------------------------------------------------------------------------
# Join key
# -----------------------------------------------------------------------------

def _normalize_code(x: Any) -> str:
    """Normalize an administrative code to a bare digit string.

    Handles ints, zero-padded strings, stray whitespace and the "7.0" floats
    pandas produces when a code column has gaps. Returns "" for missing input.
    """
    if x is None:
        return ""
    if not isinstance(x, str) and pd.isna(x):
        return ""
    if isinstance(x, (float, np.floating)) and float(x).is_integer():
        return str(int(x))
    s = str(x).strip()
    if re.fullmatch(r"\d+\.0+", s):
        s = s.split(".", 1)[0]
    return s


def build_join_key(mun_code: Any, loc_code: Any) -> Optional[str]:
    """Locality key: municipality padded to 3 + locality padded to 4.

    >>> build_join_key("7", "12")
    '0070012'
    """
    mun = _normalize_code(mun_code)
    loc = _normalize_code(loc_code)
    if not mun or not loc:
        return None
    return mun.zfill(MUN_WIDTH) + loc.zfill(LOC_WIDTH)


def _keys(frame: pd.DataFrame, mun_col: str, loc_col: str, key_fn: KeyFn) -> List[Optional[str]]:
    return [key_fn(m, l) for m, l in zip(frame[mun_col], frame[loc_col])]


# -----------------------------------------------------------------------------
# Census side
# -----------------------------------------------------------------------------

def census_attributes(
    census: pd.DataFrame,
    *,
    entidad: Optional[int] = None,
    key_fn: KeyFn = build_join_key,
) -> pd.DataFrame:
    """Reduce an ITER census table to CVE_LOC, Densidad_Pob_LOC, GRAPROES.

    Density is POBTOT / TVIVHAB (people per inhabited dwelling). A zero
    dwelling count gives NaN, not inf. INEGI's "*" / "N/D" markers become NaN.
    """
    missing = [c for c in CENSUS_COLUMNS if c not in census.columns]
    if missing:
        raise SchemaError(f"Census table missing columns {missing}. Columns: {list(census.columns)}")

    df = census
    if entidad is not None:
        if "ENTIDAD" not in df.columns:
            raise SchemaError("entidad filter requested but census table has no ENTIDAD column")
        df = df[pd.to_numeric(df["ENTIDAD"], errors="coerce") == int(entidad)]

    pob = pd.to_numeric(df["POBTOT"], errors="coerce").to_numpy(dtype="float64")
    viv = pd.to_numeric(df["TVIVHAB"], errors="coerce").to_numpy(dtype="float64")
    with np.errstate(divide="ignore", invalid="ignore"):
        density = pob / viv
    density[~np.isfinite(density)] = np.nan

    out = pd.DataFrame(
        {
            KEY_COLUMN: _keys(df, "MUN", "LOC", key_fn),
            DENSITY_COLUMN: density,
            SCHOOLING_COLUMN: pd.to_numeric(df["GRAPROES"], errors="coerce").to_numpy(dtype="float64"),
        }
    )
    out = out[out[KEY_COLUMN].notna()]

    dups = out[KEY_COLUMN].duplicated(keep="first")
    if dups.any():
        sample = out.loc[dups, KEY_COLUMN].head(5).tolist()
        print(f"[SOCIO] warning: {int(dups.sum())} duplicate locality keys in census; keeping first ({sample})")
        out = out[~dups]

    return out.reset_index(drop=True)


def read_census(path: Path, *, entidad: Optional[int] = None) -> pd.DataFrame:
    """Read an ITER CSV and reduce it with census_attributes()."""
    if not path.exists():
        raise SourceUnavailable(f"Census CSV not found: {path}")
    # Codes stay strings so padding is never lost to int parsing
    raw = pd.read_csv(path, dtype={"ENTIDAD": str, "MUN": str, "LOC": str}, low_memory=False)
    return census_attributes(raw, entidad=entidad)


# -----------------------------------------------------------------------------
# Polygon side
# -----------------------------------------------------------------------------

def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Fix invalid geometries (self-intersections are common in INEGI layers)."""
    gdf = gdf.copy()
    if hasattr(gdf.geometry, "make_valid"):
        gdf["geometry"] = gdf.geometry.make_valid()
    else:
        # older geopandas: buffer(0) trick
        gdf["geometry"] = gdf.geometry.buffer(0)
    return gdf


def read_localities(path: Path, target_crs: str = "EPSG:4326") -> gpd.GeoDataFrame:
    """Read a locality polygon layer, repair it and reproject to `target_crs`."""
    if not path.exists():
        raise SourceUnavailable(f"Localities layer not found: {path}")
    try:
        gdf = gpd.read_file(path)
    except Exception as e:
        raise SourceUnavailable(f"Could not read localities layer {path}: {e}") from e

    if gdf.empty:
        raise SchemaError(f"Localities layer {path} contains zero features. Wrong file?")
    if gdf.crs is None:
        raise SchemaError(
            f"Localities layer {path} has no CRS (.prj missing or unreadable); "
            "can't reproject safely."
        )
    missing = [c for c in POLYGON_COLUMNS if c not in gdf.columns]
    if missing:
        raise SchemaError(f"Localities layer missing fields {missing}. Columns: {list(gdf.columns)}")

    gdf = _make_valid(gdf)
    gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty].copy()
    return gdf.to_crs(target_crs)


# -----------------------------------------------------------------------------
# Joins
# -----------------------------------------------------------------------------

def join_attributes(
    polygons: gpd.GeoDataFrame,
    attribute_table: pd.DataFrame,
    key_fn: KeyFn = build_join_key,
    *,
    mismatch_threshold: float = 0.9,
) -> gpd.GeoDataFrame:
    """Left-join census attributes onto polygons, then drop polygons with no density.

    Emits JoinKeyMismatch when the share of polygons without a census row is
    at or above `mismatch_threshold`.
    """
    missing = [c for c in POLYGON_COLUMNS if c not in polygons.columns]
    if missing:
        raise SchemaError(f"Polygon layer missing fields {missing}. Columns: {list(polygons.columns)}")
    for col in (KEY_COLUMN, DENSITY_COLUMN):
        if col not in attribute_table.columns:
            raise SchemaError(f"Attribute table missing column '{col}'")

    out = polygons.copy()
    out[KEY_COLUMN] = _keys(out, "CVE_MUN", "CVE_LOC", key_fn)

    attrs = attribute_table.drop_duplicates(KEY_COLUMN, keep="first")
    # attribute table wins on name clashes
    clash = [c for c in attrs.columns if c != KEY_COLUMN and c in out.columns]
    if clash:
        out = out.drop(columns=clash)

    merged = out.merge(attrs, on=KEY_COLUMN, how="left")

    n = len(merged)
    matched = int(merged[KEY_COLUMN].isin(attrs[KEY_COLUMN]).sum())
    if n and (n - matched) / n >= mismatch_threshold:
        warnings.warn(
            f"Only {matched}/{n} polygons matched a census row by {KEY_COLUMN}; "
            f"check MUN/LOC padding (sample polygon keys: {merged[KEY_COLUMN].head(3).tolist()}, "
            f"census keys: {attrs[KEY_COLUMN].head(3).tolist()})",
            JoinKeyMismatch,
            stacklevel=2,
        )

    kept = merged[merged[DENSITY_COLUMN].notna()].reset_index(drop=True)
    print(f"[SOCIO] polygons: {n} total, {matched} matched census, {len(kept)} retained with density")
    return gpd.GeoDataFrame(kept, geometry=polygons.geometry.name, crs=polygons.crs)


def spatial_match(
    point_set: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    retained_columns: Sequence[str],
) -> gpd.GeoDataFrame:
    """Copy `retained_columns` from the polygon covering each point.

    Predicate is `intersects`, so points on a boundary still match. Ties go to
    the polygon with the lowest row position in `polygons`. Row count and order
    of `point_set` are preserved.
    """
    retained = list(retained_columns)
    missing = [c for c in retained if c not in polygons.columns]
    if missing:
        raise SchemaError(f"Polygon layer missing retained columns {missing}")
    clash = [c for c in retained if c in point_set.columns]
    if clash:
        raise SchemaError(f"Point set already has columns {clash}")

    out = point_set.copy()
    n = len(out)
    if n == 0 or len(polygons) == 0:
        for c in retained:
            out[c] = np.nan
        return out

    if polygons.crs != point_set.crs:
        polygons = polygons.to_crs(point_set.crs)

    right = gpd.GeoDataFrame(
        polygons[retained].reset_index(drop=True),
        geometry=polygons.geometry.reset_index(drop=True),
        crs=polygons.crs,
    )
    right["_poly_pos"] = np.arange(len(right))
    left = gpd.GeoDataFrame(
        {"_point_pos": np.arange(n)},
        geometry=point_set.geometry.reset_index(drop=True),
        crs=point_set.crs,
    )

    joined = gpd.sjoin(left, right, how="left", predicate="intersects")
    joined = joined.sort_values(["_point_pos", "_poly_pos"], kind="mergesort", na_position="last")

    n_ties = int(joined["_point_pos"].duplicated().sum())
    first = joined.drop_duplicates("_point_pos", keep="first").set_index("_point_pos").reindex(range(n))

    for c in retained:
        out[c] = first[c].to_numpy()

    n_matched = int(first["_poly_pos"].notna().sum())
    print(f"[SOCIO] points: {n_matched}/{n} inside a retained locality")
    if n_ties:
        print(f"[SOCIO] {n_ties} extra polygon hits resolved by lowest row position")
    return out
