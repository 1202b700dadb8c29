#!/usr/bin/env python3
"""rasters.py

Clip gridded covariates to the region of interest and sample them at points.

One code path serves both single-band layers (elevation, built-up fraction)
and monthly stacks (12 bands of tmax / prec): a source is an ordered list of
GeoTIFFs, and band order is file order followed by in-file band order.

Sampling semantics:
- point-in-cell lookup (floor of the inverse affine), no interpolation
- the region is half-open: xmin <= lon < xmax and ymin < lat <= ymax, so a
  point on the west/north edge is inside and one on the east/south edge is not
- outside the region, outside the clipped grid, or on nodata -> NaN

Required deps: rasterio, numpy, pandas, geopandas
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from affine import Affine
from rasterio.crs import CRS
from rasterio.errors import RasterioError
from rasterio.warp import transform_bounds
from rasterio.windows import Window, from_bounds

from ovicov.config import BBox, Region
from ovicov.errors import RegionMismatch, SchemaError, SourceUnavailable


WGS84 = CRS.from_epsg(4326)

_REDUCERS = {
    "mean": np.nanmean,
    "min": np.nanmin,
    "max": np.nanmax,
}


@dataclass(frozen=True)
class RasterSource:
    """A named covariate backed by one or more GeoTIFFs on disk."""

    name: str
    paths: Tuple[Path, ...]

    @classmethod
    def from_paths(cls, name: str, paths: Sequence[Union[str, Path]]) -> "RasterSource":
        if not paths:
            raise SourceUnavailable(f"Raster source '{name}' has no files")
        return cls(name=name, paths=tuple(Path(p) for p in paths))


@dataclass
class RasterLayer:
    """A clipped raster held in memory. Nodata is NaN."""

    name: str
    data: np.ndarray  # (bands, rows, cols), float64
    transform: Affine
    crs: Any

    @property
    def count(self) -> int:
        return int(self.data.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.data.shape[1] == 0 or self.data.shape[2] == 0


SourceLike = Union[RasterSource, str, Path]


def _as_source(source: SourceLike) -> RasterSource:
    if isinstance(source, RasterSource):
        return source
    p = Path(source)
    return RasterSource.from_paths(p.stem, [p])


def _is_wgs84(crs: Any) -> bool:
    return CRS.from_user_input(crs) == WGS84


def _region_in_crs(region: Region, crs: Any) -> BBox:
    if _is_wgs84(crs):
        return region.bounds
    # transform_bounds densifies edges so curved projections don't clip corners
    return tuple(transform_bounds(WGS84, crs, *region.bounds, densify_pts=21))  # type: ignore


def _intersect(a: BBox, b: BBox) -> Optional[BBox]:
    xmin, ymin = max(a[0], b[0]), max(a[1], b[1])
    xmax, ymax = min(a[2], b[2]), min(a[3], b[3])
    if xmin >= xmax or ymin >= ymax:
        return None
    return (xmin, ymin, xmax, ymax)


def _safe_round_window(win: Window, width: int, height: int) -> Window:
    """Expand a fractional window to whole cells and keep it inside the raster.

    Offsets go down, far edges go up, so every cell the bbox touches is kept.
    """
    col0 = max(int(math.floor(win.col_off)), 0)
    row0 = max(int(math.floor(win.row_off)), 0)
    col1 = min(int(math.ceil(win.col_off + win.width)), width)
    row1 = min(int(math.ceil(win.row_off + win.height)), height)
    return Window(col0, row0, max(col1 - col0, 0), max(row1 - row0, 0))


def _read_clipped(path: Path, region: Region) -> Tuple[np.ndarray, Affine, Any]:
    if not path.exists():
        raise SourceUnavailable(f"Raster not found: {path}")
    try:
        with rasterio.open(path) as src:
            if src.crs is None:
                raise SourceUnavailable(f"Raster has no CRS: {path}")
            bbox = _region_in_crs(region, src.crs)
            inter = _intersect(bbox, tuple(src.bounds))  # type: ignore
            if inter is None:
                empty = np.empty((src.count, 0, 0), dtype="float64")
                return empty, src.transform, src.crs

            win = from_bounds(*inter, transform=src.transform)
            win = _safe_round_window(win, src.width, src.height)

            data = src.read(window=win, masked=True)
            arr = np.ma.filled(data.astype("float64"), np.nan)
            return arr, src.window_transform(win), src.crs
    except RasterioError as e:
        raise SourceUnavailable(f"Could not read raster {path}: {e}") from e


def clip(source: SourceLike, region: Region) -> RasterLayer:
    """Clip every band of `source` to `region`. Never touches the files."""
    src = _as_source(source)

    parts = [_read_clipped(p, region) for p in src.paths]
    arrays = [a for a, _, _ in parts]
    transform, crs = parts[0][1], parts[0][2]

    for path, (arr, t, c) in zip(src.paths[1:], parts[1:]):
        if arr.shape[1:] != arrays[0].shape[1:] or t != transform or c != crs:
            raise SourceUnavailable(
                f"Files of raster source '{src.name}' do not share one grid "
                f"({src.paths[0].name} vs {path.name})"
            )

    data = np.concatenate(arrays, axis=0)
    layer = RasterLayer(name=src.name, data=data, transform=transform, crs=crs)
    if layer.is_empty:
        warnings.warn(
            f"Region {region} does not intersect raster '{src.name}'; every point will be missing",
            RegionMismatch,
            stacklevel=2,
        )
    return layer


def reduce_bands(layer: RasterLayer, how: str) -> RasterLayer:
    """Collapse all bands into one with a NaN-aware per-cell reducer."""
    if how not in _REDUCERS:
        raise SchemaError(f"Unknown band reducer '{how}' (expected one of {sorted(_REDUCERS)})")
    with warnings.catch_warnings():
        # all-NaN cells are expected (ocean); they stay NaN
        warnings.simplefilter("ignore", RuntimeWarning)
        data = _REDUCERS[how](layer.data, axis=0, keepdims=True)
    return RasterLayer(name=layer.name, data=data, transform=layer.transform, crs=layer.crs)


def _xy(point_set: gpd.GeoDataFrame, crs: Any) -> Tuple[np.ndarray, np.ndarray]:
    pts = point_set if point_set.crs == crs else point_set.to_crs(crs)
    return pts.geometry.x.to_numpy(dtype="float64"), pts.geometry.y.to_numpy(dtype="float64")


def sample_layer(layer: RasterLayer, point_set: gpd.GeoDataFrame, region: Region) -> np.ndarray:
    """Return an (n_points, bands) array of cell values; NaN where undefined."""
    n = len(point_set)
    out = np.full((n, layer.count), np.nan, dtype="float64")
    if n == 0 or layer.is_empty:
        return out
    if point_set.crs is None:
        raise SchemaError("Point set has no CRS; build it with to_point_set()")

    lon, lat = _xy(point_set, WGS84)
    with np.errstate(invalid="ignore"):
        inside = (
            np.isfinite(lon) & np.isfinite(lat)
            & (lon >= region.xmin) & (lon < region.xmax)
            & (lat > region.ymin) & (lat <= region.ymax)
        )

    if _is_wgs84(layer.crs):
        xs, ys = lon, lat
    else:
        xs, ys = _xy(point_set, layer.crs)

    inv = ~layer.transform
    with np.errstate(invalid="ignore"):
        cols = inv.a * xs + inv.b * ys + inv.c
        rows = inv.d * xs + inv.e * ys + inv.f
        ci = np.floor(cols)
        ri = np.floor(rows)
        _, height, width = layer.data.shape
        ok = inside & (ci >= 0) & (ci < width) & (ri >= 0) & (ri < height)

    out[ok, :] = layer.data[:, ri[ok].astype(np.int64), ci[ok].astype(np.int64)].T
    return out


def _report(name: str, frame: pd.DataFrame) -> None:
    missing = int(frame.isna().any(axis=1).sum())
    print(f"  - {name}: {len(frame) - missing}/{len(frame)} points sampled, {missing} missing")


def sample_single(
    source: SourceLike,
    region: Region,
    point_set: gpd.GeoDataFrame,
    output_name: str,
    reduce: Optional[str] = None,
) -> pd.DataFrame:
    """Sample a single-band covariate into one column named `output_name`.

    A multi-band source is only accepted with a `reduce` rule ("mean", "min",
    "max") applied per cell before sampling.
    """
    layer = clip(source, region)
    if layer.count != 1:
        if reduce is None:
            raise SchemaError(
                f"Raster '{layer.name}' has {layer.count} bands; pass reduce= or use sample_multiband()"
            )
        layer = reduce_bands(layer, reduce)

    values = sample_layer(layer, point_set, region)[:, 0]
    frame = pd.DataFrame({output_name: values}, index=point_set.index)
    _report(output_name, frame)
    return frame


def band_names(name_prefix: str, band_count: int) -> list:
    return [f"{name_prefix}_{i:02d}" for i in range(1, band_count + 1)]


def sample_multiband(
    source: SourceLike,
    region: Region,
    point_set: gpd.GeoDataFrame,
    name_prefix: str,
    band_count: int = 12,
) -> pd.DataFrame:
    """Sample every band in one pass into `{name_prefix}_01..{band_count}`.

    Columns follow source band order (calendar months for WorldClim stacks).
    """
    layer = clip(source, region)
    if layer.count != band_count:
        raise SchemaError(f"Raster '{layer.name}' has {layer.count} bands, expected {band_count}")

    values = sample_layer(layer, point_set, region)
    frame = pd.DataFrame(values, columns=band_names(name_prefix, band_count), index=point_set.index)
    _report(f"{name_prefix}_01..{band_count:02d}", frame)
    return frame


def write_layer(layer: RasterLayer, out_path: Path) -> Optional[Path]:
    """Write a clipped layer as a small tiled GeoTIFF (AOI subset)."""
    if layer.is_empty or bool(np.isnan(layer.data).all()):
        print(f"  - warning: {layer.name} subset is all nodata; skipping write")
        return None

    profile = {
        "driver": "GTiff",
        "height": layer.data.shape[1],
        "width": layer.data.shape[2],
        "count": layer.count,
        "dtype": "float32",
        "crs": layer.crs,
        "transform": layer.transform,
        "nodata": np.nan,
        "tiled": True,
        "compress": "deflate",
    }
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(layer.data.astype("float32"))
    return out_path
