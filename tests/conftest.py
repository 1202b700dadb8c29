#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import geopandas as gpd  # noqa: E402
import rasterio  # noqa: E402
from rasterio.transform import from_origin  # noqa: E402
from shapely.geometry import box  # noqa: E402

from ovicov.config import YUCATAN  # noqa: E402


# 0.5° cells exactly covering the Yucatán region: 8 cols x 9 rows
YUC_TRANSFORM = from_origin(-91.5, 22.5, 0.5, 0.5)
YUC_SHAPE = (9, 8)


def write_raster(
    path: Path,
    data: np.ndarray,
    transform=YUC_TRANSFORM,
    crs: str = "EPSG:4326",
    nodata: Optional[float] = None,
) -> Path:
    """Write a (bands, rows, cols) or (rows, cols) array as a GeoTIFF."""
    arr = np.asarray(data, dtype="float32")
    if arr.ndim == 2:
        arr = arr[np.newaxis, ...]
    profile = {
        "driver": "GTiff",
        "height": arr.shape[1],
        "width": arr.shape[2],
        "count": arr.shape[0],
        "dtype": "float32",
        "crs": crs,
        "transform": transform,
    }
    if nodata is not None:
        profile["nodata"] = nodata
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(arr)
    return path


def constant(value: float, bands: int = 1) -> np.ndarray:
    return np.full((bands,) + YUC_SHAPE, value, dtype="float32")


def band_stack(count: int = 12) -> np.ndarray:
    """Band k (1-based) is filled with k."""
    return np.stack([np.full(YUC_SHAPE, k, dtype="float32") for k in range(1, count + 1)])


@pytest.fixture
def region():
    return YUCATAN


@pytest.fixture
def samples() -> pd.DataFrame:
    """Three ingested samples: inside, on the west edge, outside the region."""
    return pd.DataFrame(
        {
            "id": [1, 2, 3],
            "year": [2020, 2020, 2021],
            "week": [10, 11, 12],
            "lon": [-89.25, -91.5, -95.0],
            "lat": [20.75, 20.25, 20.75],
            "eggs": [120, 0, 35],
        }
    )


@pytest.fixture
def localities() -> gpd.GeoDataFrame:
    """Two side-by-side locality squares plus one with no census row."""
    return gpd.GeoDataFrame(
        {
            "CVE_MUN": [50, 50, 41],
            "CVE_LOC": ["1", "12", "1"],
            "NOMGEO": ["Mérida", "Caucel", "Progreso"],
        },
        geometry=[
            box(-89.5, 20.5, -89.0, 21.0),
            box(-89.0, 20.5, -88.5, 21.0),
            box(-90.0, 21.0, -89.5, 21.5),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture
def census() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "ENTIDAD": ["31", "31", "31"],
            "MUN": ["050", "50", "7"],
            "LOC": ["0001", "12", "12"],
            "POBTOT": [1000, 300, 50],
            "TVIVHAB": [250, 0, 10],
            "GRAPROES": ["11.2", "9.1", "*"],
        }
    )
