#!/usr/bin/env python3

from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from ovicov.errors import AlignmentError, SchemaError, SourceUnavailable
from ovicov.features.accumulate import checkpoint, load_checkpoint, merge_columns, read_provenance
from ovicov.geo.points import ingest_samples, to_point_set, to_table


def test_merge_aligns_by_id(samples):
    new = pd.DataFrame({"id": [3, 1, 2], "elev_srtm": [np.nan, 10.0, 20.0]})
    out = merge_columns(samples, new, key="id")
    assert out["id"].tolist() == [1, 2, 3]
    assert out["elev_srtm"].tolist()[:2] == [10.0, 20.0]
    assert np.isnan(out["elev_srtm"].iloc[2])
    assert list(out.columns) == list(samples.columns) + ["elev_srtm"]


def test_merge_by_position_without_key(samples):
    new = pd.DataFrame({"x": [1, 2, 3]}, index=[10, 11, 12])
    out = merge_columns(samples, new)
    assert out["x"].tolist() == [1, 2, 3]
    assert len(out) == 3


def test_merge_row_count_mismatch(samples):
    with pytest.raises(AlignmentError):
        merge_columns(samples, pd.DataFrame({"x": [1, 2]}))


def test_merge_id_set_mismatch(samples):
    with pytest.raises(AlignmentError):
        merge_columns(samples, pd.DataFrame({"id": [1, 2, 4], "x": [1, 2, 3]}))
    with pytest.raises(AlignmentError):
        merge_columns(samples, pd.DataFrame({"id": [1, 1, 2], "x": [1, 2, 3]}))


def test_merge_column_clash(samples):
    with pytest.raises(SchemaError):
        merge_columns(samples, pd.DataFrame({"id": [1, 2, 3], "eggs": [0, 0, 0]}))


def test_checkpoint_roundtrip_is_idempotent(tmp_path, samples):
    table = samples.assign(elev_srtm=[12.5, np.nan, 0.1 + 0.2], tmax_01=[31.2, 30.0, np.nan])
    flat = to_table(to_point_set(table))

    path = checkpoint(flat, tmp_path / "stage.csv", stage="static", provenance={"elev_srtm": "raster:elev"})
    back = to_table(to_point_set(load_checkpoint(path)))

    pd.testing.assert_frame_equal(back, flat)
    # a second trip changes nothing either
    path2 = checkpoint(back, tmp_path / "stage2.csv")
    pd.testing.assert_frame_equal(load_checkpoint(path2), flat)


def test_checkpoint_keeps_text_columns_as_text(tmp_path):
    raw = pd.DataFrame(
        {
            "x": [-89.25, -89.0, -88.5],
            "y": [20.75, 20.5, 21.0],
            "year": [2020, 2020, 2021],
            "week": [10, 11, 12],
            "eggs": [120, 0, np.nan],
            "trap": ["0012", "NA", "T-7"],
        }
    )
    flat = to_table(to_point_set(ingest_samples(raw)))

    back = load_checkpoint(checkpoint(flat, tmp_path / "stage.csv"))
    assert back["trap"].tolist() == ["0012", "NA", "T-7"]
    assert np.isnan(back["eggs"].iloc[2])
    pd.testing.assert_frame_equal(back, flat)

    meta = json.loads((tmp_path / "stage.meta.json").read_text())
    assert meta["dtypes"]["eggs"] == "float64"


def test_checkpoint_sidecar(tmp_path, samples):
    path = checkpoint(samples, tmp_path / "out" / "t.csv", stage="static", provenance={"eggs": "samples"})
    meta = json.loads((tmp_path / "out" / "t.meta.json").read_text())
    assert meta["rows"] == 3
    assert meta["stage"] == "static"
    assert meta["columns"] == list(samples.columns)
    assert read_provenance(path) == {"eggs": "samples"}
    # no temp files left behind
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["t.csv", "t.meta.json"]


def test_load_checkpoint_detects_drift(tmp_path, samples):
    path = checkpoint(samples, tmp_path / "t.csv")
    samples.iloc[:2].to_csv(path, index=False)
    with pytest.raises(AlignmentError):
        load_checkpoint(path)


def test_load_checkpoint_missing(tmp_path):
    with pytest.raises(SourceUnavailable):
        load_checkpoint(tmp_path / "absent.csv")


def test_checkpoint_rejects_geometry(tmp_path, samples):
    with pytest.raises(SchemaError):
        checkpoint(to_point_set(samples), tmp_path / "g.csv")
