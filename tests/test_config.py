#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import pytest

from ovicov.config import (
    YUCATAN,
    PipelineConfig,
    Region,
    coerce_bbox,
    format_bbox,
    load_yaml,
)


def test_region_from_extent_order():
    r = Region.from_extent(-91.5, -87.5, 18.0, 22.5)
    assert r.bounds == (-91.5, 18.0, -87.5, 22.5)
    assert r == YUCATAN


def test_coerce_bbox():
    assert coerce_bbox([-91.5, 18, -87.5, 22.5]) == (-91.5, 18.0, -87.5, 22.5)
    assert coerce_bbox(None) is None
    assert coerce_bbox([1, 2, 3]) is None
    assert coerce_bbox(["a", 2, 3, 4]) is None
    # inverted
    assert coerce_bbox([-87.5, 18, -91.5, 22.5]) is None


def test_format_bbox():
    assert format_bbox((-91.5, 18.0, -87.5, 22.5), precision=1) == "[-91.5, 18.0, -87.5, 22.5]"


def test_load_yaml_strict(tmp_path):
    with pytest.raises(SystemExit):
        load_yaml(tmp_path / "missing.yaml")
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n")
    with pytest.raises(SystemExit):
        load_yaml(p)


def test_pipeline_config_defaults():
    cfg = PipelineConfig.from_yaml({"inputs": {"samples_csv": "eggs_data.csv"}})
    assert cfg.region == YUCATAN
    assert cfg.localities_path is None
    assert cfg.checkpoint_path("static") == Path("data_covariables/eggs_data_parcial_covariables.csv")
    assert cfg.checkpoint_path("monthly").name == "eggs_data_base_COMPLETA_FINAL_MENSUAL.csv"
    assert cfg.mismatch_threshold == 0.9
    assert cfg.entidad is None


def test_pipeline_config_from_repo_yaml():
    root = Path(__file__).resolve().parents[1]
    cfg = PipelineConfig.from_yaml(load_yaml(root / "config" / "pipeline.yaml"))
    assert cfg.region.bounds == (-91.5, 18.0, -87.5, 22.5)
    assert cfg.census_csv == Path("data_inegi/ITER_CENSO_2020.csv")


def test_pipeline_config_errors():
    with pytest.raises(SystemExit):
        PipelineConfig.from_yaml({})
    with pytest.raises(SystemExit):
        PipelineConfig.from_yaml({"inputs": {"samples_csv": "a.csv"}, "bounds": [0, 0, 0, 0]})
    with pytest.raises(SystemExit):
        PipelineConfig.from_yaml({"inputs": {"samples_csv": "a.csv"}, "outputs": {"weekly": "x"}})
    cfg = PipelineConfig.from_yaml({"inputs": {"samples_csv": "a.csv"}})
    with pytest.raises(SystemExit):
        cfg.checkpoint_path("weekly")
