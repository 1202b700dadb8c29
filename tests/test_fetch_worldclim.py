#!/usr/bin/env python3

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from conftest import constant, write_raster
from ovicov.errors import SourceUnavailable
from ovicov.ingest import fetch_worldclim as fw


def _serve(tmp_path: Path) -> dict:
    """Fake remote: a monthly zip and a single tif under a file:// base_url."""
    remote = tmp_path / "remote"
    staging = tmp_path / "staging"

    zip_path = remote / "wc2.1_30s_tmax.zip"
    zip_path.parent.mkdir(parents=True)
    with zipfile.ZipFile(zip_path, "w") as zf:
        # written out of order on purpose
        for k in (12, 3, 1, 10, 2, 11, 4, 5, 6, 7, 8, 9):
            tif = write_raster(staging / f"wc2.1_30s_tmax_{k:02d}.tif", constant(k))
            zf.write(tif, arcname=tif.name)

    write_raster(remote / "WorldCover_built_30s.tif", constant(0.5))

    return {
        "sources": {
            "worldclim": {
                "base_url": remote.as_uri(),
                "url_template": "{base_url}/wc2.1_{res}_{var}.zip",
                "res": "30s",
                "vars": ["tmax"],
                "cache_dir": str(tmp_path / "cache" / "worldclim"),
            },
            "worldcover": {
                "base_url": remote.as_uri(),
                "url_template": "{base_url}/WorldCover_{var}_{res}.tif",
                "res": "30s",
                "vars": ["built"],
                "cache_dir": str(tmp_path / "cache" / "landuse"),
            },
        }
    }


def test_band_sort_key_is_numeric():
    names = [Path("x_10.tif"), Path("x_2.tif"), Path("x_1.tif"), Path("x_12.tif")]
    assert [p.name for p in sorted(names, key=fw._band_sort_key)] == ["x_1.tif", "x_2.tif", "x_10.tif", "x_12.tif"]


def test_plan_targets(tmp_path):
    cfg = _serve(tmp_path)
    url, target = fw.plan(cfg, "tmax")
    assert url.endswith("/wc2.1_30s_tmax.zip")
    assert target.name == "wc2.1_30s_tmax"
    url, target = fw.plan(cfg, "built")
    assert target.name == "WorldCover_built_30s.tif"
    with pytest.raises(SourceUnavailable):
        fw.plan(cfg, "wind")


def test_provider_downloads_extracts_and_orders(tmp_path):
    cfg = _serve(tmp_path)
    source = fw.WorldClimProvider(cfg).get("tmax")

    assert source.name == "tmax"
    assert [p.name for p in source.paths] == [f"wc2.1_30s_tmax_{k:02d}.tif" for k in range(1, 13)]
    assert all(p.exists() for p in source.paths)

    built = fw.WorldClimProvider(cfg).get("built")
    assert built.paths[0].exists()


def test_cache_is_reused(tmp_path, capsys):
    cfg = _serve(tmp_path)
    first = fw.ensure_source(cfg, "tmax")

    # remote disappears; cached copy still serves
    for p in (tmp_path / "remote").iterdir():
        p.unlink()
    again = fw.ensure_source(cfg, "tmax")
    assert again.paths == first.paths
    assert "[SKIP]" in capsys.readouterr().out

    with pytest.raises(SourceUnavailable):
        fw.ensure_source(cfg, "tmax", overwrite=True)


def test_download_failure_leaves_no_partial_file(tmp_path):
    cfg = _serve(tmp_path)
    (tmp_path / "remote" / "WorldCover_built_30s.tif").unlink()
    with pytest.raises(SourceUnavailable):
        fw.ensure_source(cfg, "built")
    cache = tmp_path / "cache" / "landuse"
    assert not any(cache.iterdir())


def test_corrupt_archive(tmp_path):
    cfg = _serve(tmp_path)
    (tmp_path / "remote" / "wc2.1_30s_tmax.zip").write_bytes(b"not a zip")
    with pytest.raises(SourceUnavailable):
        fw.ensure_source(cfg, "tmax")


def test_fetch_worldclim_dry_run(tmp_path, capsys):
    cfg = _serve(tmp_path)
    assert fw.fetch_worldclim(sources_yaml=cfg, vars_to_get=["tmax", "built"], dry_run=True) == 0
    out = capsys.readouterr().out
    assert out.count("[DRY-RUN]") == 2
    assert not (tmp_path / "cache").exists()


def test_fetch_worldclim_writes_subsets(tmp_path, region):
    cfg = _serve(tmp_path)
    subsets = tmp_path / "subsets"
    fw.fetch_worldclim(sources_yaml=cfg, vars_to_get=["built"], subset_dir=subsets, region=region)
    assert (subsets / "built_AOI.tif").exists()
