#!/usr/bin/env python3
"""ovicov.config

Shared configuration utilities for ovicov CLI subsystems.

This module provides common helpers used across ovicov.ingest, ovicov.features, etc.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Bboxes are (xmin, ymin, xmax, ymax) in EPSG:4326 everywhere in the code;
  `Region.from_extent` accepts the (lon min, lon max, lat min, lat max) order
  used in field notes.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmin >= xmax or ymin >= ymax:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


@dataclass(frozen=True)
class Region:
    """Axis-aligned area of interest in EPSG:4326 lon/lat."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @classmethod
    def from_extent(cls, lon_min: float, lon_max: float, lat_min: float, lat_max: float) -> "Region":
        return cls(float(lon_min), float(lat_min), float(lon_max), float(lat_max))

    @classmethod
    def from_bbox(cls, bbox: Any) -> "Region":
        b = coerce_bbox(bbox)
        if b is None:
            raise SystemExit(f"Invalid bounds (expected [xmin, ymin, xmax, ymax]): {bbox!r}")
        return cls(*b)

    @property
    def bounds(self) -> BBox:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    def __str__(self) -> str:
        return format_bbox(self.bounds, precision=2)


# Yucatán peninsula and surroundings
YUCATAN = Region.from_extent(-91.5, -87.5, 18.0, 22.5)


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")

# Checkpoint names in pipeline order
STAGE_OUTPUTS: Dict[str, str] = {
    "static": "eggs_data_parcial_covariables",
    "socio": "eggs_data_semi_completa_localidad",
    "monthly": "eggs_data_base_COMPLETA_FINAL_MENSUAL",
}
STAGE_ORDER: List[str] = list(STAGE_OUTPUTS)


# -----------------------------------------------------------------------------
# Pipeline config
# -----------------------------------------------------------------------------

@dataclass
class PipelineConfig:
    """Resolved pipeline.yaml.

    Relative paths are kept as given (resolved against the working directory),
    matching how the rest of the CLI treats config paths.
    """

    samples_csv: Path
    localities_path: Optional[Path]
    census_csv: Optional[Path]
    out_dir: Path = Path("data_covariables")
    region: Region = YUCATAN
    outputs: Dict[str, str] = field(default_factory=lambda: dict(STAGE_OUTPUTS))
    mismatch_threshold: float = 0.9
    entidad: Optional[int] = None

    def checkpoint_path(self, stage: str) -> Path:
        if stage not in self.outputs:
            raise SystemExit(f"Unknown stage: {stage} (expected one of {sorted(self.outputs)})")
        return self.out_dir / f"{self.outputs[stage]}.csv"

    @classmethod
    def from_yaml(cls, data: Dict[str, Any]) -> "PipelineConfig":
        inputs = data.get("inputs")
        if not isinstance(inputs, dict) or not inputs.get("samples_csv"):
            raise SystemExit("pipeline.yaml must have inputs: -> samples_csv")

        def _opt_path(key: str) -> Optional[Path]:
            v = inputs.get(key)
            return Path(str(v)) if v else None

        region = YUCATAN
        if data.get("bounds") is not None:
            region = Region.from_bbox(data["bounds"])

        outputs = dict(STAGE_OUTPUTS)
        cfg_outputs = data.get("outputs")
        if isinstance(cfg_outputs, dict):
            unknown = set(cfg_outputs) - set(STAGE_OUTPUTS)
            if unknown:
                raise SystemExit(f"Unknown stages under outputs: {sorted(unknown)}")
            outputs.update({k: str(v) for k, v in cfg_outputs.items()})

        join = data.get("join") if isinstance(data.get("join"), dict) else {}
        entidad = join.get("entidad")

        return cls(
            samples_csv=Path(str(inputs["samples_csv"])),
            localities_path=_opt_path("localities"),
            census_csv=_opt_path("census_csv"),
            out_dir=Path(str(data.get("out_dir", "data_covariables"))),
            region=region,
            outputs=outputs,
            mismatch_threshold=float(join.get("mismatch_threshold", 0.9)),
            entidad=int(entidad) if entidad is not None else None,
        )
