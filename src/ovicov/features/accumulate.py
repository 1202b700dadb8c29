#!/usr/bin/env python3
"""accumulate.py

Grow the feature table one stage at a time without losing row identity.

- `merge_columns()` appends covariate columns, aligned by `id` when both sides
  carry it, by position otherwise. Any row drift is fatal (AlignmentError).
- `checkpoint()` / `load_checkpoint()` persist a stage's flat table as CSV
  plus a `<stem>.meta.json` sidecar (stage, row count, columns, dtypes,
  provenance); text columns are read back as text, not re-guessed.
  Writes go through a temp file and a rename, so a failed stage never leaves
  a half-written checkpoint behind.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from ovicov.errors import AlignmentError, SchemaError, SourceUnavailable


def merge_columns(base_table: pd.DataFrame, new_columns: pd.DataFrame, key: str = "id") -> pd.DataFrame:
    """Append `new_columns` to `base_table`; the result keeps base row order."""
    if len(new_columns) != len(base_table):
        raise AlignmentError(
            f"Row count mismatch: base has {len(base_table)} rows, new columns have {len(new_columns)}"
        )

    incoming = new_columns
    if key in base_table.columns and key in new_columns.columns:
        if base_table[key].duplicated().any() or new_columns[key].duplicated().any():
            raise AlignmentError(f"Key '{key}' is not unique; can't align by it")
        if set(base_table[key]) != set(new_columns[key]):
            raise AlignmentError(f"Key '{key}' sets differ between base and new columns")
        incoming = new_columns.set_index(key).reindex(base_table[key]).reset_index(drop=True)
    else:
        incoming = new_columns.reset_index(drop=True)

    clash = [c for c in incoming.columns if c in base_table.columns]
    if clash:
        raise SchemaError(f"Columns already present in feature table: {clash}")

    out = pd.concat([base_table.reset_index(drop=True), incoming], axis=1)
    if len(out) != len(base_table):
        raise AlignmentError(f"Merge changed row count: {len(base_table)} -> {len(out)}")
    return out


# -----------------------------------------------------------------------------
# Checkpoints
# -----------------------------------------------------------------------------

def _meta_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}.meta.json")


def _atomic_write_text(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def checkpoint(
    table: pd.DataFrame,
    path: Path,
    *,
    stage: Optional[str] = None,
    provenance: Optional[Dict[str, str]] = None,
) -> Path:
    """Persist a flat table (no geometry) as CSV plus a JSON sidecar."""
    if "geometry" in table.columns:
        raise SchemaError("Checkpoint tables must be flat; drop geometry with to_table() first")

    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write_text(path, table.to_csv(index=False))

    meta = {
        "stage": stage,
        "rows": int(len(table)),
        "columns": [str(c) for c in table.columns],
        "dtypes": {str(c): str(table[c].dtype) for c in table.columns},
        "provenance": dict(provenance or {}),
    }
    _atomic_write_text(_meta_path(path), json.dumps(meta, indent=2))
    print(f"Wrote {len(table)} rows x {table.shape[1]} cols -> {path}")
    return path


def _read_meta(path: Path) -> Optional[dict]:
    meta_path = _meta_path(path)
    if not meta_path.exists():
        return None
    return json.loads(meta_path.read_text(encoding="utf-8"))


def _text_dtype(recorded: str) -> Optional[str]:
    if recorded in ("object", "str"):
        return "str"
    if recorded.startswith("string"):
        return "string"
    return None


def _read_table(path: Path, meta: Optional[dict]) -> pd.DataFrame:
    # Text columns ("0012", "NA") must not be type-guessed; only "" is missing.
    recorded: Dict[str, str] = dict((meta or {}).get("dtypes", {}))
    text = {c: _text_dtype(d) for c, d in recorded.items() if _text_dtype(d)}
    if not text:
        return pd.read_csv(path, float_precision="round_trip")

    table = pd.read_csv(
        path,
        float_precision="round_trip",
        dtype={c: str for c in text},
        keep_default_na=False,
        na_values={c: [""] for c in recorded},
    )
    for c, d in text.items():
        if d == "string" and c in table.columns:
            table[c] = table[c].astype("string")
    return table


def load_checkpoint(path: Path) -> pd.DataFrame:
    """Read a checkpoint back. Re-derive geometry with to_point_set() afterwards."""
    if not path.exists():
        raise SourceUnavailable(f"Checkpoint not found: {path} (run the previous stage first)")
    meta = _read_meta(path)
    table = _read_table(path, meta)

    if meta is not None:
        if int(meta.get("rows", -1)) != len(table):
            raise AlignmentError(f"{path} has {len(table)} rows but its sidecar records {meta.get('rows')}")
        cols: List[str] = list(meta.get("columns", []))
        if cols and cols != [str(c) for c in table.columns]:
            raise AlignmentError(f"{path} columns differ from its sidecar")
    return table


def read_provenance(path: Path) -> Dict[str, str]:
    """Column -> source mapping recorded next to a checkpoint ({} if none)."""
    meta = _read_meta(path)
    if meta is None:
        return {}
    return dict(meta.get("provenance", {}))
