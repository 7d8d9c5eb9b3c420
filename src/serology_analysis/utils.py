from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

import pandas as pd


@dataclass(frozen=True)
class PipelineDirs:
    core_dir: Path
    audit_dir: Path
    tables_dir: Path
    plots_dir: Path
    figures_dir: Path
    manifests_dir: Path


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def sha256_file(path: Path, chunk_bytes: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_bytes)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_MULTI_UNDERSCORE = re.compile(r"_+")


def normalize_label(value: object) -> str:
    s = str(value).strip().lower()
    s = _NON_ALNUM.sub("_", s)
    s = _MULTI_UNDERSCORE.sub("_", s).strip("_")
    return s


def is_missing(value: object) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_date_series(series: pd.Series) -> tuple[pd.Series, pd.Series]:
    raw = series.astype("string")
    parsed = pd.to_datetime(raw, errors="coerce")
    return parsed, raw


def add_provenance(df: pd.DataFrame, source: str) -> pd.DataFrame:
    df = df.copy()
    df["source_file"] = source
    df["source_row"] = (pd.RangeIndex(start=1, stop=len(df) + 1, step=1)).astype("int64")
    return df


def require_columns(df: pd.DataFrame, cols: list[str], *, label: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{label} is missing required columns: {missing}")


def require_rows(df: pd.DataFrame, *, label: str) -> None:
    if df.empty:
        raise ValueError(f"{label} is empty")
