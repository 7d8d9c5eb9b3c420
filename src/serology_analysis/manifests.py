from __future__ import annotations

import json
import platform
import sys
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path

import pandas as pd

from serology_analysis.derived import POSITIVITY_THRESHOLDS
from serology_analysis.infection import INFECTION_RULES
from serology_analysis.utils import sha256_file
from serology_analysis.windows import BASELINE_MAX_DAYS_AFTER_DOSE1, POST_DOSE_MAX_DAYS, POST_DOSE_MIN_DAYS

SIGNATURE_PACKAGES = ["pandas", "numpy", "scipy", "pyyaml", "tabulate", "matplotlib"]


def _artifact_kind(path: Path) -> str:
    # Output directories are named after what they hold (core, audit, tables, plots).
    return path.parent.name


def describe_table(path: Path) -> dict:
    df = pd.read_csv(path, dtype="string", keep_default_na=False)
    entry = {
        "kind": _artifact_kind(path),
        "sha256": sha256_file(path),
        "n_rows": int(df.shape[0]),
        "n_cols": int(df.shape[1]),
        "columns": [str(c) for c in df.columns],
    }
    if "participant_id" in df.columns:
        ids = df["participant_id"].str.strip()
        entry["n_participants"] = int(ids[ids != ""].nunique())
    return entry


def build_table_manifest(table_paths: list[Path], out_path: Path) -> None:
    tables = {p.as_posix(): describe_table(p) for p in sorted(table_paths) if p.suffix.lower() == ".csv"}
    out = {
        "generated_utc": datetime.now(timezone.utc).isoformat(),
        "n_tables": len(tables),
        "tables": tables,
    }
    out_path.write_text(json.dumps(out, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def analysis_constants() -> list[str]:
    lines = [
        f"window.baseline_max_days_after_dose1: {BASELINE_MAX_DAYS_AFTER_DOSE1}",
        f"window.post_dose_days: {POST_DOSE_MIN_DAYS}-{POST_DOSE_MAX_DAYS}",
        "infection_rules: " + " > ".join(r.name for r in INFECTION_RULES),
    ]
    lines.extend(f"threshold.{assay}: {value:g}" for assay, value in POSITIVITY_THRESHOLDS.items())
    return lines


def build_signature(*, out_path: Path, config_paths: list[Path], table_paths: list[Path]) -> None:
    lines: list[str] = [
        f"generated_utc: {datetime.now(timezone.utc).isoformat()}",
        f"python: {sys.version.split()[0]}",
        f"platform: {platform.platform()}",
        "",
    ]
    for name in SIGNATURE_PACKAGES:
        try:
            lines.append(f"{name}: {metadata.version(name)}")
        except metadata.PackageNotFoundError:
            lines.append(f"{name}: (not installed)")
    lines.append("")
    lines.extend(analysis_constants())
    lines.append("")
    lines.extend(f"config: {p.as_posix()} sha256={sha256_file(p)}" for p in config_paths if p.exists())
    lines.append("")
    lines.extend(f"table: {p.as_posix()} sha256={sha256_file(p)}" for p in sorted(table_paths) if p.exists())

    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
