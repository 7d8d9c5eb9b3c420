from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import numpy as np
import pandas as pd

from serology_analysis.significance import Distribution, StatResult, compare_categorical, compare_continuous
from serology_analysis.utils import ensure_dir

VariableKind = Literal["continuous", "categorical"]

MISSING_LEVEL = "Missing"
TABLE_KEY_COLUMNS = ["panel", "variable", "level", "row_label"]
TABLE_TAIL_COLUMNS = ["p_value", "test"]


@dataclass(frozen=True)
class VariableSpec:
    name: str
    kind: VariableKind
    distribution: Distribution = "nonparametric"
    label: str | None = None
    levels: tuple[str, ...] | None = None
    include_missing: bool = False

    @property
    def display(self) -> str:
        return self.label or self.name

    @classmethod
    def from_cfg(cls, item: dict) -> VariableSpec:
        kind = str(item.get("kind", "continuous")).strip().lower()
        if kind not in {"continuous", "categorical"}:
            raise ValueError(f"Variable {item.get('name')!r} has unsupported kind: {kind}")
        distribution = str(item.get("distribution", "nonparametric")).strip().lower()
        if distribution not in {"nonparametric", "normal"}:
            raise ValueError(f"Variable {item.get('name')!r} has unsupported distribution: {distribution}")
        levels = item.get("levels")
        return cls(
            name=str(item["name"]),
            kind=kind,  # type: ignore[arg-type]
            distribution=distribution,  # type: ignore[arg-type]
            label=item.get("label"),
            levels=tuple(str(v) for v in levels) if levels else None,
            include_missing=bool(item.get("include_missing", False)),
        )


@dataclass(frozen=True)
class RoundingPolicy:
    continuous_digits: int = 2
    percent_digits: int = 1
    p_digits: int = 3

    @classmethod
    def from_cfg(cls, cfg: dict) -> RoundingPolicy:
        r = (cfg.get("tables", {}) or {}).get("rounding", {}) or {}
        return cls(
            continuous_digits=int(r.get("continuous_digits", 2)),
            percent_digits=int(r.get("percent_digits", 1)),
            p_digits=int(r.get("p_digits", 3)),
        )

    def format_p(self, p: float) -> str:
        if p is None or not np.isfinite(p):
            return ""
        floor = 10.0 ** (-self.p_digits)
        if p < floor:
            return f"<{floor:.{self.p_digits}f}"
        return f"{p:.{self.p_digits}f}"

    def format_median_iqr(self, values: pd.Series) -> str:
        v = pd.to_numeric(values, errors="coerce").dropna()
        if v.empty:
            return ""
        d = self.continuous_digits
        return f"{float(v.median()):.{d}f} [{float(v.quantile(0.25)):.{d}f}, {float(v.quantile(0.75)):.{d}f}]"

    def format_mean_sd(self, values: pd.Series) -> str:
        v = pd.to_numeric(values, errors="coerce").dropna()
        if v.empty:
            return ""
        d = self.continuous_digits
        sd = float(v.std(ddof=1)) if len(v) > 1 else float("nan")
        sd_txt = f"{sd:.{d}f}" if np.isfinite(sd) else "NA"
        return f"{float(v.mean()):.{d}f} ({sd_txt})"

    def format_n_pct(self, n: int, denom: int) -> str:
        if denom <= 0:
            return f"{n} (NA)"
        return f"{n} ({100.0 * n / denom:.{self.percent_digits}f}%)"


def _strata_levels(records: pd.DataFrame, strata: str, strata_levels: list[str] | None) -> list[str]:
    if strata not in records.columns:
        raise ValueError(f"Strata column {strata!r} not found in records")
    if strata_levels is not None:
        levels = [str(v) for v in strata_levels]
    elif isinstance(records[strata].dtype, pd.CategoricalDtype):
        levels = [str(v) for v in records[strata].cat.categories]
    else:
        levels = sorted(str(v) for v in records[strata].dropna().unique())
    if len(levels) < 2:
        raise ValueError(f"Strata column {strata!r} needs at least 2 levels, got {levels}")
    return levels


def _as_category(values: pd.Series) -> pd.Series:
    if pd.api.types.is_bool_dtype(values.dtype):
        return values.map({True: "Yes", False: "No"}).astype("string")
    return values.astype("string").str.strip().replace("", pd.NA)


def _variable_levels(spec: VariableSpec, values: pd.Series) -> list[str]:
    observed = sorted(str(v) for v in values.dropna().unique())
    if spec.levels is None:
        return observed
    declared = list(spec.levels)
    return declared + [v for v in observed if v not in declared]


def category_counts(
    records: pd.DataFrame,
    spec: VariableSpec,
    *,
    strata: str,
    strata_levels: list[str] | None = None,
) -> pd.DataFrame:
    """Counts per (level, stratum); rows are levels, columns are strata."""
    levels_s = _strata_levels(records, strata, strata_levels)
    df = records.loc[records[strata].notna(), [spec.name, strata]].copy()
    df["_stratum"] = df[strata].astype(str)
    df = df[df["_stratum"].isin(levels_s)]
    df["_value"] = _as_category(df[spec.name])
    levels_v = _variable_levels(spec, df["_value"])
    if spec.include_missing:
        df["_value"] = df["_value"].fillna(MISSING_LEVEL)
        if MISSING_LEVEL not in levels_v:
            levels_v = levels_v + [MISSING_LEVEL]
    df = df[df["_value"].notna()]
    if df.empty:
        return pd.DataFrame(0, index=levels_v, columns=levels_s, dtype="int64")
    counts = pd.crosstab(df["_value"], df["_stratum"])
    return counts.reindex(index=levels_v, columns=levels_s, fill_value=0).astype("int64")


def _blank_row(panel: str, spec: VariableSpec | None, level: str, row_label: str) -> dict:
    return {
        "panel": panel,
        "variable": spec.name if spec is not None else "",
        "level": level,
        "row_label": row_label,
    }


def _continuous_rows(
    df: pd.DataFrame, spec: VariableSpec, levels: list[str], rounding: RoundingPolicy, panel: str
) -> list[dict]:
    values = pd.to_numeric(df[spec.name], errors="coerce")
    groups = [values[df["_stratum"] == lv].dropna() for lv in levels]
    result: StatResult = compare_continuous([g.to_numpy() for g in groups], distribution=spec.distribution)

    if spec.distribution == "normal":
        summary = "mean (SD)"
        cells = [rounding.format_mean_sd(g) for g in groups]
    else:
        summary = "median [IQR]"
        cells = [rounding.format_median_iqr(g) for g in groups]

    row = _blank_row(panel, spec, "", f"{spec.display}, {summary}")
    row.update(dict(zip(levels, cells)))
    row["p_value"] = rounding.format_p(result.p_value)
    row["test"] = result.test
    return [row]


def _categorical_rows(
    df: pd.DataFrame, spec: VariableSpec, levels: list[str], rounding: RoundingPolicy, panel: str
) -> list[dict]:
    counts = category_counts(df, spec, strata="_stratum", strata_levels=levels)
    tested = counts.drop(index=MISSING_LEVEL, errors="ignore")
    result = compare_categorical(tested.to_numpy())
    denoms = counts.sum(axis=0)

    header = _blank_row(panel, spec, "", f"{spec.display}, n (%)")
    header.update({lv: "" for lv in levels})
    header["p_value"] = rounding.format_p(result.p_value)
    header["test"] = result.test

    rows = [header]
    for value_level, counts_row in counts.iterrows():
        row = _blank_row(panel, spec, str(value_level), f"  {value_level}")
        for lv in levels:
            row[lv] = rounding.format_n_pct(int(counts_row[lv]), int(denoms[lv]))
        row["p_value"] = ""
        row["test"] = ""
        rows.append(row)
    return rows


def build_comparison_table(
    records: pd.DataFrame,
    variables: list[VariableSpec],
    *,
    strata: str,
    strata_levels: list[str] | None = None,
    rounding: RoundingPolicy | None = None,
    panel: str = "",
) -> pd.DataFrame:
    """One stratified descriptive/test panel: a row set per variable, a column per stratum."""
    rounding = rounding or RoundingPolicy()
    levels = _strata_levels(records, strata, strata_levels)

    missing_vars = [v.name for v in variables if v.name not in records.columns]
    if missing_vars:
        raise ValueError(f"Comparison variables not found in records: {missing_vars}")

    df = records.loc[records[strata].notna()].copy()
    df["_stratum"] = df[strata].astype(str)
    df = df[df["_stratum"].isin(levels)]

    n_row = _blank_row(panel, None, "", "N")
    n_row.update({lv: str(int((df["_stratum"] == lv).sum())) for lv in levels})
    n_row["p_value"] = ""
    n_row["test"] = ""

    rows = [n_row]
    for spec in variables:
        if spec.kind == "continuous":
            rows.extend(_continuous_rows(df, spec, levels, rounding, panel))
        else:
            rows.extend(_categorical_rows(df, spec, levels, rounding, panel))

    return pd.DataFrame(rows, columns=TABLE_KEY_COLUMNS + levels + TABLE_TAIL_COLUMNS)


def concat_panels(panels: list[pd.DataFrame]) -> pd.DataFrame:
    if not panels:
        return pd.DataFrame(columns=TABLE_KEY_COLUMNS + TABLE_TAIL_COLUMNS)
    strata_cols: list[str] = []
    for p in panels:
        for c in p.columns:
            if c not in TABLE_KEY_COLUMNS and c not in TABLE_TAIL_COLUMNS and c not in strata_cols:
                strata_cols.append(c)
    out = pd.concat(panels, ignore_index=True)
    out = out.loc[:, TABLE_KEY_COLUMNS + strata_cols + TABLE_TAIL_COLUMNS]
    return out.fillna("")


def variable_specs_from_cfg(items: list[dict] | None) -> list[VariableSpec]:
    return [VariableSpec.from_cfg(item) for item in (items or [])]


def write_table(df: pd.DataFrame, out_csv: Path, out_md: Path) -> None:
    ensure_dir(out_csv.parent)
    df.to_csv(out_csv, index=False)
    out_md.write_text(df.to_markdown(index=False) + "\n", encoding="utf-8")
