from __future__ import annotations

import numpy as np
import pandas as pd

ASSAYS: tuple[str, ...] = ("igg_n", "igm_s", "igg_s", "ace2")

IGG_N_THRESHOLD = 1.4
IGM_S_THRESHOLD = 1.00
IGG_S_THRESHOLD = 50.0
POSITIVITY_THRESHOLDS: dict[str, float] = {
    "igg_n": IGG_N_THRESHOLD,
    "igm_s": IGM_S_THRESHOLD,
    "igg_s": IGG_S_THRESHOLD,
}
NEUTRALIZING_IGG_S = 4160.0
ACE2_BINDING_CUTOFF = 50.0

POSITIVE = "Positive"
NEGATIVE = "Negative"

_ASSAY_ALIASES = {
    "igg_n": "igg_n",
    "iggn": "igg_n",
    "igg_nucleocapsid": "igg_n",
    "anti_n_igg": "igg_n",
    "igm_s": "igm_s",
    "igms": "igm_s",
    "igm_spike": "igm_s",
    "anti_s_igm": "igm_s",
    "igg_s": "igg_s",
    "iggs": "igg_s",
    "igg_spike": "igg_s",
    "anti_s_igg": "igg_s",
    "igg_ii": "igg_s",
    "ace2": "ace2",
    "ace2_binding": "ace2",
    "ace2_binding_inhibition": "ace2",
    "ace2_binding_pct": "ace2",
    "ace2_inhibition": "ace2",
}


def normalize_assay(label: str) -> str | None:
    return _ASSAY_ALIASES.get(label)


def positivity(values: pd.Series, threshold: float) -> pd.Series:
    v = pd.to_numeric(values, errors="coerce")
    out = pd.Series(pd.NA, index=values.index, dtype="string")
    out[v.notna() & (v >= threshold)] = POSITIVE
    out[v.notna() & (v < threshold)] = NEGATIVE
    return out


def at_or_above(values: pd.Series, cutoff: float) -> pd.Series:
    v = pd.to_numeric(values, errors="coerce")
    out = pd.Series(pd.NA, index=values.index, dtype="boolean")
    out[v.notna()] = v[v.notna()] >= cutoff
    return out


def safe_log(values: pd.Series) -> pd.Series:
    """Natural log; non-positive or missing input gives NaN."""
    v = pd.to_numeric(values, errors="coerce").astype("float64")
    out = pd.Series(np.nan, index=values.index, dtype="float64")
    ok = v > 0
    out[ok] = np.log(v[ok])
    return out


def nonpositive_log_inputs(df: pd.DataFrame) -> pd.DataFrame:
    """Rows whose antibody value cannot be log transformed, one row per (record, assay)."""
    frames: list[pd.DataFrame] = []
    for assay in ASSAYS:
        if assay not in df.columns:
            continue
        v = pd.to_numeric(df[assay], errors="coerce")
        bad = df.loc[v.notna() & (v <= 0), ["participant_id", "visit_stage"]].copy()
        if bad.empty:
            continue
        bad["field"] = assay
        bad["detail"] = v[v.notna() & (v <= 0)].map(lambda x: f"value={x:g}").values
        frames.append(bad)
    if not frames:
        return pd.DataFrame(columns=["participant_id", "visit_stage", "field", "detail"])
    return pd.concat(frames, ignore_index=True)


def add_derived_variables(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    for assay in ASSAYS:
        if assay not in df.columns:
            df[assay] = np.nan
        df[assay] = pd.to_numeric(df[assay], errors="coerce").astype("float64")

    for assay, threshold in POSITIVITY_THRESHOLDS.items():
        df[f"{assay}_pos"] = positivity(df[assay], threshold)
    df["igg_s_neutralizing"] = at_or_above(df["igg_s"], NEUTRALIZING_IGG_S)
    df["ace2_ge50"] = at_or_above(df["ace2"], ACE2_BINDING_CUTOFF)

    for assay in ASSAYS:
        df[f"log_{assay}"] = safe_log(df[assay])
    return df
