from __future__ import annotations

from typing import Literal

import numpy as np
import pandas as pd

from serology_analysis.utils import is_missing

Stage = Literal["Baseline", "AfterDose1", "AfterDose2"]

BASELINE = "Baseline"
AFTER_DOSE1 = "AfterDose1"
AFTER_DOSE2 = "AfterDose2"
STAGES: tuple[str, ...] = (BASELINE, AFTER_DOSE1, AFTER_DOSE2)

# Protocol windows, in whole days relative to the relevant dose.
BASELINE_MAX_DAYS_AFTER_DOSE1 = 3
POST_DOSE_MIN_DAYS = 7
POST_DOSE_MAX_DAYS = 21

_STAGE_ALIASES = {
    "baseline": BASELINE,
    "pre_vaccination": BASELINE,
    "prevaccination": BASELINE,
    "v0": BASELINE,
    "afterdose1": AFTER_DOSE1,
    "after_dose1": AFTER_DOSE1,
    "after_dose_1": AFTER_DOSE1,
    "post_dose1": AFTER_DOSE1,
    "post_dose_1": AFTER_DOSE1,
    "v1": AFTER_DOSE1,
    "afterdose2": AFTER_DOSE2,
    "after_dose2": AFTER_DOSE2,
    "after_dose_2": AFTER_DOSE2,
    "post_dose2": AFTER_DOSE2,
    "post_dose_2": AFTER_DOSE2,
    "v2": AFTER_DOSE2,
}


def normalize_stage(value: object) -> str | None:
    if is_missing(value):
        return None
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    return _STAGE_ALIASES.get(key)


def next_stage(stage: str) -> str:
    if stage not in STAGES:
        raise ValueError(f"Unknown visit stage: {stage!r}")
    idx = STAGES.index(stage)
    if idx == len(STAGES) - 1:
        raise ValueError(f"{stage} has no following visit stage")
    return STAGES[idx + 1]


def _relevant_dose(stage: str, dose1_date: object, dose2_date: object) -> object:
    if stage in (BASELINE, AFTER_DOSE1):
        return dose1_date
    if stage == AFTER_DOSE2:
        return dose2_date
    raise ValueError(f"Unknown visit stage: {stage!r}")


def _as_date(value: object) -> pd.Timestamp | None:
    ts = pd.to_datetime(value, errors="coerce")
    return None if pd.isna(ts) else pd.Timestamp(ts).normalize()


def _days_in_window(stage: str, days: int) -> bool:
    if stage == BASELINE:
        return days <= BASELINE_MAX_DAYS_AFTER_DOSE1
    return POST_DOSE_MIN_DAYS <= days <= POST_DOSE_MAX_DAYS


def window_failure_reason(draw_date: object, dose1_date: object, dose2_date: object, stage: str) -> str | None:
    """Return why a draw is outside its visit window, or None when it is valid."""
    dose = _relevant_dose(stage, dose1_date, dose2_date)
    if is_missing(dose):
        return "missing_dose_date"
    if is_missing(draw_date):
        return "missing_draw_date"
    draw, ref = _as_date(draw_date), _as_date(dose)
    if draw is None or ref is None:
        return "unparseable_date"
    if not _days_in_window(stage, (draw - ref).days):
        return "outside_window"
    return None


def is_valid_draw(draw_date: object, dose1_date: object, dose2_date: object, stage: str) -> bool:
    return window_failure_reason(draw_date, dose1_date, dose2_date, stage) is None


def days_since_relevant_dose(df: pd.DataFrame) -> pd.Series:
    """Whole days from the stage's reference dose to the draw (NaN when either date is missing)."""
    draw = pd.to_datetime(df["draw_date"], errors="coerce").dt.normalize()
    dose1 = pd.to_datetime(df["dose1_date"], errors="coerce").dt.normalize()
    dose2 = pd.to_datetime(df["dose2_date"], errors="coerce").dt.normalize()
    ref = dose1.where(df["visit_stage"] != AFTER_DOSE2, dose2)
    return (draw - ref) / np.timedelta64(1, "D")


def valid_window_mask(df: pd.DataFrame) -> pd.Series:
    unknown = set(df["visit_stage"].dropna().unique()) - set(STAGES)
    if unknown:
        raise ValueError(f"Unknown visit stages: {sorted(unknown)}")
    days = days_since_relevant_dose(df)
    is_baseline = df["visit_stage"] == BASELINE
    baseline_ok = is_baseline & (days <= BASELINE_MAX_DAYS_AFTER_DOSE1)
    post_ok = ~is_baseline & (days >= POST_DOSE_MIN_DAYS) & (days <= POST_DOSE_MAX_DAYS)
    return (days.notna() & (baseline_ok | post_ok)).astype(bool)
