from __future__ import annotations

import re

import numpy as np
import pandas as pd

from serology_analysis.infection import INFECTION_STATUSES
from serology_analysis.significance import mcnemar_exact
from serology_analysis.tables import RoundingPolicy, VariableSpec, build_comparison_table
from serology_analysis.utils import is_missing, normalize_label, require_columns
from serology_analysis.windows import STAGES, normalize_stage

SEVERITY_LEVELS: tuple[str, ...] = ("None", "Mild", "Moderate", "Severe")
SIGNIFICANT_SEVERITIES = frozenset({"Moderate", "Severe"})
SIGNIFICANT_MIN_DAYS = 2.0

ANY_SYMPTOM_COLUMN = "symptom_any"

_SEVERITY_ALIASES = {
    "none": "None",
    "no": "None",
    "0": "None",
    "mild": "Mild",
    "1": "Mild",
    "moderate": "Moderate",
    "2": "Moderate",
    "severe": "Severe",
    "3": "Severe",
}

_TIMING = re.compile(
    r"^(?P<op><=|>=|<|>)?\s*(?P<lo>\d+(?:\.\d+)?)\s*(?:(?:-|to)\s*(?P<hi>\d+(?:\.\d+)?))?\s*(?P<plus>\+)?\s*"
    r"(?P<unit>days?|d|weeks?|wks?|hours?|hrs?|h)?$"
)
_UNIT_DAYS = {"d": 1.0, "day": 1.0, "days": 1.0, "week": 7.0, "weeks": 7.0, "wk": 7.0, "wks": 7.0,
              "hour": 1 / 24, "hours": 1 / 24, "hr": 1 / 24, "hrs": 1 / 24, "h": 1 / 24}


def symptom_column(symptom_type: str) -> str:
    return f"symptom_{normalize_label(symptom_type)}"


def normalize_severity(value: object) -> str | None:
    if is_missing(value):
        return None
    return _SEVERITY_ALIASES.get(normalize_label(value))


def timing_exceeds_two_days(value: object) -> bool | None:
    """Whether a timing bucket implies a duration of more than two days; None if unreadable."""
    if is_missing(value):
        return None
    s = str(value).strip().lower().replace("–", "-")
    s = re.sub(r"^(more than|over|longer than)\s*", ">", s)
    s = re.sub(r"^(less than|under|shorter than)\s*", "<", s)
    m = _TIMING.match(s)
    if m is None:
        return None
    scale = _UNIT_DAYS.get(m.group("unit") or "days", 1.0)
    lo = float(m.group("lo")) * scale
    op = m.group("op")
    if op in {"<", "<="}:
        return False
    if op == ">":
        return lo >= SIGNIFICANT_MIN_DAYS
    # ">=n", "n+", "n-m" and plain "n" all bound the duration below by n.
    return lo > SIGNIFICANT_MIN_DAYS


def is_significant(severity: object, timing: object) -> bool | None:
    """Moderate/severe of any duration, or any symptom lasting more than two days.

    Uses three-valued logic: an unknown part only decides the result when the
    known part does not.
    """
    sev = normalize_severity(severity)
    if sev == "None":
        return False
    by_severity = None if sev is None else sev in SIGNIFICANT_SEVERITIES
    by_duration = timing_exceeds_two_days(timing)
    if by_severity is True or by_duration is True:
        return True
    if by_severity is False and by_duration is False:
        return False
    return None


def unknown_symptom_types(symptoms: pd.DataFrame, symptom_types: list[str]) -> pd.DataFrame:
    known = {normalize_label(t) for t in symptom_types}
    labels = symptoms["symptom_type"].map(normalize_label)
    return symptoms.loc[~labels.isin(known)]


def unreadable_symptom_labels(symptoms: pd.DataFrame) -> pd.DataFrame:
    """Severity or timing labels that are present but not understood, one row per (row, field)."""
    frames: list[pd.DataFrame] = []
    for field, parse in (("severity", normalize_severity), ("timing", timing_exceeds_two_days)):
        mask = [not is_missing(v) and str(v).strip() != "" and parse(v) is None for v in symptoms[field]]
        bad = symptoms.loc[mask, ["participant_id", "visit_stage"]].copy()
        if bad.empty:
            continue
        bad["field"] = field
        bad["detail"] = symptoms.loc[mask, field].astype("string").values
        frames.append(bad)
    if not frames:
        return pd.DataFrame(columns=["participant_id", "visit_stage", "field", "detail"])
    return pd.concat(frames, ignore_index=True)

def symptom_significance(symptoms: pd.DataFrame) -> pd.DataFrame:
    require_columns(symptoms, ["participant_id", "visit_stage", "symptom_type", "severity", "timing"], label="symptoms")
    df = symptoms.copy()
    df["participant_id"] = df["participant_id"].astype("string").str.strip()
    df["visit_stage"] = df["visit_stage"].map(normalize_stage)
    df["severity_std"] = df["severity"].map(normalize_severity)
    df["significant"] = pd.array(
        [is_significant(s, t) for s, t in zip(df["severity"], df["timing"])], dtype="boolean"
    )
    return df


def symptom_wide(symptoms: pd.DataFrame, symptom_types: list[str]) -> pd.DataFrame:
    """One row per (participant, visit) with a column per symptom type plus `symptom_any`.

    Types absent for a reported visit count as not significant; columns follow
    `symptom_types` order exactly.
    """
    cols = [symptom_column(t) for t in symptom_types]
    df = symptom_significance(symptoms)
    df = df[df["visit_stage"].notna()]
    df["_col"] = df["symptom_type"].map(symptom_column)
    df = df[df["_col"].isin(cols)]

    keys = ["participant_id", "visit_stage"]
    if df.empty:
        return pd.DataFrame(columns=keys + cols + [ANY_SYMPTOM_COLUMN])

    visits = df.loc[:, keys].drop_duplicates().reset_index(drop=True)
    out = visits.copy()
    for col in cols:
        sub = df.loc[df["_col"] == col, keys + ["significant"]]
        # Repeated reports of one type combine with OR.
        agg = sub.groupby(keys, sort=False)["significant"].agg(_kleene_any).reset_index(name=col)
        agg["_reported"] = True
        out = out.merge(agg, on=keys, how="left")
        reported = out["_reported"].eq(True)
        out[col] = out[col].astype("boolean").where(reported, False)
        out = out.drop(columns=["_reported"])

    out[ANY_SYMPTOM_COLUMN] = _row_kleene_any(out.loc[:, cols])
    out["_stage_order"] = out["visit_stage"].map({s: i for i, s in enumerate(STAGES)})
    out = out.sort_values(["participant_id", "_stage_order"], kind="mergesort").drop(columns=["_stage_order"])
    return out.reset_index(drop=True)


def _kleene_any(values: pd.Series) -> object:
    v = values.astype("boolean")
    if (v == True).any():  # noqa: E712
        return True
    if v.notna().all():
        return False
    return pd.NA


def _row_kleene_any(frame: pd.DataFrame) -> pd.Series:
    b = frame.astype("boolean")
    any_true = b.fillna(False).any(axis=1)
    all_known = b.notna().all(axis=1)
    out = pd.Series(pd.NA, index=frame.index, dtype="boolean")
    out[any_true] = True
    out[~any_true & all_known] = False
    return out


def symptom_layout(records: pd.DataFrame, symptom_types: list[str]) -> pd.DataFrame:
    cols = [symptom_column(t) for t in symptom_types] + [ANY_SYMPTOM_COLUMN]
    require_columns(records, ["participant_id", "visit_stage", "infection_status"] + cols, label="analysis records")
    return records.loc[:, ["participant_id", "visit_stage", "infection_status"] + cols].copy()


def symptom_specs(symptom_types: list[str]) -> list[VariableSpec]:
    specs = [
        VariableSpec(name=symptom_column(t), kind="categorical", label=t, levels=("Yes", "No"))
        for t in symptom_types
    ]
    specs.append(VariableSpec(name=ANY_SYMPTOM_COLUMN, kind="categorical", label="Any significant symptom", levels=("Yes", "No")))
    return specs


def unpaired_symptom_table(
    records: pd.DataFrame,
    symptom_types: list[str],
    *,
    stage: str,
    rounding: RoundingPolicy | None = None,
) -> pd.DataFrame:
    layout = symptom_layout(records, symptom_types)
    layout = layout[layout["visit_stage"] == stage]
    return build_comparison_table(
        layout,
        symptom_specs(symptom_types),
        strata="infection_status",
        strata_levels=list(INFECTION_STATUSES),
        rounding=rounding,
        panel=f"Symptoms {stage}",
    )


def paired_visits(records: pd.DataFrame, column: str, stages: tuple[str, str]) -> pd.DataFrame:
    """One row per participant, one column per visit in `stages` order."""
    require_columns(records, ["participant_id", "visit_stage", column], label="analysis records")
    sub = records.loc[records["visit_stage"].isin(stages), ["participant_id", "visit_stage", column]]
    if sub.empty:
        return pd.DataFrame(columns=["participant_id", *stages])
    wide = sub.pivot(index="participant_id", columns="visit_stage", values=column)
    wide = wide.reindex(columns=list(stages))
    wide.columns.name = None
    return wide.reset_index()


def paired_symptom_comparison(
    records: pd.DataFrame,
    column: str,
    *,
    before: str,
    after: str,
    label: str | None = None,
    rounding: RoundingPolicy | None = None,
    panel: str = "",
) -> pd.DataFrame:
    """Same-participant comparison of a symptom indicator between two visits (exact McNemar)."""
    rounding = rounding or RoundingPolicy()
    wide = paired_visits(records, column, (before, after))
    both = wide[[before, after]].astype("boolean")
    complete = both.notna().all(axis=1)
    pairs = both.loc[complete]
    n = int(complete.sum())

    counts, result = mcnemar_exact(pairs[before].astype(int).to_numpy(), pairs[after].astype(int).to_numpy())
    n_before = counts["both"] + counts["before_only"]
    n_after = counts["both"] + counts["after_only"]
    row = {
        "panel": panel,
        "variable": column,
        "row_label": label or column,
        "n_pairs": n,
        before: rounding.format_n_pct(n_before, n),
        after: rounding.format_n_pct(n_after, n),
        "discordant_before_only": counts["before_only"],
        "discordant_after_only": counts["after_only"],
        "p_value": rounding.format_p(result.p_value) if n else "",
        "test": result.test,
    }
    return pd.DataFrame([row])


def paired_symptom_table(
    records: pd.DataFrame,
    symptom_types: list[str],
    *,
    before: str,
    after: str,
    rounding: RoundingPolicy | None = None,
) -> pd.DataFrame:
    """Paired pre/post comparisons for every symptom, overall and within each infection status."""
    subsets: list[tuple[str, pd.DataFrame]] = [("All", records)]
    for status in INFECTION_STATUSES:
        subsets.append((status, records[records["infection_status"] == status]))

    parts: list[pd.DataFrame] = []
    for name, sub in subsets:
        for spec in symptom_specs(symptom_types):
            parts.append(
                paired_symptom_comparison(
                    sub,
                    spec.name,
                    before=before,
                    after=after,
                    label=spec.display,
                    rounding=rounding,
                    panel=f"{name}: {before} vs {after}",
                )
            )
    out = pd.concat(parts, ignore_index=True)
    out["n_pairs"] = out["n_pairs"].astype(np.int64)
    return out
