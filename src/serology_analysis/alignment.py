from __future__ import annotations

from dataclasses import dataclass

import pandas as pd

from serology_analysis.infection import INFECTION_STATUSES, NO_PRIOR, PRIOR
from serology_analysis.utils import require_columns
from serology_analysis.windows import STAGES, next_stage

GROUP_COLUMN = "comparison_group"

PRIMARY = "primary"
SENSITIVITY = "sensitivity"


@dataclass(frozen=True)
class ComparisonPanel:
    family: str
    comparison: str
    panel: str
    frame: pd.DataFrame

    @property
    def strata_levels(self) -> list[str]:
        return [str(c) for c in self.frame[GROUP_COLUMN].cat.categories]


def _check(records: pd.DataFrame) -> None:
    require_columns(records, ["participant_id", "visit_stage", "infection_status"], label="analysis records")


def matched_groups(records: pd.DataFrame, stage: str) -> pd.DataFrame:
    """Records at one visit stage, grouped by infection status."""
    _check(records)
    if stage not in STAGES:
        raise ValueError(f"Unknown visit stage: {stage!r}")
    out = records.loc[records["visit_stage"] == stage].copy()
    out[GROUP_COLUMN] = pd.Categorical(out["infection_status"], categories=list(INFECTION_STATUSES), ordered=True)
    return out


def shifted_label(stage: str, status: str) -> str:
    return f"{stage} {status}"


def shifted_groups(records: pd.DataFrame, prior_stage: str) -> pd.DataFrame:
    """Prior participants at `prior_stage` against NoPrior participants one visit later.

    Both groups have then seen the same number of spike-antigen exposures.
    """
    _check(records)
    later = next_stage(prior_stage)
    prior = records.loc[(records["visit_stage"] == prior_stage) & (records["infection_status"] == PRIOR)]
    naive = records.loc[(records["visit_stage"] == later) & (records["infection_status"] == NO_PRIOR)]
    out = pd.concat([prior, naive], ignore_index=True)
    labels = [shifted_label(prior_stage, PRIOR), shifted_label(later, NO_PRIOR)]
    out[GROUP_COLUMN] = pd.Categorical(
        [shifted_label(s, st) for s, st in zip(out["visit_stage"], out["infection_status"])],
        categories=labels,
        ordered=True,
    )
    return out


def complete_participants(records: pd.DataFrame) -> list[str]:
    _check(records)
    stages = records.groupby("participant_id")["visit_stage"].agg(lambda s: frozenset(s.dropna()))
    required = frozenset(STAGES)
    return sorted(str(pid) for pid, seen in stages.items() if required <= seen)


def sensitivity_subset(records: pd.DataFrame) -> pd.DataFrame:
    """Only participants with a valid record at every visit stage."""
    keep = set(complete_participants(records))
    return records.loc[records["participant_id"].isin(keep)].copy()


def comparison_panels(records: pd.DataFrame) -> list[ComparisonPanel]:
    panels: list[ComparisonPanel] = []
    for family, frame in ((PRIMARY, records), (SENSITIVITY, sensitivity_subset(records))):
        for stage in STAGES:
            panels.append(ComparisonPanel(family, "matched", stage, matched_groups(frame, stage)))
        for stage in STAGES[:-1]:
            panels.append(
                ComparisonPanel(
                    family,
                    "shifted",
                    f"{shifted_label(stage, PRIOR)} vs {shifted_label(next_stage(stage), NO_PRIOR)}",
                    shifted_groups(frame, stage),
                )
            )
    return panels


def plot_records(records: pd.DataFrame, metric: str) -> pd.DataFrame:
    """Plot-ready rows {visit_stage, metric_value, stratum_label}, stage-ordered."""
    _check(records)
    require_columns(records, [metric], label="analysis records")
    df = records.loc[:, ["participant_id", "visit_stage", "infection_status", metric]].copy()
    df["metric_value"] = pd.to_numeric(df[metric], errors="coerce")
    df = df[df["metric_value"].notna()]
    df["stratum_label"] = df["infection_status"]
    df["metric"] = metric
    df["visit_stage"] = pd.Categorical(df["visit_stage"], categories=list(STAGES), ordered=True)
    df = df.sort_values(["visit_stage", "stratum_label", "participant_id"], kind="mergesort")
    df["visit_stage"] = df["visit_stage"].astype(str)
    return df.loc[:, ["participant_id", "metric", "visit_stage", "metric_value", "stratum_label"]].reset_index(drop=True)
