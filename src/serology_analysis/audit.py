from __future__ import annotations

from pathlib import Path

import pandas as pd

from serology_analysis.config import InfectionCoding
from serology_analysis.derived import (
    ACE2_BINDING_CUTOFF,
    IGG_N_THRESHOLD,
    IGG_S_THRESHOLD,
    IGM_S_THRESHOLD,
    NEUTRALIZING_IGG_S,
)
from serology_analysis.infection import INFECTION_RULES
from serology_analysis.symptoms import SIGNIFICANT_MIN_DAYS, SIGNIFICANT_SEVERITIES
from serology_analysis.windows import BASELINE_MAX_DAYS_AFTER_DOSE1, POST_DOSE_MAX_DAYS, POST_DOSE_MIN_DAYS

_RULE_TEXT = {
    "chart_review_no_history": "chart review records no history of infection => NoPrior",
    "baseline_igg_n": f"Baseline IgG-N >= {IGG_N_THRESHOLD} => Prior",
    "self_report_before_dose1": "self-reported infection (with no PCR date, or a PCR date before dose 1) => Prior",
    "pcr_before_dose1": "PCR-positive date before dose 1 => Prior",
    "pcr_after_dose1": "PCR-positive date after dose 1 => NoPrior",
    "default": "otherwise => NoPrior",
}


def write_analysis_rules(*, out_path: Path, coding: InfectionCoding, overrides: dict[str, str], symptom_types: list[str]) -> None:
    lines: list[str] = []
    lines.append("# Analysis rules (deterministic)")
    lines.append("")
    lines.append("This document describes the fixed rules used to build the analysis record set: visit windows, infection classification, derived flags and symptom significance.")
    lines.append("")
    lines.append("## Visit windows")
    lines.append("")
    lines.append("Day differences are whole calendar days between the draw date and the relevant dose date.")
    lines.append(f"- Baseline: draw on or before dose 1 + {BASELINE_MAX_DAYS_AFTER_DOSE1} days (inclusive)")
    lines.append(f"- AfterDose1: {POST_DOSE_MIN_DAYS}-{POST_DOSE_MAX_DAYS} days after dose 1 (inclusive)")
    lines.append(f"- AfterDose2: {POST_DOSE_MIN_DAYS}-{POST_DOSE_MAX_DAYS} days after dose 2 (inclusive)")
    lines.append("- A missing or unreadable draw date or relevant dose date makes the visit invalid.")
    lines.append("")
    lines.append("### Baseline boundary")
    lines.append(
        f"- Protocol documents give the Baseline limit both as \"up to {BASELINE_MAX_DAYS_AFTER_DOSE1} days after dose 1\" "
        f"and as a strict \"< {BASELINE_MAX_DAYS_AFTER_DOSE1} days\" comparison."
    )
    lines.append(
        f"- This pipeline uses the inclusive reading: a draw on exactly dose 1 + {BASELINE_MAX_DAYS_AFTER_DOSE1} days is a valid Baseline."
    )
    lines.append("")
    lines.append("## Infection status")
    lines.append("")
    lines.append("Resolved once per participant; the first rule that applies wins:")
    for i, rule in enumerate(INFECTION_RULES, start=1):
        lines.append(f"  {i}) `{rule.name}`: {_RULE_TEXT.get(rule.name, rule.outcome)}")
    lines.append("")
    lines.append("- A PCR date on the day of dose 1 is neither before nor after dose 1.")
    lines.append("- Several PCR-positive dates: the earliest is used.")
    lines.append("- Baseline IgG-N comes from the retained (window-valid) Baseline record.")
    lines.append("- Conflicting self-report answers or chart-review overrides abort the run.")
    lines.append("- A PCR-positive date that cannot be read as a date aborts the run; a blank cell means no PCR record.")
    lines.append(f"- Self-report codes counted as positive: {', '.join(sorted(coding.self_report_positive))}")
    lines.append(f"- Self-report codes counted as negative: {', '.join(sorted(coding.self_report_negative))}")
    lines.append(f"- Chart-review overrides supplied by configuration: {len(overrides)}")
    lines.append("")
    lines.append("## Derived variables")
    lines.append("")
    lines.append(f"- IgG-N positive: value >= {IGG_N_THRESHOLD}")
    lines.append(f"- IgM-S positive: value >= {IGM_S_THRESHOLD:.2f}")
    lines.append(f"- IgG-S positive: value >= {IGG_S_THRESHOLD:g}")
    lines.append(f"- IgG-S neutralizing-equivalent: value >= {NEUTRALIZING_IGG_S:g}")
    lines.append(f"- ACE2 binding inhibition: value >= {ACE2_BINDING_CUTOFF:g}")
    lines.append("- `log_*`: natural log; non-positive inputs give a missing value and an `undefined_log_transform` audit row.")
    lines.append("")
    lines.append("## Symptoms")
    lines.append("")
    lines.append(
        f"- Significant: severity in {{{', '.join(sorted(SIGNIFICANT_SEVERITIES))}}}, "
        f"or a duration of more than {SIGNIFICANT_MIN_DAYS:g} days at any severity other than None."
    )
    lines.append("- Types not reported for a surveyed visit count as not significant.")
    lines.append("- Unreadable severity or timing labels count as unknown and get an `unreadable_symptom_label` audit row.")
    if symptom_types:
        lines.append(f"- Configured types (column order): {', '.join(symptom_types)}")
    lines.append("- Paired visit comparisons use an exact McNemar test on participants observed at both visits.")

    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_exclusion_summary(*, out_path: Path, exclusions: pd.DataFrame, flow: pd.DataFrame) -> None:
    lines: list[str] = []
    lines.append("# Exclusion summary")
    lines.append("")
    lines.append("## Cohort flow")
    lines.append("")
    if flow.empty:
        lines.append("(no flow steps recorded)")
    else:
        lines.append(flow.to_markdown(index=False))
    lines.append("")
    lines.append("## Exclusions by reason")
    lines.append("")
    if exclusions.empty:
        lines.append("No rows were excluded.")
    else:
        by_reason = (
            exclusions.groupby("reason", sort=True)
            .agg(n_rows=("reason", "size"), n_participants=("participant_id", "nunique"))
            .reset_index()
        )
        lines.append(by_reason.to_markdown(index=False))
        details = exclusions.dropna(subset=["detail"])
        details = details[details["detail"].astype(str) != ""]
        if not details.empty:
            lines.append("")
            lines.append("## Detail counts")
            lines.append("")
            top = (
                details.groupby(["reason", "detail"], sort=True)
                .size()
                .reset_index(name="n_rows")
                .sort_values(["reason", "n_rows"], ascending=[True, False], kind="mergesort")
            )
            lines.append(top.to_markdown(index=False))

    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
